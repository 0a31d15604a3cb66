"""
Payment Method Capability Registry

Static description of each settlement method: amount cap, fee model,
instant vs delayed completion, and the metadata a payment intent must carry.
Caps and fee rates come from configuration.
"""

from decimal import Decimal
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

from .config import LendingConfig, get_config
from .currency import AmountLike, parse_amount, quantize_amount
from .errors import ValidationError


class PaymentMethod(Enum):
    """Settlement channels"""
    UPI = "upi"
    BANK = "bank"
    WALLET = "wallet"
    CRYPTO = "crypto"
    CASH = "cash"


class SettlementSpeed(Enum):
    INSTANT = "instant"   # Transaction recorded as completed
    DELAYED = "delayed"   # Transaction recorded as pending until reconciled


class FeeModel(Enum):
    FREE = "free"
    PERCENTAGE = "percentage"
    NETWORK = "network"   # Variable, estimated per transfer


@dataclass(frozen=True)
class PaymentMethodCapability:
    """What a settlement method can do"""
    method: PaymentMethod
    name: str
    description: str
    max_amount: Optional[Decimal]          # None means unbounded
    fee_model: FeeModel
    settlement_speed: SettlementSpeed
    processing_time: str
    required_metadata: Tuple[str, ...] = ()
    fee_rate: Decimal = Decimal('0')       # Fraction for PERCENTAGE, flat estimate for NETWORK

    @property
    def is_instant(self) -> bool:
        return self.settlement_speed == SettlementSpeed.INSTANT

    def within_limit(self, amount: AmountLike) -> bool:
        if self.max_amount is None:
            return True
        return parse_amount(amount) <= self.max_amount

    def calculate_fee(self, amount: AmountLike) -> Decimal:
        """Fee charged on top of the amount, rounded to paise"""
        if self.fee_model == FeeModel.PERCENTAGE:
            return quantize_amount(parse_amount(amount) * self.fee_rate)
        if self.fee_model == FeeModel.NETWORK:
            return quantize_amount(self.fee_rate)
        return Decimal('0.00')

    def to_dict(self) -> dict:
        return {
            'method': self.method.value,
            'name': self.name,
            'description': self.description,
            'max_amount': str(self.max_amount) if self.max_amount is not None else None,
            'fee_model': self.fee_model.value,
            'fee_rate': str(self.fee_rate),
            'settlement_speed': self.settlement_speed.value,
            'processing_time': self.processing_time,
            'required_metadata': list(self.required_metadata)
        }


def get_capabilities(cfg: Optional[LendingConfig] = None) -> Dict[PaymentMethod, PaymentMethodCapability]:
    """Capabilities of all five settlement methods"""
    cfg = cfg or get_config()
    return {
        PaymentMethod.UPI: PaymentMethodCapability(
            method=PaymentMethod.UPI,
            name="UPI",
            description="Pay using any UPI app like GPay, PhonePe, Paytm",
            max_amount=Decimal(cfg.upi_max_amount),
            fee_model=FeeModel.FREE,
            settlement_speed=SettlementSpeed.INSTANT,
            processing_time="Instant",
            required_metadata=("upi_id",)
        ),
        PaymentMethod.BANK: PaymentMethodCapability(
            method=PaymentMethod.BANK,
            name="Bank Transfer",
            description="Direct bank account transfer via NEFT/RTGS/IMPS",
            max_amount=Decimal(cfg.bank_max_amount),
            fee_model=FeeModel.FREE,
            settlement_speed=SettlementSpeed.DELAYED,
            processing_time="2-24 hours",
            required_metadata=("account_number", "ifsc")
        ),
        PaymentMethod.WALLET: PaymentMethodCapability(
            method=PaymentMethod.WALLET,
            name="Digital Wallet",
            description="Paytm, Amazon Pay, or other digital wallets",
            max_amount=Decimal(cfg.wallet_max_amount),
            fee_model=FeeModel.PERCENTAGE,
            fee_rate=Decimal(cfg.wallet_fee_rate),
            settlement_speed=SettlementSpeed.INSTANT,
            processing_time="Instant",
            required_metadata=("wallet_id",)
        ),
        PaymentMethod.CRYPTO: PaymentMethodCapability(
            method=PaymentMethod.CRYPTO,
            name="Cryptocurrency",
            description="Pay with Ethereum, USDT on Polygon, or Bitcoin",
            max_amount=None,
            fee_model=FeeModel.NETWORK,
            fee_rate=Decimal(cfg.crypto_network_fee),
            settlement_speed=SettlementSpeed.DELAYED,
            processing_time="10-60 minutes",
            required_metadata=("wallet_address", "network")
        ),
        PaymentMethod.CASH: PaymentMethodCapability(
            method=PaymentMethod.CASH,
            name="Cash",
            description="In-person transaction, confirmed manually",
            max_amount=Decimal(cfg.cash_max_amount),
            fee_model=FeeModel.FREE,
            settlement_speed=SettlementSpeed.INSTANT,
            processing_time="Instant (manual confirmation)"
        ),
    }


def get_capability(method: PaymentMethod, cfg: Optional[LendingConfig] = None) -> PaymentMethodCapability:
    return get_capabilities(cfg)[method]


def parse_payment_method(value) -> PaymentMethod:
    """Accept a PaymentMethod or its string value"""
    if isinstance(value, PaymentMethod):
        return value
    try:
        return PaymentMethod(str(value).strip().lower())
    except ValueError:
        raise ValidationError(f"Unsupported payment method: {value}")
