"""
Payment Settlement Module

Routes a payment intent to exactly one method processor (UPI, bank, wallet,
crypto, cash), normalizes the outcome into a PaymentResult and records a
Transaction. No real gateway is called: processors simulate settlement and
return the references/instructions a UI needs.

Business failures (unknown method, over-cap amount, malformed metadata,
processor decline) come back as PaymentResult(success=False). Only storage
faults raise, and callers should treat those as retryable.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from enum import Enum
from urllib.parse import urlencode
import hashlib
import re
import uuid

from .audit import AuditTrail, AuditEventType
from .config import LendingConfig, get_config
from .currency import AmountLike, Currency, Money, parse_amount
from .errors import AuthorizationError, InvalidStateError, NotFoundError, ValidationError
from .logging_config import get_logger, log_action
from .notifications import NotificationSink, NotificationType
from .payment_methods import (
    PaymentMethod, PaymentMethodCapability, get_capabilities, parse_payment_method
)
from .storage import StorageInterface, StorageRecord


class TransactionType(Enum):
    DISBURSEMENT = "disbursement"
    REPAYMENT = "repayment"
    INTEREST = "interest"


class TransactionStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class PaymentIntent:
    """A request to move money for an agreement"""
    amount: AmountLike
    agreement_id: str
    payer_id: str
    recipient_id: str
    transaction_type: TransactionType
    method: Any                                   # PaymentMethod or its string value
    metadata: Dict[str, Any] = field(default_factory=dict)
    reference: Optional[str] = None               # Caller-supplied payment reference
    idempotency_key: Optional[str] = None         # Stored, not deduplicated
    currency: Currency = Currency.INR


@dataclass
class PaymentResult:
    """Uniform result of every settlement attempt"""
    success: bool
    message: str
    transaction_id: Optional[str] = None
    reference_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'message': self.message,
            'transaction_id': self.transaction_id,
            'reference_id': self.reference_id,
            'metadata': self.metadata
        }


@dataclass
class SettlementOutcome:
    """What a method processor reports back to the dispatcher"""
    status: TransactionStatus
    reference_id: str
    message: str
    fee: Decimal = Decimal('0')
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def declined(self) -> bool:
        return self.status == TransactionStatus.FAILED


@dataclass
class Transaction(StorageRecord):
    """Settlement record. Only `status` changes after creation."""
    agreement_id: str
    transaction_type: TransactionType
    amount: Money
    payment_method: PaymentMethod
    payment_reference: str
    status: TransactionStatus
    payer_id: str
    recipient_id: str
    fee: Money
    idempotency_key: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'agreement_id': self.agreement_id,
            'transaction_type': self.transaction_type.value,
            'amount': str(self.amount.amount),
            'currency': self.amount.currency.code,
            'payment_method': self.payment_method.value,
            'payment_reference': self.payment_reference,
            'status': self.status.value,
            'payer_id': self.payer_id,
            'recipient_id': self.recipient_id,
            'fee': str(self.fee.amount),
            'idempotency_key': self.idempotency_key,
            'metadata': self.metadata
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        currency = Currency[data['currency']]
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            agreement_id=data['agreement_id'],
            transaction_type=TransactionType(data['transaction_type']),
            amount=Money(Decimal(data['amount']), currency),
            payment_method=PaymentMethod(data['payment_method']),
            payment_reference=data['payment_reference'],
            status=TransactionStatus(data['status']),
            payer_id=data['payer_id'],
            recipient_id=data['recipient_id'],
            fee=Money(Decimal(data.get('fee', '0')), currency),
            idempotency_key=data.get('idempotency_key'),
            metadata=data.get('metadata') or {}
        )


# Metadata validation. Each returns an error message, or None when valid.

UPI_ID_PATTERN = re.compile(r'^[a-zA-Z0-9._-]{2,256}@[a-zA-Z][a-zA-Z0-9.-]{1,63}$')
ACCOUNT_NUMBER_PATTERN = re.compile(r'^\d{9,18}$')
IFSC_PATTERN = re.compile(r'^[A-Z]{4}0[A-Z0-9]{6}$')
PHONE_PATTERN = re.compile(r'^(\+91)?[6-9]\d{9}$')
EMAIL_PATTERN = re.compile(r'^[^@\s]+@[^@\s]+\.[a-zA-Z]{2,}$')
EVM_ADDRESS_PATTERN = re.compile(r'^0x[0-9a-fA-F]{40}$')
BITCOIN_ADDRESS_PATTERN = re.compile(r'^([13][a-km-zA-HJ-NP-Z1-9]{25,34}|bc1[ac-hj-np-z02-9]{11,71})$')

CRYPTO_NETWORKS = {
    'ethereum': {'pattern': EVM_ADDRESS_PATTERN, 'explorer': 'https://etherscan.io/tx/'},
    'polygon': {'pattern': EVM_ADDRESS_PATTERN, 'explorer': 'https://polygonscan.com/tx/'},
    'bitcoin': {'pattern': BITCOIN_ADDRESS_PATTERN, 'explorer': 'https://mempool.space/tx/'},
}

# Sandbox UPI handles carried over from the gateway test data
UPI_SANDBOX_FAILURE = "failure@upi"
UPI_SANDBOX_PENDING = "pending@upi"


def validate_upi_metadata(metadata: Dict[str, Any]) -> Optional[str]:
    upi_id = str(metadata.get('upi_id') or '').strip()
    if not upi_id:
        return "UPI ID is required for UPI payments"
    if not UPI_ID_PATTERN.match(upi_id):
        return f"Invalid UPI ID '{upi_id}', expected name@provider"
    return None


def validate_bank_metadata(metadata: Dict[str, Any]) -> Optional[str]:
    account_number = str(metadata.get('account_number') or '').replace(' ', '')
    ifsc = str(metadata.get('ifsc') or '').strip().upper()
    if not ACCOUNT_NUMBER_PATTERN.match(account_number):
        return "Account number must be 9 to 18 digits"
    if not IFSC_PATTERN.match(ifsc):
        return f"Invalid IFSC code '{ifsc}'"
    return None


def validate_wallet_metadata(metadata: Dict[str, Any]) -> Optional[str]:
    wallet_id = str(metadata.get('wallet_id') or '').replace(' ', '')
    if not wallet_id:
        return "Wallet ID (phone or email) is required for wallet payments"
    if not (PHONE_PATTERN.match(wallet_id) or EMAIL_PATTERN.match(wallet_id)):
        return f"Wallet ID '{wallet_id}' is neither a mobile number nor an email"
    return None


def validate_crypto_metadata(metadata: Dict[str, Any]) -> Optional[str]:
    address = str(metadata.get('wallet_address') or '').strip()
    network = str(metadata.get('network') or 'ethereum').strip().lower()
    if not address:
        return "Wallet address is required for crypto payments"
    if network not in CRYPTO_NETWORKS:
        return f"Unsupported network '{network}'"
    if not CRYPTO_NETWORKS[network]['pattern'].match(address):
        return f"Invalid {network} address '{address}'"
    return None


def validate_cash_metadata(metadata: Dict[str, Any]) -> Optional[str]:
    note = metadata.get('note')
    if note is not None and not isinstance(note, str):
        return "Cash note must be text"
    return None


# Method processors: plain functions, no shared state.

def _new_reference(method: PaymentMethod) -> str:
    return f"{method.value.upper()}-{uuid.uuid4().hex[:12].upper()}"


def process_upi_payment(intent: PaymentIntent, capability: PaymentMethodCapability,
                        cfg: LendingConfig) -> SettlementOutcome:
    amount = parse_amount(intent.amount)
    upi_id = str(intent.metadata['upi_id']).strip()
    reference = intent.reference or _new_reference(PaymentMethod.UPI)
    upi_intent = "upi://pay?" + urlencode({
        'pa': cfg.upi_merchant_vpa,
        'pn': cfg.upi_merchant_name,
        'am': f"{amount:.2f}",
        'cu': intent.currency.code,
        'tr': reference,
    })
    metadata = {'upi_id': upi_id, 'upi_intent': upi_intent}

    if upi_id.lower() == UPI_SANDBOX_FAILURE:
        return SettlementOutcome(TransactionStatus.FAILED, reference,
                                 "UPI payment declined by payer's bank", metadata=metadata)
    if upi_id.lower() == UPI_SANDBOX_PENDING:
        return SettlementOutcome(TransactionStatus.PENDING, reference,
                                 "UPI payment awaiting confirmation", metadata=metadata)
    return SettlementOutcome(TransactionStatus.COMPLETED, reference,
                             "UPI payment processed successfully", metadata=metadata)


def process_bank_transfer(intent: PaymentIntent, capability: PaymentMethodCapability,
                          cfg: LendingConfig) -> SettlementOutcome:
    account_number = str(intent.metadata['account_number']).replace(' ', '')
    ifsc = str(intent.metadata['ifsc']).strip().upper()
    reference = intent.reference or _new_reference(PaymentMethod.BANK)
    metadata = {
        'account_number': f"XXXX{account_number[-4:]}",
        'ifsc': ifsc,
        'reference': reference,
        'estimated_time': capability.processing_time,
        'instructions': [
            f"Transfer the amount via NEFT/RTGS/IMPS to account ending {account_number[-4:]}",
            f"Use IFSC {ifsc}",
            f"Quote reference {reference} in the remarks",
        ],
    }
    return SettlementOutcome(TransactionStatus.PENDING, reference,
                             "Bank transfer initiated, awaiting confirmation", metadata=metadata)


def process_wallet_payment(intent: PaymentIntent, capability: PaymentMethodCapability,
                           cfg: LendingConfig) -> SettlementOutcome:
    amount = parse_amount(intent.amount)
    fee = capability.calculate_fee(amount)
    reference = intent.reference or _new_reference(PaymentMethod.WALLET)
    metadata = {
        'wallet_id': str(intent.metadata['wallet_id']).replace(' ', ''),
        'provider': intent.metadata.get('provider'),
        'fee': str(fee),
        'total_charged': str(amount + fee),
    }
    return SettlementOutcome(TransactionStatus.COMPLETED, reference,
                             "Wallet payment processed successfully", fee=fee, metadata=metadata)


def process_crypto_payment(intent: PaymentIntent, capability: PaymentMethodCapability,
                           cfg: LendingConfig) -> SettlementOutcome:
    address = str(intent.metadata['wallet_address']).strip()
    network = str(intent.metadata.get('network') or 'ethereum').strip().lower()
    reference = intent.reference or _new_reference(PaymentMethod.CRYPTO)
    digest = hashlib.sha256(f"{reference}:{address}:{intent.amount}".encode()).hexdigest()
    tx_hash = digest if network == 'bitcoin' else "0x" + digest
    fee = capability.calculate_fee(intent.amount)
    metadata = {
        'network': network,
        'wallet_address': address,
        'token': intent.metadata.get('token'),
        'tx_hash': tx_hash,
        'network_fee': str(fee),
        'estimated_confirmation': capability.processing_time,
        'explorer_url': CRYPTO_NETWORKS[network]['explorer'] + tx_hash,
    }
    return SettlementOutcome(TransactionStatus.PENDING, tx_hash,
                             "Crypto transfer broadcast, awaiting confirmations",
                             fee=fee, metadata=metadata)


def record_cash_payment(intent: PaymentIntent, capability: PaymentMethodCapability,
                        cfg: LendingConfig) -> SettlementOutcome:
    reference = intent.reference or _new_reference(PaymentMethod.CASH)
    metadata = {'note': intent.metadata.get('note'), 'confirmation': 'manual'}
    return SettlementOutcome(TransactionStatus.COMPLETED, reference,
                             "Cash payment recorded successfully", metadata=metadata)


@dataclass(frozen=True)
class MethodHandler:
    validate: Callable[[Dict[str, Any]], Optional[str]]
    settle: Callable[[PaymentIntent, PaymentMethodCapability, LendingConfig], SettlementOutcome]


DEFAULT_HANDLERS: Dict[PaymentMethod, MethodHandler] = {
    PaymentMethod.UPI: MethodHandler(validate_upi_metadata, process_upi_payment),
    PaymentMethod.BANK: MethodHandler(validate_bank_metadata, process_bank_transfer),
    PaymentMethod.WALLET: MethodHandler(validate_wallet_metadata, process_wallet_payment),
    PaymentMethod.CRYPTO: MethodHandler(validate_crypto_metadata, process_crypto_payment),
    PaymentMethod.CASH: MethodHandler(validate_cash_metadata, record_cash_payment),
}

_FINAL_STATUSES = (TransactionStatus.COMPLETED, TransactionStatus.FAILED)


class PaymentDispatcher:
    """
    Dispatches payment intents to settlement processors and records transactions.

    The dispatcher does not deduplicate: callers own the idempotency key for a
    user action, and the key is stored on the transaction for reconciliation.
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        notification_sink: Optional[NotificationSink] = None,
        cfg: Optional[LendingConfig] = None,
        handlers: Optional[Dict[PaymentMethod, MethodHandler]] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.notification_sink = notification_sink
        self.cfg = cfg or get_config()
        self.handlers = handlers or DEFAULT_HANDLERS
        self.capabilities = get_capabilities(self.cfg)
        self.table_name = "transactions"
        self.logger = get_logger("lendit.settlement")

    def _reject(self, intent: PaymentIntent, message: str) -> PaymentResult:
        log_action(
            self.logger, "info", f"Payment rejected: {message}",
            user_id=intent.payer_id, action="process_payment",
            resource=f"agreement:{intent.agreement_id}",
            extra={"method": str(getattr(intent.method, 'value', intent.method))}
        )
        return PaymentResult(success=False, message=message)

    def process_payment(self, intent: PaymentIntent) -> PaymentResult:
        """
        Settle a payment intent through its method.

        Input errors are rejected before settlement and before any write, and
        a processor decline records no transaction either. Instant methods
        record a completed transaction, delayed methods a pending one.

        Returns:
            PaymentResult; success=False for every business-level failure
        """
        try:
            method = parse_payment_method(intent.method)
        except ValidationError as e:
            return self._reject(intent, str(e))

        handler = self.handlers.get(method)
        capability = self.capabilities.get(method)
        if handler is None or capability is None:
            return self._reject(intent, f"Unsupported payment method: {method.value}")

        try:
            amount = Money(parse_amount(intent.amount), intent.currency).amount
        except ValidationError as e:
            return self._reject(intent, str(e))
        if amount <= Decimal('0'):
            return self._reject(intent, "Payment amount must be positive")
        if not intent.agreement_id:
            return self._reject(intent, "Payment must reference an agreement")

        if not capability.within_limit(amount):
            return self._reject(
                intent,
                f"Amount exceeds maximum limit for {capability.name} "
                f"({Money(capability.max_amount, intent.currency).to_string()})"
            )

        error = handler.validate(intent.metadata or {})
        if error:
            return self._reject(intent, error)

        outcome = handler.settle(intent, capability, self.cfg)

        if outcome.declined:
            self.audit_trail.log_event(
                event_type=AuditEventType.PAYMENT_DECLINED,
                entity_type="agreement",
                entity_id=intent.agreement_id,
                user_id=intent.payer_id,
                metadata={
                    "amount": Money(amount, intent.currency).to_string(),
                    "method": method.value,
                    "reference": outcome.reference_id,
                    "reason": outcome.message
                }
            )
            log_action(
                self.logger, "info", f"Payment declined by processor: {outcome.message}",
                user_id=intent.payer_id, action="process_payment",
                resource=f"agreement:{intent.agreement_id}",
                extra={"method": method.value, "reference": outcome.reference_id}
            )
            return PaymentResult(
                success=False,
                message=outcome.message,
                reference_id=outcome.reference_id,
                metadata=outcome.metadata
            )

        now = datetime.now(timezone.utc)
        transaction = Transaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            agreement_id=intent.agreement_id,
            transaction_type=intent.transaction_type,
            amount=Money(amount, intent.currency),
            payment_method=method,
            payment_reference=intent.reference or outcome.reference_id,
            status=outcome.status,
            payer_id=intent.payer_id,
            recipient_id=intent.recipient_id,
            fee=Money(outcome.fee, intent.currency),
            idempotency_key=intent.idempotency_key,
            metadata=outcome.metadata
        )

        with self.storage.atomic():
            self.storage.save(self.table_name, transaction.id, transaction.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.PAYMENT_RECORDED,
                entity_type="transaction",
                entity_id=transaction.id,
                user_id=intent.payer_id,
                metadata={
                    "agreement_id": intent.agreement_id,
                    "transaction_type": intent.transaction_type.value,
                    "amount": transaction.amount.to_string(),
                    "method": method.value,
                    "status": outcome.status.value,
                    "reference": transaction.payment_reference
                }
            )

        log_action(
            self.logger, "info", f"Payment {outcome.status.value}: {method.value}",
            user_id=intent.payer_id, action="process_payment",
            resource=f"transaction:{transaction.id}",
            extra={
                "agreement_id": intent.agreement_id,
                "amount": transaction.amount.to_string(),
                "reference": transaction.payment_reference,
                "idempotency_key": intent.idempotency_key
            }
        )

        if outcome.status == TransactionStatus.COMPLETED:
            self._notify_recipient(transaction)

        return PaymentResult(
            success=True,
            message=outcome.message,
            transaction_id=transaction.id,
            reference_id=outcome.reference_id,
            metadata=dict(outcome.metadata, status=outcome.status.value)
        )

    def _notify_recipient(self, transaction: Transaction) -> None:
        if not self.notification_sink:
            return
        try:
            self.notification_sink.notify(
                transaction.recipient_id,
                NotificationType.PAYMENT_RECEIVED,
                "Payment Received",
                f"You received {transaction.amount.to_string()} via "
                f"{self.capabilities[transaction.payment_method].name} "
                f"({transaction.transaction_type.value}).",
                agreement_id=transaction.agreement_id,
                metadata={"transaction_id": transaction.id}
            )
        except Exception as e:
            log_action(
                self.logger, "warning", f"Payment notification failed: {e}",
                user_id=transaction.recipient_id, action="notify",
                resource=f"transaction:{transaction.id}"
            )

    def update_transaction_status(self, transaction_id: str, status: Any,
                                  actor_id: Optional[str] = None) -> Transaction:
        """
        Finalize a pending transaction (reconciliation / webhook path).

        Only pending -> completed|failed is allowed; amount, method and agreement
        linkage are never touched.

        Raises:
            ValidationError: If the target status is not final
            NotFoundError: If the transaction does not exist
            AuthorizationError: If the actor is the payer of the transaction
            InvalidStateError: If the transaction is already final
        """
        try:
            status = TransactionStatus(getattr(status, 'value', status))
        except ValueError:
            raise ValidationError(f"Unknown transaction status: {status}")
        if status not in _FINAL_STATUSES:
            raise ValidationError("Transactions can only be finalized to completed or failed")

        existing = self.get_transaction(transaction_id)
        if existing is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        if actor_id is not None and actor_id == existing.payer_id:
            raise AuthorizationError("A payer cannot confirm their own payment")

        now = datetime.now(timezone.utc)
        updated = self.storage.conditional_update(
            self.table_name, transaction_id,
            expected={'status': TransactionStatus.PENDING.value},
            updates={'status': status.value, 'updated_at': now.isoformat()}
        )
        if not updated:
            existing = self.get_transaction(transaction_id)
            if existing is None:
                raise NotFoundError(f"Transaction {transaction_id} not found")
            raise InvalidStateError(
                f"Transaction {transaction_id} is already {existing.status.value}",
                current_status=existing.status.value
            )

        transaction = self.get_transaction(transaction_id)
        self.audit_trail.log_event(
            event_type=AuditEventType.TRANSACTION_STATUS_CHANGED,
            entity_type="transaction",
            entity_id=transaction_id,
            user_id=actor_id,
            metadata={"from": TransactionStatus.PENDING.value, "to": status.value}
        )
        if status == TransactionStatus.COMPLETED:
            self._notify_recipient(transaction)
        return transaction

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        data = self.storage.load(self.table_name, transaction_id)
        if data:
            return Transaction.from_dict(data)
        return None

    def get_agreement_transactions(
        self,
        agreement_id: str,
        transaction_type: Optional[TransactionType] = None,
        status: Optional[TransactionStatus] = None
    ) -> List[Transaction]:
        """Transactions for an agreement, oldest first"""
        filters: Dict[str, Any] = {'agreement_id': agreement_id}
        if transaction_type:
            filters['transaction_type'] = transaction_type.value
        if status:
            filters['status'] = status.value
        transactions = [Transaction.from_dict(d) for d in self.storage.find(self.table_name, filters)]
        transactions.sort(key=lambda t: t.created_at)
        return transactions

    def total_repaid(self, agreement_id: str, currency: Currency = Currency.INR) -> Money:
        """Sum of completed repayment and interest transactions"""
        total = Money.zero(currency)
        for transaction in self.get_agreement_transactions(agreement_id, status=TransactionStatus.COMPLETED):
            if transaction.transaction_type in (TransactionType.REPAYMENT, TransactionType.INTEREST):
                total = total + transaction.amount
        return total
