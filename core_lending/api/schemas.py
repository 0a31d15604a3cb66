"""
Pydantic schemas for API requests and responses
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional, Union
from pydantic import BaseModel, Field

from ..agreements import LoanAgreement, PendingInvite, ResolvedUser
from ..amortization import AmortizationSummary
from ..currency import Money
from ..settlement import Transaction


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field(..., description="Currency code (INR, USD, etc.)")
    display: str = Field(..., description="Formatted amount, e.g. ₹1,00,000.00")

    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=str(money.amount), currency=money.currency.code, display=money.to_string())


# Agreement schemas
class CreateLoanRequestBody(BaseModel):
    amount: Union[str, int, Decimal] = Field(..., description="Amount, e.g. \"1,00,000\" or 100000")
    purpose: str
    duration_months: int
    interest_rate: Optional[Union[str, int, Decimal]] = Field(None, description="Annual percent; platform default when omitted")
    payment_method: str = "upi"
    extra_fields: Dict[str, Any] = Field(default_factory=dict)
    idempotency_key: Optional[str] = None


class BorrowerModel(BaseModel):
    id: Optional[str] = Field(None, description="Registered borrower id; omit to invite by email")
    name: Optional[str] = None
    email: Optional[str] = None

    def to_borrower(self):
        if self.id:
            return ResolvedUser(id=self.id, name=self.name, email=self.email)
        return PendingInvite(email=self.email or "", name=self.name)


class CreateLoanOfferBody(BaseModel):
    borrower: BorrowerModel
    amount: Union[str, int, Decimal]
    interest_rate: Optional[Union[str, int, Decimal]] = None
    duration_months: int
    purpose: Optional[str] = None
    payment_method: str = "upi"
    smart_contract: bool = False
    conditions: Dict[str, Any] = Field(default_factory=dict)
    idempotency_key: Optional[str] = None


class RejectBody(BaseModel):
    reason: Optional[str] = None


# Payment schemas
class PaymentBody(BaseModel):
    agreement_id: str
    amount: Union[str, int, Decimal]
    method: Optional[str] = Field(None, description="upi, bank, wallet, crypto or cash; defaults to the agreed method")
    transaction_type: Optional[str] = Field(None, description="disbursement, repayment or interest")
    metadata: Dict[str, Any] = Field(default_factory=dict)
    reference: Optional[str] = None
    idempotency_key: Optional[str] = None


class ReconcileBody(BaseModel):
    status: str = Field(..., description="completed or failed")


def agreement_response(agreement: LoanAgreement) -> Dict[str, Any]:
    return {
        "id": agreement.id,
        "type": agreement.kind.value,
        "status": agreement.status.value,
        "borrower_id": agreement.borrower_id,
        "borrower_name": agreement.borrower_name,
        "borrower_email": agreement.borrower_email,
        "lender_id": agreement.lender_id,
        "lender_name": agreement.lender_name,
        "amount": MoneyModel.from_money(agreement.amount).dict(),
        "interest_rate": str(agreement.interest_rate),
        "duration_months": agreement.duration_months,
        "purpose": agreement.purpose,
        "payment_method": agreement.payment_method.value,
        "smart_contract": agreement.smart_contract,
        "conditions": agreement.conditions,
        "monthly_payment": MoneyModel.from_money(agreement.monthly_payment).dict() if agreement.monthly_payment else None,
        "total_repayment": MoneyModel.from_money(agreement.total_repayment).dict() if agreement.total_repayment else None,
        "invitation_pending": agreement.invitation is not None,
        "created_at": agreement.created_at.isoformat(),
        "accepted_at": agreement.accepted_at.isoformat() if agreement.accepted_at else None,
        "rejected_at": agreement.rejected_at.isoformat() if agreement.rejected_at else None,
        "rejection_reason": agreement.rejection_reason,
        "completed_at": agreement.completed_at.isoformat() if agreement.completed_at else None
    }


def summary_response(summary: AmortizationSummary) -> Dict[str, Any]:
    return {
        "principal": MoneyModel.from_money(summary.principal).dict(),
        "annual_rate_percent": str(summary.annual_rate_percent),
        "duration_months": summary.duration_months,
        "monthly_payment": MoneyModel.from_money(summary.monthly_payment).dict(),
        "total_repayment": MoneyModel.from_money(summary.total_repayment).dict(),
        "total_interest": MoneyModel.from_money(summary.total_interest).dict(),
        "schedule": [entry.to_dict() for entry in summary.schedule]
    }


def transaction_response(transaction: Transaction) -> Dict[str, Any]:
    return {
        "id": transaction.id,
        "agreement_id": transaction.agreement_id,
        "transaction_type": transaction.transaction_type.value,
        "amount": MoneyModel.from_money(transaction.amount).dict(),
        "fee": MoneyModel.from_money(transaction.fee).dict(),
        "payment_method": transaction.payment_method.value,
        "payment_reference": transaction.payment_reference,
        "status": transaction.status.value,
        "payer_id": transaction.payer_id,
        "recipient_id": transaction.recipient_id,
        "metadata": transaction.metadata,
        "created_at": transaction.created_at.isoformat()
    }


def agreement_list_response(agreements: List[LoanAgreement]) -> Dict[str, Any]:
    return {
        "agreements": [agreement_response(a) for a in agreements],
        "count": len(agreements)
    }
