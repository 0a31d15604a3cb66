"""
Loan Agreement Module

The loan agreement state machine. A borrower posts a request that any lender
may claim, or a lender addresses an offer to a borrower directly; the
borrower then accepts or rejects.

    pending --claim--> claimed --accept--> active --complete--> completed
    pending (offer) --accept--> active
    pending (offer)/claimed --reject--> rejected
    pending (own unclaimed request) --cancel--> deleted

Every transition re-reads the record and writes with a conditional update
on the status it observed, so a concurrent change surfaces as ConflictError
instead of a lost update. Notifications and contract generation happen
after the write and never undo it.
"""

from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union
from enum import Enum
from abc import ABC, abstractmethod
import uuid

from .amortization import AmortizationSummary, add_months, summarize
from .audit import AuditTrail, AuditEventType
from .config import LendingConfig, get_config
from .contracts import ContractGenerator
from .currency import AmountLike, Currency, Money, parse_amount
from .errors import (
    AuthorizationError, ConflictError, InvalidStateError, NotFoundError, ValidationError
)
from .logging_config import get_logger, log_action
from .notifications import NotificationSink, NotificationType
from .payment_methods import PaymentMethod, parse_payment_method
from .storage import StorageInterface, StorageRecord


class AgreementStatus(Enum):
    PENDING = "pending"
    CLAIMED = "claimed"
    ACTIVE = "active"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class AgreementKind(Enum):
    """Discriminator stored as conditions.type"""
    LOAN_REQUEST = "loan_request"   # Borrower-initiated, open to any lender
    LOAN_OFFER = "loan_offer"       # Lender-initiated, addressed to one borrower


class LoanPurpose(Enum):
    BUSINESS = "business"
    EDUCATION = "education"
    MEDICAL = "medical"
    HOME_IMPROVEMENT = "home_improvement"
    DEBT_CONSOLIDATION = "debt_consolidation"
    WEDDING = "wedding"
    TRAVEL = "travel"
    OTHER = "other"


REQUEST_CONDITION_FIELDS = (
    'collateral', 'monthly_income', 'employment_status', 'credit_score', 'description'
)


@dataclass(frozen=True)
class UserIdentity:
    """The caller, passed explicitly into every operation"""
    id: str
    name: Optional[str] = None
    email: Optional[str] = None


@dataclass(frozen=True)
class ResolvedUser:
    """Offer borrower who already has an account"""
    id: str
    name: Optional[str] = None
    email: Optional[str] = None


@dataclass(frozen=True)
class PendingInvite:
    """Offer borrower known only by email until they sign up"""
    email: str
    name: Optional[str] = None


BorrowerRef = Union[ResolvedUser, PendingInvite]


class UserDirectory(ABC):
    """Looks up registered users by email"""

    @abstractmethod
    def find_by_email(self, email: str) -> Optional[ResolvedUser]:
        pass


class InvitationSender(ABC):
    """Invites an unregistered borrower to view an offer"""

    @abstractmethod
    def send_invitation(self, agreement: 'LoanAgreement', invite: PendingInvite,
                        inviter: UserIdentity) -> None:
        pass


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _same_email(a: Optional[str], b: Optional[str]) -> bool:
    return bool(a) and bool(b) and a.strip().lower() == b.strip().lower()


@dataclass
class LoanAgreement(StorageRecord):
    """A loan request or offer and its lifecycle"""
    borrower_id: Optional[str]          # None only while an invitation is pending
    borrower_name: Optional[str]
    borrower_email: Optional[str]
    lender_id: Optional[str]            # None means an open request
    lender_name: Optional[str]
    lender_email: Optional[str]
    amount: Money
    interest_rate: Decimal              # Annual percent
    duration_months: int
    purpose: str
    payment_method: PaymentMethod
    status: AgreementStatus
    smart_contract: bool = False
    conditions: Dict[str, Any] = field(default_factory=dict)
    created_by: Optional[str] = None
    accepted_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    completed_at: Optional[datetime] = None
    monthly_payment: Optional[Money] = None
    total_repayment: Optional[Money] = None
    idempotency_key: Optional[str] = None
    invitation: Optional[Dict[str, Any]] = None

    @property
    def kind(self) -> AgreementKind:
        return AgreementKind(self.conditions.get('type', AgreementKind.LOAN_OFFER.value))

    @property
    def is_open_request(self) -> bool:
        return (self.kind == AgreementKind.LOAN_REQUEST
                and self.status == AgreementStatus.PENDING
                and self.lender_id is None)

    def is_party(self, user_id: str) -> bool:
        return user_id in (self.borrower_id, self.lender_id)

    def first_payment_date(self) -> Optional[date]:
        if not self.accepted_at:
            return None
        return add_months(self.accepted_at.date(), 1)

    def amortization(self) -> AmortizationSummary:
        """Amortized figures; the schedule is included once the loan is accepted"""
        return summarize(
            self.amount.amount, self.interest_rate, self.duration_months,
            first_payment_date=self.first_payment_date(),
            currency=self.amount.currency
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'borrower_id': self.borrower_id,
            'borrower_name': self.borrower_name,
            'borrower_email': self.borrower_email,
            'lender_id': self.lender_id,
            'lender_name': self.lender_name,
            'lender_email': self.lender_email,
            'amount': str(self.amount.amount),
            'currency': self.amount.currency.code,
            'interest_rate': str(self.interest_rate),
            'duration_months': self.duration_months,
            'purpose': self.purpose,
            'payment_method': self.payment_method.value,
            'status': self.status.value,
            'smart_contract': self.smart_contract,
            'conditions': self.conditions,
            'created_by': self.created_by,
            'accepted_at': _iso(self.accepted_at),
            'rejected_at': _iso(self.rejected_at),
            'rejection_reason': self.rejection_reason,
            'completed_at': _iso(self.completed_at),
            'monthly_payment': str(self.monthly_payment.amount) if self.monthly_payment else None,
            'total_repayment': str(self.total_repayment.amount) if self.total_repayment else None,
            'idempotency_key': self.idempotency_key,
            'invitation': self.invitation
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanAgreement':
        currency = Currency[data.get('currency', 'INR')]

        def get_money(key: str) -> Optional[Money]:
            value = data.get(key)
            return Money(Decimal(value), currency) if value is not None else None

        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            borrower_id=data.get('borrower_id'),
            borrower_name=data.get('borrower_name'),
            borrower_email=data.get('borrower_email'),
            lender_id=data.get('lender_id'),
            lender_name=data.get('lender_name'),
            lender_email=data.get('lender_email'),
            amount=Money(Decimal(data['amount']), currency),
            interest_rate=Decimal(data['interest_rate']),
            duration_months=int(data['duration_months']),
            purpose=data['purpose'],
            payment_method=PaymentMethod(data['payment_method']),
            status=AgreementStatus(data['status']),
            smart_contract=bool(data.get('smart_contract', False)),
            conditions=data.get('conditions') or {},
            created_by=data.get('created_by'),
            accepted_at=_dt(data.get('accepted_at')),
            rejected_at=_dt(data.get('rejected_at')),
            rejection_reason=data.get('rejection_reason'),
            completed_at=_dt(data.get('completed_at')),
            monthly_payment=get_money('monthly_payment'),
            total_repayment=get_money('total_repayment'),
            idempotency_key=data.get('idempotency_key'),
            invitation=data.get('invitation')
        )


def normalize_purpose(value: Any) -> str:
    """Known purposes map to their enum value; anything else is kept as free text"""
    if isinstance(value, LoanPurpose):
        return value.value
    text = str(value or '').strip()
    if not text:
        raise ValidationError("Loan purpose is required")
    try:
        return LoanPurpose(text.lower()).value
    except ValueError:
        return text


class LoanAgreementManager:
    """
    Loan agreement state machine
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        notification_sink: Optional[NotificationSink] = None,
        contract_generator: Optional[ContractGenerator] = None,
        user_directory: Optional[UserDirectory] = None,
        invitation_sender: Optional[InvitationSender] = None,
        repayment_ledger=None,
        cfg: Optional[LendingConfig] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.notification_sink = notification_sink
        self.contract_generator = contract_generator
        self.user_directory = user_directory
        self.invitation_sender = invitation_sender
        self.repayment_ledger = repayment_ledger   # Anything with total_repaid(agreement_id)
        self.cfg = cfg or get_config()
        self.currency = Currency[self.cfg.default_currency.upper()]
        self.table_name = "loan_agreements"
        self.logger = get_logger("lendit.agreements")

    # Creation

    def create_request(
        self,
        borrower: UserIdentity,
        amount: AmountLike,
        purpose: Any,
        duration_months: int,
        interest_rate: Optional[AmountLike] = None,
        extra_fields: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
        payment_method: Any = PaymentMethod.UPI
    ) -> LoanAgreement:
        """
        Post a loan request open to any lender

        Args:
            borrower: Caller posting the request
            amount: Requested principal
            purpose: LoanPurpose or free text
            duration_months: Term in months
            interest_rate: Annual percent, defaults to the configured rate
            extra_fields: collateral, monthly_income, employment_status,
                credit_score, description
            idempotency_key: Repeating a key returns the earlier request

        Returns:
            Pending, unclaimed LoanAgreement

        Raises:
            ValidationError: On malformed terms, before anything is written
        """
        self._require_identity(borrower, "Borrower")
        if interest_rate is None:
            interest_rate = self.cfg.default_interest_rate
        money, rate, months = self._validate_terms(amount, interest_rate, duration_months, self.currency)
        purpose = normalize_purpose(purpose)
        method = parse_payment_method(payment_method)

        existing = self._find_by_idempotency_key(borrower.id, idempotency_key)
        if existing:
            return existing

        conditions = {
            key: value for key, value in (extra_fields or {}).items()
            if key in REQUEST_CONDITION_FIELDS and value not in (None, '')
        }
        conditions['type'] = AgreementKind.LOAN_REQUEST.value

        now = datetime.now(timezone.utc)
        agreement = LoanAgreement(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            borrower_id=borrower.id,
            borrower_name=borrower.name,
            borrower_email=borrower.email,
            lender_id=None,
            lender_name=None,
            lender_email=None,
            amount=money,
            interest_rate=rate,
            duration_months=months,
            purpose=purpose,
            payment_method=method,
            status=AgreementStatus.PENDING,
            conditions=conditions,
            created_by=borrower.id,
            idempotency_key=idempotency_key
        )

        with self.storage.atomic():
            self._save_agreement(agreement)
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_REQUEST_CREATED,
                entity_type="agreement",
                entity_id=agreement.id,
                user_id=borrower.id,
                metadata={
                    "amount": money.to_string(),
                    "interest_rate": str(rate),
                    "duration_months": months,
                    "purpose": purpose
                }
            )

        self._log(borrower.id, "create_request", agreement, "Loan request created")
        self._safe_notify(
            borrower.id, NotificationType.LOAN_REQUEST_CREATED,
            "Loan Request Posted",
            f"Your request for {money.to_string()} is now visible to lenders.",
            agreement
        )
        return agreement

    def create_offer(
        self,
        lender: UserIdentity,
        borrower: Union[BorrowerRef, UserIdentity, str],
        amount: AmountLike,
        interest_rate: Optional[AmountLike],
        duration_months: int,
        purpose: Any,
        payment_method: Any,
        smart_contract: bool = False,
        conditions: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None
    ) -> LoanAgreement:
        """
        Offer a loan directly to a borrower

        `borrower` may be a ResolvedUser, a PendingInvite, or a bare email. Emails
        are looked up in the user directory; unknown ones become an invitation.

        Raises:
            ValidationError: On malformed terms, missing borrower identity,
                or a lender offering to themselves
        """
        self._require_identity(lender, "Lender")
        if interest_rate is None:
            interest_rate = self.cfg.default_interest_rate
        money, rate, months = self._validate_terms(amount, interest_rate, duration_months, self.currency)
        method = parse_payment_method(payment_method)
        purpose = normalize_purpose(purpose or LoanPurpose.OTHER)
        target = self._resolve_borrower(borrower)

        if isinstance(target, ResolvedUser) and target.id == lender.id:
            raise ValidationError("Lender cannot offer a loan to themselves")
        if _same_email(target.email, lender.email):
            raise ValidationError("Lender cannot offer a loan to themselves")

        existing = self._find_by_idempotency_key(lender.id, idempotency_key)
        if existing:
            return existing

        offer_conditions = dict(conditions or {})
        offer_conditions['type'] = AgreementKind.LOAN_OFFER.value

        now = datetime.now(timezone.utc)
        invitation = None
        if isinstance(target, PendingInvite):
            invitation = {'email': target.email, 'name': target.name, 'invited_at': now.isoformat()}

        agreement = LoanAgreement(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            borrower_id=target.id if isinstance(target, ResolvedUser) else None,
            borrower_name=target.name,
            borrower_email=target.email,
            lender_id=lender.id,
            lender_name=lender.name,
            lender_email=lender.email,
            amount=money,
            interest_rate=rate,
            duration_months=months,
            purpose=purpose,
            payment_method=method,
            status=AgreementStatus.PENDING,
            smart_contract=bool(smart_contract),
            conditions=offer_conditions,
            created_by=lender.id,
            idempotency_key=idempotency_key,
            invitation=invitation
        )

        with self.storage.atomic():
            self._save_agreement(agreement)
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_OFFER_CREATED,
                entity_type="agreement",
                entity_id=agreement.id,
                user_id=lender.id,
                metadata={
                    "amount": money.to_string(),
                    "interest_rate": str(rate),
                    "duration_months": months,
                    "payment_method": method.value,
                    "borrower_id": agreement.borrower_id,
                    "invited": invitation is not None
                }
            )

        self._log(lender.id, "create_offer", agreement, "Loan offer created")

        if isinstance(target, PendingInvite):
            self._send_invitation(agreement, target, lender)
        else:
            self._safe_notify(
                target.id, NotificationType.LOAN_OFFER_RECEIVED,
                "New Loan Offer",
                f"{lender.name or 'A lender'} offered you {money.to_string()} "
                f"at {rate}% for {months} months.",
                agreement
            )
        return agreement

    # Transitions

    def claim(self, agreement_id: str, lender: UserIdentity, atomic: bool = True) -> LoanAgreement:
        """
        Attach a lender to an open loan request

        With atomic=True (the default) the write is a single conditional update,
        so of N concurrent claims exactly one succeeds. atomic=False is for
        backends without conditional writes: it writes, re-reads and reports a
        conflict if another lender's write landed last. That path can let two
        callers both believe they won for a moment; only the re-read is trusted.

        Raises:
            NotFoundError: The request no longer exists
            ConflictError: Another lender claimed it first (reason already_claimed)
            InvalidStateError: The record is not an open loan request
            ValidationError: The borrower is claiming their own request
        """
        self._require_identity(lender, "Lender")
        agreement = self._require_agreement(agreement_id)

        if agreement.kind != AgreementKind.LOAN_REQUEST:
            raise InvalidStateError("Only loan requests can be claimed",
                                    current_status=agreement.status.value)
        if agreement.borrower_id == lender.id:
            raise ValidationError("You cannot fund your own loan request")
        if agreement.lender_id is not None:
            raise ConflictError("This loan request has already been claimed",
                                reason=ConflictError.ALREADY_CLAIMED)
        if agreement.status != AgreementStatus.PENDING:
            raise InvalidStateError(f"Loan request is {agreement.status.value}",
                                    current_status=agreement.status.value)

        now = datetime.now(timezone.utc)
        updates = {
            'status': AgreementStatus.CLAIMED.value,
            'lender_id': lender.id,
            'lender_name': lender.name,
            'lender_email': lender.email,
            'updated_at': now.isoformat()
        }

        if atomic:
            claimed = self.storage.conditional_update(
                self.table_name, agreement_id,
                expected={
                    'status': AgreementStatus.PENDING.value,
                    'lender_id': None,
                    'conditions.type': AgreementKind.LOAN_REQUEST.value
                },
                updates=updates
            )
            if not claimed:
                current = self.get_agreement(agreement_id)
                if current is None:
                    raise NotFoundError(f"Loan request {agreement_id} not found")
                if current.lender_id is not None:
                    raise ConflictError("This loan request has already been claimed",
                                        reason=ConflictError.ALREADY_CLAIMED)
                raise ConflictError(f"Loan request changed to {current.status.value}")
        else:
            data = agreement.to_dict()
            data.update(updates)
            self.storage.save(self.table_name, agreement_id, data)
            current = self.get_agreement(agreement_id)
            if current is None:
                raise NotFoundError(f"Loan request {agreement_id} not found")
            if current.lender_id != lender.id:
                raise ConflictError("This loan request has already been claimed",
                                    reason=ConflictError.ALREADY_CLAIMED)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_CLAIMED,
            entity_type="agreement",
            entity_id=agreement_id,
            user_id=lender.id,
            metadata={"borrower_id": agreement.borrower_id, "atomic": atomic}
        )

        claimed_agreement = self._require_agreement(agreement_id)
        self._log(lender.id, "claim", claimed_agreement, "Loan request claimed")
        self._safe_notify(
            agreement.borrower_id, NotificationType.LOAN_CLAIMED,
            "Loan Request Funded",
            f"{lender.name or 'A lender'} wants to fund your request for "
            f"{agreement.amount.to_string()}. Review and accept to activate the loan.",
            claimed_agreement
        )
        return claimed_agreement

    def accept(self, agreement_id: str, borrower: UserIdentity) -> LoanAgreement:
        """
        Borrower accepts a claimed request or a pending offer

        Snapshots the amortized monthly payment and total repayment, then
        generates the contract and notifies the lender (both best-effort).

        Raises:
            AuthorizationError: Caller is not the borrower
            InvalidStateError: Agreement is not awaiting the borrower's decision
            ConflictError: Agreement changed concurrently
        """
        agreement = self._require_agreement(agreement_id)
        link_updates = self._authorize_borrower(agreement, borrower)
        self._require_awaiting_borrower(agreement, "accept")

        now = datetime.now(timezone.utc)
        summary = summarize(
            agreement.amount.amount, agreement.interest_rate, agreement.duration_months,
            first_payment_date=add_months(now.date(), 1),
            currency=agreement.amount.currency
        )
        updates = {
            'status': AgreementStatus.ACTIVE.value,
            'accepted_at': now.isoformat(),
            'monthly_payment': str(summary.monthly_payment.amount),
            'total_repayment': str(summary.total_repayment.amount),
            'updated_at': now.isoformat()
        }
        updates.update(link_updates)
        self._transition(agreement, updates)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_ACCEPTED,
            entity_type="agreement",
            entity_id=agreement_id,
            user_id=borrower.id,
            metadata={
                "from_status": agreement.status.value,
                "monthly_payment": summary.monthly_payment.to_string(),
                "total_repayment": summary.total_repayment.to_string()
            }
        )

        accepted = self._require_agreement(agreement_id)
        self._log(borrower.id, "accept", accepted, "Loan agreement accepted")
        self._generate_contract(accepted, summary, borrower)
        self._safe_notify(
            accepted.lender_id, NotificationType.LOAN_ACCEPTED,
            "Loan Accepted",
            f"{accepted.borrower_name or 'The borrower'} accepted your loan of "
            f"{accepted.amount.to_string()}. Monthly payment: {summary.monthly_payment.to_string()}.",
            accepted
        )
        return accepted

    def reject(self, agreement_id: str, borrower: UserIdentity,
               reason: Optional[str] = None) -> LoanAgreement:
        """Borrower declines a pending offer or a claimed request"""
        agreement = self._require_agreement(agreement_id)
        link_updates = self._authorize_borrower(agreement, borrower)
        if agreement.is_open_request:
            raise InvalidStateError("An unclaimed request is withdrawn with cancel, not rejected",
                                    current_status=agreement.status.value)
        self._require_awaiting_borrower(agreement, "reject")

        now = datetime.now(timezone.utc)
        updates = {
            'status': AgreementStatus.REJECTED.value,
            'rejected_at': now.isoformat(),
            'rejection_reason': reason,
            'updated_at': now.isoformat()
        }
        updates.update(link_updates)
        self._transition(agreement, updates)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_REJECTED,
            entity_type="agreement",
            entity_id=agreement_id,
            user_id=borrower.id,
            metadata={"from_status": agreement.status.value, "reason": reason}
        )

        rejected = self._require_agreement(agreement_id)
        self._log(borrower.id, "reject", rejected, "Loan agreement rejected")
        if rejected.lender_id:
            message = f"{rejected.borrower_name or 'The borrower'} declined the loan of {rejected.amount.to_string()}."
            if reason:
                message += f" Reason: {reason}"
            self._safe_notify(rejected.lender_id, NotificationType.LOAN_REJECTED,
                              "Loan Declined", message, rejected)
        return rejected

    def cancel(self, agreement_id: str, borrower: UserIdentity) -> None:
        """
        Withdraw the caller's own unclaimed request; the record is deleted

        Raises:
            AuthorizationError: Caller is not the borrower
            InvalidStateError: A lender is attached or the request is no longer pending
            ConflictError: A lender claimed it while cancelling
        """
        agreement = self._require_agreement(agreement_id)
        if agreement.borrower_id != borrower.id:
            raise AuthorizationError("Only the borrower can cancel this request")
        if agreement.kind != AgreementKind.LOAN_REQUEST:
            raise InvalidStateError("Only loan requests can be cancelled",
                                    current_status=agreement.status.value)
        if agreement.lender_id is not None:
            raise InvalidStateError("Cannot cancel a request that a lender has claimed",
                                    current_status=agreement.status.value)
        if agreement.status != AgreementStatus.PENDING:
            raise InvalidStateError(f"Cannot cancel a request that is {agreement.status.value}",
                                    current_status=agreement.status.value)

        deleted = self.storage.conditional_delete(
            self.table_name, agreement_id,
            expected={
                'status': AgreementStatus.PENDING.value,
                'lender_id': None,
                'borrower_id': borrower.id,
                'conditions.type': AgreementKind.LOAN_REQUEST.value
            }
        )
        if not deleted:
            current = self.get_agreement(agreement_id)
            if current is None:
                raise NotFoundError(f"Loan request {agreement_id} not found")
            if current.lender_id is not None:
                raise ConflictError("This loan request has already been claimed",
                                    reason=ConflictError.ALREADY_CLAIMED)
            raise ConflictError(f"Loan request changed to {current.status.value}")

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_CANCELLED,
            entity_type="agreement",
            entity_id=agreement_id,
            user_id=borrower.id,
            metadata={"amount": agreement.amount.to_string(), "purpose": agreement.purpose}
        )
        self._log(borrower.id, "cancel", agreement, "Loan request cancelled")

    def complete(self, agreement_id: str, actor: UserIdentity) -> LoanAgreement:
        """
        Close an active loan

        The lender may close it at any time. The borrower may close it once
        completed repayments reach the total repayment snapshotted on acceptance.
        """
        agreement = self._require_agreement(agreement_id)
        if not agreement.is_party(actor.id):
            raise AuthorizationError("Only the lender or borrower can complete this loan")
        if agreement.status != AgreementStatus.ACTIVE:
            raise InvalidStateError(f"Cannot complete an agreement that is {agreement.status.value}",
                                    current_status=agreement.status.value)

        repaid = self._total_repaid(agreement)
        if actor.id != agreement.lender_id:
            total = agreement.total_repayment or agreement.amortization().total_repayment
            if repaid < total:
                raise InvalidStateError(
                    f"Outstanding balance: repaid {repaid.to_string()} of {total.to_string()}",
                    current_status=agreement.status.value
                )

        now = datetime.now(timezone.utc)
        self._transition(agreement, {
            'status': AgreementStatus.COMPLETED.value,
            'completed_at': now.isoformat(),
            'updated_at': now.isoformat()
        })

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_COMPLETED,
            entity_type="agreement",
            entity_id=agreement_id,
            user_id=actor.id,
            metadata={"total_repaid": repaid.to_string()}
        )

        completed = self._require_agreement(agreement_id)
        self._log(actor.id, "complete", completed, "Loan agreement completed")
        counterparty = completed.borrower_id if actor.id == completed.lender_id else completed.lender_id
        self._safe_notify(
            counterparty, NotificationType.LOAN_COMPLETED,
            "Loan Completed",
            f"The loan of {completed.amount.to_string()} has been marked as completed.",
            completed
        )
        return completed

    # Reads

    def get_agreement(self, agreement_id: str) -> Optional[LoanAgreement]:
        data = self.storage.load(self.table_name, agreement_id)
        if data:
            return LoanAgreement.from_dict(data)
        return None

    def find_agreements(self, filters: Dict[str, Any]) -> List[LoanAgreement]:
        return [LoanAgreement.from_dict(d) for d in self.storage.find(self.table_name, filters)]

    # Helpers

    def _require_agreement(self, agreement_id: str) -> LoanAgreement:
        agreement = self.get_agreement(agreement_id)
        if agreement is None:
            raise NotFoundError(f"Loan agreement {agreement_id} not found")
        return agreement

    @staticmethod
    def _require_identity(user: UserIdentity, role: str) -> None:
        if user is None or not user.id:
            raise ValidationError(f"{role} identity is required")

    @staticmethod
    def _validate_terms(amount: AmountLike, interest_rate: AmountLike, duration_months: Any,
                        currency: Currency = Currency.INR):
        if amount is None or amount == '':
            raise ValidationError("Loan amount is required")
        value = parse_amount(amount)
        if value <= Decimal('0'):
            raise ValidationError("Loan amount must be positive")
        money = Money(value, currency)
        if not money.is_positive():
            raise ValidationError("Loan amount must be at least one paisa")

        rate = parse_amount(interest_rate)
        if rate < Decimal('0'):
            raise ValidationError("Interest rate cannot be negative")

        if duration_months is None or isinstance(duration_months, bool):
            raise ValidationError("Loan duration is required")
        try:
            months = int(duration_months)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid loan duration: {duration_months}")
        if months != duration_months and str(months) != str(duration_months).strip():
            raise ValidationError("Loan duration must be a whole number of months")
        if months <= 0:
            raise ValidationError("Loan duration must be positive")
        return money, rate, months

    def _resolve_borrower(self, borrower: Any) -> BorrowerRef:
        if isinstance(borrower, UserIdentity):
            borrower = ResolvedUser(borrower.id, borrower.name, borrower.email)
        if isinstance(borrower, str):
            borrower = PendingInvite(email=borrower.strip())

        if isinstance(borrower, ResolvedUser):
            if not borrower.id:
                raise ValidationError("Borrower identity is required")
            return borrower
        if isinstance(borrower, PendingInvite):
            if not borrower.email or '@' not in borrower.email:
                raise ValidationError("Borrower email is required")
            if self.user_directory:
                found = self.user_directory.find_by_email(borrower.email)
                if found:
                    return ResolvedUser(found.id, found.name or borrower.name, found.email or borrower.email)
            return borrower
        raise ValidationError("Borrower identity is required")

    @staticmethod
    def _authorize_borrower(agreement: LoanAgreement, borrower: UserIdentity) -> Dict[str, Any]:
        """
        Check the caller is the borrower. An invited borrower is recognised by
        email and linked to the agreement as part of their first decision.
        """
        if borrower is None or not borrower.id:
            raise AuthorizationError("Borrower identity is required")
        if agreement.borrower_id is not None:
            if agreement.borrower_id != borrower.id:
                raise AuthorizationError("Only the borrower can respond to this agreement")
            return {}
        if agreement.invitation and _same_email(agreement.invitation.get('email'), borrower.email):
            return {
                'borrower_id': borrower.id,
                'borrower_name': agreement.borrower_name or borrower.name,
                'invitation': None
            }
        raise AuthorizationError("Only the invited borrower can respond to this agreement")

    @staticmethod
    def _require_awaiting_borrower(agreement: LoanAgreement, action: str) -> None:
        awaiting = (
            (agreement.kind == AgreementKind.LOAN_OFFER and agreement.status == AgreementStatus.PENDING)
            or (agreement.kind == AgreementKind.LOAN_REQUEST and agreement.status == AgreementStatus.CLAIMED)
        )
        if not awaiting:
            raise InvalidStateError(
                f"Cannot {action} a {agreement.kind.value} that is {agreement.status.value}",
                current_status=agreement.status.value
            )

    def _transition(self, agreement: LoanAgreement, updates: Dict[str, Any]) -> None:
        """Conditional write keyed on the status and lender observed by the caller"""
        expected = {'status': agreement.status.value, 'lender_id': agreement.lender_id}
        if 'borrower_id' in updates:
            expected['borrower_id'] = None
        if not self.storage.conditional_update(self.table_name, agreement.id, expected, updates):
            current = self.get_agreement(agreement.id)
            if current is None:
                raise NotFoundError(f"Loan agreement {agreement.id} not found")
            raise ConflictError(
                f"Loan agreement changed from {agreement.status.value} to {current.status.value}"
            )

    def _find_by_idempotency_key(self, creator_id: str, key: Optional[str]) -> Optional[LoanAgreement]:
        if not key:
            return None
        matches = self.find_agreements({'created_by': creator_id, 'idempotency_key': key})
        if matches:
            return min(matches, key=lambda a: a.created_at)
        return None

    def _total_repaid(self, agreement: LoanAgreement) -> Money:
        if self.repayment_ledger is None:
            return Money.zero(agreement.amount.currency)
        return self.repayment_ledger.total_repaid(agreement.id, agreement.amount.currency)

    def _save_agreement(self, agreement: LoanAgreement) -> None:
        self.storage.save(self.table_name, agreement.id, agreement.to_dict())

    def _generate_contract(self, agreement: LoanAgreement, summary: AmortizationSummary,
                           actor: UserIdentity) -> None:
        if not self.contract_generator:
            return
        try:
            document = self.contract_generator.generate(agreement, summary)
            self.audit_trail.log_event(
                event_type=AuditEventType.CONTRACT_GENERATED,
                entity_type="contract",
                entity_id=document.id,
                user_id=actor.id,
                metadata={"agreement_id": agreement.id, "content_hash": document.content_hash}
            )
        except Exception as e:
            log_action(
                self.logger, "warning", f"Contract generation failed: {e}",
                user_id=actor.id, action="generate_contract",
                resource=f"agreement:{agreement.id}"
            )

    def _send_invitation(self, agreement: LoanAgreement, invite: PendingInvite,
                         lender: UserIdentity) -> None:
        if not self.invitation_sender:
            log_action(
                self.logger, "info", "No invitation sender configured; borrower must sign up unprompted",
                user_id=lender.id, action="send_invitation",
                resource=f"agreement:{agreement.id}"
            )
            return
        try:
            self.invitation_sender.send_invitation(agreement, invite, lender)
        except Exception as e:
            log_action(
                self.logger, "warning", f"Invitation delivery failed: {e}",
                user_id=lender.id, action="send_invitation",
                resource=f"agreement:{agreement.id}",
                extra={"email": invite.email}
            )

    def _safe_notify(self, user_id: Optional[str], notification_type: NotificationType,
                     title: str, message: str, agreement: LoanAgreement) -> None:
        """Deliver a notification after a committed write; failures are only logged"""
        if not self.notification_sink or not user_id:
            return
        try:
            self.notification_sink.notify(
                user_id, notification_type, title, message,
                agreement_id=agreement.id,
                metadata={"status": agreement.status.value}
            )
        except Exception as e:
            log_action(
                self.logger, "warning", f"Notification failed: {e}",
                user_id=user_id, action="notify",
                resource=f"agreement:{agreement.id}",
                extra={"notification_type": notification_type.value}
            )

    def _log(self, user_id: str, action: str, agreement: LoanAgreement, message: str) -> None:
        log_action(
            self.logger, "info", message,
            user_id=user_id, action=action,
            resource=f"agreement:{agreement.id}",
            extra={"status": agreement.status.value, "amount": agreement.amount.to_string()}
        )
