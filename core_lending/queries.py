"""
Loan Query Module

Read-side views over loan agreements: the lender's browse list, a borrower's
own requests, per-user listings, payment reminders and dashboard totals.
Nothing here writes.
"""

from datetime import date, datetime, timezone
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional
from enum import Enum

from .agreements import (
    AgreementKind, AgreementStatus, LoanAgreement, LoanAgreementManager, LoanPurpose, normalize_purpose
)
from .currency import Money
from .settlement import PaymentDispatcher


class ReminderStatus(Enum):
    UPCOMING = "upcoming"
    DUE_TODAY = "due_today"
    OVERDUE = "overdue"


@dataclass
class PaymentReminder:
    """Next unpaid installment of an active loan"""
    agreement_id: str
    installment_number: int
    due_date: date
    amount: Money
    status: ReminderStatus
    days_until_due: int       # Negative when overdue
    lender_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'agreement_id': self.agreement_id,
            'installment_number': self.installment_number,
            'due_date': self.due_date.isoformat(),
            'amount': str(self.amount.amount),
            'amount_display': self.amount.to_string(),
            'status': self.status.value,
            'days_until_due': self.days_until_due,
            'lender_name': self.lender_name
        }


def _newest_first(agreements: List[LoanAgreement]) -> List[LoanAgreement]:
    return sorted(agreements, key=lambda a: a.created_at, reverse=True)


class LoanQueryService:
    """Browse, list and summarize loan agreements"""

    def __init__(self, agreement_manager: LoanAgreementManager,
                 dispatcher: Optional[PaymentDispatcher] = None):
        self.agreements = agreement_manager
        self.dispatcher = dispatcher

    def browse_open_requests(self, exclude_user_id: Optional[str],
                             purpose: Optional[str] = None) -> List[LoanAgreement]:
        """
        Open loan requests a lender can claim, newest first.
        The caller's own requests are never included.
        """
        filters: Dict[str, Any] = {
            'status': AgreementStatus.PENDING.value,
            'lender_id': None,
            'conditions.type': AgreementKind.LOAN_REQUEST.value
        }
        if purpose and purpose.strip().lower() not in ('', 'all'):
            filters['purpose'] = normalize_purpose(purpose)
        requests = [
            a for a in self.agreements.find_agreements(filters)
            if a.borrower_id != exclude_user_id
        ]
        return _newest_first(requests)

    def list_own_requests(self, user_id: str, unclaimed_only: bool = True) -> List[LoanAgreement]:
        """Requests the user posted; with unclaimed_only=False, in every state"""
        filters: Dict[str, Any] = {
            'borrower_id': user_id,
            'conditions.type': AgreementKind.LOAN_REQUEST.value
        }
        if unclaimed_only:
            filters['status'] = AgreementStatus.PENDING.value
            filters['lender_id'] = None
        return _newest_first(self.agreements.find_agreements(filters))

    @staticmethod
    def count_by_purpose(requests: List[LoanAgreement]) -> Dict[str, int]:
        counts = {purpose.value: 0 for purpose in LoanPurpose}
        for request in requests:
            counts[request.purpose] = counts.get(request.purpose, 0) + 1
        return counts

    def list_agreements_for_user(self, user_id: str, role: Optional[str] = None,
                                 status: Optional[Any] = None) -> List[LoanAgreement]:
        """
        Agreements where the user is borrower and/or lender, newest first.

        Args:
            user_id: User to list for
            role: "borrower", "lender", or None for both
            status: Optional AgreementStatus (or its value) to filter on
        """
        if role not in (None, 'borrower', 'lender'):
            raise ValueError(f"Unknown role: {role}")

        extra: Dict[str, Any] = {}
        if status is not None:
            extra['status'] = AgreementStatus(getattr(status, 'value', status)).value

        found: Dict[str, LoanAgreement] = {}
        if role in (None, 'borrower'):
            for a in self.agreements.find_agreements(dict(extra, borrower_id=user_id)):
                found[a.id] = a
        if role in (None, 'lender'):
            for a in self.agreements.find_agreements(dict(extra, lender_id=user_id)):
                found[a.id] = a
        return _newest_first(list(found.values()))

    def payment_reminders(self, borrower_id: str, today: Optional[date] = None) -> List[PaymentReminder]:
        """
        Next unpaid installment for each of the borrower's active loans.

        Installments are taken from the amortized schedule and considered paid
        in order, as far as completed repayments cover them.
        """
        today = today or datetime.now(timezone.utc).date()
        reminders = []
        for agreement in self.list_agreements_for_user(borrower_id, role='borrower',
                                                       status=AgreementStatus.ACTIVE):
            schedule = agreement.amortization().schedule
            if not schedule:
                continue
            repaid = (self.dispatcher.total_repaid(agreement.id, agreement.amount.currency)
                      if self.dispatcher else Money.zero(agreement.amount.currency))

            covered = Money.zero(agreement.amount.currency)
            next_entry = None
            for entry in schedule:
                covered = covered + entry.payment_amount
                if covered > repaid:
                    next_entry = entry
                    break
            if next_entry is None:
                continue

            days = (next_entry.payment_date - today).days
            if days < 0:
                status = ReminderStatus.OVERDUE
            elif days == 0:
                status = ReminderStatus.DUE_TODAY
            else:
                status = ReminderStatus.UPCOMING

            reminders.append(PaymentReminder(
                agreement_id=agreement.id,
                installment_number=next_entry.payment_number,
                due_date=next_entry.payment_date,
                amount=next_entry.payment_amount,
                status=status,
                days_until_due=days,
                lender_name=agreement.lender_name
            ))

        reminders.sort(key=lambda r: r.due_date)
        return reminders

    def dashboard_summary(self, user_id: str) -> Dict[str, Any]:
        """Counts per status plus total lent and borrowed on live and closed loans"""
        agreements = self.list_agreements_for_user(user_id)
        counts = {status.value: 0 for status in AgreementStatus}
        total_lent = Decimal('0')
        total_borrowed = Decimal('0')
        awaiting_decision = 0

        for agreement in agreements:
            counts[agreement.status.value] += 1
            funded = agreement.status in (AgreementStatus.ACTIVE, AgreementStatus.COMPLETED)
            if funded and agreement.lender_id == user_id:
                total_lent += agreement.amount.amount
            if funded and agreement.borrower_id == user_id:
                total_borrowed += agreement.amount.amount
            if agreement.borrower_id == user_id and (
                (agreement.kind == AgreementKind.LOAN_OFFER and agreement.status == AgreementStatus.PENDING)
                or agreement.status == AgreementStatus.CLAIMED
            ):
                awaiting_decision += 1

        return {
            'user_id': user_id,
            'total_agreements': len(agreements),
            'status_counts': counts,
            'active_loans': counts[AgreementStatus.ACTIVE.value],
            'awaiting_decision': awaiting_decision,
            'total_lent': Money(total_lent),
            'total_borrowed': Money(total_borrowed)
        }
