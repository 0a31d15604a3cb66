"""
Test suite for the loan agreement state machine

Tests request/offer creation, claim (including concurrent claims), accept,
reject, cancel and complete, plus the invariants around who may do what.
"""

import threading
import pytest
from decimal import Decimal

from core_lending.agreements import (
    AgreementKind, AgreementStatus, InvitationSender, LoanAgreementManager, LoanPurpose,
    PendingInvite, ResolvedUser, UserDirectory, UserIdentity
)
from core_lending.audit import AuditTrail, AuditEventType
from core_lending.contracts import TextContractGenerator
from core_lending.errors import (
    AuthorizationError, ConflictError, InvalidStateError, NotFoundError, ValidationError
)
from core_lending.notifications import InAppNotificationSink, NotificationSink, NotificationType
from core_lending.payment_methods import PaymentMethod
from core_lending.storage import InMemoryStorage
from core_lending.system import LendingSystem

from conftest import BORROWER, LENDER, OTHER_LENDER


def post_request(system, borrower=BORROWER, amount="50000", **kwargs):
    kwargs.setdefault("purpose", LoanPurpose.EDUCATION)
    kwargs.setdefault("duration_months", 12)
    return system.agreement_manager.create_request(borrower, amount, **kwargs)


def inbox_types(system, user_id):
    return [n.notification_type for n in system.inbox.get_notifications(user_id)]


class TestCreateRequest:
    """Test borrower-initiated requests"""

    def test_creates_open_request(self, system):
        agreement = post_request(system, extra_fields={
            "monthly_income": "45000", "employment_status": "salaried", "unknown": "dropped"
        })

        assert agreement.status == AgreementStatus.PENDING
        assert agreement.lender_id is None
        assert agreement.kind == AgreementKind.LOAN_REQUEST
        assert agreement.is_open_request
        assert agreement.conditions == {
            "monthly_income": "45000", "employment_status": "salaried", "type": "loan_request"
        }
        assert system.agreement_manager.get_agreement(agreement.id).amount.amount == Decimal("50000.00")

    def test_default_interest_rate(self, system):
        agreement = post_request(system)
        assert agreement.interest_rate == Decimal("10")

    def test_parses_formatted_amount(self, system):
        agreement = post_request(system, amount="₹1,00,000")
        assert agreement.amount.amount == Decimal("100000.00")

    def test_free_text_purpose(self, system):
        agreement = post_request(system, purpose="Buy a sewing machine")
        assert agreement.purpose == "Buy a sewing machine"

    @pytest.mark.parametrize("kwargs", [
        {"amount": "0"},
        {"amount": "-500"},
        {"amount": "lots"},
        {"duration_months": 0},
        {"duration_months": "12.5"},
        {"interest_rate": "-1"},
        {"purpose": ""},
        {"amount": "1" + "0" * 30},
    ])
    def test_invalid_input_writes_nothing(self, system, kwargs):
        with pytest.raises(ValidationError):
            post_request(system, **kwargs)
        assert system.storage.count(system.agreement_manager.table_name) == 0

    def test_idempotent_per_creator(self, system):
        first = post_request(system, idempotency_key="req-1")
        second = post_request(system, idempotency_key="req-1")
        other = post_request(system, borrower=OTHER_LENDER, idempotency_key="req-1")

        assert first.id == second.id
        assert other.id != first.id
        assert system.storage.count(system.agreement_manager.table_name) == 2

    def test_notifies_borrower(self, system):
        post_request(system)
        notifications = system.inbox.get_notifications(BORROWER.id)
        assert notifications[0].notification_type == NotificationType.LOAN_REQUEST_CREATED


class TestClaim:
    """Test lenders claiming open requests"""

    def test_claim_attaches_lender(self, system):
        request = post_request(system)
        claimed = system.agreement_manager.claim(request.id, LENDER)

        assert claimed.status == AgreementStatus.CLAIMED
        assert claimed.lender_id == LENDER.id
        assert claimed.lender_name == LENDER.name
        assert NotificationType.LOAN_CLAIMED in inbox_types(system, BORROWER.id)

    def test_borrower_cannot_claim_own_request(self, system):
        request = post_request(system)
        with pytest.raises(ValidationError):
            system.agreement_manager.claim(request.id, BORROWER)
        assert system.agreement_manager.get_agreement(request.id).lender_id is None

    def test_second_claim_conflicts(self, system):
        request = post_request(system)
        system.agreement_manager.claim(request.id, LENDER)

        with pytest.raises(ConflictError) as exc_info:
            system.agreement_manager.claim(request.id, OTHER_LENDER)
        assert exc_info.value.reason == ConflictError.ALREADY_CLAIMED
        assert system.agreement_manager.get_agreement(request.id).lender_id == LENDER.id

    def test_claim_missing_request(self, system):
        with pytest.raises(NotFoundError) as exc_info:
            system.agreement_manager.claim("missing", LENDER)
        assert exc_info.value.reason == ConflictError.NOT_FOUND

    def test_claim_after_cancel_is_not_found(self, system):
        request = post_request(system)
        system.agreement_manager.cancel(request.id, BORROWER)
        with pytest.raises(NotFoundError):
            system.agreement_manager.claim(request.id, LENDER)

    def test_offers_cannot_be_claimed(self, system):
        offer = system.agreement_manager.create_offer(
            LENDER, ResolvedUser(BORROWER.id, BORROWER.name, BORROWER.email),
            "10000", "8", 6, "business", PaymentMethod.UPI
        )
        with pytest.raises(InvalidStateError):
            system.agreement_manager.claim(offer.id, OTHER_LENDER)

    def test_rejected_request_cannot_be_claimed(self, system):
        request = post_request(system)
        system.agreement_manager.claim(request.id, LENDER)
        system.agreement_manager.reject(request.id, BORROWER)
        with pytest.raises(ConflictError):
            system.agreement_manager.claim(request.id, OTHER_LENDER)
        assert system.agreement_manager.get_agreement(request.id).status == AgreementStatus.REJECTED

    def test_non_atomic_fallback(self, system):
        request = post_request(system)
        claimed = system.agreement_manager.claim(request.id, LENDER, atomic=False)
        assert claimed.lender_id == LENDER.id

    @pytest.mark.parametrize("backend", ["memory", "sqlite"])
    def test_concurrent_claims_have_exactly_one_winner(self, backend):
        from core_lending.storage import SQLiteStorage
        storage = InMemoryStorage() if backend == "memory" else SQLiteStorage(":memory:")
        system = LendingSystem(storage=storage)
        request = post_request(system)

        lenders = [UserIdentity(id=f"lender-{i}", name=f"Lender {i}") for i in range(10)]
        barrier = threading.Barrier(len(lenders))
        outcomes = []
        lock = threading.Lock()

        def attempt(lender):
            barrier.wait()
            try:
                system.agreement_manager.claim(request.id, lender)
                result = ("won", lender.id)
            except ConflictError as e:
                result = ("lost", e.reason)
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=attempt, args=(lender,)) for lender in lenders]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = [value for kind, value in outcomes if kind == "won"]
        losers = [value for kind, value in outcomes if kind == "lost"]
        assert len(winners) == 1
        assert losers == [ConflictError.ALREADY_CLAIMED] * 9
        assert system.agreement_manager.get_agreement(request.id).lender_id == winners[0]
        system.close()


class TestAccept:
    """Test borrower acceptance"""

    def test_accept_claimed_request_snapshots_totals(self, system):
        request = post_request(system, amount="100000", interest_rate="12", duration_months=12)
        system.agreement_manager.claim(request.id, LENDER)
        accepted = system.agreement_manager.accept(request.id, BORROWER)

        assert accepted.status == AgreementStatus.ACTIVE
        assert accepted.accepted_at is not None
        assert accepted.monthly_payment.amount == Decimal("8884.88")
        assert accepted.total_repayment.amount == Decimal("106618.55")

    def test_accept_generates_contract_and_notifies_lender(self, system):
        request = post_request(system, amount="100000", interest_rate="12", duration_months=12)
        system.agreement_manager.claim(request.id, LENDER)
        system.agreement_manager.accept(request.id, BORROWER)

        contract = system.contract_generator.get_contract(request.id)
        assert contract is not None
        assert contract.verify_hash()
        assert "LOAN AGREEMENT CONTRACT" in contract.content
        assert "₹8,884.88" in contract.content
        assert "₹1,06,618.55" in contract.content
        assert NotificationType.LOAN_ACCEPTED in inbox_types(system, LENDER.id)

    def test_accept_pending_offer(self, system):
        offer = system.agreement_manager.create_offer(
            LENDER, ResolvedUser(BORROWER.id, BORROWER.name, BORROWER.email),
            "24000", "0", 12, "medical", "bank"
        )
        accepted = system.agreement_manager.accept(offer.id, BORROWER)
        assert accepted.status == AgreementStatus.ACTIVE
        assert accepted.monthly_payment.amount == Decimal("2000.00")

    def test_only_borrower_can_accept(self, system):
        request = post_request(system)
        system.agreement_manager.claim(request.id, LENDER)
        with pytest.raises(AuthorizationError):
            system.agreement_manager.accept(request.id, LENDER)

    def test_unclaimed_request_cannot_be_accepted(self, system):
        request = post_request(system)
        with pytest.raises(InvalidStateError):
            system.agreement_manager.accept(request.id, BORROWER)

    def test_active_agreement_cannot_be_accepted_again(self, system):
        request = post_request(system)
        system.agreement_manager.claim(request.id, LENDER)
        system.agreement_manager.accept(request.id, BORROWER)
        with pytest.raises(InvalidStateError):
            system.agreement_manager.accept(request.id, BORROWER)

    @pytest.mark.parametrize("closing", ["complete", "reject"])
    def test_closed_agreement_cannot_be_accepted(self, system, closing):
        request = post_request(system)
        system.agreement_manager.claim(request.id, LENDER)
        if closing == "complete":
            system.agreement_manager.accept(request.id, BORROWER)
            system.agreement_manager.complete(request.id, LENDER)
        else:
            system.agreement_manager.reject(request.id, BORROWER)

        before = system.agreement_manager.get_agreement(request.id).status
        with pytest.raises(InvalidStateError):
            system.agreement_manager.accept(request.id, BORROWER)
        assert system.agreement_manager.get_agreement(request.id).status == before

    def test_failing_side_effects_do_not_undo_acceptance(self):
        class ExplodingSink(NotificationSink):
            def notify(self, *args, **kwargs):
                raise RuntimeError("smtp down")

        class ExplodingContracts(TextContractGenerator):
            def generate(self, agreement, summary):
                raise RuntimeError("renderer crashed")

        storage = InMemoryStorage()
        manager = LoanAgreementManager(
            storage, AuditTrail(storage), ExplodingSink(),
            contract_generator=ExplodingContracts(storage)
        )
        request = manager.create_request(BORROWER, "5000", "travel", 3)
        manager.claim(request.id, LENDER)
        accepted = manager.accept(request.id, BORROWER)

        assert accepted.status == AgreementStatus.ACTIVE
        assert manager.get_agreement(request.id).status == AgreementStatus.ACTIVE


class TestReject:

    def test_reject_claimed_request(self, system):
        request = post_request(system)
        system.agreement_manager.claim(request.id, LENDER)
        rejected = system.agreement_manager.reject(request.id, BORROWER, reason="Found a cheaper loan")

        assert rejected.status == AgreementStatus.REJECTED
        assert rejected.rejection_reason == "Found a cheaper loan"
        assert rejected.rejected_at is not None
        assert NotificationType.LOAN_REJECTED in inbox_types(system, LENDER.id)

    def test_reject_twice_is_invalid(self, system):
        request = post_request(system)
        system.agreement_manager.claim(request.id, LENDER)
        system.agreement_manager.reject(request.id, BORROWER)
        with pytest.raises(InvalidStateError):
            system.agreement_manager.reject(request.id, BORROWER)

    def test_active_agreement_cannot_be_rejected(self, system):
        request = post_request(system)
        system.agreement_manager.claim(request.id, LENDER)
        system.agreement_manager.accept(request.id, BORROWER)
        with pytest.raises(InvalidStateError):
            system.agreement_manager.reject(request.id, BORROWER)

    def test_lender_cannot_reject(self, system):
        request = post_request(system)
        system.agreement_manager.claim(request.id, LENDER)
        with pytest.raises(AuthorizationError):
            system.agreement_manager.reject(request.id, LENDER)

    def test_unclaimed_request_is_cancelled_not_rejected(self, system):
        request = post_request(system)
        with pytest.raises(InvalidStateError) as exc_info:
            system.agreement_manager.reject(request.id, BORROWER)
        assert "cancel" in str(exc_info.value)

        stored = system.agreement_manager.get_agreement(request.id)
        assert stored.status == AgreementStatus.PENDING
        assert stored.lender_id is None
        assert stored.is_open_request

    def test_reject_pending_offer(self, system):
        offer = system.agreement_manager.create_offer(
            LENDER, ResolvedUser(BORROWER.id, BORROWER.name, BORROWER.email),
            "10000", "8", 6, "business", PaymentMethod.UPI
        )
        rejected = system.agreement_manager.reject(offer.id, BORROWER)
        assert rejected.status == AgreementStatus.REJECTED


class TestCancel:

    def test_cancel_deletes_unclaimed_request(self, system):
        request = post_request(system)
        system.agreement_manager.cancel(request.id, BORROWER)
        assert system.agreement_manager.get_agreement(request.id) is None
        events = system.audit_trail.get_events_for_entity("agreement", request.id)
        assert events[-1].event_type == AuditEventType.LOAN_CANCELLED

    def test_only_borrower_can_cancel(self, system):
        request = post_request(system)
        with pytest.raises(AuthorizationError):
            system.agreement_manager.cancel(request.id, LENDER)
        assert system.agreement_manager.get_agreement(request.id) is not None

    def test_claimed_request_cannot_be_cancelled(self, system):
        request = post_request(system)
        system.agreement_manager.claim(request.id, LENDER)
        with pytest.raises(InvalidStateError):
            system.agreement_manager.cancel(request.id, BORROWER)
        assert system.agreement_manager.get_agreement(request.id).status == AgreementStatus.CLAIMED

    def test_cancel_missing(self, system):
        with pytest.raises(NotFoundError):
            system.agreement_manager.cancel("missing", BORROWER)


class TestOffers:
    """Test lender-initiated offers and borrower invitations"""

    class Directory(UserDirectory):
        def __init__(self, users):
            self.users = {u.email: u for u in users}

        def find_by_email(self, email):
            return self.users.get(email)

    class RecordingInvitations(InvitationSender):
        def __init__(self):
            self.sent = []

        def send_invitation(self, agreement, invite, inviter):
            self.sent.append((agreement.id, invite.email, inviter.id))

    def make_manager(self, users=()):
        self.storage = InMemoryStorage()
        self.inbox = InAppNotificationSink(self.storage)
        self.invitations = self.RecordingInvitations()
        return LoanAgreementManager(
            self.storage, AuditTrail(self.storage), self.inbox,
            user_directory=self.Directory(users),
            invitation_sender=self.invitations
        )

    def test_offer_to_registered_borrower(self):
        manager = self.make_manager()
        offer = manager.create_offer(
            LENDER, ResolvedUser(BORROWER.id, BORROWER.name, BORROWER.email),
            "10000", "8", 6, "business", "wallet", smart_contract=True,
            conditions={"collateral": "none"}
        )

        assert offer.status == AgreementStatus.PENDING
        assert offer.kind == AgreementKind.LOAN_OFFER
        assert offer.lender_id == LENDER.id
        assert offer.borrower_id == BORROWER.id
        assert offer.smart_contract
        assert offer.payment_method == PaymentMethod.WALLET
        assert self.inbox.get_notifications(BORROWER.id)[0].notification_type == NotificationType.LOAN_OFFER_RECEIVED

    def test_email_is_resolved_through_directory(self):
        manager = self.make_manager(users=[ResolvedUser(BORROWER.id, BORROWER.name, BORROWER.email)])
        offer = manager.create_offer(LENDER, BORROWER.email, "10000", "8", 6, "business", "upi")
        assert offer.borrower_id == BORROWER.id
        assert offer.invitation is None
        assert self.invitations.sent == []

    def test_unknown_email_becomes_invitation(self):
        manager = self.make_manager()
        offer = manager.create_offer(
            LENDER, PendingInvite(email="new@example.com", name="Ravi"),
            "10000", "8", 6, None, "upi"
        )

        assert offer.borrower_id is None
        assert offer.borrower_email == "new@example.com"
        assert offer.invitation["email"] == "new@example.com"
        assert offer.purpose == LoanPurpose.OTHER.value
        assert self.invitations.sent == [(offer.id, "new@example.com", LENDER.id)]

    def test_invited_borrower_accepts_by_email(self):
        manager = self.make_manager()
        offer = manager.create_offer(
            LENDER, PendingInvite(email="new@example.com", name="Ravi"),
            "10000", "8", 6, "wedding", "upi"
        )

        with pytest.raises(AuthorizationError):
            manager.accept(offer.id, UserIdentity(id="someone", email="other@example.com"))

        accepted = manager.accept(offer.id, UserIdentity(id="ravi-1", name="Ravi", email="NEW@example.com"))
        assert accepted.borrower_id == "ravi-1"
        assert accepted.invitation is None
        assert accepted.status == AgreementStatus.ACTIVE

    def test_lender_cannot_offer_to_themselves(self):
        manager = self.make_manager()
        with pytest.raises(ValidationError):
            manager.create_offer(LENDER, ResolvedUser(LENDER.id), "1000", "5", 3, "other", "upi")
        with pytest.raises(ValidationError):
            manager.create_offer(LENDER, PendingInvite(email=LENDER.email), "1000", "5", 3, "other", "upi")

    def test_missing_borrower_identity(self):
        manager = self.make_manager()
        with pytest.raises(ValidationError):
            manager.create_offer(LENDER, PendingInvite(email=""), "1000", "5", 3, "other", "upi")
        with pytest.raises(ValidationError):
            manager.create_offer(LENDER, None, "1000", "5", 3, "other", "upi")

    def test_unknown_payment_method(self):
        manager = self.make_manager()
        with pytest.raises(ValidationError):
            manager.create_offer(LENDER, ResolvedUser(BORROWER.id), "1000", "5", 3, "other", "cheque")

    def test_amount_beyond_decimal_precision(self):
        manager = self.make_manager()
        with pytest.raises(ValidationError):
            manager.create_offer(LENDER, ResolvedUser(BORROWER.id), "1" + "0" * 30, "5", 3, "other", "upi")
        assert self.storage.count(manager.table_name) == 0

    def test_idempotent_offer(self):
        manager = self.make_manager()
        first = manager.create_offer(LENDER, ResolvedUser(BORROWER.id), "1000", "5", 3, "other", "upi",
                                     idempotency_key="offer-1")
        second = manager.create_offer(LENDER, ResolvedUser(BORROWER.id), "1000", "5", 3, "other", "upi",
                                      idempotency_key="offer-1")
        assert first.id == second.id


class TestComplete:
    """Test closing active loans"""

    def activate(self, system, amount="12000", rate="0", months=12):
        request = post_request(system, amount=amount, interest_rate=rate, duration_months=months)
        system.agreement_manager.claim(request.id, LENDER)
        return system.agreement_manager.accept(request.id, BORROWER)

    def test_lender_can_complete(self, system):
        agreement = self.activate(system)
        completed = system.agreement_manager.complete(agreement.id, LENDER)
        assert completed.status == AgreementStatus.COMPLETED
        assert completed.completed_at is not None
        assert NotificationType.LOAN_COMPLETED in inbox_types(system, BORROWER.id)

    def test_borrower_needs_full_repayment(self, system):
        agreement = self.activate(system)

        system.pay(agreement.id, BORROWER, "6000", method="cash")
        with pytest.raises(InvalidStateError):
            system.agreement_manager.complete(agreement.id, BORROWER)

        system.pay(agreement.id, BORROWER, "6000", method="cash")
        completed = system.agreement_manager.complete(agreement.id, BORROWER)
        assert completed.status == AgreementStatus.COMPLETED

    def test_outsider_cannot_complete(self, system):
        agreement = self.activate(system)
        with pytest.raises(AuthorizationError):
            system.agreement_manager.complete(agreement.id, OTHER_LENDER)

    def test_only_active_agreements_complete(self, system):
        request = post_request(system)
        system.agreement_manager.claim(request.id, LENDER)
        with pytest.raises(InvalidStateError):
            system.agreement_manager.complete(request.id, LENDER)


class TestPayOnAgreement:
    """Test LendingSystem.pay routing payments onto an agreement"""

    def test_roles_pick_transaction_type_and_recipient(self, system):
        request = post_request(system)
        system.agreement_manager.claim(request.id, LENDER)
        system.agreement_manager.accept(request.id, BORROWER)

        disbursement = system.pay(request.id, LENDER, "50000", method="bank",
                                  metadata={"account_number": "123456789012", "ifsc": "SBIN0001234"})
        repayment = system.pay(request.id, BORROWER, "4000", metadata={"upi_id": "asha@okaxis"})

        assert disbursement.success and repayment.success
        first = system.dispatcher.get_transaction(disbursement.transaction_id)
        second = system.dispatcher.get_transaction(repayment.transaction_id)
        assert (first.transaction_type.value, first.recipient_id) == ("disbursement", BORROWER.id)
        assert (second.transaction_type.value, second.recipient_id) == ("repayment", LENDER.id)
        assert second.payment_method == PaymentMethod.UPI

    def test_payment_needs_active_agreement(self, system):
        request = post_request(system)
        system.agreement_manager.claim(request.id, LENDER)
        with pytest.raises(InvalidStateError):
            system.pay(request.id, BORROWER, "100", method="cash")

    def test_outsider_cannot_pay(self, system):
        request = post_request(system)
        system.agreement_manager.claim(request.id, LENDER)
        system.agreement_manager.accept(request.id, BORROWER)
        with pytest.raises(AuthorizationError):
            system.pay(request.id, OTHER_LENDER, "100", method="cash")


class TestAuditChain:

    def test_full_lifecycle_keeps_chain_valid(self, system):
        request = post_request(system)
        system.agreement_manager.claim(request.id, LENDER)
        system.agreement_manager.accept(request.id, BORROWER)
        system.pay(request.id, BORROWER, "1000", method="cash")
        system.agreement_manager.complete(request.id, LENDER)

        integrity = system.audit_trail.verify_integrity()
        assert integrity["valid"]
        events = [e.event_type for e in system.audit_trail.get_events_for_entity("agreement", request.id)]
        assert events == [
            AuditEventType.LOAN_REQUEST_CREATED,
            AuditEventType.LOAN_CLAIMED,
            AuditEventType.LOAN_ACCEPTED,
            AuditEventType.LOAN_COMPLETED,
        ]
