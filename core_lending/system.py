"""
Lending System Module

Wires storage, audit trail, notification sinks, contract generation, the
settlement dispatcher, the agreement state machine and the query service
into one object. The API layer holds a single instance.
"""

from typing import Any, Dict, Optional

from .agreements import (
    AgreementStatus, InvitationSender, LoanAgreementManager, UserDirectory, UserIdentity
)
from .audit import AuditTrail
from .config import LendingConfig, get_config
from .contracts import TextContractGenerator
from .currency import AmountLike
from .errors import AuthorizationError, InvalidStateError, NotFoundError, ValidationError
from .logging_config import get_logger, setup_logging
from .notifications import (
    CompositeNotificationSink, InAppNotificationSink, NotificationSink, WebhookNotificationSink
)
from .queries import LoanQueryService
from .settlement import PaymentDispatcher, PaymentIntent, PaymentResult, TransactionType
from .storage import StorageInterface, create_storage


class LendingSystem:
    """P2P lending core with all components initialized"""

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        cfg: Optional[LendingConfig] = None,
        notification_sink: Optional[NotificationSink] = None,
        user_directory: Optional[UserDirectory] = None,
        invitation_sender: Optional[InvitationSender] = None,
        configure_logging: bool = False
    ):
        self.cfg = cfg or get_config()
        if configure_logging:
            setup_logging(self.cfg.log_level, log_format=self.cfg.log_format, log_file=self.cfg.log_file)
        self.logger = get_logger("lendit.system")

        self.storage = storage or create_storage(self.cfg.database_url)
        self.audit_trail = AuditTrail(self.storage)

        self.inbox = InAppNotificationSink(self.storage)
        self.notification_sink = notification_sink or self._create_notification_sink()

        self.contract_generator = TextContractGenerator(self.storage)
        self.dispatcher = PaymentDispatcher(
            self.storage, self.audit_trail, self.notification_sink, cfg=self.cfg
        )
        self.agreement_manager = LoanAgreementManager(
            self.storage, self.audit_trail, self.notification_sink,
            contract_generator=self.contract_generator,
            user_directory=user_directory,
            invitation_sender=invitation_sender,
            repayment_ledger=self.dispatcher,
            cfg=self.cfg
        )
        self.queries = LoanQueryService(self.agreement_manager, self.dispatcher)

    def _create_notification_sink(self) -> NotificationSink:
        """In-app inbox, plus the webhook when one is configured"""
        if not self.cfg.notification_webhook_url:
            return self.inbox
        return CompositeNotificationSink([
            self.inbox,
            WebhookNotificationSink(
                self.cfg.notification_webhook_url,
                timeout=self.cfg.notification_webhook_timeout
            )
        ])

    def pay(
        self,
        agreement_id: str,
        payer: UserIdentity,
        amount: AmountLike,
        method: Any = None,
        metadata: Optional[Dict[str, Any]] = None,
        transaction_type: Optional[TransactionType] = None,
        idempotency_key: Optional[str] = None,
        reference: Optional[str] = None
    ) -> PaymentResult:
        """
        Settle a payment on an active agreement

        The lender disburses and the borrower repays; the counterparty is the
        recipient. The method defaults to the one agreed on the loan.

        Raises:
            NotFoundError: Agreement does not exist
            AuthorizationError: Payer is not a party to the agreement
            ValidationError: Transaction type does not fit the payer's role
            InvalidStateError: Agreement is not active
        """
        agreement = self.agreement_manager.get_agreement(agreement_id)
        if agreement is None:
            raise NotFoundError(f"Loan agreement {agreement_id} not found")
        if not agreement.is_party(payer.id):
            raise AuthorizationError("Only the lender or borrower can pay on this agreement")
        if agreement.status != AgreementStatus.ACTIVE:
            raise InvalidStateError(f"Payments need an active agreement, this one is {agreement.status.value}",
                                    current_status=agreement.status.value)

        is_lender = payer.id == agreement.lender_id
        if transaction_type is None:
            transaction_type = TransactionType.DISBURSEMENT if is_lender else TransactionType.REPAYMENT
        if is_lender != (transaction_type == TransactionType.DISBURSEMENT):
            raise ValidationError(
                f"A {'lender' if is_lender else 'borrower'} cannot make a {transaction_type.value} payment"
            )

        intent = PaymentIntent(
            amount=amount,
            agreement_id=agreement.id,
            payer_id=payer.id,
            recipient_id=agreement.borrower_id if is_lender else agreement.lender_id,
            transaction_type=transaction_type,
            method=method if method is not None else agreement.payment_method,
            metadata=metadata or {},
            reference=reference,
            idempotency_key=idempotency_key,
            currency=agreement.amount.currency
        )
        return self.dispatcher.process_payment(intent)

    def close(self) -> None:
        self.storage.close()
