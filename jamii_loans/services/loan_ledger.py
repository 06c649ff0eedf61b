"""Loan Ledger - the authoritative loan lifecycle state machine"""

import logging
import re
import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from starlette.background import BackgroundTasks

from jamii_loans.config import settings
from jamii_loans.domain.exceptions import (
    AutoApprovalCriteriaError,
    DuplicateActiveLoanError,
    AmountExceedsLimitError,
    GatewayError,
    IneligibleError,
    NotFoundError,
    PermissionDeniedError,
    StateConflictError,
    ValidationError,
)
from jamii_loans.domain.models import (
    ACTIVE_LOAN_STATUSES,
    DisbursementStatus,
    EligibilityResult,
    LoanStatus,
    NotificationType,
)
from jamii_loans.domain.underwriting import (
    AUTO_APPROVAL_SCORE_BONUS,
    MANUAL_APPROVAL_SCORE_BONUS,
    MAX_LOAN_AMOUNT,
    MIN_LOAN_AMOUNT,
    calculate_fee,
    check_eligibility,
    evaluate_auto_approval,
)
from jamii_loans.infrastructure.clients.mailer import LoanMail, MailClient
from jamii_loans.infrastructure.clients.mpesa import MpesaClient
from jamii_loans.infrastructure.database.models import FeeTransaction, Loan, User
from jamii_loans.infrastructure.database.repositories import LoanRepository, UserRepository
from jamii_loans.infrastructure.observability.logging import log_transition
from jamii_loans.infrastructure.observability.metrics import record_application, record_transition
from jamii_loans.services.notifications import NotificationService
from jamii_loans.services.transaction_ledger import TransactionLedger
from jamii_loans.utils.date_utils import utcnow

logger = logging.getLogger(__name__)

PHONE_PATTERN = re.compile(r"^254\d{9}$")


def validate_phone_number(phone_number: Any) -> str:
    """Kenyan MSISDN in international format: 254xxxxxxxxx"""
    if not isinstance(phone_number, str) or not PHONE_PATTERN.match(phone_number):
        raise ValidationError("Phone number must be in format 254xxxxxxxxx")
    return phone_number


def validate_amount(amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or not MIN_LOAN_AMOUNT <= amount <= MAX_LOAN_AMOUNT:
        raise ValidationError(f"Loan amount must be between {MIN_LOAN_AMOUNT} and {MAX_LOAN_AMOUNT}")
    return amount


class LoanLedger:
    """
    Loan lifecycle operations.

    Status: pending -> approved | rejected; approved -> paid | defaulted.
    Disbursement (only once approved): pending -> processing -> completed | failed.

    Every transition is a conditional UPDATE on the expected current state, so
    two concurrent requests on the same loan cannot both succeed. Emails are
    queued on background_tasks and run after the caller has returned.
    """

    def __init__(
        self,
        db: Session,
        mpesa_client: MpesaClient | None = None,
        mail_client: MailClient | None = None,
        background_tasks: BackgroundTasks | None = None,
    ):
        self.db = db
        self.users = UserRepository(db)
        self.loans = LoanRepository(db)
        self.transactions = TransactionLedger(db)
        self.notifications = NotificationService(db)
        self.mpesa_client = mpesa_client or MpesaClient()
        self.mail_client = mail_client or MailClient()
        self.background_tasks = background_tasks if background_tasks is not None else BackgroundTasks()

    # -- lookups -----------------------------------------------------------

    def get_user(self, user_id: uuid.UUID) -> User:
        user = self.users.get(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def get_loan(self, loan_id: uuid.UUID) -> Loan:
        loan = self.loans.reload(loan_id)
        if loan is None:
            raise NotFoundError("Loan not found")
        return loan

    def _conflict(self, loan_id: uuid.UUID, message: str, field: str, required: str) -> StateConflictError:
        """Roll back the failed attempt and describe current vs required state"""
        self.db.rollback()
        loan = self.loans.reload(loan_id)
        current = getattr(loan, field) if loan is not None else None
        return StateConflictError(message, current=current, required=required)

    def _email(self, method: str, user: User, loan: Loan) -> None:
        """Queue a best-effort email; MailClient logs failures and never raises"""
        self.background_tasks.add_task(getattr(self.mail_client, method), LoanMail.from_models(user, loan))

    def _transitioned(self, loan_id: uuid.UUID, field: str, from_state: Optional[str], to_state: str, actor_id: Any) -> None:
        log_transition(loan_id, field, from_state, to_state, actor_id)
        record_transition(field, to_state)

    # -- underwriting ------------------------------------------------------

    def check_eligibility(self, user_id: uuid.UUID) -> EligibilityResult:
        user = self.get_user(user_id)
        return check_eligibility(user, self.loans.has_active_loan(user.id))

    # -- application -------------------------------------------------------

    async def apply(
        self,
        user_id: uuid.UUID,
        amount: int,
        phone_number: str,
        description: Optional[str] = None,
    ) -> Loan:
        """
        Create a pending loan for the user.

        Raises:
            ValidationError: Amount out of bounds, bad phone or description
            IneligibleError: User is not eligible (e.g. not a citizen)
            DuplicateActiveLoanError: User already holds a pending/approved loan
            AmountExceedsLimitError: Amount above the user's loan limit
        """
        validate_amount(amount)
        validate_phone_number(phone_number)
        if description is not None and not isinstance(description, str):
            raise ValidationError("Description must be a string")

        user = self.get_user(user_id)
        has_active_loan = self.loans.has_active_loan(user.id)
        eligibility = check_eligibility(user, has_active_loan)
        if not eligibility.eligible:
            if user.is_citizen and has_active_loan:
                raise DuplicateActiveLoanError(eligibility.reason)
            raise IneligibleError(eligibility.reason)

        if amount > user.loan_limit:
            raise AmountExceedsLimitError(amount, user.loan_limit)

        try:
            loan = self.loans.create(
                user_id=user.id,
                amount=amount,
                fee_amount=calculate_fee(amount),
                phone_number=phone_number,
                description=description.strip() if description else description,
            )
            self.users.record_application(user.id)
            self.db.commit()
        except IntegrityError as e:
            # A concurrent application won the race for the active-loan slot
            self.db.rollback()
            raise DuplicateActiveLoanError(
                "You have pending or approved loans. Please settle them first."
            ) from e

        record_application(amount)
        log_transition(loan.id, "status", None, LoanStatus.PENDING.value, user.id)
        self._email("send_loan_application_email", user, loan)
        return loan

    # -- review ------------------------------------------------------------

    async def approve(self, loan_id: uuid.UUID, admin_id: uuid.UUID) -> Loan:
        """
        Manually approve a pending loan.

        The processing fee is deliberately not required here (relaxed gate).
        """
        loan = self.get_loan(loan_id)
        approved = self.loans.transition(
            loan_id,
            {"status": LoanStatus.PENDING.value},
            status=LoanStatus.APPROVED.value,
            approved_by=admin_id,
            approval_date=utcnow(),
        )
        if not approved:
            raise self._conflict(loan_id, "Loan is not in pending status", "status", LoanStatus.PENDING.value)

        self.users.record_approval(loan.user_id, MANUAL_APPROVAL_SCORE_BONUS)
        self.db.commit()
        self._transitioned(loan_id, "status", LoanStatus.PENDING.value, LoanStatus.APPROVED.value, admin_id)

        loan = self.get_loan(loan_id)
        self._email("send_loan_approval_email", loan.user, loan)
        return loan

    async def reject(self, loan_id: uuid.UUID, admin_id: uuid.UUID, reason: str) -> Loan:
        if not isinstance(reason, str) or not reason.strip():
            raise ValidationError("Rejection reason is required")

        loan = self.get_loan(loan_id)
        rejected = self.loans.transition(
            loan_id,
            {"status": LoanStatus.PENDING.value},
            status=LoanStatus.REJECTED.value,
            rejection_reason=reason.strip(),
        )
        if not rejected:
            raise self._conflict(loan_id, "Loan is not in pending status", "status", LoanStatus.PENDING.value)

        self.db.commit()
        self._transitioned(loan_id, "status", LoanStatus.PENDING.value, LoanStatus.REJECTED.value, admin_id)

        loan = self.get_loan(loan_id)
        self.notifications.create(
            user_id=loan.user_id,
            loan_id=loan.id,
            type=NotificationType.LOAN_REJECTED,
            title="Loan Application Rejected",
            message=f"Your loan application for KSh {loan.amount:,} was rejected. Reason: {loan.rejection_reason}",
            metadata={"amount": loan.amount, "reason": loan.rejection_reason},
        )
        self._email("send_loan_rejection_email", loan.user, loan)
        return loan

    async def auto_approve(self, loan_id: uuid.UUID, admin_id: uuid.UUID) -> Loan:
        """
        Approve a pending loan without manual review when every criterion holds:
        fee paid, citizen with a national ID, credit score >= 600 and no other
        pending loan for the user.

        Raises:
            AutoApprovalCriteriaError: With the individual criteria results
        """
        loan = self.get_loan(loan_id)
        if loan.status != LoanStatus.PENDING.value:
            raise StateConflictError(
                "Loan is not in pending status", current=loan.status, required=LoanStatus.PENDING.value
            )

        user = loan.user
        criteria = evaluate_auto_approval(
            fee_paid=loan.fee_paid,
            is_citizen=user.is_citizen,
            national_id=user.national_id,
            credit_score=user.credit_score,
            has_other_pending_loans=self.loans.has_other_pending_loans(user.id, loan.id),
        )
        if not criteria.passed:
            raise AutoApprovalCriteriaError(criteria.as_dict())

        now = utcnow()
        approved = self.loans.transition(
            loan_id,
            {"status": LoanStatus.PENDING.value, "fee_paid": True},
            status=LoanStatus.APPROVED.value,
            is_auto_approved=True,
            auto_approved_at=now,
            approval_date=now,
        )
        if not approved:
            raise self._conflict(loan_id, "Loan is not in pending status", "status", LoanStatus.PENDING.value)

        self.users.record_approval(user.id, AUTO_APPROVAL_SCORE_BONUS)
        self.db.commit()
        self._transitioned(loan_id, "status", LoanStatus.PENDING.value, LoanStatus.APPROVED.value, admin_id)

        loan = self.get_loan(loan_id)
        self.notifications.create(
            user_id=loan.user_id,
            loan_id=loan.id,
            type=NotificationType.LOAN_APPROVED,
            title="Loan Auto-Approved",
            message=(
                f"Your loan of KSh {loan.amount:,} has been automatically approved. "
                "Funds will be disbursed shortly."
            ),
            metadata={"amount": loan.amount, "autoApproved": True},
            once=True,
        )
        return loan

    def send_approval_notification(self, loan_id: uuid.UUID):
        loan = self.get_loan(loan_id)
        if loan.status != LoanStatus.APPROVED.value:
            raise StateConflictError(
                "Loan must be approved to send notification",
                current=loan.status,
                required=LoanStatus.APPROVED.value,
            )
        if self.notifications.exists(loan.id, NotificationType.LOAN_APPROVED):
            raise StateConflictError("Approval notification already sent")

        detail = (
            "This was automatically approved based on your eligibility."
            if loan.is_auto_approved
            else "Please wait for disbursement."
        )
        notification = self.notifications.create(
            user_id=loan.user_id,
            loan_id=loan.id,
            type=NotificationType.LOAN_APPROVED,
            title="Loan Approved",
            message=f"Congratulations! Your loan application for KSh {loan.amount:,} has been approved. {detail}",
            metadata={"amount": loan.amount, "autoApproved": loan.is_auto_approved},
            once=True,
        )
        if notification is None:
            raise StateConflictError("Approval notification already sent")
        return notification

    # -- fee collection ----------------------------------------------------

    async def initiate_fee_payment(
        self,
        loan_id: uuid.UUID,
        user_id: uuid.UUID,
        phone_number: str,
    ) -> FeeTransaction:
        """
        Push an M-PESA prompt for the processing fee.

        A gateway failure leaves the loan untouched and records no transaction;
        the outcome of an accepted push arrives later via the collection callback.
        """
        validate_phone_number(phone_number)
        loan = self.get_loan(loan_id)
        if loan.user_id != user_id:
            raise PermissionDeniedError("Access denied")
        if loan.status not in ACTIVE_LOAN_STATUSES:
            raise StateConflictError(
                "Loan must be pending or approved to pay the fee",
                current=loan.status,
                required="pending|approved",
            )
        if loan.fee_paid:
            raise StateConflictError("Fee already paid")

        fee_amount = loan.fee_amount
        # End the read transaction before gateway I/O
        self.db.commit()

        response = await self.mpesa_client.initiate_stk_push(phone_number, fee_amount, loan_id)

        loan = self.get_loan(loan_id)
        txn = self.transactions.record_attempt(loan, user_id, phone_number, response)
        self.loans.transition(loan_id, {}, mpesa_transaction_id=response.checkout_request_id)
        self.db.commit()

        logger.info(
            "Fee payment initiated",
            extra={"loan_id": str(loan_id), "checkout_request_id": response.checkout_request_id},
        )
        return txn

    # -- disbursement ------------------------------------------------------

    async def initiate_disbursement(self, loan_id: uuid.UUID, admin_id: uuid.UUID) -> Loan:
        """
        Send the approved principal to the borrower via B2C.

        The move to processing is committed before the gateway call, so a second
        request for the same loan fails its precondition instead of paying twice.
        On any gateway failure the disbursement ends in failed and the error is
        re-raised; nothing retries automatically.
        """
        loan = self.get_loan(loan_id)
        phone_number = loan.phone_number or loan.user.phone
        if not phone_number:
            raise ValidationError("Loan has no phone number to disburse to")

        processing = self.loans.transition(
            loan_id,
            {"status": LoanStatus.APPROVED.value, "disbursement_status": DisbursementStatus.PENDING.value},
            disbursement_status=DisbursementStatus.PROCESSING.value,
            disbursement_started_at=utcnow(),
        )
        if not processing:
            self.db.rollback()
            current = self.get_loan(loan_id)
            if current.status != LoanStatus.APPROVED.value:
                raise StateConflictError(
                    "Loan must be approved before disbursement",
                    current=current.status,
                    required=LoanStatus.APPROVED.value,
                )
            raise StateConflictError(
                "Disbursement already initiated or completed",
                current=current.disbursement_status,
                required=DisbursementStatus.PENDING.value,
            )

        amount = loan.amount
        self.db.commit()
        self._transitioned(
            loan_id, "disbursement_status", DisbursementStatus.PENDING.value, DisbursementStatus.PROCESSING.value, admin_id
        )

        try:
            response = await self.mpesa_client.initiate_b2c_disbursement(phone_number, amount, loan_id)
        except GatewayError as e:
            self.loans.transition(
                loan_id,
                {"disbursement_status": DisbursementStatus.PROCESSING.value},
                disbursement_status=DisbursementStatus.FAILED.value,
            )
            self.db.commit()
            self._transitioned(
                loan_id,
                "disbursement_status",
                DisbursementStatus.PROCESSING.value,
                DisbursementStatus.FAILED.value,
                admin_id,
            )
            logger.error(f"Disbursement failed: {e}", extra={"loan_id": str(loan_id)})
            raise

        self.loans.transition(
            loan_id,
            {"disbursement_status": DisbursementStatus.PROCESSING.value},
            disbursement_transaction_id=response.transaction_id,
        )
        self.db.commit()

        loan = self.get_loan(loan_id)
        self.notifications.create(
            user_id=loan.user_id,
            loan_id=loan.id,
            type=NotificationType.LOAN_DISBURSED,
            title="Loan Disbursed",
            message=f"Your loan of KSh {loan.amount:,} has been disbursed to your M-PESA account.",
            metadata={"amount": loan.amount, "transactionId": response.transaction_id},
            once=True,
        )
        self._email("send_loan_disbursement_email", loan.user, loan)
        return loan

    async def reset_failed_disbursement(self, loan_id: uuid.UUID, admin_id: uuid.UUID) -> Loan:
        """Manual administrative reset of a failed disbursement back to pending"""
        self.get_loan(loan_id)
        reset = self.loans.transition(
            loan_id,
            {"status": LoanStatus.APPROVED.value, "disbursement_status": DisbursementStatus.FAILED.value},
            disbursement_status=DisbursementStatus.PENDING.value,
            disbursement_transaction_id=None,
            disbursement_started_at=None,
        )
        if not reset:
            raise self._conflict(
                loan_id, "Only a failed disbursement can be reset", "disbursement_status", DisbursementStatus.FAILED.value
            )
        self.db.commit()
        self._transitioned(
            loan_id, "disbursement_status", DisbursementStatus.FAILED.value, DisbursementStatus.PENDING.value, admin_id
        )
        return self.get_loan(loan_id)

    def expire_stale_disbursements(self, max_age: timedelta | None = None) -> int:
        """Fail disbursements left in processing without a gateway acknowledgement"""
        max_age = max_age or timedelta(minutes=settings.stale_disbursement_minutes)
        expired = self.loans.fail_stale_disbursements(utcnow() - max_age)
        self.db.commit()
        if expired:
            logger.warning("Expired stale disbursements", extra={"count": expired})
            record_transition("disbursement_status", DisbursementStatus.FAILED.value)
        return expired

    async def expire_unconfirmed_disbursement(
        self, loan_id: uuid.UUID, admin_id: uuid.UUID, max_age: timedelta | None = None
    ) -> Loan:
        """
        Fail a disbursement that is still in processing after max_age.

        Covers B2C requests the provider accepted but never reported on, e.g. a
        result callback that was lost or arrived before the conversation id was
        stored. The administrator is expected to have checked the payout with the
        provider first; after expiry the loan can go through the manual reset.

        Raises:
            StateConflictError: Not in processing, or processing for less than max_age
        """
        max_age = max_age or timedelta(minutes=settings.unconfirmed_disbursement_minutes)
        self.get_loan(loan_id)
        if not self.loans.fail_unconfirmed_disbursement(loan_id, utcnow() - max_age):
            error = self._conflict(
                loan_id,
                "Only a disbursement in processing can be expired",
                "disbursement_status",
                DisbursementStatus.PROCESSING.value,
            )
            if error.current == DisbursementStatus.PROCESSING.value:
                error = StateConflictError(
                    f"Disbursement has been processing for less than {max_age}",
                    current=error.current,
                    required=error.required,
                )
            raise error
        self.db.commit()
        self._transitioned(
            loan_id, "disbursement_status", DisbursementStatus.PROCESSING.value, DisbursementStatus.FAILED.value, admin_id
        )
        logger.warning("Expired unconfirmed disbursement", extra={"loan_id": str(loan_id), "admin_id": str(admin_id)})
        return self.get_loan(loan_id)

    # -- closing -----------------------------------------------------------

    async def mark_repaid(self, loan_id: uuid.UUID, admin_id: uuid.UUID) -> Loan:
        return self._close(loan_id, admin_id, LoanStatus.PAID)

    async def mark_defaulted(self, loan_id: uuid.UUID, admin_id: uuid.UUID) -> Loan:
        loan = self._close(loan_id, admin_id, LoanStatus.DEFAULTED)
        self.notifications.create(
            user_id=loan.user_id,
            loan_id=loan.id,
            type=NotificationType.LOAN_DEFAULTED,
            title="Loan Defaulted",
            message=f"Your loan of KSh {loan.amount:,} has been marked as defaulted.",
            metadata={"amount": loan.amount},
            once=True,
        )
        return loan

    def _close(self, loan_id: uuid.UUID, admin_id: uuid.UUID, target: LoanStatus) -> Loan:
        self.get_loan(loan_id)
        closed = self.loans.transition(loan_id, {"status": LoanStatus.APPROVED.value}, status=target.value)
        if not closed:
            raise self._conflict(loan_id, "Loan is not in approved status", "status", LoanStatus.APPROVED.value)
        self.db.commit()
        self._transitioned(loan_id, "status", LoanStatus.APPROVED.value, target.value, admin_id)
        return self.get_loan(loan_id)

    # -- queries -----------------------------------------------------------

    def list_loans(self, status: Optional[str] = None, page: int = 1, limit: int = 10) -> Tuple[List[Loan], int]:
        return self.loans.list_loans(status=status, page=page, limit=limit)

    def loan_queue(self, limit: int = 50) -> List[Loan]:
        return self.loans.pending_queue(limit)

    def loans_for_user(self, user_id: uuid.UUID) -> List[Loan]:
        return self.loans.loans_for_user(user_id)

    def stats(self) -> Dict[str, Any]:
        by_status = self.loans.count_by_status()
        return {
            "loans": {
                "total": sum(by_status.values()),
                "pending": by_status.get(LoanStatus.PENDING.value, 0),
                "approved": by_status.get(LoanStatus.APPROVED.value, 0),
                "rejected": by_status.get(LoanStatus.REJECTED.value, 0),
            },
            "users": {
                "total": self.users.count(),
                "active": self.users.count(active_only=True),
            },
            "disbursements": {"total_amount": self.loans.total_disbursed()},
            "recent_pending_loans": self.loans.recent_pending(5),
        }
