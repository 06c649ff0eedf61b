"""Callback Reconciler - applies asynchronous M-PESA callbacks to ledger state exactly once"""

import logging
from typing import Any, Dict

from sqlalchemy.orm import Session

from jamii_loans.domain.exceptions import CallbackCorrelationMiss, InvalidCallbackError
from jamii_loans.domain.models import B2CCallbackResult, DisbursementStatus, NotificationType
from jamii_loans.infrastructure.clients.mpesa import parse_b2c_result, parse_stk_callback
from jamii_loans.infrastructure.database.repositories import LoanRepository
from jamii_loans.infrastructure.observability.logging import log_transition
from jamii_loans.infrastructure.observability.metrics import callback_counter, record_transition
from jamii_loans.services.notifications import NotificationService
from jamii_loans.services.transaction_ledger import TransactionLedger
from jamii_loans.utils.date_utils import utcnow

logger = logging.getLogger(__name__)


class CallbackReconciler:
    """
    Consumes collection (STK Push) and disbursement (B2C) callbacks.

    Every mutation is conditional on the record still being in its
    pre-callback state, so replaying a callback changes nothing. Unknown,
    duplicate and malformed callbacks are logged and reported as not applied;
    they never raise, because the provider must always get an acknowledgement.
    """

    def __init__(self, db: Session, notifications: NotificationService | None = None):
        self.db = db
        self.loans = LoanRepository(db)
        self.transactions = TransactionLedger(db)
        self.notifications = notifications or NotificationService(db)

    def _guarded(self, kind: str, apply, payload: Dict[str, Any]) -> bool:
        """Run one apply step; malformed and uncorrelated callbacks are logged, not raised"""
        try:
            apply(payload)
        except InvalidCallbackError as e:
            self.db.rollback()
            callback_counter.labels(kind=kind, outcome="invalid").inc()
            logger.warning(f"Ignoring malformed {kind} callback: {e}")
            return False
        except CallbackCorrelationMiss as e:
            self.db.rollback()
            callback_counter.labels(kind=kind, outcome="miss").inc()
            logger.warning(str(e), extra={"kind": kind})
            return False

        callback_counter.labels(kind=kind, outcome="applied").inc()
        return True

    def apply_collection_callback(self, payload: Dict[str, Any]) -> bool:
        """Settle the fee transaction and mark the fee paid on success. Returns True if applied."""
        return self._guarded("collection", self._apply_collection, payload)

    def apply_disbursement_callback(self, payload: Dict[str, Any]) -> bool:
        """Finalize a processing disbursement from a B2C result. Returns True if applied."""
        return self._guarded("disbursement", lambda body: self._apply_disbursement(parse_b2c_result(body)), payload)

    def apply_disbursement_timeout(self, payload: Dict[str, Any]) -> bool:
        """The request expired in the provider's queue: the disbursement failed"""
        return self._guarded("disbursement_timeout", self._apply_timeout, payload)

    def _apply_timeout(self, payload: Dict[str, Any]) -> None:
        result = parse_b2c_result(payload)
        result.success = False
        self._apply_disbursement(result)

    def _apply_collection(self, payload: Dict[str, Any]) -> None:
        result = parse_stk_callback(payload)
        txn = self.transactions.settle(result)
        if txn is None:
            raise CallbackCorrelationMiss(
                f"No pending fee transaction for CheckoutRequestID {result.checkout_request_id}"
            )

        if result.success:
            if self.loans.transition(txn.loan_id, {"fee_paid": False}, fee_paid=True):
                log_transition(txn.loan_id, "fee_paid", "false", "true")
        self.db.commit()

        logger.info(
            "Collection callback applied",
            extra={
                "loan_id": str(txn.loan_id),
                "checkout_request_id": result.checkout_request_id,
                "result_code": result.result_code,
                "receipt": result.receipt_number,
            },
        )

    def _apply_disbursement(self, result: B2CCallbackResult) -> None:
        loan = self.loans.find_by_disbursement_reference(
            result.conversation_id,
            result.originator_conversation_id,
            result.transaction_id,
        )
        if loan is None:
            raise CallbackCorrelationMiss(
                f"No loan for disbursement reference {result.conversation_id or result.transaction_id}"
            )

        if result.success:
            target = DisbursementStatus.COMPLETED
            changed = self.loans.transition(
                loan.id,
                {"disbursement_status": DisbursementStatus.PROCESSING.value},
                disbursement_status=target.value,
                disbursed_at=utcnow(),
                disbursement_receipt=result.transaction_id,
            )
        else:
            target = DisbursementStatus.FAILED
            changed = self.loans.transition(
                loan.id,
                {"disbursement_status": DisbursementStatus.PROCESSING.value},
                disbursement_status=target.value,
            )

        if not changed:
            raise CallbackCorrelationMiss(
                f"Disbursement for loan {loan.id} is already {loan.disbursement_status}; callback ignored"
            )

        self.db.commit()
        log_transition(loan.id, "disbursement_status", DisbursementStatus.PROCESSING.value, target.value)
        record_transition("disbursement_status", target.value)

        if result.success:
            self.notifications.create(
                user_id=loan.user_id,
                loan_id=loan.id,
                type=NotificationType.LOAN_DISBURSED,
                title="Loan Disbursed",
                message=f"Your loan of KSh {loan.amount:,} has been disbursed to your M-PESA account.",
                metadata={"amount": loan.amount, "transactionId": result.transaction_id},
                once=True,
            )
        else:
            logger.warning(
                "Disbursement failed at provider",
                extra={"loan_id": str(loan.id), "result_code": result.result_code, "result_desc": result.result_description},
            )
