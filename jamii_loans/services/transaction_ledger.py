"""Transaction Ledger - fee collection attempts and their terminal outcome"""

import logging
import uuid
from typing import List, Optional

from sqlalchemy.orm import Session

from jamii_loans.domain.models import StkCallbackResult, StkPushResponse, TransactionStatus
from jamii_loans.infrastructure.database.models import FeeTransaction, Loan
from jamii_loans.infrastructure.database.repositories import TransactionRepository

logger = logging.getLogger(__name__)


class TransactionLedger:
    """Records each STK Push attempt; a transaction is settled exactly once"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = TransactionRepository(db)

    def record_attempt(
        self,
        loan: Loan,
        user_id: uuid.UUID,
        phone_number: str,
        response: StkPushResponse,
    ) -> FeeTransaction:
        """Persist a pending transaction for an accepted STK Push (caller commits)"""
        return self.repo.create(
            loan_id=loan.id,
            user_id=user_id,
            amount=loan.fee_amount,
            phone_number=phone_number,
            merchant_request_id=response.merchant_request_id,
            checkout_request_id=response.checkout_request_id,
            response_code=response.response_code,
            response_description=response.response_description,
        )

    def settle(self, result: StkCallbackResult) -> Optional[FeeTransaction]:
        """
        Apply a collection outcome to its pending transaction (caller commits).

        Returns the settled transaction, or None when nothing pending matched
        the checkout request id (unknown, duplicate or stale callback).
        """
        status = TransactionStatus.SUCCESS if result.success else TransactionStatus.FAILED
        settled = self.repo.settle(
            result.checkout_request_id,
            status.value,
            result_code=result.result_code,
            result_description=result.result_description,
            mpesa_receipt_number=result.receipt_number,
        )
        if not settled:
            return None

        logger.info(
            "Fee transaction settled",
            extra={"checkout_request_id": result.checkout_request_id, "status": status.value},
        )
        return self.repo.find_by_checkout_request_id(result.checkout_request_id)

    def find_by_checkout_request_id(self, checkout_request_id: str) -> Optional[FeeTransaction]:
        return self.repo.find_by_checkout_request_id(checkout_request_id)

    def transactions_for_loan(self, loan_id: uuid.UUID) -> List[FeeTransaction]:
        return self.repo.for_loan(loan_id)
