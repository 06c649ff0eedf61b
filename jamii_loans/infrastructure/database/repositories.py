"""Data access layer for users, loans, fee transactions and notifications"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from sqlalchemy import case, func, or_, select, update
from sqlalchemy.orm import Session
from jamii_loans.infrastructure.database.models import User, Loan, FeeTransaction, Notification
from jamii_loans.domain.models import ACTIVE_LOAN_STATUSES, DisbursementStatus, LoanStatus, TransactionStatus
from jamii_loans.domain.underwriting import MAX_CREDIT_SCORE


class UserRepository:
    """Repository for borrowers and administrators"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, user_id: uuid.UUID) -> Optional[User]:
        return self.db.get(User, user_id)

    def create(self, **fields: Any) -> User:
        """Persist a new user (registration itself lives outside this service)"""
        user = User(**fields)
        self.db.add(user)
        self.db.flush()
        return user

    def record_application(self, user_id: uuid.UUID) -> None:
        """Increment total_loans_applied in SQL so concurrent writers don't lose updates"""
        self.db.execute(
            update(User)
            .where(User.id == user_id)
            .values(total_loans_applied=User.total_loans_applied + 1)
            .execution_options(synchronize_session=False)
        )

    def record_approval(self, user_id: uuid.UUID, score_bonus: int) -> None:
        """Raise credit score (capped) and increment total_loans_approved"""
        raised = User.credit_score + score_bonus
        self.db.execute(
            update(User)
            .where(User.id == user_id)
            .values(
                credit_score=case((raised > MAX_CREDIT_SCORE, MAX_CREDIT_SCORE), else_=raised),
                total_loans_approved=User.total_loans_approved + 1,
            )
            .execution_options(synchronize_session=False)
        )

    def count(self, active_only: bool = False) -> int:
        query = select(func.count(User.id))
        if active_only:
            query = query.where(User.is_active.is_(True))
        return self.db.scalar(query)


class LoanRepository:
    """Repository for loans; every state change is a conditional update"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, loan_id: uuid.UUID) -> Optional[Loan]:
        return self.db.get(Loan, loan_id)

    def reload(self, loan_id: uuid.UUID) -> Optional[Loan]:
        """Fetch a loan bypassing any stale copy held by the session"""
        return self.db.execute(
            select(Loan).where(Loan.id == loan_id).execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def create(
        self,
        user_id: uuid.UUID,
        amount: int,
        fee_amount: int,
        phone_number: str,
        description: Optional[str],
    ) -> Loan:
        loan = Loan(
            user_id=user_id,
            amount=amount,
            fee_amount=fee_amount,
            fee_paid=False,
            status=LoanStatus.PENDING.value,
            disbursement_status=DisbursementStatus.PENDING.value,
            phone_number=phone_number,
            description=description,
        )
        self.db.add(loan)
        self.db.flush()  # Unique active-loan index fires here
        return loan

    def has_active_loan(self, user_id: uuid.UUID) -> bool:
        query = select(func.count(Loan.id)).where(
            Loan.user_id == user_id,
            Loan.status.in_(ACTIVE_LOAN_STATUSES),
        )
        return self.db.scalar(query) > 0

    def has_other_pending_loans(self, user_id: uuid.UUID, loan_id: uuid.UUID) -> bool:
        query = select(func.count(Loan.id)).where(
            Loan.user_id == user_id,
            Loan.status == LoanStatus.PENDING.value,
            Loan.id != loan_id,
        )
        return self.db.scalar(query) > 0

    def transition(self, loan_id: uuid.UUID, expected: Dict[str, Any], **values: Any) -> bool:
        """
        Atomically update a loan only if it still matches the expected field values.

        Returns True when the row was updated, False when another writer got there first
        (or the loan is simply not in the expected state).
        """
        conditions = [Loan.id == loan_id]
        conditions.extend(getattr(Loan, name) == value for name, value in expected.items())
        result = self.db.execute(
            update(Loan).where(*conditions).values(**values).execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def find_by_disbursement_reference(self, *references: Optional[str]) -> Optional[Loan]:
        """Correlate a B2C callback back to its loan by conversation or transaction id"""
        refs = [ref for ref in references if ref]
        if not refs:
            return None
        query = select(Loan).where(
            or_(Loan.disbursement_transaction_id.in_(refs), Loan.disbursement_receipt.in_(refs))
        )
        return self.db.execute(query.execution_options(populate_existing=True)).scalars().first()

    def list_loans(self, status: Optional[str] = None, page: int = 1, limit: int = 10) -> Tuple[List[Loan], int]:
        """Paginated loans, newest first"""
        query = select(Loan)
        count_query = select(func.count(Loan.id))
        if status:
            query = query.where(Loan.status == status)
            count_query = count_query.where(Loan.status == status)

        loans = (
            self.db.execute(query.order_by(Loan.created_at.desc()).offset((page - 1) * limit).limit(limit))
            .scalars()
            .all()
        )
        return list(loans), self.db.scalar(count_query)

    def pending_queue(self, limit: int = 50) -> List[Loan]:
        """Pending loans in FIFO order"""
        query = (
            select(Loan)
            .where(Loan.status == LoanStatus.PENDING.value)
            .order_by(Loan.created_at.asc())
            .limit(limit)
        )
        return list(self.db.execute(query).scalars().all())

    def loans_for_user(self, user_id: uuid.UUID) -> List[Loan]:
        query = select(Loan).where(Loan.user_id == user_id).order_by(Loan.created_at.desc())
        return list(self.db.execute(query).scalars().all())

    def fail_stale_disbursements(self, cutoff: datetime) -> int:
        """Move loans stuck in processing (never accepted by the gateway) to failed"""
        result = self.db.execute(
            update(Loan)
            .where(
                Loan.disbursement_status == DisbursementStatus.PROCESSING.value,
                Loan.disbursement_transaction_id.is_(None),
                Loan.disbursement_started_at < cutoff,
            )
            .values(disbursement_status=DisbursementStatus.FAILED.value)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def fail_unconfirmed_disbursement(self, loan_id: uuid.UUID, cutoff: datetime) -> bool:
        """Fail one loan still in processing that started before cutoff, acknowledged or not"""
        result = self.db.execute(
            update(Loan)
            .where(
                Loan.id == loan_id,
                Loan.status == LoanStatus.APPROVED.value,
                Loan.disbursement_status == DisbursementStatus.PROCESSING.value,
                Loan.disbursement_started_at < cutoff,
            )
            .values(disbursement_status=DisbursementStatus.FAILED.value)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def count_by_status(self) -> Dict[str, int]:
        rows = self.db.execute(select(Loan.status, func.count(Loan.id)).group_by(Loan.status)).all()
        return {status: count for status, count in rows}

    def total_disbursed(self) -> int:
        query = select(func.coalesce(func.sum(Loan.amount), 0)).where(
            Loan.disbursement_status == DisbursementStatus.COMPLETED.value
        )
        return int(self.db.scalar(query))

    def recent_pending(self, limit: int = 5) -> List[Loan]:
        query = (
            select(Loan)
            .where(Loan.status == LoanStatus.PENDING.value)
            .order_by(Loan.created_at.desc())
            .limit(limit)
        )
        return list(self.db.execute(query).scalars().all())


class TransactionRepository:
    """Repository for fee collection attempts"""

    def __init__(self, db: Session):
        self.db = db

    def create(self, **fields: Any) -> FeeTransaction:
        txn = FeeTransaction(status=TransactionStatus.PENDING.value, **fields)
        self.db.add(txn)
        self.db.flush()
        return txn

    def find_by_checkout_request_id(self, checkout_request_id: str) -> Optional[FeeTransaction]:
        query = select(FeeTransaction).where(FeeTransaction.checkout_request_id == checkout_request_id)
        return self.db.execute(query.execution_options(populate_existing=True)).scalar_one_or_none()

    def settle(self, checkout_request_id: str, status: str, **values: Any) -> bool:
        """Move a pending transaction to its terminal status; False if it was not pending"""
        result = self.db.execute(
            update(FeeTransaction)
            .where(
                FeeTransaction.checkout_request_id == checkout_request_id,
                FeeTransaction.status == TransactionStatus.PENDING.value,
            )
            .values(status=status, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def for_loan(self, loan_id: uuid.UUID) -> List[FeeTransaction]:
        query = select(FeeTransaction).where(FeeTransaction.loan_id == loan_id).order_by(FeeTransaction.created_at)
        return list(self.db.execute(query).scalars().all())


class NotificationRepository:
    """Repository for in-app notifications"""

    def __init__(self, db: Session):
        self.db = db

    def create(self, **fields: Any) -> Notification:
        notification = Notification(**fields)
        self.db.add(notification)
        self.db.flush()
        return notification

    def exists(self, loan_id: uuid.UUID, type: str) -> bool:
        query = select(func.count(Notification.id)).where(
            Notification.loan_id == loan_id,
            Notification.type == type,
        )
        return self.db.scalar(query) > 0

    def for_user(self, user_id: uuid.UUID) -> List[Notification]:
        query = select(Notification).where(Notification.user_id == user_id).order_by(Notification.created_at.desc())
        return list(self.db.execute(query).scalars().all())

    def for_loan(self, loan_id: uuid.UUID, type: Optional[str] = None) -> List[Notification]:
        query = select(Notification).where(Notification.loan_id == loan_id)
        if type:
            query = query.where(Notification.type == type)
        return list(self.db.execute(query).scalars().all())

    def mark_read(self, notification_id: uuid.UUID, user_id: uuid.UUID) -> bool:
        result = self.db.execute(
            update(Notification)
            .where(Notification.id == notification_id, Notification.user_id == user_id)
            .values(is_read=True)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
