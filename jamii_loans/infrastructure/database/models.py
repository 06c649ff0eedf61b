"""SQLAlchemy ORM models for users, loans, fee transactions and notifications"""

import uuid
from sqlalchemy import Column, String, BigInteger, Boolean, DateTime, Integer, ForeignKey, Text, JSON, Index, Uuid, text
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


class User(Base):
    """Borrower or administrator"""

    __tablename__ = "app_user"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    full_name = Column(Text, nullable=False)
    email = Column(Text, nullable=False, unique=True)
    national_id = Column(String(32), nullable=False, unique=True)
    phone = Column(String(20), nullable=True, unique=True)
    is_citizen = Column(Boolean, nullable=False)
    credit_score = Column(Integer, nullable=False, default=500)
    loan_limit = Column(BigInteger, nullable=False, default=50_000)
    total_loans_applied = Column(Integer, nullable=False, default=0)
    total_loans_approved = Column(Integer, nullable=False, default=0)
    role = Column(Text, nullable=False, default="user")
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    loans = relationship("Loan", back_populates="user", foreign_keys="Loan.user_id")


class Loan(Base):
    """Loan record; status and disbursement_status follow the lifecycle state machine"""

    __tablename__ = "loan"
    __table_args__ = (
        # At most one pending/approved loan per user
        Index(
            "uq_loan_one_active_per_user",
            "user_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'approved')"),
            sqlite_where=text("status IN ('pending', 'approved')"),
        ),
        Index("ix_loan_user_status", "user_id", "status"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("app_user.id"), nullable=False)
    amount = Column(BigInteger, nullable=False)
    fee_amount = Column(BigInteger, nullable=False, default=0)
    fee_paid = Column(Boolean, nullable=False, default=False)
    status = Column(Text, nullable=False, default="pending", index=True)
    disbursement_status = Column(Text, nullable=False, default="pending")
    phone_number = Column(String(20), nullable=True)
    description = Column(Text, nullable=True)
    mpesa_transaction_id = Column(Text, nullable=True)
    disbursement_transaction_id = Column(Text, nullable=True, index=True)
    disbursement_receipt = Column(Text, nullable=True)
    disbursement_started_at = Column(DateTime(timezone=True), nullable=True)
    is_auto_approved = Column(Boolean, nullable=False, default=False)
    auto_approved_at = Column(DateTime(timezone=True), nullable=True)
    approved_by = Column(Uuid, ForeignKey("app_user.id"), nullable=True)
    approval_date = Column(DateTime(timezone=True), nullable=True)
    rejection_reason = Column(Text, nullable=True)
    disbursed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="loans", foreign_keys=[user_id])
    transactions = relationship("FeeTransaction", back_populates="loan")


class FeeTransaction(Base):
    """Fee collection attempt (STK Push), settled exactly once by its callback"""

    __tablename__ = "fee_transaction"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    loan_id = Column(Uuid, ForeignKey("loan.id"), nullable=False, index=True)
    user_id = Column(Uuid, ForeignKey("app_user.id"), nullable=False, index=True)
    amount = Column(BigInteger, nullable=False)
    phone_number = Column(String(20), nullable=False)
    merchant_request_id = Column(Text, nullable=True)
    checkout_request_id = Column(Text, nullable=False, unique=True)
    response_code = Column(Text, nullable=True)
    response_description = Column(Text, nullable=True)
    result_code = Column(Integer, nullable=True)
    result_description = Column(Text, nullable=True)
    mpesa_receipt_number = Column(Text, nullable=True)
    status = Column(Text, nullable=False, default="pending", index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    loan = relationship("Loan", back_populates="transactions")


class Notification(Base):
    """In-app notification produced by lifecycle events"""

    __tablename__ = "notification"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("app_user.id"), nullable=False)
    loan_id = Column(Uuid, ForeignKey("loan.id"), nullable=False)
    type = Column(Text, nullable=False)
    title = Column(Text, nullable=False)
    message = Column(Text, nullable=False)
    is_read = Column(Boolean, nullable=False, default=False)
    extra = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        Index("ix_notification_user_read", "user_id", "is_read"),
        # One lifecycle notification of each kind per loan
        Index(
            "uq_notification_loan_lifecycle",
            "loan_id",
            "type",
            unique=True,
            postgresql_where=text("type IN ('loan_approved', 'loan_disbursed', 'loan_defaulted')"),
            sqlite_where=text("type IN ('loan_approved', 'loan_disbursed', 'loan_defaulted')"),
        ),
    )
