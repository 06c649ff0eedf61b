"""Pydantic schemas for API request/response validation"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class LoanApplicationRequest(BaseModel):
    """Request body for POST /v1/loans/apply"""

    amount: int = Field(..., description="Requested principal in KSh (1,000 - 500,000)")
    phone_number: str = Field(..., description="M-PESA number, format 254xxxxxxxxx")
    description: Optional[str] = Field(default=None, max_length=500)


class PayFeeRequest(BaseModel):
    """Request body for POST /v1/loans/{loan_id}/pay-fee"""

    phone_number: str = Field(..., description="M-PESA number, format 254xxxxxxxxx")


class RejectRequest(BaseModel):
    """Request body for PATCH /v1/admin/loans/{loan_id}/reject"""

    rejection_reason: str = Field(..., description="Reason shown to the borrower")


class LoanSchema(BaseModel):
    """Loan as returned to borrowers and administrators"""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: uuid.UUID
    amount: int
    fee_amount: int
    fee_paid: bool
    status: str
    disbursement_status: str
    description: Optional[str] = None
    phone_number: Optional[str] = None
    mpesa_transaction_id: Optional[str] = None
    disbursement_transaction_id: Optional[str] = None
    is_auto_approved: bool = False
    approved_by: Optional[uuid.UUID] = None
    approval_date: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    disbursed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class TransactionSchema(BaseModel):
    """Fee collection attempt"""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    loan_id: uuid.UUID
    amount: int
    phone_number: str
    merchant_request_id: Optional[str] = None
    checkout_request_id: str
    response_code: Optional[str] = None
    response_description: Optional[str] = None
    status: str


class NotificationSchema(BaseModel):
    """In-app notification"""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    loan_id: uuid.UUID
    type: str
    title: str
    message: str
    is_read: bool
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias="extra")
    created_at: Optional[datetime] = None


class EligibilityResponse(BaseModel):
    """Response for GET /v1/users/me/eligibility"""

    eligible: bool
    reason: Optional[str] = None
    credit_score: int
    max_amount: int
    loan_limit: int


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class LoanListResponse(BaseModel):
    """Response for GET /v1/admin/loans"""

    loans: List[LoanSchema]
    pagination: Pagination


class LoanCounts(BaseModel):
    total: int
    pending: int
    approved: int
    rejected: int


class UserCounts(BaseModel):
    total: int
    active: int


class DisbursementTotals(BaseModel):
    total_amount: int


class StatsResponse(BaseModel):
    """Response for GET /v1/admin/stats"""

    loans: LoanCounts
    users: UserCounts
    disbursements: DisbursementTotals
    recent_pending_loans: List[LoanSchema]


class SweepResponse(BaseModel):
    """Response for POST /v1/admin/disbursements/sweep"""

    expired: int


class CallbackAck(BaseModel):
    """Acknowledgement returned to M-PESA for every callback"""

    ResultCode: int = 0
    ResultDesc: str = "Accepted"
