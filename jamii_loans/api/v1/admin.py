"""Administrator endpoints: review queue, approval decisions, disbursement and stats"""

import logging
import math
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Request

from jamii_loans.api.dependencies import Principal, get_loan_ledger, get_request_id, parse_id, require_admin
from jamii_loans.api.errors import to_http_exception
from jamii_loans.api.v1.schemas import (
    LoanListResponse,
    LoanSchema,
    NotificationSchema,
    Pagination,
    RejectRequest,
    StatsResponse,
    SweepResponse,
)
from jamii_loans.domain.exceptions import DomainException, GatewayError
from jamii_loans.domain.models import LoanStatus
from jamii_loans.services.loan_ledger import LoanLedger

router = APIRouter(prefix="/admin")


def _fail(e: Exception, ledger: LoanLedger, request_id: str, action: str) -> HTTPException:
    """Log and translate an error raised by a ledger operation"""
    if isinstance(e, GatewayError):
        logging.error(f"{action} failed at gateway: {e}", extra={"request_id": request_id})
        return to_http_exception(e)
    if isinstance(e, DomainException):
        logging.info(f"{action} refused: {e}", extra={"request_id": request_id})
        return to_http_exception(e)
    ledger.db.rollback()
    logging.error(f"Unexpected error during {action}: {e}", extra={"request_id": request_id})
    return HTTPException(status_code=500, detail="Internal server error")


@router.get("/loans", response_model=LoanListResponse)
def list_loans(
    status: Optional[LoanStatus] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    _: Principal = Depends(require_admin),
    ledger: LoanLedger = Depends(get_loan_ledger),
):
    """All loans, newest first, optionally filtered by status"""
    loans, total = ledger.list_loans(status=status.value if status else None, page=page, limit=limit)
    return LoanListResponse(
        loans=[LoanSchema.model_validate(loan) for loan in loans],
        pagination=Pagination(page=page, limit=limit, total=total, pages=math.ceil(total / limit)),
    )


@router.get("/loan-queue", response_model=List[LoanSchema])
def get_loan_queue(
    _: Principal = Depends(require_admin),
    ledger: LoanLedger = Depends(get_loan_ledger),
):
    """Pending loans in FIFO order (max 50)"""
    return [LoanSchema.model_validate(loan) for loan in ledger.loan_queue(limit=50)]


@router.get("/stats", response_model=StatsResponse)
def get_stats(
    _: Principal = Depends(require_admin),
    ledger: LoanLedger = Depends(get_loan_ledger),
):
    stats = ledger.stats()
    stats["recent_pending_loans"] = [LoanSchema.model_validate(loan) for loan in stats["recent_pending_loans"]]
    return StatsResponse(**stats)


@router.patch("/loans/{loan_id}/approve", response_model=LoanSchema)
async def approve_loan(
    loan_id: str,
    request: Request,
    admin: Principal = Depends(require_admin),
    ledger: LoanLedger = Depends(get_loan_ledger),
):
    try:
        loan = await ledger.approve(parse_id(loan_id), admin.user_id)
        return LoanSchema.model_validate(loan)
    except HTTPException:
        raise
    except Exception as e:
        raise _fail(e, ledger, get_request_id(request), "approve")


@router.patch("/loans/{loan_id}/reject", response_model=LoanSchema)
async def reject_loan(
    loan_id: str,
    request_body: RejectRequest,
    request: Request,
    admin: Principal = Depends(require_admin),
    ledger: LoanLedger = Depends(get_loan_ledger),
):
    try:
        loan = await ledger.reject(parse_id(loan_id), admin.user_id, request_body.rejection_reason)
        return LoanSchema.model_validate(loan)
    except HTTPException:
        raise
    except Exception as e:
        raise _fail(e, ledger, get_request_id(request), "reject")


@router.patch("/loans/{loan_id}/auto-approve", response_model=LoanSchema)
async def auto_approve_loan(
    loan_id: str,
    request: Request,
    admin: Principal = Depends(require_admin),
    ledger: LoanLedger = Depends(get_loan_ledger),
):
    """
    Approve without manual review when every criterion holds.

    Returns 400 with the individual criteria results when any gate fails.
    """
    try:
        loan = await ledger.auto_approve(parse_id(loan_id), admin.user_id)
        return LoanSchema.model_validate(loan)
    except HTTPException:
        raise
    except Exception as e:
        raise _fail(e, ledger, get_request_id(request), "auto-approve")


@router.post("/loans/{loan_id}/disbursement", response_model=LoanSchema)
async def initiate_disbursement(
    loan_id: str,
    request: Request,
    admin: Principal = Depends(require_admin),
    ledger: LoanLedger = Depends(get_loan_ledger),
):
    """
    Send the approved principal to the borrower via M-PESA B2C.

    The provider's final result arrives on /v1/mpesa/b2c/result.
    """
    try:
        loan = await ledger.initiate_disbursement(parse_id(loan_id), admin.user_id)
        return LoanSchema.model_validate(loan)
    except HTTPException:
        raise
    except Exception as e:
        raise _fail(e, ledger, get_request_id(request), "disbursement")


@router.post("/loans/{loan_id}/reset-disbursement", response_model=LoanSchema)
async def reset_disbursement(
    loan_id: str,
    request: Request,
    admin: Principal = Depends(require_admin),
    ledger: LoanLedger = Depends(get_loan_ledger),
):
    """Put a failed disbursement back to pending so it can be initiated again"""
    try:
        loan = await ledger.reset_failed_disbursement(parse_id(loan_id), admin.user_id)
        return LoanSchema.model_validate(loan)
    except HTTPException:
        raise
    except Exception as e:
        raise _fail(e, ledger, get_request_id(request), "reset-disbursement")


@router.post("/loans/{loan_id}/expire-disbursement", response_model=LoanSchema)
async def expire_disbursement(
    loan_id: str,
    request: Request,
    admin: Principal = Depends(require_admin),
    ledger: LoanLedger = Depends(get_loan_ledger),
):
    """Fail a disbursement whose provider result never arrived, so it can be reset"""
    try:
        loan = await ledger.expire_unconfirmed_disbursement(parse_id(loan_id), admin.user_id)
        return LoanSchema.model_validate(loan)
    except HTTPException:
        raise
    except Exception as e:
        raise _fail(e, ledger, get_request_id(request), "expire-disbursement")


@router.post("/loans/{loan_id}/repaid", response_model=LoanSchema)
async def mark_repaid(
    loan_id: str,
    request: Request,
    admin: Principal = Depends(require_admin),
    ledger: LoanLedger = Depends(get_loan_ledger),
):
    try:
        loan = await ledger.mark_repaid(parse_id(loan_id), admin.user_id)
        return LoanSchema.model_validate(loan)
    except HTTPException:
        raise
    except Exception as e:
        raise _fail(e, ledger, get_request_id(request), "mark-repaid")


@router.post("/loans/{loan_id}/defaulted", response_model=LoanSchema)
async def mark_defaulted(
    loan_id: str,
    request: Request,
    admin: Principal = Depends(require_admin),
    ledger: LoanLedger = Depends(get_loan_ledger),
):
    try:
        loan = await ledger.mark_defaulted(parse_id(loan_id), admin.user_id)
        return LoanSchema.model_validate(loan)
    except HTTPException:
        raise
    except Exception as e:
        raise _fail(e, ledger, get_request_id(request), "mark-defaulted")


@router.post("/loans/{loan_id}/notify-approval", response_model=NotificationSchema)
def notify_approval(
    loan_id: str,
    request: Request,
    _: Principal = Depends(require_admin),
    ledger: LoanLedger = Depends(get_loan_ledger),
):
    try:
        notification = ledger.send_approval_notification(parse_id(loan_id))
        return NotificationSchema.model_validate(notification)
    except HTTPException:
        raise
    except Exception as e:
        raise _fail(e, ledger, get_request_id(request), "notify-approval")


@router.post("/disbursements/sweep", response_model=SweepResponse)
def sweep_stale_disbursements(
    _: Principal = Depends(require_admin),
    ledger: LoanLedger = Depends(get_loan_ledger),
):
    """Fail disbursements stuck in processing without a gateway acknowledgement"""
    return SweepResponse(expired=ledger.expire_stale_disbursements())
