"""Borrower self-service endpoints: eligibility, loan history and notifications"""

from typing import List
from fastapi import APIRouter, Depends

from jamii_loans.api.dependencies import (
    Principal,
    get_loan_ledger,
    get_notification_service,
    get_principal,
    parse_id,
)
from jamii_loans.api.v1.schemas import EligibilityResponse, LoanSchema, NotificationSchema
from jamii_loans.services.loan_ledger import LoanLedger
from jamii_loans.services.notifications import NotificationService

router = APIRouter()


@router.get("/users/me/eligibility", response_model=EligibilityResponse)
def get_eligibility(
    principal: Principal = Depends(get_principal),
    ledger: LoanLedger = Depends(get_loan_ledger),
):
    """
    Check whether the caller may apply and for how much.

    Returns:
        Eligibility flag, reason when ineligible, and the credit-score-tiered maximum amount
    """
    result = ledger.check_eligibility(principal.user_id)
    return EligibilityResponse(
        eligible=result.eligible,
        reason=result.reason,
        credit_score=result.credit_score,
        max_amount=result.max_amount,
        loan_limit=result.loan_limit,
    )


@router.get("/users/me/loans", response_model=List[LoanSchema])
def get_loan_history(
    principal: Principal = Depends(get_principal),
    ledger: LoanLedger = Depends(get_loan_ledger),
):
    """Caller's loans, newest first"""
    return [LoanSchema.model_validate(loan) for loan in ledger.loans_for_user(principal.user_id)]


@router.get("/users/me/notifications", response_model=List[NotificationSchema])
def get_notifications(
    principal: Principal = Depends(get_principal),
    notifications: NotificationService = Depends(get_notification_service),
):
    return [NotificationSchema.model_validate(n) for n in notifications.list_for_user(principal.user_id)]


@router.patch("/notifications/{notification_id}/read", status_code=204)
def mark_notification_read(
    notification_id: str,
    principal: Principal = Depends(get_principal),
    notifications: NotificationService = Depends(get_notification_service),
):
    """Unknown or foreign notifications answer 404 via the app-level domain error handler"""
    notifications.mark_read(parse_id(notification_id, "notification"), principal.user_id)
