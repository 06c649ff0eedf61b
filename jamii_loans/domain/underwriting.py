"""Eligibility and underwriting rules - core business logic for loan gating"""

from typing import Optional, Protocol

from jamii_loans.domain.models import AutoApprovalCriteria, EligibilityResult

MIN_LOAN_AMOUNT = 1_000
MAX_LOAN_AMOUNT = 500_000
MAX_CREDIT_SCORE = 1_000
AUTO_APPROVAL_MIN_CREDIT_SCORE = 600

MANUAL_APPROVAL_SCORE_BONUS = 50
AUTO_APPROVAL_SCORE_BONUS = 25


class Applicant(Protocol):
    """Attributes of a user the underwriting rules look at"""

    is_citizen: bool
    national_id: Optional[str]
    credit_score: int
    loan_limit: int
    total_loans_applied: int


def calculate_fee(amount: int) -> int:
    """
    Processing fee: 10% of the loan amount rounded to the nearest shilling.

    Halves round up, e.g. 1005 -> 101, 50000 -> 5000.
    """
    return (amount + 5) // 10


def calculate_max_amount(credit_score: int, loan_limit: int, total_loans_applied: int) -> int:
    """
    Map credit score to the maximum amount a user may borrow.

    Tiers are evaluated top-down, first match wins:
    - < 300:  up to 10,000
    - < 500:  up to 25,000
    - < 700:  up to 50,000
    - >= 700 with no previous applications: up to 30,000
    - otherwise: the full loan limit
    """
    if credit_score < 300:
        return min(loan_limit, 10_000)
    elif credit_score < 500:
        return min(loan_limit, 25_000)
    elif credit_score < 700:
        return min(loan_limit, 50_000)
    elif total_loans_applied == 0:
        return min(loan_limit, 30_000)
    return loan_limit


def check_eligibility(user: Applicant, has_active_loan: bool) -> EligibilityResult:
    """Decide whether a user may apply for a new loan and how much"""
    if not user.is_citizen:
        return EligibilityResult(
            eligible=False,
            reason="Only Kenyan citizens are eligible for loans",
            credit_score=user.credit_score,
            max_amount=0,
            loan_limit=user.loan_limit,
        )

    if has_active_loan:
        return EligibilityResult(
            eligible=False,
            reason="You have pending or approved loans. Please settle them first.",
            credit_score=user.credit_score,
            max_amount=0,
            loan_limit=user.loan_limit,
        )

    return EligibilityResult(
        eligible=True,
        credit_score=user.credit_score,
        max_amount=calculate_max_amount(user.credit_score, user.loan_limit, user.total_loans_applied),
        loan_limit=user.loan_limit,
    )


def evaluate_auto_approval(
    fee_paid: bool,
    is_citizen: bool,
    national_id: Optional[str],
    credit_score: int,
    has_other_pending_loans: bool,
) -> AutoApprovalCriteria:
    """Evaluate every auto-approval gate individually so callers can show which failed"""
    return AutoApprovalCriteria(
        fee_paid=bool(fee_paid),
        valid_id=bool(is_citizen and national_id),
        good_credit=credit_score >= AUTO_APPROVAL_MIN_CREDIT_SCORE,
        no_other_pending_loans=not has_other_pending_loans,
    )
