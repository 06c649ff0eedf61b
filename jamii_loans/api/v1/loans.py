"""Borrower loan endpoints: apply and pay the processing fee"""

import logging
from fastapi import APIRouter, Depends, HTTPException, Request

from jamii_loans.api.dependencies import Principal, get_loan_ledger, get_principal, get_request_id, parse_id
from jamii_loans.api.errors import to_http_exception
from jamii_loans.api.v1.schemas import LoanApplicationRequest, LoanSchema, PayFeeRequest, TransactionSchema
from jamii_loans.domain.exceptions import DomainException
from jamii_loans.services.loan_ledger import LoanLedger

router = APIRouter()


@router.post("/loans/apply", response_model=LoanSchema, status_code=201)
async def apply_for_loan(
    request_body: LoanApplicationRequest,
    request: Request,
    principal: Principal = Depends(get_principal),
    ledger: LoanLedger = Depends(get_loan_ledger),
):
    """
    Submit a loan application.

    Flow:
    1. Validate amount and phone number
    2. Check eligibility (citizenship, no active loan, loan limit)
    3. Create pending loan with its 10% processing fee
    4. Queue application confirmation email
    """
    request_id = get_request_id(request)
    try:
        loan = await ledger.apply(
            principal.user_id,
            request_body.amount,
            request_body.phone_number,
            request_body.description,
        )
        return LoanSchema.model_validate(loan)

    except DomainException as e:
        logging.info(f"Loan application refused: {e}", extra={"request_id": request_id})
        raise to_http_exception(e)

    except Exception as e:
        ledger.db.rollback()
        logging.error(f"Unexpected error: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/loans/{loan_id}/pay-fee", response_model=TransactionSchema)
async def pay_loan_fee(
    loan_id: str,
    request_body: PayFeeRequest,
    request: Request,
    principal: Principal = Depends(get_principal),
    ledger: LoanLedger = Depends(get_loan_ledger),
):
    """
    Initiate M-PESA STK Push for the loan processing fee.

    Returns the pending fee transaction; the payment result arrives later on
    the collection callback.
    """
    request_id = get_request_id(request)
    loan_uuid = parse_id(loan_id)
    try:
        txn = await ledger.initiate_fee_payment(loan_uuid, principal.user_id, request_body.phone_number)
        return TransactionSchema.model_validate(txn)

    except DomainException as e:
        logging.warning(f"Fee payment not initiated: {e}", extra={"request_id": request_id, "loan_id": loan_id})
        raise to_http_exception(e)

    except Exception as e:
        ledger.db.rollback()
        logging.error(f"Unexpected error: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=500, detail="Internal server error")
