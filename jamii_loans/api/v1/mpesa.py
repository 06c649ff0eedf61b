"""M-PESA callback endpoints (called by the provider)"""

import logging
from fastapi import APIRouter, Depends, Request

from jamii_loans.api.dependencies import get_reconciler, get_request_id
from jamii_loans.api.v1.schemas import CallbackAck
from jamii_loans.infrastructure.observability.metrics import callback_counter
from jamii_loans.services.reconciler import CallbackReconciler

router = APIRouter()

# The provider retries anything that is not a success acknowledgement, so every
# endpoint below answers 200 regardless of what happened internally.


async def _acknowledge(kind: str, request: Request, reconciler: CallbackReconciler, apply) -> CallbackAck:
    request_id = get_request_id(request)
    try:
        payload = await request.json()
        applied = apply(payload)
        logging.info(f"{kind} callback processed", extra={"request_id": request_id, "applied": applied})
    except Exception as e:
        reconciler.db.rollback()
        callback_counter.labels(kind=kind, outcome="error").inc()
        logging.error(f"Error processing {kind} callback: {e}", extra={"request_id": request_id})
    return CallbackAck()


@router.post("/mpesa/callback", response_model=CallbackAck)
async def collection_callback(request: Request, reconciler: CallbackReconciler = Depends(get_reconciler)):
    """STK Push result for a fee collection"""
    return await _acknowledge("collection", request, reconciler, reconciler.apply_collection_callback)


@router.post("/mpesa/b2c/result", response_model=CallbackAck)
async def disbursement_result(request: Request, reconciler: CallbackReconciler = Depends(get_reconciler)):
    """B2C result for a loan disbursement"""
    return await _acknowledge("disbursement", request, reconciler, reconciler.apply_disbursement_callback)


@router.post("/mpesa/b2c/timeout", response_model=CallbackAck)
async def disbursement_timeout(request: Request, reconciler: CallbackReconciler = Depends(get_reconciler)):
    """B2C request expired in the provider queue"""
    return await _acknowledge("disbursement_timeout", request, reconciler, reconciler.apply_disbursement_timeout)
