"""Mapping of domain exceptions to HTTP responses"""

from fastapi import HTTPException

from jamii_loans.domain.exceptions import (
    AutoApprovalCriteriaError,
    DomainException,
    GatewayError,
    IneligibleError,
    NotFoundError,
    PermissionDeniedError,
    StateConflictError,
    ValidationError,
)


def to_http_exception(exc: DomainException) -> HTTPException:
    """Translate a domain error into an HTTPException with an actionable detail"""
    if isinstance(exc, AutoApprovalCriteriaError):
        return HTTPException(status_code=400, detail={"message": str(exc), "criteria": exc.criteria})
    if isinstance(exc, (ValidationError, IneligibleError)):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, PermissionDeniedError):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, StateConflictError):
        return HTTPException(
            status_code=409,
            detail={"message": str(exc), "current": exc.current, "required": exc.required},
        )
    if isinstance(exc, GatewayError):
        return HTTPException(status_code=502, detail=exc.description or str(exc))
    return HTTPException(status_code=500, detail="Internal server error")
