"""Dependency injection for FastAPI endpoints"""

import uuid
from dataclasses import dataclass

from fastapi import BackgroundTasks, Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from jamii_loans.domain.models import Role
from jamii_loans.infrastructure.clients.mailer import MailClient
from jamii_loans.infrastructure.clients.mpesa import MpesaClient
from jamii_loans.infrastructure.database.session import get_db
from jamii_loans.services.loan_ledger import LoanLedger
from jamii_loans.services.notifications import NotificationService
from jamii_loans.services.reconciler import CallbackReconciler


@dataclass(frozen=True)
class Principal:
    """Authenticated caller, resolved upstream by the auth layer"""

    user_id: uuid.UUID
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


def get_principal(
    x_user_id: str | None = Header(default=None),
    x_user_role: str = Header(default=Role.USER.value),
) -> Principal:
    """Read the principal forwarded by the authentication gateway"""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        return Principal(user_id=uuid.UUID(x_user_id), role=Role(x_user_role))
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid principal")


def require_admin(principal: Principal = Depends(get_principal)) -> Principal:
    if not principal.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return principal


def parse_id(value: str, name: str = "loan") -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {name} ID format")


def get_mpesa_client() -> MpesaClient:
    """Provide M-PESA API client instance"""
    return MpesaClient()


def get_mail_client() -> MailClient:
    """Provide mail relay client instance"""
    return MailClient()


def get_loan_ledger(
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    mpesa_client: MpesaClient = Depends(get_mpesa_client),
    mail_client: MailClient = Depends(get_mail_client),
) -> LoanLedger:
    return LoanLedger(db, mpesa_client=mpesa_client, mail_client=mail_client, background_tasks=background_tasks)


def get_notification_service(db: Session = Depends(get_db)) -> NotificationService:
    return NotificationService(db)


def get_reconciler(db: Session = Depends(get_db)) -> CallbackReconciler:
    return CallbackReconciler(db)
