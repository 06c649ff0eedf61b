"""Mail relay client with exponential backoff retry logic"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

import httpx

from jamii_loans.config import settings
from jamii_loans.infrastructure.observability.metrics import mail_failure_counter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoanMail:
    """Snapshot of the user and loan fields an email needs (safe to use after the session closes)"""

    email: str
    full_name: str
    loan_id: str
    amount: int
    fee_amount: int
    fee_paid: bool
    description: Optional[str] = None
    rejection_reason: Optional[str] = None
    disbursement_reference: Optional[str] = None
    event_date: Optional[datetime] = None

    @classmethod
    def from_models(cls, user: Any, loan: Any) -> "LoanMail":
        return cls(
            email=user.email,
            full_name=user.full_name,
            loan_id=str(loan.id),
            amount=loan.amount,
            fee_amount=loan.fee_amount,
            fee_paid=loan.fee_paid,
            description=loan.description,
            rejection_reason=loan.rejection_reason,
            disbursement_reference=loan.disbursement_transaction_id,
            event_date=loan.approval_date or loan.disbursed_at,
        )


class MailClient:
    """Client for sending transactional loan emails through an HTTP mail relay"""

    def __init__(self, relay_url: str | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self.relay_url = relay_url or settings.mail_relay_url
        self.sender = settings.mail_sender
        self.max_retries = settings.mail_max_retries
        self.backoff_base = settings.mail_backoff_base
        self.transport = transport

    async def send(self, to: str, subject: str, body: str) -> bool:
        """
        Deliver one email to the relay with retry logic.

        Retry strategy:
        - Exponential backoff: base * 2^(attempt-1)
        - Retries on 5xx errors and network failures
        - Never raises: delivery is best-effort and must not affect loan state

        Returns:
            True when the relay accepted the message
        """
        payload: Dict[str, Any] = {"from": self.sender, "to": to, "subject": subject, "text": body}
        attempt = 0
        async with httpx.AsyncClient(transport=self.transport) as client:
            while attempt < self.max_retries:
                try:
                    response = await client.post(self.relay_url, json=payload, timeout=10.0)
                    response.raise_for_status()
                    return True

                except (httpx.HTTPStatusError, httpx.RequestError) as e:
                    attempt += 1
                    mail_failure_counter.inc()

                    if attempt >= self.max_retries:
                        logger.error(f"Failed to send email '{subject}': {e}", extra={"to": to})
                        return False

                    backoff = self.backoff_base * (2 ** (attempt - 1))
                    await asyncio.sleep(backoff)
        return False

    async def send_loan_application_email(self, mail: LoanMail) -> bool:
        body = (
            f"Hello {mail.full_name},\n\n"
            f"Your loan application has been submitted successfully.\n"
            f"Loan Amount: KSh {mail.amount:,}\n"
            f"Processing Fee (10%): KSh {mail.fee_amount:,}\n"
            f"Description: {mail.description or '-'}\n"
            f"Status: Pending Review\n\n"
            f"Our team will review your application within 24-48 hours.\n"
        )
        return await self.send(mail.email, "JAMII Loan - Application Submitted Successfully", body)

    async def send_loan_approval_email(self, mail: LoanMail) -> bool:
        fee_state = "Paid" if mail.fee_paid else "Pending Payment"
        body = (
            f"Congratulations {mail.full_name}! Your loan is approved.\n\n"
            f"Loan Amount: KSh {mail.amount:,}\n"
            f"Processing Fee: KSh {mail.fee_amount:,} ({fee_state})\n"
        )
        if mail.event_date:
            body += f"Approval Date: {mail.event_date:%Y-%m-%d}\n"
        if not mail.fee_paid:
            body += f"\nNext step: pay the processing fee of KSh {mail.fee_amount:,} via M-PESA.\n"
        return await self.send(mail.email, "JAMII Loan - Application Approved!", body)

    async def send_loan_rejection_email(self, mail: LoanMail) -> bool:
        body = (
            f"Hello {mail.full_name},\n\n"
            f"We regret to inform you that your loan application for KSh {mail.amount:,} was not approved.\n"
            f"Reason: {mail.rejection_reason}\n"
        )
        return await self.send(mail.email, "JAMII Loan - Application Update", body)

    async def send_loan_disbursement_email(self, mail: LoanMail) -> bool:
        body = (
            f"Hello {mail.full_name},\n\n"
            f"Your loan of KSh {mail.amount:,} has been sent to your M-PESA account.\n"
            f"Reference: {mail.disbursement_reference or '-'}\n"
        )
        return await self.send(mail.email, "JAMII Loan - Funds Disbursed", body)
