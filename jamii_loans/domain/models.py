"""Domain models - pure Python enums and dataclasses representing business entities"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


class LoanStatus(str, Enum):
    """Loan lifecycle: pending -> approved|rejected, approved -> paid|defaulted"""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID = "paid"
    DEFAULTED = "defaulted"


ACTIVE_LOAN_STATUSES = (LoanStatus.PENDING.value, LoanStatus.APPROVED.value)


class DisbursementStatus(str, Enum):
    """Disbursement sub-state: pending -> processing -> completed|failed"""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class NotificationType(str, Enum):
    LOAN_APPROVED = "loan_approved"
    LOAN_REJECTED = "loan_rejected"
    LOAN_DISBURSED = "loan_disbursed"
    PAYMENT_REMINDER = "payment_reminder"
    LOAN_DEFAULTED = "loan_defaulted"


@dataclass
class EligibilityResult:
    """Output of the eligibility check"""

    eligible: bool
    credit_score: int
    max_amount: int
    loan_limit: int
    reason: Optional[str] = None


@dataclass
class AutoApprovalCriteria:
    """Individual auto-approval gates; all must hold"""

    fee_paid: bool
    valid_id: bool
    good_credit: bool
    no_other_pending_loans: bool

    @property
    def passed(self) -> bool:
        return self.fee_paid and self.valid_id and self.good_credit and self.no_other_pending_loans

    def as_dict(self) -> Dict[str, bool]:
        return {
            "fee_paid": self.fee_paid,
            "valid_id": self.valid_id,
            "good_credit": self.good_credit,
            "no_other_pending_loans": self.no_other_pending_loans,
        }


@dataclass
class StkPushResponse:
    """Synchronous acknowledgement of an STK Push request"""

    merchant_request_id: str
    checkout_request_id: str
    response_code: str
    response_description: str


@dataclass
class B2CResponse:
    """Synchronous acknowledgement of a B2C request (accepted for processing only)"""

    transaction_id: str
    response_code: str
    response_description: str


@dataclass
class StkCallbackResult:
    """Parsed STK Push callback"""

    success: bool
    merchant_request_id: Optional[str]
    checkout_request_id: str
    result_code: int
    result_description: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def receipt_number(self) -> Optional[str]:
        receipt = self.metadata.get("MpesaReceiptNumber")
        return str(receipt) if receipt is not None else None


@dataclass
class B2CCallbackResult:
    """Parsed B2C result or queue-timeout callback"""

    success: bool
    result_code: int
    result_description: str
    transaction_id: Optional[str] = None
    conversation_id: Optional[str] = None
    originator_conversation_id: Optional[str] = None
    receiver: Optional[str] = None
