"""Domain-specific exceptions"""

from typing import Dict, Optional


class DomainException(Exception):
    """Base exception for domain layer"""

    pass


class ValidationError(DomainException):
    """Input is malformed (amount bounds, phone format, missing reason)"""

    pass


class NotFoundError(DomainException):
    """Referenced loan, user or notification does not exist"""

    pass


class PermissionDeniedError(DomainException):
    """Principal is not allowed to act on the resource"""

    pass


class IneligibleError(DomainException):
    """Underwriting gate failed"""

    pass


class DuplicateActiveLoanError(IneligibleError):
    """User already holds a pending or approved loan"""

    pass


class AmountExceedsLimitError(IneligibleError):
    """Requested amount is above the user's loan limit"""

    def __init__(self, amount: int, loan_limit: int):
        super().__init__(f"Loan amount {amount} exceeds your limit of {loan_limit}")
        self.amount = amount
        self.loan_limit = loan_limit


class AutoApprovalCriteriaError(IneligibleError):
    """Loan does not meet auto-approval criteria"""

    def __init__(self, criteria: Dict[str, bool]):
        super().__init__("Loan does not meet auto-approval criteria")
        self.criteria = criteria


class StateConflictError(DomainException):
    """Operation attempted on a loan that is not in the required state"""

    def __init__(self, message: str, current: Optional[str] = None, required: Optional[str] = None):
        super().__init__(message)
        self.current = current
        self.required = required


class GatewayError(DomainException):
    """M-PESA gateway communication failed"""

    def __init__(self, message: str, description: Optional[str] = None):
        super().__init__(message)
        self.description = description


class GatewayAuthError(GatewayError):
    """OAuth client-credentials exchange failed"""

    pass


class GatewayRequestError(GatewayError):
    """STK Push or B2C request failed (network, timeout or non-2xx)"""

    pass


class InvalidCallbackError(DomainException):
    """Callback payload does not have the expected shape"""

    pass


class CallbackCorrelationMiss(DomainException):
    """Callback has no matching local record (duplicate or stale)"""

    pass
