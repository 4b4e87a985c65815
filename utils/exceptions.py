"""
Ledger exception hierarchy
Every domain failure carries a stable machine-readable code and the HTTP
status the API boundary maps it to.
"""

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for all expected domain failures"""

    code = "ledger_error"
    http_status = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": False, "error": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(LedgerError):
    """Missing or malformed input, rejected before any state is read"""

    code = "validation_error"
    http_status = 400


class UnauthorizedError(LedgerError):
    """Missing/invalid signature or admin credentials"""

    code = "unauthorized"
    http_status = 401


class ReplayedNonceError(UnauthorizedError):
    code = "nonce_reused"


class UnverifiableError(LedgerError):
    """Wallet exists but has no signing secret bound"""

    code = "unverifiable"
    http_status = 400


class NotFoundError(LedgerError):
    code = "not_found"
    http_status = 404


class InvalidStateError(LedgerError):
    """Entity is not in the source state for the transition, or the actor may not take it"""

    code = "invalid_state"
    http_status = 409


class ConflictError(LedgerError):
    code = "conflict"
    http_status = 409


class DuplicateReportError(ConflictError):
    code = "duplicate_report"


class AlreadyRedeemedError(ConflictError):
    code = "already_redeemed"


class SelfDealingError(ConflictError):
    """Buying your own product and similar self-referential operations"""

    code = "self_dealing"


class InsufficientBalanceError(LedgerError):
    code = "insufficient_balance"
    http_status = 400


class ExhaustedError(LedgerError):
    """Stock or code uses are used up"""

    code = "exhausted"
    http_status = 409


class OutOfStockError(ExhaustedError):
    code = "out_of_stock"


class CodeExhaustedError(ExhaustedError):
    code = "code_exhausted"


class RateLimitedError(LedgerError):
    code = "rate_limited"
    http_status = 429

    def __init__(self, message: str = "Too many requests", retry_after: int = 60):
        super().__init__(message, {"retry_after": retry_after})
        self.retry_after = retry_after
