"""Error handling with standardized API failure responses"""

import logging
import traceback
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from utils.exceptions import (
    LedgerError,
    ValidationError,
    UnauthorizedError,
    UnverifiableError,
    NotFoundError,
    InvalidStateError,
    ConflictError,
    InsufficientBalanceError,
    ExhaustedError,
    RateLimitedError,
)

logger = logging.getLogger(__name__)


class ErrorCategory(Enum):
    """Error categories for classification"""

    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    NOT_FOUND = "not_found"
    STATE = "state"
    CONFLICT = "conflict"
    BALANCE = "balance"
    RATE_LIMIT = "rate_limit"
    SYSTEM = "system"


class ErrorSeverity(Enum):
    """Error severity levels"""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class StandardError:
    """Standard error response structure"""

    code: str
    message: str
    category: ErrorCategory
    severity: ErrorSeverity
    http_status: int
    details: Optional[Dict[str, Any]] = None
    timestamp: Optional[str] = None
    trace_id: Optional[str] = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now(timezone.utc).isoformat()

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": False, "error": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        if self.trace_id:
            body["traceId"] = self.trace_id
        return body


# Order matters: subclasses are matched through isinstance on their parents
_CATEGORY_BY_TYPE = (
    (ValidationError, ErrorCategory.VALIDATION, ErrorSeverity.LOW),
    (UnauthorizedError, ErrorCategory.AUTHENTICATION, ErrorSeverity.MEDIUM),
    (UnverifiableError, ErrorCategory.AUTHENTICATION, ErrorSeverity.MEDIUM),
    (NotFoundError, ErrorCategory.NOT_FOUND, ErrorSeverity.LOW),
    (InvalidStateError, ErrorCategory.STATE, ErrorSeverity.LOW),
    (ConflictError, ErrorCategory.CONFLICT, ErrorSeverity.LOW),
    (InsufficientBalanceError, ErrorCategory.BALANCE, ErrorSeverity.LOW),
    (ExhaustedError, ErrorCategory.CONFLICT, ErrorSeverity.LOW),
    (RateLimitedError, ErrorCategory.RATE_LIMIT, ErrorSeverity.MEDIUM),
)


class ErrorHandler:
    """Maps exceptions to StandardError and keeps per-code counters"""

    def __init__(self):
        self.error_counts: Dict[str, int] = {}

    def handle_error(self, error: Exception, context: Optional[Dict] = None) -> StandardError:
        """Handle any exception and return a standardized error"""
        if isinstance(error, LedgerError):
            standard_error = self._classify_domain_error(error)
            log = logger.warning if standard_error.severity != ErrorSeverity.LOW else logger.info
            log(f"⚠️ Request rejected [{standard_error.code}]: {error.message} context={context}")
        else:
            standard_error = self._internal_error()
            logger.error(
                f"❌ Unhandled error trace_id={standard_error.trace_id} "
                f"{type(error).__name__}: {error} context={context}\n{traceback.format_exc()}"
            )

        key = f"{standard_error.category.value}:{standard_error.code}"
        self.error_counts[key] = self.error_counts.get(key, 0) + 1
        if self.error_counts[key] % 100 == 0:
            logger.warning(f"High error rate detected: {key} - {self.error_counts[key]} occurrences")

        return standard_error

    def _classify_domain_error(self, error: LedgerError) -> StandardError:
        category, severity = ErrorCategory.SYSTEM, ErrorSeverity.MEDIUM
        for error_type, mapped_category, mapped_severity in _CATEGORY_BY_TYPE:
            if isinstance(error, error_type):
                category, severity = mapped_category, mapped_severity
                break

        return StandardError(
            code=error.code,
            message=error.message,
            category=category,
            severity=severity,
            http_status=error.http_status,
            details=error.details or None,
        )

    def _internal_error(self) -> StandardError:
        # Never echo internal detail back to the caller
        return StandardError(
            code="internal_error",
            message="Internal server error",
            category=ErrorCategory.SYSTEM,
            severity=ErrorSeverity.HIGH,
            http_status=500,
            trace_id=uuid.uuid4().hex[:12],
        )

    def get_error_stats(self) -> Dict[str, Any]:
        """Get error statistics"""
        return {
            "total_errors": sum(self.error_counts.values()),
            "error_counts": self.error_counts.copy(),
        }


# Global error handler instance
error_handler = ErrorHandler()


def handle_error(error: Exception, context: Optional[Dict] = None) -> StandardError:
    """Global error handling function"""
    return error_handler.handle_error(error, context)
