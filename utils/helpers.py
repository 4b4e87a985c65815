"""Helper utilities for the credit ledger: identifiers, time, validation, pagination"""

import math
import re
import secrets
import string
import time
from typing import Any, Dict, List, Optional, Tuple

from config import Config
from utils.exceptions import ValidationError

USER_HASH_PATTERN = re.compile(r"^[a-f0-9]{64}$", re.IGNORECASE)

_BASE36_ALPHABET = string.digits + string.ascii_uppercase


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36_ALPHABET[remainder])
    return "".join(reversed(digits))


def generate_id(prefix: str) -> str:
    """<PREFIX>-<base36 millis>-<random>, upper-cased and roughly time ordered"""
    timestamp_part = _to_base36(int(time.time() * 1000))
    random_part = "".join(secrets.choice(_BASE36_ALPHABET) for _ in range(8))
    return f"{prefix}-{timestamp_part}-{random_part}"


def generate_transaction_id() -> str:
    return generate_id("TX")


def generate_task_id() -> str:
    return generate_id("TASK")


def generate_product_id() -> str:
    return generate_id("PROD")


def generate_purchase_id() -> str:
    return generate_id("PUR")


def generate_report_id() -> str:
    return generate_id("RPT")


def generate_case_id() -> str:
    return generate_id("CASE")


def generate_redemption_id() -> str:
    return generate_id("RDM")


def now_seconds() -> int:
    """Current time as integer epoch seconds (storage format)"""
    return int(time.time())


def to_millis(seconds: Optional[int]) -> Optional[int]:
    """Storage seconds to client milliseconds"""
    if seconds is None:
        return None
    return int(seconds) * 1000


# ============================================================================
# Input validation
# ============================================================================

def normalize_user_hash(value: Any, field: str = "userHash") -> str:
    """Validate a 64-hex wallet fingerprint and return it lower-cased"""
    if not isinstance(value, str) or not USER_HASH_PATTERN.match(value.strip()):
        raise ValidationError(f"{field} must be a 64 character hex string")
    return value.strip().lower()


_ASCII_DIGITS = re.compile(r"^[0-9]+$")
MAX_DIGITS = 18


def _parse_whole_number(value: Any) -> Optional[int]:
    """int, integral float or ASCII digit string; anything else is None"""
    if isinstance(value, bool):
        return None
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str):
        value = value.strip()
        if not _ASCII_DIGITS.match(value) or len(value) > MAX_DIGITS:
            return None
        return int(value)
    if isinstance(value, int):
        return value
    return None


def require_positive_int(value: Any, field: str, maximum: Optional[int] = None) -> int:
    """Whole credit units only, 1..MAX_AMOUNT; bools and fractional floats are rejected"""
    maximum = maximum or Config.MAX_AMOUNT
    parsed = _parse_whole_number(value)
    if parsed is None or parsed <= 0:
        raise ValidationError(f"{field} must be a positive integer")
    if parsed > maximum:
        raise ValidationError(f"{field} must be at most {maximum}")
    return parsed


def require_non_negative_int(value: Any, field: str) -> int:
    parsed = _parse_whole_number(value)
    if parsed is None or parsed < 0:
        raise ValidationError(f"{field} must be a non-negative integer")
    if parsed > Config.MAX_AMOUNT:
        raise ValidationError(f"{field} must be at most {Config.MAX_AMOUNT}")
    return parsed


def require_text(value: Any, field: str, max_length: int, required: bool = True) -> Optional[str]:
    """Trimmed string within max_length; None/empty allowed when not required"""
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ValidationError(f"{field} is required")
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string")
    value = value.strip()
    if len(value) > max_length:
        raise ValidationError(f"{field} must be at most {max_length} characters")
    return value


def require_choice(value: Any, field: str, choices: List[str]) -> str:
    if value not in choices:
        raise ValidationError(f"{field} must be one of: {', '.join(choices)}")
    return value


# ============================================================================
# Pagination
# ============================================================================

_LEADING_INT = re.compile(r"^\s*([+-]?[0-9]+)")


def parse_query_int(value: Any, default: int) -> int:
    """Leading integer of a query string, falling back to default when absent or zero"""
    if isinstance(value, int) and not isinstance(value, bool):
        return value or default
    match = _LEADING_INT.match(value) if isinstance(value, str) else None
    if match is None or len(match.group(1).lstrip("+-")) > MAX_DIGITS:
        return default
    return int(match.group(1)) or default


def normalize_pagination(page: Any = None, limit: Any = None) -> Tuple[int, int]:
    """Clamp page to >= 1 and limit to 1..MAX_PAGE_LIMIT"""
    try:
        page = int(page) if page not in (None, "") else 1
    except (TypeError, ValueError):
        raise ValidationError("page must be an integer")
    try:
        limit = int(limit) if limit not in (None, "") else Config.DEFAULT_PAGE_LIMIT
    except (TypeError, ValueError):
        raise ValidationError("limit must be an integer")

    page = min(max(page, 1), Config.MAX_AMOUNT)
    limit = min(max(limit, 1), Config.MAX_PAGE_LIMIT)
    return page, limit


def build_page(data: List[Any], total: int, page: int, limit: int) -> Dict[str, Any]:
    """Pagination envelope returned by every list operation"""
    return {
        "data": data,
        "total": total,
        "page": page,
        "limit": limit,
        "totalPages": math.ceil(total / limit) if limit else 0,
    }
