"""
Rate Limiting Middleware
Advisory per-client throttling. State is in-process only: it resets on restart
and is not shared between workers, so nothing relies on it for correctness.
"""

import threading
import time
from typing import Callable, Dict, Optional, Tuple
import logging

from fastapi import Request

from config import Config
from utils.exceptions import RateLimitedError

logger = logging.getLogger(__name__)


class RateLimiter:
    """Simple in-memory sliding-window rate limiter"""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._requests: Dict[Tuple[str, str], list] = {}  # (identifier, bucket) -> [timestamp, ...]
        self._lock = threading.Lock()
        self._clock = clock

    def is_rate_limited(
        self,
        identifier: str,
        bucket: str = "general",
        max_requests: int = 10,
        window_seconds: int = 60,
    ) -> Tuple[bool, Optional[int]]:
        """
        Check if identifier is rate limited for bucket

        Returns:
            Tuple of (is_limited, seconds_until_reset)
        """
        now = self._clock()
        cutoff = now - window_seconds
        key = (identifier, bucket)

        with self._lock:
            recent = [t for t in self._requests.get(key, []) if t > cutoff]

            if len(recent) >= max_requests:
                self._requests[key] = recent
                reset_time = int(min(recent) + window_seconds - now)
                return True, max(1, reset_time)

            recent.append(now)
            self._requests[key] = recent
            return False, None

    def reset_limits(self, identifier: str):
        """Reset all limits for an identifier (admin function)"""
        with self._lock:
            for key in [key for key in self._requests if key[0] == identifier]:
                del self._requests[key]

    def clear(self):
        with self._lock:
            self._requests.clear()


# Rate limiting configurations for different actions
RATE_LIMITS = {
    "mutation": {"max_requests": Config.RATE_LIMIT_MAX_REQUESTS, "window_seconds": Config.RATE_LIMIT_WINDOW_SECONDS},
    "redeem": {"max_requests": 10, "window_seconds": 60},
    "admin_auth": {"max_requests": 5, "window_seconds": 60},
    "register": {"max_requests": 10, "window_seconds": 60},
}


def _client_identifier(request: Request) -> str:
    user_hash = request.headers.get("x-user-hash")
    if user_hash:
        return f"user:{user_hash.lower()}"
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return f"ip:{forwarded.split(',')[0].strip()}"
    return f"ip:{request.client.host if request.client else 'unknown'}"


def rate_limit(bucket: str = "mutation"):
    """
    FastAPI dependency factory for rate limiting endpoints

    Usage:
        @app.post("/api/redeem", dependencies=[Depends(rate_limit("redeem"))])
    """
    limits = RATE_LIMITS.get(bucket, RATE_LIMITS["mutation"])

    def dependency(request: Request) -> None:
        if not Config.RATE_LIMIT_ENABLED:
            return
        limiter: Optional[RateLimiter] = getattr(request.app.state, "rate_limiter", None)
        if limiter is None:
            return
        identifier = _client_identifier(request)
        is_limited, reset_time = limiter.is_rate_limited(
            identifier, bucket, limits["max_requests"], limits["window_seconds"]
        )
        if is_limited:
            logger.warning(f"Rate limit exceeded for {identifier} on {bucket}")
            raise RateLimitedError(
                f"Too many {bucket} requests. Please wait {reset_time} seconds and try again.",
                retry_after=reset_time,
            )

    return dependency
