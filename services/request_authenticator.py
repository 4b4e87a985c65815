"""
Request Authenticator - signed request validation for wallet-scoped calls

Signing input is the business payload merged with {timestamp, nonce}, keys
sorted, serialized as compact JSON (no whitespace, non-ASCII kept verbatim),
then HMAC-SHA256'd with the wallet's userSecret. The hex digest travels in
X-Signature alongside X-User-Hash, X-Timestamp (epoch millis) and X-Nonce.
"""

import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import Config
from models import Wallet
from services.nonce_guard import NonceReplayGuard
from utils.exceptions import (
    NotFoundError,
    UnauthorizedError,
    UnverifiableError,
    ValidationError,
)
from utils.helpers import normalize_user_hash

logger = logging.getLogger(__name__)

USER_HASH_HEADER = "X-User-Hash"
SIGNATURE_HEADER = "X-Signature"
TIMESTAMP_HEADER = "X-Timestamp"
NONCE_HEADER = "X-Nonce"


def canonicalize_payload(payload: Mapping[str, Any]) -> str:
    """Sorted-key compact JSON; None is kept and signed as null"""
    return json.dumps(dict(payload), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def build_signing_payload(payload: Mapping[str, Any], timestamp: int, nonce: str) -> Dict[str, Any]:
    signing_payload = dict(payload)
    signing_payload["timestamp"] = timestamp
    signing_payload["nonce"] = nonce
    return signing_payload


def sign_payload(payload: Mapping[str, Any], timestamp: int, nonce: str, secret: str) -> str:
    """Client-side counterpart of verification; also used by tooling and tests"""
    canonical = canonicalize_payload(build_signing_payload(payload, timestamp, nonce))
    return hmac.new(secret.encode("utf-8"), canonical.encode("utf-8"), hashlib.sha256).hexdigest()


@dataclass(frozen=True)
class SignedHeaders:
    user_hash: str
    signature: str
    timestamp: str
    nonce: str

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> "SignedHeaders":
        """Pull the four signing headers; any missing one is Unauthorized"""
        lowered = {key.lower(): value for key, value in headers.items()}
        values = {}
        for attr, header in (
            ("user_hash", USER_HASH_HEADER),
            ("signature", SIGNATURE_HEADER),
            ("timestamp", TIMESTAMP_HEADER),
            ("nonce", NONCE_HEADER),
        ):
            value = lowered.get(header.lower())
            if not value:
                raise UnauthorizedError(f"Missing {header} header")
            values[attr] = value.strip()
        return cls(**values)


@dataclass
class VerificationResult:
    valid: bool
    error: Optional[str] = None
    code: Optional[str] = None
    wallet: Optional[Wallet] = None
    timestamp_ms: Optional[int] = None


class RequestAuthenticator:
    """Verifies that the caller controls the claimed wallet's signing secret"""

    def __init__(
        self,
        window_seconds: Optional[int] = None,
        nonce_guard: Optional[NonceReplayGuard] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.window_seconds = window_seconds or Config.SIGNATURE_WINDOW_SECONDS
        self.nonce_guard = nonce_guard or NonceReplayGuard(self.window_seconds)
        self.clock = clock

    def verify(
        self,
        db: Session,
        user_hash: str,
        payload: Mapping[str, Any],
        signature: str,
        timestamp: Any,
        nonce: str,
    ) -> VerificationResult:
        """Pure check; reads the wallet, writes nothing"""
        try:
            user_hash = normalize_user_hash(user_hash, USER_HASH_HEADER)
        except ValidationError as e:
            return VerificationResult(False, e.message, UnauthorizedError.code)

        wallet = db.execute(
            select(Wallet).where(Wallet.user_hash == user_hash)
        ).scalar_one_or_none()
        if wallet is None:
            return VerificationResult(False, "Wallet not found", NotFoundError.code)
        if not wallet.user_secret:
            return VerificationResult(False, "Wallet has no bound secret", UnverifiableError.code)

        try:
            timestamp_ms = int(str(timestamp).strip())
        except (TypeError, ValueError):
            return VerificationResult(False, "Malformed timestamp", UnauthorizedError.code)

        now_ms = int(self.clock() * 1000)
        if abs(now_ms - timestamp_ms) > self.window_seconds * 1000:
            return VerificationResult(
                False, "Request timestamp outside the allowed window", UnauthorizedError.code
            )

        expected = sign_payload(payload, timestamp_ms, nonce, wallet.user_secret)
        if not hmac.compare_digest(expected, str(signature).strip().lower()):
            return VerificationResult(False, "Invalid signature", UnauthorizedError.code)

        return VerificationResult(True, wallet=wallet, timestamp_ms=timestamp_ms)

    def authenticate(
        self,
        db: Session,
        payload: Mapping[str, Any],
        headers: SignedHeaders,
    ) -> Wallet:
        """Verify and consume the nonce; returns the signer's wallet or raises"""
        result = self.verify(
            db, headers.user_hash, payload, headers.signature, headers.timestamp, headers.nonce
        )
        if not result.valid:
            logger.warning(
                f"🔒 SIGNATURE_REJECTED: {headers.user_hash[:12]}... reason={result.error}"
            )
            if result.code == NotFoundError.code:
                raise NotFoundError(result.error)
            if result.code == UnverifiableError.code:
                raise UnverifiableError(result.error)
            raise UnauthorizedError(result.error)

        self.nonce_guard.consume(
            db,
            result.wallet.user_hash,
            headers.nonce,
            request_timestamp=result.timestamp_ms // 1000,
            now=int(self.clock()),
        )
        return result.wallet
