"""
Admin Authentication Service

Two ways through the admin boundary:
- the shared ADMIN_SECRET, sent as X-Admin-Token or Authorization: Bearer
- a short-lived session token (HS256 JWT layout) issued by login(password)

The admin password lives in the settings table as a bcrypt hash.
"""

import base64
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Callable, Dict, Mapping, Optional

import bcrypt
from sqlalchemy import select
from sqlalchemy.orm import Session

from config import Config
from models import Setting
from utils.exceptions import UnauthorizedError, ValidationError
from utils.helpers import now_seconds

logger = logging.getLogger(__name__)

ADMIN_PASSWORD_SETTING = "admin_password_hash"

# bcrypt only looks at the first 72 bytes of a password
MAX_PASSWORD_BYTES = 72


def hash_password(password: str) -> str:
    """Salted bcrypt hash, returned as a string for the settings table"""
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
    return hashed.decode("utf-8")


def verify_password(password: str, stored: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), stored.encode("utf-8"))
    except ValueError:
        return False


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(segment: str) -> bytes:
    return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))


class AdminAuthService:
    """Admin authentication and password management"""

    def __init__(
        self,
        admin_secret: Optional[str] = None,
        token_secret: Optional[str] = None,
        token_ttl_seconds: Optional[int] = None,
        master_secret: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.admin_secret = Config.ADMIN_SECRET if admin_secret is None else admin_secret
        self.token_secret = Config.ADMIN_JWT_SECRET if token_secret is None else token_secret
        self.token_ttl_seconds = token_ttl_seconds or Config.ADMIN_TOKEN_TTL_SECONDS
        self.master_secret = Config.ADMIN_MASTER_SECRET if master_secret is None else master_secret
        self.clock = clock

    # ------------------------------------------------------------------
    # Session tokens
    # ------------------------------------------------------------------

    def issue_token(self, subject: str = "admin") -> str:
        if not self.token_secret:
            raise UnauthorizedError("Admin login is not configured")
        now = int(self.clock())
        header = {"alg": "HS256", "typ": "JWT"}
        payload = {"sub": subject, "role": "admin", "iat": now, "exp": now + self.token_ttl_seconds}
        signing_input = ".".join(
            _b64url(json.dumps(part, separators=(",", ":")).encode("utf-8"))
            for part in (header, payload)
        )
        signature = hmac.new(
            self.token_secret.encode("utf-8"), signing_input.encode("ascii"), hashlib.sha256
        ).digest()
        return f"{signing_input}.{_b64url(signature)}"

    def verify_token(self, token: str) -> Optional[Dict[str, Any]]:
        """Return the claims of a valid, unexpired admin token, else None"""
        if not self.token_secret or token.count(".") != 2:
            return None
        header_segment, payload_segment, signature_segment = token.split(".")
        signing_input = f"{header_segment}.{payload_segment}"
        try:
            expected = hmac.new(
                self.token_secret.encode("utf-8"), signing_input.encode("ascii"), hashlib.sha256
            ).digest()
            supplied = _b64url_decode(signature_segment)
            header = json.loads(_b64url_decode(header_segment))
            claims = json.loads(_b64url_decode(payload_segment))
        except (ValueError, UnicodeError):
            return None
        if not isinstance(header, dict) or not isinstance(claims, dict):
            return None
        if not hmac.compare_digest(expected, supplied):
            return None
        if header.get("alg") != "HS256" or claims.get("role") != "admin":
            return None
        exp = claims.get("exp")
        if not isinstance(exp, int) or exp < int(self.clock()):
            return None
        return claims

    # ------------------------------------------------------------------
    # Request verification
    # ------------------------------------------------------------------

    def verify_admin_request(self, headers: Mapping[str, str]) -> str:
        """Raise UnauthorizedError unless the headers carry a valid admin credential"""
        lowered = {key.lower(): value for key, value in headers.items()}
        candidates = []
        authorization = lowered.get("authorization", "")
        if authorization.lower().startswith("bearer "):
            candidates.append(authorization[7:].strip())
        if lowered.get("x-admin-token"):
            candidates.append(lowered["x-admin-token"].strip())

        for token in candidates:
            if self.admin_secret and hmac.compare_digest(
                token.encode("utf-8"), self.admin_secret.encode("utf-8")
            ):
                return "shared-secret"
            claims = self.verify_token(token)
            if claims is not None:
                return claims["sub"]

        logger.warning("🔒 ADMIN_AUTH_REJECTED: missing or invalid admin credential")
        raise UnauthorizedError("Admin authentication required")

    # ------------------------------------------------------------------
    # Password management
    # ------------------------------------------------------------------

    def _stored_password_hash(self, db: Session) -> Optional[str]:
        return db.execute(
            select(Setting.value).where(Setting.key == ADMIN_PASSWORD_SETTING)
        ).scalar_one_or_none()

    def login(self, db: Session, password: Any) -> str:
        if not isinstance(password, str) or not password:
            raise ValidationError("password is required")
        stored = self._stored_password_hash(db)
        if stored is not None:
            valid = verify_password(password, stored)
        else:
            initial = Config.ADMIN_INITIAL_PASSWORD
            valid = bool(initial) and hmac.compare_digest(
                password.encode("utf-8"), initial.encode("utf-8")
            )
        if not valid:
            logger.warning("🔒 ADMIN_LOGIN_FAILED")
            raise UnauthorizedError("Invalid admin password")
        logger.info("✅ ADMIN_LOGIN")
        return self.issue_token()

    def change_password(self, db: Session, master_secret: Any, new_password: Any) -> None:
        if not self.master_secret or not isinstance(master_secret, str) or not hmac.compare_digest(
            master_secret.encode("utf-8"), self.master_secret.encode("utf-8")
        ):
            raise UnauthorizedError("Invalid master secret")
        if not isinstance(new_password, str) or len(new_password) < Config.ADMIN_PASSWORD_MIN_LENGTH:
            raise ValidationError(
                f"newPassword must be at least {Config.ADMIN_PASSWORD_MIN_LENGTH} characters"
            )
        if len(new_password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise ValidationError(f"newPassword must be at most {MAX_PASSWORD_BYTES} bytes")

        encoded = hash_password(new_password)
        setting = db.get(Setting, ADMIN_PASSWORD_SETTING)
        if setting is None:
            db.add(
                Setting(
                    key=ADMIN_PASSWORD_SETTING,
                    value=encoded,
                    description="bcrypt hash of the admin password",
                    updated_at=now_seconds(),
                )
            )
        else:
            setting.value = encoded
            setting.updated_at = now_seconds()
        db.flush()
        logger.info("🔑 ADMIN_PASSWORD_CHANGED")
