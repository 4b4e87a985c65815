"""
Nonce Replay Guard - remembers every (userHash, nonce) pair for as long as a
request carrying it could still pass the timestamp window
"""

import logging
from typing import Optional

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Config
from models import ConsumedNonce
from utils.exceptions import ReplayedNonceError, ValidationError
from utils.helpers import now_seconds

logger = logging.getLogger(__name__)

MAX_NONCE_LENGTH = 128


class NonceReplayGuard:
    """Insert-or-reject on the unique (user_hash, nonce) constraint"""

    def __init__(self, window_seconds: Optional[int] = None):
        self.window_seconds = window_seconds or Config.SIGNATURE_WINDOW_SECONDS

    def consume(
        self,
        db: Session,
        user_hash: str,
        nonce: str,
        request_timestamp: Optional[int] = None,
        now: Optional[int] = None,
    ) -> None:
        """Record the nonce; raises ReplayedNonceError if it was already seen.

        A request stamped up to one window in the future stays acceptable
        until one window after its own timestamp, so the row must outlive that.
        """
        if not nonce or len(nonce) > MAX_NONCE_LENGTH:
            raise ValidationError(f"nonce must be 1..{MAX_NONCE_LENGTH} characters")

        now = now or now_seconds()
        anchor = max(now, request_timestamp or now)
        expires_at = anchor + self.window_seconds

        db.execute(
            delete(ConsumedNonce)
            .where(ConsumedNonce.user_hash == user_hash, ConsumedNonce.expires_at < now)
            .execution_options(synchronize_session=False)
        )

        try:
            with db.begin_nested():
                db.add(
                    ConsumedNonce(
                        user_hash=user_hash,
                        nonce=nonce,
                        created_at=now,
                        expires_at=expires_at,
                    )
                )
        except IntegrityError:
            logger.warning(f"🔒 REPLAY_BLOCKED: nonce reused by {user_hash[:12]}...")
            raise ReplayedNonceError("Request nonce has already been used")

    def purge_expired(self, db: Session, now: Optional[int] = None) -> int:
        """Sweep every expired nonce; returns rows removed"""
        now = now or now_seconds()
        result = db.execute(
            delete(ConsumedNonce)
            .where(ConsumedNonce.expires_at < now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info(f"🧹 Purged {result.rowcount} expired nonces")
        return result.rowcount
