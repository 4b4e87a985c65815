"""
Redeem Code Engine - limited-use vouchers credited at most once per user

Codes are never stored in clear: the table keeps HMAC-SHA256(REDEEM_CODE_SECRET,
code) and a short display hint. A redemption is four writes in one unit:
the per-user redemption row (unique on code_hash + user_hash), the
conditional used_count increment, the wallet credit and the redeem entry.
"""

import hashlib
import hmac
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Config
from models import RedeemCode, RedeemRedemption, Transaction, TransactionType
from services.ledger import Ledger
from utils.exceptions import (
    AlreadyRedeemedError,
    CodeExhaustedError,
    ConflictError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from utils.helpers import (
    generate_redemption_id,
    generate_transaction_id,
    now_seconds,
    require_positive_int,
    require_text,
)
from utils.json_serialization import redeem_code_to_dict

logger = logging.getLogger(__name__)

# Largest integer a JavaScript client can send exactly
MAX_TIMESTAMP_MS = 2 ** 53 - 1


def normalize_code(code: Any) -> str:
    if not isinstance(code, str):
        raise ValidationError("code is required")
    code = code.strip()
    if not Config.REDEEM_CODE_MIN_LENGTH <= len(code) <= Config.REDEEM_CODE_MAX_LENGTH:
        raise ValidationError(
            f"code must be {Config.REDEEM_CODE_MIN_LENGTH}-{Config.REDEEM_CODE_MAX_LENGTH} characters"
        )
    return code


def hash_code(code: str, secret: Optional[str] = None) -> str:
    key = secret if secret is not None else Config.REDEEM_CODE_SECRET
    return hmac.new(key.encode("utf-8"), code.encode("utf-8"), hashlib.sha256).hexdigest()


def code_hint(code: str) -> str:
    """abc***yz for longer codes, a*** for short ones"""
    if len(code) <= 4:
        return f"{code[:1]}***"
    return f"{code[:3]}***{code[-2:]}"


class RedeemCodeEngine:
    """Voucher redemption plus admin management"""

    def __init__(self, db: Session, secret: Optional[str] = None):
        self.db = db
        self.secret = secret
        self.ledger = Ledger(db)

    def _get_code(self, code_hash: str) -> RedeemCode:
        redeem_code = self.db.execute(
            select(RedeemCode).where(RedeemCode.code_hash == code_hash)
        ).scalar_one_or_none()
        if redeem_code is None:
            raise NotFoundError("Redeem code not found")
        return redeem_code

    def redeem(self, user_hash: str, code: Any) -> Transaction:
        code = normalize_code(code)
        code_hash = hash_code(code, self.secret)
        redeem_code = self._get_code(code_hash)
        self.ledger.get_wallet(user_hash)

        now = now_seconds()
        if not redeem_code.enabled:
            raise InvalidStateError("Redeem code is disabled")
        if redeem_code.expires_at is not None and redeem_code.expires_at <= now:
            raise InvalidStateError("Redeem code has expired")

        already = self.db.execute(
            select(RedeemRedemption.id).where(
                RedeemRedemption.code_hash == code_hash,
                RedeemRedemption.user_hash == user_hash,
            )
        ).first()
        if already is not None:
            raise AlreadyRedeemedError("You have already redeemed this code")
        if redeem_code.max_uses is not None and redeem_code.used_count >= redeem_code.max_uses:
            raise CodeExhaustedError("Redeem code has been fully used")

        tx_id = generate_transaction_id()
        redemption_id = generate_redemption_id()

        # The unique (code_hash, user_hash) row is the real guard; the pre-check
        # above only gives a friendlier error on the common path
        try:
            with self.db.begin_nested():
                self.db.add(
                    RedeemRedemption(
                        redemption_id=redemption_id,
                        code_hash=code_hash,
                        user_hash=user_hash,
                        tx_id=tx_id,
                        redeemed_at=now,
                    )
                )
        except IntegrityError:
            logger.warning(f"🔒 DUPLICATE_REDEMPTION blocked for {user_hash[:12]}... code={redeem_code.code_hint}")
            raise AlreadyRedeemedError("You have already redeemed this code")

        claimed = self.db.execute(
            update(RedeemCode)
            .where(
                RedeemCode.code_hash == code_hash,
                RedeemCode.enabled.is_(True),
                or_(RedeemCode.max_uses.is_(None), RedeemCode.used_count < RedeemCode.max_uses),
            )
            .values(used_count=RedeemCode.used_count + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount == 0:
            raise CodeExhaustedError("Redeem code has been fully used")

        self.ledger.credit(user_hash, redeem_code.value, now)
        tx = self.ledger.record_transaction(
            TransactionType.REDEEM,
            redeem_code.value,
            redeem_code.title,
            to_user_hash=user_hash,
            metadata={"redemptionId": redemption_id, "codeHint": redeem_code.code_hint},
            now=now,
            tx_id=tx_id,
        )
        self.db.expire(redeem_code)
        logger.info(
            f"🎟️ REDEEMED {redeem_code.code_hint} by {user_hash[:12]}... value={tx.amount} tx={tx.tx_id}"
        )
        return tx

    # ------------------------------------------------------------------
    # Admin management
    # ------------------------------------------------------------------

    def create_code(
        self,
        code: Any,
        value: Any,
        title: Any = None,
        max_uses: Any = None,
        expires_at: Any = None,
    ) -> RedeemCode:
        """expires_at is epoch milliseconds from the client, stored as seconds"""
        code = normalize_code(code)
        value = require_positive_int(value, "value")
        title = require_text(title, "title", Config.MAX_TITLE_LENGTH, required=False) or "Redeem code"
        if max_uses not in (None, 0):
            max_uses = require_positive_int(max_uses, "maxUses")
        else:
            max_uses = None
        expires_at_seconds = None
        if expires_at not in (None, 0):
            expires_at_seconds = require_positive_int(expires_at, "expiresAt", MAX_TIMESTAMP_MS) // 1000

        now = now_seconds()
        redeem_code = RedeemCode(
            code_hash=hash_code(code, self.secret),
            code_hint=code_hint(code),
            title=title,
            value=value,
            max_uses=max_uses,
            used_count=0,
            enabled=True,
            expires_at=expires_at_seconds,
            created_at=now,
            updated_at=now,
        )
        try:
            with self.db.begin_nested():
                self.db.add(redeem_code)
        except IntegrityError:
            raise ConflictError("Redeem code already exists")
        logger.info(f"✅ REDEEM_CODE_CREATED {redeem_code.code_hint} value={value} max_uses={max_uses}")
        return redeem_code

    def disable_code(self, code: Any = None, code_hash: Any = None) -> RedeemCode:
        if code_hash:
            if not isinstance(code_hash, str):
                raise ValidationError("codeHash must be a string")
            target_hash = code_hash
        else:
            target_hash = hash_code(normalize_code(code), self.secret)
        redeem_code = self._get_code(target_hash)
        redeem_code.enabled = False
        redeem_code.updated_at = now_seconds()
        self.db.flush()
        logger.info(f"🚫 REDEEM_CODE_DISABLED {redeem_code.code_hint}")
        return redeem_code

    def list_codes(self) -> List[Dict[str, Any]]:
        rows = self.db.execute(
            select(RedeemCode).order_by(RedeemCode.created_at.desc(), RedeemCode.id.desc())
        ).scalars().all()
        return [redeem_code_to_dict(c) for c in rows]
