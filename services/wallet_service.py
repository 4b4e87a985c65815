"""
Wallet Service - registration, lookups and transaction history

Balances are read here but only ever changed through services.ledger.Ledger.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import Wallet, Transaction, TransactionStatus
from services.ledger import Ledger
from utils.exceptions import ValidationError
from utils.helpers import build_page, normalize_pagination, normalize_user_hash, now_seconds
from utils.json_serialization import transaction_to_dict

logger = logging.getLogger(__name__)

MAX_SECRET_LENGTH = 255


class WalletService:
    """Service for wallet registration and read models"""

    def __init__(self, db: Session):
        self.db = db
        self.ledger = Ledger(db)

    def register(
        self,
        user_hash: Any,
        user_secret: Optional[str] = None,
        public_key: Optional[str] = None,
    ) -> Wallet:
        """Idempotent registration.

        An existing wallet only gains a secret/public key it was missing and a
        fresh last_active_at; its balance is never touched.
        """
        user_hash = normalize_user_hash(user_hash)
        if user_secret is not None and (
            not isinstance(user_secret, str) or len(user_secret) > MAX_SECRET_LENGTH
        ):
            raise ValidationError(f"userSecret must be a string of at most {MAX_SECRET_LENGTH} characters")
        if public_key is not None and not isinstance(public_key, str):
            raise ValidationError("publicKey must be a string")

        now = now_seconds()
        existing = self.db.execute(
            select(Wallet).where(Wallet.user_hash == user_hash)
        ).scalar_one_or_none()

        if existing is None:
            try:
                with self.db.begin_nested():
                    wallet = Wallet(
                        user_hash=user_hash,
                        user_secret=user_secret or None,
                        public_key=public_key or None,
                        balance=0,
                        created_at=now,
                        last_active_at=now,
                    )
                    self.db.add(wallet)
                logger.info(f"✅ WALLET_REGISTERED: {user_hash[:12]}...")
                return wallet
            except IntegrityError:
                # Lost a race with a concurrent first registration
                logger.info(f"Wallet {user_hash[:12]}... registered concurrently, backfilling")

        return self._backfill(user_hash, user_secret, public_key, now)

    def _backfill(
        self,
        user_hash: str,
        user_secret: Optional[str],
        public_key: Optional[str],
        now: int,
    ) -> Wallet:
        if user_secret:
            self.db.execute(
                update(Wallet)
                .where(Wallet.user_hash == user_hash, Wallet.user_secret.is_(None))
                .values(user_secret=user_secret)
                .execution_options(synchronize_session=False)
            )
        if public_key:
            self.db.execute(
                update(Wallet)
                .where(Wallet.user_hash == user_hash, Wallet.public_key.is_(None))
                .values(public_key=public_key)
                .execution_options(synchronize_session=False)
            )
        self.db.execute(
            update(Wallet)
            .where(Wallet.user_hash == user_hash)
            .values(last_active_at=now)
            .execution_options(synchronize_session=False)
        )
        self.db.expire_all()
        return self.ledger.get_wallet(user_hash)

    def get_wallet(self, user_hash: Any, touch: bool = True) -> Wallet:
        user_hash = normalize_user_hash(user_hash)
        wallet = self.ledger.get_wallet(user_hash)
        if touch:
            wallet.last_active_at = now_seconds()
            self.db.flush()
        return wallet

    def get_balance(self, user_hash: Any) -> int:
        return self.ledger.get_balance(normalize_user_hash(user_hash))

    def get_transaction(self, tx_id: str) -> Transaction:
        return self.ledger.get_transaction(tx_id)

    def get_history(self, user_hash: Any, page: Any = None, limit: Any = None) -> Dict[str, Any]:
        """Entries in either direction, newest first"""
        user_hash = normalize_user_hash(user_hash)
        page, limit = normalize_pagination(page, limit)
        involves_user = or_(
            Transaction.from_user_hash == user_hash,
            Transaction.to_user_hash == user_hash,
        )

        total = self.db.execute(
            select(func.count()).select_from(Transaction).where(involves_user)
        ).scalar_one()
        rows = self.db.execute(
            select(Transaction)
            .where(involves_user)
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .limit(limit)
            .offset((page - 1) * limit)
        ).scalars().all()

        return build_page([transaction_to_dict(tx) for tx in rows], total, page, limit)

    def get_stats(self, user_hash: Any) -> Dict[str, Any]:
        """Counts and totals of completed entries sent and received"""
        user_hash = normalize_user_hash(user_hash)
        self.ledger.get_wallet(user_hash)
        completed = Transaction.status == TransactionStatus.COMPLETED.value

        sent_count, total_sent = self.db.execute(
            select(func.count(), func.coalesce(func.sum(Transaction.amount), 0))
            .where(Transaction.from_user_hash == user_hash, completed)
        ).one()
        received_count, total_received = self.db.execute(
            select(func.count(), func.coalesce(func.sum(Transaction.amount), 0))
            .where(Transaction.to_user_hash == user_hash, completed)
        ).one()

        return {
            "userHash": user_hash,
            "sentCount": sent_count,
            "receivedCount": received_count,
            "totalSent": int(total_sent),
            "totalReceived": int(total_received),
        }
