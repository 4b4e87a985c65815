"""
Ledger - the only code path that mutates wallet balances

Every balance change is a single conditional UPDATE executed inside the
caller's session, so the delta, the matching Transaction row and any entity
status change commit or roll back together. Debits carry the floor check in
the WHERE clause ("decrement if balance >= amount"); there is no
read-then-write window for a concurrent debit to overdraw the wallet.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from models import Wallet, Transaction, TransactionType, TransactionStatus
from utils.exceptions import (
    InsufficientBalanceError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from utils.helpers import generate_transaction_id, now_seconds, require_positive_int, require_text
from utils.json_serialization import sanitize_for_json_column
from config import Config

logger = logging.getLogger(__name__)


class Ledger:
    """Balance primitives plus the transaction log, bound to one unit of work"""

    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_wallet(self, user_hash: str) -> Wallet:
        wallet = self.db.execute(
            select(Wallet).where(Wallet.user_hash == user_hash)
        ).scalar_one_or_none()
        if wallet is None:
            raise NotFoundError("Wallet not found", {"userHash": user_hash})
        return wallet

    def wallet_exists(self, user_hash: str) -> bool:
        return self.db.execute(
            select(Wallet.id).where(Wallet.user_hash == user_hash)
        ).first() is not None

    def get_balance(self, user_hash: str) -> int:
        balance = self.db.execute(
            select(Wallet.balance).where(Wallet.user_hash == user_hash)
        ).scalar_one_or_none()
        if balance is None:
            raise NotFoundError("Wallet not found", {"userHash": user_hash})
        return balance

    def get_transaction(self, tx_id: str) -> Transaction:
        tx = self.db.execute(
            select(Transaction).where(Transaction.tx_id == tx_id)
        ).scalar_one_or_none()
        if tx is None:
            raise NotFoundError("Transaction not found", {"txId": tx_id})
        return tx

    # ------------------------------------------------------------------
    # Balance primitives
    # ------------------------------------------------------------------

    def debit(self, user_hash: str, amount: int, now: Optional[int] = None) -> None:
        """Decrement balance only if it stays non-negative"""
        amount = require_positive_int(amount, "amount")
        now = now or now_seconds()
        result = self.db.execute(
            update(Wallet)
            .where(Wallet.user_hash == user_hash, Wallet.balance >= amount)
            .values(balance=Wallet.balance - amount, last_active_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            # Distinguish a missing wallet from a short one
            balance = self.get_balance(user_hash)
            logger.warning(
                f"⚠️ DEBIT_REJECTED: {user_hash[:12]}... balance={balance} requested={amount}"
            )
            raise InsufficientBalanceError(
                "Insufficient balance",
                {"userHash": user_hash, "balance": balance, "required": amount},
            )
        self._expire_wallet(user_hash)
        logger.info(f"💸 DEBIT: {user_hash[:12]}... -{amount}")

    def credit(self, user_hash: str, amount: int, now: Optional[int] = None) -> None:
        amount = require_positive_int(amount, "amount")
        now = now or now_seconds()
        result = self.db.execute(
            update(Wallet)
            .where(Wallet.user_hash == user_hash)
            .values(balance=Wallet.balance + amount, last_active_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise NotFoundError("Wallet not found", {"userHash": user_hash})
        self._expire_wallet(user_hash)
        logger.info(f"💰 CREDIT: {user_hash[:12]}... +{amount}")

    def _expire_wallet(self, user_hash: str) -> None:
        for obj in list(self.db.identity_map.values()):
            if isinstance(obj, Wallet) and obj.user_hash == user_hash:
                self.db.expire(obj)

    # ------------------------------------------------------------------
    # Transaction log
    # ------------------------------------------------------------------

    def record_transaction(
        self,
        transaction_type: TransactionType,
        amount: int,
        title: str,
        from_user_hash: Optional[str] = None,
        to_user_hash: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        status: TransactionStatus = TransactionStatus.COMPLETED,
        now: Optional[int] = None,
        tx_id: Optional[str] = None,
    ) -> Transaction:
        now = now or now_seconds()
        tx = Transaction(
            tx_id=tx_id or generate_transaction_id(),
            transaction_type=transaction_type.value,
            from_user_hash=from_user_hash,
            to_user_hash=to_user_hash,
            amount=require_positive_int(amount, "amount"),
            status=status.value,
            title=title,
            description=description,
            extra_data=sanitize_for_json_column(metadata),
            created_at=now,
            completed_at=now if status == TransactionStatus.COMPLETED else None,
        )
        self.db.add(tx)
        self.db.flush()
        return tx

    def settle_pending_transaction(
        self,
        tx_id: str,
        status: TransactionStatus,
        now: Optional[int] = None,
        **fields,
    ) -> None:
        """Move a pending entry to completed/cancelled; nothing else may change it"""
        now = now or now_seconds()
        values: Dict[str, Any] = {"status": status.value, **fields}
        if status == TransactionStatus.COMPLETED:
            values["completed_at"] = now
        result = self.db.execute(
            update(Transaction)
            .where(
                Transaction.tx_id == tx_id,
                Transaction.status == TransactionStatus.PENDING.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise InvalidStateError("Transaction is not pending", {"txId": tx_id})
        for obj in list(self.db.identity_map.values()):
            if isinstance(obj, Transaction) and obj.tx_id == tx_id:
                self.db.expire(obj)

    # ------------------------------------------------------------------
    # Composite movements
    # ------------------------------------------------------------------

    def transfer(
        self,
        from_user_hash: str,
        to_user_hash: str,
        amount: Any,
        title: Any,
        description: Any = None,
    ) -> Transaction:
        """Wallet to wallet; debit, credit and the completed entry are one unit"""
        amount = require_positive_int(amount, "amount")
        title = require_text(title, "title", Config.MAX_TITLE_LENGTH)
        description = require_text(
            description, "description", Config.MAX_DESCRIPTION_LENGTH, required=False
        )
        if from_user_hash == to_user_hash:
            raise ValidationError("Cannot transfer to yourself")
        if not self.wallet_exists(to_user_hash):
            raise NotFoundError("Receiver wallet not found", {"userHash": to_user_hash})

        now = now_seconds()
        self.debit(from_user_hash, amount, now)
        self.credit(to_user_hash, amount, now)
        tx = self.record_transaction(
            TransactionType.TRANSFER,
            amount,
            title,
            from_user_hash=from_user_hash,
            to_user_hash=to_user_hash,
            description=description,
            now=now,
        )
        logger.info(
            f"✅ TRANSFER {tx.tx_id}: {from_user_hash[:12]}... -> {to_user_hash[:12]}... amount={amount}"
        )
        return tx

    def mint(
        self,
        to_user_hash: str,
        amount: Any,
        title: str,
        transaction_type: TransactionType = TransactionType.SYSTEM_REWARD,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Transaction:
        """Credit from system funds (no from-wallet)"""
        amount = require_positive_int(amount, "amount")
        now = now_seconds()
        self.credit(to_user_hash, amount, now)
        return self.record_transaction(
            transaction_type,
            amount,
            title,
            to_user_hash=to_user_hash,
            description=description,
            metadata=metadata,
            now=now,
        )

    def burn(
        self,
        from_user_hash: str,
        amount: Any,
        title: str,
        transaction_type: TransactionType,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Transaction:
        """Debit back into system funds (no to-wallet)"""
        amount = require_positive_int(amount, "amount")
        now = now_seconds()
        self.debit(from_user_hash, amount, now)
        return self.record_transaction(
            transaction_type,
            amount,
            title,
            from_user_hash=from_user_hash,
            description=description,
            metadata=metadata,
            now=now,
        )

    def adjust(self, user_hash: str, delta: Any, reason: Any) -> Transaction:
        """Admin balance correction; negative deltas obey the same floor check"""
        if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
            raise ValidationError("delta must be a non-zero integer")
        reason = require_text(reason, "reason", Config.MAX_REASON_LENGTH, required=False)
        title = reason or "Admin adjustment"
        metadata = {"delta": delta}
        if delta > 0:
            return self.mint(
                user_hash, delta, title, TransactionType.ADMIN_ADJUST, metadata=metadata
            )
        return self.burn(
            user_hash, -delta, title, TransactionType.ADMIN_ADJUST, metadata=metadata
        )
