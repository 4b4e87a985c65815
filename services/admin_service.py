"""Admin wallet operations: inspection, balance adjustment and system mints"""

import logging
from typing import Any, Dict

from sqlalchemy.orm import Session

from config import Config
from models import Transaction, TransactionType
from services.ledger import Ledger
from services.wallet_service import WalletService
from utils.helpers import normalize_user_hash, require_text
from utils.json_serialization import wallet_to_dict

logger = logging.getLogger(__name__)

RECENT_TRANSACTIONS_LIMIT = 20


class AdminService:
    """Admin-only wallet operations"""

    def __init__(self, db: Session):
        self.db = db
        self.ledger = Ledger(db)
        self.wallets = WalletService(db)

    def get_user_overview(self, user_hash: Any) -> Dict[str, Any]:
        user_hash = normalize_user_hash(user_hash)
        wallet = self.wallets.get_wallet(user_hash, touch=False)
        return {
            "wallet": wallet_to_dict(wallet),
            "stats": self.wallets.get_stats(user_hash),
            "recentTransactions": self.wallets.get_history(
                user_hash, page=1, limit=RECENT_TRANSACTIONS_LIMIT
            )["data"],
        }

    def adjust_balance(self, user_hash: Any, delta: Any, reason: Any = None) -> Transaction:
        user_hash = normalize_user_hash(user_hash)
        tx = self.ledger.adjust(user_hash, delta, reason)
        logger.info(f"🛠️ ADMIN_ADJUST {user_hash[:12]}... delta={delta} tx={tx.tx_id}")
        return tx

    def mint(self, user_hash: Any, amount: Any, title: Any = None, description: Any = None) -> Transaction:
        user_hash = normalize_user_hash(user_hash)
        title = require_text(title, "title", Config.MAX_TITLE_LENGTH, required=False) or "System reward"
        description = require_text(
            description, "description", Config.MAX_DESCRIPTION_LENGTH, required=False
        )
        tx = self.ledger.mint(
            user_hash, amount, title, TransactionType.SYSTEM_REWARD, description=description
        )
        logger.info(f"🪙 SYSTEM_MINT {user_hash[:12]}... amount={tx.amount} tx={tx.tx_id}")
        return tx
