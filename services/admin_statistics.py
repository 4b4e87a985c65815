"""Admin dashboard statistics service"""

import logging
from typing import Any, Dict

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models import (
    Wallet, Transaction, TransactionStatus, Task, Product, Purchase, Report,
    RecoveryCase, RecoveryCaseStatus, RedeemCode,
)

logger = logging.getLogger(__name__)


class AdminStatisticsService:
    """Ledger-wide counters for the admin dashboard"""

    @classmethod
    def get_statistics(cls, session: Session) -> Dict[str, Any]:
        """Snapshot of platform totals; all reads run in the caller's session"""
        wallet_count, total_balance = session.execute(
            select(func.count(Wallet.id), func.coalesce(func.sum(Wallet.balance), 0))
        ).one()
        completed_count, completed_volume = session.execute(
            select(func.count(Transaction.id), func.coalesce(func.sum(Transaction.amount), 0))
            .where(Transaction.status == TransactionStatus.COMPLETED.value)
        ).one()
        open_cases, outstanding = session.execute(
            select(
                func.count(RecoveryCase.id),
                func.coalesce(func.sum(RecoveryCase.amount - RecoveryCase.recovered_amount), 0),
            ).where(RecoveryCase.status == RecoveryCaseStatus.OPEN.value)
        ).one()

        stats = {
            "wallets": {"count": wallet_count, "totalBalance": int(total_balance)},
            "transactions": {
                "completedCount": completed_count,
                "completedVolume": int(completed_volume),
                "byType": cls._grouped(session, Transaction.transaction_type, Transaction.id),
            },
            "tasks": cls._grouped(session, Task.status, Task.id),
            "products": cls._grouped(session, Product.status, Product.id),
            "purchases": cls._grouped(session, Purchase.status, Purchase.id),
            "reports": cls._grouped(session, Report.status, Report.id),
            "recovery": {"openCases": open_cases, "outstandingAmount": int(outstanding)},
            "redeemCodes": session.execute(select(func.count(RedeemCode.id))).scalar_one(),
        }
        logger.debug(f"📊 ADMIN_STATS generated: {wallet_count} wallets")
        return stats

    @staticmethod
    def _grouped(session: Session, column, id_column) -> Dict[str, int]:
        rows = session.execute(select(column, func.count(id_column)).group_by(column)).all()
        return {key: count for key, count in rows}
