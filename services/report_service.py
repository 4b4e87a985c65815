"""
Report Service - intake of appeals/reports against transactions or content
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Config
from models import (
    Product, Report, ReportKind, ReportStatus, ReportTargetType, ReportType, Task, Transaction,
)
from utils.exceptions import DuplicateReportError, InvalidStateError, NotFoundError, ValidationError
from utils.helpers import (
    build_page,
    generate_report_id,
    normalize_pagination,
    now_seconds,
    require_choice,
    require_text,
)
from utils.json_serialization import report_to_dict

logger = logging.getLogger(__name__)

CONTENT_TARGET_TYPES = [ReportTargetType.TASK.value, ReportTargetType.PRODUCT.value]


class ReportService:
    """Report intake and listing"""

    def __init__(self, db: Session):
        self.db = db

    def create_report(
        self,
        reporter_user_hash: str,
        kind: Any,
        report_type: Any,
        reason: Any,
        description: Any = None,
        tx_id: Any = None,
        target_type: Any = None,
        target_id: Any = None,
    ) -> Report:
        """File one report per (target, reporter).

        Transaction reports require the reporter to be a party to the entry;
        content reports may not target the reporter's own task or product.
        """
        kind = require_choice(kind or ReportKind.TRANSACTION.value, "kind", [k.value for k in ReportKind])
        report_type = require_choice(report_type, "type", [t.value for t in ReportType])
        reason = require_text(reason, "reason", Config.MAX_REASON_LENGTH)
        description = require_text(
            description, "description", Config.MAX_DESCRIPTION_LENGTH, required=False
        )

        if kind == ReportKind.TRANSACTION.value:
            if not isinstance(tx_id, str) or not tx_id:
                raise ValidationError("txId is required for transaction reports")
            target_type, target_id, owner = self._resolve_transaction_target(reporter_user_hash, tx_id)
        else:
            target_type = require_choice(target_type, "targetType", CONTENT_TARGET_TYPES)
            if not isinstance(target_id, str) or not target_id:
                raise ValidationError("targetId is required for content reports")
            owner = self._resolve_content_owner(target_type, target_id)
            if owner == reporter_user_hash:
                raise InvalidStateError("You cannot report your own content")

        if self._find_existing(target_type, target_id, reporter_user_hash) is not None:
            raise DuplicateReportError("You have already reported this target")

        now = now_seconds()
        report = Report(
            report_id=generate_report_id(),
            kind=kind,
            target_type=target_type,
            target_id=target_id,
            target_owner_user_hash=owner,
            reporter_user_hash=reporter_user_hash,
            report_type=report_type,
            reason=reason,
            description=description,
            status=ReportStatus.PENDING.value,
            created_at=now,
            updated_at=now,
        )
        try:
            with self.db.begin_nested():
                self.db.add(report)
        except IntegrityError:
            # Concurrent duplicate slipped past the pre-check
            raise DuplicateReportError("You have already reported this target")

        logger.info(
            f"🚩 REPORT_FILED {report.report_id}: {kind}/{target_type} {target_id} type={report_type}"
        )
        return report

    def _resolve_transaction_target(self, reporter_user_hash: str, tx_id: str):
        tx = self.db.execute(
            select(Transaction).where(Transaction.tx_id == tx_id)
        ).scalar_one_or_none()
        if tx is None:
            raise NotFoundError("Transaction not found", {"txId": tx_id})
        if reporter_user_hash not in (tx.from_user_hash, tx.to_user_hash):
            raise InvalidStateError("Only a party to the transaction can report it")
        counterparty = tx.to_user_hash if reporter_user_hash == tx.from_user_hash else tx.from_user_hash
        return ReportTargetType.TRANSACTION.value, tx_id, counterparty

    def _resolve_content_owner(self, target_type: str, target_id: str) -> str:
        if target_type == ReportTargetType.TASK.value:
            owner = self.db.execute(
                select(Task.creator_user_hash).where(Task.task_id == target_id)
            ).scalar_one_or_none()
        else:
            owner = self.db.execute(
                select(Product.seller_user_hash).where(Product.product_id == target_id)
            ).scalar_one_or_none()
        if owner is None:
            raise NotFoundError(f"{target_type.title()} not found", {"targetId": target_id})
        return owner

    def _find_existing(self, target_type: str, target_id: str, reporter_user_hash: str) -> Optional[Report]:
        return self.db.execute(
            select(Report).where(
                Report.target_type == target_type,
                Report.target_id == target_id,
                Report.reporter_user_hash == reporter_user_hash,
            )
        ).scalar_one_or_none()

    def get_report(self, report_id: Any) -> Report:
        if not isinstance(report_id, str) or not report_id:
            raise ValidationError("reportId is required")
        report = self.db.execute(
            select(Report).where(Report.report_id == report_id)
        ).scalar_one_or_none()
        if report is None:
            raise NotFoundError("Report not found", {"reportId": report_id})
        return report

    def list_reports(
        self,
        reporter_user_hash: Optional[str] = None,
        kind: Any = None,
        status: Any = None,
        page: Any = None,
        limit: Any = None,
    ) -> Dict[str, Any]:
        """Reporter's own reports, or every report when reporter_user_hash is None (admin)"""
        page, limit = normalize_pagination(page, limit)
        conditions = []
        if reporter_user_hash is not None:
            conditions.append(Report.reporter_user_hash == reporter_user_hash)
        if kind:
            conditions.append(Report.kind == require_choice(kind, "kind", [k.value for k in ReportKind]))
        if status and status != "all":
            conditions.append(
                Report.status == require_choice(status, "status", [s.value for s in ReportStatus])
            )

        total = self.db.execute(
            select(func.count()).select_from(Report).where(*conditions)
        ).scalar_one()
        rows = self.db.execute(
            select(Report)
            .where(*conditions)
            .order_by(Report.created_at.desc(), Report.id.desc())
            .limit(limit)
            .offset((page - 1) * limit)
        ).scalars().all()
        return build_page([report_to_dict(r) for r in rows], total, page, limit)
