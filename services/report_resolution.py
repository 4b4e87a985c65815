"""
Report Resolution Service for Atomic Admin Operations
Every adjudication runs inside the caller's unit of work: the report status,
any entity change and any ledger movement commit together or not at all.

Compensation-first recovery:
    compensate -> victim credited from system funds, RecoveryCase opened
    recover    -> offender debited, case recovered (all-or-nothing unless
                  allow_partial is requested)
"""

import logging
from typing import Any, Dict, NamedTuple, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from config import Config
from models import (
    Product, ProductStatus, RecoveryCase, RecoveryCaseStatus, Report, ReportKind,
    ReportStatus, ReportTargetType, Transaction, TransactionType,
)
from services.ledger import Ledger
from services.marketplace_service import MarketplaceService
from services.report_service import ReportService
from services.task_service import TaskService
from utils.escrow_state_machine import Actor, PurchaseTransition, TaskTransition
from utils.exceptions import (
    InsufficientBalanceError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from utils.helpers import (
    build_page,
    generate_case_id,
    normalize_pagination,
    normalize_user_hash,
    now_seconds,
    require_choice,
    require_positive_int,
    require_text,
)
from utils.json_serialization import recovery_case_to_dict

logger = logging.getLogger(__name__)

OPEN_REPORT_STATES = (ReportStatus.PENDING.value, ReportStatus.REVIEWING.value)

STATUS_ACTIONS = {
    "resolve": ReportStatus.RESOLVED,
    "resolved": ReportStatus.RESOLVED,
    "reject": ReportStatus.REJECTED,
    "rejected": ReportStatus.REJECTED,
}
CONTENT_ACTIONS = ("take_down", "restore", "change_price")
TRANSACTION_ACTIONS = ("compensate", "release_escrow", "refund_escrow")


class ResolutionResult(NamedTuple):
    """Result of a report adjudication"""

    report: Report
    action: str
    transaction: Optional[Transaction] = None
    recovery_case: Optional[RecoveryCase] = None


class ReportResolutionService:
    """Admin adjudication of reports and recovery case execution"""

    def __init__(self, db: Session):
        self.db = db
        self.ledger = Ledger(db)
        self.reports = ReportService(db)

    # ------------------------------------------------------------------
    # Adjudication
    # ------------------------------------------------------------------

    def handle_report(
        self,
        report_id: Any,
        action: Any,
        admin_note: Any = None,
        **params,
    ) -> ResolutionResult:
        admin_note = require_text(admin_note, "adminNote", Config.MAX_DESCRIPTION_LENGTH, required=False)
        report = self.reports.get_report(report_id)
        if report.status not in OPEN_REPORT_STATES:
            raise InvalidStateError(
                f"Report already handled (status '{report.status}')",
                {"reportId": report.report_id, "status": report.status},
            )

        if action == "reviewing":
            self._set_report_status(report, ReportStatus.REVIEWING, None, admin_note)
            return ResolutionResult(self.reports.get_report(report.report_id), action)

        if action in STATUS_ACTIONS:
            status = STATUS_ACTIONS[action]
            self._set_report_status(report, status, status.value, admin_note)
            return ResolutionResult(self.reports.get_report(report.report_id), status.value)

        if report.kind == ReportKind.CONTENT.value:
            require_choice(action, "action", ["reviewing", *STATUS_ACTIONS, *CONTENT_ACTIONS])
            return self._handle_content_action(report, action, admin_note, params)

        require_choice(action, "action", ["reviewing", *STATUS_ACTIONS, *TRANSACTION_ACTIONS])
        if action == "compensate":
            return self.compensate(
                report,
                params.get("victimUserHash"),
                params.get("offenderUserHash"),
                params.get("amount"),
                admin_note,
            )
        return self._settle_disputed_purchase(report, action, admin_note)

    def _set_report_status(
        self,
        report: Report,
        status: ReportStatus,
        resolution: Optional[str],
        admin_note: Optional[str],
    ) -> None:
        now = now_seconds()
        values: Dict[str, Any] = {"status": status.value, "updated_at": now}
        if status in (ReportStatus.RESOLVED, ReportStatus.REJECTED):
            values.update(resolution=resolution, resolved_at=now)
        if admin_note is not None:
            values["admin_note"] = admin_note

        result = self.db.execute(
            update(Report)
            .where(Report.report_id == report.report_id, Report.status.in_(OPEN_REPORT_STATES))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise InvalidStateError("Report was handled concurrently", {"reportId": report.report_id})
        self.db.expire(report)
        logger.info(f"📋 REPORT {report.report_id} -> {status.value} ({resolution or '-'})")

    # ------------------------------------------------------------------
    # Content moderation
    # ------------------------------------------------------------------

    def _handle_content_action(
        self,
        report: Report,
        action: str,
        admin_note: Optional[str],
        params: Dict[str, Any],
    ) -> ResolutionResult:
        now = now_seconds()
        if report.target_type == ReportTargetType.TASK.value:
            if action != "take_down":
                raise ValidationError(f"'{action}' is not supported for tasks")
            tasks = TaskService(self.db)
            task = tasks.get_task(report.target_id)
            tasks.transition_task(task, TaskTransition.TAKE_DOWN, Actor.ADMIN)
        else:
            product = self._get_product(report.target_id)
            if action == "take_down":
                self._update_product(
                    product,
                    [ProductStatus.AVAILABLE.value, ProductStatus.SOLD_OUT.value],
                    status=ProductStatus.REMOVED.value,
                    updated_at=now,
                )
            elif action == "restore":
                restored = ProductStatus.AVAILABLE if product.stock > 0 else ProductStatus.SOLD_OUT
                self._update_product(
                    product, [ProductStatus.REMOVED.value], status=restored.value, updated_at=now
                )
            else:
                new_price = require_positive_int(params.get("newPrice"), "newPrice")
                self._update_product(
                    product,
                    [s.value for s in ProductStatus],
                    price=new_price,
                    updated_at=now,
                )

        self._set_report_status(report, ReportStatus.RESOLVED, action, admin_note)
        return ResolutionResult(self.reports.get_report(report.report_id), action)

    def _get_product(self, product_id: str) -> Product:
        product = self.db.execute(
            select(Product).where(Product.product_id == product_id)
        ).scalar_one_or_none()
        if product is None:
            raise NotFoundError("Product not found", {"productId": product_id})
        return product

    def _update_product(self, product: Product, allowed_sources, **values) -> None:
        result = self.db.execute(
            update(Product)
            .where(Product.product_id == product.product_id, Product.status.in_(allowed_sources))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise InvalidStateError(
                f"Product is in status '{product.status}'", {"productId": product.product_id}
            )
        self.db.expire(product)

    # ------------------------------------------------------------------
    # Transaction reports
    # ------------------------------------------------------------------

    def compensate(
        self,
        report: Report,
        victim_user_hash: Any,
        offender_user_hash: Any,
        amount: Any,
        admin_note: Optional[str] = None,
    ) -> ResolutionResult:
        """Make the victim whole from system funds and open a case against the offender"""
        if report.kind != ReportKind.TRANSACTION.value:
            raise ValidationError("compensate applies to transaction reports only")
        victim = normalize_user_hash(victim_user_hash, "victimUserHash")
        offender = normalize_user_hash(offender_user_hash, "offenderUserHash")
        amount = require_positive_int(amount, "amount")
        if victim == offender:
            raise ValidationError("victim and offender must differ")
        if not self.ledger.wallet_exists(offender):
            raise NotFoundError("Offender wallet not found", {"userHash": offender})

        now = now_seconds()
        case_id = generate_case_id()
        tx = self.ledger.mint(
            victim,
            amount,
            "Compensation",
            transaction_type=TransactionType.COMPENSATION,
            description=admin_note,
            metadata={
                "reportId": report.report_id,
                "caseId": case_id,
                "relatedTxId": report.target_id,
                "mode": "compensate_first",
            },
        )
        case = RecoveryCase(
            case_id=case_id,
            report_id=report.report_id,
            victim_user_hash=victim,
            offender_user_hash=offender,
            amount=amount,
            recovered_amount=0,
            status=RecoveryCaseStatus.OPEN.value,
            compensation_tx_id=tx.tx_id,
            admin_note=admin_note,
            created_at=now,
            updated_at=now,
        )
        self.db.add(case)
        self.db.flush()

        self._set_report_status(report, ReportStatus.RESOLVED, "compensate", admin_note)
        logger.info(
            f"🛟 COMPENSATED {report.report_id}: {amount} -> {victim[:12]}... case={case_id}"
        )
        return ResolutionResult(self.reports.get_report(report.report_id), "compensate", tx, case)

    def _settle_disputed_purchase(
        self, report: Report, action: str, admin_note: Optional[str]
    ) -> ResolutionResult:
        marketplace = MarketplaceService(self.db)
        purchase = marketplace.get_purchase_by_tx(report.target_id)
        if purchase is None:
            raise NotFoundError("No purchase is attached to this transaction")
        transition = (
            PurchaseTransition.RELEASE_ESCROW if action == "release_escrow"
            else PurchaseTransition.REFUND_ESCROW
        )
        marketplace.transition_purchase(purchase, transition, Actor.ADMIN)
        self._set_report_status(report, ReportStatus.RESOLVED, action, admin_note)
        return ResolutionResult(
            self.reports.get_report(report.report_id),
            action,
            self.ledger.get_transaction(report.target_id),
        )

    # ------------------------------------------------------------------
    # Recovery cases
    # ------------------------------------------------------------------

    def get_case(self, case_id: Any) -> RecoveryCase:
        if not isinstance(case_id, str) or not case_id:
            raise ValidationError("caseId is required")
        case = self.db.execute(
            select(RecoveryCase).where(RecoveryCase.case_id == case_id)
        ).scalar_one_or_none()
        if case is None:
            raise NotFoundError("Recovery case not found", {"caseId": case_id})
        return case

    def recover(self, case_id: Any, admin_note: Any = None, allow_partial: bool = False) -> RecoveryCase:
        """Claw back the outstanding amount from the offender.

        All-or-nothing by default: a short offender balance raises
        InsufficientBalanceError and the case stays open. With allow_partial,
        whatever the offender holds is taken and the case stays open until
        the full amount has been recovered.
        """
        admin_note = require_text(admin_note, "adminNote", Config.MAX_DESCRIPTION_LENGTH, required=False)
        case = self.get_case(case_id)
        if case.status != RecoveryCaseStatus.OPEN.value:
            raise InvalidStateError(
                f"Recovery case is '{case.status}'", {"caseId": case.case_id, "status": case.status}
            )

        offender = case.offender_user_hash
        outstanding = case.amount - case.recovered_amount
        take = outstanding
        if allow_partial:
            take = min(self.ledger.get_balance(offender), outstanding)
            if take <= 0:
                raise InsufficientBalanceError(
                    "Offender has no balance to recover", {"userHash": offender, "required": outstanding}
                )
        else:
            self.ledger.get_wallet(offender)

        now = now_seconds()
        fully_recovered = take == outstanding
        values: Dict[str, Any] = {
            "recovered_amount": case.recovered_amount + take,
            "updated_at": now,
        }
        if fully_recovered:
            values.update(status=RecoveryCaseStatus.RECOVERED.value, recovered_at=now)
        if admin_note is not None:
            values["admin_note"] = admin_note

        # Claim the case before moving money so two admins cannot both debit
        claimed = self.db.execute(
            update(RecoveryCase)
            .where(
                RecoveryCase.case_id == case.case_id,
                RecoveryCase.status == RecoveryCaseStatus.OPEN.value,
                RecoveryCase.recovered_amount == case.recovered_amount,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount == 0:
            raise InvalidStateError("Recovery case changed concurrently", {"caseId": case.case_id})

        tx = self.ledger.burn(
            offender,
            take,
            "Recovery",
            TransactionType.RECOVERY,
            description=admin_note,
            metadata={
                "caseId": case.case_id,
                "reportId": case.report_id,
                "victimUserHash": case.victim_user_hash,
                "partial": not fully_recovered,
            },
        )
        self.db.execute(
            update(RecoveryCase)
            .where(RecoveryCase.case_id == case.case_id)
            .values(recovery_tx_id=tx.tx_id)
            .execution_options(synchronize_session=False)
        )
        self.db.expire(case)
        logger.info(
            f"✅ RECOVERY {case.case_id}: {take} from {offender[:12]}... "
            f"({'complete' if fully_recovered else 'partial'})"
        )
        return self.get_case(case.case_id)

    def close_case(self, case_id: Any, admin_note: Any = None) -> RecoveryCase:
        """Abandon an open case without further recovery"""
        admin_note = require_text(admin_note, "adminNote", Config.MAX_DESCRIPTION_LENGTH, required=False)
        case = self.get_case(case_id)
        now = now_seconds()
        values: Dict[str, Any] = {
            "status": RecoveryCaseStatus.CLOSED.value,
            "closed_at": now,
            "updated_at": now,
        }
        if admin_note is not None:
            values["admin_note"] = admin_note
        result = self.db.execute(
            update(RecoveryCase)
            .where(
                RecoveryCase.case_id == case.case_id,
                RecoveryCase.status == RecoveryCaseStatus.OPEN.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise InvalidStateError(f"Recovery case is '{case.status}'", {"caseId": case.case_id})
        self.db.expire(case)
        logger.info(f"📁 RECOVERY_CASE_CLOSED {case.case_id}")
        return self.get_case(case.case_id)

    def list_cases(self, status: Any = None, page: Any = None, limit: Any = None) -> Dict[str, Any]:
        page, limit = normalize_pagination(page, limit)
        conditions = []
        if status and status != "all":
            conditions.append(
                RecoveryCase.status
                == require_choice(status, "status", [s.value for s in RecoveryCaseStatus])
            )
        total = self.db.execute(
            select(func.count()).select_from(RecoveryCase).where(*conditions)
        ).scalar_one()
        rows = self.db.execute(
            select(RecoveryCase)
            .where(*conditions)
            .order_by(RecoveryCase.created_at.desc(), RecoveryCase.id.desc())
            .limit(limit)
            .offset((page - 1) * limit)
        ).scalars().all()
        return build_page([recovery_case_to_dict(c) for c in rows], total, page, limit)
