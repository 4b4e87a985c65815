"""
Test Report and Recovery Workflow
Filing rules, adjudication, compensate-first and offender recovery
"""

import pytest
from sqlalchemy import func, select

from models import (
    ProductStatus,
    PurchaseStatus,
    RecoveryCaseStatus,
    ReportStatus,
    TaskStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from services.ledger import Ledger
from services.marketplace_service import MarketplaceService
from services.report_resolution import ReportResolutionService
from services.report_service import ReportService
from services.task_service import TaskService
from utils.exceptions import (
    DuplicateReportError,
    InsufficientBalanceError,
    InvalidStateError,
    ValidationError,
)


@pytest.fixture
def scam(database, make_wallet):
    """victim paid offender 40 for something that never arrived"""
    victim, _ = make_wallet(balance=100)
    offender, _ = make_wallet(balance=0)
    with database.session() as db:
        tx_id = Ledger(db).transfer(victim, offender, 40, "Concert ticket").tx_id
    return victim, offender, tx_id


def _file_transaction_report(database, reporter, tx_id):
    with database.session() as db:
        return ReportService(db).create_report(
            reporter, "transaction", "report", "Never delivered", tx_id=tx_id
        ).report_id


def _count(database, transaction_type):
    with database.session() as db:
        return db.execute(
            select(func.count()).select_from(Transaction)
            .where(Transaction.transaction_type == transaction_type.value)
        ).scalar_one()


class TestFilingReports:
    """create_report rules"""

    def test_party_can_report_transaction(self, database, scam):
        victim, offender, tx_id = scam
        with database.session() as db:
            report = ReportService(db).create_report(victim, "transaction", "appeal", "Scam", tx_id=tx_id)
            assert report.status == ReportStatus.PENDING.value
            assert report.target_owner_user_hash == offender

    def test_duplicate_report_rejected(self, database, scam):
        victim, _, tx_id = scam
        _file_transaction_report(database, victim, tx_id)
        with pytest.raises(DuplicateReportError):
            _file_transaction_report(database, victim, tx_id)

    def test_non_party_cannot_report_transaction(self, database, scam, make_wallet):
        _, _, tx_id = scam
        bystander, _ = make_wallet()
        with pytest.raises(InvalidStateError):
            _file_transaction_report(database, bystander, tx_id)

    def test_cannot_report_own_content(self, database, make_wallet):
        seller, _ = make_wallet()
        with database.session() as db:
            product_id = MarketplaceService(db).create_product(seller, "Bike", None, 10, 1).product_id
        with pytest.raises(InvalidStateError):
            with database.session() as db:
                ReportService(db).create_report(
                    seller, "content", "report", "Mine", target_type="product", target_id=product_id
                )

    def test_invalid_report_type_rejected(self, database, scam):
        victim, _, tx_id = scam
        with pytest.raises(ValidationError):
            with database.session() as db:
                ReportService(db).create_report(victim, "transaction", "complaint", "x", tx_id=tx_id)

    def test_reporter_lists_own_reports(self, database, scam):
        victim, offender, tx_id = scam
        _file_transaction_report(database, victim, tx_id)
        with database.session() as db:
            assert ReportService(db).list_reports(victim)["total"] == 1
            assert ReportService(db).list_reports(offender)["total"] == 0
            assert ReportService(db).list_reports(None)["total"] == 1


class TestAdjudication:
    """Status actions and content moderation"""

    def test_reject_then_cannot_handle_again(self, database, scam):
        victim, _, tx_id = scam
        report_id = _file_transaction_report(database, victim, tx_id)

        with database.session() as db:
            ReportResolutionService(db).handle_report(report_id, "reviewing")
        with database.session() as db:
            result = ReportResolutionService(db).handle_report(report_id, "reject", "No evidence")
            assert result.report.status == ReportStatus.REJECTED.value
            assert result.report.admin_note == "No evidence"

        with pytest.raises(InvalidStateError):
            with database.session() as db:
                ReportResolutionService(db).handle_report(report_id, "resolve")

    def test_take_down_product_and_restore(self, database, make_wallet):
        seller, _ = make_wallet()
        reporter, _ = make_wallet()
        with database.session() as db:
            product_id = MarketplaceService(db).create_product(seller, "Fake", None, 10, 3).product_id
        with database.session() as db:
            report_id = ReportService(db).create_report(
                reporter, "content", "report", "Counterfeit", target_type="product", target_id=product_id
            ).report_id

        with database.session() as db:
            result = ReportResolutionService(db).handle_report(report_id, "take_down")
            assert result.report.resolution == "take_down"
        with database.session() as db:
            assert MarketplaceService(db).get_product(product_id).status == ProductStatus.REMOVED.value

        second_reporter, _ = make_wallet()
        with database.session() as db:
            second_id = ReportService(db).create_report(
                second_reporter, "content", "appeal", "Was fine",
                target_type="product", target_id=product_id,
            ).report_id
        with database.session() as db:
            ReportResolutionService(db).handle_report(second_id, "restore")
        with database.session() as db:
            assert MarketplaceService(db).get_product(product_id).status == ProductStatus.AVAILABLE.value

    def test_take_down_task_refunds_creator(self, database, make_wallet, balance_of):
        creator, _ = make_wallet(balance=50)
        reporter, _ = make_wallet()
        with database.session() as db:
            task_id = TaskService(db).create_task(creator, "Homework for pay", None, 20).task_id
        with database.session() as db:
            report_id = ReportService(db).create_report(
                reporter, "content", "report", "Cheating", target_type="task", target_id=task_id
            ).report_id

        with database.session() as db:
            ReportResolutionService(db).handle_report(report_id, "take_down")

        assert balance_of(creator) == 50
        with database.session() as db:
            assert TaskService(db).get_task(task_id).status == TaskStatus.REJECTED.value

    def test_change_price(self, database, make_wallet):
        seller, _ = make_wallet()
        reporter, _ = make_wallet()
        with database.session() as db:
            product_id = MarketplaceService(db).create_product(seller, "Pen", None, 999, 1).product_id
        with database.session() as db:
            report_id = ReportService(db).create_report(
                reporter, "content", "report", "Gouging", target_type="product", target_id=product_id
            ).report_id
        with database.session() as db:
            ReportResolutionService(db).handle_report(report_id, "change_price", newPrice=5)
        with database.session() as db:
            assert MarketplaceService(db).get_product(product_id).price == 5

    def test_refund_disputed_purchase(self, database, make_wallet, balance_of):
        seller, _ = make_wallet()
        buyer, _ = make_wallet(balance=60)
        with database.session() as db:
            product_id = MarketplaceService(db).create_product(seller, "Lamp", None, 25, 1).product_id
        with database.session() as db:
            purchase = MarketplaceService(db).create_purchase(buyer, product_id, 1)
            purchase_id, tx_id = purchase.purchase_id, purchase.tx_id
        for user, action in ((seller, "seller_accept"), (seller, "seller_deliver"), (buyer, "buyer_dispute")):
            with database.session() as db:
                MarketplaceService(db).handle_purchase_action(user, purchase_id, action)

        report_id = _file_transaction_report(database, buyer, tx_id)
        with database.session() as db:
            result = ReportResolutionService(db).handle_report(report_id, "refund_escrow")
            assert result.transaction.status == TransactionStatus.CANCELLED.value

        assert balance_of(buyer) == 60
        assert balance_of(seller) == 0
        with database.session() as db:
            assert MarketplaceService(db).get_purchase(purchase_id).status == PurchaseStatus.REFUNDED.value


class TestCompensationAndRecovery:
    """compensate-first, then claw back from the offender"""

    def _compensate(self, database, scam, amount=40):
        victim, offender, tx_id = scam
        report_id = _file_transaction_report(database, victim, tx_id)
        with database.session() as db:
            result = ReportResolutionService(db).handle_report(
                report_id,
                "compensate",
                "Refund from pool",
                victimUserHash=victim,
                offenderUserHash=offender,
                amount=amount,
            )
            return result.recovery_case.case_id

    def test_compensate_writes_one_entry_and_opens_case(self, database, scam, balance_of):
        victim, offender, _ = scam
        case_id = self._compensate(database, scam)

        assert balance_of(victim) == 100
        assert _count(database, TransactionType.COMPENSATION) == 1
        with database.session() as db:
            case = ReportResolutionService(db).get_case(case_id)
            assert case.status == RecoveryCaseStatus.OPEN.value
            assert case.offender_user_hash == offender
            assert case.amount == 40

    def test_compensate_same_victim_and_offender_rejected(self, database, scam):
        victim, _, tx_id = scam
        report_id = _file_transaction_report(database, victim, tx_id)
        with pytest.raises(ValidationError):
            with database.session() as db:
                ReportResolutionService(db).handle_report(
                    report_id, "compensate", victimUserHash=victim, offenderUserHash=victim, amount=5
                )

    def test_recover_debits_offender_once(self, database, scam, balance_of):
        _, offender, _ = scam
        case_id = self._compensate(database, scam)

        with database.session() as db:
            case = ReportResolutionService(db).recover(case_id)
            assert case.status == RecoveryCaseStatus.RECOVERED.value
            assert case.recovered_amount == 40
            assert case.recovery_tx_id is not None

        assert balance_of(offender) == 0
        with pytest.raises(InvalidStateError):
            with database.session() as db:
                ReportResolutionService(db).recover(case_id)
        assert _count(database, TransactionType.RECOVERY) == 1

    def test_recover_with_short_offender_keeps_case_open(self, database, scam, balance_of):
        _, offender, _ = scam
        case_id = self._compensate(database, scam)
        with database.session() as db:
            Ledger(db).adjust(offender, -15, "Spent some")

        with pytest.raises(InsufficientBalanceError):
            with database.session() as db:
                ReportResolutionService(db).recover(case_id)

        assert balance_of(offender) == 25
        assert _count(database, TransactionType.RECOVERY) == 0
        with database.session() as db:
            case = ReportResolutionService(db).get_case(case_id)
            assert case.status == RecoveryCaseStatus.OPEN.value
            assert case.recovered_amount == 0

    def test_partial_recovery_then_completion(self, database, scam, balance_of):
        _, offender, _ = scam
        case_id = self._compensate(database, scam)
        with database.session() as db:
            Ledger(db).adjust(offender, -15, "Spent some")

        with database.session() as db:
            case = ReportResolutionService(db).recover(case_id, allow_partial=True)
            assert case.status == RecoveryCaseStatus.OPEN.value
            assert case.recovered_amount == 25
        assert balance_of(offender) == 0

        with database.session() as db:
            Ledger(db).adjust(offender, 30, "Earned")
        with database.session() as db:
            case = ReportResolutionService(db).recover(case_id, allow_partial=True)
            assert case.status == RecoveryCaseStatus.RECOVERED.value
            assert case.recovered_amount == 40
        assert balance_of(offender) == 15

    def test_close_case(self, database, scam):
        case_id = self._compensate(database, scam)
        with database.session() as db:
            case = ReportResolutionService(db).close_case(case_id, "Written off")
            assert case.status == RecoveryCaseStatus.CLOSED.value
        with pytest.raises(InvalidStateError):
            with database.session() as db:
                ReportResolutionService(db).recover(case_id)
