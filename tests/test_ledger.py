"""
Test Ledger
Balance primitives, transfers, admin adjustments and the no-overdraw guarantee
under concurrent debits
"""

import threading

import pytest
from sqlalchemy import func, select

from models import Transaction, TransactionStatus, TransactionType
from services.ledger import Ledger
from utils.exceptions import (
    InsufficientBalanceError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)


class TestBalancePrimitives:
    """debit / credit"""

    def test_credit_then_debit(self, database, make_wallet, balance_of):
        user_hash, _ = make_wallet()
        with database.session() as db:
            ledger = Ledger(db)
            ledger.credit(user_hash, 50)
            ledger.debit(user_hash, 20)
        assert balance_of(user_hash) == 30

    def test_debit_more_than_balance_fails(self, database, make_wallet, balance_of):
        user_hash, _ = make_wallet(balance=10)
        with pytest.raises(InsufficientBalanceError) as exc_info:
            with database.session() as db:
                Ledger(db).debit(user_hash, 11)
        assert exc_info.value.details["balance"] == 10
        assert balance_of(user_hash) == 10

    def test_debit_missing_wallet_is_not_found(self, database):
        with pytest.raises(NotFoundError):
            with database.session() as db:
                Ledger(db).debit("d" * 64, 1)

    def test_non_positive_amount_rejected(self, database, make_wallet):
        user_hash, _ = make_wallet(balance=10)
        for amount in (0, -5, 1.5, True, "ten"):
            with pytest.raises(ValidationError):
                with database.session() as db:
                    Ledger(db).debit(user_hash, amount)


class TestTransfer:
    """Wallet to wallet transfers"""

    def test_transfer_moves_exact_amount(self, database, make_wallet, balance_of):
        sender, _ = make_wallet(balance=100)
        receiver, _ = make_wallet(balance=5)

        with database.session() as db:
            tx = Ledger(db).transfer(sender, receiver, 40, "Lunch", "noodles")

        assert balance_of(sender) == 60
        assert balance_of(receiver) == 45
        assert tx.transaction_type == TransactionType.TRANSFER.value
        assert tx.status == TransactionStatus.COMPLETED.value
        assert tx.from_user_hash == sender
        assert tx.to_user_hash == receiver
        assert tx.amount == 40
        assert tx.tx_id.startswith("TX-")

    def test_insufficient_balance_leaves_no_trace(self, database, make_wallet, balance_of):
        sender, _ = make_wallet(balance=10)
        receiver, _ = make_wallet()

        with pytest.raises(InsufficientBalanceError):
            with database.session() as db:
                Ledger(db).transfer(sender, receiver, 11, "Too much")

        assert balance_of(sender) == 10
        assert balance_of(receiver) == 0
        with database.session() as db:
            count = db.execute(
                select(func.count()).select_from(Transaction)
                .where(Transaction.transaction_type == TransactionType.TRANSFER.value)
            ).scalar_one()
        assert count == 0

    def test_self_transfer_rejected(self, database, make_wallet):
        sender, _ = make_wallet(balance=10)
        with pytest.raises(ValidationError):
            with database.session() as db:
                Ledger(db).transfer(sender, sender, 1, "Loop")

    def test_unknown_receiver_is_not_found(self, database, make_wallet, balance_of):
        sender, _ = make_wallet(balance=10)
        with pytest.raises(NotFoundError):
            with database.session() as db:
                Ledger(db).transfer(sender, "e" * 64, 1, "Nobody")
        assert balance_of(sender) == 10

    def test_title_required(self, database, make_wallet):
        sender, _ = make_wallet(balance=10)
        receiver, _ = make_wallet()
        with pytest.raises(ValidationError):
            with database.session() as db:
                Ledger(db).transfer(sender, receiver, 1, "   ")

    @pytest.mark.parametrize("amount", [10 ** 20, "²", "1e3", "１２", 2.5, True, None])
    def test_malformed_amount_is_validation_error(self, database, make_wallet, balance_of, amount):
        sender, _ = make_wallet(balance=10)
        receiver, _ = make_wallet()
        with pytest.raises(ValidationError):
            with database.session() as db:
                Ledger(db).transfer(sender, receiver, amount, "Bad amount")
        assert balance_of(sender) == 10

    def test_digit_string_amount_accepted(self, database, make_wallet, balance_of):
        sender, _ = make_wallet(balance=10)
        receiver, _ = make_wallet()
        with database.session() as db:
            Ledger(db).transfer(sender, receiver, " 4 ", "String amount")
        assert balance_of(receiver) == 4


class TestConcurrentDebits:
    """No interleaving of concurrent debits may overdraw a wallet"""

    def test_parallel_transfers_never_go_negative(self, database, make_wallet, balance_of):
        sender, _ = make_wallet(balance=100)
        receiver, _ = make_wallet()
        results = []
        lock = threading.Lock()

        def worker():
            try:
                with database.session() as db:
                    Ledger(db).transfer(sender, receiver, 30, "Race")
                outcome = "ok"
            except InsufficientBalanceError:
                outcome = "insufficient"
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        successes = results.count("ok")
        assert successes == 3
        assert results.count("insufficient") == 5
        assert balance_of(sender) == 10
        assert balance_of(receiver) == 90


class TestAdminAdjust:
    """Signed admin corrections"""

    def test_positive_and_negative_adjustments(self, database, make_wallet, balance_of):
        user_hash, _ = make_wallet(balance=10)
        with database.session() as db:
            credit_tx = Ledger(db).adjust(user_hash, 15, "Event prize")
            debit_tx = Ledger(db).adjust(user_hash, -20, "Correction")

        assert balance_of(user_hash) == 5
        assert credit_tx.to_user_hash == user_hash
        assert debit_tx.from_user_hash == user_hash
        assert debit_tx.amount == 20
        assert debit_tx.extra_data == {"delta": -20}

    def test_negative_adjustment_obeys_floor(self, database, make_wallet, balance_of):
        user_hash, _ = make_wallet(balance=5)
        with pytest.raises(InsufficientBalanceError):
            with database.session() as db:
                Ledger(db).adjust(user_hash, -6, "Too much")
        assert balance_of(user_hash) == 5

    def test_zero_delta_rejected(self, database, make_wallet):
        user_hash, _ = make_wallet()
        with pytest.raises(ValidationError):
            with database.session() as db:
                Ledger(db).adjust(user_hash, 0, "Nothing")


class TestPendingSettlement:
    """Pending entries settle exactly once"""

    def test_settle_twice_fails(self, database, make_wallet):
        buyer, _ = make_wallet()
        seller, _ = make_wallet()
        with database.session() as db:
            tx = Ledger(db).record_transaction(
                TransactionType.PRODUCT_PURCHASE,
                10,
                "Held",
                from_user_hash=buyer,
                to_user_hash=seller,
                status=TransactionStatus.PENDING,
            )
            tx_id = tx.tx_id
            assert tx.completed_at is None

        with database.session() as db:
            Ledger(db).settle_pending_transaction(tx_id, TransactionStatus.COMPLETED)
        with pytest.raises(InvalidStateError):
            with database.session() as db:
                Ledger(db).settle_pending_transaction(tx_id, TransactionStatus.CANCELLED)

        with database.session() as db:
            settled = Ledger(db).get_transaction(tx_id)
            assert settled.status == TransactionStatus.COMPLETED.value
            assert settled.completed_at is not None
