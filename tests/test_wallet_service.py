"""
Test Wallet Service
Idempotent registration, history and statistics
"""

import secrets
import threading

import pytest

from services.ledger import Ledger
from services.wallet_service import WalletService
from utils.exceptions import NotFoundError, ValidationError


class TestRegistration:
    """register() semantics"""

    def test_new_wallet_starts_empty(self, database):
        user_hash = secrets.token_hex(32)
        with database.session() as db:
            wallet = WalletService(db).register(user_hash, "s3cret")
            assert wallet.balance == 0
            assert wallet.user_secret == "s3cret"

    def test_user_hash_normalized_to_lowercase(self, database):
        user_hash = secrets.token_hex(32)
        with database.session() as db:
            wallet = WalletService(db).register(user_hash.upper())
            assert wallet.user_hash == user_hash

    def test_invalid_user_hash_rejected(self, database):
        for bad in ("abc", "z" * 64, None, 42):
            with pytest.raises(ValidationError):
                with database.session() as db:
                    WalletService(db).register(bad)

    def test_reregistration_backfills_secret_without_touching_balance(
        self, database, make_wallet, balance_of
    ):
        user_hash, _ = make_wallet(balance=25, with_secret=False)

        with database.session() as db:
            wallet = WalletService(db).register(user_hash, "late-secret", "pk-1")
            assert wallet.user_secret == "late-secret"
            assert wallet.public_key == "pk-1"

        assert balance_of(user_hash) == 25

    def test_existing_secret_never_overwritten(self, database, make_wallet):
        user_hash, original_secret = make_wallet()
        with database.session() as db:
            wallet = WalletService(db).register(user_hash, "attacker-secret")
            assert wallet.user_secret == original_secret

    def test_concurrent_first_registration_yields_one_wallet(self, database, balance_of):
        user_hash = secrets.token_hex(32)
        errors = []

        def worker():
            try:
                with database.session() as db:
                    WalletService(db).register(user_hash, "s")
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        rows = database.query(
            "SELECT COUNT(*) AS n FROM wallets WHERE user_hash = :h", {"h": user_hash}
        )
        assert rows[0]["n"] == 1
        assert balance_of(user_hash) == 0


class TestWalletQueries:
    """History and stats"""

    def test_missing_wallet_is_not_found(self, database):
        with pytest.raises(NotFoundError):
            with database.session() as db:
                WalletService(db).get_wallet("f" * 64)

    def test_history_newest_first_both_directions(self, database, make_wallet):
        alice, _ = make_wallet(balance=100)
        bob, _ = make_wallet(balance=100)
        with database.session() as db:
            Ledger(db).transfer(alice, bob, 10, "first")
        with database.session() as db:
            Ledger(db).transfer(bob, alice, 3, "second")

        with database.session() as db:
            history = WalletService(db).get_history(alice, page=1, limit=10)

        assert history["total"] == 3  # seed mint + two transfers
        titles = [entry["title"] for entry in history["data"]]
        assert titles[0] == "second"
        assert set(titles) == {"Test seed", "first", "second"}

    def test_history_pagination(self, database, make_wallet):
        alice, _ = make_wallet(balance=100)
        bob, _ = make_wallet()
        for i in range(5):
            with database.session() as db:
                Ledger(db).transfer(alice, bob, 1, f"t{i}")

        with database.session() as db:
            page_two = WalletService(db).get_history(bob, page=2, limit=2)

        assert page_two["total"] == 5
        assert page_two["page"] == 2
        assert page_two["totalPages"] == 3
        assert len(page_two["data"]) == 2

    def test_stats_count_completed_entries(self, database, make_wallet):
        alice, _ = make_wallet(balance=100)
        bob, _ = make_wallet()
        with database.session() as db:
            Ledger(db).transfer(alice, bob, 30, "a")
            Ledger(db).transfer(alice, bob, 20, "b")

        with database.session() as db:
            stats = WalletService(db).get_stats(alice)

        assert stats["sentCount"] == 2
        assert stats["totalSent"] == 50
        assert stats["receivedCount"] == 1
        assert stats["totalReceived"] == 100
