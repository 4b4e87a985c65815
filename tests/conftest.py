"""
Shared fixtures for the credit ledger test suite

1. A file-backed SQLite Database per test (real BEGIN IMMEDIATE locking, so
   threaded tests exercise the same guarantees as production)
2. Wallet factory that registers a signing secret and seeds a balance
3. Request-signing helper that mirrors what a client does
4. TestClient bound to an app built around the per-test Database
"""

import logging
import secrets
import time
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import pytest
from fastapi.testclient import TestClient

from api_server import create_app
from database import Database
from middleware.rate_limiter import RateLimiter
from services.admin_auth_service import AdminAuthService
from services.ledger import Ledger
from services.request_authenticator import sign_payload
from services.wallet_service import WalletService

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

ADMIN_SECRET = "test-admin-secret"
ADMIN_JWT_SECRET = "test-admin-jwt-secret"
ADMIN_MASTER_SECRET = "test-master-secret"


@pytest.fixture
def database(tmp_path) -> Database:
    """Fresh ledger database per test"""
    db = Database(f"sqlite:///{tmp_path / 'ledger.db'}")
    db.ensure_schema()
    yield db
    db.dispose()


@pytest.fixture
def make_wallet(database) -> Callable[..., Tuple[str, str]]:
    """Register a wallet and optionally seed it; returns (user_hash, user_secret)"""

    def _make_wallet(balance: int = 0, with_secret: bool = True) -> Tuple[str, str]:
        user_hash = secrets.token_hex(32)
        user_secret = secrets.token_hex(16) if with_secret else None
        with database.session() as db:
            WalletService(db).register(user_hash, user_secret)
            if balance:
                Ledger(db).mint(user_hash, balance, "Test seed")
        return user_hash, user_secret

    return _make_wallet


@pytest.fixture
def balance_of(database) -> Callable[[str], int]:
    def _balance_of(user_hash: str) -> int:
        with database.session() as db:
            return Ledger(db).get_balance(user_hash)

    return _balance_of


@pytest.fixture
def sign() -> Callable[..., Dict[str, str]]:
    """Build the four signing headers for a payload"""

    def _sign(
        user_hash: str,
        user_secret: str,
        payload: Mapping[str, Any],
        timestamp_ms: Optional[int] = None,
        nonce: Optional[str] = None,
    ) -> Dict[str, str]:
        timestamp_ms = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
        nonce = nonce or secrets.token_hex(12)
        return {
            "X-User-Hash": user_hash,
            "X-Signature": sign_payload(payload, timestamp_ms, nonce, user_secret),
            "X-Timestamp": str(timestamp_ms),
            "X-Nonce": nonce,
        }

    return _sign


@pytest.fixture
def admin_auth() -> AdminAuthService:
    return AdminAuthService(
        admin_secret=ADMIN_SECRET,
        token_secret=ADMIN_JWT_SECRET,
        master_secret=ADMIN_MASTER_SECRET,
    )


@pytest.fixture
def client(database, admin_auth) -> TestClient:
    app = create_app(database=database, admin_auth=admin_auth, rate_limiter=RateLimiter())
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def admin_headers() -> Dict[str, str]:
    return {"X-Admin-Token": ADMIN_SECRET}
