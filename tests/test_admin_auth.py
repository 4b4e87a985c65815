"""
Test Admin Authentication
Shared secret, session tokens, password login and rotation
"""

import pytest

from services.admin_auth_service import AdminAuthService, hash_password, verify_password
from utils.exceptions import UnauthorizedError, ValidationError


class FakeClock:
    def __init__(self, now: float = 1_700_000_000):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def auth(clock):
    return AdminAuthService(
        admin_secret="shared-secret",
        token_secret="jwt-secret",
        token_ttl_seconds=3600,
        master_secret="master",
        clock=clock,
    )


class TestPasswordHashing:
    """bcrypt hashes stored as strings"""

    def test_round_trip(self):
        stored = hash_password("hunter22")
        assert stored.startswith("$2b$")
        assert stored != hash_password("hunter22")
        assert verify_password("hunter22", stored)
        assert not verify_password("hunter23", stored)

    def test_malformed_hash_never_matches(self):
        assert not verify_password("x", "plain-text")
        assert not verify_password("x", "scrypt:zz:00")
        assert not verify_password("x", "bcrypt:00:00")

    def test_oversized_password_never_matches(self):
        stored = hash_password("hunter22")
        assert not verify_password("h" * 100, stored)


class TestRequestVerification:
    """verify_admin_request"""

    def test_shared_secret_header(self, auth):
        assert auth.verify_admin_request({"X-Admin-Token": "shared-secret"}) == "shared-secret"

    def test_shared_secret_bearer(self, auth):
        assert auth.verify_admin_request({"Authorization": "Bearer shared-secret"}) == "shared-secret"

    def test_wrong_secret_rejected(self, auth):
        with pytest.raises(UnauthorizedError):
            auth.verify_admin_request({"X-Admin-Token": "guess"})

    def test_no_credentials_rejected(self, auth):
        with pytest.raises(UnauthorizedError):
            auth.verify_admin_request({})

    def test_non_ascii_token_rejected_cleanly(self, auth):
        with pytest.raises(UnauthorizedError):
            auth.verify_admin_request({"X-Admin-Token": "密码"})


class TestSessionTokens:
    """HS256 session tokens"""

    def test_issued_token_accepted_until_expiry(self, auth, clock):
        token = auth.issue_token()
        assert auth.verify_admin_request({"Authorization": f"Bearer {token}"}) == "admin"

        clock.now += 3601
        assert auth.verify_token(token) is None

    def test_tampered_token_rejected(self, auth):
        token = auth.issue_token()
        header, payload, signature = token.split(".")
        tampered = f"{header}.{payload}x.{signature}"
        assert auth.verify_token(tampered) is None
        assert auth.verify_token("not-a-token") is None
        assert auth.verify_token("a.b.c") is None

    def test_token_from_other_secret_rejected(self, auth, clock):
        other = AdminAuthService(admin_secret="", token_secret="other", clock=clock)
        assert auth.verify_token(other.issue_token()) is None

    def test_issue_without_secret_fails(self, clock):
        with pytest.raises(UnauthorizedError):
            AdminAuthService(admin_secret="", token_secret="", clock=clock).issue_token()


class TestPasswordManagement:
    """login / change_password"""

    def test_login_with_initial_password(self, database, auth, monkeypatch):
        monkeypatch.setattr("config.Config.ADMIN_INITIAL_PASSWORD", "first-pass")
        with database.session() as db:
            token = auth.login(db, "first-pass")
        assert auth.verify_token(token)["role"] == "admin"

    def test_login_without_any_password_configured(self, database, auth, monkeypatch):
        monkeypatch.setattr("config.Config.ADMIN_INITIAL_PASSWORD", "")
        with pytest.raises(UnauthorizedError):
            with database.session() as db:
                auth.login(db, "anything")

    def test_change_password_replaces_initial(self, database, auth, monkeypatch):
        monkeypatch.setattr("config.Config.ADMIN_INITIAL_PASSWORD", "first-pass")
        with database.session() as db:
            auth.change_password(db, "master", "new-password-1")

        with pytest.raises(UnauthorizedError):
            with database.session() as db:
                auth.login(db, "first-pass")
        with database.session() as db:
            assert auth.login(db, "new-password-1")

    def test_change_password_requires_master_secret(self, database, auth):
        with pytest.raises(UnauthorizedError):
            with database.session() as db:
                auth.change_password(db, "wrong", "new-password-1")

    def test_change_password_enforces_length(self, database, auth):
        with pytest.raises(ValidationError):
            with database.session() as db:
                auth.change_password(db, "master", "short")
        with pytest.raises(ValidationError):
            with database.session() as db:
                auth.change_password(db, "master", "x" * 73)
