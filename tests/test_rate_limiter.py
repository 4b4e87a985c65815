"""
Test Rate Limiter
Sliding window per (identifier, bucket) and the FastAPI dependency
"""

from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient

from middleware.rate_limiter import RATE_LIMITS, RateLimiter, rate_limit
from utils.error_handler import handle_error
from utils.exceptions import RateLimitedError


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestRateLimiter:
    """In-memory sliding window"""

    def test_limit_then_reset_after_window(self):
        clock = FakeClock()
        limiter = RateLimiter(clock=clock)

        for _ in range(3):
            assert limiter.is_rate_limited("user:a", "transfer", 3, 60) == (False, None)

        limited, reset_time = limiter.is_rate_limited("user:a", "transfer", 3, 60)
        assert limited
        assert 1 <= reset_time <= 60

        clock.now += 61
        assert limiter.is_rate_limited("user:a", "transfer", 3, 60) == (False, None)

    def test_buckets_and_identifiers_independent(self):
        limiter = RateLimiter(clock=FakeClock())
        assert not limiter.is_rate_limited("user:a", "transfer", 1, 60)[0]
        assert limiter.is_rate_limited("user:a", "transfer", 1, 60)[0]
        assert not limiter.is_rate_limited("user:a", "redeem", 1, 60)[0]
        assert not limiter.is_rate_limited("user:b", "transfer", 1, 60)[0]

    def test_reset_limits(self):
        limiter = RateLimiter(clock=FakeClock())
        limiter.is_rate_limited("user:a", "transfer", 1, 60)
        limiter.reset_limits("user:a")
        assert not limiter.is_rate_limited("user:a", "transfer", 1, 60)[0]


class TestRateLimitDependency:
    """rate_limit() on a FastAPI route"""

    def _app(self):
        app = FastAPI()
        app.state.rate_limiter = RateLimiter()

        @app.exception_handler(RateLimitedError)
        async def on_rate_limited(request, exc):
            standard_error = handle_error(exc)
            return JSONResponse(status_code=standard_error.http_status, content=standard_error.to_response())

        @app.post("/limited", dependencies=[Depends(rate_limit("admin_auth"))])
        def limited():
            return {"ok": True}

        return app

    def test_dependency_returns_429_after_budget(self, monkeypatch):
        monkeypatch.setattr("config.Config.RATE_LIMIT_ENABLED", True)
        client = TestClient(self._app())
        budget = RATE_LIMITS["admin_auth"]["max_requests"]

        for _ in range(budget):
            assert client.post("/limited").status_code == 200

        response = client.post("/limited")
        assert response.status_code == 429
        assert response.json()["code"] == "rate_limited"

    def test_disabled_limiter_never_blocks(self, monkeypatch):
        monkeypatch.setattr("config.Config.RATE_LIMIT_ENABLED", False)
        client = TestClient(self._app())
        for _ in range(RATE_LIMITS["admin_auth"]["max_requests"] + 3):
            assert client.post("/limited").status_code == 200
