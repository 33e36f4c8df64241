"""
tests/conftest.py -- Shared test fixtures for authgate unit and integration tests.

This module provides:
  - FakeClock: a controllable time source injected into every component
  - engine / settings / orchestrator: a fully wired component graph on a
    throwaway SQLite file
  - make_account: registers an account through the orchestrator
  - api_client: TestClient with an admin access token for API tests

Design: every test gets its own SQLite file under tmp_path. A file (not
:memory:) is used because the concurrency tests and the TestClient thread
pool open several connections that must see the same database.

The environment variables must be set before any api/ or core/ import so
get_settings() (used by the rate limiter) picks them up: DEBUG lets Settings
auto-generate SECRET_KEY, BCRYPT_ROUNDS=4 keeps hashing fast, and the
generous login rate limit keeps slowapi out of the way of ordinary tests.
"""

from __future__ import annotations

import os
import threading
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("MAINTENANCE_ENABLED", "false")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.models import Account
from auth.orchestrator import LoginOrchestrator, build_orchestrator
from auth.results import RegistrationResult
from auth.store import create_db_engine
from core.config import Settings

TEST_SECRET = "test-secret-key-0123456789abcdef-0123456789"
STRONG_PASSWORD = "Correct-Horse-7"
START = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock whose time only moves when a test says so."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self.now

    def advance(self, **kwargs) -> datetime:
        with self._lock:
            self.now = self.now + timedelta(**kwargs)
            return self.now


class RecordingNotifier:
    """Collects (account, raw_token) pairs instead of sending email."""

    def __init__(self) -> None:
        self.sent: list[tuple[Account, str]] = []

    def __call__(self, account: Account, raw_token: str) -> None:
        self.sent.append((account, raw_token))

    @property
    def last_token(self) -> str:
        return self.sent[-1][1]


# ---------------------------------------------------------------------------
# Component fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'authgate-test.db'}")
    yield engine
    engine.dispose()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        debug=True,
        secret_key=TEST_SECRET,
        database_url=f"sqlite:///{tmp_path / 'authgate-test.db'}",
        bcrypt_rounds=4,
        lockout_threshold=5,
        lockout_duration_seconds=1800,
        access_token_ttl_seconds=900,
        refresh_token_ttl_seconds=3600,
        token_leeway_seconds=30,
        maintenance_enabled=False,
    )


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def orchestrator(settings, engine, clock, notifier) -> LoginOrchestrator:
    return build_orchestrator(settings, engine=engine, clock=clock, reset_notifier=notifier)


@pytest.fixture
def make_account(orchestrator):
    """Return a factory that registers an account and returns it as stored."""

    def _make(
        username: str = "alice",
        email: str | None = None,
        password: str = STRONG_PASSWORD,
        roles: list[str] | None = None,
        mfa_enabled: bool = False,
    ) -> Account:
        result = orchestrator.register(
            username,
            email or f"{username}@example.com",
            password,
            roles=roles,
            mfa_enabled=mfa_enabled,
        )
        assert isinstance(result, RegistrationResult), f"registration failed: {result}"
        return orchestrator.accounts.get_by_id(result.account_id)

    return _make


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(orchestrator: LoginOrchestrator):
    """Return an async context manager that replaces the real lifespan.

    Wires the test orchestrator into app.state so routes hit the isolated
    test database and the FakeClock instead of the production settings.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.orchestrator = orchestrator
        yield

    return test_lifespan


@pytest.fixture
def api_client(orchestrator, make_account) -> Generator[tuple[TestClient, str, str], None, None]:
    """Yield (client, admin_token, admin_id) for API integration tests.

    The admin account is "testadmin" with STRONG_PASSWORD. The token is a
    normal access token minted through a real login. base_url uses localhost
    so TrustedHostMiddleware accepts the requests.
    """
    admin = make_account("testadmin", roles=["user", "admin"])
    pair = orchestrator.login("testadmin", STRONG_PASSWORD)
    limiter.reset()
    app.router.lifespan_context = _patch_lifespan(orchestrator)

    with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as client:
        yield client, pair.access_token, admin.id
