"""
tests/conftest.py -- Shared fixtures for the Gatehouse test suite.

This module provides:
  - FakeClock / clock: a controllable UTC clock for expiry tests
  - executor: ResilientExecutor over an in-memory SQLite engine with the
    credential schema created and retry sleeps disabled
  - store: AuthStore wired to executor and clock
  - hasher: PBKDF2 at the minimum accepted iteration count (fast but real)
  - service: AuthService over store and hasher
  - FakeOAuthClient: an OAuthClient that records calls and never touches
    the network

Plain ':memory:' SQLite is enough here: the suite is single-threaded and
SQLAlchemy keeps one connection per thread for in-memory databases.
"""

from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest

from auth.hashing import Pbkdf2PasswordHasher
from auth.models import OAuthProfile, OAuthProvider, OAuthTokens
from auth.oauth import OAuthClient
from auth.schema import create_schema
from auth.store import AuthStore
from auth.workflows import AuthService
from db.backends import EngineSqlBackend
from db.executor import ResilientExecutor

# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Store and service
# ---------------------------------------------------------------------------


@pytest.fixture
def executor() -> Generator[ResilientExecutor, None, None]:
    backend = EngineSqlBackend("sqlite:///:memory:")
    create_schema(backend.engine)
    ex = ResilientExecutor(backend, sleep=lambda _delay: None)
    yield ex
    ex.close()


@pytest.fixture
def store(executor, clock) -> AuthStore:
    return AuthStore(executor, clock=clock)


@pytest.fixture
def hasher() -> Pbkdf2PasswordHasher:
    return Pbkdf2PasswordHasher(iterations=100_000)


@pytest.fixture
def service(store, hasher) -> AuthService:
    return AuthService(store, hasher)


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


class FakeOAuthClient(OAuthClient):
    """Records every call; returns a fixed profile."""

    def __init__(self, provider: OAuthProvider, profile: OAuthProfile | None = None, exchange_error=None) -> None:
        self.provider = provider
        self.scopes = ("email",)
        self.profile = profile or OAuthProfile(
            id="ext-1",
            email="octo@example.com",
            email_verified=True,
            name="Octo Cat",
            avatar_url="https://avatars.example/octo.png",
        )
        self.exchange_error = exchange_error
        self.authorize_calls: list[tuple] = []
        self.exchange_calls: list[tuple] = []
        self.profile_calls = 0

    def authorization_url(self, state, scopes, code_verifier=None) -> str:
        self.authorize_calls.append((state, tuple(scopes), code_verifier))
        return f"https://provider.example/authorize?state={state}"

    def exchange_code(self, code, code_verifier=None) -> OAuthTokens:
        self.exchange_calls.append((code, code_verifier))
        if self.exchange_error is not None:
            raise self.exchange_error
        return OAuthTokens(access_token=f"access-{code}")

    def fetch_profile(self, tokens) -> OAuthProfile:
        self.profile_calls += 1
        return self.profile


@pytest.fixture
def github_client() -> FakeOAuthClient:
    return FakeOAuthClient(OAuthProvider.GITHUB)


@pytest.fixture
def google_client() -> FakeOAuthClient:
    return FakeOAuthClient(
        OAuthProvider.GOOGLE,
        profile=OAuthProfile(id="g-123", email="octo@example.com", email_verified=True, name="Octo G"),
    )


@pytest.fixture
def make_oauth_client():
    """Factory for FakeOAuthClient with custom profile or exchange error."""
    return FakeOAuthClient
