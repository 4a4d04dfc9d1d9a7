"""
Pytest configuration and fixtures for restbridge tests.
"""

import json
import random
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from restbridge.auth import TokenManager
from restbridge.domains import Domain, resolve_profiles
from restbridge.models import Credential
from restbridge.rate_limiter import RateLimiter
from restbridge.registry import build_clients
from restbridge.retry import RetryPolicy
from restbridge.token_store import MemoryTokenStore

EPOCH = datetime(2025, 1, 1, tzinfo=timezone.utc)


class FakeClock:
    """Monotonic clock whose sleep advances time instead of blocking."""

    def __init__(self, start: float = 1000.0):
        self.time = start
        self.start = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.time

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.time += seconds

    def advance(self, seconds: float) -> None:
        self.time += seconds

    def now(self) -> datetime:
        """Wall-clock view of the same timeline, for the token manager."""
        return EPOCH + timedelta(seconds=self.time - self.start)


class RecordingRefresher:
    """Refresher that counts network refreshes and hands out numbered tokens."""

    def __init__(self, clock: FakeClock, lifetime: int = 3600, error: Exception | None = None):
        self.clock = clock
        self.lifetime = lifetime
        self.error = error
        self.calls = 0

    def __call__(self, credential: Credential) -> Credential:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return Credential(
            access_token=f"refreshed-{self.calls}",
            refresh_token=credential.refresh_token,
            expires_at=self.clock.now() + timedelta(seconds=self.lifetime),
            scopes=credential.scopes,
        )


def json_response(status: int = 200, body=None, headers: dict | None = None) -> httpx.Response:
    return httpx.Response(status, json=body if body is not None else {}, headers=headers)


def google_error(status: int, message: str, reason: str | None = None) -> dict:
    error = {"code": status, "message": message}
    if reason:
        error["errors"] = [{"reason": reason, "message": message}]
    return {"error": error}


@pytest.fixture
def clock():
    """Fake monotonic clock with recorded sleeps."""
    return FakeClock()


@pytest.fixture
def make_credential(clock):
    """Factory for credentials expiring relative to the fake clock."""
    def _make(access_token: str = "valid-token", expires_in: float = 3600, refresh_token: str | None = "refresh-1"):
        return Credential(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=clock.now() + timedelta(seconds=expires_in),
            scopes={"https://www.googleapis.com/auth/gmail.readonly"},
        )
    return _make


@pytest.fixture
def refresher(clock):
    return RecordingRefresher(clock)


@pytest.fixture
def token_manager(clock, make_credential, refresher):
    """Token manager holding a valid credential in a memory store."""
    store = MemoryTokenStore(make_credential())
    return TokenManager(store, refresher=refresher, now=clock.now)


@pytest.fixture
def profiles():
    return resolve_profiles()


@pytest.fixture
def rate_limiter(profiles, clock):
    return RateLimiter.from_profiles(profiles, clock=clock, sleep=clock.sleep)


@pytest.fixture
def policy():
    """Retry policy with deterministic jitter."""
    return RetryPolicy(rng=random.Random(42))


@pytest.fixture
def make_registry(token_manager, profiles, clock, policy):
    """Factory: build_clients wired to a MockTransport handler and the fake clock."""
    registries = []

    def _make(handler, manager=None):
        registry = build_clients(
            manager or token_manager,
            profiles=profiles,
            policy=policy,
            transport=httpx.MockTransport(handler),
            clock=clock,
            sleep=clock.sleep,
        )
        registries.append(registry)
        return registry

    yield _make

    for registry in registries:
        registry.close()


@pytest.fixture
def gmail(make_registry):
    """Factory: Gmail executor for a MockTransport handler."""
    def _make(handler, manager=None):
        return make_registry(handler, manager).client(Domain.GMAIL)
    return _make


@pytest.fixture
def credential_file(tmp_path, clock):
    """Token JSON file as written by an external login flow."""
    path = tmp_path / "token.json"
    path.write_text(json.dumps({
        "access_token": "file-token",
        "refresh_token": "file-refresh",
        "expires_in": 3600,
        "scope": "https://www.googleapis.com/auth/drive",
        "client_id": "client-123",
        "client_secret": "secret-456",
    }))
    return path
