"""
tests/conftest.py -- Shared test fixtures for tokengate.

This module provides:
  - FakeClock / clock: a settable epoch clock injected into codecs and stores
  - user_store / revocation_store: parametrized over the in-memory and SQL
    backends, so every store test runs against both
  - local_provider / revoking_provider: providers wired to the fixtures above
  - alice: a registered account on the shared user store
  - api_client: TestClient over the real app and lifespan, in-memory backends

Design: the SQL backends use a plain "sqlite://" URL. make_engine() gives it a
StaticPool, so the one connection holding the schema is shared by every
thread TestClient runs handlers on.

The DEBUG env var must be set before any auth/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
from collections.abc import Generator

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from auth.memory import MemoryRevocationStore, MemoryUserStore
from auth.models import UserProjection
from auth.providers import LocalProvider, ProviderConfig, RevocationAwareProvider, min_length_policy
from auth.revocation import RevocationStore, SQLRevocationStore
from auth.schema import create_schema, make_engine
from auth.store import SQLUserStore, UserStore
from core.config import get_settings

TEST_SECRET = "test-secret-key-that-is-long-enough-for-hs256"
TEST_LIFETIME = 3600
TEST_ROUNDS = 4  # bcrypt's minimum cost; keeps the suite fast

ADMIN_USERNAME = "testadmin"
ADMIN_PASSWORD = "testpass123"


class FakeClock:
    """Callable epoch clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Store fixtures -- every test using these runs once per backend
# ---------------------------------------------------------------------------


@pytest.fixture(params=["memory", "sql"])
def user_store(request, clock: FakeClock) -> Generator[UserStore, None, None]:
    if request.param == "memory":
        store: UserStore = MemoryUserStore(clock=clock)
    else:
        engine = make_engine("sqlite://")
        create_schema(engine)
        store = SQLUserStore(engine, clock=clock)
    yield store
    store.close()


@pytest.fixture(params=["memory", "sql"])
def revocation_store(request, clock: FakeClock) -> Generator[RevocationStore, None, None]:
    if request.param == "memory":
        store: RevocationStore = MemoryRevocationStore(clock=clock)
    else:
        engine = make_engine("sqlite://")
        create_schema(engine)
        store = SQLRevocationStore(engine, clock=clock)
    yield store
    store.close()


# ---------------------------------------------------------------------------
# Provider fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def provider_config() -> ProviderConfig:
    return ProviderConfig(
        secret=TEST_SECRET,
        token_lifetime=TEST_LIFETIME,
        password_policy=min_length_policy(8),
        bcrypt_rounds=TEST_ROUNDS,
    )


@pytest.fixture
def local_provider(provider_config: ProviderConfig, user_store: UserStore, clock: FakeClock) -> LocalProvider:
    return LocalProvider(provider_config, user_store, clock=clock)


@pytest.fixture
def revoking_provider(local_provider: LocalProvider, revocation_store: RevocationStore) -> RevocationAwareProvider:
    return RevocationAwareProvider(local_provider, revocation_store)


@pytest.fixture
def alice(local_provider: LocalProvider) -> UserProjection:
    """A registered account: alice / correct-horse-battery, roles user."""
    return local_provider.register(
        "alice",
        "alice@example.com",
        "correct-horse-battery",
        roles=["user"],
        metadata={"plan": "pro"},
    )


# ---------------------------------------------------------------------------
# API client -- real lifespan, in-memory backends, seeded admin
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client() -> Generator[TestClient, None, None]:
    """Yield a TestClient whose app was started by its real lifespan.

    Environment is pinned so the lifespan selects the in-memory backends,
    enables revocation, and seeds a known admin account. The settings cache
    is cleared on both sides so other modules see their own environment.
    """
    from api.main import app

    overrides = {
        "DATABASE_URL": "",
        "REVOCATION_ENABLED": "true",
        "BCRYPT_ROUNDS": str(TEST_ROUNDS),
        "SEED_ADMIN_USERNAME": ADMIN_USERNAME,
        "SEED_ADMIN_EMAIL": "testadmin@example.com",
        "SEED_ADMIN_PASSWORD": ADMIN_PASSWORD,
    }
    saved = {key: os.environ.get(key) for key in overrides}
    os.environ.update(overrides)
    get_settings.cache_clear()

    with TestClient(app) as client:
        yield client

    for key, value in saved.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value
    get_settings.cache_clear()
