"""
auth/factory.py -- Wire settings into backends, providers and the registry.

Entry points (api/main.py lifespan, main.py CLI) call these instead of
constructing stores directly, so backend selection lives in one place:

  DATABASE_URL empty  -> MemoryUserStore + MemoryRevocationStore
  DATABASE_URL set    -> SQLUserStore + SQLRevocationStore sharing one Engine

Usage:
    backends = build_backends(settings)
    provider = build_provider(settings, backends)
    seed_admin(settings, provider)
    registry = build_registry(provider)
    ...
    backends.close()

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.engine import Engine

from auth.errors import AlreadyExists, NotFound
from auth.memory import MemoryRevocationStore, MemoryUserStore
from auth.providers import LocalProvider, ProviderConfig, RevocationAwareProvider
from auth.registry import ProviderRegistry
from auth.revocation import RevocationStore, SQLRevocationStore
from auth.schema import create_schema, make_engine
from auth.store import SQLUserStore, UserStore
from core.config import Settings

logger = logging.getLogger("tokengate.auth")


@dataclass
class Backends:
    user_store: UserStore
    revocation_store: RevocationStore
    engine: Engine | None = None

    @property
    def kind(self) -> str:
        return "memory" if self.engine is None else self.engine.dialect.name

    def close(self) -> None:
        if self.engine is not None:
            self.engine.dispose()


def build_backends(settings: Settings) -> Backends:
    if not settings.database_url:
        logger.info("No DATABASE_URL configured -- using in-memory stores")
        return Backends(MemoryUserStore(), MemoryRevocationStore())
    engine = make_engine(settings.database_url, pool_timeout=settings.request_timeout_seconds)
    create_schema(engine)
    logger.info("Using %s stores", engine.dialect.name)
    return Backends(SQLUserStore(engine), SQLRevocationStore(engine), engine)


def build_provider(settings: Settings, backends: Backends) -> LocalProvider | RevocationAwareProvider:
    base = LocalProvider(ProviderConfig.from_settings(settings), backends.user_store)
    if settings.revocation_enabled:
        return RevocationAwareProvider(base, backends.revocation_store)
    logger.warning("Token revocation disabled -- logout will not invalidate issued tokens")
    return base


def build_registry(provider: LocalProvider | RevocationAwareProvider) -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register(provider)
    return registry


def seed_admin(settings: Settings, provider: LocalProvider | RevocationAwareProvider) -> bool:
    """Create the bootstrap admin account if configured and missing.

    Returns True if an account was created.
    """
    if not settings.seed_admin_password:
        return False
    try:
        provider.user_store.get_by_username(settings.seed_admin_username)
        return False
    except NotFound:
        pass
    try:
        provider.register(
            settings.seed_admin_username,
            settings.seed_admin_email,
            settings.seed_admin_password,
            roles=("admin", "user"),
            metadata={"created_by": "system"},
        )
    except AlreadyExists:
        # Another process seeded between the lookup and the insert.
        return False
    logger.info("Created bootstrap admin account %r", settings.seed_admin_username)
    return True
