"""
auth/registry.py -- Name-keyed lookup table of authentication providers.

The HTTP layer touches providers only through this registry. Registration
happens once at startup (auth/factory.py), so there is no locking; the last
registration under a name wins.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from auth.errors import ProviderNotEnabled
from auth.providers import Provider

logger = logging.getLogger("tokengate.auth")


class ProviderRegistry:
    def __init__(self) -> None:
        self._providers: dict[str, Provider] = {}

    def register(self, provider: Provider) -> None:
        if provider.name in self._providers:
            logger.info("Replacing provider registered as %r", provider.name)
        self._providers[provider.name] = provider

    def get(self, name: str) -> Provider | None:
        return self._providers.get(name)

    def require(self, name: str) -> Provider:
        """Like get(), but raises ProviderNotEnabled when ``name`` is unknown."""
        provider = self._providers.get(name)
        if provider is None:
            raise ProviderNotEnabled(f"authentication provider {name!r} is not enabled")
        return provider

    def list_all(self) -> list[Provider]:
        return list(self._providers.values())

    def names(self) -> list[str]:
        return sorted(self._providers)

    def __contains__(self, name: object) -> bool:
        return name in self._providers

    def __len__(self) -> int:
        return len(self._providers)
