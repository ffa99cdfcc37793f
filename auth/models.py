"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, almost no logic). Stores own
persistence, providers own the workflow.

  Account         the stored record. Owned by the user store; callers get
                  deep copies, never the store's own instance.
  UserProjection  the read-only subset exposed outside the store: no password
                  hash, no metadata.
  Credentials     caller-supplied login input. Never persisted.

Metadata values are pydantic's recursive JsonValue union
(str | int | float | bool | None | list | dict). normalize_metadata() is the
single validation point both backends call before writing, which keeps the
relational backend's JSON column lossless.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pydantic import JsonValue, TypeAdapter, ValidationError

from auth.errors import InvalidMetadata

MetadataValue = JsonValue

_METADATA_ADAPTER: TypeAdapter[dict[str, JsonValue]] = TypeAdapter(dict[str, JsonValue])


@dataclass(frozen=True)
class UserProjection:
    """Identity carried through the provider layer and into token claims."""

    id: str
    username: str
    email: str
    roles: tuple[str, ...] = ()


@dataclass
class Account:
    """A local username/password account.

    id is empty until the store assigns one on create(). created_at and
    updated_at are epoch seconds stamped by the store; values passed in by the
    caller are ignored.
    """

    username: str
    email: str
    password_hash: str = field(default="", repr=False)
    roles: list[str] = field(default_factory=list)
    metadata: dict[str, MetadataValue] = field(default_factory=dict)
    id: str = ""
    created_at: int = 0
    updated_at: int = 0

    def projection(self) -> UserProjection:
        return UserProjection(
            id=self.id,
            username=self.username,
            email=self.email,
            roles=tuple(self.roles),
        )


@dataclass
class Credentials:
    """Login input. kind="password" is the only kind the local provider accepts."""

    username: str
    password: str = field(repr=False)
    kind: str = "password"
    provider: str = "local"
    token: str = field(default="", repr=False)
    params: dict[str, Any] = field(default_factory=dict)


def normalize_roles(roles) -> list[str]:
    """Roles are a set: de-duplicate and sort so every backend reads back the same list."""
    return sorted({str(r) for r in roles})


def normalize_metadata(metadata: dict | None) -> dict[str, MetadataValue]:
    """Validate metadata against the JSON value union. Raises InvalidMetadata."""
    if not metadata:
        return {}
    try:
        return _METADATA_ADAPTER.validate_python(metadata)
    except ValidationError as exc:
        raise InvalidMetadata("metadata values must be JSON-compatible", reason=str(exc)) from exc
