"""
auth/errors.py -- Error taxonomy for the token lifecycle.

Every failure the providers and stores report is one of these classes. The
api/ layer maps them to HTTP status codes by class; nothing upstream needs to
inspect messages.

  InvalidCredentials  wrong username, wrong password, or unsupported credential
                      kind. Deliberately identical for all three so a caller
                      cannot tell which half of the pair was wrong.
  NotFound            account (or other resource) absent.
  AlreadyExists       username / email / id uniqueness violation.
  InvalidToken        malformed, mis-signed, wrong algorithm, not yet valid,
                      or revoked.
  ExpiredToken        structurally valid and correctly signed, but past exp.
                      Kept apart from InvalidToken so refresh and logout can
                      still act on an expired token.
  StoreError          backend / transport failure, raised ``from`` the
                      original exception.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

from typing import Any

from core.context import Cancelled, DeadlineExceeded


class AuthError(Exception):
    """Base class for every error raised by auth/."""

    code = "auth_error"

    def __init__(self, message: str = "", **detail: Any) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.detail = detail


class InvalidCredentials(AuthError):
    code = "invalid_credentials"


class NotFound(AuthError):
    code = "not_found"


class AlreadyExists(AuthError):
    code = "already_exists"


class InvalidToken(AuthError):
    code = "invalid_token"


class ExpiredToken(AuthError):
    """The token verified but its exp has passed.

    ``claims`` holds the verified claim set so that callers which tolerate
    expiry (refresh, revoke) can continue without decoding twice.
    """

    code = "token_expired"

    def __init__(self, message: str = "token has expired", claims: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.claims = claims or {}


class InvalidMetadata(AuthError, ValueError):
    code = "invalid_metadata"


class WeakPassword(AuthError):
    code = "weak_password"


class ProviderNotEnabled(AuthError):
    code = "provider_not_enabled"


class StoreError(AuthError):
    code = "store_error"


__all__ = [
    "AlreadyExists",
    "AuthError",
    "Cancelled",
    "DeadlineExceeded",
    "ExpiredToken",
    "InvalidCredentials",
    "InvalidMetadata",
    "InvalidToken",
    "NotFound",
    "ProviderNotEnabled",
    "StoreError",
    "WeakPassword",
]
