"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

  get_registry()        the ProviderRegistry built in the app lifespan.
  request_context()     a Context bounded by REQUEST_TIMEOUT_SECONDS; every
                        store call made for the request carries it.
  bearer_token()        the raw token from "Authorization: Bearer <token>".
  get_current_user()    validates the bearer token with the local provider
                        and returns the UserProjection; 401 for a missing,
                        invalid, expired or revoked token, 404 when the
                        token is valid but its account no longer exists.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request

from auth.models import UserProjection
from auth.registry import ProviderRegistry
from core.config import get_settings
from core.context import Context

DEFAULT_PROVIDER = "local"


def get_registry(request: Request) -> ProviderRegistry:
    return request.app.state.registry


def request_context() -> Context:
    return Context(timeout=get_settings().request_timeout_seconds)


def bearer_token(request: Request) -> str:
    """Extract the bearer token. Raises HTTP 401 if the header is missing.

    The scheme is matched case-insensitively; a bare token without a scheme
    is accepted as well.
    """
    header = request.headers.get("Authorization", "").strip()
    if not header:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Missing Authorization header."},
        )
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return header


def get_current_user(
    token: str = Depends(bearer_token),
    registry: ProviderRegistry = Depends(get_registry),
    ctx: Context = Depends(request_context),
) -> UserProjection:
    """Require a valid bearer token.

    Provider errors (InvalidToken, ExpiredToken, NotFound) propagate to the
    app's exception handlers, which map them to 401 / 404.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: UserProjection = Depends(get_current_user)): ...
    """
    provider = registry.require(DEFAULT_PROVIDER)
    return provider.validate_token(token, ctx=ctx)
