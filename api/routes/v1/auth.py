"""
api/routes/v1/auth.py -- Session token REST endpoints.

Routes:
  POST /api/v1/auth/login      -- password login; returns a bearer token
  POST /api/v1/auth/register   -- create a local account (201)
  GET  /api/v1/auth/me         -- current user (requires Bearer token)
  POST /api/v1/auth/refresh    -- exchange a token (expired allowed) for a new one
  POST /api/v1/auth/logout     -- revoke the presented token

Errors are raised as auth/ exceptions and converted to the JSON error
envelope by the handlers in api/main.py. Handlers are plain ``def`` so
FastAPI runs them in its thread pool; every store call is blocking.

Security:
  Login returns the same error for unknown username and wrong password
  (the provider guarantees it, including timing).
  Cache-Control: no-store on every response that carries a token.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from api.models import LoginRequest, LogoutResponse, RegisterRequest, TokenResponse, UserResponse
from auth.dependencies import DEFAULT_PROVIDER, bearer_token, get_current_user, get_registry, request_context
from auth.models import Credentials, UserProjection
from auth.registry import ProviderRegistry
from core.config import get_settings
from core.context import Context

# Auth policy:
# - POST /api/v1/auth/login:     public
# - POST /api/v1/auth/register:  public
# - GET  /api/v1/auth/me:        requires a valid, unrevoked token
# - POST /api/v1/auth/refresh:   requires a token; expired accepted, revoked/invalid not
# - POST /api/v1/auth/logout:    requires a token; expired accepted
router = APIRouter()


def _token_response(token: str, user: UserProjection | None = None, status_code: int = 200) -> JSONResponse:
    body = TokenResponse(
        access_token=token,
        expires_in=get_settings().token_expire_seconds,
        user=UserResponse.from_projection(user) if user is not None else None,
    )
    resp = JSONResponse(status_code=status_code, content=body.model_dump())
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/login", response_model=TokenResponse)
def login(
    body: LoginRequest,
    registry: ProviderRegistry = Depends(get_registry),
    ctx: Context = Depends(request_context),
) -> JSONResponse:
    provider = registry.require(body.provider)
    creds = Credentials(username=body.username, password=body.password, provider=body.provider)
    user = provider.authenticate(creds, ctx=ctx)
    token = provider.refresh_token("", user=user, ctx=ctx)
    return _token_response(token, user)


@router.post("/auth/register", response_model=UserResponse, status_code=201)
def register(
    body: RegisterRequest,
    registry: ProviderRegistry = Depends(get_registry),
    ctx: Context = Depends(request_context),
) -> UserResponse:
    provider = registry.require(DEFAULT_PROVIDER)
    user = provider.register(body.username, body.email, body.password, roles=("user",), metadata=body.metadata, ctx=ctx)
    return UserResponse.from_projection(user)


@router.get("/auth/me", response_model=UserResponse)
def me(user: UserProjection = Depends(get_current_user)) -> UserResponse:
    return UserResponse.from_projection(user)


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(
    token: str = Depends(bearer_token),
    registry: ProviderRegistry = Depends(get_registry),
    ctx: Context = Depends(request_context),
) -> JSONResponse:
    provider = registry.require(DEFAULT_PROVIDER)
    return _token_response(provider.refresh_token(token, ctx=ctx))


@router.post("/auth/logout", response_model=LogoutResponse)
def logout(
    token: str = Depends(bearer_token),
    registry: ProviderRegistry = Depends(get_registry),
    ctx: Context = Depends(request_context),
) -> LogoutResponse:
    provider = registry.require(DEFAULT_PROVIDER)
    revoked = provider.revoke_token(token, ctx=ctx)
    message = "Logged out." if revoked else "Logged out; token remains valid until it expires."
    return LogoutResponse(message=message, revoked=revoked)
