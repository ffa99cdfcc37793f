"""
api/main.py -- FastAPI application entry point for tokengate.

Run with:  uvicorn api.main:app

Lifespan handles startup (backends, provider, bootstrap admin, registry,
revocation sweep task) and shutdown (cancel sweep task, dispose the engine)
symmetrically.

Every error leaves the app in one envelope:
    {"error": {"code": "...", "message": "...", "detail": ...}}
auth/ exceptions are mapped to status codes by class in _STATUS_BY_ERROR;
backend failures become a generic 500 with the cause logged, never returned.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.errors import (
    AlreadyExists,
    AuthError,
    Cancelled,
    ExpiredToken,
    InvalidCredentials,
    InvalidMetadata,
    InvalidToken,
    NotFound,
    ProviderNotEnabled,
    StoreError,
    WeakPassword,
)
from auth.factory import build_backends, build_provider, build_registry, seed_admin
from core.config import get_settings

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("tokengate.api")

# ---------------------------------------------------------------------------
# Background sweep task
# ---------------------------------------------------------------------------


async def _sweep_loop(app: FastAPI, interval: int) -> None:
    """Remove expired revocation records every ``interval`` seconds.

    The sweep is blocking (SQL round-trip or lock), so it runs in a worker
    thread. A failed sweep is logged and retried on the next tick; stale
    records already read as "not revoked", so a missed sweep only costs space.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(app.state.backends.revocation_store.sweep_expired)
        except StoreError:
            logger.exception("Revocation sweep failed")
        except Exception:
            logger.exception("Unexpected error in revocation sweep")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    logging.getLogger("tokengate").setLevel(settings.log_level.upper())
    logger.info("tokengate API starting up")

    backends = build_backends(settings)
    provider = build_provider(settings, backends)
    seed_admin(settings, provider)
    app.state.backends = backends
    app.state.registry = build_registry(provider)
    logger.info(
        "Auth initialized (backend=%s, providers=%s, revocation=%s)",
        backends.kind,
        app.state.registry.names(),
        provider.supports_revocation,
    )
    app.state.sweep_task = asyncio.create_task(_sweep_loop(app, settings.revocation_sweep_seconds))

    yield

    app.state.sweep_task.cancel()
    with suppress(asyncio.CancelledError):
        await app.state.sweep_task
    backends.close()
    logger.info("tokengate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="tokengate",
    description="Issue, validate, refresh and revoke bearer session tokens.",
    version=__version__,
    lifespan=lifespan,
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------

# Most specific class first; the first isinstance() match wins.
_STATUS_BY_ERROR: tuple[tuple[type[AuthError], int], ...] = (
    (InvalidCredentials, 401),
    (InvalidToken, 401),
    (ExpiredToken, 401),
    (AlreadyExists, 409),
    (WeakPassword, 400),
    (InvalidMetadata, 400),
    (NotFound, 404),
    (ProviderNotEnabled, 404),
)


def _error_response(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map auth/ errors onto HTTP status codes.

    StoreError and any unmapped AuthError are server errors: the cause is
    logged, the client gets a generic message.
    """
    for error_cls, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_cls):
            resp = _error_response(status_code, exc.code, exc.message)
            if status_code == 401:
                resp.headers["WWW-Authenticate"] = "Bearer"
            return resp
    logger.error("Backend failure on %s %s: %s", request.method, request.url.path, exc.message, exc_info=exc)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


@app.exception_handler(Cancelled)
async def cancelled_handler(request: Request, exc: Cancelled) -> JSONResponse:
    logger.warning("Request %s %s gave up: %s", request.method, request.url.path, exc)
    return _error_response(503, exc.code, "The request timed out. Try again.")


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error_response(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for FastAPI HTTP exceptions.

    Dependencies raise HTTPException with a dict detail; use it directly as
    the error field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is logged only, never written to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return API liveness, the storage backend, and the registered providers."""
    return HealthResponse(
        version=__version__,
        backend=request.app.state.backends.kind,
        providers=request.app.state.registry.names(),
    )
