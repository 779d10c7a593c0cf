"""
api/main.py -- FastAPI application entry point for passkeykit.

Exposes the four PasskeyService ceremonies over HTTP under /api/passkey.

Install deps:  pip install -e .
Run with:      uvicorn asgi:app --reload

Lifespan handles startup (settings, store, service, challenge sweep task) and
shutdown (cancel sweep task, close store) symmetrically.

Error contract:
  405 -- non-POST method on a ceremony path
  400 -- request body missing or failing validation (service never runs)
  500 -- any PasskeyError from the service, carrying its message and code
  500 -- anything else, with a generic message (details go to the log only)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.passkey import router as passkey_router
from core.config import get_settings
from core.errors import PasskeyError
from core.service import PasskeyService
from store.factory import open_store

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("passkeykit.api")

# ---------------------------------------------------------------------------
# Background challenge sweep
# ---------------------------------------------------------------------------


async def _sweep_loop(app: FastAPI, interval: float) -> None:
    """Remove expired challenges every `interval` seconds.

    The store call is synchronous, so it runs in a worker thread to keep the
    event loop free. CancelledError from task.cancel() during shutdown
    propagates out of asyncio.sleep and unwinds the coroutine.

    Lookups do not check expiry, so the loop must outlive a failing store:
    a PasskeyError is logged and the next iteration tries again.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            removed = await asyncio.to_thread(app.state.store.cleanup_expired_challenges)
        except PasskeyError:
            logger.exception("Challenge sweep failed; retrying in %ss", interval)
            continue
        if removed:
            logger.info("Swept %d expired challenge(s)", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Settings first -- validation refuses an in-memory store in production.
      2. Store second -- the service and the sweep task both reference it.
      3. Sweep task last -- references app.state.store.
    """
    logger.info("passkeykit API starting up")
    settings = get_settings()
    app.state.store = open_store(settings)
    app.state.passkey_service = PasskeyService.from_settings(settings, app.state.store)
    logger.info("Passkey service ready (rp_id=%s, origin=%s)", settings.rp_id, settings.origin)
    app.state.sweep_task = asyncio.create_task(_sweep_loop(app, settings.challenge_sweep_seconds))

    yield

    app.state.sweep_task.cancel()
    app.state.store.close()
    logger.info("passkeykit API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="passkeykit API",
    description="Passkey (WebAuthn) registration and authentication.",
    version=VERSION,
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


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


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(passkey_router, prefix="/api/passkey", tags=["Passkey"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(PasskeyError)
async def passkey_error_handler(request: Request, exc: PasskeyError) -> JSONResponse:
    """Every ceremony failure is a 500 carrying the failure's message.

    The code field still distinguishes the failure kind for clients that care.
    """
    logger.warning("%s %s failed: %s (%s)", request.method, request.url.path, exc, exc.code)
    return _error(500, exc.code, str(exc))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 when the request body is missing or fails validation."""
    return _error(400, "bad_request", "Request validation failed.", str(exc.errors()))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Structured error for router-level HTTP errors (404, 405)."""
    code = "method_not_allowed" if exc.status_code == 405 else f"http_{exc.status_code}"
    response = _error(exc.status_code, code, str(exc.detail))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
# ---------------------------------------------------------------------------


@app.get("/api/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version, and whether the store answers."""
    store_ok = request.app.state.store.is_healthy()
    return HealthResponse(
        status="healthy" if store_ok else "degraded",
        version=VERSION,
        components={"app": "ok", "store": "ok" if store_ok else "error"},
    )
