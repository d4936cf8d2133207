"""
api/main.py -- FastAPI application entry point for Cardinal.

Exposes the provisioning orchestrator over HTTP so CI pipelines can create
containers and fetch their credentials with a single webhook call.

Run with:  uvicorn api.main:app
           python main.py serve

Middleware stack (outermost to innermost):
  1. log_requests       -- method, path, status, latency, client
  2. SlowAPIMiddleware  -- enforces per-route rate limits from api.limiter

Lifespan builds the service graph on startup (vault, store, hypervisor
client, reconciler, orchestrator) and starts the periodic reconcile sweep.
Shutdown cancels the sweep, pending address lookups and closes the store.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, FieldError, HealthResponse
from api.routes.v1.webhook import router as webhook_router
from core.config import get_settings
from core.errors import (
    AuthenticationError,
    CardinalError,
    NotFoundError,
    NotReadyError,
    ValidationError,
)
from provisioning.bootstrap import build_services

API_VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("cardinal.api")

# ---------------------------------------------------------------------------
# Background reconcile task
# ---------------------------------------------------------------------------


async def _reconcile_loop(app: FastAPI, interval: float) -> None:
    """Retry address resolution for records still in "creating".

    The sweep itself is blocking (hypervisor HTTP calls, a grace sleep per
    record), so it runs in a worker thread. CancelledError from shutdown
    propagates out of asyncio.sleep and ends the loop.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            resolved = await asyncio.to_thread(app.state.reconciler.sweep)
        except Exception:
            logger.exception("Reconcile sweep failed")
            continue
        if resolved:
            logger.info("Reconcile sweep resolved %d container(s)", resolved)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the service graph on startup and tear it down on shutdown."""
    logger.info("Cardinal API starting up")
    settings = get_settings()
    app.state.settings = settings
    if not settings.webhook_secret:
        logger.warning("WEBHOOK_SECRET is not set -- webhook routes will refuse every request")

    services = build_services(settings)
    app.state.services = services
    app.state.orchestrator = services.orchestrator
    app.state.store = services.store
    app.state.reconciler = services.reconciler
    logger.info(
        "Services initialized (hypervisor=%s node=%s)",
        settings.proxmox_host,
        settings.proxmox_node,
    )
    app.state.reconcile_task = asyncio.create_task(
        _reconcile_loop(app, settings.reconcile_interval_seconds)
    )

    yield

    app.state.reconcile_task.cancel()
    with suppress(asyncio.CancelledError):
        await app.state.reconcile_task
    services.close()
    logger.info("Cardinal API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Cardinal API",
    description="Container provisioning webhooks for CI pipelines.",
    version=API_VERSION,
    lifespan=lifespan,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPIMiddleware looks the limiter up on app.state by convention.
app.state.limiter = limiter


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

app.include_router(webhook_router, tags=["Webhook"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so CI scripts can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(
    status_code: int,
    code: str,
    message: str,
    detail: Optional[str] = None,
    fields: Optional[list[FieldError]] = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(
            error=ErrorDetail(code=code, message=message, detail=detail, fields=fields)
        ).model_dump(exclude_none=True),
    )


def _debug(request: Request) -> bool:
    settings = getattr(request.app.state, "settings", None)
    return bool(settings and settings.debug)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a Retry-After header when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "rate_limited", "Too many requests.", detail=str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with one entry per failed field."""
    fields = []
    for err in exc.errors():
        # loc is ("body", "hostname") for body fields; drop the location prefix.
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        fields.append(FieldError(field=".".join(loc) or "body", message=err.get("msg", "invalid")))
    return _error(400, "validation_error", "Request validation failed.", fields=fields)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for FastAPI/Starlette HTTP exceptions.

    auth/dependencies.py raises with detail as a dict; use it directly as the
    error field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.detail},
        )
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(ValidationError)
async def domain_validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return _error(400, "validation_error", str(exc))


@app.exception_handler(AuthenticationError)
async def authentication_handler(request: Request, exc: AuthenticationError) -> JSONResponse:
    # Same body for a missing and a wrong secret.
    return _error(401, "unauthorized", "Unauthorized.")


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return _error(404, "not_found", str(exc))


@app.exception_handler(NotReadyError)
async def not_ready_handler(request: Request, exc: NotReadyError) -> JSONResponse:
    return _error(409, "not_ready", str(exc))


@app.exception_handler(CardinalError)
async def cardinal_error_handler(request: Request, exc: CardinalError) -> JSONResponse:
    """Hypervisor, store and vault failures behind a provisioning call.

    The exception text can carry hypervisor hostnames and task ids, so it
    only reaches the client in debug mode.
    """
    logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
    if _debug(request):
        return _error(502, "provisioning_failed", str(exc), detail=repr(exc.__cause__) if exc.__cause__ else None)
    return _error(502, "provisioning_failed", "Container provisioning failed.")


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors.

    The traceback goes to the log only. The client sees a generic message
    unless DEBUG is on.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    message = str(exc) if _debug(request) else "An unexpected error occurred."
    return _error(500, "internal_error", message)


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined here rather than in a router so it is reachable regardless of
# router registration state. No auth and no rate limit.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and database reachability."""
    store = getattr(request.app.state, "store", None)
    database = "ok" if store is not None and store.ping() else "error"
    return HealthResponse(version=API_VERSION, components={"app": "ok", "database": database})
