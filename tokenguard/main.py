"""
Main Application - FastAPI application setup.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from tokenguard.api.dependencies import install_services
from tokenguard.api.routes import router
from tokenguard.config import settings
from tokenguard.db.ledger_store import LedgerStore, SqlLedgerStore
from tokenguard.db.memory_store import InMemoryLedgerStore
from tokenguard.db.migration_runner import run_migrations
from tokenguard.db.session import dispose_engine
from tokenguard.exceptions import (
    FieldTooLongError,
    GuardError,
    InsufficientTokensError,
    LedgerConflictError,
    ProviderError,
    ProviderTimeoutError,
    TooManyRewardsError,
    UnknownModelError,
)
from tokenguard.models.api import ErrorResponse
from tokenguard.observability import (
    get_logger,
    log_context,
    metrics,
    setup_logging,
    setup_tracing,
)
from tokenguard.observability.tracing import instrument_fastapi, shutdown_tracing
from tokenguard.services.model_catalog import build_model_catalog
from tokenguard.services.model_provider import OpenAICompatibleProvider
from tokenguard.services.usage_guard import drain_pending_settlements

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def _build_ledger_store() -> LedgerStore:
    if settings.ledger_backend == "memory":
        logger.warning("ledger_backend_in_memory", detail="balances are lost on restart")
        return InMemoryLedgerStore()
    return SqlLedgerStore()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Startup: migrations, model catalog, ledger store, provider client, refund
    recovery loop.
    Shutdown: settle in-flight chat requests, sweep deferred refunds, close
    clients and engines.
    """
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        ledger_backend=settings.ledger_backend,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
    )

    if settings.ledger_backend == "postgres" and settings.run_migrations_on_startup:
        await asyncio.to_thread(run_migrations)

    catalog = build_model_catalog(settings)
    provider = OpenAICompatibleProvider(
        settings.provider_base_url,
        settings.provider_api_key,
        timeout_seconds=settings.provider_timeout_seconds,
    )
    install_services(app.state, catalog, _build_ledger_store(), provider)
    recovery = app.state.refund_recovery
    recovery_task = asyncio.create_task(recovery.run())

    yield

    logger.info("application_shutting_down")
    await drain_pending_settlements()
    recovery_task.cancel()
    try:
        await recovery_task
    except asyncio.CancelledError:
        pass
    try:
        await recovery.sweep()
    except Exception as e:
        logger.error("refund_recovery_shutdown_sweep_failed", error=str(e), exc_info=True)
    await provider.close()
    await dispose_engine()
    logger.info("database_engines_closed")
    shutdown_tracing()


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


# ============================================================================
# Error Handlers
# ============================================================================


def _status_for(exc: GuardError) -> int:
    if isinstance(exc, FieldTooLongError):
        return 413
    if isinstance(exc, UnknownModelError):
        return 400
    if isinstance(exc, InsufficientTokensError):
        return 403
    if isinstance(exc, ProviderTimeoutError):
        return 504
    if isinstance(exc, ProviderError):
        return 502
    if isinstance(exc, TooManyRewardsError):
        return 429
    if isinstance(exc, LedgerConflictError):
        return 503
    return 500


def _body_for(exc: GuardError) -> ErrorResponse:
    if isinstance(exc, FieldTooLongError):
        return ErrorResponse(error="Input too large", details=str(exc))
    if isinstance(exc, InsufficientTokensError):
        return ErrorResponse(
            error="insufficient tokens",
            details=str(exc),
            balance=exc.balance,
            required=exc.required,
        )
    if isinstance(exc, UnknownModelError):
        return ErrorResponse(error="unknown model", details=str(exc))
    if isinstance(exc, ProviderError):
        return ErrorResponse(error="model provider unavailable", details=str(exc), retryable=True)
    if isinstance(exc, TooManyRewardsError):
        return ErrorResponse(error="too many ad rewards", details=str(exc))
    if isinstance(exc, LedgerConflictError):
        return ErrorResponse(error="balance busy", details=str(exc), retryable=True)
    return ErrorResponse(error="internal error", retryable=exc.retryable or None)


@app.exception_handler(GuardError)
async def guard_exception_handler(request: Request, exc: GuardError) -> JSONResponse:
    """Render guard errors as `{error, ...}` bodies."""
    status_code = _status_for(exc)
    metrics.record_error(type(exc).__name__, request.url.path)

    log = logger.error if status_code >= 500 else logger.warning
    log(
        "guard_error",
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
        status_code=status_code,
        error=str(exc),
    )

    body = _body_for(exc)
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(by_alias=True, exclude_none=True),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Log detailed validation errors for debugging."""
    errors = exc.errors()

    # Sanitize errors for JSON serialization (ctx may contain non-serializable objects)
    sanitized_errors = []
    for error in errors:
        sanitized = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
        }
        if "ctx" in error:
            sanitized["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        sanitized_errors.append(sanitized)

    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=sanitized_errors,
    )
    return JSONResponse(
        status_code=422,
        content={"detail": sanitized_errors},
    )


# Setup tracing
setup_tracing()
instrument_fastapi(app)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request logging middleware
@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log every request with timing; every event inside carries the request id."""
    start_time = time.perf_counter()
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex
    endpoint = request.url.path
    method = request.method

    with log_context(request_id=request_id):
        logger.info("request_started", method=method, path=endpoint)
        metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).inc()

        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.perf_counter() - start_time
            metrics.record_http_request(endpoint, method, 500, duration)
            metrics.record_error(type(e).__name__, "http_request")
            logger.error(
                "request_failed",
                method=method,
                path=endpoint,
                error=str(e),
                duration_seconds=duration,
                exc_info=True,
            )
            raise
        finally:
            metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).dec()

        duration = time.perf_counter() - start_time
        metrics.record_http_request(endpoint, method, response.status_code, duration)
        logger.info(
            "request_completed",
            method=method,
            path=endpoint,
            status_code=response.status_code,
            duration_seconds=duration,
        )

    response.headers[REQUEST_ID_HEADER] = request_id
    return response


# Register routes
app.include_router(router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


@app.get("/metrics", include_in_schema=False)
async def metrics_endpoint() -> Response:
    """Prometheus text exposition (404 when METRICS_ENABLED is false)."""
    if not settings.metrics_enabled:
        return PlainTextResponse("metrics disabled", status_code=404)
    return PlainTextResponse(generate_latest(), media_type=CONTENT_TYPE_LATEST)


def main() -> None:
    """Run the API with uvicorn."""
    import uvicorn

    uvicorn.run(
        "tokenguard.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
