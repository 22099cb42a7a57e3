"""
Main Application - FastAPI application setup.
"""

import asyncio
import contextlib
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest
from starlette.middleware.base import BaseHTTPMiddleware

from credit_ledger.api.routes import router
from credit_ledger.config import settings
from credit_ledger.db.migration_runner import run_migrations
from credit_ledger.db.session import close_engines, get_session_factory
from credit_ledger.observability import get_logger, metrics, setup_logging, setup_tracing
from credit_ledger.observability.tracing import instrument_fastapi
from credit_ledger.services.archive_exporter import S3ArchiveExporter
from credit_ledger.services.generation_client import HttpGenerationClient
from credit_ledger.services.google_play_provider import GooglePlayProvider
from credit_ledger.services.operation_ledger import OperationLedger
from credit_ledger.services.purchase_verifier import PurchaseVerifier
from credit_ledger.services.push_dispatcher import PushDispatcher
from credit_ledger.services.reaper import Reaper
from credit_ledger.services.redis_client import close_redis, get_redis
from credit_ledger.services.token_cache import TokenCache
from credit_ledger.services.webhook_reconciler import PushTokenVerifier, WebhookReconciler

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)


def build_services(app: FastAPI, http_client: httpx.AsyncClient) -> None:
    """Wire the ledger services onto `app.state`."""
    session_factory = get_session_factory()

    token_cache: TokenCache | None = None
    if settings.GOOGLE_SERVICE_ACCOUNT:
        account = settings.service_account_info
        token_cache = TokenCache(
            redis=get_redis(),
            client_email=account["client_email"],
            private_key=account["private_key"],
            http_client=http_client,
            safety_margin_seconds=settings.token_safety_margin_seconds,
            timeout_seconds=settings.provider_timeout_seconds,
            token_uri=account.get("token_uri"),
        )
    else:
        logger.warning("google_service_account_missing", purchases_enabled=False)

    dispatcher = PushDispatcher(
        session_factory=session_factory,
        token_cache=token_cache,
        http_client=http_client,
        project_id=settings.FCM_PROJECT_ID,
        timeout_seconds=settings.push_timeout_seconds,
    )

    verifier: PurchaseVerifier | None = None
    if token_cache is not None and settings.ANDROID_PACKAGE_NAME:
        provider = GooglePlayProvider(
            token_cache=token_cache,
            http_client=http_client,
            package_name=settings.ANDROID_PACKAGE_NAME,
            timeout_seconds=settings.provider_timeout_seconds,
        )
        verifier = PurchaseVerifier(session_factory, provider, dispatcher)

    exporter: S3ArchiveExporter | None = None
    if settings.archive_s3_bucket:
        exporter = S3ArchiveExporter(
            bucket=settings.archive_s3_bucket,
            prefix=settings.archive_s3_prefix,
            region=settings.aws_region,
        )

    app.state.push_dispatcher = dispatcher
    app.state.purchase_verifier = verifier
    app.state.operation_ledger = OperationLedger(
        session_factory, dispatcher, timeout_seconds=settings.generation_timeout_seconds
    )
    app.state.generation_client = HttpGenerationClient(
        endpoint=settings.generation_endpoint,
        http_client=http_client,
        token_cache=token_cache,
    )
    app.state.webhook_reconciler = WebhookReconciler(
        session_factory=session_factory,
        verifier=PushTokenVerifier(
            audience=settings.PUBSUB_PUSH_AUDIENCE,
            service_account_email=settings.PUBSUB_PUSH_SERVICE_ACCOUNT,
        ),
        dispatcher=dispatcher,
        package_name=settings.ANDROID_PACKAGE_NAME,
    )
    app.state.reaper = Reaper(
        session_factory=session_factory,
        dispatcher=dispatcher,
        verifier=verifier,
        exporter=exporter,
        stuck_timeout_seconds=settings.stuck_timeout_seconds,
        retention_days=settings.retention_days,
        batch_size=settings.archive_batch_size,
        ack_max_attempts=settings.ack_max_attempts,
        interval_seconds=settings.reaper_interval_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    # Startup
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
        reaper_enabled=settings.reaper_enabled,
    )

    if settings.run_migrations_on_startup:
        await asyncio.to_thread(run_migrations, settings.database_url)

    http_client = httpx.AsyncClient(timeout=settings.provider_timeout_seconds)
    build_services(app, http_client)

    reaper_task: asyncio.Task[None] | None = None
    if settings.reaper_enabled:
        reaper_task = asyncio.create_task(app.state.reaper.run_forever())

    yield

    # Shutdown
    logger.info("application_shutting_down")
    if reaper_task is not None:
        reaper_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await reaper_task
    if app.state.purchase_verifier is not None:
        await app.state.purchase_verifier.drain()
    await app.state.push_dispatcher.drain()
    await http_client.aclose()
    await close_redis()
    await close_engines()
    logger.info("database_engines_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


# Add validation error logging handler
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Log detailed validation errors for debugging."""
    errors = exc.errors()

    # ctx may contain non-serializable objects
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


# Proxy headers middleware - trust X-Forwarded-* headers from the load balancer
class ProxyHeadersMiddleware(BaseHTTPMiddleware):
    """Middleware to handle X-Forwarded-* headers from reverse proxy."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        forwarded_proto = request.headers.get("X-Forwarded-Proto")
        if forwarded_proto:
            request.scope["scheme"] = forwarded_proto

        response = await call_next(request)
        return response


app.add_middleware(ProxyHeadersMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request logging middleware
@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log all HTTP requests with timing."""
    import time

    start_time = time.time()
    request_id = request.headers.get("X-Request-ID", "unknown")

    endpoint = request.url.path
    method = request.method
    metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).inc()

    try:
        response = await call_next(request)
        duration = time.time() - start_time

        metrics.record_http_request(endpoint, method, response.status_code, duration)

        logger.info(
            "request_completed",
            method=method,
            path=endpoint,
            status_code=response.status_code,
            duration_seconds=duration,
            request_id=request_id,
        )

        return response
    except Exception as e:
        duration = time.time() - start_time
        metrics.record_http_request(endpoint, method, 500, duration)
        metrics.record_error(type(e).__name__, "http_request")

        logger.error(
            "request_failed",
            method=method,
            path=endpoint,
            error=str(e),
            duration_seconds=duration,
            request_id=request_id,
            exc_info=True,
        )
        raise
    finally:
        metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).dec()


app.include_router(router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    return PlainTextResponse(generate_latest())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "credit_ledger.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
