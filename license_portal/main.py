"""
Main Application - FastAPI application setup.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse
from prometheus_client import generate_latest
from sqlalchemy import select
from starlette.middleware.base import BaseHTTPMiddleware

from license_portal.api.admin_routes import router as admin_router
from license_portal.api.auth_routes import router as auth_router
from license_portal.api.chat_routes import router as chat_router
from license_portal.api.client_routes import router as client_router
from license_portal.api.dependencies import get_session_tokens
from license_portal.api.payment_routes import router as payment_router
from license_portal.api.reseller_routes import router as reseller_router
from license_portal.api.routes import router
from license_portal.api.status_routes import router as status_router
from license_portal.config import settings
from license_portal.db.migration_runner import run_migrations
from license_portal.db.models import User
from license_portal.db.session import close_engines, get_write_session_factory
from license_portal.models.domain import PrincipalKind
from license_portal.observability import get_logger, metrics, setup_logging, setup_tracing
from license_portal.observability.logging import log_context
from license_portal.observability.tracing import instrument_fastapi
from license_portal.services import fingerprint
from license_portal.services.bootstrap import bootstrap

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Applies migrations and seeds the bootstrap admin, catalog and guest
    policy before the first request.
    """
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
    )

    if settings.run_migrations_on_startup:
        await asyncio.to_thread(run_migrations)

    async with get_write_session_factory()() as session:
        await bootstrap(session)

    yield

    logger.info("application_shutting_down")
    await close_engines()
    logger.info("database_engines_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Log validation errors and return them in a JSON-safe shape."""
    sanitized_errors = []
    for error in exc.errors():
        sanitized = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
        }
        # ctx may hold exception instances
        if "ctx" in error:
            sanitized["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        sanitized_errors.append(sanitized)

    # Request bodies carry passwords, so only the error locations are logged
    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=[{"loc": e["loc"], "type": e["type"]} for e in sanitized_errors],
    )
    return JSONResponse(status_code=422, content={"detail": sanitized_errors})


# Setup tracing
setup_tracing()
instrument_fastapi(app)


class DeviceFingerprintMiddleware(BaseHTTPMiddleware):
    """
    Sign out regular users who navigate to a page from another device.

    API routes and auth pages are never checked; staff and guests are exempt.
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        if request.method != "GET" or fingerprint.is_exempt_path(request.url.path):
            return await call_next(request)

        token = request.cookies.get(settings.session_cookie_name)
        claims = get_session_tokens().verify(token) if token else None
        if claims is None or claims.kind != PrincipalKind.USER:
            return await call_next(request)

        async with get_write_session_factory()() as session:
            result = await session.execute(select(User).where(User.username == claims.username))
            user = result.scalar_one_or_none()

        user_agent = request.headers.get("user-agent")
        if (
            user is not None
            and fingerprint.applies_to(user.role_enum, user.is_bootstrap)
            and not fingerprint.matches(user.device_fingerprint, user_agent)
        ):
            logger.warning("device_changed", username=user.username, path=request.url.path)
            response = RedirectResponse(fingerprint.DEVICE_CHANGED_REDIRECT, status_code=303)
            response.delete_cookie(settings.session_cookie_name)
            return response

        return await call_next(request)


class ProxyHeadersMiddleware(BaseHTTPMiddleware):
    """Trust X-Forwarded-Proto from the reverse proxy."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        forwarded_proto = request.headers.get("X-Forwarded-Proto")
        if forwarded_proto:
            request.scope["scheme"] = forwarded_proto
        return await call_next(request)


app.add_middleware(DeviceFingerprintMiddleware)
app.add_middleware(ProxyHeadersMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log all HTTP requests with timing."""
    start_time = time.time()
    request_id = request.headers.get("X-Request-ID", "unknown")
    endpoint = request.url.path
    method = request.method

    logger.info("request_started", method=method, path=endpoint, request_id=request_id)
    metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).inc()

    try:
        with log_context(request_id=request_id):
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


# Register routes
app.include_router(auth_router)
app.include_router(router)
app.include_router(admin_router)
app.include_router(reseller_router)
app.include_router(client_router)
app.include_router(payment_router)
app.include_router(chat_router)
app.include_router(status_router)


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
    """Prometheus metrics in text format."""
    return PlainTextResponse(generate_latest())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "license_portal.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
