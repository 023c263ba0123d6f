"""FastAPI application entry point for SpectraOps."""

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from .config import Settings, settings as default_settings
from .dashboard.auth import router as auth_router
from .dashboard.projects import router as projects_router
from .errors import SpectraOpsError, StorageError, ValidationError
from .receiver.endpoints import router as errors_router
from .receiver.rate_limit import RateLimiter, RateLimitMiddleware
from .storage.database import create_engine_from_settings, create_session_factory, create_tables, ping
from .tasks.sweeper import RetentionSweeper, SessionSweeper

REQUEST_ID_HEADER = "X-Request-Id"

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
}
CONTENT_SECURITY_POLICY = "default-src 'none'; frame-ancestors 'none'"


def configure_logging(settings: Settings) -> None:
    """Configure structlog with JSON output on top of stdlib logging."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(message)s",
    )


logger = structlog.get_logger(__name__)


class RequestIdMiddleware(BaseHTTPMiddleware):
    """
    Tag every request with an id and turn unhandled failures into a generic 500.

    The id comes from the ``X-Request-Id`` header or a fresh UUID4, is bound
    into structlog contextvars for the duration of the request and echoed on
    the response.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        structlog.contextvars.bind_contextvars(request_id=request_id)
        logger.info("request_received", method=request.method, path=request.url.path)

        try:
            response = await call_next(request)
        except Exception:
            logger.exception("unhandled_error", method=request.method, path=request.url.path)
            response = JSONResponse(
                status_code=500,
                content={"status": "error", "message": "Internal server error", "request_id": request_id},
                headers=getattr(request.state, "rate_limit_headers", None),
            )
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds browser hardening headers to every response."""

    # The interactive docs pages load scripts and styles, so they keep no CSP.
    docs_paths = ("/docs", "/redoc", "/openapi.json")

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers.update(SECURITY_HEADERS)
        if not request.url.path.startswith(self.docs_paths):
            response.headers["Content-Security-Policy"] = CONTENT_SECURITY_POLICY
        return response


async def spectraops_error_handler(request: Request, exc: SpectraOpsError) -> JSONResponse:
    if isinstance(exc, StorageError):
        logger.error("storage_error", path=request.url.path, error=str(exc.__cause__ or exc))
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {"field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"), "message": err.get("msg", "")}
        for err in exc.errors()
    ]
    error = ValidationError("Validation failed", details=details)
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"status": "error", "message": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the application.

    Everything that holds state (engine, session factory, rate limiter) is
    created here and stored on ``app.state`` so tests can build isolated apps.
    """
    settings = settings or default_settings
    configure_logging(settings)

    engine = create_engine_from_settings(settings)
    limiter = RateLimiter(
        max_requests=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "starting_spectraops",
            app_name=settings.app_name,
            host=settings.host,
            port=settings.port,
        )

        if settings.auto_create_tables:
            await create_tables(engine)

        if settings.rate_limit_enabled:
            await limiter.start_sweeper(settings.rate_limit_sweep_interval)

        sweepers = []
        if not settings.use_celery:
            sweepers = [
                RetentionSweeper(
                    app.state.session_factory,
                    retention_days=settings.error_retention_days,
                    interval_seconds=settings.retention_sweep_interval,
                ),
                SessionSweeper(
                    app.state.session_factory,
                    interval_seconds=settings.session_sweep_interval,
                ),
            ]
            for sweeper in sweepers:
                await sweeper.start()
        app.state.sweepers = sweepers

        yield

        logger.info("shutting_down_spectraops")

        for sweeper in sweepers:
            await sweeper.stop()
        await limiter.stop_sweeper()
        await engine.dispose()

    app = FastAPI(
        title="SpectraOps",
        description="Error tracking - receive SDK error batches and serve them to the dashboard",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = create_session_factory(engine)
    app.state.rate_limiter = limiter

    app.add_exception_handler(SpectraOpsError, spectraops_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)

    # Added innermost first: rate limit, request id, security headers, CORS outermost.
    if settings.rate_limit_enabled:
        app.add_middleware(RateLimitMiddleware, limiter=limiter, trust_proxy=settings.trust_proxy)

    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)

    cors_origins = settings.allowed_cors_origins if settings.allowed_cors_origins else []
    if settings.debug and not cors_origins:
        cors_origins = ["*"]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "x-api-key", REQUEST_ID_HEADER],
        expose_headers=[
            REQUEST_ID_HEADER,
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
        ],
    )

    app.include_router(errors_router, tags=["Errors"])
    app.include_router(auth_router, tags=["Auth"])
    app.include_router(projects_router, tags=["Projects"])

    @app.get("/health")
    async def health_check(request: Request):
        """Report whether the database answers."""
        if await ping(request.app.state.engine):
            return {"status": "ok", "db": "connected"}
        return JSONResponse(status_code=503, content={"status": "degraded", "db": "unreachable"})

    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics endpoint."""
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()


def main():
    """Run the application with uvicorn."""
    import uvicorn

    uvicorn.run(
        "spectraops.main:app",
        host=default_settings.host,
        port=default_settings.port,
        reload=default_settings.debug,
        log_level=default_settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
