"""Main FastAPI application"""

from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Optional
import logging
import time
import traceback
import uuid

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from inventory_backend.api.v1 import auth, notifications, realtime
from inventory_backend.config import Settings
from inventory_backend.core.exceptions import BaseAPIException, translate_integrity_error
from inventory_backend.runtime import Runtime
from inventory_backend.schemas.response import ErrorResponse

logger = logging.getLogger(__name__)

REQUEST_COUNT = Counter(
    "inventory_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "inventory_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)
CLEANUP_UP_GAUGE = Gauge("inventory_cleanup_scheduler_up", "Cleanup scheduler liveness (1 running, 0 stopped)")


def configure_logging(settings: Settings) -> None:
    """Configure root logging once: file handler plus stream handler"""
    log_file = settings.get_log_file()
    Path(log_file).parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler()
        ]
    )


def _error_body(request: Request, message: str, details=None) -> dict:
    return ErrorResponse(error=message, details=details, path=request.url.path).model_dump()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown of the runtime's database and background sweep"""
    runtime: Runtime = app.state.runtime
    logger.info(f"Starting {runtime.settings.APP_NAME} v{runtime.settings.APP_VERSION}")
    try:
        runtime.startup()
    except Exception as e:
        logger.error(f"Failed to start runtime: {e}")
        raise
    CLEANUP_UP_GAUGE.set(1 if runtime.cleanup.is_running() else 0)
    yield
    runtime.shutdown()
    CLEANUP_UP_GAUGE.set(0)
    logger.info(f"Shutting down {runtime.settings.APP_NAME}")


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """
    Build the application around a runtime

    Args:
        runtime: Service graph to serve; a default one is built from env settings

    Returns:
        Configured FastAPI app
    """
    runtime = runtime or Runtime()
    settings = runtime.settings
    configure_logging(settings)

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        debug=settings.DEBUG,
        docs_url="/api/docs" if settings.DEBUG else None,
        redoc_url="/api/redoc" if settings.DEBUG else None,
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    # GZip compression for large responses
    app.add_middleware(GZipMiddleware, minimum_size=500)

    # CORS middleware; credentials are needed for the auth cookies
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_headers_and_timing(request: Request, call_next):
        """Add security headers and log slow requests"""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        start = time.time()
        response = await call_next(request)
        duration = time.time() - start

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["X-Request-ID"] = request_id

        REQUEST_COUNT.labels(request.method, request.url.path, str(response.status_code)).inc()
        REQUEST_LATENCY.labels(request.method, request.url.path).observe(duration)

        if duration > 1.0:
            logger.warning(
                "Slow request: %s %s took %.2fs request_id=%s",
                request.method,
                request.url.path,
                duration,
                request_id,
            )
        return response

    @app.exception_handler(BaseAPIException)
    async def api_exception_handler(request: Request, exc: BaseAPIException):
        """Handle custom API exceptions"""
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            f"API Exception: {exc.message}",
            extra={
                "status_code": exc.status_code,
                "details": exc.details,
                "path": request.url.path,
                "method": request.method
            }
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(request, exc.message, exc.details),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle Pydantic validation errors"""
        errors = []
        for error in exc.errors():
            errors.append({
                "field": ".".join(str(loc) for loc in error["loc"]),
                "message": error["msg"],
                "type": error["type"]
            })

        logger.warning(
            f"Validation error: {errors}",
            extra={"path": request.url.path, "method": request.method}
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=_error_body(request, "Validation failed", errors),
        )

    @app.exception_handler(IntegrityError)
    async def integrity_exception_handler(request: Request, exc: IntegrityError):
        """Translate constraint violations into the API error taxonomy"""
        translated = translate_integrity_error(exc)
        logger.warning(
            f"Integrity error: {exc.orig}",
            extra={"path": request.url.path, "method": request.method}
        )
        return JSONResponse(
            status_code=translated.status_code,
            content=_error_body(request, translated.message, translated.details),
        )

    @app.exception_handler(SQLAlchemyError)
    async def database_exception_handler(request: Request, exc: SQLAlchemyError):
        """Handle database errors"""
        logger.error(
            f"Database error: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "traceback": traceback.format_exc()
            }
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=_error_body(request, "A database error occurred. Please try again later."),
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle all other exceptions"""
        logger.critical(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "traceback": traceback.format_exc()
            }
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=_error_body(request, "An unexpected error occurred. Our team has been notified."),
        )

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        db_ok = True
        db_error = None
        db = runtime.session_factory()
        try:
            db.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            db_ok = False
            db_error = str(exc)
        finally:
            db.close()

        scheduler = runtime.cleanup.status()
        CLEANUP_UP_GAUGE.set(1 if scheduler["running"] else 0)
        return {
            "status": "healthy" if db_ok else "degraded",
            "version": settings.APP_VERSION,
            "timestamp": datetime.utcnow().isoformat(),
            "readiness": {
                "database": {"ok": db_ok, "error": db_error},
                "cleanup_scheduler": scheduler,
                "live_connections": len(runtime.registry),
            },
        }

    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics endpoint."""
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    prefix = settings.API_PREFIX
    app.include_router(auth.router, prefix=f"{prefix}/auth", tags=["Authentication"])
    app.include_router(notifications.router, prefix=f"{prefix}/notifications", tags=["Notifications"])
    app.include_router(realtime.router, prefix=prefix, tags=["Realtime"])
    return app


app = create_app()
