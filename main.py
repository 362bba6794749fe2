"""
Storefront API entry point.
Composes the security pipeline at startup and mounts it in front of every route.
"""
import time
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from config import Settings, settings as default_settings
from middleware.pipeline import RequestPipeline
from middleware.security_middleware import SecurityPipelineMiddleware
from monitoring.logger import LogSink, configure_logging
from routers import security_dashboard
from security.security_monitoring_system import SecurityEventLog
from utils.exceptions import PipelineError

logger = logging.getLogger(__name__)


def build_event_log(app_settings: Settings) -> SecurityEventLog:
    sink = LogSink(
        log_dir=app_settings.log_dir,
        environment=app_settings.environment,
        file_logging=app_settings.file_logging_enabled,
        level=app_settings.log_level,
    )
    return SecurityEventLog(
        sink=sink,
        threshold=app_settings.suspicious_event_threshold,
        window_seconds=app_settings.suspicious_window_seconds,
        buffer_size=app_settings.event_buffer_size,
    )


def create_app(app_settings: Optional[Settings] = None, event_log: Optional[SecurityEventLog] = None) -> FastAPI:
    """Build the application with its own event log and pipeline instance."""
    app_settings = app_settings or default_settings
    app_settings.validate_production_security()
    configure_logging(app_settings.log_level)

    event_log = event_log or build_event_log(app_settings)
    pipeline = RequestPipeline.from_settings(app_settings, event_log)
    verbose = app_settings.show_error_details()

    # =========================================================================
    # LIFESPAN MANAGEMENT
    # =========================================================================

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"🚀 [STARTUP] {app_settings.app_name} v{app_settings.app_version} ({app_settings.environment})")
        ssrf = app_settings.get_ssrf_config()
        logger.info(f"🛡️ [STARTUP] Outbound allow-list: {', '.join(ssrf['allowed_domains'])}")
        event_log.sink.app(logging.INFO, "Application started", version=app_settings.app_version)
        yield
        logger.info("👋 [SHUTDOWN] Flushing security logs...")
        event_log.close()

    is_production = app_settings.is_production()
    app = FastAPI(
        title=app_settings.app_name,
        version=app_settings.app_version,
        lifespan=lifespan,
        docs_url=None if is_production else "/docs",
        redoc_url=None if is_production else "/redoc",
    )
    app.state.settings = app_settings
    app.state.event_log = event_log
    app.state.pipeline = pipeline

    # =========================================================================
    # EXCEPTION HANDLERS
    # =========================================================================

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError):
        logger.warning(f"⚠️ [ERROR] {request.method} {request.url.path}: {exc.to_dict()}")
        return JSONResponse(exc.to_response(verbose), status_code=exc.status_code, headers=exc.headers or None)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            {"success": False, "message": str(exc.detail)},
            status_code=exc.status_code,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        body = {"success": False, "message": "Invalid request format"}
        if verbose:
            body["error"] = str(exc.errors())
        return JSONResponse(body, status_code=400)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(f"❌ [ERROR] Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
        body = {"success": False, "message": "Internal server error"}
        if verbose:
            body["error"] = str(exc)
        return JSONResponse(body, status_code=500)

    # =========================================================================
    # ROUTES
    # =========================================================================

    @app.get("/health")
    async def health():
        """Simple health check - must always work."""
        return {"status": "healthy", "timestamp": time.time(), "environment": app_settings.environment}

    app.include_router(security_dashboard.router)

    # =========================================================================
    # MIDDLEWARE (last added = outermost)
    # =========================================================================

    app.add_middleware(
        SecurityPipelineMiddleware,
        pipeline=pipeline,
        security_headers=app_settings.get_security_headers() if app_settings.security_headers_enabled else {},
    )
    logger.info("✅ [MW] Security pipeline added")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        max_age=86400,
    )
    logger.info(f"✅ [MW] CORS added with {len(app_settings.cors_origins)} origins")

    # Only configured proxies may rewrite the client address.
    if app_settings.trusted_proxies:
        app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=app_settings.trusted_proxies)
        logger.info(f"✅ [MW] Proxy headers trusted from {', '.join(app_settings.trusted_proxies)}")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    # Forwarded headers are handled by the app from TRUSTED_PROXIES.
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=default_settings.is_development(), proxy_headers=False)
