from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import structlog
import time

from eventpulse.core.config import settings
from eventpulse.core.container import build_services
from eventpulse.core.errors import AnalyticsError, ClientInputError
from eventpulse.api import ai, analytics, events, realtime

# Configure structured logging
structlog.configure(
    processors=[
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer()
    ]
)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle events"""
    logger.info("application_startup", app_name=settings.app_name)

    # Tests install their own container before startup
    owns_services = getattr(app.state, "services", None) is None
    if owns_services:
        app.state.services = await build_services(settings)

    yield

    if owns_services:
        await app.state.services.close()
    logger.info("application_shutdown")


app = FastAPI(
    title=settings.app_name,
    debug=settings.debug,
    lifespan=lifespan
)


# Middleware for logging requests
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()

    response = await call_next(request)

    duration = time.time() - start_time
    logger.info(
        "request_completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(duration * 1000, 2)
    )

    return response


@app.exception_handler(AnalyticsError)
async def analytics_error_handler(request: Request, exc: AnalyticsError):
    logger.warning(
        "request_failed",
        path=request.url.path,
        kind=exc.kind,
        status_code=exc.status_code,
        message=exc.message
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {"loc": (), "msg": "Invalid request"}
    # Drop the leading "body"/"query" marker so the field reads like the payload
    loc = [str(part) for part in first.get("loc", ())]
    if loc and loc[0] in ("body", "query", "path", "header"):
        loc = loc[1:]
    error = ClientInputError(
        first.get("msg", "Invalid request"),
        field=".".join(loc) or None,
        details=[f"{'.'.join(str(p) for p in e.get('loc', ()))}: {e.get('msg')}" for e in errors]
    )
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("unhandled_error", path=request.url.path, error=repr(exc))
    return JSONResponse(
        status_code=500,
        content={"error": {"kind": "internal_error", "message": "Internal server error"}}
    )


# Include routers
app.include_router(events.router)
app.include_router(analytics.router)
app.include_router(ai.router)
app.include_router(realtime.router)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    services = getattr(app.state, "services", None)
    return {
        "status": "healthy",
        "app": settings.app_name,
        "cache": "redis" if services is not None and services.redis is not None else "memory",
        "realtime_clients": services.hub.connected_count if services is not None else 0
    }


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "EventPulse Analytics API",
        "endpoints": {
            "health": "/health",
            "events": f"{settings.api_prefix}/events",
            "analytics": f"{settings.api_prefix}/analytics",
            "ai": f"{settings.api_prefix}/ai",
            "realtime": "/ws",
            "docs": "/docs"
        }
    }
