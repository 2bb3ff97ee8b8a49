"""
FleetWatch - FastAPI Application

Fleet-tracking dashboard backend: proxies the tracking server, scopes data
to each user's devices, and streams reconciled live positions.
"""
from contextlib import asynccontextmanager
import logging
import structlog

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from fleetwatch.config import get_settings
from fleetwatch.database import get_session_context, init_db
from fleetwatch.exceptions import FleetWatchError, UpstreamError
from fleetwatch.routes import admin, auth, devices, history, stream
from fleetwatch.services.tracking_client import close_tracking_client
from fleetwatch.services.users import ensure_admin

settings = get_settings()

logging.basicConfig(format="%(message)s", level=settings.log_level.upper())

# Configure structured logging
structlog.configure(
    processors=[
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

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle: startup and shutdown."""
    # Startup
    logger.info("Starting FleetWatch", version=settings.app_version)
    await init_db()
    logger.info("Database initialized")

    if settings.bootstrap_admin_email and settings.bootstrap_admin_password:
        async with get_session_context() as db:
            await ensure_admin(
                db,
                settings.bootstrap_admin_email,
                settings.bootstrap_admin_password,
                settings.bootstrap_admin_name,
            )

    yield

    # Shutdown
    logger.info("Shutting down FleetWatch")
    await close_tracking_client()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Fleet tracking dashboard API",
    lifespan=lifespan,
)

# Login rate limiter lives with the auth routes
app.state.limiter = auth.limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Requested-With"],
)


# Include routers
app.include_router(auth.router)
app.include_router(devices.router)
app.include_router(history.router)
app.include_router(admin.router)
app.include_router(stream.router)


@app.get("/health")
async def health_check():
    """Health check endpoint for load balancers."""
    return {
        "status": "healthy",
        "version": settings.app_version,
    }


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
        "health": "/health",
    }


@app.exception_handler(FleetWatchError)
async def fleetwatch_exception_handler(request: Request, exc: FleetWatchError):
    """Render domain errors as {"error": kind, "detail": message}."""
    content = {"error": exc.kind, "detail": exc.message}
    if isinstance(exc, UpstreamError) and exc.body is not None:
        content["details"] = exc.body
    if exc.status_code >= 500:
        logger.warning("Request failed", path=request.url.path, error=exc.kind)
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler to prevent secret leakage."""
    logger.exception("Unhandled exception", path=request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "fleetwatch.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
