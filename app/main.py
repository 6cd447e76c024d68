"""Telephony Core API - phone line lifecycle and usage metering.

This is the main entry point for the Telephony Core API.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.v1.router import api_router
from app.core.config import settings
from app.core.database import init_db
from app.core.errors import TelephonyError
from app.core.logging import logger, setup_logging
from app.services.background_tasks import (
    cancel_all_tasks,
    start_invalidation_listener,
    start_maintenance,
)
from app.services.redis_service import close_redis, init_redis


def get_cors_headers(request: Request) -> dict:
    """Get CORS headers based on request origin."""
    origin = request.headers.get("origin", "")
    if origin in settings.cors_origins:
        return {
            "Access-Control-Allow-Origin": origin,
            "Access-Control-Allow-Credentials": "true",
            "Access-Control-Allow-Methods": "*",
            "Access-Control-Allow-Headers": "*",
        }
    return {}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    setup_logging()
    logger.info("Starting Telephony Core API", version="1.0.0", env=settings.app_env)

    await init_db()
    logger.info("Database initialized")

    await init_redis()
    start_invalidation_listener()
    start_maintenance()

    yield

    # Shutdown
    logger.info("Shutting down Telephony Core API")
    await cancel_all_tasks()
    await close_redis()


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    description="""
## Telephony Core API

Phone line lifecycle and usage metering for voice assistants.

### Key Features
- **Number Lifecycle**: Connect, disconnect and renew carrier numbers per tenant
- **Inbound Routing**: Attach an assistant, notification channels and functions to a line
- **Usage Metering**: Per-minute billing with free-minute allowances and an idempotent ledger
- **Call History**: Paginated, tenant-scoped call records with stable pages
- **Notifications**: Call summaries and function results to Telegram, SMS and webhooks

### Authentication
Dashboard endpoints require a Bearer token; carrier webhooks require an API key.
    """,
    version="1.0.0",
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    openapi_url="/openapi.json" if settings.debug else None,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["*"],
)


# Domain errors (conflict, not found, insufficient funds, upstream...)
@app.exception_handler(TelephonyError)
async def telephony_exception_handler(request: Request, exc: TelephonyError):
    """Turn typed service errors into structured JSON."""
    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "request_failed",
        path=request.url.path,
        method=request.method,
        kind=exc.kind,
        error=exc.message,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers=get_cors_headers(request),
    )


# HTTP exception handler (4xx errors)
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with CORS headers."""
    cors_headers = get_cors_headers(request)
    headers = {**(exc.headers or {}), **cors_headers}
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
        headers=headers,
    )


# Global exception handler (5xx errors)
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions."""
    logger.error(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        exc_info=True,
    )

    # Get CORS headers for the response
    cors_headers = get_cors_headers(request)

    # Don't expose internal errors in production
    if settings.is_production:
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
            headers=cors_headers,
        )

    return JSONResponse(
        status_code=500,
        content={"detail": str(exc)},
        headers=cors_headers,
    )


# Include API router
app.include_router(api_router, prefix=settings.api_v1_prefix)


# Root endpoint
@app.get("/")
async def root():
    """Root endpoint - basic API info."""
    return {
        "name": settings.app_name,
        "version": "1.0.0",
        "status": "operational",
        "docs": "/docs" if settings.debug else None,
    }


# Simple health check for the load balancer (no DB required)
@app.get("/health")
async def health():
    """Simple health check for load balancer."""
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
        log_level="debug" if settings.debug else "info",
    )
