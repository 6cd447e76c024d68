"""Health check endpoints."""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.services.redis_service import get_redis

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    timestamp: str
    version: str
    database: str
    redis: str


@router.get("", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_db)) -> HealthResponse:
    """Health check endpoint.

    Verifies API is running and database is connected. Redis is optional;
    ``disabled`` means invalidations stay local to this worker.
    """
    db_status = "healthy"
    try:
        await db.execute(text("SELECT 1"))
    except Exception:
        db_status = "unhealthy"

    client = get_redis()
    redis_status = "disabled"
    if client is not None:
        try:
            await client.ping()
            redis_status = "healthy"
        except Exception:
            redis_status = "unhealthy"

    healthy = db_status == "healthy" and redis_status != "unhealthy"
    return HealthResponse(
        status="healthy" if healthy else "degraded",
        timestamp=datetime.now(timezone.utc).isoformat(),
        version="1.0.0",
        database=db_status,
        redis=redis_status,
    )


@router.get("/ready")
async def readiness_check() -> dict:
    """Readiness check for Kubernetes/Docker."""
    return {"ready": True}


@router.get("/live")
async def liveness_check() -> dict:
    """Liveness check for Kubernetes/Docker."""
    return {"alive": True}
