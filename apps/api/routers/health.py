"""
Health check endpoints.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
import redis.asyncio as redis

from config import provider_configuration, settings

router = APIRouter()


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Returns database, Redis and provider configuration status.
    """
    providers = provider_configuration()
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "fal": "configured" if providers["fal"] else "missing",
        "replicate": "configured" if providers["replicate"] else "missing",
        "artifact_storage": providers["artifact_storage"],
        "dispatch_mode": settings.PIPELINE_DISPATCH_MODE,
    }

    try:
        from database import engine

        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    try:
        r = redis.from_url(settings.REDIS_URL)
        try:
            await r.ping()
        finally:
            await r.aclose()
        health_status["redis"] = "up"
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"
        # Redis only matters for queued dispatch; rate limits fall back in-process.
        if settings.PIPELINE_DISPATCH_MODE == "rq":
            health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Ready once at least one try-on backend has credentials."""
    providers = provider_configuration()
    missing = []
    if not providers["fal"] and not providers["replicate"]:
        missing.append("FAL_KEY or REPLICATE_API_TOKEN")
    if providers["artifact_storage"] == "supabase" and not (settings.SUPABASE_URL and settings.SUPABASE_SERVICE_KEY):
        missing.append("SUPABASE_URL/SUPABASE_SERVICE_KEY")

    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Liveness probe."""
    return {"alive": True}
