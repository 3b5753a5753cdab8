"""
Trayve Studio - FastAPI Backend
AI fashion generation pipeline: credits, try-on step chains and status polling.
"""

from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import health, auth, credits, pipeline
from services.pipeline import recover_stalled_executions


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Trayve Studio API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    try:
        recovered = await recover_stalled_executions()
        if recovered:
            print(f"♻️ Recovered {recovered} stalled pipeline executions after startup.")
    except Exception as exc:
        print(f"⚠️ Stalled execution recovery skipped: {exc}")
    print(f"🧵 Pipeline dispatch mode: {settings.PIPELINE_DISPATCH_MODE}")
    yield
    # Shutdown
    print("👋 Shutting down API...")


app = FastAPI(
    title="Trayve Studio API",
    description="Virtual try-on generation pipeline with an upfront-charge credit ledger",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(auth.router, prefix="/auth", tags=["Authentication"])
app.include_router(credits.router, prefix="/credits", tags=["Credits"])
app.include_router(pipeline.router, prefix="/pipeline", tags=["Pipeline"])

if settings.ARTIFACT_STORAGE_BACKEND == "local":
    artifact_dir = Path(settings.ARTIFACT_LOCAL_DIR)
    artifact_dir.mkdir(parents=True, exist_ok=True)
    app.mount("/artifacts", StaticFiles(directory=str(artifact_dir)), name="artifacts")


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Trayve Studio API",
        "version": "0.1.0",
        "status": "running"
    }
