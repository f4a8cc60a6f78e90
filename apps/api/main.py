"""
Avatar Studio - FastAPI Backend
Generation entitlement, payment reconciliation and moderation API.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import health, generation, payments, admin
from services.usage_ledger import recover_stalled_attempts


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Avatar Studio API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except (SQLAlchemyError, OSError) as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    try:
        recovered = await recover_stalled_attempts(int(settings.PENDING_ATTEMPT_TIMEOUT_MINUTES))
        if recovered:
            print(f"♻️ Marked {recovered} interrupted generation attempts as failed after startup.")
    except (SQLAlchemyError, OSError) as exc:
        print(f"⚠️ Stalled generation recovery skipped: {exc}")
    yield
    # Shutdown
    await engine.dispose()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Avatar Studio API",
    description="Metered AI image generation with free tiers and prepaid credits",
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
app.include_router(generation.router, prefix="/generation", tags=["Generation"])
app.include_router(payments.router, prefix="/payments", tags=["Payments"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Avatar Studio API",
        "version": "0.1.0",
        "status": "running"
    }
