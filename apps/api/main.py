"""
Credit Engine - FastAPI Backend
Credit ledger, generation quotas and payment webhooks.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from config import settings, validate_billing_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    billing,
    usage,
    referrals,
    webhooks,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Credit Engine API...")
    validate_billing_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    if settings.BILLING_WEBHOOKS_ENABLED:
        print("💳 Stripe webhook processing enabled.")
    else:
        print("💳 Stripe webhook processing disabled.")
    yield
    # Shutdown
    print("👋 Shutting down API...")


app = FastAPI(
    title="Credit Engine API",
    description="Credit ledger, usage rate limiting and payment webhook processing",
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
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(usage.router, prefix="/usage", tags=["Usage"])
app.include_router(referrals.router, prefix="/referrals", tags=["Referrals"])
app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Credit Engine API",
        "version": "0.1.0",
        "status": "running"
    }
