# src/donorguard/main.py
"""Main entry point for the DonorGuard application."""

from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from donorguard.api.middleware import ApiRateLimitMiddleware
from donorguard.api.v1 import admin_router, captcha_router, otp_router, system_router
from donorguard.core.settings import settings
from donorguard.services.captcha import close_turnstile_client
from donorguard.services.store import close_counter_store

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

API_DESCRIPTION = "Anti-abuse layer for donor registration and sign-in"

# Initialize FastAPI app
app = FastAPI(
    title=f"{settings.app_name} API",
    description=API_DESCRIPTION,
    version=settings.app_version,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Add GZip middleware for compression
app.add_middleware(GZipMiddleware)

if settings.api_rate_limit_enabled:
    app.add_middleware(ApiRateLimitMiddleware)

# Include API routers
app.include_router(otp_router, prefix="/api/v1")
app.include_router(captcha_router, prefix="/api/v1")
app.include_router(admin_router, prefix="/api/v1")
app.include_router(system_router, prefix="/api/v1")


@app.on_event("startup")
async def on_startup() -> None:
    logger.info(
        "%s %s starting (store=%s, captcha policy=%s, rate limit policy=%s)",
        settings.app_name,
        settings.app_version,
        settings.counter_store_backend,
        settings.captcha_failure_policy.value,
        settings.rate_limit_failure_policy.value,
    )
    if not settings.captcha_secret_key:
        logger.warning("CAPTCHA_SECRET_KEY is not set; bot verification will be rejected upstream")


@app.on_event("shutdown")
async def on_shutdown() -> None:
    await close_turnstile_client()
    await close_counter_store()


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint to verify the service is running."""
    return {"status": "ok"}


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with basic information about the API."""
    return {
        "name": f"{settings.app_name} API",
        "version": settings.app_version,
        "description": API_DESCRIPTION,
        "docs": "/docs",
        "redoc": "/redoc",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("donorguard.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
