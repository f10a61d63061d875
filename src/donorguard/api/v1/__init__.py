"""Version 1 of the DonorGuard API."""

from .endpoints import admin_router, captcha_router, otp_router, system_router

__all__ = ["admin_router", "captcha_router", "otp_router", "system_router"]
