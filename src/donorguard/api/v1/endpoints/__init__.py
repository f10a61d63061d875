# src/donorguard/api/v1/endpoints/__init__.py
"""API endpoint modules for version 1."""

from .admin import router as admin_router
from .captcha import router as captcha_router
from .otp import router as otp_router
from .system import router as system_router

__all__ = [
    "admin_router",
    "captcha_router",
    "otp_router",
    "system_router",
]
