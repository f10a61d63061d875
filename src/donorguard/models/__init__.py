# src/donorguard/models/__init__.py
"""SQLAlchemy models for the DonorGuard service."""

from .abuse_event import AbuseEvent
from .donor import Donor

__all__ = ["AbuseEvent", "Donor"]
