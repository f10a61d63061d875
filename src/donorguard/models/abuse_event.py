# src/donorguard/models/abuse_event.py
"""Append-only record of suspicious activity for operators."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from donorguard.db.session import Base
from donorguard.db.time import utcnow


class AbuseEvent(Base):
    """One suspicious event; rows are inserted and never updated."""

    __tablename__ = "abuse_event"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ip: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    category: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    detail: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
