"""Read-only view of donor accounts needed by the security layer."""

from __future__ import annotations

from typing import Protocol

from sqlalchemy import exists, select
from sqlalchemy.orm import Session

from donorguard.models import Donor


class UserStore(Protocol):
    def exists_by_email(self, email: str) -> bool: ...

    def exists_by_phone(self, phone: str) -> bool: ...


class SqlUserStore:
    """``UserStore`` over the ``donor`` table."""

    def __init__(self, db: Session) -> None:
        self._db = db

    def exists_by_email(self, email: str) -> bool:
        stmt = select(exists().where(Donor.email == email.strip().lower()))
        return bool(self._db.scalar(stmt))

    def exists_by_phone(self, phone: str) -> bool:
        stmt = select(exists().where(Donor.phone == phone))
        return bool(self._db.scalar(stmt))
