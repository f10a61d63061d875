# tests/conftest.py
from __future__ import annotations

import os
from collections.abc import Callable, Generator, Iterator
from dataclasses import dataclass, field
from itertools import count
from typing import Any

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("PYTEST_RUNNING", "true")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("COUNTER_STORE_BACKEND", "memory")

from donorguard.api.v1 import dependencies as deps
from donorguard.core.security import create_admin_token
from donorguard.db.session import Base
from donorguard.db.session import get_db as app_get_session
from donorguard.main import app as fastapi_app
from donorguard.services.abuse import AbuseSignalLog
from donorguard.services.captcha import TurnstileClient
from donorguard.services.store import InMemoryCounterStore, set_counter_store

TEST_DB_URL = "sqlite://"
VERIFY_URL = "https://verifier.test/siteverify"

_TOKEN_COUNTER = count(1)


class FakeClock:
    """Manually advanced replacement for ``time.time``."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@dataclass
class ProviderStub:
    """Scripted Turnstile ``siteverify`` endpoint served through ``httpx.MockTransport``."""

    success: bool = True
    error_codes: list[str] = field(default_factory=list)
    status_code: int = 200
    raise_error: bool = False
    calls: list[dict[str, str]] = field(default_factory=list)

    def handler(self, request: httpx.Request) -> httpx.Response:
        form = dict(httpx.QueryParams(request.content.decode()))
        self.calls.append(form)
        if self.raise_error:
            raise httpx.ConnectTimeout("upstream timed out", request=request)
        if self.status_code >= 500:
            return httpx.Response(self.status_code, text="upstream broke")
        return httpx.Response(
            self.status_code,
            json={"success": self.success, "error-codes": self.error_codes, "hostname": "donate.test"},
        )

    def client(self) -> TurnstileClient:
        return TurnstileClient(
            secret="test-secret",
            verify_url=VERIFY_URL,
            timeout_seconds=1.0,
            transport=httpx.MockTransport(self.handler),
        )


@dataclass
class RecordingNotifier:
    sent: list[tuple[str, str, str]] = field(default_factory=list)
    fail: bool = False

    async def send(self, subject_key: str, code: str, purpose: str) -> None:
        if self.fail:
            raise RuntimeError("gateway down")
        self.sent.append((subject_key, code, purpose))

    def last_code(self) -> str:
        return self.sent[-1][1]


def _make_token() -> str:
    """Return a unique token long enough to pass format checks."""
    return f"turnstile-token-{next(_TOKEN_COUNTER):06d}"


@pytest.fixture(scope="session")
def engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> Callable[[], Session]:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def db_session(engine: Engine, session_factory: Callable[[], Session]) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()
        # Abuse events are committed from worker threads, so clean up by table.
        with engine.begin() as cleanup_conn:
            for table in reversed(Base.metadata.sorted_tables):
                cleanup_conn.execute(table.delete())


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store(clock: FakeClock) -> Iterator[InMemoryCounterStore]:
    memory_store = InMemoryCounterStore(clock=clock)
    set_counter_store(memory_store)
    try:
        yield memory_store
    finally:
        set_counter_store(None)


@pytest.fixture()
def abuse_log(session_factory: Callable[[], Session]) -> AbuseSignalLog:
    return AbuseSignalLog(session_factory=session_factory)


@pytest.fixture()
def provider() -> ProviderStub:
    return ProviderStub()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture(scope="session")
def app() -> FastAPI:
    return fastapi_app


@pytest.fixture()
def override_dependencies(
    app: FastAPI,
    db_session: Session,
    store: InMemoryCounterStore,
    clock: FakeClock,
    abuse_log: AbuseSignalLog,
    provider: ProviderStub,
    notifier: RecordingNotifier,
) -> Iterator[None]:
    def _get_session_override() -> Generator[Session, None, None]:
        yield db_session

    overrides: dict[Callable[..., Any], Callable[..., Any]] = {
        app_get_session: _get_session_override,
        deps.get_abuse_log_dep: lambda: abuse_log,
        deps.get_provider_dep: provider.client,
        deps.get_notifier_dep: lambda: notifier,
        deps.get_clock_dep: lambda: clock,
    }
    app.dependency_overrides.update(overrides)
    try:
        yield
    finally:
        for dependency in overrides:
            app.dependency_overrides.pop(dependency, None)


@pytest.fixture()
def client(app: FastAPI, override_dependencies: None) -> Iterator[TestClient]:
    with TestClient(app, base_url="http://test") as test_client:
        yield test_client


@pytest.fixture()
def admin_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {create_admin_token('ops-oncall')}"}


@pytest.fixture()
def make_token() -> Callable[[], str]:
    """Factory for unique tokens long enough to pass format checks."""
    return _make_token
