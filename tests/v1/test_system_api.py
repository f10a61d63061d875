"""Tests for system, health and middleware behaviour."""

import asyncio

from fastapi import status
from fastapi.testclient import TestClient

from donorguard.services.rate_limit import rate_limit_key


def test_health(client: TestClient) -> None:
    r = client.get("/health")
    assert r.status_code == status.HTTP_200_OK
    assert r.json() == {"status": "ok"}


def test_root(client: TestClient) -> None:
    r = client.get("/")
    assert r.status_code == status.HTTP_200_OK
    assert r.json()["docs"] == "/docs"


def test_system_config_hides_secrets(client: TestClient) -> None:
    r = client.get("/api/v1/system/config")
    assert r.status_code == status.HTTP_200_OK
    data = r.json()
    assert data["otp"]["max_attempts"] == 3
    assert data["captcha"]["failure_policy"] == "closed"
    assert data["rate_limits"]["rules"]["captcha_ip"] == {"limit": 10, "window_seconds": 900}
    text = r.text
    assert "secret" not in text.lower()
    assert "redis://" not in text


def test_api_rate_limit_headers(client: TestClient) -> None:
    r = client.get("/api/v1/system/config")
    assert r.headers["X-RateLimit-Limit"] == "100"
    assert r.headers["X-RateLimit-Remaining"] == "99"


def test_api_rate_limit_exceeded(client: TestClient, store) -> None:
    asyncio.run(store.set(rate_limit_key("api", "testclient"), 100, 900))

    r = client.get("/api/v1/system/config")
    assert r.status_code == status.HTTP_429_TOO_MANY_REQUESTS
    assert r.json()["code"] == "RATE_LIMITED"
    assert int(r.headers["Retry-After"]) > 0

    # Health checks are never limited.
    assert client.get("/health").status_code == status.HTTP_200_OK


def test_system_config_lists_enforced_presets(client: TestClient) -> None:
    data = client.get("/api/v1/system/config").json()
    rules = data["rate_limits"]["rules"]
    assert rules["auth"] == {"limit": 10, "window_seconds": 900}
    assert rules["otp_resend"] == {"limit": 3, "window_seconds": 180}
    assert data["guards"]["subject_min_interval_seconds"] == 30
    assert data["guards"]["failure_lockout_threshold"] == 8
