"""Tests for the standalone bot-verification endpoint."""

from fastapi import status
from fastapi.testclient import TestClient


def test_verify_accepts_then_rejects_reuse(client: TestClient, make_token) -> None:
    token = make_token()
    r = client.post("/api/v1/captcha/verify", json={"turnstileToken": token})
    assert r.status_code == status.HTTP_200_OK
    assert r.json() == {"success": True, "degraded": False}

    r = client.post("/api/v1/captcha/verify", json={"token": token})
    assert r.status_code == status.HTTP_400_BAD_REQUEST
    assert r.json()["code"] == "TOKEN_REUSED"


def test_rate_limited_after_ten_attempts(client: TestClient, make_token) -> None:
    codes = [
        client.post("/api/v1/captcha/verify", json={"token": make_token()}).status_code
        for _ in range(15)
    ]
    assert codes.count(status.HTTP_429_TOO_MANY_REQUESTS) == 5


def test_upstream_outage_fails_closed(client: TestClient, provider, make_token) -> None:
    provider.raise_error = True
    r = client.post("/api/v1/captcha/verify", json={"token": make_token()})
    assert r.status_code == status.HTTP_400_BAD_REQUEST
    assert r.json()["code"] == "VALIDATION_FAILED"


def test_provider_codes_are_returned(client: TestClient, provider, make_token) -> None:
    provider.success = False
    provider.error_codes = ["invalid-input-response"]
    r = client.post("/api/v1/captcha/verify", json={"token": make_token()})
    body = r.json()
    assert body["code"] == "INVALID_TOKEN"
    assert body["provider_errors"] == ["invalid-input-response"]


def test_unencodable_token_is_a_format_error(client: TestClient, provider) -> None:
    # A lone surrogate survives JSON decoding but cannot be encoded as UTF-8.
    r = client.post(
        "/api/v1/captcha/verify",
        content=b'{"token": "abcdefghijkl\\ud800mnop"}',
        headers={"Content-Type": "application/json"},
    )
    assert r.status_code == status.HTTP_400_BAD_REQUEST
    assert r.json()["code"] == "INVALID_FORMAT"
    assert provider.calls == []
