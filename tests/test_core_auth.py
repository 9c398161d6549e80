"""Tests for bearer token validation helpers."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import jwt
import pytest
from app.core.auth import (
    AccessTokenPayload,
    TokenConfigurationError,
    TokenValidationError,
    decode_access_token,
    get_token_context,
)
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient


def _issue_token(
    *,
    secret: str = "super-secret-key",
    audience: str = "support-desk",
    issuer: str = "auth.support-desk",
    user_id: str | None = "user-456",
    expires_in: timedelta = timedelta(minutes=5),
    **extra_claims: str | list[str] | int,
) -> str:
    """Generate a signed JWT for testing purposes."""

    payload: dict[str, object] = {
        "aud": audience,
        "iss": issuer,
        "exp": datetime.now(timezone.utc) + expires_in,
    }
    if user_id is not None:
        payload["user_id"] = user_id
    payload.update(extra_claims)
    return jwt.encode(payload, secret, algorithm="HS256")


def test_decode_access_token_success(token_env: None) -> None:
    """A valid token returns the decoded payload."""

    token = _issue_token(roles=["agent"])

    payload = decode_access_token(token)

    assert payload["user_id"] == "user-456"
    assert payload["roles"] == ["agent"]


def test_decode_access_token_missing_user(token_env: None) -> None:
    token = _issue_token(user_id=None)

    with pytest.raises(TokenValidationError):
        decode_access_token(token)


def test_decode_access_token_requires_access_type(token_env: None) -> None:
    """Tokens that are not access tokens are rejected."""

    token = _issue_token(type="refresh")

    with pytest.raises(TokenValidationError):
        decode_access_token(token)


def test_decode_access_token_expired(token_env: None) -> None:
    token = _issue_token(expires_in=timedelta(minutes=-1))

    with pytest.raises(TokenValidationError, match="expired"):
        decode_access_token(token)


def test_decode_access_token_wrong_audience(token_env: None) -> None:
    token = _issue_token(audience="someone-else")

    with pytest.raises(TokenValidationError):
        decode_access_token(token)


def test_decode_access_token_configuration_error(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Missing configuration raises a configuration error."""

    monkeypatch.delenv("AUTH_TOKEN_SECRET", raising=False)
    monkeypatch.delenv("AUTH_TOKEN_AUDIENCE", raising=False)
    monkeypatch.delenv("AUTH_TOKEN_ISSUER", raising=False)

    with pytest.raises(TokenConfigurationError):
        decode_access_token("token")


def _create_test_client() -> TestClient:
    app = FastAPI()

    @app.get("/whoami")
    async def whoami(
        payload: AccessTokenPayload = Depends(get_token_context),
    ) -> AccessTokenPayload:
        return payload

    return TestClient(app)


def test_get_token_context_success(token_env: None) -> None:
    client = _create_test_client()
    token = _issue_token()

    response = client.get("/whoami", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 200
    assert response.json()["user_id"] == "user-456"


def test_get_token_context_missing_header(token_env: None) -> None:
    """Missing Authorization header yields 401 Unauthorized."""

    response = _create_test_client().get("/whoami")

    assert response.status_code == 401


def test_get_token_context_invalid_scheme(token_env: None) -> None:
    token = _issue_token()

    response = _create_test_client().get(
        "/whoami", headers={"Authorization": f"Token {token}"}
    )

    assert response.status_code == 401


def test_get_token_context_invalid_signature(token_env: None) -> None:
    """An invalid token signature maps to 401 Unauthorized."""

    token = _issue_token(secret="another-secret")

    response = _create_test_client().get(
        "/whoami", headers={"Authorization": f"Bearer {token}"}
    )

    assert response.status_code == 401


def test_get_token_context_configuration_error(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Configuration issues propagate as HTTP 500 errors."""

    monkeypatch.delenv("AUTH_TOKEN_SECRET", raising=False)
    monkeypatch.setenv("AUTH_TOKEN_AUDIENCE", "support-desk")
    monkeypatch.setenv("AUTH_TOKEN_ISSUER", "auth.support-desk")

    response = _create_test_client().get(
        "/whoami", headers={"Authorization": "Bearer token"}
    )

    assert response.status_code == 500
