"""Helpers for issuing JWT access tokens."""

from __future__ import annotations

import dataclasses
import datetime as dt
import os
from functools import lru_cache
from typing import Any, Iterable

import jwt

from app.models import Profile


@dataclasses.dataclass(frozen=True)
class JWTSettings:
    """Runtime configuration for issuing authentication tokens."""

    secret: str
    issuer: str
    audience: str
    algorithm: str = "HS256"
    access_token_ttl_seconds: int = 900  # 15 minutes


@lru_cache(maxsize=1)
def get_jwt_settings() -> JWTSettings:
    """Load settings from the environment."""

    secret = os.getenv("AUTH_TOKEN_SECRET")
    issuer = os.getenv("AUTH_TOKEN_ISSUER")
    audience = os.getenv("AUTH_TOKEN_AUDIENCE")
    algorithm = os.getenv("AUTH_TOKEN_ALGORITHM", "HS256")
    if not secret or not issuer or not audience:
        raise RuntimeError(
            "AUTH_TOKEN_SECRET, AUTH_TOKEN_ISSUER and AUTH_TOKEN_AUDIENCE must be set.",
        )
    access_ttl = int(os.getenv("ACCESS_TOKEN_TTL_SECONDS", "900"))
    return JWTSettings(
        secret=secret,
        issuer=issuer,
        audience=audience,
        algorithm=algorithm,
        access_token_ttl_seconds=access_ttl,
    )


def reset_jwt_settings_cache() -> None:
    """Clear cached JWT settings; useful in tests when env vars change."""

    get_jwt_settings.cache_clear()


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _encode(
    claims: dict[str, Any], settings: JWTSettings, ttl_seconds: int | None
) -> tuple[str, dt.datetime]:
    now = _utcnow()
    expires_at = now + dt.timedelta(
        seconds=ttl_seconds if ttl_seconds is not None else settings.access_token_ttl_seconds
    )
    payload: dict[str, Any] = {
        **claims,
        "iss": settings.issuer,
        "aud": settings.audience,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
        "type": "access",
    }
    token = jwt.encode(payload, settings.secret, algorithm=settings.algorithm)
    return str(token), expires_at


def create_access_token(
    profile: Profile, *, settings: JWTSettings | None = None
) -> tuple[str, dt.datetime]:
    """Issue a signed JWT access token for ``profile``."""

    settings = settings or get_jwt_settings()
    claims = {
        "user_id": str(profile.id),
        "email": profile.email,
        "name": profile.full_name,
        "roles": [profile.role] if profile.role else [],
    }
    return _encode(claims, settings, None)


def create_service_token(
    subject: str,
    *,
    roles: Iterable[str] = ("service",),
    settings: JWTSettings | None = None,
    ttl_seconds: int | None = None,
) -> tuple[str, dt.datetime]:
    """Issue a token for a backend caller such as the AI chat pipeline.

    ``subject`` must be a UUID string; it does not need a matching profile.
    """

    settings = settings or get_jwt_settings()
    claims = {"user_id": subject, "name": "service", "roles": list(roles)}
    return _encode(claims, settings, ttl_seconds)


__all__ = [
    "JWTSettings",
    "create_access_token",
    "create_service_token",
    "get_jwt_settings",
    "reset_jwt_settings_cache",
]
