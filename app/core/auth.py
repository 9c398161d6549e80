"""Bearer token validation shared by the API routers."""

from __future__ import annotations

import os
from typing import cast

import jwt
from fastapi import HTTPException, Request, status
from jwt import ExpiredSignatureError, InvalidTokenError
from typing_extensions import TypedDict

__all__ = [
    "AccessTokenPayload",
    "TokenConfigurationError",
    "TokenValidationError",
    "decode_access_token",
    "get_token_context",
]


class TokenConfigurationError(RuntimeError):
    """Raised when token configuration is invalid."""


class TokenValidationError(ValueError):
    """Raised when the provided token cannot be validated."""


class _AccessTokenRequiredClaims(TypedDict):
    user_id: str


class AccessTokenPayload(_AccessTokenRequiredClaims, total=False):
    """Decoded JWT payload.

    ``roles`` holds any of ``viewer``, ``agent``, ``admin`` or ``service``.
    Service tokens are issued to the AI pipeline; their ``user_id`` does not
    have to match a profile.
    """

    aud: str | list[str]
    email: str
    exp: int
    iat: int
    iss: str
    name: str
    roles: list[str]
    type: str


def _get_env(name: str, *, required: bool = True, default: str | None = None) -> str:
    """Fetch an environment variable, raising when a required one is blank.

    Raises:
        TokenConfigurationError: If ``required`` is ``True`` and the variable
            is missing or blank.
    """

    value = os.getenv(name, default)
    if required and (value is None or not value.strip()):
        raise TokenConfigurationError(
            f"Environment variable '{name}' must be set for token validation.",
        )
    if value is None:
        return ""
    return value.strip()


def decode_access_token(token: str) -> AccessTokenPayload:
    """Decode and validate an access token.

    Args:
        token: Encoded JWT from the ``Authorization`` header.

    Raises:
        TokenConfigurationError: If mandatory environment configuration is missing.
        TokenValidationError: If the signature, claims or expiry are invalid.
    """

    secret_key = _get_env("AUTH_TOKEN_SECRET")
    audience = _get_env("AUTH_TOKEN_AUDIENCE")
    issuer = _get_env("AUTH_TOKEN_ISSUER")
    algorithm = _get_env("AUTH_TOKEN_ALGORITHM", required=False, default="HS256")

    try:
        payload = jwt.decode(
            token,
            secret_key,
            algorithms=[algorithm],
            audience=audience,
            issuer=issuer,
            options={"require": ["exp", "aud", "iss"]},
        )
    except ExpiredSignatureError as exc:
        raise TokenValidationError("Access token has expired.") from exc
    except InvalidTokenError as exc:
        raise TokenValidationError("Access token is invalid.") from exc

    if "user_id" not in payload:
        raise TokenValidationError("Access token payload must include 'user_id'.")
    type_claim = payload.get("type")
    if type_claim and type_claim != "access":
        raise TokenValidationError("Token must be an access token.")

    return cast(AccessTokenPayload, payload)


async def get_token_context(request: Request) -> AccessTokenPayload:
    """Extract and validate the bearer token of ``request``.

    Raises:
        HTTPException: ``401`` when the header is missing or invalid, ``500``
            when token configuration is incorrect.
    """

    authorization = request.headers.get("Authorization")
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Authorization header.",
        )

    scheme, _, credentials = authorization.partition(" ")
    if not credentials or scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header must use Bearer scheme.",
        )

    try:
        return decode_access_token(credentials)
    except TokenConfigurationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(exc),
        ) from exc
    except TokenValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc
