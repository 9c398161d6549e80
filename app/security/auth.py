"""JWT-backed authentication dependencies for FastAPI routers."""

from __future__ import annotations

import uuid
from collections.abc import Iterator
from typing import Callable

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session, sessionmaker

from app.core.auth import AccessTokenPayload, get_token_context
from app.models import Profile
from app.models.session import get_sessionmaker


_ROLE_LEVELS = {"viewer": 0, "agent": 1, "admin": 2, "service": 3}
SERVICE_ROLE = "service"
_SESSION_FACTORY: sessionmaker[Session] | None = None


def _get_session_factory() -> sessionmaker[Session]:
    global _SESSION_FACTORY
    if _SESSION_FACTORY is None:
        _SESSION_FACTORY = get_sessionmaker()
    return _SESSION_FACTORY


def get_db_session() -> Iterator[Session]:
    """Yield a SQLAlchemy session for request-scoped dependencies."""

    session = _get_session_factory()()
    try:
        yield session
    finally:
        session.close()


async def get_current_token_payload(request: Request) -> AccessTokenPayload:
    """Decode and validate the bearer token from ``request``."""

    return await get_token_context(request)


def _token_roles(payload: AccessTokenPayload) -> list[str]:
    roles = payload.get("roles") or []
    if isinstance(roles, str):
        roles = [roles]
    return list(roles)


async def get_current_user_id(
    payload: AccessTokenPayload = Depends(get_current_token_payload),
) -> uuid.UUID:
    try:
        return uuid.UUID(payload["user_id"])
    except (KeyError, ValueError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid user identifier in token.",
        ) from exc


def _load_profile(session: Session, user_id: uuid.UUID) -> Profile:
    profile = session.get(Profile, user_id)
    if profile is None or not profile.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User is inactive or no longer exists.",
        )
    return profile


def _highest_role(roles: list[str]) -> str | None:
    ranked = sorted({role for role in roles if role in _ROLE_LEVELS}, key=_ROLE_LEVELS.get)
    return ranked[-1] if ranked else None


def require_role(min_role: str) -> Callable[..., str]:
    """Create a dependency ensuring the caller has at least ``min_role`` privileges.

    Service tokens are trusted without a profile lookup; every other caller
    must map to an active profile whose role is combined with the token roles.
    """

    if min_role not in _ROLE_LEVELS:
        raise ValueError(f"Unknown role: {min_role}")

    def dependency(
        payload: AccessTokenPayload = Depends(get_current_token_payload),
        user_id: uuid.UUID = Depends(get_current_user_id),
        session: Session = Depends(get_db_session),
    ) -> str:
        roles = _token_roles(payload)
        if SERVICE_ROLE in roles:
            return SERVICE_ROLE
        profile = _load_profile(session, user_id)
        highest = _highest_role(roles + [profile.role])
        if highest is None:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="No roles assigned to user.",
            )
        if _ROLE_LEVELS[highest] < _ROLE_LEVELS[min_role]:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient role.",
            )
        return highest

    return dependency


__all__ = [
    "SERVICE_ROLE",
    "get_current_token_payload",
    "get_current_user_id",
    "get_db_session",
    "require_role",
]
