"""SQLAlchemy declarative base and models.

Only profiles are mapped through SQLAlchemy; the support tables are accessed
with psycopg directly from :mod:`app.support.repository`.
"""

from __future__ import annotations

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy declarative models."""


from .profile import Profile


__all__ = [
    "Base",
    "Profile",
]
