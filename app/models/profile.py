"""User profile model.

Profiles back the role checks of the API and give agents their display name.
The table is shared with ``schema.sql``; support agents reference a profile
through ``support_agents.user_id``.
"""

from __future__ import annotations

import datetime as dt
import uuid

from sqlalchemy import DateTime, Index, String, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from . import Base


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class Profile(Base):
    """A person allowed to use the support console.

    Attributes:
        id: Primary key, also used as ``user_id`` in access tokens.
        email: Contact address, unique when present.
        full_name: Name shown to customers during a handoff.
        role: One of ``viewer``, ``agent`` or ``admin``.
    """

    __tablename__ = "profiles"
    __table_args__ = (Index("ix_profiles_email_unique", "email", unique=True),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    email: Mapped[str | None] = mapped_column(String(length=320), nullable=True)
    full_name: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    role: Mapped[str] = mapped_column(
        String(length=32),
        nullable=False,
        default="viewer",
        server_default=text("'viewer'"),
    )
    is_active: Mapped[bool] = mapped_column(
        nullable=False,
        default=True,
        server_default=text("true"),
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )
