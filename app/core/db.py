"""Database helpers for psycopg connections and schema bootstrap."""

from __future__ import annotations

import logging
import os
from pathlib import Path

import psycopg

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).resolve().parents[2] / "schema.sql"

_SQLALCHEMY_PREFIX = "postgresql+psycopg://"
_PLAIN_PREFIXES = ("postgresql://", "postgres://")


def get_database_url() -> str | None:
    """Return ``DATABASE_URL`` or ``None`` when it is not configured."""

    value = os.getenv("DATABASE_URL", "").strip()
    return value or None


def psycopg_url(url: str) -> str:
    """Strip the SQLAlchemy driver suffix so psycopg accepts ``url``."""

    if url.startswith(_SQLALCHEMY_PREFIX):
        return "postgresql://" + url[len(_SQLALCHEMY_PREFIX):]
    return url


def sqlalchemy_url(url: str) -> str:
    """Point plain PostgreSQL URLs at the psycopg 3 SQLAlchemy dialect."""

    for prefix in _PLAIN_PREFIXES:
        if url.startswith(prefix):
            return _SQLALCHEMY_PREFIX + url[len(prefix):]
    return url


def connect(database_url: str | None = None) -> psycopg.Connection:
    url = database_url or get_database_url()
    if not url:
        raise RuntimeError("DATABASE_URL is not configured.")
    return psycopg.connect(psycopg_url(url))


def ensure_schema(conn: psycopg.Connection, schema_path: Path | None = None) -> None:
    """Apply ``schema.sql``; every statement in it is idempotent."""

    path = schema_path or SCHEMA_PATH
    sql = path.read_text(encoding="utf-8")
    with conn.cursor() as cur:
        cur.execute(sql)
    conn.commit()
    logger.info("Applied support schema from %s", path)
