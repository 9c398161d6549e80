"""Tests for database URL helpers and schema bootstrap."""

import pytest

from app.core import db


@pytest.mark.parametrize(
    "url, expected",
    [
        ("postgresql+psycopg://u:p@h/db", "postgresql://u:p@h/db"),
        ("postgresql://u@h/db", "postgresql://u@h/db"),
    ],
)
def test_psycopg_url(url, expected):
    assert db.psycopg_url(url) == expected


@pytest.mark.parametrize(
    "url, expected",
    [
        ("postgresql://u@h/db", "postgresql+psycopg://u@h/db"),
        ("postgres://u@h/db", "postgresql+psycopg://u@h/db"),
        ("sqlite+pysqlite:///x.db", "sqlite+pysqlite:///x.db"),
    ],
)
def test_sqlalchemy_url(url, expected):
    assert db.sqlalchemy_url(url) == expected


def test_database_url_blank_is_none(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "   ")

    assert db.get_database_url() is None
    with pytest.raises(RuntimeError):
        db.connect()


def test_schema_declares_change_triggers():
    schema = db.SCHEMA_PATH.read_text(encoding="utf-8")

    for table in ("chat_conversations", "chat_messages", "support_agents", "support_escalations"):
        assert f"ON {table}" in schema
    assert "pg_notify(" in schema
    assert "'support_changes'" in schema


class _Cursor:
    def __init__(self, executed):
        self.executed = executed

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql):
        self.executed.append(sql)


class _Conn:
    def __init__(self):
        self.executed = []
        self.committed = False

    def cursor(self):
        return _Cursor(self.executed)

    def commit(self):
        self.committed = True


def test_ensure_schema_executes_file(tmp_path):
    schema = tmp_path / "schema.sql"
    schema.write_text("CREATE TABLE IF NOT EXISTS t (id int);", encoding="utf-8")
    conn = _Conn()

    db.ensure_schema(conn, schema)

    assert conn.executed == ["CREATE TABLE IF NOT EXISTS t (id int);"]
    assert conn.committed is True
