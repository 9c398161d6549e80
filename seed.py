"""Bootstrap the database with the support schema, profiles and agents.

Creates an admin profile and the agent profiles listed in
``SEED_AGENT_EMAILS``, registers each agent in ``support_agents`` and prints
a service token the AI chat pipeline can use to call the router.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass

import psycopg
from dotenv import load_dotenv
from sqlalchemy import select
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError
from sqlalchemy.orm import Session

from app.core.db import ensure_schema, psycopg_url, sqlalchemy_url
from app.models import Profile
from app.models.session import session_scope
from app.security.tokens import create_service_token
from app.support.models import AgentStatus
from app.support.presence import DEFAULT_MAX_CONVERSATIONS
from app.support.repository import PostgresSupportRepository

logger = logging.getLogger("seed")

SERVICE_SUBJECT = "00000000-0000-0000-0000-000000000001"


@dataclass(slots=True)
class SeedConfig:
    """Configuration derived from the environment for the seed process."""

    db_url: str
    admin_name: str
    admin_email: str
    agent_emails: list[str]
    max_conversations: int


def _safe_url(db_url: str) -> str:
    """Return a version of ``db_url`` with any password redacted."""

    try:
        parsed = make_url(sqlalchemy_url(db_url))
    except ArgumentError:
        return db_url
    if parsed.password is None:
        return db_url
    return parsed.set(password="***").render_as_string(hide_password=False)


def _build_database_url() -> str:
    """Compute the database URL from ``DATABASE_URL`` or ``PG*`` variables."""

    direct = os.getenv("DATABASE_URL")
    if direct:
        return direct

    host = os.getenv("PGHOST")
    port = os.getenv("PGPORT", "5432")
    database = os.getenv("PGDATABASE")
    user = os.getenv("PGUSER")
    password = os.getenv("PGPASSWORD")

    if not all([host, database, user]):
        raise RuntimeError(
            "DATABASE_URL is not configured and PGHOST/PGDATABASE/PGUSER are missing."
        )

    auth = f"{user}:{password}" if password else user
    return f"postgresql://{auth}@{host}:{port}/{database}"


def _load_config() -> SeedConfig:
    agent_emails = [
        email.strip().lower()
        for email in os.getenv("SEED_AGENT_EMAILS", "agent@demo.local").split(",")
        if email.strip()
    ]
    return SeedConfig(
        db_url=_build_database_url(),
        admin_name=os.getenv("SEED_ADMIN_NAME", "Support Admin").strip(),
        admin_email=os.getenv("SEED_ADMIN_EMAIL", "admin@demo.local").strip().lower(),
        agent_emails=agent_emails,
        max_conversations=int(
            os.getenv("SUPPORT_DEFAULT_MAX_CONVERSATIONS", str(DEFAULT_MAX_CONVERSATIONS))
        ),
    )


def wait_for_database(db_url: str, max_attempts: int = 10, delay: float = 3.0) -> None:
    """Attempt to establish a database connection, retrying if necessary."""

    for attempt in range(1, max_attempts + 1):
        try:
            with psycopg.connect(psycopg_url(db_url), connect_timeout=5) as conn:
                conn.execute("SELECT 1")
        except psycopg.OperationalError as exc:  # pragma: no cover - depends on external DB
            logger.info(
                "Database not ready (attempt %d/%d): %s; retrying in %.1fs",
                attempt,
                max_attempts,
                exc,
                delay,
            )
            if attempt >= max_attempts:
                raise RuntimeError("Database did not become ready in time") from exc
            time.sleep(delay)
            continue

        logger.info("Database connection established after %d attempt(s): %s", attempt, _safe_url(db_url))
        return


def _ensure_profile(session: Session, email: str, full_name: str, role: str) -> Profile:
    profile = session.execute(select(Profile).where(Profile.email == email)).scalar_one_or_none()
    if profile is None:
        profile = Profile(email=email, full_name=full_name, role=role)
        session.add(profile)
        session.flush()
        logger.info("Created %s profile %s", role, email)
    else:
        logger.info("Profile %s already exists; reusing.", email)
    return profile


def _provision_profiles(config: SeedConfig) -> list[Profile]:
    """Create the admin and agent profiles; returns the agent profiles."""

    with session_scope(database_url=config.db_url) as session:
        _ensure_profile(session, config.admin_email, config.admin_name, "admin")
        agents = [
            _ensure_profile(session, email, email.split("@")[0].title(), "agent")
            for email in config.agent_emails
        ]
    return agents


def _register_agents(db_url: str, profiles: list[Profile], max_conversations: int) -> None:
    with psycopg.connect(psycopg_url(db_url)) as conn:
        repository = PostgresSupportRepository(conn)
        for profile in profiles:
            agent = repository.create_agent(
                profile.id, status=AgentStatus.OFFLINE, max_conversations=max_conversations
            )
            logger.info("Support agent %s ready for %s", agent.id, profile.email)
        conn.commit()


def main() -> None:
    """Entrypoint for the seeding workflow."""

    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

    config = _load_config()
    wait_for_database(config.db_url)
    logger.info("Starting seed process using %s", _safe_url(config.db_url))

    with psycopg.connect(psycopg_url(config.db_url)) as conn:
        ensure_schema(conn)

    agents = _provision_profiles(config)
    _register_agents(config.db_url, agents, config.max_conversations)

    try:
        token, expires_at = create_service_token(
            os.getenv("SEED_SERVICE_SUBJECT", SERVICE_SUBJECT),
            ttl_seconds=int(os.getenv("SEED_SERVICE_TOKEN_TTL_SECONDS", str(60 * 60 * 24 * 30))),
        )
    except RuntimeError as exc:
        logger.warning("Skipping service token: %s", exc)
        return
    logger.info("Service token (expires %s):\n%s", expires_at.isoformat(), token)


if __name__ == "__main__":
    main()
