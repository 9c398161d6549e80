import pathlib
import sys
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable

import pytest
from fastapi import FastAPI, HTTPException, Request
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from app.app_logging import init_logging
from app.models import Base, Profile
from app.security import create_access_token, create_service_token, reset_jwt_settings_cache
from app.support.errors import SupportError
from app.support.realtime import PendingChanges
from app.support.repository import InMemorySupportRepository
from app.support.runtime import get_broker, reset_runtime


@dataclass
class AuthContext:
    engine: object
    session_factory: sessionmaker[Session]
    users: dict[str, uuid.UUID]
    tokens: dict[str, str]
    service_user_id: uuid.UUID

    def header(self, role: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.tokens[role]}"}

    def add_profile(self, role: str, email: str, full_name: str) -> uuid.UUID:
        """Create another profile and remember its token under ``email``."""

        with self.session_factory.begin() as session:
            profile = Profile(email=email, full_name=full_name, role=role)
            session.add(profile)
            session.flush()
            token, _ = create_access_token(profile)
        self.users[email] = profile.id
        self.tokens[email] = token
        return profile.id


@pytest.fixture
def app_factory(monkeypatch):
    def _create_app(log_dir: str, log_request_bodies: bool = False):
        """Create a FastAPI app with logging initialised."""
        monkeypatch.setenv("LOG_DIR", str(log_dir))
        if log_request_bodies:
            monkeypatch.setenv("LOG_REQUEST_BODIES", "true")
        app = FastAPI()

        @app.post("/echo")
        async def echo(request: Request):
            return await request.json()

        init_logging(app)
        return app

    return _create_app


@pytest.fixture
def token_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AUTH_TOKEN_SECRET", "super-secret-key")
    monkeypatch.setenv("AUTH_TOKEN_AUDIENCE", "support-desk")
    monkeypatch.setenv("AUTH_TOKEN_ISSUER", "auth.support-desk")
    monkeypatch.setenv("AUTH_TOKEN_ALGORITHM", "HS256")
    reset_jwt_settings_cache()
    yield
    reset_jwt_settings_cache()


@pytest.fixture
def support_auth(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path_factory: pytest.TempPathFactory,
    token_env: None,
) -> AuthContext:
    db_path = tmp_path_factory.mktemp("support-auth") / "auth.db"
    db_url = f"sqlite+pysqlite:///{db_path}"
    monkeypatch.setenv("DATABASE_URL", db_url)

    engine = create_engine(db_url, future=True)

    @event.listens_for(engine, "connect")
    def _register_uuid(conn, _record) -> None:  # pragma: no cover - SQLite test helper
        conn.create_function("gen_random_uuid", 0, lambda: str(uuid.uuid4()))

    Base.metadata.create_all(engine)
    session_factory = sessionmaker(bind=engine, expire_on_commit=False, future=True)

    import app.security.auth as auth_module

    monkeypatch.setattr(auth_module, "_SESSION_FACTORY", session_factory)

    users: dict[str, uuid.UUID] = {}
    tokens: dict[str, str] = {}
    with session_factory.begin() as session:
        for role in ("viewer", "agent", "admin"):
            profile = Profile(
                email=f"{role}@support.example",
                full_name=f"{role.title()} Person",
                role=role,
            )
            session.add(profile)
            session.flush()
            users[role] = profile.id
            tokens[role], _ = create_access_token(profile)

    service_user_id = uuid.uuid4()
    tokens["service"], _ = create_service_token(str(service_user_id))

    yield AuthContext(
        engine=engine,
        session_factory=session_factory,
        users=users,
        tokens=tokens,
        service_user_id=service_user_id,
    )

    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def support_runtime():
    reset_runtime()
    yield
    reset_runtime()


@pytest.fixture
def repository() -> InMemorySupportRepository:
    return InMemorySupportRepository()


def in_memory_context(factory: Callable[[PendingChanges], object]):
    """Stand-in for a router's ``_service_context`` backed by memory.

    Mirrors the real context: domain errors become HTTP errors and recorded
    changes are published only when the block completes.
    """

    @contextmanager
    def _context():
        changes = PendingChanges()
        service = factory(changes)
        try:
            yield service
        except SupportError as exc:
            changes.discard()
            raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
        changes.flush(get_broker())

    return _context


@dataclass
class SupportApi:
    client: object
    repository: InMemorySupportRepository
    auth: AuthContext


@pytest.fixture
def support_api(monkeypatch, support_auth, support_runtime, repository) -> SupportApi:
    """TestClient over the real app with every router using ``repository``."""

    from fastapi.testclient import TestClient

    import app.main as main
    from app.rate_limit import limiter
    from app.routers import support_agents, support_inbox, support_routing
    from app.support.inbox import SupportInboxService
    from app.support.presence import AgentPresenceService
    from app.support.routing import SupportRoutingService
    from app.support.runtime import get_cache

    for email, user_id in list(support_auth.users.items()):
        repository.register_profile(user_id, full_name=f"{email.split('@')[0].title()} Person")

    monkeypatch.setattr(
        support_routing,
        "_service_context",
        in_memory_context(lambda changes: SupportRoutingService(repository, changes=changes)),
    )
    monkeypatch.setattr(
        support_inbox,
        "_service_context",
        in_memory_context(
            lambda changes: SupportInboxService(repository, cache=get_cache(), changes=changes)
        ),
    )
    monkeypatch.setattr(
        support_agents,
        "_service_context",
        in_memory_context(lambda changes: AgentPresenceService(repository, changes=changes)),
    )
    limiter.reset()

    return SupportApi(client=TestClient(main.app), repository=repository, auth=support_auth)
