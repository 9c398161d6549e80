"""Agent presence API."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from uuid import UUID

import psycopg
from fastapi import APIRouter, Depends, HTTPException

from ..core.db import connect
from ..security.auth import get_current_user_id, require_role
from ..support import schemas
from ..support.errors import SupportError
from ..support.models import AgentStatus
from ..support.presence import DEFAULT_MAX_CONVERSATIONS, AgentPresenceService
from ..support.realtime import PendingChanges
from ..support.repository import PostgresSupportRepository
from ..support.runtime import get_broker

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/support/agents", tags=["support"])


def _get_conn() -> psycopg.Connection:
    try:
        return connect()
    except RuntimeError as exc:
        raise HTTPException(status_code=500, detail="DATABASE_URL not configured") from exc
    except psycopg.Error as exc:  # pragma: no cover - depends on external DB
        raise HTTPException(status_code=500, detail=str(exc)) from exc


def _default_max_conversations() -> int:
    return int(
        os.getenv("SUPPORT_DEFAULT_MAX_CONVERSATIONS", str(DEFAULT_MAX_CONVERSATIONS))
    )


@contextmanager
def _service_context() -> Iterator[AgentPresenceService]:
    conn = _get_conn()
    changes = PendingChanges()
    service = AgentPresenceService(
        PostgresSupportRepository(conn),
        changes=changes,
        default_max_conversations=_default_max_conversations(),
    )
    try:
        yield service
        conn.commit()
    except SupportError as exc:
        conn.rollback()
        changes.discard()
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    except HTTPException:
        conn.rollback()
        changes.discard()
        raise
    except Exception as exc:  # pragma: no cover - unexpected failure
        conn.rollback()
        changes.discard()
        logger.exception("Agent presence request failed")
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    finally:
        conn.close()
    changes.flush(get_broker())


@router.get("/me", response_model=schemas.Agent)
def get_my_agent(
    role: str = Depends(require_role("agent")),
    user_id: UUID = Depends(get_current_user_id),
) -> schemas.Agent:
    with _service_context() as svc:
        return svc.get_agent(user_id)


@router.post("/me", response_model=schemas.Agent)
def register_my_agent(
    role: str = Depends(require_role("agent")),
    user_id: UUID = Depends(get_current_user_id),
) -> schemas.Agent:
    with _service_context() as svc:
        return svc.register_agent(user_id)


@router.put("/me/status", response_model=schemas.Agent)
def update_my_status(
    payload: schemas.AgentStatusUpdate,
    role: str = Depends(require_role("agent")),
    user_id: UUID = Depends(get_current_user_id),
) -> schemas.Agent:
    with _service_context() as svc:
        if payload.status == AgentStatus.ONLINE:
            return svc.go_online(user_id)
        return svc.update_status(user_id, payload.status)


@router.get("/online", response_model=schemas.AvailableAgentList)
def list_online_agents(
    role: str = Depends(require_role("agent")),
) -> schemas.AvailableAgentList:
    with _service_context() as svc:
        agents = svc.list_available_agents()
    return schemas.AvailableAgentList(items=agents, total=len(agents))
