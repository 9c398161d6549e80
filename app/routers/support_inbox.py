"""Live support inbox API: conversation lists, claims and agent messages."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from uuid import UUID

import psycopg
from fastapi import APIRouter, Depends, HTTPException, status

from ..core.db import connect
from ..security.auth import get_current_user_id, require_role
from ..support import schemas
from ..support.errors import SupportError
from ..support.inbox import SupportInboxService
from ..support.realtime import PendingChanges
from ..support.repository import PostgresSupportRepository
from ..support.runtime import get_broker, get_cache

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/support", tags=["support"])


def _get_conn() -> psycopg.Connection:
    try:
        return connect()
    except RuntimeError as exc:
        raise HTTPException(status_code=500, detail="DATABASE_URL not configured") from exc
    except psycopg.Error as exc:  # pragma: no cover - depends on external DB
        raise HTTPException(status_code=500, detail=str(exc)) from exc


@contextmanager
def _service_context() -> Iterator[SupportInboxService]:
    conn = _get_conn()
    changes = PendingChanges()
    service = SupportInboxService(
        PostgresSupportRepository(conn), cache=get_cache(), changes=changes
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
        logger.exception("Support inbox request failed")
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    finally:
        conn.close()
    changes.flush(get_broker())


@router.get("/conversations/assigned", response_model=schemas.ConversationList)
def list_assigned(
    role: str = Depends(require_role("agent")),
    user_id: UUID = Depends(get_current_user_id),
) -> schemas.ConversationList:
    with _service_context() as svc:
        return svc.assigned_conversations(user_id)


@router.get("/conversations/waiting", response_model=schemas.ConversationList)
def list_waiting(role: str = Depends(require_role("agent"))) -> schemas.ConversationList:
    with _service_context() as svc:
        return svc.waiting_conversations()


@router.get("/conversations/escalated", response_model=schemas.ConversationList)
def list_escalated(role: str = Depends(require_role("agent"))) -> schemas.ConversationList:
    with _service_context() as svc:
        return svc.escalated_conversations()


@router.get("/summary", response_model=schemas.SupportSummary)
def summary(
    role: str = Depends(require_role("agent")),
    user_id: UUID = Depends(get_current_user_id),
) -> schemas.SupportSummary:
    with _service_context() as svc:
        return svc.summary(user_id)


@router.post(
    "/conversations",
    response_model=schemas.Conversation,
    status_code=status.HTTP_201_CREATED,
)
def start_conversation(
    payload: schemas.ConversationCreate,
    role: str = Depends(require_role("service")),
) -> schemas.Conversation:
    with _service_context() as svc:
        return svc.start_conversation(payload)


@router.post("/conversations/{conversation_id}/claim", response_model=schemas.Conversation)
def claim_conversation(
    conversation_id: UUID,
    role: str = Depends(require_role("agent")),
    user_id: UUID = Depends(get_current_user_id),
) -> schemas.Conversation:
    with _service_context() as svc:
        return svc.claim_conversation(user_id, conversation_id)


@router.post("/conversations/{conversation_id}/close", response_model=schemas.Conversation)
def close_conversation(
    conversation_id: UUID,
    role: str = Depends(require_role("agent")),
    user_id: UUID = Depends(get_current_user_id),
) -> schemas.Conversation:
    with _service_context() as svc:
        return svc.close_conversation(user_id, conversation_id)


@router.post("/conversations/{conversation_id}/resolve", response_model=schemas.Conversation)
def resolve_escalation(
    conversation_id: UUID, role: str = Depends(require_role("admin"))
) -> schemas.Conversation:
    with _service_context() as svc:
        return svc.resolve_escalation(conversation_id)


@router.get("/conversations/{conversation_id}/messages", response_model=schemas.MessageList)
def list_messages(
    conversation_id: UUID, role: str = Depends(require_role("agent"))
) -> schemas.MessageList:
    with _service_context() as svc:
        return svc.list_messages(conversation_id)


@router.post(
    "/conversations/{conversation_id}/messages",
    response_model=schemas.Message,
    status_code=status.HTTP_201_CREATED,
)
def send_message(
    conversation_id: UUID,
    payload: schemas.MessageCreate,
    role: str = Depends(require_role("agent")),
) -> schemas.Message:
    with _service_context() as svc:
        return svc.send_agent_message(conversation_id, payload.content)


@router.post(
    "/conversations/{conversation_id}/transcript",
    response_model=schemas.Message,
    status_code=status.HTTP_201_CREATED,
)
def append_transcript(
    conversation_id: UUID,
    payload: schemas.ChatTurn,
    role: str = Depends(require_role("service")),
) -> schemas.Message:
    with _service_context() as svc:
        return svc.append_transcript(conversation_id, payload)


@router.get(
    "/conversations/{conversation_id}/ai-allowed", response_model=schemas.AiGuardResponse
)
def ai_allowed(
    conversation_id: UUID, role: str = Depends(require_role("agent"))
) -> schemas.AiGuardResponse:
    """Tell the chat pipeline whether the AI may answer this conversation."""
    with _service_context() as svc:
        decision = svc.ai_may_respond(conversation_id)
    return schemas.AiGuardResponse(allowed=decision.allowed, reason=decision.reason)
