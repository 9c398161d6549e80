"""Persistence for conversations, messages, agents and escalations."""
from __future__ import annotations

import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Sequence
from uuid import UUID

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from . import schemas
from .errors import ConversationNotFoundError
from .models import (
    AgentStatus,
    ConversationStatus,
    EscalationStatus,
    enum_value,
    priority_rank,
)

# Columns callers may change through ``update_conversation``.
CONVERSATION_UPDATABLE_FIELDS = frozenset(
    {
        "title",
        "conversation_status",
        "priority",
        "sentiment_score",
        "assigned_agent_id",
        "customer_email",
        "customer_name",
        "escalation_reason",
        "escalated_at",
    }
)


class SupportRepository(Protocol):
    """Abstraction over the support tables used by the services."""

    def create_conversation(self, payload: schemas.ConversationCreate) -> schemas.Conversation: ...

    def get_conversation(
        self, conversation_id: UUID, *, for_update: bool = False
    ) -> Optional[schemas.Conversation]: ...

    def update_conversation(
        self, conversation_id: UUID, fields: Dict[str, Any]
    ) -> schemas.Conversation: ...

    def list_agent_conversations(
        self, agent_id: UUID, statuses: Sequence[str]
    ) -> List[schemas.Conversation]: ...

    def list_waiting_conversations(self) -> List[schemas.Conversation]: ...

    def list_escalated_conversations(self) -> List[schemas.Conversation]: ...

    def add_message(self, conversation_id: UUID, role: str, content: str) -> schemas.Message: ...

    def list_messages(self, conversation_id: UUID) -> List[schemas.Message]: ...

    def get_agent(self, agent_id: UUID) -> Optional[schemas.Agent]: ...

    def get_agent_by_user(self, user_id: UUID) -> Optional[schemas.Agent]: ...

    def get_agent_name(self, agent_id: UUID) -> Optional[str]: ...

    def create_agent(
        self, user_id: UUID, *, status: str, max_conversations: int
    ) -> schemas.Agent: ...

    def update_agent_status(self, user_id: UUID, status: str) -> Optional[schemas.Agent]: ...

    def list_agents(self, statuses: Sequence[str]) -> List[schemas.AvailableAgent]: ...

    def reserve_agent_slot(
        self, agent_id: UUID, *, require_online: bool = True
    ) -> Optional[schemas.Agent]: ...

    def release_agent_slot(self, agent_id: UUID) -> Optional[schemas.Agent]: ...

    def create_form_submission(
        self,
        form_name: str,
        block_id: str,
        data: Dict[str, Any],
        metadata: Dict[str, Any],
    ) -> UUID: ...

    def create_escalation(
        self,
        conversation_id: UUID,
        form_submission_id: UUID,
        reason: Optional[str],
        priority: Optional[str],
    ) -> schemas.Escalation: ...

    def resolve_escalations(self, conversation_id: UUID) -> int: ...

    def count_open_escalations(self) -> int: ...


def _clean_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(fields) - CONVERSATION_UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported conversation fields: {sorted(unknown)}")
    return {key: enum_value(value) for key, value in fields.items()}


# ---------------------------------------------------------------------------
# Postgres repository implementation

_AGENT_COLUMNS = (
    "id, user_id, status, current_conversations, max_conversations, "
    "last_seen_at, created_at, updated_at"
)

_PRIORITY_ORDER = (
    "CASE priority WHEN 'urgent' THEN 4 WHEN 'high' THEN 3 "
    "WHEN 'normal' THEN 2 WHEN 'low' THEN 1 ELSE 0 END"
)


class PostgresSupportRepository:
    """PostgreSQL-backed support repository.

    The repository never commits; the caller owns the transaction so a
    routing decision or a claim either lands completely or not at all.
    """

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def _cursor(self):
        return self._conn.cursor(row_factory=dict_row)

    # Conversations -----------------------------------------------------------
    def create_conversation(self, payload: schemas.ConversationCreate) -> schemas.Conversation:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO chat_conversations
                    (session_id, user_id, title, conversation_status, customer_email, customer_name)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    payload.session_id,
                    payload.user_id,
                    payload.title,
                    enum_value(payload.conversation_status),
                    payload.customer_email,
                    payload.customer_name,
                ),
            )
            row = cur.fetchone()
        return schemas.Conversation(**row)

    def get_conversation(
        self, conversation_id: UUID, *, for_update: bool = False
    ) -> Optional[schemas.Conversation]:
        query = "SELECT * FROM chat_conversations WHERE id = %s"
        if for_update:
            query += " FOR UPDATE"
        with self._cursor() as cur:
            cur.execute(query, (conversation_id,))
            row = cur.fetchone()
        if not row:
            return None
        return schemas.Conversation(**row)

    def update_conversation(
        self, conversation_id: UUID, fields: Dict[str, Any]
    ) -> schemas.Conversation:
        cleaned = _clean_fields(fields)
        assignments = [f"{column} = %s" for column in cleaned]
        values: List[Any] = list(cleaned.values())
        assignments.append("updated_at = now()")
        values.append(conversation_id)
        query = (
            "UPDATE chat_conversations SET "
            f"{', '.join(assignments)} "
            "WHERE id = %s RETURNING *"
        )
        with self._cursor() as cur:
            cur.execute(query, values)
            row = cur.fetchone()
        if not row:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        return schemas.Conversation(**row)

    def list_agent_conversations(
        self, agent_id: UUID, statuses: Sequence[str]
    ) -> List[schemas.Conversation]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT * FROM chat_conversations
                WHERE assigned_agent_id = %s AND conversation_status = ANY(%s)
                ORDER BY updated_at DESC
                """,
                (agent_id, [enum_value(s) for s in statuses]),
            )
            rows = cur.fetchall()
        return [schemas.Conversation(**row) for row in rows]

    def list_waiting_conversations(self) -> List[schemas.Conversation]:
        with self._cursor() as cur:
            cur.execute(
                f"""
                SELECT * FROM chat_conversations
                WHERE conversation_status = %s AND assigned_agent_id IS NULL
                ORDER BY {_PRIORITY_ORDER} DESC, created_at ASC
                """,
                (ConversationStatus.WAITING_AGENT.value,),
            )
            rows = cur.fetchall()
        return [schemas.Conversation(**row) for row in rows]

    def list_escalated_conversations(self) -> List[schemas.Conversation]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT * FROM chat_conversations
                WHERE conversation_status = %s
                ORDER BY escalated_at DESC NULLS LAST
                """,
                (ConversationStatus.ESCALATED.value,),
            )
            rows = cur.fetchall()
        return [schemas.Conversation(**row) for row in rows]

    # Messages ----------------------------------------------------------------
    def add_message(self, conversation_id: UUID, role: str, content: str) -> schemas.Message:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO chat_messages (conversation_id, role, content)
                VALUES (%s, %s, %s)
                RETURNING id, conversation_id, role, content, created_at
                """,
                (conversation_id, enum_value(role), content),
            )
            row = cur.fetchone()
        return schemas.Message(**row)

    def list_messages(self, conversation_id: UUID) -> List[schemas.Message]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT id, conversation_id, role, content, created_at
                FROM chat_messages
                WHERE conversation_id = %s
                ORDER BY created_at ASC
                """,
                (conversation_id,),
            )
            rows = cur.fetchall()
        return [schemas.Message(**row) for row in rows]

    # Agents ------------------------------------------------------------------
    def get_agent(self, agent_id: UUID) -> Optional[schemas.Agent]:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {_AGENT_COLUMNS} FROM support_agents WHERE id = %s",
                (agent_id,),
            )
            row = cur.fetchone()
        return schemas.Agent(**row) if row else None

    def get_agent_by_user(self, user_id: UUID) -> Optional[schemas.Agent]:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {_AGENT_COLUMNS} FROM support_agents WHERE user_id = %s",
                (user_id,),
            )
            row = cur.fetchone()
        return schemas.Agent(**row) if row else None

    def get_agent_name(self, agent_id: UUID) -> Optional[str]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT p.full_name
                FROM support_agents a
                JOIN profiles p ON p.id = a.user_id
                WHERE a.id = %s
                """,
                (agent_id,),
            )
            row = cur.fetchone()
        return row["full_name"] if row else None

    def create_agent(
        self, user_id: UUID, *, status: str, max_conversations: int
    ) -> schemas.Agent:
        with self._cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO support_agents (user_id, status, max_conversations)
                VALUES (%s, %s, %s)
                ON CONFLICT (user_id) DO UPDATE SET user_id = EXCLUDED.user_id
                RETURNING {_AGENT_COLUMNS}
                """,
                (user_id, enum_value(status), max_conversations),
            )
            row = cur.fetchone()
        return schemas.Agent(**row)

    def update_agent_status(self, user_id: UUID, status: str) -> Optional[schemas.Agent]:
        with self._cursor() as cur:
            cur.execute(
                f"""
                UPDATE support_agents
                SET status = %s, last_seen_at = now(), updated_at = now()
                WHERE user_id = %s
                RETURNING {_AGENT_COLUMNS}
                """,
                (enum_value(status), user_id),
            )
            row = cur.fetchone()
        return schemas.Agent(**row) if row else None

    def list_agents(self, statuses: Sequence[str]) -> List[schemas.AvailableAgent]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT a.id, a.user_id, a.status, a.current_conversations,
                       a.max_conversations, a.last_seen_at, a.created_at, a.updated_at,
                       p.full_name,
                       GREATEST(a.max_conversations - a.current_conversations, 0) AS available_slots
                FROM support_agents a
                LEFT JOIN profiles p ON p.id = a.user_id
                WHERE a.status = ANY(%s)
                ORDER BY a.current_conversations ASC, a.updated_at ASC, a.id ASC
                """,
                ([enum_value(s) for s in statuses],),
            )
            rows = cur.fetchall()
        return [schemas.AvailableAgent(**row) for row in rows]

    def reserve_agent_slot(
        self, agent_id: UUID, *, require_online: bool = True
    ) -> Optional[schemas.Agent]:
        query = (
            "UPDATE support_agents "
            "SET current_conversations = current_conversations + 1, updated_at = now() "
            "WHERE id = %s AND current_conversations < max_conversations"
        )
        params: List[Any] = [agent_id]
        if require_online:
            query += " AND status = %s"
            params.append(AgentStatus.ONLINE.value)
        query += f" RETURNING {_AGENT_COLUMNS}"
        with self._cursor() as cur:
            cur.execute(query, params)
            row = cur.fetchone()
        return schemas.Agent(**row) if row else None

    def release_agent_slot(self, agent_id: UUID) -> Optional[schemas.Agent]:
        with self._cursor() as cur:
            cur.execute(
                f"""
                UPDATE support_agents
                SET current_conversations = GREATEST(current_conversations - 1, 0),
                    updated_at = now()
                WHERE id = %s
                RETURNING {_AGENT_COLUMNS}
                """,
                (agent_id,),
            )
            row = cur.fetchone()
        return schemas.Agent(**row) if row else None

    # Escalations -------------------------------------------------------------
    def create_form_submission(
        self,
        form_name: str,
        block_id: str,
        data: Dict[str, Any],
        metadata: Dict[str, Any],
    ) -> UUID:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO form_submissions (form_name, block_id, data, metadata)
                VALUES (%s, %s, %s, %s)
                RETURNING id
                """,
                (form_name, block_id, Jsonb(data), Jsonb(metadata)),
            )
            row = cur.fetchone()
        return row["id"]

    def create_escalation(
        self,
        conversation_id: UUID,
        form_submission_id: UUID,
        reason: Optional[str],
        priority: Optional[str],
    ) -> schemas.Escalation:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO support_escalations
                    (conversation_id, form_submission_id, reason, priority)
                VALUES (%s, %s, %s, %s)
                RETURNING *
                """,
                (conversation_id, form_submission_id, reason, enum_value(priority)),
            )
            row = cur.fetchone()
        return schemas.Escalation(**row)

    def resolve_escalations(self, conversation_id: UUID) -> int:
        with self._cursor() as cur:
            cur.execute(
                """
                UPDATE support_escalations
                SET status = %s, resolved_at = now()
                WHERE conversation_id = %s AND status = %s
                """,
                (
                    EscalationStatus.RESOLVED.value,
                    conversation_id,
                    EscalationStatus.OPEN.value,
                ),
            )
            return cur.rowcount

    def count_open_escalations(self) -> int:
        with self._cursor() as cur:
            cur.execute(
                "SELECT COUNT(*) AS open FROM support_escalations WHERE status = %s",
                (EscalationStatus.OPEN.value,),
            )
            row = cur.fetchone() or {"open": 0}
        return int(row["open"])


# ---------------------------------------------------------------------------
# In-memory repository used in development and tests


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemorySupportRepository(SupportRepository):
    def __init__(self) -> None:
        self._conversations: Dict[UUID, schemas.Conversation] = {}
        self._messages: Dict[UUID, List[schemas.Message]] = {}
        self._agents: Dict[UUID, schemas.Agent] = {}
        self._profiles: Dict[UUID, Dict[str, Optional[str]]] = {}
        self._form_submissions: Dict[UUID, Dict[str, Any]] = {}
        self._escalations: Dict[UUID, schemas.Escalation] = {}
        self._lock = threading.RLock()

    # Fixtures ----------------------------------------------------------------
    def register_profile(
        self, user_id: UUID, full_name: Optional[str] = None, email: Optional[str] = None
    ) -> None:
        self._profiles[user_id] = {"full_name": full_name, "email": email}

    def form_submission(self, submission_id: UUID) -> Optional[Dict[str, Any]]:
        return self._form_submissions.get(submission_id)

    def escalations_for(self, conversation_id: UUID) -> List[schemas.Escalation]:
        return [e for e in self._escalations.values() if e.conversation_id == conversation_id]

    # Conversations -----------------------------------------------------------
    def create_conversation(self, payload: schemas.ConversationCreate) -> schemas.Conversation:
        now = _utcnow()
        conversation = schemas.Conversation(
            id=uuid.uuid4(),
            created_at=now,
            updated_at=now,
            **payload.model_dump(mode="json"),
        )
        with self._lock:
            self._conversations[conversation.id] = conversation
            self._messages[conversation.id] = []
        return conversation.model_copy()

    def get_conversation(
        self, conversation_id: UUID, *, for_update: bool = False
    ) -> Optional[schemas.Conversation]:
        conversation = self._conversations.get(conversation_id)
        return conversation.model_copy() if conversation else None

    def update_conversation(
        self, conversation_id: UUID, fields: Dict[str, Any]
    ) -> schemas.Conversation:
        cleaned = _clean_fields(fields)
        with self._lock:
            existing = self._conversations.get(conversation_id)
            if existing is None:
                raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
            updated = existing.model_copy(update={**cleaned, "updated_at": _utcnow()})
            self._conversations[conversation_id] = updated
        return updated.model_copy()

    def list_agent_conversations(
        self, agent_id: UUID, statuses: Sequence[str]
    ) -> List[schemas.Conversation]:
        wanted = {enum_value(s) for s in statuses}
        items = [
            c
            for c in self._conversations.values()
            if c.assigned_agent_id == agent_id and c.conversation_status in wanted
        ]
        items.sort(key=lambda c: c.updated_at, reverse=True)
        return [c.model_copy() for c in items]

    def list_waiting_conversations(self) -> List[schemas.Conversation]:
        items = [
            c
            for c in self._conversations.values()
            if c.conversation_status == ConversationStatus.WAITING_AGENT.value
            and c.assigned_agent_id is None
        ]
        items.sort(key=lambda c: (-priority_rank(c.priority), c.created_at))
        return [c.model_copy() for c in items]

    def list_escalated_conversations(self) -> List[schemas.Conversation]:
        items = [
            c
            for c in self._conversations.values()
            if c.conversation_status == ConversationStatus.ESCALATED.value
        ]
        floor = datetime.min.replace(tzinfo=timezone.utc)
        items.sort(key=lambda c: c.escalated_at or floor, reverse=True)
        return [c.model_copy() for c in items]

    # Messages ----------------------------------------------------------------
    def add_message(self, conversation_id: UUID, role: str, content: str) -> schemas.Message:
        message = schemas.Message(
            id=uuid.uuid4(),
            conversation_id=conversation_id,
            role=enum_value(role),
            content=content,
            created_at=_utcnow(),
        )
        with self._lock:
            self._messages.setdefault(conversation_id, []).append(message)
        return message.model_copy()

    def list_messages(self, conversation_id: UUID) -> List[schemas.Message]:
        messages = sorted(self._messages.get(conversation_id, []), key=lambda m: m.created_at)
        return [m.model_copy() for m in messages]

    # Agents ------------------------------------------------------------------
    def get_agent(self, agent_id: UUID) -> Optional[schemas.Agent]:
        agent = self._agents.get(agent_id)
        return agent.model_copy() if agent else None

    def get_agent_by_user(self, user_id: UUID) -> Optional[schemas.Agent]:
        for agent in self._agents.values():
            if agent.user_id == user_id:
                return agent.model_copy()
        return None

    def get_agent_name(self, agent_id: UUID) -> Optional[str]:
        agent = self._agents.get(agent_id)
        if agent is None:
            return None
        return self._profiles.get(agent.user_id, {}).get("full_name")

    def create_agent(
        self, user_id: UUID, *, status: str, max_conversations: int
    ) -> schemas.Agent:
        with self._lock:
            existing = self.get_agent_by_user(user_id)
            if existing:
                return existing
            now = _utcnow()
            agent = schemas.Agent(
                id=uuid.uuid4(),
                user_id=user_id,
                status=enum_value(status),
                current_conversations=0,
                max_conversations=max_conversations,
                last_seen_at=now,
                created_at=now,
                updated_at=now,
            )
            self._agents[agent.id] = agent
        return agent.model_copy()

    def update_agent_status(self, user_id: UUID, status: str) -> Optional[schemas.Agent]:
        with self._lock:
            agent = self.get_agent_by_user(user_id)
            if agent is None:
                return None
            now = _utcnow()
            updated = agent.model_copy(
                update={"status": AgentStatus(enum_value(status)), "last_seen_at": now, "updated_at": now}
            )
            self._agents[agent.id] = updated
        return updated.model_copy()

    def set_agent_load(
        self, agent_id: UUID, current_conversations: int, max_conversations: Optional[int] = None
    ) -> schemas.Agent:
        """Test helper mirroring a direct table edit."""

        with self._lock:
            agent = self._agents[agent_id]
            update: Dict[str, Any] = {"current_conversations": current_conversations}
            if max_conversations is not None:
                update["max_conversations"] = max_conversations
            self._agents[agent_id] = agent.model_copy(update=update)
        return self._agents[agent_id].model_copy()

    def list_agents(self, statuses: Sequence[str]) -> List[schemas.AvailableAgent]:
        wanted = {enum_value(s) for s in statuses}
        agents = [a for a in self._agents.values() if a.status.value in wanted]
        agents.sort(key=lambda a: (a.current_conversations, a.updated_at, str(a.id)))
        return [
            schemas.AvailableAgent(
                **agent.model_dump(),
                full_name=self._profiles.get(agent.user_id, {}).get("full_name"),
                available_slots=max(agent.max_conversations - agent.current_conversations, 0),
            )
            for agent in agents
        ]

    def reserve_agent_slot(
        self, agent_id: UUID, *, require_online: bool = True
    ) -> Optional[schemas.Agent]:
        with self._lock:
            agent = self._agents.get(agent_id)
            if agent is None:
                return None
            if agent.current_conversations >= agent.max_conversations:
                return None
            if require_online and agent.status != AgentStatus.ONLINE:
                return None
            updated = agent.model_copy(
                update={
                    "current_conversations": agent.current_conversations + 1,
                    "updated_at": _utcnow(),
                }
            )
            self._agents[agent_id] = updated
        return updated.model_copy()

    def release_agent_slot(self, agent_id: UUID) -> Optional[schemas.Agent]:
        with self._lock:
            agent = self._agents.get(agent_id)
            if agent is None:
                return None
            updated = agent.model_copy(
                update={
                    "current_conversations": max(agent.current_conversations - 1, 0),
                    "updated_at": _utcnow(),
                }
            )
            self._agents[agent_id] = updated
        return updated.model_copy()

    # Escalations -------------------------------------------------------------
    def create_form_submission(
        self,
        form_name: str,
        block_id: str,
        data: Dict[str, Any],
        metadata: Dict[str, Any],
    ) -> UUID:
        submission_id = uuid.uuid4()
        self._form_submissions[submission_id] = {
            "id": submission_id,
            "form_name": form_name,
            "block_id": block_id,
            "data": data,
            "metadata": metadata,
            "created_at": _utcnow(),
        }
        return submission_id

    def create_escalation(
        self,
        conversation_id: UUID,
        form_submission_id: UUID,
        reason: Optional[str],
        priority: Optional[str],
    ) -> schemas.Escalation:
        escalation = schemas.Escalation(
            id=uuid.uuid4(),
            conversation_id=conversation_id,
            form_submission_id=form_submission_id,
            reason=reason,
            priority=enum_value(priority),
            status=EscalationStatus.OPEN.value,
            created_at=_utcnow(),
        )
        self._escalations[escalation.id] = escalation
        return escalation.model_copy()

    def resolve_escalations(self, conversation_id: UUID) -> int:
        resolved = 0
        with self._lock:
            for escalation_id, escalation in list(self._escalations.items()):
                if (
                    escalation.conversation_id == conversation_id
                    and escalation.status == EscalationStatus.OPEN.value
                ):
                    self._escalations[escalation_id] = escalation.model_copy(
                        update={
                            "status": EscalationStatus.RESOLVED.value,
                            "resolved_at": _utcnow(),
                        }
                    )
                    resolved += 1
        return resolved

    def count_open_escalations(self) -> int:
        return sum(
            1 for e in self._escalations.values() if e.status == EscalationStatus.OPEN.value
        )
