"""Agent inbox: conversation lists, claim/close/resolve and agent messages."""

from __future__ import annotations

import logging
from uuid import UUID

from . import schemas
from .cache import (
    ASSIGNED_QUERY,
    ESCALATED_QUERY,
    MESSAGES_QUERY,
    WAITING_QUERY,
    QueryCache,
)
from .errors import (
    AgentAtCapacityError,
    AgentNotFoundError,
    ConversationAlreadyClaimedError,
    ConversationNotFoundError,
    InvalidConversationStateError,
    InvalidRequestError,
)
from .models import (
    FINISHED_STATUSES,
    SLOT_HOLDING_STATUSES,
    AgentStatus,
    ConversationStatus,
    GuardDecision,
    MessageRole,
)
from .realtime import (
    AGENTS_TABLE,
    CONVERSATIONS_TABLE,
    ESCALATIONS_TABLE,
    MESSAGES_TABLE,
    PendingChanges,
)
from .repository import SupportRepository

logger = logging.getLogger(__name__)

LIVE_AGENT_REASON = "Conversation is being handled by a live support agent."


class SupportInboxService:
    """Read models and actions behind the live support page."""

    def __init__(
        self,
        repository: SupportRepository,
        *,
        cache: QueryCache | None = None,
        changes: PendingChanges | None = None,
    ) -> None:
        self._repository = repository
        self._cache = cache if cache is not None else QueryCache()
        self._changes = changes if changes is not None else PendingChanges()

    @property
    def changes(self) -> PendingChanges:
        return self._changes

    # ------------------------------------------------------------------
    # Queries

    def assigned_conversations(self, user_id: UUID) -> schemas.ConversationList:
        def _load() -> list[schemas.Conversation]:
            agent = self._repository.get_agent_by_user(user_id)
            if agent is None:
                return []
            return self._repository.list_agent_conversations(
                agent.id, sorted(SLOT_HOLDING_STATUSES)
            )

        items = self._cache.get_or_load((ASSIGNED_QUERY, str(user_id)), _load)
        return schemas.ConversationList(items=items, total=len(items))

    def waiting_conversations(self) -> schemas.ConversationList:
        items = self._cache.get_or_load(
            (WAITING_QUERY,), self._repository.list_waiting_conversations
        )
        return schemas.ConversationList(items=items, total=len(items))

    def escalated_conversations(self) -> schemas.ConversationList:
        items = self._cache.get_or_load(
            (ESCALATED_QUERY,), self._repository.list_escalated_conversations
        )
        return schemas.ConversationList(items=items, total=len(items))

    def list_messages(self, conversation_id: UUID) -> schemas.MessageList:
        self._require_conversation(conversation_id)
        items = self._cache.get_or_load(
            (MESSAGES_QUERY, str(conversation_id)),
            lambda: self._repository.list_messages(conversation_id),
        )
        return schemas.MessageList(items=items, total=len(items))

    def ai_may_respond(self, conversation_id: UUID) -> GuardDecision:
        """Whether the AI pipeline may answer in ``conversation_id``."""

        conversation = self._repository.get_conversation(conversation_id)
        if (
            conversation is not None
            and conversation.assigned_agent_id is not None
            and conversation.conversation_status in SLOT_HOLDING_STATUSES
        ):
            return GuardDecision(False, LIVE_AGENT_REASON)
        return GuardDecision(True)

    def summary(self, user_id: UUID) -> schemas.SupportSummary:
        online = self._repository.list_agents([AgentStatus.ONLINE])
        return schemas.SupportSummary(
            online_agents=len(online),
            available_agents=sum(1 for agent in online if agent.available_slots > 0),
            waiting_conversations=self.waiting_conversations().total,
            assigned_to_me=self.assigned_conversations(user_id).total,
            escalated_conversations=self.escalated_conversations().total,
            open_escalations=self._repository.count_open_escalations(),
        )

    # ------------------------------------------------------------------
    # Actions

    def claim_conversation(
        self, user_id: UUID, conversation_id: UUID
    ) -> schemas.Conversation:
        agent = self._require_agent(user_id)
        conversation = self._require_conversation(conversation_id, for_update=True)
        status = conversation.conversation_status
        if status in FINISHED_STATUSES:
            raise InvalidConversationStateError(
                f"Conversation {conversation_id} is {status} and cannot be claimed"
            )
        holds_slot = status in SLOT_HOLDING_STATUSES and conversation.assigned_agent_id
        if holds_slot and conversation.assigned_agent_id == agent.id:
            return conversation
        if holds_slot:
            raise ConversationAlreadyClaimedError(
                f"Conversation {conversation_id} is assigned to another agent"
            )

        reserved = self._repository.reserve_agent_slot(agent.id, require_online=False)
        if reserved is None:
            raise AgentAtCapacityError(
                f"Agent already handles {agent.max_conversations} conversations"
            )
        updated = self._repository.update_conversation(
            conversation_id,
            {
                "assigned_agent_id": agent.id,
                "conversation_status": ConversationStatus.WITH_AGENT,
            },
        )
        self._changes.record(AGENTS_TABLE, "UPDATE", agent.id)
        self._changes.record(CONVERSATIONS_TABLE, "UPDATE", conversation_id)
        logger.info(
            "Agent %s claimed conversation %s",
            agent.id,
            conversation_id,
            extra={"conversation_id": conversation_id, "agent_id": agent.id},
        )
        return updated

    def close_conversation(
        self, user_id: UUID, conversation_id: UUID
    ) -> schemas.Conversation:
        agent = self._require_agent(user_id)
        conversation = self._require_conversation(conversation_id, for_update=True)
        if conversation.conversation_status == ConversationStatus.CLOSED.value:
            return conversation

        assignee = conversation.assigned_agent_id
        held_slot = (
            assignee is not None
            and conversation.conversation_status in SLOT_HOLDING_STATUSES
        )
        updated = self._repository.update_conversation(
            conversation_id, {"conversation_status": ConversationStatus.CLOSED}
        )
        self._changes.record(CONVERSATIONS_TABLE, "UPDATE", conversation_id)
        if held_slot:
            self._repository.release_agent_slot(assignee)
            self._changes.record(AGENTS_TABLE, "UPDATE", assignee)
        logger.info(
            "Agent %s closed conversation %s (released slot: %s)",
            agent.id,
            conversation_id,
            held_slot,
        )
        return updated

    def resolve_escalation(self, conversation_id: UUID) -> schemas.Conversation:
        conversation = self._require_conversation(conversation_id, for_update=True)
        if conversation.conversation_status != ConversationStatus.ESCALATED.value:
            raise InvalidConversationStateError(
                f"Conversation {conversation_id} is not escalated"
            )
        resolved = self._repository.resolve_escalations(conversation_id)
        updated = self._repository.update_conversation(
            conversation_id, {"conversation_status": ConversationStatus.RESOLVED}
        )
        if resolved:
            self._changes.record(ESCALATIONS_TABLE, "UPDATE", None, conversation_id)
        self._changes.record(CONVERSATIONS_TABLE, "UPDATE", conversation_id)
        logger.info(
            "Resolved %d escalation(s) for conversation %s", resolved, conversation_id
        )
        return updated

    def send_agent_message(self, conversation_id: UUID, content: str) -> schemas.Message:
        return self._append(conversation_id, MessageRole.AGENT, content)

    def start_conversation(self, payload: schemas.ConversationCreate) -> schemas.Conversation:
        """Open a conversation on behalf of the chat widget."""

        conversation = self._repository.create_conversation(payload)
        self._changes.record(CONVERSATIONS_TABLE, "INSERT", conversation.id)
        return conversation

    def append_transcript(self, conversation_id: UUID, turn: schemas.ChatTurn) -> schemas.Message:
        """Store a customer or AI turn; agent turns go through :meth:`send_agent_message`."""

        if turn.role == MessageRole.AGENT:
            raise InvalidRequestError("Agent messages must be sent by an agent")
        return self._append(conversation_id, turn.role, turn.content)

    def _append(self, conversation_id: UUID, role: MessageRole, content: str) -> schemas.Message:
        if not content or not content.strip():
            raise InvalidRequestError("Message content cannot be empty")
        self._require_conversation(conversation_id)
        message = self._repository.add_message(conversation_id, role, content)
        self._changes.record(MESSAGES_TABLE, "INSERT", message.id, conversation_id)
        return message

    # ------------------------------------------------------------------
    # Helpers

    def _require_agent(self, user_id: UUID) -> schemas.Agent:
        agent = self._repository.get_agent_by_user(user_id)
        if agent is None:
            raise AgentNotFoundError("No agent record found")
        return agent

    def _require_conversation(
        self, conversation_id: UUID, *, for_update: bool = False
    ) -> schemas.Conversation:
        conversation = self._repository.get_conversation(
            conversation_id, for_update=for_update
        )
        if conversation is None:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        return conversation
