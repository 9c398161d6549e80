"""Support router: continue with AI, hand off to an agent, or escalate."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from . import schemas
from .errors import ConversationNotFoundError
from .models import (
    SLOT_HOLDING_STATUSES,
    AgentStatus,
    ConversationStatus,
    RouteAction,
    enum_value,
)
from .realtime import (
    AGENTS_TABLE,
    CONVERSATIONS_TABLE,
    ESCALATIONS_TABLE,
    PendingChanges,
)
from .repository import SupportRepository

logger = logging.getLogger(__name__)

CONTINUE_AI_MESSAGE = "AI can handle this conversation"
ESCALATION_MESSAGE = (
    "No agents are available right now. Your request has been saved and a "
    "team member will get back to you soon."
)
DEFAULT_AGENT_NAME = "Support Agent"
ESCALATION_FORM_NAME = "Chat Escalation"
ESCALATION_BLOCK_ID = "system-escalation"


class SupportRoutingService:
    """Decides what happens to a conversation the AI flagged for a human.

    Agents are tried least-busy first; ties go to the agent whose load
    changed longest ago, then to the lowest id. A slot is only taken through
    the repository's conditional increment, so an agent that filled up
    between the listing and the reservation is skipped rather than
    overbooked. The caller runs :meth:`route` inside one transaction.
    """

    def __init__(
        self,
        repository: SupportRepository,
        *,
        changes: PendingChanges | None = None,
    ) -> None:
        self._repository = repository
        self._changes = changes if changes is not None else PendingChanges()

    @property
    def changes(self) -> PendingChanges:
        return self._changes

    def route(self, request: schemas.RouteRequest) -> schemas.RouteResult:
        sentiment = request.sentiment
        logger.info(
            "Support router called for %s (human_needed=%s, urgency=%s)",
            request.conversationId,
            sentiment.humanNeeded,
            enum_value(sentiment.urgency),
        )
        if not sentiment.humanNeeded:
            return schemas.RouteResult(
                action=RouteAction.CONTINUE_AI, message=CONTINUE_AI_MESSAGE
            )

        conversation = self._repository.get_conversation(
            request.conversationId, for_update=True
        )
        if conversation is None:
            raise ConversationNotFoundError(
                f"Conversation {request.conversationId} not found"
            )

        if (
            conversation.conversation_status in SLOT_HOLDING_STATUSES
            and conversation.assigned_agent_id is not None
        ):
            name = self._repository.get_agent_name(conversation.assigned_agent_id)
            return self._handoff_result(conversation.assigned_agent_id, name)

        candidates = [
            agent
            for agent in self._repository.list_agents([AgentStatus.ONLINE])
            if agent.current_conversations < agent.max_conversations
        ]
        logger.info("Available agents: %d", len(candidates))

        for candidate in candidates:
            reserved = self._repository.reserve_agent_slot(candidate.id, require_online=True)
            if reserved is None:
                logger.info("Agent %s filled up before assignment, trying next", candidate.id)
                continue
            self._changes.record(AGENTS_TABLE, "UPDATE", reserved.id)
            self._repository.update_conversation(
                conversation.id,
                {
                    "assigned_agent_id": reserved.id,
                    "conversation_status": ConversationStatus.WITH_AGENT,
                    "priority": sentiment.urgency,
                    "sentiment_score": sentiment.frustrationLevel,
                    **_customer_fields(request),
                },
            )
            self._changes.record(CONVERSATIONS_TABLE, "UPDATE", conversation.id)
            logger.info(
                "Conversation %s handed off to agent %s",
                conversation.id,
                reserved.id,
                extra={"conversation_id": conversation.id, "agent_id": reserved.id},
            )
            return self._handoff_result(reserved.id, candidate.full_name)

        logger.info(
            "No agents available, creating escalation for %s",
            conversation.id,
            extra={"conversation_id": conversation.id},
        )
        return self._escalate(conversation, request)

    # ------------------------------------------------------------------
    # Helpers

    def _handoff_result(self, agent_id, name: str | None) -> schemas.RouteResult:
        target = name or "a support agent"
        return schemas.RouteResult(
            action=RouteAction.HANDOFF_TO_AGENT,
            agentId=agent_id,
            agentName=name or DEFAULT_AGENT_NAME,
            message=f"Connecting you to {target}...",
        )

    def _escalate(
        self, conversation: schemas.Conversation, request: schemas.RouteRequest
    ) -> schemas.RouteResult:
        sentiment = request.sentiment
        urgency = enum_value(sentiment.urgency)
        transcript = [
            {
                "role": message.role,
                "content": message.content,
                "timestamp": message.created_at.isoformat(),
            }
            for message in self._repository.list_messages(conversation.id)
        ]
        data: dict[str, Any] = {
            "type": "chat_escalation",
            "conversation_id": str(conversation.id),
            "priority": urgency,
            "reason": sentiment.trigger,
            "customer_email": request.customerEmail,
            "customer_name": request.customerName,
            "frustration_level": sentiment.frustrationLevel,
            "transcript": transcript,
        }
        submission_id = self._repository.create_form_submission(
            ESCALATION_FORM_NAME,
            ESCALATION_BLOCK_ID,
            data,
            {"source": "chat_escalation", "sentiment": sentiment.model_dump(mode="json")},
        )
        escalation = self._repository.create_escalation(
            conversation.id, submission_id, sentiment.trigger, urgency
        )
        self._changes.record(ESCALATIONS_TABLE, "INSERT", escalation.id, conversation.id)
        self._repository.update_conversation(
            conversation.id,
            {
                "conversation_status": ConversationStatus.ESCALATED,
                "priority": urgency,
                "sentiment_score": sentiment.frustrationLevel,
                "escalation_reason": sentiment.trigger,
                "escalated_at": datetime.now(timezone.utc),
                **_customer_fields(request),
            },
        )
        self._changes.record(CONVERSATIONS_TABLE, "UPDATE", conversation.id)
        return schemas.RouteResult(
            action=RouteAction.CREATE_ESCALATION,
            escalationId=escalation.id,
            message=ESCALATION_MESSAGE,
        )


def _customer_fields(request: schemas.RouteRequest) -> dict[str, Any]:
    """Customer details to store; absent values keep what is already saved."""

    fields: dict[str, Any] = {}
    if request.customerEmail is not None:
        fields["customer_email"] = request.customerEmail
    if request.customerName is not None:
        fields["customer_name"] = request.customerName
    return fields
