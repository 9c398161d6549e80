"""Pydantic schemas for the support desk APIs."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from .models import AgentStatus, ConversationStatus, MessageRole, RouteAction, Urgency


class Conversation(BaseModel):
    id: UUID
    session_id: str | None = None
    user_id: UUID | None = None
    title: str | None = None
    conversation_status: str | None = None
    priority: str | None = None
    sentiment_score: float | None = None
    assigned_agent_id: UUID | None = None
    customer_email: str | None = None
    customer_name: str | None = None
    escalation_reason: str | None = None
    escalated_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class ConversationCreate(BaseModel):
    """Fields accepted when opening a conversation from the chat widget."""

    session_id: str | None = None
    user_id: UUID | None = None
    title: str | None = None
    conversation_status: ConversationStatus = ConversationStatus.ACTIVE
    customer_email: str | None = None
    customer_name: str | None = None


class ConversationList(BaseModel):
    items: list[Conversation]
    total: int


class Message(BaseModel):
    id: UUID
    conversation_id: UUID
    role: str
    content: str
    created_at: datetime


class MessageList(BaseModel):
    items: list[Message]
    total: int


class MessageCreate(BaseModel):
    content: str = Field(min_length=1)


class Agent(BaseModel):
    id: UUID
    user_id: UUID
    status: AgentStatus = AgentStatus.OFFLINE
    current_conversations: int = 0
    max_conversations: int = 5
    last_seen_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class AvailableAgent(Agent):
    """Agent entry returned by presence listings."""

    full_name: str | None = None
    available_slots: int = 0


class AvailableAgentList(BaseModel):
    items: list[AvailableAgent]
    total: int


class AgentStatusUpdate(BaseModel):
    status: AgentStatus


class Escalation(BaseModel):
    id: UUID
    conversation_id: UUID
    form_submission_id: UUID | None = None
    reason: str | None = None
    priority: str | None = None
    status: str = "open"
    created_at: datetime
    resolved_at: datetime | None = None


class SentimentAnalysis(BaseModel):
    """Classification the AI pipeline attaches to a routing request."""

    frustrationLevel: float = Field(default=0, ge=0, le=10)
    urgency: Urgency = Urgency.NORMAL
    humanNeeded: bool = False
    trigger: str = ""


class RouteRequest(BaseModel):
    conversationId: UUID
    sentiment: SentimentAnalysis
    customerEmail: str | None = None
    customerName: str | None = None


class RouteResult(BaseModel):
    action: RouteAction
    agentId: UUID | None = None
    agentName: str | None = None
    escalationId: UUID | None = None
    message: str


class ChatTurn(BaseModel):
    role: MessageRole
    content: str = ""


class ToolCall(BaseModel):
    """Tool invocation requested by the language model."""

    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class HandoffCheckRequest(BaseModel):
    messages: list[ChatTurn] = Field(default_factory=list)
    toolCall: ToolCall | None = None


class AiGuardResponse(BaseModel):
    allowed: bool
    reason: str | None = None


class SupportSummary(BaseModel):
    online_agents: int
    available_agents: int
    waiting_conversations: int
    assigned_to_me: int
    escalated_conversations: int
    open_escalations: int
