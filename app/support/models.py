"""Domain vocabulary shared by the support services."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ConversationStatus(str, Enum):
    """Lifecycle of a chat conversation."""

    ACTIVE = "active"
    WAITING_AGENT = "waiting_agent"
    WITH_AGENT = "with_agent"
    ESCALATED = "escalated"
    RESOLVED = "resolved"
    CLOSED = "closed"


class MessageRole(str, Enum):
    USER = "user"
    AGENT = "agent"
    ASSISTANT = "assistant"


class AgentStatus(str, Enum):
    """Presence states an agent can publish."""

    ONLINE = "online"
    AWAY = "away"
    BUSY = "busy"
    OFFLINE = "offline"


class Urgency(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class RouteAction(str, Enum):
    """Outcome of the support router."""

    CONTINUE_AI = "continue_ai"
    HANDOFF_TO_AGENT = "handoff_to_agent"
    CREATE_ESCALATION = "create_escalation"


class EscalationStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"


# Statuses in which an assigned agent holds one of its conversation slots.
SLOT_HOLDING_STATUSES = frozenset(
    {ConversationStatus.WITH_AGENT.value, ConversationStatus.WAITING_AGENT.value}
)

FINISHED_STATUSES = frozenset(
    {ConversationStatus.CLOSED.value, ConversationStatus.RESOLVED.value}
)

_PRIORITY_RANK = {
    Urgency.URGENT.value: 4,
    Urgency.HIGH.value: 3,
    Urgency.NORMAL.value: 2,
    Urgency.LOW.value: 1,
}


def priority_rank(priority: str | None) -> int:
    """Return a sortable rank for ``priority``; unknown or missing ranks lowest."""

    if priority is None:
        return 0
    return _PRIORITY_RANK.get(enum_value(priority), 0)


def enum_value(value):
    """Return the raw value of ``value`` when it is an enum member."""

    return value.value if isinstance(value, Enum) else value


@dataclass
class GuardDecision:
    allowed: bool
    reason: str | None = None
