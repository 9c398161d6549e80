"""Live support: routing, agent inbox, presence and change notifications."""

from . import schemas
from .cache import QueryCache
from .errors import SupportError
from .handoff import check_handoff, detect_handoff_request, sentiment_from_tool_call
from .inbox import SupportInboxService
from .presence import AgentPresenceService
from .realtime import ChangeBroker, ChangeEvent, PendingChanges, PostgresChangeListener
from .repository import (
    InMemorySupportRepository,
    PostgresSupportRepository,
    SupportRepository,
)
from .routing import SupportRoutingService

__all__ = [
    "AgentPresenceService",
    "ChangeBroker",
    "ChangeEvent",
    "InMemorySupportRepository",
    "PendingChanges",
    "PostgresChangeListener",
    "PostgresSupportRepository",
    "QueryCache",
    "SupportError",
    "SupportInboxService",
    "SupportRepository",
    "SupportRoutingService",
    "check_handoff",
    "detect_handoff_request",
    "schemas",
    "sentiment_from_tool_call",
]
