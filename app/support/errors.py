"""Exceptions raised by the support desk services."""

from __future__ import annotations


class SupportError(RuntimeError):
    """Base class for support desk failures mapped to HTTP responses."""

    status_code = 500


class InvalidRequestError(SupportError):
    """Raised when a request payload cannot be processed."""

    status_code = 400


class ConversationNotFoundError(SupportError):
    """Raised when a conversation could not be located."""

    status_code = 404


class AgentNotFoundError(SupportError):
    """Raised when the caller has no support agent record."""

    status_code = 404


class ConversationAlreadyClaimedError(SupportError):
    """Raised when another agent already owns the conversation."""

    status_code = 409


class AgentAtCapacityError(SupportError):
    """Raised when an agent has no free conversation slot."""

    status_code = 409


class InvalidConversationStateError(SupportError):
    """Raised when an action does not apply to the conversation's status."""

    status_code = 409


__all__ = [
    "AgentAtCapacityError",
    "AgentNotFoundError",
    "ConversationAlreadyClaimedError",
    "ConversationNotFoundError",
    "InvalidConversationStateError",
    "InvalidRequestError",
    "SupportError",
]
