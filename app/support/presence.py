"""Agent presence: registration, status changes and availability."""
from __future__ import annotations

import logging
from typing import List, Optional
from uuid import UUID

from . import schemas
from .errors import AgentNotFoundError
from .models import AgentStatus
from .realtime import AGENTS_TABLE, PendingChanges
from .repository import SupportRepository

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONVERSATIONS = 5


class AgentPresenceService:
    def __init__(
        self,
        repository: SupportRepository,
        *,
        changes: Optional[PendingChanges] = None,
        default_max_conversations: int = DEFAULT_MAX_CONVERSATIONS,
    ) -> None:
        self._repository = repository
        self._changes = changes if changes is not None else PendingChanges()
        self._default_max = default_max_conversations

    @property
    def changes(self) -> PendingChanges:
        return self._changes

    def get_agent(self, user_id: UUID) -> schemas.Agent:
        agent = self._repository.get_agent_by_user(user_id)
        if agent is None:
            raise AgentNotFoundError("No agent record found")
        return agent

    def register_agent(self, user_id: UUID) -> schemas.Agent:
        """Create an offline agent record, or return the existing one."""

        existing = self._repository.get_agent_by_user(user_id)
        if existing is not None:
            return existing
        agent = self._repository.create_agent(
            user_id, status=AgentStatus.OFFLINE, max_conversations=self._default_max
        )
        self._changes.record(AGENTS_TABLE, "INSERT", agent.id)
        logger.info("Registered support agent %s for user %s", agent.id, user_id)
        return agent

    def update_status(self, user_id: UUID, status: AgentStatus) -> schemas.Agent:
        agent = self._repository.update_agent_status(user_id, status)
        if agent is None:
            raise AgentNotFoundError("No agent record found")
        self._changes.record(AGENTS_TABLE, "UPDATE", agent.id)
        logger.info("Agent %s is now %s", agent.id, agent.status.value)
        return agent

    def go_online(self, user_id: UUID) -> schemas.Agent:
        self.register_agent(user_id)
        return self.update_status(user_id, AgentStatus.ONLINE)

    def list_available_agents(self) -> List[schemas.AvailableAgent]:
        return self._repository.list_agents([AgentStatus.ONLINE, AgentStatus.AWAY])
