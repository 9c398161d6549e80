"""Query cache for the support inbox lists.

Entries are keyed by a tuple whose first element names the query. A change on
``chat_conversations`` invalidates every conversation list regardless of which
row changed; message inserts only invalidate that conversation's messages.

Each query name carries a generation that every invalidation bumps. A load
that started before an invalidation still returns its rows to the caller but
is not stored, so the next request reads fresh data.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Hashable
from typing import Any, TypeVar

from cachetools import TTLCache

from .realtime import CONVERSATIONS_TABLE, MESSAGES_TABLE, ChangeEvent

logger = logging.getLogger(__name__)

T = TypeVar("T")

ASSIGNED_QUERY = "support-assigned-conversations"
WAITING_QUERY = "support-waiting-conversations"
ESCALATED_QUERY = "support-escalated-conversations"
MESSAGES_QUERY = "conversation-messages"

CONVERSATION_LIST_QUERIES = (ASSIGNED_QUERY, WAITING_QUERY, ESCALATED_QUERY)


class QueryCache:
    def __init__(self, ttl_seconds: float = 30.0, maxsize: int = 512) -> None:
        self._entries: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl_seconds)
        self._generations: dict[Hashable, int] = {}
        self._epoch = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_or_load(self, key: tuple[Hashable, ...], loader: Callable[[], T]) -> T:
        query = key[0]
        with self._lock:
            if key in self._entries:
                return self._entries[key]
            generation = self._generation(query)
        value = loader()
        with self._lock:
            if self._generation(query) == generation:
                self._entries[key] = value
            else:
                logger.debug("Discarding %s rows loaded before an invalidation", query)
        return value

    def _generation(self, query: Hashable) -> tuple[int, int]:
        return self._epoch, self._generations.get(query, 0)

    def _bump(self, query: Hashable) -> None:
        self._generations[query] = self._generations.get(query, 0) + 1

    def invalidate(self, query: str) -> int:
        """Drop every entry whose key starts with ``query``."""

        with self._lock:
            self._bump(query)
            stale = [key for key in list(self._entries.keys()) if key[0] == query]
            for key in stale:
                self._entries.pop(key, None)
        return len(stale)

    def invalidate_key(self, key: tuple[Hashable, ...]) -> None:
        with self._lock:
            self._bump(key[0])
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._epoch += 1
            self._entries.clear()

    def handle_change(self, event: ChangeEvent) -> None:
        """Broker callback applying coarse invalidation."""

        if event.table == CONVERSATIONS_TABLE:
            dropped = sum(self.invalidate(query) for query in CONVERSATION_LIST_QUERIES)
            logger.debug("Conversation change invalidated %d cached lists", dropped)
        elif event.table == MESSAGES_TABLE and event.conversation_id:
            self.invalidate_key((MESSAGES_QUERY, event.conversation_id))

    def snapshot(self) -> dict[Any, Any]:
        with self._lock:
            return dict(self._entries)
