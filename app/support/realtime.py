"""Change notifications for support tables.

Every committed mutation performed by the support services is published to a
:class:`ChangeBroker` as a :class:`ChangeEvent`. Subscribers are either
callables (the inbox query cache uses one to invalidate itself) or asyncio
queues feeding the Server-Sent Events endpoint.

Writes made by other processes reach the broker through
:class:`PostgresChangeListener`, which ``LISTEN``s on the channel the
``schema.sql`` triggers ``pg_notify`` into. Events carry no ordering
guarantee across tables and may be delivered twice when both paths see the
same write; consumers only use them to invalidate state.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

import psycopg
from psycopg import sql

logger = logging.getLogger(__name__)

CONVERSATIONS_TABLE = "chat_conversations"
MESSAGES_TABLE = "chat_messages"
AGENTS_TABLE = "support_agents"
ESCALATIONS_TABLE = "support_escalations"


@dataclass(frozen=True)
class ChangeEvent:
    """A row-level change on one of the watched tables."""

    table: str
    event: str
    record_id: str | None = None
    conversation_id: str | None = None
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def for_row(
        cls,
        table: str,
        event: str,
        record_id: UUID | str | None,
        conversation_id: UUID | str | None = None,
    ) -> "ChangeEvent":
        return cls(
            table=table,
            event=event.upper(),
            record_id=str(record_id) if record_id is not None else None,
            conversation_id=str(conversation_id) if conversation_id is not None else None,
        )

    @classmethod
    def from_notification(cls, payload: str) -> "ChangeEvent":
        """Parse the JSON payload emitted by the ``notify_support_change`` trigger."""

        data = json.loads(payload)
        return cls.for_row(
            data["table"],
            data.get("event", "UPDATE"),
            data.get("id"),
            data.get("conversation_id"),
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["occurred_at"] = self.occurred_at.isoformat()
        return data


ChangeCallback = Callable[[ChangeEvent], None]


class PendingChanges:
    """Changes recorded inside a transaction, published once it commits."""

    def __init__(self) -> None:
        self._events: list[ChangeEvent] = []

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self):
        return iter(list(self._events))

    def record(
        self,
        table: str,
        event: str,
        record_id: UUID | str | None,
        conversation_id: UUID | str | None = None,
    ) -> None:
        self._events.append(ChangeEvent.for_row(table, event, record_id, conversation_id))

    def flush(self, broker: "ChangeBroker") -> int:
        events, self._events = self._events, []
        broker.publish_all(events)
        return len(events)

    def discard(self) -> None:
        self._events.clear()


class _QueueSubscriber:
    def __init__(self, loop: asyncio.AbstractEventLoop, maxsize: int) -> None:
        self.loop = loop
        self.queue: asyncio.Queue[ChangeEvent] = asyncio.Queue(maxsize=maxsize)

    def deliver(self, event: ChangeEvent) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Dropping %s change for a slow subscriber", event.table)


class ChangeBroker:
    """Thread-safe fan-out of :class:`ChangeEvent` objects."""

    def __init__(self, queue_size: int = 100) -> None:
        self._queue_size = queue_size
        self._callbacks: list[ChangeCallback] = []
        self._queues: list[_QueueSubscriber] = []
        self._lock = threading.Lock()

    def add_listener(self, callback: ChangeCallback) -> Callable[[], None]:
        """Register a synchronous callback; returns a function removing it."""

        with self._lock:
            self._callbacks.append(callback)

        def _remove() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return _remove

    def subscribe(self) -> _QueueSubscriber:
        """Create a queue subscriber bound to the running event loop."""

        subscriber = _QueueSubscriber(asyncio.get_running_loop(), self._queue_size)
        with self._lock:
            self._queues.append(subscriber)
        return subscriber

    def unsubscribe(self, subscriber: _QueueSubscriber) -> None:
        with self._lock:
            if subscriber in self._queues:
                self._queues.remove(subscriber)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._queues)

    def publish(self, event: ChangeEvent) -> None:
        with self._lock:
            callbacks = list(self._callbacks)
            queues = list(self._queues)
        for callback in callbacks:
            try:
                callback(event)
            except Exception:
                logger.exception("Change listener failed for %s", event.table)
        for subscriber in queues:
            if subscriber.loop.is_closed():
                self.unsubscribe(subscriber)
                continue
            subscriber.loop.call_soon_threadsafe(subscriber.deliver, event)

    def publish_all(self, events: list[ChangeEvent]) -> None:
        for event in events:
            self.publish(event)


class PostgresChangeListener:
    """Background thread relaying ``pg_notify`` payloads to a broker."""

    def __init__(
        self,
        database_url: str,
        broker: ChangeBroker,
        channel: str = "support_changes",
        *,
        poll_timeout: float = 1.0,
    ) -> None:
        self._database_url = database_url
        self._broker = broker
        self._channel = channel
        self._poll_timeout = poll_timeout
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="support-change-listener", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def handle_payload(self, payload: str) -> None:
        try:
            event = ChangeEvent.from_notification(payload)
        except (ValueError, KeyError):
            logger.warning("Ignoring malformed change notification: %r", payload)
            return
        self._broker.publish(event)

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                with psycopg.connect(self._database_url, autocommit=True) as conn:
                    conn.execute(sql.SQL("LISTEN {}").format(sql.Identifier(self._channel)))
                    logger.info("Listening for support changes on %s", self._channel)
                    while not self._stop.is_set():
                        for notify in conn.notifies(timeout=self._poll_timeout):
                            self.handle_payload(notify.payload)
            except psycopg.Error:
                logger.exception("Support change listener lost its connection")
                self._stop.wait(self._poll_timeout)
