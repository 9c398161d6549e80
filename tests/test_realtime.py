import asyncio
import json
import uuid

from app.sse_utils import change_event_stream, format_sse, matches_conversation
from app.support.cache import ASSIGNED_QUERY, MESSAGES_QUERY, WAITING_QUERY, QueryCache
from app.support.realtime import (
    AGENTS_TABLE,
    CONVERSATIONS_TABLE,
    MESSAGES_TABLE,
    ChangeBroker,
    ChangeEvent,
    PendingChanges,
    PostgresChangeListener,
)
from app.support.runtime import get_broker, get_cache


def test_change_event_from_trigger_payload():
    record_id = uuid.uuid4()
    conversation_id = uuid.uuid4()
    payload = json.dumps(
        {
            "table": "chat_messages",
            "event": "insert",
            "id": str(record_id),
            "conversation_id": str(conversation_id),
        }
    )

    event = ChangeEvent.from_notification(payload)

    assert event.table == MESSAGES_TABLE
    assert event.event == "INSERT"
    assert event.record_id == str(record_id)
    assert event.conversation_id == str(conversation_id)
    assert event.to_dict()["occurred_at"] == event.occurred_at.isoformat()


def test_pending_changes_flush_and_discard():
    broker = ChangeBroker()
    seen = []
    broker.add_listener(seen.append)
    changes = PendingChanges()
    changes.record(AGENTS_TABLE, "update", uuid.uuid4())

    changes.discard()
    assert changes.flush(broker) == 0

    changes.record(CONVERSATIONS_TABLE, "insert", uuid.uuid4())
    assert changes.flush(broker) == 1
    assert len(changes) == 0
    assert [e.table for e in seen] == [CONVERSATIONS_TABLE]


def test_listener_can_be_removed_and_failures_are_isolated():
    broker = ChangeBroker()
    seen = []

    def broken(event):
        raise RuntimeError("boom")

    broker.add_listener(broken)
    remove = broker.add_listener(seen.append)
    broker.publish(ChangeEvent.for_row(AGENTS_TABLE, "UPDATE", None))
    remove()
    broker.publish(ChangeEvent.for_row(AGENTS_TABLE, "UPDATE", None))

    assert len(seen) == 1


def test_queue_subscriber_receives_events():
    broker = ChangeBroker()

    async def scenario():
        subscriber = broker.subscribe()
        broker.publish(ChangeEvent.for_row(CONVERSATIONS_TABLE, "UPDATE", "c-1"))
        event = await asyncio.wait_for(subscriber.queue.get(), timeout=1)
        broker.unsubscribe(subscriber)
        return event

    event = asyncio.run(scenario())

    assert event.record_id == "c-1"
    assert broker.subscriber_count == 0


def test_slow_subscriber_drops_overflow():
    broker = ChangeBroker(queue_size=1)

    async def scenario():
        subscriber = broker.subscribe()
        broker.publish(ChangeEvent.for_row(AGENTS_TABLE, "UPDATE", "a"))
        broker.publish(ChangeEvent.for_row(AGENTS_TABLE, "UPDATE", "b"))
        await asyncio.sleep(0)
        return subscriber.queue.qsize(), subscriber.queue.get_nowait()

    size, first = asyncio.run(scenario())

    assert size == 1
    assert first.record_id == "a"


def test_listener_ignores_malformed_payloads():
    broker = ChangeBroker()
    seen = []
    broker.add_listener(seen.append)
    listener = PostgresChangeListener("postgresql://unused", broker)

    listener.handle_payload("not json")
    listener.handle_payload(json.dumps({"event": "INSERT"}))
    listener.handle_payload(json.dumps({"table": "support_agents", "id": "x"}))

    assert [(e.table, e.event) for e in seen] == [(AGENTS_TABLE, "UPDATE")]
    assert listener.running is False


def test_cache_invalidation_is_coarse_for_conversations():
    cache = QueryCache(ttl_seconds=60)
    cache.get_or_load((WAITING_QUERY,), lambda: [1])
    cache.get_or_load((ASSIGNED_QUERY, "u-1"), lambda: [2])
    cache.get_or_load((MESSAGES_QUERY, "c-1"), lambda: [3])

    cache.handle_change(ChangeEvent.for_row(CONVERSATIONS_TABLE, "UPDATE", "c-9"))

    assert list(cache.snapshot()) == [(MESSAGES_QUERY, "c-1")]


def test_cache_ignores_agent_changes():
    cache = QueryCache(ttl_seconds=60)
    cache.get_or_load((WAITING_QUERY,), lambda: [1])

    cache.handle_change(ChangeEvent.for_row(AGENTS_TABLE, "UPDATE", "a-1"))

    assert len(cache) == 1


def test_cache_loads_once_until_invalidated():
    cache = QueryCache(ttl_seconds=60)
    calls = []

    def loader():
        calls.append(1)
        return len(calls)

    assert cache.get_or_load((WAITING_QUERY,), loader) == 1
    assert cache.get_or_load((WAITING_QUERY,), loader) == 1
    assert cache.invalidate(WAITING_QUERY) == 1
    assert cache.get_or_load((WAITING_QUERY,), loader) == 2


def test_cache_drops_rows_loaded_across_an_invalidation():
    cache = QueryCache(ttl_seconds=60)
    rows = ["old"]

    def loader():
        loaded = list(rows)
        rows.append("new")
        cache.handle_change(ChangeEvent.for_row(CONVERSATIONS_TABLE, "INSERT", "c-2"))
        return loaded

    assert cache.get_or_load((WAITING_QUERY,), loader) == ["old"]
    assert len(cache) == 0
    assert cache.get_or_load((WAITING_QUERY,), lambda: list(rows)) == ["old", "new"]


def test_cache_drops_messages_loaded_across_a_clear():
    cache = QueryCache(ttl_seconds=60)

    def loader():
        cache.clear()
        return ["stale"]

    cache.get_or_load((MESSAGES_QUERY, "c-1"), loader)

    assert len(cache) == 0


def test_unrelated_invalidation_does_not_block_store():
    cache = QueryCache(ttl_seconds=60)

    def loader():
        cache.invalidate_key((MESSAGES_QUERY, "c-1"))
        return [1]

    cache.get_or_load((WAITING_QUERY,), loader)

    assert list(cache.snapshot()) == [(WAITING_QUERY,)]


def test_runtime_cache_listens_to_shared_broker(support_runtime):
    cache = get_cache()
    cache.get_or_load((WAITING_QUERY,), lambda: [])

    get_broker().publish(ChangeEvent.for_row(CONVERSATIONS_TABLE, "INSERT", "c-1"))

    assert len(cache) == 0
    assert get_cache() is cache


def test_conversation_filter_only_passes_its_messages():
    mine = ChangeEvent.for_row(MESSAGES_TABLE, "INSERT", "m-1", "c-1")
    other = ChangeEvent.for_row(MESSAGES_TABLE, "INSERT", "m-2", "c-2")
    update = ChangeEvent.for_row(CONVERSATIONS_TABLE, "UPDATE", "c-1", "c-1")

    assert matches_conversation(mine, "c-1")
    assert not matches_conversation(other, "c-1")
    assert not matches_conversation(update, "c-1")
    assert matches_conversation(update, None)


def test_format_sse():
    assert format_sse("change", {"table": "x"}) == 'event: change\ndata: {"table": "x"}\n\n'


def test_change_stream_emits_filtered_events_and_heartbeats():
    async def scenario():
        queue: asyncio.Queue = asyncio.Queue()
        await queue.put(ChangeEvent.for_row(MESSAGES_TABLE, "INSERT", "m-2", "c-2"))
        await queue.put(ChangeEvent.for_row(MESSAGES_TABLE, "INSERT", "m-1", "c-1"))
        checks = iter([False, False, False, True])

        async def is_disconnected():
            return next(checks)

        return [
            chunk
            async for chunk in change_event_stream(
                queue, is_disconnected, conversation_id="c-1", heartbeat=0.01
            )
        ]

    chunks = asyncio.run(scenario())

    assert len(chunks) == 2
    assert chunks[0].startswith("event: change\n")
    assert json.loads(chunks[0].split("data: ", 1)[1])["record_id"] == "m-1"
    assert chunks[1] == ": ping\n\n"
