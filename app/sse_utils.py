"""SSE helpers for the support change feed.

Event format produced:
- "event: change" with "data: <json ChangeEvent>" for every matching change
- ": ping" comment lines while the stream is idle, so proxies keep it open
"""

import asyncio
import json
from typing import AsyncIterator, Awaitable, Callable, Optional

from .support.realtime import MESSAGES_TABLE, ChangeEvent


def format_sse(event: str, data: object) -> str:
    payload = json.dumps(data, ensure_ascii=False)
    return f"event: {event}\ndata: {payload}\n\n"


def matches_conversation(event: ChangeEvent, conversation_id: Optional[str]) -> bool:
    """Whether ``event`` belongs on a stream filtered by ``conversation_id``.

    Without a filter every change passes. With one, only message inserts of
    that conversation do, mirroring the per-conversation message channel.
    """
    if not conversation_id:
        return True
    return (
        event.table == MESSAGES_TABLE
        and event.event == "INSERT"
        and event.conversation_id == conversation_id
    )


async def change_event_stream(
    queue: "asyncio.Queue[ChangeEvent]",
    is_disconnected: Callable[[], Awaitable[bool]],
    *,
    conversation_id: Optional[str] = None,
    heartbeat: float = 15.0,
) -> AsyncIterator[str]:
    """Yield SSE frames from ``queue`` until the client goes away."""
    while True:
        if await is_disconnected():
            break
        try:
            event = await asyncio.wait_for(queue.get(), timeout=heartbeat)
        except asyncio.TimeoutError:
            yield ": ping\n\n"
            continue
        if matches_conversation(event, conversation_id):
            yield format_sse("change", event.to_dict())
