"""Server-Sent Events feed of support table changes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from ..security.auth import require_role
from ..sse_utils import change_event_stream
from ..support.runtime import get_broker

router = APIRouter(prefix="/api/support", tags=["support"])

HEARTBEAT_SECONDS = 15.0


@router.get("/events")
async def stream_events(
    request: Request,
    conversation_id: str | None = None,
    role: str = Depends(require_role("agent")),
):
    """Stream ``change`` events; ``conversation_id`` limits it to that chat's messages."""
    broker = get_broker()
    subscriber = broker.subscribe()

    async def event_stream():
        try:
            async for chunk in change_event_stream(
                subscriber.queue,
                request.is_disconnected,
                conversation_id=conversation_id,
                heartbeat=HEARTBEAT_SECONDS,
            ):
                yield chunk
        finally:
            broker.unsubscribe(subscriber)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream; charset=utf-8",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
