"""Support router API used by the AI chat pipeline.

Unlike the other routers, failures here are reported as ``{"error": ...}``
bodies because that is the contract chat clients already parse.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

import psycopg
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from ..core.db import connect
from ..rate_limit import ROUTE_RATE_LIMIT, limiter
from ..security.auth import require_role
from ..support import schemas
from ..support.errors import SupportError
from ..support.handoff import check_handoff
from ..support.realtime import PendingChanges
from ..support.repository import PostgresSupportRepository
from ..support.routing import SupportRoutingService
from ..support.runtime import get_broker

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/support", tags=["support"])


def _get_conn() -> psycopg.Connection:
    try:
        return connect()
    except RuntimeError as exc:
        raise HTTPException(status_code=500, detail="DATABASE_URL not configured") from exc
    except psycopg.Error as exc:  # pragma: no cover - depends on external DB
        raise HTTPException(status_code=500, detail=str(exc)) from exc


@contextmanager
def _service_context() -> Iterator[SupportRoutingService]:
    conn = _get_conn()
    changes = PendingChanges()
    service = SupportRoutingService(PostgresSupportRepository(conn), changes=changes)
    try:
        yield service
        conn.commit()
    except SupportError as exc:
        conn.rollback()
        changes.discard()
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    except HTTPException:
        conn.rollback()
        changes.discard()
        raise
    except Exception as exc:  # pragma: no cover - unexpected failure
        conn.rollback()
        changes.discard()
        logger.exception("Support router failed")
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    finally:
        conn.close()
    changes.flush(get_broker())


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _validation_message(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors(include_url=False, include_context=False):
        location = ".".join(str(part) for part in error["loc"])
        parts.append(f"{location}: {error['msg']}" if location else error["msg"])
    return "; ".join(parts)


def _route(payload: schemas.RouteRequest) -> schemas.RouteResult:
    with _service_context() as svc:
        return svc.route(payload)


@router.post(
    "/route", response_model=schemas.RouteResult, response_model_exclude_none=True
)
@limiter.limit(ROUTE_RATE_LIMIT)
async def route_conversation(
    request: Request, role: str = Depends(require_role("service"))
):
    """Continue with AI, hand off to an agent or create an escalation."""
    try:
        body = await request.json()
    except ValueError:
        return _error(400, "Request body must be valid JSON")
    try:
        payload = schemas.RouteRequest.model_validate(body)
    except ValidationError as exc:
        return _error(400, _validation_message(exc))

    try:
        result = await run_in_threadpool(_route, payload)
    except HTTPException as exc:
        return _error(exc.status_code, exc.detail)
    return result


@router.post("/handoff-check", response_model=schemas.SentimentAnalysis)
def handoff_check(
    payload: schemas.HandoffCheckRequest,
    role: str = Depends(require_role("service")),
) -> schemas.SentimentAnalysis:
    """Classify a chat turn; tool calls take precedence over keywords."""
    return check_handoff(payload.messages, payload.toolCall)
