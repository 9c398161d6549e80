import json
import logging
import pathlib
import sys

from fastapi import FastAPI, Request
from starlette.testclient import TestClient

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from app.app_logging import _install_access_logging


def _create_app() -> FastAPI:
    app = FastAPI()

    @app.post("/api/support/route")
    async def route(request: Request):
        return {"rid": request.state.request_id}

    @app.get("/api/health")
    async def health():  # pragma: no cover - simple
        return {"status": "ok"}

    @app.get("/api/support/events")
    async def events():  # pragma: no cover - simple
        return {"stream": "closed"}

    _install_access_logging(app)
    return app


def test_access_logging_request_id_and_scrubbing(caplog, monkeypatch):
    monkeypatch.setenv("LOG_REQUEST_BODIES", "true")
    app = _create_app()

    with (
        TestClient(app) as client,
        caplog.at_level(logging.INFO, logger="uvicorn.access"),
    ):
        resp = client.post(
            "/api/support/route",
            json={"customer_email": "c@example.com", "conversationId": "c-1"},
            headers={"X-Request-Id": "abc", "Authorization": "Bearer secret"},
        )

        assert resp.status_code == 200
        assert resp.headers["X-Request-Id"] == "abc"
        assert resp.json() == {"rid": "abc"}

        record = caplog.records[0]
        data = json.loads(record.getMessage())
        assert data["request_id"] == "abc"
        assert data["path"] == "/api/support/route"
        assert data["status"] == 200
        assert data["headers"]["authorization"] == "***"
        assert data["body"]["customer_email"] == "***"


def test_generated_request_id_and_plain_body(caplog, monkeypatch):
    monkeypatch.setenv("LOG_REQUEST_BODIES", "true")
    app = _create_app()

    with TestClient(app) as client, caplog.at_level(logging.INFO, logger="uvicorn.access"):
        resp = client.post("/api/support/route", content=b"plain text")

        data = json.loads(caplog.records[0].getMessage())
        assert resp.headers["X-Request-Id"] == data["request_id"]
        assert data["body"] == "plain text"


def test_probes_and_event_stream_are_not_logged(caplog):
    app = _create_app()

    with TestClient(app) as client, caplog.at_level(logging.INFO, logger="uvicorn.access"):
        client.get("/api/health")
        client.get("/api/support/events")

        assert len(caplog.records) == 0
