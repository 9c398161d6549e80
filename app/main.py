"""FastAPI application wiring for the live support service.

- Configures logging, CORS (optional for the admin UI), Prometheus metrics
  and rate limiting.
- Mounts the support routers: AI routing and handoff checks, the agent inbox,
  agent presence and the change event stream.
- Optionally starts a PostgreSQL ``LISTEN`` thread so writes made by other
  processes reach the inbox cache and event stream.
"""

import logging
import os

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from .__version__ import __build_date__, __commit_sha__, __version__
from .app_logging import init_logging
from .core.db import get_database_url, psycopg_url
from .rate_limit import limiter
from .routers import support_agents, support_events, support_inbox, support_routing
from .support.realtime import PostgresChangeListener
from .support.runtime import get_broker, get_cache

load_dotenv()

logger = logging.getLogger(__name__)

app = FastAPI(title="Support Desk", version=__version__)
init_logging(app)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)
# Optional CORS for admin UI
admin_ui_origins = os.getenv("ADMIN_UI_ORIGINS")
if admin_ui_origins:
    origins = [o.strip() for o in admin_ui_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
app.include_router(support_routing.router)
app.include_router(support_inbox.router)
app.include_router(support_agents.router)
app.include_router(support_events.router)

# Expose Prometheus metrics
Instrumentator().instrument(app).expose(
    app, include_in_schema=False, endpoint="/api/metrics"
)


def _listen_notify_enabled() -> bool:
    return os.getenv("SUPPORT_LISTEN_NOTIFY", "false").lower() == "true"


@app.on_event("startup")
def start_change_listener() -> None:
    """Wire the inbox cache to the broker and start LISTEN when enabled."""
    get_cache()
    app.state.change_listener = None
    if not _listen_notify_enabled():
        return
    database_url = get_database_url()
    if not database_url:
        logger.warning("SUPPORT_LISTEN_NOTIFY is set but DATABASE_URL is missing")
        return
    listener = PostgresChangeListener(
        psycopg_url(database_url),
        get_broker(),
        os.getenv("SUPPORT_NOTIFY_CHANNEL", "support_changes"),
    )
    listener.start()
    app.state.change_listener = listener


@app.on_event("shutdown")
def stop_change_listener() -> None:
    listener = getattr(app.state, "change_listener", None)
    if listener is not None:
        listener.stop()


@app.get("/api/health")
async def health():
    """Liveness/readiness probe with a minimal JSON body."""
    return {"status": "ok"}


@app.get("/api/version")
async def version():
    """Return version information for the application."""
    return {
        "version": __version__,
        "build_date": __build_date__,
        "commit_sha": __commit_sha__,
    }
