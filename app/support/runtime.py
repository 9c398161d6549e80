"""Process-wide broker and query cache shared by the support routers."""

from __future__ import annotations

import os
import threading

from .cache import QueryCache
from .realtime import ChangeBroker

_LOCK = threading.Lock()
_BROKER: ChangeBroker | None = None
_CACHE: QueryCache | None = None


def get_broker() -> ChangeBroker:
    global _BROKER
    with _LOCK:
        if _BROKER is None:
            _BROKER = ChangeBroker()
        return _BROKER


def get_cache() -> QueryCache:
    """Return the inbox cache, wiring it to the broker on first use."""

    global _CACHE
    broker = get_broker()
    with _LOCK:
        if _CACHE is None:
            _CACHE = QueryCache(
                ttl_seconds=float(os.getenv("SUPPORT_CACHE_TTL_SECONDS", "30")),
                maxsize=int(os.getenv("SUPPORT_CACHE_MAX_ENTRIES", "512")),
            )
            broker.add_listener(_CACHE.handle_change)
        return _CACHE


def reset_runtime() -> None:
    """Forget the shared broker and cache; used by tests."""

    global _BROKER, _CACHE
    with _LOCK:
        _BROKER = None
        _CACHE = None
