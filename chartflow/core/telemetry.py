"""
Telemetry hooks.

Components emit named events with numeric measurements and descriptive
metadata.  Observability sinks live outside this package and subscribe with
``attach``; when nothing is attached an emission only produces a debug log
line, so the engine behaves identically with telemetry absent.

Event names:
  - cache.hit / cache.miss / cache.put / cache.put_compressed
  - cache.eviction / cache.cleanup / cache.clear
  - transform.start / transform.stop / transform.exception
  - chart.generate.start / chart.generate.stop
"""
from __future__ import annotations

import threading
from typing import Any, Callable

from chartflow.core.logging import get_logger

logger = get_logger(__name__)

Handler = Callable[[str, dict[str, Any], dict[str, Any]], None]

_handlers: dict[str, list[Handler]] = {}
_lock = threading.Lock()


def attach(event: str, handler: Handler) -> None:
    """Subscribe *handler* to *event*. Use ``"*"`` to receive every event."""
    with _lock:
        _handlers.setdefault(event, []).append(handler)


def detach(event: str, handler: Handler) -> bool:
    """Remove a handler. Returns False when it was not attached."""
    with _lock:
        handlers = _handlers.get(event, [])
        if handler not in handlers:
            return False
        handlers.remove(handler)
        if not handlers:
            del _handlers[event]
        return True


def detach_all() -> None:
    with _lock:
        _handlers.clear()


def emit(
    event: str,
    measurements: dict[str, Any] | None = None,
    metadata: dict[str, Any] | None = None,
) -> None:
    """Deliver an event to every subscribed handler.

    Handler failures are logged and swallowed so that a broken sink can
    never fail a cache read or a transform.
    """
    measurements = measurements or {}
    metadata = metadata or {}
    with _lock:
        targets = list(_handlers.get(event, ())) + list(_handlers.get("*", ()))
    if not targets:
        logger.debug("event=%s measurements=%s", event, measurements)
        return
    for handler in targets:
        try:
            handler(event, measurements, metadata)
        except Exception:
            logger.exception("Telemetry handler failed for event=%s", event)
