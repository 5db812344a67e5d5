from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

from lumen.context import get_correlation_id

logger = logging.getLogger("lumen.events")


@dataclass
class InternalEvent:
    name: str
    payload: dict[str, Any]


EventHandler = Callable[[InternalEvent], None]


class InProcessEventBus:
    """Synchronous fan-out of domain events to in-process handlers.

    A handler registered under ``"subscription.*"`` receives every event whose
    name starts with ``"subscription."``; any other pattern matches exactly.
    A failing handler is logged and skipped so the remaining handlers still run.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, pattern: str, handler: EventHandler) -> None:
        if handler not in self._handlers[pattern]:
            self._handlers[pattern].append(handler)

    def unsubscribe(self, pattern: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(pattern, [])
        if handler in handlers:
            handlers.remove(handler)

    def _matching(self, name: str) -> Iterator[EventHandler]:
        for pattern, handlers in list(self._handlers.items()):
            if pattern == name or (pattern.endswith(".*") and name.startswith(pattern[:-1])):
                yield from list(handlers)

    def publish(self, name: str, payload: dict[str, Any]) -> None:
        event = InternalEvent(name=name, payload=payload)
        for handler in self._matching(name):
            try:
                handler(event)
            except Exception as exc:
                logger.exception("event.handler_failed", extra={"event_name": name, "error": str(exc)})


event_bus = InProcessEventBus()

# every envelope published in this process, oldest first; tests read and clear it
published_events: list[dict[str, Any]] = []


def publish(envelope: dict[str, Any]) -> None:
    """Record a domain event envelope and dispatch it on ``event_bus``.

    Called after the state change the event describes has committed, so
    handler failures never reach the caller.
    """
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        event_bus.publish(event_type, envelope)
