import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger("app.events")


@dataclass
class InternalEvent:
    name: str
    payload: dict[str, Any]


EventHandler = Callable[[InternalEvent], None]


class InProcessEventBus:
    """Synchronous topic fan-out used for lifecycle hooks and chat broadcasts.

    Handlers run in subscription order. ``publish`` re-raises the first handler
    failure after every handler has been given the event, so callers that treat
    delivery as best-effort can catch a single exception.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        if handler not in self._subscribers[event_name]:
            self._subscribers[event_name].append(handler)

    def unsubscribe(self, event_name: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(event_name, [])
        if handler in handlers:
            handlers.remove(handler)

    def has_subscribers(self, event_name: str) -> bool:
        return bool(self._subscribers.get(event_name))

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        event = InternalEvent(name=event_name, payload=payload)
        first_error: Exception | None = None
        for handler in list(self._subscribers.get(event_name, [])):
            try:
                handler(event)
            except Exception as exc:
                logger.warning("event_bus.handler_failed", extra={"event_name": event_name, "error": str(exc)[:500]})
                if first_error is None:
                    first_error = exc
        if first_error is not None:
            raise first_error


event_bus = InProcessEventBus()
