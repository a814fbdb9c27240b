from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


@dataclass
class InternalEvent:
    name: str
    payload: dict[str, Any]


EventHandler = Callable[[InternalEvent], None]


def _prefixes(event_name: str) -> list[str]:
    """``pipeline.lead.created`` -> ``["pipeline.lead.*", "pipeline.*", "*"]``."""
    parts = event_name.split(".")
    return [".".join(parts[:size] + ["*"]) for size in range(len(parts) - 1, 0, -1)] + ["*"]


class InProcessEventBus:
    """Synchronous fan-out to handlers registered for an exact name or a ``prefix.*`` pattern."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, pattern: str, handler: EventHandler) -> None:
        if handler not in self._subscribers[pattern]:
            self._subscribers[pattern].append(handler)

    def handlers_for(self, event_name: str) -> list[EventHandler]:
        handlers = list(self._subscribers.get(event_name, []))
        for pattern in _prefixes(event_name):
            handlers.extend(self._subscribers.get(pattern, []))
        return handlers

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        event = InternalEvent(name=event_name, payload=payload)
        for handler in self.handlers_for(event_name):
            handler(event)

    def clear(self) -> None:
        self._subscribers.clear()


event_bus = InProcessEventBus()
