from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class InternalEvent:
    name: str
    payload: dict[str, Any]


EventHandler = Callable[[InternalEvent], None]


class InProcessEventBus:
    """Synchronous publish/subscribe inside one process.

    Subscribing to ``"crm.lead.*"`` receives every event whose name starts with
    ``"crm.lead."``. Handler errors propagate to the publisher.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, pattern: str, handler: EventHandler) -> None:
        if handler not in self._subscribers[pattern]:
            self._subscribers[pattern].append(handler)

    def unsubscribe(self, pattern: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(pattern, [])
        if handler in handlers:
            handlers.remove(handler)

    def handlers_for(self, event_name: str) -> list[EventHandler]:
        matched = list(self._subscribers.get(event_name, []))
        prefix = event_name
        while "." in prefix:
            prefix = prefix.rsplit(".", 1)[0]
            for handler in self._subscribers.get(f"{prefix}.*", []):
                if handler not in matched:
                    matched.append(handler)
        return matched

    def publish(self, event_name: str, payload: dict[str, Any]) -> int:
        event = InternalEvent(name=event_name, payload=payload)
        handlers = self.handlers_for(event_name)
        for handler in handlers:
            handler(event)
        return len(handlers)

    def clear(self) -> None:
        self._subscribers.clear()


event_bus = InProcessEventBus()
