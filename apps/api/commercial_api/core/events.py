"""In-process fan-out for pipeline domain events."""

from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

PIPELINE_EVENT_TYPES = (
    "crm.pipeline.lead.created",
    "crm.pipeline.company.created",
    "crm.pipeline.stage_changed",
    "crm.pipeline.assignee_changed",
    "crm.pipeline.lead.converted",
)


@dataclass(frozen=True)
class InternalEvent:
    name: str
    payload: dict[str, Any]


EventHandler = Callable[[InternalEvent], None]


class InProcessEventBus:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        # Re-subscribing the same handler is a no-op so app restarts in tests do not double-deliver.
        handlers = self._subscribers[event_name]
        if handler not in handlers:
            handlers.append(handler)

    def subscribe_all(self, event_names: Iterable[str], handler: EventHandler) -> None:
        for event_name in event_names:
            self.subscribe(event_name, handler)

    def unsubscribe(self, event_name: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(event_name, [])
        if handler in handlers:
            handlers.remove(handler)

    def subscriber_count(self, event_name: str) -> int:
        return len(self._subscribers.get(event_name, []))

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        event = InternalEvent(name=event_name, payload=payload)
        for handler in list(self._subscribers.get(event_name, [])):
            handler(event)


event_bus = InProcessEventBus()
