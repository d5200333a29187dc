from __future__ import annotations

from collections.abc import Callable

from clearance.events import EVENT_TYPES, TriggerEvent

TriggerHandler = Callable[[TriggerEvent], None]


class TriggerRegistry:
    def __init__(self) -> None:
        self._handlers: dict[str, list[TriggerHandler]] = {}

    def register(self, event_type: str, handler: TriggerHandler) -> None:
        if event_type not in EVENT_TYPES:
            raise ValueError(f"unknown trigger event type: {event_type}")
        self._handlers.setdefault(event_type, []).append(handler)

    def handlers_for(self, event_type: str) -> list[TriggerHandler]:
        return list(self._handlers.get(event_type, []))

    def event_types(self) -> list[str]:
        return sorted(self._handlers)
