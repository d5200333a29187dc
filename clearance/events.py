from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from clearance.db.documents import ChangeEvent
from clearance.queue_backend import TRIGGER_QUEUE, QueueBackend
from clearance.timestamps import to_iso, utcnow

logger = logging.getLogger(__name__)

PRINCIPAL_CREATED = "principal.created"
OBJECT_FINALIZED = "object.finalized"
PROFILE_UPDATED = "profile.updated"
APPLICATION_CREATED = "application.created"
APPLICATION_UPDATED = "application.updated"
MAIL_UPDATED = "mail.updated"

EVENT_TYPES = frozenset(
    {PRINCIPAL_CREATED, OBJECT_FINALIZED, PROFILE_UPDATED, APPLICATION_CREATED, APPLICATION_UPDATED, MAIL_UPDATED}
)


def new_event_id() -> str:
    return f"evt_{uuid.uuid4().hex}"


@dataclass
class TriggerEvent:
    """One at-least-once delivery unit; ``event_id`` is stable across redeliveries."""

    event_id: str
    event_type: str
    resource: str
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    data: dict[str, Any] = field(default_factory=dict)
    occurred_at: str = ""

    @property
    def doc_id(self) -> str:
        return self.resource.rsplit("/", 1)[-1]

    def to_payload(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "resource": self.resource,
            "before": self.before,
            "after": self.after,
            "data": dict(self.data),
            "occurred_at": self.occurred_at,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "TriggerEvent":
        before = payload.get("before")
        after = payload.get("after")
        data = payload.get("data")
        return cls(
            event_id=str(payload.get("event_id") or ""),
            event_type=str(payload.get("event_type") or ""),
            resource=str(payload.get("resource") or ""),
            before=before if isinstance(before, dict) else None,
            after=after if isinstance(after, dict) else None,
            data=data if isinstance(data, dict) else {},
            occurred_at=str(payload.get("occurred_at") or ""),
        )


def event_type_for_change(change: ChangeEvent) -> str | None:
    """Which trigger a committed document write fires, if any."""
    if change.after is None:
        return None
    if change.collection == "profiles":
        return PROFILE_UPDATED if change.before is not None else None
    if change.collection == "applications":
        return APPLICATION_UPDATED if change.before is not None else APPLICATION_CREATED
    if change.collection == "mail":
        return MAIL_UPDATED if change.before is not None else None
    return None


class TriggerPublisher:
    """Feeds trigger events into the worker queue.

    Registered as a store change listener for document triggers; provider
    webhooks call :meth:`publish` directly.
    """

    def __init__(self, queue: QueueBackend, *, queue_name: str = TRIGGER_QUEUE) -> None:
        self._queue = queue
        self._queue_name = queue_name

    def publish(self, event: TriggerEvent) -> TriggerEvent:
        if event.event_type not in EVENT_TYPES:
            raise ValueError(f"unknown trigger event type: {event.event_type}")
        if not event.occurred_at:
            event.occurred_at = to_iso(utcnow())
        self._queue.enqueue(queue_name=self._queue_name, payload=event.to_payload())
        logger.info(
            "trigger_published event_id=%s event_type=%s resource=%s",
            event.event_id,
            event.event_type,
            event.resource,
        )
        return event

    def publish_provider_event(self, event_type: str, resource: str, data: dict[str, Any], *, event_id: str | None = None) -> TriggerEvent:
        return self.publish(
            TriggerEvent(
                event_id=event_id or new_event_id(),
                event_type=event_type,
                resource=resource,
                data=dict(data),
            )
        )

    def on_change(self, change: ChangeEvent) -> None:
        event_type = event_type_for_change(change)
        if event_type is None:
            return
        self.publish(
            TriggerEvent(
                event_id=new_event_id(),
                event_type=event_type,
                resource=f"{change.collection}/{change.doc_id}",
                before=change.before,
                after=change.after,
                occurred_at=change.commit_time,
            )
        )
