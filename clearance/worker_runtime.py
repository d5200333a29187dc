from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass

from clearance.db.documents import SERVER_TIMESTAMP, DocumentStore
from clearance.events import TriggerEvent
from clearance.queue_backend import TRIGGER_QUEUE, QueueBackend, QueueMessage
from clearance.triggers import TriggerRegistry

logger = logging.getLogger(__name__)

DEAD_LETTERS = "deadLetters"


@dataclass
class WorkerRunStats:
    processed: int = 0
    succeeded: int = 0
    retrying: int = 0
    dead_lettered: int = 0
    skipped: int = 0

    def merge(self, other: "WorkerRunStats") -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.retrying += other.retrying
        self.dead_lettered += other.dead_lettered
        self.skipped += other.skipped

    def as_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "retrying": self.retrying,
            "dead_lettered": self.dead_lettered,
            "skipped": self.skipped,
        }


def retry_jitter_ms(*, event_id: str, attempt: int) -> int:
    seed = f"{event_id}:{attempt}".encode("utf-8")
    digest = hashlib.sha256(seed).digest()
    return int.from_bytes(digest[:2], byteorder="big") % 301


def retry_backoff_ms(*, event_id: str, attempt: int, base_ms: int, max_ms: int) -> int:
    normalized = max(1, int(attempt))
    base = max(0, int(base_ms))
    ceiling = max(base, int(max_ms))
    exponential = base * (2 ** (normalized - 1))
    return min(ceiling, exponential) + retry_jitter_ms(event_id=event_id, attempt=normalized)


class WorkerRuntime:
    """Drains the trigger queue and delivers each event to its registered handlers.

    A handler that raises leaves the message to be redelivered with backoff;
    after ``max_retries`` failed deliveries the event is written to
    ``deadLetters`` and acked.
    """

    def __init__(
        self,
        *,
        store: DocumentStore,
        queue_backend: QueueBackend,
        registry: TriggerRegistry,
        queue_name: str = TRIGGER_QUEUE,
        max_retries: int = 5,
        backoff_base_ms: int = 1000,
        backoff_max_ms: int = 30000,
        max_messages_per_iteration: int = 50,
        poll_interval_ms: int = 200,
    ) -> None:
        self.store = store
        self.queue_backend = queue_backend
        self.registry = registry
        self.queue_name = queue_name
        self.max_retries = max(0, int(max_retries))
        self.backoff_base_ms = max(0, int(backoff_base_ms))
        self.backoff_max_ms = max(0, int(backoff_max_ms))
        self.max_messages_per_iteration = max(1, int(max_messages_per_iteration))
        self.poll_interval_ms = max(1, int(poll_interval_ms))

    def _dead_letter(self, *, msg: QueueMessage, event: TriggerEvent, error: str) -> None:
        key = event.event_id or msg.message_id
        self.store.create_if_absent(
            DEAD_LETTERS,
            key,
            {
                "eventId": event.event_id,
                "eventType": event.event_type,
                "resource": event.resource,
                "payload": msg.payload,
                "attempts": msg.attempt + 1,
                "error": error,
                "createdAt": SERVER_TIMESTAMP,
            },
        )

    def _process_message(self, msg: QueueMessage, stats: WorkerRunStats) -> None:
        stats.processed += 1
        event = TriggerEvent.from_payload(msg.payload)
        handlers = self.registry.handlers_for(event.event_type)
        if not handlers:
            logger.warning("trigger_unhandled event_id=%s event_type=%s", event.event_id, event.event_type)
            self.queue_backend.ack(message_id=msg.message_id)
            stats.skipped += 1
            return
        try:
            for handler in handlers:
                handler(event)
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"
            if msg.attempt + 1 > self.max_retries:
                logger.error(
                    "trigger_dead_lettered event_id=%s event_type=%s attempts=%s error=%s",
                    event.event_id,
                    event.event_type,
                    msg.attempt + 1,
                    error,
                )
                self._dead_letter(msg=msg, event=event, error=error)
                self.queue_backend.ack(message_id=msg.message_id)
                stats.dead_lettered += 1
                return
            delay_ms = retry_backoff_ms(
                event_id=event.event_id,
                attempt=msg.attempt + 1,
                base_ms=self.backoff_base_ms,
                max_ms=self.backoff_max_ms,
            )
            logger.warning(
                "trigger_retry_scheduled event_id=%s event_type=%s attempt=%s delay_ms=%s error=%s",
                event.event_id,
                event.event_type,
                msg.attempt + 1,
                delay_ms,
                error,
            )
            self.queue_backend.nack(message_id=msg.message_id, requeue=True, delay_ms=delay_ms)
            stats.retrying += 1
            return
        self.queue_backend.ack(message_id=msg.message_id)
        stats.succeeded += 1

    def run_once(self) -> dict[str, int]:
        stats = WorkerRunStats()
        while stats.processed < self.max_messages_per_iteration:
            msg = self.queue_backend.dequeue(queue_name=self.queue_name)
            if msg is None:
                break
            self._process_message(msg, stats)
        return stats.as_dict()

    def run_until_idle(self, *, max_iterations: int = 100) -> dict[str, int]:
        """Drain until no due message is left; handlers enqueue follow-up events as they commit."""
        aggregate = WorkerRunStats()
        for _ in range(max(1, max_iterations)):
            current = self.run_once()
            aggregate.merge(WorkerRunStats(**current))
            if current["processed"] == 0:
                break
        return aggregate.as_dict()

    def run_forever(self, *, stop_after_iterations: int | None = None) -> dict[str, int]:
        aggregate = WorkerRunStats()
        iterations = 0
        while True:
            current = self.run_once()
            aggregate.merge(WorkerRunStats(**current))
            iterations += 1
            if stop_after_iterations is not None and iterations >= max(1, stop_after_iterations):
                break
            if current["processed"] == 0:
                time.sleep(self.poll_interval_ms / 1000.0)
        return aggregate.as_dict()
