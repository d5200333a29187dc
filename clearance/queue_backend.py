from __future__ import annotations

import json
import os
import threading
import uuid
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from clearance.settings import true_stack_required
from clearance.timestamps import parse_timestamp, to_iso, utcnow

TRIGGER_QUEUE = "triggers"


@dataclass
class QueueMessage:
    message_id: str
    queue_name: str
    payload: dict[str, Any]
    attempt: int = 0
    available_at: str | None = None


def _is_due(available_at: object, now: datetime) -> bool:
    due = parse_timestamp(available_at)
    return due is None or due <= now


class InMemoryQueueBackend:
    """Process-local queue; messages stay inflight until acked or nacked."""

    backend_name = "memory"

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._lock = threading.RLock()
        self._queues: dict[str, deque[QueueMessage]] = {}
        self._inflight: dict[str, QueueMessage] = {}

    def enqueue(
        self,
        *,
        queue_name: str,
        payload: dict[str, Any],
        available_at: datetime | None = None,
    ) -> QueueMessage:
        with self._lock:
            msg = QueueMessage(
                message_id=f"msg_{uuid.uuid4().hex[:12]}",
                queue_name=queue_name,
                payload=payload,
                attempt=int(payload.get("attempt", 0)),
                available_at=to_iso(available_at if isinstance(available_at, datetime) else self._clock()),
            )
            self._queues.setdefault(queue_name, deque()).append(msg)
            return msg

    def dequeue(self, *, queue_name: str) -> QueueMessage | None:
        with self._lock:
            queue = self._queues.setdefault(queue_name, deque())
            now = self._clock()
            for _ in range(len(queue)):
                msg = queue.popleft()
                if _is_due(msg.available_at, now):
                    self._inflight[msg.message_id] = msg
                    return msg
                queue.append(msg)
            return None

    def ack(self, *, message_id: str) -> None:
        with self._lock:
            self._inflight.pop(message_id, None)

    def nack(self, *, message_id: str, requeue: bool = True, delay_ms: int = 0) -> QueueMessage | None:
        with self._lock:
            msg = self._inflight.pop(message_id, None)
            if msg is None:
                return None
            msg.attempt += 1
            if requeue:
                msg.available_at = to_iso(self._clock() + timedelta(milliseconds=max(0, int(delay_ms))))
                self._queues.setdefault(msg.queue_name, deque()).appendleft(msg)
            return msg

    def pending_count(self, *, queue_name: str) -> int:
        with self._lock:
            return len(self._queues.get(queue_name, deque()))

    def inflight_count(self) -> int:
        with self._lock:
            return len(self._inflight)

    def reset(self) -> None:
        with self._lock:
            self._queues.clear()
            self._inflight.clear()


def _import_redis() -> Any:
    try:
        import redis  # type: ignore
    except ImportError as exc:
        raise RuntimeError("redis is required for CLEARANCE_QUEUE_BACKEND=redis; install redis>=5") from exc
    return redis


class RedisQueueBackend:
    """Redis lists for pending ids, a set for inflight ids, one JSON blob per message."""

    backend_name = "redis"

    def __init__(self, *, dsn: str, namespace: str = "clearance", client: Any | None = None) -> None:
        if not dsn.strip() and client is None:
            raise ValueError("REDIS_DSN must be provided for redis queue backend")
        self._namespace = namespace.strip() or "clearance"
        self._lock = threading.RLock()
        if client is None:
            client = _import_redis().Redis.from_url(dsn.strip(), decode_responses=True)
        self._client = client

    def _registry_key(self) -> str:
        return f"{self._namespace}:queue:keys"

    def _pending_key(self, queue_name: str) -> str:
        return f"{self._namespace}:queue:{queue_name}:pending"

    def _inflight_key(self, queue_name: str) -> str:
        return f"{self._namespace}:queue:{queue_name}:inflight"

    def _msg_key(self, message_id: str) -> str:
        return f"{self._namespace}:msg:{message_id}"

    def _track_keys(self, *keys: str) -> None:
        for key in keys:
            self._client.sadd(self._registry_key(), key)

    def _load_msg(self, message_id: str) -> dict[str, Any] | None:
        raw = self._client.get(self._msg_key(message_id))
        if not isinstance(raw, str) or not raw:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None

    def _save_msg(self, message_id: str, data: dict[str, Any]) -> None:
        self._client.set(
            self._msg_key(message_id),
            json.dumps(data, sort_keys=True, ensure_ascii=True, separators=(",", ":")),
        )

    @staticmethod
    def _to_message(message_id: str, data: dict[str, Any]) -> QueueMessage:
        return QueueMessage(
            message_id=message_id,
            queue_name=str(data.get("queue_name", "")),
            payload=data.get("payload", {}),
            attempt=int(data.get("attempt", 0)),
            available_at=str(data.get("available_at", "")) or None,
        )

    def enqueue(
        self,
        *,
        queue_name: str,
        payload: dict[str, Any],
        available_at: datetime | None = None,
    ) -> QueueMessage:
        with self._lock:
            message_id = f"msg_{uuid.uuid4().hex[:12]}"
            data = {
                "queue_name": queue_name,
                "payload": payload,
                "attempt": int(payload.get("attempt", 0)),
                "status": "pending",
                "available_at": to_iso(available_at if isinstance(available_at, datetime) else utcnow()),
            }
            self._save_msg(message_id, data)
            pending_key = self._pending_key(queue_name)
            self._client.rpush(pending_key, message_id)
            self._track_keys(pending_key, self._inflight_key(queue_name), self._msg_key(message_id))
            return self._to_message(message_id, data)

    def dequeue(self, *, queue_name: str) -> QueueMessage | None:
        with self._lock:
            pending_key = self._pending_key(queue_name)
            now = utcnow()
            for _ in range(int(self._client.llen(pending_key))):
                message_id = self._client.lpop(pending_key)
                if not isinstance(message_id, str) or not message_id:
                    return None
                data = self._load_msg(message_id)
                if data is None:
                    continue
                if not _is_due(data.get("available_at"), now):
                    self._client.rpush(pending_key, message_id)
                    continue
                data["status"] = "inflight"
                self._save_msg(message_id, data)
                self._client.sadd(self._inflight_key(queue_name), message_id)
                return self._to_message(message_id, data)
            return None

    def ack(self, *, message_id: str) -> None:
        with self._lock:
            data = self._load_msg(message_id)
            if data is None or data.get("status") != "inflight":
                return
            self._client.srem(self._inflight_key(str(data.get("queue_name", ""))), message_id)
            self._client.delete(self._msg_key(message_id))

    def nack(self, *, message_id: str, requeue: bool = True, delay_ms: int = 0) -> QueueMessage | None:
        with self._lock:
            data = self._load_msg(message_id)
            if data is None or data.get("status") != "inflight":
                return None
            queue_name = str(data.get("queue_name", ""))
            data["attempt"] = int(data.get("attempt", 0)) + 1
            self._client.srem(self._inflight_key(queue_name), message_id)
            if requeue:
                data["status"] = "pending"
                data["available_at"] = to_iso(utcnow() + timedelta(milliseconds=max(0, int(delay_ms))))
                self._save_msg(message_id, data)
                self._client.lpush(self._pending_key(queue_name), message_id)
            else:
                data["status"] = "discarded"
                self._save_msg(message_id, data)
            return self._to_message(message_id, data)

    def pending_count(self, *, queue_name: str) -> int:
        with self._lock:
            return int(self._client.llen(self._pending_key(queue_name)))

    def reset(self) -> None:
        with self._lock:
            registry = self._registry_key()
            keys = self._client.smembers(registry)
            if keys:
                self._client.delete(*list(keys))
            self._client.delete(registry)


QueueBackend = InMemoryQueueBackend | RedisQueueBackend


def create_queue_from_env(environ: Mapping[str, str] | None = None) -> QueueBackend:
    env = os.environ if environ is None else environ
    backend = env.get("CLEARANCE_QUEUE_BACKEND", "memory").strip().lower() or "memory"
    if true_stack_required(env) and backend != "redis":
        raise RuntimeError("CLEARANCE_QUEUE_BACKEND must be redis when CLEARANCE_REQUIRE_TRUESTACK=true")
    if backend == "memory":
        return InMemoryQueueBackend()
    if backend == "redis":
        dsn = env.get("REDIS_DSN", "").strip()
        if not dsn:
            raise ValueError("REDIS_DSN must be set when CLEARANCE_QUEUE_BACKEND=redis")
        return RedisQueueBackend(dsn=dsn, namespace=env.get("CLEARANCE_QUEUE_KEY_PREFIX", "clearance"))
    raise RuntimeError(f"unsupported queue backend: {backend}")
