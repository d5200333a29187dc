from __future__ import annotations

import json

import pytest

from clearance.queue_backend import InMemoryQueueBackend, RedisQueueBackend, create_queue_from_env


class FakeRedis:
    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.lists: dict[str, list[str]] = {}
        self.sets: dict[str, set[str]] = {}

    def get(self, key):
        return self.values.get(key)

    def set(self, key, value):
        self.values[key] = value

    def rpush(self, key, value):
        self.lists.setdefault(key, []).append(value)

    def lpush(self, key, value):
        self.lists.setdefault(key, []).insert(0, value)

    def lpop(self, key):
        items = self.lists.get(key) or []
        return items.pop(0) if items else None

    def llen(self, key):
        return len(self.lists.get(key) or [])

    def sadd(self, key, value):
        self.sets.setdefault(key, set()).add(value)

    def srem(self, key, value):
        self.sets.get(key, set()).discard(value)

    def smembers(self, key):
        return set(self.sets.get(key, set()))

    def delete(self, *keys):
        for key in keys:
            self.values.pop(key, None)
            self.lists.pop(key, None)
            self.sets.pop(key, None)


def test_queue_nack_requeues_with_attempt_increment():
    q = InMemoryQueueBackend()
    enqueued = q.enqueue(queue_name="triggers", payload={"event_id": "evt_1"})
    msg = q.dequeue(queue_name="triggers")
    assert msg is not None
    assert msg.message_id == enqueued.message_id
    assert q.inflight_count() == 1

    nack = q.nack(message_id=msg.message_id, requeue=True)
    assert nack is not None
    assert nack.attempt == 1
    assert q.pending_count(queue_name="triggers") == 1

    replay = q.dequeue(queue_name="triggers")
    assert replay is not None
    assert replay.message_id == msg.message_id
    assert replay.attempt == 1


def test_delayed_nack_is_not_due_until_clock_passes(clock):
    q = InMemoryQueueBackend(clock=clock)
    q.enqueue(queue_name="triggers", payload={"event_id": "evt_1"})
    msg = q.dequeue(queue_name="triggers")
    q.nack(message_id=msg.message_id, delay_ms=1500)

    assert q.dequeue(queue_name="triggers") is None
    clock.advance(milliseconds=1500)
    replay = q.dequeue(queue_name="triggers")
    assert replay is not None
    assert replay.attempt == 1


def test_ack_removes_message_for_good():
    q = InMemoryQueueBackend()
    q.enqueue(queue_name="triggers", payload={"event_id": "evt_1"})
    msg = q.dequeue(queue_name="triggers")
    q.ack(message_id=msg.message_id)
    assert q.dequeue(queue_name="triggers") is None
    assert q.inflight_count() == 0
    assert q.nack(message_id=msg.message_id) is None


def test_queue_factory_defaults_to_memory():
    assert isinstance(create_queue_from_env({}), InMemoryQueueBackend)


def test_queue_factory_rejects_unsupported_backend():
    with pytest.raises(RuntimeError, match="unsupported queue backend"):
        create_queue_from_env({"CLEARANCE_QUEUE_BACKEND": "rabbitmq"})


def test_queue_factory_requires_redis_under_truestack():
    with pytest.raises(RuntimeError, match="redis"):
        create_queue_from_env({"CLEARANCE_REQUIRE_TRUESTACK": "true"})


def test_queue_factory_requires_redis_dsn():
    with pytest.raises(ValueError, match="REDIS_DSN"):
        create_queue_from_env({"CLEARANCE_QUEUE_BACKEND": "redis"})


def test_redis_queue_round_trip_uses_namespaced_keys():
    fake = FakeRedis()
    q = RedisQueueBackend(dsn="redis://localhost:6379/0", namespace="ns", client=fake)
    enqueued = q.enqueue(queue_name="triggers", payload={"event_id": "evt_1"})
    assert fake.lists["ns:queue:triggers:pending"] == [enqueued.message_id]

    msg = q.dequeue(queue_name="triggers")
    assert msg is not None
    assert msg.payload == {"event_id": "evt_1"}
    assert msg.message_id in fake.sets["ns:queue:triggers:inflight"]

    q.nack(message_id=msg.message_id, delay_ms=0)
    stored = json.loads(fake.values[f"ns:msg:{msg.message_id}"])
    assert stored["attempt"] == 1
    assert stored["status"] == "pending"
    assert q.pending_count(queue_name="triggers") == 1

    again = q.dequeue(queue_name="triggers")
    q.ack(message_id=again.message_id)
    assert f"ns:msg:{msg.message_id}" not in fake.values
    assert q.pending_count(queue_name="triggers") == 0


def test_redis_reset_drops_tracked_keys():
    fake = FakeRedis()
    q = RedisQueueBackend(dsn="", namespace="ns", client=fake)
    q.enqueue(queue_name="triggers", payload={"event_id": "evt_1"})
    q.reset()
    assert fake.values == {}
    assert q.pending_count(queue_name="triggers") == 0
