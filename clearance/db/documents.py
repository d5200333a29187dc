from __future__ import annotations

import copy
import json
import logging
import os
import re
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, TypeVar

from clearance.db.postgres import PostgresTxRunner
from clearance.settings import true_stack_required
from clearance.timestamps import to_iso, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _Sentinel:
    def __init__(self, name: str) -> None:
        self._name = name

    def __repr__(self) -> str:
        return self._name


SERVER_TIMESTAMP = _Sentinel("SERVER_TIMESTAMP")
DELETE_FIELD = _Sentinel("DELETE_FIELD")


class DocumentExistsError(Exception):
    pass


class DocumentNotFoundError(Exception):
    pass


@dataclass(frozen=True)
class ChangeEvent:
    collection: str
    doc_id: str
    before: dict[str, Any] | None
    after: dict[str, Any] | None
    commit_time: str


ChangeListener = Callable[[ChangeEvent], None]


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def resolve_sentinels(value: Any, commit_time: str) -> Any:
    if value is SERVER_TIMESTAMP:
        return commit_time
    if isinstance(value, dict):
        return {
            str(key): resolve_sentinels(item, commit_time)
            for key, item in value.items()
            if item is not DELETE_FIELD
        }
    if isinstance(value, (list, tuple)):
        return [resolve_sentinels(item, commit_time) for item in value]
    return value


def apply_write(
    existing: dict[str, Any] | None,
    *,
    op: str,
    data: dict[str, Any] | None,
    commit_time: str,
    collection: str,
    doc_id: str,
) -> dict[str, Any] | None:
    """Compute the stored document after one buffered write."""
    payload = data or {}
    if op == "delete":
        return None
    if op == "create":
        if existing is not None:
            raise DocumentExistsError(f"{collection}/{doc_id} already exists")
        return resolve_sentinels(payload, commit_time)
    if op == "set":
        return resolve_sentinels(payload, commit_time)
    if op in {"merge", "update"}:
        if existing is None and op == "update":
            raise DocumentNotFoundError(f"{collection}/{doc_id} not found")
        merged = dict(existing or {})
        for key, value in payload.items():
            if value is DELETE_FIELD:
                merged.pop(key, None)
            else:
                merged[key] = resolve_sentinels(value, commit_time)
        return merged
    if op == "increment":
        merged = dict(existing or {})
        for key, delta in payload.items():
            current = merged.get(key)
            base = current if isinstance(current, int) and not isinstance(current, bool) else 0
            merged[key] = base + int(delta)
        return merged
    raise ValueError(f"unsupported write op: {op}")


class Transaction:
    """Buffered writes applied atomically when the transaction callback returns."""

    def __init__(self) -> None:
        self._writes: list[tuple[str, str, str, dict[str, Any] | None]] = []

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def set(self, collection: str, doc_id: str, data: dict[str, Any], *, merge: bool = False) -> None:
        self._writes.append(("merge" if merge else "set", collection, doc_id, dict(data)))

    def update(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        self._writes.append(("update", collection, doc_id, dict(data)))

    def create(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        self._writes.append(("create", collection, doc_id, dict(data)))

    def increment(self, collection: str, doc_id: str, deltas: Mapping[str, int]) -> None:
        self._writes.append(("increment", collection, doc_id, {k: int(v) for k, v in deltas.items()}))

    def delete(self, collection: str, doc_id: str) -> None:
        self._writes.append(("delete", collection, doc_id, None))

    @property
    def has_writes(self) -> bool:
        return bool(self._writes)


class DocumentStore:
    backend_name = "base"

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._listeners: list[ChangeListener] = []
        self._commit_lock = threading.Lock()
        self._last_commit: datetime | None = None

    def add_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def now(self) -> datetime:
        return self._clock()

    def _next_commit_time(self) -> str:
        # Commits get strictly increasing millisecond timestamps so that keys
        # derived from updatedAt never collide inside one process.
        with self._commit_lock:
            current = self._clock()
            now = current.replace(microsecond=(current.microsecond // 1000) * 1000)
            if self._last_commit is not None and now <= self._last_commit:
                now = self._last_commit + timedelta(milliseconds=1)
            self._last_commit = now
            return to_iso(now)

    def _emit(self, events: list[ChangeEvent]) -> None:
        for event in events:
            for listener in list(self._listeners):
                try:
                    listener(event)
                except Exception:
                    logger.exception(
                        "change_listener_failed collection=%s doc_id=%s",
                        event.collection,
                        event.doc_id,
                    )

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def list(self, collection: str, *, where: Mapping[str, Any] | None = None) -> list[dict[str, Any]]:
        raise NotImplementedError

    def count(self, collection: str, *, where: Mapping[str, Any] | None = None) -> int:
        return len(self.list(collection, where=where))

    def run_transaction(self, fn: Callable[[Transaction], T]) -> T:
        raise NotImplementedError

    def create_if_absent(self, collection: str, doc_id: str, data: dict[str, Any]) -> bool:
        """Idempotent upsert by deterministic key: True when this call created the document."""

        def _op(tx: Transaction) -> bool:
            if tx.get(collection, doc_id) is not None:
                return False
            tx.create(collection, doc_id, data)
            return True

        return self.run_transaction(_op)

    def set(self, collection: str, doc_id: str, data: dict[str, Any], *, merge: bool = False) -> None:
        self.run_transaction(lambda tx: tx.set(collection, doc_id, data, merge=merge))

    def update(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        self.run_transaction(lambda tx: tx.update(collection, doc_id, data))

    def delete(self, collection: str, doc_id: str) -> None:
        self.run_transaction(lambda tx: tx.delete(collection, doc_id))

    def increment(self, collection: str, doc_id: str, deltas: Mapping[str, int]) -> None:
        self.run_transaction(lambda tx: tx.increment(collection, doc_id, deltas))

    def reset(self) -> None:
        raise NotImplementedError


def _matches(doc: dict[str, Any], where: Mapping[str, Any] | None) -> bool:
    if not where:
        return True
    return all(doc.get(key) == value for key, value in where.items())


class _InMemoryTransaction(Transaction):
    def __init__(self, docs: dict[str, dict[str, dict[str, Any]]]) -> None:
        super().__init__()
        self._docs = docs

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        row = self._docs.get(collection, {}).get(doc_id)
        return copy.deepcopy(row) if row is not None else None


class InMemoryDocumentStore(DocumentStore):
    """Single-process store; transactions are serialized by one re-entrant lock."""

    backend_name = "memory"

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        super().__init__(clock=clock)
        self._lock = threading.RLock()
        self._docs: dict[str, dict[str, dict[str, Any]]] = {}

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._docs.get(collection, {}).get(doc_id)
            return copy.deepcopy(row) if row is not None else None

    def list(self, collection: str, *, where: Mapping[str, Any] | None = None) -> list[dict[str, Any]]:
        with self._lock:
            rows = self._docs.get(collection, {})
            out = [{"id": doc_id, **copy.deepcopy(row)} for doc_id, row in rows.items() if _matches(row, where)]
        out.sort(key=lambda x: str(x["id"]))
        return out

    def run_transaction(self, fn: Callable[[Transaction], T]) -> T:
        with self._lock:
            tx = _InMemoryTransaction(self._docs)
            result = fn(tx)
            events = self._commit(tx)
        self._emit(events)
        return result

    def _commit(self, tx: Transaction) -> list[ChangeEvent]:
        if not tx.has_writes:
            return []
        commit_time = self._next_commit_time()
        staged: dict[tuple[str, str], dict[str, Any] | None] = {}
        originals: dict[tuple[str, str], dict[str, Any] | None] = {}
        for op, collection, doc_id, data in tx._writes:
            key = (collection, doc_id)
            if key not in originals:
                current = self._docs.get(collection, {}).get(doc_id)
                originals[key] = copy.deepcopy(current) if current is not None else None
                staged[key] = copy.deepcopy(current) if current is not None else None
            staged[key] = apply_write(
                staged[key],
                op=op,
                data=data,
                commit_time=commit_time,
                collection=collection,
                doc_id=doc_id,
            )
        events: list[ChangeEvent] = []
        for (collection, doc_id), after in staged.items():
            bucket = self._docs.setdefault(collection, {})
            if after is None:
                bucket.pop(doc_id, None)
            else:
                bucket[doc_id] = after
            events.append(
                ChangeEvent(
                    collection=collection,
                    doc_id=doc_id,
                    before=originals[(collection, doc_id)],
                    after=copy.deepcopy(after) if after is not None else None,
                    commit_time=commit_time,
                )
            )
        return events

    def reset(self) -> None:
        with self._lock:
            self._docs.clear()
            self._last_commit = None


class _PostgresTransaction(Transaction):
    def __init__(self, conn: Any, table_name: str) -> None:
        super().__init__()
        self._conn = conn
        self._table_name = table_name
        self._locked: dict[tuple[str, str], dict[str, Any] | None] = {}

    def _select_for_update(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        key = (collection, doc_id)
        if key in self._locked:
            return copy.deepcopy(self._locked[key])
        sql = f"""
            SELECT data
            FROM {self._table_name}
            WHERE collection = %s AND doc_id = %s
            FOR UPDATE
        """
        with self._conn.cursor() as cur:
            cur.execute(sql, (collection, doc_id))
            row = cur.fetchone()
        data = row[0] if row is not None and isinstance(row[0], dict) else None
        self._locked[key] = data
        return copy.deepcopy(data)

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        return self._select_for_update(collection, doc_id)

    def flush(self, commit_time: str) -> list[ChangeEvent]:
        if not self._writes:
            return []
        grouped: dict[tuple[str, str], list[tuple[str, dict[str, Any] | None]]] = {}
        for op, collection, doc_id, data in self._writes:
            grouped.setdefault((collection, doc_id), []).append((op, data))
        events: list[ChangeEvent] = []
        with self._conn.cursor() as cur:
            for (collection, doc_id), ops in grouped.items():
                if all(op == "increment" for op, _ in ops):
                    event = self._flush_increment(cur, collection, doc_id, ops, commit_time)
                else:
                    event = self._flush_document(cur, collection, doc_id, ops, commit_time)
                if event is not None:
                    events.append(event)
        return events

    def _flush_increment(
        self,
        cur: Any,
        collection: str,
        doc_id: str,
        ops: list[tuple[str, dict[str, Any] | None]],
        commit_time: str,
    ) -> ChangeEvent | None:
        totals: dict[str, int] = {}
        for _, data in ops:
            for name, delta in (data or {}).items():
                totals[name] = totals.get(name, 0) + int(delta)
        sql, params = increment_statement(self._table_name, collection, doc_id, totals)
        cur.execute(sql, params)
        row = cur.fetchone()
        if row is None or not isinstance(row[0], dict):
            return None
        after = row[0]
        key = (collection, doc_id)
        if key in self._locked:
            before = self._locked[key]
        elif bool(row[1]):
            before = None
        else:
            before = {**after, **{name: int(after.get(name, 0)) - delta for name, delta in totals.items()}}
        return ChangeEvent(collection=collection, doc_id=doc_id, before=before, after=after, commit_time=commit_time)

    def _flush_document(
        self,
        cur: Any,
        collection: str,
        doc_id: str,
        ops: list[tuple[str, dict[str, Any] | None]],
        commit_time: str,
    ) -> ChangeEvent:
        before = self._select_for_update(collection, doc_id)
        after = before
        for op, data in ops:
            after = apply_write(after, op=op, data=data, commit_time=commit_time, collection=collection, doc_id=doc_id)
        if after is None:
            cur.execute(f"DELETE FROM {self._table_name} WHERE collection = %s AND doc_id = %s", (collection, doc_id))
        elif before is None and ops[0][0] == "create":
            # FOR UPDATE cannot lock a missing row; the primary key decides concurrent creates
            insert_sql = f"""
                INSERT INTO {self._table_name} (collection, doc_id, data, updated_at)
                VALUES (%s, %s, %s::jsonb, now())
            """
            try:
                cur.execute(insert_sql, (collection, doc_id, json.dumps(after, ensure_ascii=True, sort_keys=True)))
            except Exception as exc:
                if getattr(exc, "sqlstate", None) == UNIQUE_VIOLATION:
                    raise DocumentExistsError(f"{collection}/{doc_id} already exists") from exc
                raise
        else:
            upsert_sql = f"""
                INSERT INTO {self._table_name} (collection, doc_id, data, updated_at)
                VALUES (%s, %s, %s::jsonb, now())
                ON CONFLICT (collection, doc_id) DO UPDATE
                SET data = EXCLUDED.data,
                    updated_at = now()
            """
            cur.execute(upsert_sql, (collection, doc_id, json.dumps(after, ensure_ascii=True, sort_keys=True)))
        return ChangeEvent(
            collection=collection,
            doc_id=doc_id,
            before=self._locked.get((collection, doc_id)),
            after=after,
            commit_time=commit_time,
        )


UNIQUE_VIOLATION = "23505"


def increment_statement(
    table_name: str, collection: str, doc_id: str, deltas: Mapping[str, int]
) -> tuple[str, tuple[Any, ...]]:
    """Single-statement jsonb merge adding ``deltas`` to numeric fields, creating the row if needed."""
    fields = [(_validate_identifier(str(name)), int(delta)) for name, delta in deltas.items()]
    build_args = ", ".join(f"'{name}', COALESCE((cur.data->>'{name}')::bigint, 0) + %s" for name, _ in fields)
    sql = f"""
        INSERT INTO {table_name} AS cur (collection, doc_id, data)
        VALUES (%s, %s, %s::jsonb)
        ON CONFLICT (collection, doc_id) DO UPDATE
        SET data = cur.data || jsonb_build_object({build_args}),
            updated_at = now()
        RETURNING data, (xmax = 0) AS inserted
    """
    initial = {name: delta for name, delta in fields}
    params: list[Any] = [collection, doc_id, json.dumps(initial, ensure_ascii=True, sort_keys=True)]
    params.extend(delta for _, delta in fields)
    return sql, tuple(params)


class PostgresDocumentStore(DocumentStore):
    """JSONB document table; transactions lock touched rows with SELECT ... FOR UPDATE."""

    backend_name = "postgres"

    def __init__(
        self,
        *,
        tx_runner: PostgresTxRunner,
        table_name: str = "clearance_documents",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__(clock=clock)
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def initialize(self) -> None:
        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {self._table_name} (
                        collection TEXT NOT NULL,
                        doc_id TEXT NOT NULL,
                        data JSONB NOT NULL,
                        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                        PRIMARY KEY (collection, doc_id)
                    )
                    """
                )
                cur.execute(
                    f"""
                    CREATE INDEX IF NOT EXISTS idx_{self._table_name}_data
                    ON {self._table_name} USING GIN (data jsonb_path_ops)
                    """
                )

        self._tx_runner.run_in_tx(fn=_op)

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT data
            FROM {self._table_name}
            WHERE collection = %s AND doc_id = %s
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (collection, doc_id))
                row = cur.fetchone()
            if row is None:
                return None
            return row[0] if isinstance(row[0], dict) else None

        return self._tx_runner.run_in_tx(fn=_op)

    def list(self, collection: str, *, where: Mapping[str, Any] | None = None) -> list[dict[str, Any]]:
        sql = f"""
            SELECT doc_id, data
            FROM {self._table_name}
            WHERE collection = %s AND data @> %s::jsonb
            ORDER BY doc_id ASC
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (collection, json.dumps(dict(where or {}), ensure_ascii=True, sort_keys=True)))
                rows = cur.fetchall() or []
            out: list[dict[str, Any]] = []
            for row in rows:
                if isinstance(row[1], dict):
                    out.append({"id": row[0], **row[1]})
            return out

        return self._tx_runner.run_in_tx(fn=_op)

    def count(self, collection: str, *, where: Mapping[str, Any] | None = None) -> int:
        sql = f"""
            SELECT COUNT(1)
            FROM {self._table_name}
            WHERE collection = %s AND data @> %s::jsonb
        """

        def _op(conn: Any) -> int:
            with conn.cursor() as cur:
                cur.execute(sql, (collection, json.dumps(dict(where or {}), ensure_ascii=True, sort_keys=True)))
                row = cur.fetchone()
            return int(row[0]) if row is not None else 0

        return self._tx_runner.run_in_tx(fn=_op)

    def run_transaction(self, fn: Callable[[Transaction], T]) -> T:
        def _op(conn: Any) -> tuple[T, list[ChangeEvent]]:
            tx = _PostgresTransaction(conn, self._table_name)
            result = fn(tx)
            events = tx.flush(self._next_commit_time()) if tx.has_writes else []
            return result, events

        result, events = self._tx_runner.run_in_tx(fn=_op)
        self._emit(events)
        return result

    def create_if_absent(self, collection: str, doc_id: str, data: dict[str, Any]) -> bool:
        commit_time = self._next_commit_time()
        resolved = resolve_sentinels(data, commit_time)
        sql = f"""
            INSERT INTO {self._table_name} (collection, doc_id, data)
            VALUES (%s, %s, %s::jsonb)
            ON CONFLICT (collection, doc_id) DO NOTHING
            RETURNING doc_id
        """

        def _op(conn: Any) -> bool:
            with conn.cursor() as cur:
                cur.execute(sql, (collection, doc_id, json.dumps(resolved, ensure_ascii=True, sort_keys=True)))
                row = cur.fetchone()
            return row is not None

        created = bool(self._tx_runner.run_in_tx(fn=_op))
        if created:
            self._emit(
                [ChangeEvent(collection=collection, doc_id=doc_id, before=None, after=resolved, commit_time=commit_time)]
            )
        return created

    def increment(self, collection: str, doc_id: str, deltas: Mapping[str, int]) -> None:
        if not deltas:
            return
        sql, params = increment_statement(self._table_name, collection, doc_id, deltas)
        fields = [(str(name), int(delta)) for name, delta in deltas.items()]

        def _op(conn: Any) -> tuple[dict[str, Any] | None, bool]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                row = cur.fetchone()
            if row is None:
                return None, False
            return (row[0] if isinstance(row[0], dict) else None), bool(row[1])

        after, inserted = self._tx_runner.run_in_tx(fn=_op)
        if after is None:
            return
        before = None if inserted else {**after, **{name: int(after.get(name, 0)) - delta for name, delta in fields}}
        self._emit(
            [
                ChangeEvent(
                    collection=collection,
                    doc_id=doc_id,
                    before=before,
                    after=after,
                    commit_time=self._next_commit_time(),
                )
            ]
        )

    def reset(self) -> None:
        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(f"DELETE FROM {self._table_name}")

        self._tx_runner.run_in_tx(fn=_op)


def create_document_store_from_env(environ: Mapping[str, str] | None = None) -> DocumentStore:
    env = os.environ if environ is None else environ
    backend = env.get("CLEARANCE_STORE_BACKEND", "memory").strip().lower() or "memory"
    if true_stack_required(env) and backend != "postgres":
        raise RuntimeError("CLEARANCE_STORE_BACKEND must be postgres when CLEARANCE_REQUIRE_TRUESTACK=true")
    if backend == "postgres":
        dsn = env.get("POSTGRES_DSN", "").strip()
        if not dsn:
            raise ValueError("POSTGRES_DSN must be set when CLEARANCE_STORE_BACKEND=postgres")
        store = PostgresDocumentStore(
            tx_runner=PostgresTxRunner(dsn),
            table_name=env.get("CLEARANCE_STORE_POSTGRES_TABLE", "clearance_documents"),
        )
        store.initialize()
        return store
    if backend == "memory":
        return InMemoryDocumentStore()
    raise RuntimeError(f"unsupported store backend: {backend}")
