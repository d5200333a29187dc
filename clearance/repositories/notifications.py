from __future__ import annotations

from typing import Any

from clearance.db.documents import DocumentStore
from clearance.timestamps import from_millis


def items_collection(uid: str) -> str:
    return f"notifications/{uid}/items"


def notification_key(kind: str, decided_at_millis: int) -> str:
    return f"{kind}_{int(decided_at_millis)}"


class NotificationsRepository:
    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    def create(self, *, uid: str, kind: str, message: str, decided_at_millis: int) -> bool:
        return self._store.create_if_absent(
            items_collection(uid),
            notification_key(kind, decided_at_millis),
            {"type": kind, "message": message, "createdAt": from_millis(decided_at_millis)},
        )

    def list_for(self, uid: str) -> list[dict[str, Any]]:
        rows = self._store.list(items_collection(uid))
        rows.sort(key=lambda x: str(x.get("createdAt") or ""), reverse=True)
        return rows
