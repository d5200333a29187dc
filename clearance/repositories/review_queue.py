from __future__ import annotations

from typing import Any

from clearance.db.documents import DocumentStore
from clearance.timestamps import from_millis

REVIEW_QUEUE = "reviewQueue"


def review_key(uid: str, submitted_at_millis: int) -> str:
    return f"{uid}_{int(submitted_at_millis)}"


class ReviewQueueRepository:
    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    def enqueue(self, *, uid: str, email: str, submitted_at_millis: int) -> bool:
        """Create the work item for this submission; False when it already exists."""
        return self._store.create_if_absent(
            REVIEW_QUEUE,
            review_key(uid, submitted_at_millis),
            {"uid": uid, "email": email, "submittedAt": from_millis(submitted_at_millis)},
        )

    def get(self, key: str) -> dict[str, Any] | None:
        return self._store.get(REVIEW_QUEUE, key)

    def list(self, *, uid: str | None = None) -> list[dict[str, Any]]:
        rows = self._store.list(REVIEW_QUEUE, where={"uid": uid} if uid else None)
        rows.sort(key=lambda x: str(x.get("submittedAt") or ""))
        return rows
