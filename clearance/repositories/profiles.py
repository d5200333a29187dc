from __future__ import annotations

from typing import Any

from clearance.db.documents import DocumentStore
from clearance.status import ProfileStatus

PROFILES = "profiles"


def status_of(profile: dict[str, Any] | None) -> ProfileStatus:
    return ProfileStatus.parse((profile or {}).get("status"))


class ProfilesRepository:
    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    def get(self, uid: str) -> dict[str, Any] | None:
        return self._store.get(PROFILES, uid)

    def list_by_status(self, status: ProfileStatus) -> list[dict[str, Any]]:
        return self._store.list(PROFILES, where={"status": status.value})

    def count_by_status(self, status: ProfileStatus) -> int:
        return self._store.count(PROFILES, where={"status": status.value})
