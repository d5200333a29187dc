from __future__ import annotations

from typing import Any

from clearance.db.documents import DocumentStore
from clearance.status import ApplicationStatus, ApplicationType

APPLICATIONS = "applications"


class ApplicationsRepository:
    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    def get(self, application_id: str) -> dict[str, Any] | None:
        row = self._store.get(APPLICATIONS, application_id)
        if row is None:
            return None
        return {"id": application_id, **row}

    def list_for_agent(self, agent_uid: str) -> list[dict[str, Any]]:
        return self._store.list(APPLICATIONS, where={"agentUid": agent_uid})

    def list_by_status(self, status: ApplicationStatus) -> list[dict[str, Any]]:
        return self._store.list(APPLICATIONS, where={"status": status.value})

    def count(self, *, app_type: ApplicationType, status: ApplicationStatus) -> int:
        return self._store.count(APPLICATIONS, where={"type": app_type.value, "status": status.value})
