from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from clearance.db.documents import SERVER_TIMESTAMP, DocumentExistsError, DocumentStore, Transaction

COUNTERS = "counters"
DASHBOARD = "dashboard"
COUNTER_LEDGER = "counterLedger"

COUNTER_FIELDS = ("pendingAccounts", "pendingArrival", "pendingDeparture")


class CountersRepository:
    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    def get_dashboard(self) -> dict[str, Any]:
        return self._store.get(COUNTERS, DASHBOARD) or {}

    def apply_delta(self, *, event_id: str, deltas: Mapping[str, int], source: str) -> bool:
        """Apply ``deltas`` once per trigger event; a redelivered event finds its ledger entry."""
        changes = {name: int(delta) for name, delta in deltas.items() if int(delta) != 0}
        if not changes:
            return False

        def _op(tx: Transaction) -> bool:
            if tx.get(COUNTER_LEDGER, event_id) is not None:
                return False
            tx.create(COUNTER_LEDGER, event_id, {"source": source, "deltas": changes, "appliedAt": SERVER_TIMESTAMP})
            tx.increment(COUNTERS, DASHBOARD, changes)
            return True

        try:
            return self._store.run_transaction(_op)
        except DocumentExistsError:
            # a concurrent delivery of the same event recorded it first
            return False

    def overwrite(self, counters: Mapping[str, int]) -> None:
        payload: dict[str, Any] = {name: int(value) for name, value in counters.items()}
        payload["reconciledAt"] = SERVER_TIMESTAMP
        self._store.set(COUNTERS, DASHBOARD, payload)
