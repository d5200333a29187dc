from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from clearance.events import TriggerEvent
from clearance.repositories.counters import COUNTER_FIELDS
from clearance.repositories.profiles import PROFILES
from clearance.status import ApplicationStatus, ApplicationType, ProfileStatus
from clearance.timestamps import parse_timestamp, start_of_day

if TYPE_CHECKING:
    from clearance.context import ServerContext

logger = logging.getLogger(__name__)

_APPLICATION_FIELDS = {
    ApplicationType.ARRIVAL: "pendingArrival",
    ApplicationType.DEPARTURE: "pendingDeparture",
}


def _bucket_delta(old: Any, new: Any, field_for: dict[Any, str]) -> dict[str, int]:
    deltas: dict[str, int] = {}
    if old == new:
        return deltas
    if old in field_for:
        deltas[field_for[old]] = deltas.get(field_for[old], 0) - 1
    if new in field_for:
        deltas[field_for[new]] = deltas.get(field_for[new], 0) + 1
    return {name: delta for name, delta in deltas.items() if delta}


def profile_delta(before: ProfileStatus | None, after: ProfileStatus | None) -> dict[str, int]:
    return _bucket_delta(before, after, {ProfileStatus.PENDING_APPROVAL: "pendingAccounts"})


def application_bucket(snapshot: dict[str, Any] | None) -> tuple[ApplicationType | None, ApplicationStatus | None] | None:
    if snapshot is None:
        return None
    return ApplicationType.parse(snapshot.get("type")), ApplicationStatus.parse(snapshot.get("status"))


def application_delta(before: dict[str, Any] | None, after: dict[str, Any] | None) -> dict[str, int]:
    # only waiting applications of a known type are tracked
    tracked = {
        (app_type, ApplicationStatus.WAITING): name for app_type, name in _APPLICATION_FIELDS.items()
    }
    return _bucket_delta(application_bucket(before), application_bucket(after), tracked)


def apply_trigger_delta(ctx: "ServerContext", event: TriggerEvent, deltas: dict[str, int]) -> bool:
    if not deltas:
        return False
    applied = ctx.counters.apply_delta(event_id=event.event_id, deltas=deltas, source=event.resource)
    if applied:
        logger.info("counters_adjusted event_id=%s deltas=%s", event.event_id, deltas)
    else:
        logger.info("counters_already_applied event_id=%s", event.event_id)
    return applied


def live_counts(ctx: "ServerContext") -> dict[str, int]:
    counts = {"pendingAccounts": ctx.profiles.count_by_status(ProfileStatus.PENDING_APPROVAL)}
    for app_type, name in _APPLICATION_FIELDS.items():
        counts[name] = ctx.applications.count(app_type=app_type, status=ApplicationStatus.WAITING)
    return counts


def reconcile_counters(ctx: "ServerContext") -> dict[str, Any]:
    counts = live_counts(ctx)
    ctx.counters.overwrite(counts)
    logger.info("counters_reconciled counters=%s", counts)
    return {"success": True, "counters": counts}


def _decided_since(ctx: "ServerContext", status: ProfileStatus, since: datetime) -> int:
    total = 0
    for profile in ctx.store.list(PROFILES, where={"status": status.value}):
        decided = parse_timestamp(profile.get("decidedAt") or profile.get("updatedAt"))
        if decided is not None and decided >= since:
            total += 1
    return total


def dashboard_stats(ctx: "ServerContext") -> dict[str, int]:
    aggregate = ctx.counters.get_dashboard()
    stats: dict[str, int] = {}
    live: dict[str, int] | None = None
    for name in COUNTER_FIELDS:
        value = aggregate.get(name)
        if isinstance(value, int) and not isinstance(value, bool):
            stats[name] = value
            continue
        if live is None:
            live = live_counts(ctx)
        stats[name] = live[name]
    since = start_of_day(ctx.store.now())
    stats["approvedToday"] = _decided_since(ctx, ProfileStatus.APPROVED, since)
    stats["rejectedToday"] = _decided_since(ctx, ProfileStatus.REJECTED, since)
    return {
        "pendingAccounts": stats["pendingAccounts"],
        "approvedToday": stats["approvedToday"],
        "rejectedToday": stats["rejectedToday"],
        "pendingArrival": stats["pendingArrival"],
        "pendingDeparture": stats["pendingDeparture"],
    }
