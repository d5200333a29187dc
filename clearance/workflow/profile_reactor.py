"""
Reaction to committed profile writes.

The reaction is computed as a pure :class:`ReactionPlan` from the before/after
snapshots and then executed step by step. Every step is safe to repeat: the
enforcement write re-reads the profile inside a transaction, and queue entries
and notifications are created by deterministic key.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from clearance.db.documents import SERVER_TIMESTAMP, Transaction
from clearance.events import TriggerEvent
from clearance.repositories.profiles import PROFILES, status_of
from clearance.status import IllegalTransitionError, ProfileStatus, StatusTransition
from clearance.workflow._common import dedupe_millis, trigger_handler
from clearance.workflow.counters import apply_trigger_delta, profile_delta

if TYPE_CHECKING:
    from clearance.context import ServerContext

logger = logging.getLogger(__name__)

DECISION_MESSAGES = {
    ProfileStatus.APPROVED: "Your account has been approved.",
    ProfileStatus.REJECTED: "Your account has been rejected.",
}


@dataclass(frozen=True)
class ReactionPlan:
    uid: str
    before_status: ProfileStatus
    after_status: ProfileStatus
    enforce_pending_approval: bool = False
    enqueue_review: bool = False
    notify: ProfileStatus | None = None
    counter_deltas: dict[str, int] | None = None
    illegal: IllegalTransitionError | None = None

    @property
    def is_noop(self) -> bool:
        return not (self.enforce_pending_approval or self.enqueue_review or self.notify or self.counter_deltas)


def plan_reaction(uid: str, before: dict[str, Any] | None, after: dict[str, Any] | None) -> ReactionPlan:
    before = before or {}
    after = after or {}
    before_status = status_of(before)
    after_status = status_of(after)
    docs_now_true = before.get("hasUploadedDocuments") is not True and after.get("hasUploadedDocuments") is True

    transition: StatusTransition | None = None
    if before_status != after_status:
        try:
            transition = StatusTransition(before_status, after_status)
        except IllegalTransitionError as exc:
            return ReactionPlan(uid=uid, before_status=before_status, after_status=after_status, illegal=exc)

    enforce = (
        before_status == ProfileStatus.PENDING_DOCUMENTS
        and after_status == ProfileStatus.PENDING_DOCUMENTS
        and docs_now_true
    )
    # A profile sitting in pending_approval gets one queue entry per submission.
    enqueue = after_status == ProfileStatus.PENDING_APPROVAL and (
        docs_now_true or before_status != ProfileStatus.PENDING_APPROVAL
    )
    notify = after_status if transition is not None and transition.becomes_terminal else None
    return ReactionPlan(
        uid=uid,
        before_status=before_status,
        after_status=after_status,
        enforce_pending_approval=enforce,
        enqueue_review=enqueue,
        notify=notify,
        counter_deltas=profile_delta(before_status, after_status) or None,
    )


def enforce_pending_approval(ctx: "ServerContext", uid: str) -> bool:
    """Advance pending_documents to pending_approval unless another writer got there first."""

    def _op(tx: Transaction) -> ProfileStatus | None:
        current = tx.get(PROFILES, uid)
        if current is None:
            return None
        status = status_of(current)
        if status != ProfileStatus.PENDING_DOCUMENTS:
            return status
        transition = StatusTransition(status, ProfileStatus.PENDING_APPROVAL)
        tx.update(PROFILES, uid, {"status": transition.target.value, "updatedAt": SERVER_TIMESTAMP})
        return transition.target

    result = ctx.store.run_transaction(_op)
    if result == ProfileStatus.PENDING_APPROVAL:
        logger.info("pending_approval_enforced uid=%s", uid)
        return True
    logger.info("pending_approval_enforcement_skipped uid=%s current_status=%s", uid, getattr(result, "value", None))
    return False


def execute_plan(ctx: "ServerContext", plan: ReactionPlan, event: TriggerEvent) -> dict[str, Any]:
    after = event.after or {}
    summary: dict[str, Any] = {"enforced": False, "review_key": None, "notification_key": None, "counters": False}
    if plan.enforce_pending_approval:
        summary["enforced"] = enforce_pending_approval(ctx, plan.uid)

    if plan.enqueue_review:
        millis = dedupe_millis(after, event, "updatedAt")
        email = str(after.get("email") or (event.before or {}).get("email") or "")
        created = ctx.review_queue.enqueue(uid=plan.uid, email=email, submitted_at_millis=millis)
        summary["review_key"] = f"{plan.uid}_{millis}"
        logger.info("review_enqueue uid=%s key=%s created=%s", plan.uid, summary["review_key"], created)

    if plan.notify is not None:
        millis = dedupe_millis(after, event, "decidedAt", "updatedAt")
        kind = plan.notify.value
        created = ctx.notifications.create(
            uid=plan.uid,
            kind=kind,
            message=DECISION_MESSAGES[plan.notify],
            decided_at_millis=millis,
        )
        summary["notification_key"] = f"{kind}_{millis}"
        logger.info("decision_notification uid=%s key=%s created=%s", plan.uid, summary["notification_key"], created)

    if plan.counter_deltas:
        summary["counters"] = apply_trigger_delta(ctx, event, plan.counter_deltas)
    return summary


@trigger_handler("on_profile_updated")
def on_profile_updated(ctx: "ServerContext", event: TriggerEvent) -> dict[str, Any] | None:
    plan = plan_reaction(event.doc_id, event.before, event.after)
    if plan.illegal is not None:
        logger.error(
            "illegal_status_transition uid=%s before=%s after=%s event_id=%s",
            plan.uid,
            plan.before_status.value,
            plan.after_status.value,
            event.event_id,
        )
        return None
    if plan.is_noop:
        return None
    return execute_plan(ctx, plan, event)
