from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from clearance.db.documents import SERVER_TIMESTAMP, Transaction
from clearance.errors import api_error
from clearance.repositories.profiles import PROFILES, status_of
from clearance.security import CallerContext, require_admin, require_reviewer
from clearance.status import TERMINAL_DECISIONS, ProfileStatus, Role, StatusTransition
from clearance.workflow.applications import attach_clearance_document

if TYPE_CHECKING:
    from clearance.context import ServerContext

logger = logging.getLogger(__name__)

MAX_NOTE_LENGTH = 1000


def _require_target(target_id: str) -> str:
    target = (target_id or "").strip()
    if not target:
        raise api_error("invalid-argument", "targetId is required")
    return target


def assign_role(ctx: "ServerContext", caller: CallerContext, *, target_id: str, role: str) -> dict[str, Any]:
    require_admin(caller)
    target = _require_target(target_id)
    if role not in {item.value for item in Role}:
        raise api_error("invalid-argument", f"invalid role: {role}")

    outcome = ctx.identity.set_custom_claims(target, {"role": role})
    if not outcome.ok:
        logger.error("role_claim_failed target_id=%s role=%s error=%s", target, role, outcome.error)
        raise api_error("internal", "failed to set role claim")

    def _op(tx: Transaction) -> bool:
        profile = tx.get(PROFILES, target)
        if profile is None:
            return False
        if profile.get("role") != role:
            tx.update(PROFILES, target, {"role": role, "updatedAt": SERVER_TIMESTAMP})
        return True

    mirrored = ctx.store.run_transaction(_op)
    if not mirrored:
        logger.warning("role_mirror_skipped target_id=%s reason=profile_missing", target)
    logger.info("role_assigned target_id=%s role=%s by=%s", target, role, caller.display_id)
    return {"ok": True, "targetId": target, "role": role}


def decide(
    ctx: "ServerContext",
    caller: CallerContext,
    *,
    target_id: str,
    decision: str,
    note: str | None = None,
    application_id: str | None = None,
) -> dict[str, Any]:
    """Approve or reject a profile waiting in ``pending_approval``.

    With ``application_id`` an approval also renders the clearance document for
    that application. The decision commits first; a generation failure is
    raised as ``internal`` afterwards and leaves the decision in place.
    """
    require_reviewer(caller)
    target = _require_target(target_id)
    try:
        decided = ProfileStatus(decision)
    except ValueError:
        raise api_error("invalid-argument", f"invalid decision: {decision}") from None
    if decided not in TERMINAL_DECISIONS:
        raise api_error("invalid-argument", f"invalid decision: {decision}")
    if note is not None and len(note) > MAX_NOTE_LENGTH:
        raise api_error("invalid-argument", f"note must be at most {MAX_NOTE_LENGTH} characters")
    if application_id:
        application = ctx.applications.get(application_id)
        if application is None:
            raise api_error("not-found", f"application not found: {application_id}")
        if application.get("agentUid") != target:
            raise api_error("invalid-argument", "application does not belong to the target profile")

    def _op(tx: Transaction) -> None:
        profile = tx.get(PROFILES, target)
        if profile is None:
            raise api_error("not-found", f"profile not found: {target}")
        current = status_of(profile)
        if current != ProfileStatus.PENDING_APPROVAL:
            raise api_error(
                "failed-precondition",
                f"profile status is {current.value}; expected pending_approval",
            )
        transition = StatusTransition(current, decided)
        updates: dict[str, Any] = {
            "status": transition.target.value,
            "decidedBy": caller.display_id,
            "decidedAt": SERVER_TIMESTAMP,
            "updatedAt": SERVER_TIMESTAMP,
        }
        if note:
            updates["decisionNote"] = note
        tx.update(PROFILES, target, updates)

    ctx.store.run_transaction(_op)
    logger.info("profile_decided target_id=%s decision=%s by=%s", target, decided.value, caller.display_id)
    result: dict[str, Any] = {"ok": True, "targetId": target, "status": decided.value}
    if decided == ProfileStatus.APPROVED and application_id:
        result["clearanceDocumentUrl"] = attach_clearance_document(ctx, application_id, decided_by=caller.display_id)
    return result


def list_review_queue(ctx: "ServerContext", caller: CallerContext) -> list[dict[str, Any]]:
    require_reviewer(caller)
    return ctx.review_queue.list()
