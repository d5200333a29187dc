from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from clearance.db.documents import SERVER_TIMESTAMP, Transaction
from clearance.events import TriggerEvent
from clearance.identity import PrincipalRecord
from clearance.repositories.profiles import PROFILES, status_of
from clearance.status import ProfileStatus, Role, StatusTransition
from clearance.workflow._common import trigger_handler

if TYPE_CHECKING:
    from clearance.context import ServerContext

logger = logging.getLogger(__name__)

_ROLE_VALUES = frozenset(role.value for role in Role)


def _initial_profile(principal: PrincipalRecord, verified: bool) -> dict[str, Any]:
    status = ProfileStatus.PENDING_DOCUMENTS if verified else ProfileStatus.PENDING_EMAIL_VERIFICATION
    return {
        "uid": principal.uid,
        "email": principal.email,
        "role": Role.USER.value,
        "status": status.value,
        "isEmailVerified": verified,
        "hasUploadedDocuments": False,
        "documents": [],
        "createdAt": SERVER_TIMESTAMP,
        "updatedAt": SERVER_TIMESTAMP,
    }


def backfill_updates(current: dict[str, Any], principal: PrincipalRecord, verified: bool) -> dict[str, Any]:
    """Fields to write on an existing profile; empty when it is already complete."""
    updates: dict[str, Any] = {}
    if not isinstance(current.get("email"), str):
        updates["email"] = principal.email
    if not isinstance(current.get("uid"), str):
        updates["uid"] = principal.uid
    if current.get("role") not in _ROLE_VALUES:
        updates["role"] = Role.USER.value
    if not isinstance(current.get("hasUploadedDocuments"), bool):
        updates["hasUploadedDocuments"] = False
    if not isinstance(current.get("documents"), list):
        updates["documents"] = []
    if verified and current.get("isEmailVerified") is not True:
        updates["isEmailVerified"] = True
        status = status_of(current)
        if status == ProfileStatus.PENDING_EMAIL_VERIFICATION:
            transition = StatusTransition(status, ProfileStatus.PENDING_DOCUMENTS)
            updates["status"] = transition.target.value
    if not current.get("createdAt"):
        updates["createdAt"] = SERVER_TIMESTAMP
    if updates:
        updates["updatedAt"] = SERVER_TIMESTAMP
    return updates


def _ensure_role_claim(ctx: "ServerContext", principal: PrincipalRecord) -> None:
    known = ctx.identity.get_principal(principal.uid)
    if known is not None and known.custom_claims.get("role") in _ROLE_VALUES:
        return
    outcome = ctx.identity.set_custom_claims(principal.uid, {"role": Role.USER.value})
    if not outcome.ok:
        logger.error("default_role_claim_failed uid=%s error=%s", principal.uid, outcome.error)


def provision_principal(ctx: "ServerContext", principal: PrincipalRecord) -> str:
    """Create or backfill the profile of ``principal``; returns created, updated or noop."""
    _ensure_role_claim(ctx, principal)
    known = ctx.identity.get_principal(principal.uid)
    verified = principal.email_verified or bool(known is not None and known.email_verified)

    def _op(tx: Transaction) -> str:
        current = tx.get(PROFILES, principal.uid)
        if current is None:
            tx.create(PROFILES, principal.uid, _initial_profile(principal, verified))
            return "created"
        updates = backfill_updates(current, principal, verified)
        if not updates:
            return "noop"
        tx.update(PROFILES, principal.uid, updates)
        return "updated"

    result = ctx.store.run_transaction(_op)
    logger.info("principal_provisioned uid=%s result=%s verified=%s", principal.uid, result, verified)
    return result


@trigger_handler("on_principal_created")
def on_principal_created(ctx: "ServerContext", event: TriggerEvent) -> str | None:
    uid = str(event.data.get("uid") or event.doc_id or "").strip()
    if not uid:
        logger.warning("principal_event_missing_uid event_id=%s", event.event_id)
        return None
    return provision_principal(ctx, PrincipalRecord.from_dict(uid, event.data))
