from __future__ import annotations

from typing import TYPE_CHECKING, Any

from clearance.db.documents import SERVER_TIMESTAMP, Transaction
from clearance.errors import api_error
from clearance.repositories.profiles import PROFILES, status_of
from clearance.security import CallerContext
from clearance.status import VERIFICATION_STATES, ProfileStatus, StatusTransition

if TYPE_CHECKING:
    from clearance.context import ServerContext


def get_own_profile(ctx: "ServerContext", caller: CallerContext) -> dict[str, Any]:
    profile = ctx.profiles.get(caller.uid)
    if profile is None:
        raise api_error("not-found", "profile not found")
    profile.pop("verification", None)
    return {"id": caller.uid, **profile}


def mark_documents_uploaded(ctx: "ServerContext", caller: CallerContext) -> dict[str, Any]:
    def _op(tx: Transaction) -> ProfileStatus:
        profile = tx.get(PROFILES, caller.uid)
        if profile is None:
            raise api_error("not-found", "profile not found")
        current = status_of(profile)
        if current in VERIFICATION_STATES:
            raise api_error("failed-precondition", f"profile status is {current.value}; verify your email first")
        if profile.get("hasUploadedDocuments") is not True:
            tx.update(PROFILES, caller.uid, {"hasUploadedDocuments": True, "updatedAt": SERVER_TIMESTAMP})
        return current

    status = ctx.store.run_transaction(_op)
    return {"ok": True, "status": status.value}


def submit_for_review(ctx: "ServerContext", caller: CallerContext) -> dict[str, Any]:
    def _op(tx: Transaction) -> ProfileStatus:
        profile = tx.get(PROFILES, caller.uid)
        if profile is None:
            raise api_error("not-found", "profile not found")
        current = status_of(profile)
        if current == ProfileStatus.PENDING_APPROVAL:
            return current
        if current != ProfileStatus.PENDING_DOCUMENTS:
            raise api_error("failed-precondition", f"profile status is {current.value}; expected pending_documents")
        transition = StatusTransition(current, ProfileStatus.PENDING_APPROVAL)
        tx.update(PROFILES, caller.uid, {"status": transition.target.value, "updatedAt": SERVER_TIMESTAMP})
        return transition.target

    status = ctx.store.run_transaction(_op)
    return {"ok": True, "status": status.value}


def list_notifications(ctx: "ServerContext", caller: CallerContext) -> list[dict[str, Any]]:
    return ctx.notifications.list_for(caller.uid)
