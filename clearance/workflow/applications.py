from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING, Any

from clearance.db.documents import SERVER_TIMESTAMP, Transaction
from clearance.errors import ApiError, api_error
from clearance.events import TriggerEvent
from clearance.pdf_renderer import render_clearance_document, render_history_document
from clearance.repositories.applications import APPLICATIONS
from clearance.repositories.profiles import status_of
from clearance.security import CallerContext, require_reviewer
from clearance.status import (
    ApplicationStatus,
    ApplicationTransition,
    ApplicationType,
    ProfileStatus,
)
from clearance.workflow._common import trigger_handler
from clearance.workflow.counters import application_delta, apply_trigger_delta

if TYPE_CHECKING:
    from clearance.context import ServerContext

logger = logging.getLogger(__name__)

# agents under review may file applications so that approval can clear one
APPLICANT_STATUSES = frozenset({ProfileStatus.PENDING_APPROVAL, ProfileStatus.APPROVED})


def history_entry(*, actor: str, action: str, status: str) -> dict[str, Any]:
    return {"at": SERVER_TIMESTAMP, "actor": actor, "action": action, "status": status}


def _history(current: dict[str, Any]) -> list[Any]:
    history = current.get("history")
    return list(history) if isinstance(history, list) else []


def _load_for(ctx: "ServerContext", caller: CallerContext, application_id: str) -> dict[str, Any]:
    if not application_id.strip():
        raise api_error("invalid-argument", "applicationId is required")
    application = ctx.applications.get(application_id)
    if application is None:
        raise api_error("not-found", f"application not found: {application_id}")
    if not caller.is_reviewer and application.get("agentUid") != caller.uid:
        raise api_error("permission-denied", "not allowed to access this application")
    return application


def create_application(
    ctx: "ServerContext", caller: CallerContext, *, app_type: str, shipment: dict[str, Any]
) -> dict[str, Any]:
    parsed_type = ApplicationType.parse(app_type)
    if parsed_type is None:
        raise api_error("invalid-argument", f"unknown application type: {app_type}")
    profile = ctx.profiles.get(caller.uid)
    if profile is None:
        raise api_error("not-found", "profile not found")
    if status_of(profile) not in APPLICANT_STATUSES:
        raise api_error(
            "failed-precondition",
            f"profile status is {status_of(profile).value}; submit your documents for review first",
        )
    application_id = f"app_{uuid.uuid4().hex[:12]}"
    ctx.store.run_transaction(
        lambda tx: tx.create(
            APPLICATIONS,
            application_id,
            {
                "agentUid": caller.uid,
                "type": parsed_type.value,
                "status": ApplicationStatus.WAITING.value,
                "shipment": dict(shipment),
                "clearanceDocumentUrl": None,
                "historyDocumentUrl": None,
                "decidedBy": None,
                "history": [history_entry(actor=caller.display_id, action="created", status="waiting")],
                "createdAt": SERVER_TIMESTAMP,
                "updatedAt": SERVER_TIMESTAMP,
            },
        )
    )
    logger.info("application_created application_id=%s agent_uid=%s type=%s", application_id, caller.uid, parsed_type.value)
    return ctx.applications.get(application_id) or {"id": application_id}


def update_application(
    ctx: "ServerContext", caller: CallerContext, application_id: str, *, shipment: dict[str, Any]
) -> dict[str, Any]:
    def _op(tx: Transaction) -> None:
        current = tx.get(APPLICATIONS, application_id)
        if current is None:
            raise api_error("not-found", f"application not found: {application_id}")
        if current.get("agentUid") != caller.uid:
            raise api_error("permission-denied", "only the owning agent can update an application")
        status = ApplicationStatus.parse(current.get("status"))
        if status != ApplicationStatus.WAITING:
            raise api_error("failed-precondition", f"application status is {current.get('status')}; expected waiting")
        history = _history(current)
        history.append(history_entry(actor=caller.display_id, action="updated", status=status.value))
        tx.update(
            APPLICATIONS,
            application_id,
            {"shipment": dict(shipment), "history": history, "updatedAt": SERVER_TIMESTAMP},
        )

    ctx.store.run_transaction(_op)
    return ctx.applications.get(application_id) or {"id": application_id}


def get_application(ctx: "ServerContext", caller: CallerContext, application_id: str) -> dict[str, Any]:
    return _load_for(ctx, caller, application_id)


def list_applications(ctx: "ServerContext", caller: CallerContext, *, status: str | None = None) -> list[dict[str, Any]]:
    if caller.is_reviewer:
        parsed = ApplicationStatus.parse(status or ApplicationStatus.WAITING.value)
        if parsed is None:
            raise api_error("invalid-argument", f"unknown application status: {status}")
        return ctx.applications.list_by_status(parsed)
    return ctx.applications.list_for_agent(caller.uid)


def _store_pdf(ctx: "ServerContext", *, application_id: str, kind: str, content: bytes, field: str) -> str:
    url = ctx.object_storage.put_object(
        object_type=kind,
        object_id=application_id,
        filename=f"{kind}-{application_id}.pdf",
        content_bytes=content,
        content_type="application/pdf",
    )
    ctx.store.run_transaction(
        lambda tx: tx.update(APPLICATIONS, application_id, {field: url, "updatedAt": SERVER_TIMESTAMP})
    )
    return url


def generate_clearance_document(ctx: "ServerContext", application_id: str, *, decided_by: str) -> str:
    application = ctx.applications.get(application_id)
    if application is None:
        raise api_error("not-found", f"application not found: {application_id}")
    profile = ctx.profiles.get(str(application.get("agentUid") or ""))
    content = render_clearance_document(application=application, profile=profile, decided_by=decided_by)
    url = _store_pdf(ctx, application_id=application_id, kind="clearance", content=content, field="clearanceDocumentUrl")
    logger.info("clearance_document_stored application_id=%s url=%s", application_id, url)
    return url


def attach_clearance_document(ctx: "ServerContext", application_id: str, *, decided_by: str) -> str:
    """Generate the clearance PDF after a decision committed; failures surface as ``internal``."""
    try:
        return generate_clearance_document(ctx, application_id, decided_by=decided_by)
    except Exception as exc:
        logger.exception("clearance_document_failed application_id=%s", application_id)
        raise api_error("internal", f"clearance document generation failed: {exc}") from exc


def generate_history_document(ctx: "ServerContext", caller: CallerContext, application_id: str) -> dict[str, Any]:
    application = _load_for(ctx, caller, application_id)
    try:
        content = render_history_document(application=application)
        url = _store_pdf(ctx, application_id=application_id, kind="history", content=content, field="historyDocumentUrl")
    except ApiError:
        raise
    except Exception as exc:
        logger.exception("history_document_failed application_id=%s", application_id)
        raise api_error("internal", f"history document generation failed: {exc}") from exc
    logger.info("history_document_stored application_id=%s url=%s", application_id, url)
    return {"success": True, "documentUrl": url}


def decide_application(
    ctx: "ServerContext",
    caller: CallerContext,
    application_id: str,
    *,
    decision: str,
    note: str | None = None,
) -> dict[str, Any]:
    require_reviewer(caller)
    target = ApplicationStatus.parse(decision)
    if target not in {ApplicationStatus.APPROVED, ApplicationStatus.DECLINED}:
        raise api_error("invalid-argument", f"invalid decision: {decision}")
    if note is not None and len(note) > 1000:
        raise api_error("invalid-argument", "note must be at most 1000 characters")

    def _op(tx: Transaction) -> None:
        current = tx.get(APPLICATIONS, application_id)
        if current is None:
            raise api_error("not-found", f"application not found: {application_id}")
        status = ApplicationStatus.parse(current.get("status"))
        if status != ApplicationStatus.WAITING:
            raise api_error("failed-precondition", f"application status is {current.get('status')}; expected waiting")
        transition = ApplicationTransition(status, target)
        history = _history(current)
        history.append(history_entry(actor=caller.display_id, action="decided", status=transition.target.value))
        updates: dict[str, Any] = {
            "status": transition.target.value,
            "decidedBy": caller.display_id,
            "decidedAt": SERVER_TIMESTAMP,
            "history": history,
            "updatedAt": SERVER_TIMESTAMP,
        }
        if note:
            updates["decisionNote"] = note
        tx.update(APPLICATIONS, application_id, updates)

    ctx.store.run_transaction(_op)
    logger.info("application_decided application_id=%s decision=%s by=%s", application_id, target.value, caller.display_id)
    result: dict[str, Any] = {"ok": True, "applicationId": application_id, "status": target.value}
    if target == ApplicationStatus.APPROVED:
        result["clearanceDocumentUrl"] = attach_clearance_document(ctx, application_id, decided_by=caller.display_id)
    return result


def _backfill_application(ctx: "ServerContext", application_id: str) -> bool:
    def _op(tx: Transaction) -> bool:
        current = tx.get(APPLICATIONS, application_id)
        if current is None:
            return False
        updates: dict[str, Any] = {}
        if ApplicationStatus.parse(current.get("status")) is None:
            updates["status"] = ApplicationStatus.WAITING.value
        if not isinstance(current.get("history"), list):
            updates["history"] = []
        if not isinstance(current.get("shipment"), dict):
            updates["shipment"] = {}
        for name in ("clearanceDocumentUrl", "historyDocumentUrl", "decidedBy"):
            if name not in current:
                updates[name] = None
        if not current.get("createdAt"):
            updates["createdAt"] = SERVER_TIMESTAMP
        if not updates:
            return False
        updates["updatedAt"] = SERVER_TIMESTAMP
        tx.update(APPLICATIONS, application_id, updates)
        return True

    return ctx.store.run_transaction(_op)


@trigger_handler("on_application_created")
def on_application_created(ctx: "ServerContext", event: TriggerEvent) -> None:
    if _backfill_application(ctx, event.doc_id):
        logger.info("application_defaults_backfilled application_id=%s", event.doc_id)
    apply_trigger_delta(ctx, event, application_delta(None, event.after))


@trigger_handler("on_application_updated")
def on_application_updated(ctx: "ServerContext", event: TriggerEvent) -> None:
    apply_trigger_delta(ctx, event, application_delta(event.before, event.after))
