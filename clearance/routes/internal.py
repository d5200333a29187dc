from __future__ import annotations

from fastapi import APIRouter, Header, Query, Request

from clearance.errors import api_error
from clearance.events import OBJECT_FINALIZED, PRINCIPAL_CREATED
from clearance.identity import PrincipalRecord
from clearance.routes._deps import ctx_from_request, require_internal_token, trace_id_from_request
from clearance.schemas import MailDeliveryUpdate, ObjectFinalizedEvent, PrincipalCreatedEvent, success_envelope

router = APIRouter(prefix="/api/v1/internal", tags=["internal"])


@router.post("/events/principal-created")
def principal_created(
    payload: PrincipalCreatedEvent,
    request: Request,
    x_internal_token: str | None = Header(default=None, alias="x-internal-token"),
):
    require_internal_token(request, x_internal_token)
    ctx = ctx_from_request(request)
    principal = PrincipalRecord(
        uid=payload.uid,
        email=payload.email,
        email_verified=payload.email_verified,
        display_name=payload.display_name,
    )
    ctx.identity.register(principal)
    registered = ctx.identity.get_principal(payload.uid) or principal
    event = ctx.publisher.publish_provider_event(
        PRINCIPAL_CREATED,
        f"principals/{payload.uid}",
        registered.to_dict(),
        event_id=payload.event_id,
    )
    return success_envelope({"eventId": event.event_id, "queued": True}, trace_id_from_request(request))


@router.post("/events/object-finalized")
def object_finalized(
    payload: ObjectFinalizedEvent,
    request: Request,
    x_internal_token: str | None = Header(default=None, alias="x-internal-token"),
):
    require_internal_token(request, x_internal_token)
    ctx = ctx_from_request(request)
    event = ctx.publisher.publish_provider_event(
        OBJECT_FINALIZED,
        f"objects/{payload.bucket}/{payload.name}",
        payload.model_dump(by_alias=True, exclude={"event_id"}),
        event_id=payload.event_id,
    )
    return success_envelope({"eventId": event.event_id, "queued": True}, trace_id_from_request(request))


@router.post("/mail/{mail_id}/delivery")
def mail_delivery(
    mail_id: str,
    payload: MailDeliveryUpdate,
    request: Request,
    x_internal_token: str | None = Header(default=None, alias="x-internal-token"),
):
    require_internal_token(request, x_internal_token)
    updated = ctx_from_request(request).email_sender.record_delivery(mail_id, state=payload.state, error=payload.error)
    if not updated:
        raise api_error("not-found", f"mail record not found: {mail_id}")
    return success_envelope({"mailId": mail_id, "state": payload.state.upper()}, trace_id_from_request(request))


@router.post("/worker/drain")
def worker_drain(
    request: Request,
    max_iterations: int = Query(default=20, ge=1, le=1000),
    x_internal_token: str | None = Header(default=None, alias="x-internal-token"),
):
    require_internal_token(request, x_internal_token)
    stats = ctx_from_request(request).worker.run_until_idle(max_iterations=max_iterations)
    return success_envelope(stats, trace_id_from_request(request))
