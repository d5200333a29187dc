from __future__ import annotations

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from clearance.routes._deps import caller_from_request, ctx_from_request, trace_id_from_request
from clearance.schemas import (
    ApplicationDecisionRequest,
    CreateApplicationRequest,
    UpdateApplicationRequest,
    success_envelope,
)
from clearance.workflow.applications import (
    create_application,
    decide_application,
    generate_history_document,
    get_application,
    list_applications,
    update_application,
)

router = APIRouter(prefix="/api/v1/applications", tags=["applications"])


@router.get("")
def list_applications_route(request: Request, status: str | None = Query(default=None)):
    items = list_applications(ctx_from_request(request), caller_from_request(request), status=status)
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.post("")
def create_application_route(payload: CreateApplicationRequest, request: Request):
    data = create_application(
        ctx_from_request(request),
        caller_from_request(request),
        app_type=payload.type,
        shipment=payload.shipment,
    )
    return JSONResponse(status_code=201, content=success_envelope(data, trace_id_from_request(request)))


@router.get("/{application_id}")
def get_application_route(application_id: str, request: Request):
    data = get_application(ctx_from_request(request), caller_from_request(request), application_id)
    return success_envelope(data, trace_id_from_request(request))


@router.patch("/{application_id}")
def update_application_route(application_id: str, payload: UpdateApplicationRequest, request: Request):
    data = update_application(
        ctx_from_request(request),
        caller_from_request(request),
        application_id,
        shipment=payload.shipment,
    )
    return success_envelope(data, trace_id_from_request(request))


@router.post("/{application_id}/decision")
def decide_application_route(application_id: str, payload: ApplicationDecisionRequest, request: Request):
    data = decide_application(
        ctx_from_request(request),
        caller_from_request(request),
        application_id,
        decision=payload.decision,
        note=payload.note,
    )
    return success_envelope(data, trace_id_from_request(request))


@router.post("/{application_id}/history-document")
def history_document_route(application_id: str, request: Request):
    data = generate_history_document(ctx_from_request(request), caller_from_request(request), application_id)
    return success_envelope(data, trace_id_from_request(request))
