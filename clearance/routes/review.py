from __future__ import annotations

from fastapi import APIRouter, Request

from clearance.routes._deps import caller_from_request, ctx_from_request, trace_id_from_request
from clearance.schemas import AssignRoleRequest, DecideRequest, success_envelope
from clearance.security import require_admin, require_reviewer
from clearance.workflow.counters import dashboard_stats, reconcile_counters
from clearance.workflow.gateway import assign_role, decide, list_review_queue

router = APIRouter(prefix="/api/v1", tags=["review"])


@router.post("/admin/roles")
def assign_role_route(payload: AssignRoleRequest, request: Request):
    data = assign_role(
        ctx_from_request(request),
        caller_from_request(request),
        target_id=payload.target_id,
        role=payload.role,
    )
    return success_envelope(data, trace_id_from_request(request))


@router.post("/admin/counters/reconcile")
def reconcile_counters_route(request: Request):
    require_admin(caller_from_request(request))
    return success_envelope(reconcile_counters(ctx_from_request(request)), trace_id_from_request(request))


@router.post("/review/decisions")
def decide_route(payload: DecideRequest, request: Request):
    data = decide(
        ctx_from_request(request),
        caller_from_request(request),
        target_id=payload.target_id,
        decision=payload.decision,
        note=payload.note,
        application_id=payload.application_id,
    )
    return success_envelope(data, trace_id_from_request(request))


@router.get("/review/dashboard")
def dashboard_route(request: Request):
    require_reviewer(caller_from_request(request))
    return success_envelope(dashboard_stats(ctx_from_request(request)), trace_id_from_request(request))


@router.get("/review/queue")
def review_queue_route(request: Request):
    items = list_review_queue(ctx_from_request(request), caller_from_request(request))
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))
