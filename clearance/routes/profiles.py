from __future__ import annotations

from fastapi import APIRouter, Request

from clearance.routes._deps import caller_from_request, ctx_from_request, trace_id_from_request
from clearance.schemas import success_envelope
from clearance.workflow.profile_actions import (
    get_own_profile,
    list_notifications,
    mark_documents_uploaded,
    submit_for_review,
)

router = APIRouter(prefix="/api/v1", tags=["profile"])


@router.get("/profile")
def get_profile(request: Request):
    return success_envelope(
        get_own_profile(ctx_from_request(request), caller_from_request(request)),
        trace_id_from_request(request),
    )


@router.post("/profile/documents/uploaded")
def documents_uploaded(request: Request):
    return success_envelope(
        mark_documents_uploaded(ctx_from_request(request), caller_from_request(request)),
        trace_id_from_request(request),
    )


@router.post("/profile/submit")
def submit_profile(request: Request):
    return success_envelope(
        submit_for_review(ctx_from_request(request), caller_from_request(request)),
        trace_id_from_request(request),
    )


@router.get("/notifications")
def get_notifications(request: Request):
    items = list_notifications(ctx_from_request(request), caller_from_request(request))
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))
