from __future__ import annotations

from fastapi import APIRouter, Request

from clearance.routes._deps import caller_from_request, ctx_from_request, trace_id_from_request
from clearance.schemas import ValidateCodeRequest, success_envelope
from clearance.workflow.verification import issue_verification_code, validate_verification_code

router = APIRouter(prefix="/api/v1/verification", tags=["verification"])


@router.post("/codes")
def issue_code(request: Request):
    data = issue_verification_code(ctx_from_request(request), caller_from_request(request))
    return success_envelope(data, trace_id_from_request(request))


@router.post("/codes/validate")
def validate_code(payload: ValidateCodeRequest, request: Request):
    data = validate_verification_code(ctx_from_request(request), caller_from_request(request), payload.code)
    return success_envelope(data, trace_id_from_request(request))
