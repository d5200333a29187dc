from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class AssignRoleRequest(_CamelModel):
    target_id: str = Field(alias="targetId", min_length=1, max_length=128)
    role: Literal["user", "officer", "admin"]


class DecideRequest(_CamelModel):
    target_id: str = Field(alias="targetId", min_length=1, max_length=128)
    decision: Literal["approved", "rejected"]
    note: str | None = Field(default=None, max_length=1000)
    application_id: str | None = Field(default=None, alias="applicationId", min_length=1, max_length=128)


class ValidateCodeRequest(_CamelModel):
    code: str


class CreateApplicationRequest(_CamelModel):
    type: Literal["arrival", "departure"]
    shipment: dict[str, Any] = Field(default_factory=dict)


class UpdateApplicationRequest(_CamelModel):
    shipment: dict[str, Any]


class ApplicationDecisionRequest(_CamelModel):
    decision: Literal["approved", "declined"]
    note: str | None = Field(default=None, max_length=1000)


class PrincipalCreatedEvent(_CamelModel):
    uid: str = Field(min_length=1, max_length=128)
    email: str = ""
    email_verified: bool = Field(default=False, alias="emailVerified")
    display_name: str = Field(default="", alias="displayName")
    event_id: str | None = Field(default=None, alias="eventId")


class ObjectFinalizedEvent(_CamelModel):
    bucket: str = ""
    name: str = ""
    time_created: str | None = Field(default=None, alias="timeCreated")
    content_type: str | None = Field(default=None, alias="contentType")
    event_id: str | None = Field(default=None, alias="eventId")


class MailDeliveryUpdate(_CamelModel):
    state: str = Field(min_length=1, max_length=32)
    error: str | None = Field(default=None, max_length=2000)


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    kind: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "kind": kind,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
