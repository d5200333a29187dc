from __future__ import annotations

from functools import partial
from typing import TYPE_CHECKING

from clearance.events import (
    APPLICATION_CREATED,
    APPLICATION_UPDATED,
    MAIL_UPDATED,
    OBJECT_FINALIZED,
    PRINCIPAL_CREATED,
    PROFILE_UPDATED,
)
from clearance.workflow.applications import on_application_created, on_application_updated
from clearance.workflow.attachments import on_object_finalized
from clearance.workflow.identity_bridge import on_principal_created
from clearance.workflow.mail_watcher import on_email_record_updated
from clearance.workflow.profile_reactor import on_profile_updated

if TYPE_CHECKING:
    from clearance.context import ServerContext


def register_triggers(ctx: "ServerContext") -> None:
    registry = ctx.registry
    registry.register(PRINCIPAL_CREATED, partial(on_principal_created, ctx))
    registry.register(PROFILE_UPDATED, partial(on_profile_updated, ctx))
    registry.register(OBJECT_FINALIZED, partial(on_object_finalized, ctx))
    registry.register(APPLICATION_CREATED, partial(on_application_created, ctx))
    registry.register(APPLICATION_UPDATED, partial(on_application_updated, ctx))
    registry.register(MAIL_UPDATED, partial(on_email_record_updated, ctx))


__all__ = ["register_triggers"]
