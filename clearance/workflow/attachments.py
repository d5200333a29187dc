from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from clearance.db.documents import SERVER_TIMESTAMP, Transaction
from clearance.events import TriggerEvent
from clearance.repositories.profiles import PROFILES
from clearance.timestamps import parse_timestamp, to_iso
from clearance.workflow._common import trigger_handler

if TYPE_CHECKING:
    from clearance.context import ServerContext

logger = logging.getLogger(__name__)

_OWNER_ROOTS = ("profiles", "users")


def owner_from_object_name(name: str) -> str | None:
    """Profile id encoded in an uploaded object's path, or None for foreign paths."""
    parts = name.split("/")
    if len(parts) >= 4 and parts[0] in _OWNER_ROOTS and parts[2] == "documents":
        return parts[1] or None
    if len(parts) >= 3 and parts[0] == "documents":
        return parts[1] or None
    return None


def storage_locator(scheme: str, bucket: str, name: str) -> str:
    return f"{scheme}://{bucket}/{name}"


def _already_recorded(documents: list[Any], locator: str, filename: str) -> bool:
    for entry in documents:
        if not isinstance(entry, dict):
            continue
        if entry.get("storagePath") == locator or entry.get("documentName") == filename:
            return True
    return False


def record_attachment(ctx: "ServerContext", *, bucket: str, name: str, time_created: str | None = None) -> str:
    if not bucket or not name:
        logger.info("attachment_skipped reason=missing_bucket_or_name bucket=%s name=%s", bucket, name)
        return "ignored"
    uid = owner_from_object_name(name)
    if uid is None:
        logger.info("attachment_skipped reason=unrecognized_path name=%s", name)
        return "ignored"
    locator = storage_locator(ctx.settings.storage_scheme, bucket, name)
    filename = name.rsplit("/", 1)[-1] or "document"
    created = parse_timestamp(time_created)
    uploaded_at: Any = to_iso(created) if created is not None else SERVER_TIMESTAMP

    def _op(tx: Transaction) -> str:
        profile = tx.get(PROFILES, uid)
        if profile is None:
            return "profile_missing"
        documents = profile.get("documents")
        documents = list(documents) if isinstance(documents, list) else []
        if _already_recorded(documents, locator, filename):
            return "duplicate"
        documents.append({"documentName": filename, "storagePath": locator, "uploadedAt": uploaded_at})
        # never touches hasUploadedDocuments or updatedAt
        tx.update(PROFILES, uid, {"documents": documents})
        return "appended"

    result = ctx.store.run_transaction(_op)
    if result == "profile_missing":
        logger.warning("attachment_profile_missing uid=%s locator=%s", uid, locator)
    else:
        logger.info("attachment_recorded uid=%s locator=%s result=%s", uid, locator, result)
    return result


@trigger_handler("on_object_finalized")
def on_object_finalized(ctx: "ServerContext", event: TriggerEvent) -> str:
    data = event.data
    return record_attachment(
        ctx,
        bucket=str(data.get("bucket") or ""),
        name=str(data.get("name") or ""),
        time_created=data.get("timeCreated"),
    )
