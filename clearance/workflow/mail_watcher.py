from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from clearance.db.documents import SERVER_TIMESTAMP, Transaction
from clearance.email import (
    FAILURE_STATES,
    SUCCESS_STATES,
    VERIFICATION_PURPOSE,
    EmailMessage,
    normalize_delivery_state,
)
from clearance.events import TriggerEvent
from clearance.repositories.profiles import PROFILES, status_of
from clearance.status import VERIFICATION_STATES, ProfileStatus, StatusTransition
from clearance.workflow._common import trigger_handler

if TYPE_CHECKING:
    from clearance.context import ServerContext

logger = logging.getLogger(__name__)


def delivery_state(record: dict[str, Any] | None) -> str:
    delivery = (record or {}).get("delivery")
    if not isinstance(delivery, dict):
        return ""
    return normalize_delivery_state(delivery.get("state"))


def retry_mail_id(root_id: str, retry_count: int) -> str:
    return f"{root_id}_retry{int(retry_count)}"


def mark_delivery_failed(ctx: "ServerContext", uid: str, error: str) -> str:
    def _op(tx: Transaction) -> str:
        profile = tx.get(PROFILES, uid)
        if profile is None:
            return "profile_missing"
        current = status_of(profile)
        if profile.get("isEmailVerified") is True or current not in VERIFICATION_STATES:
            return "already_past_verification"
        updates: dict[str, Any] = {"emailDeliveryError": error}
        if current == ProfileStatus.PENDING_EMAIL_VERIFICATION:
            transition = StatusTransition(current, ProfileStatus.EMAIL_VERIFICATION_FAILED)
            updates["status"] = transition.target.value
            updates["updatedAt"] = SERVER_TIMESTAMP
        tx.update(PROFILES, uid, updates)
        return "marked"

    return ctx.store.run_transaction(_op)


def schedule_retry(ctx: "ServerContext", mail_id: str, record: dict[str, Any]) -> str | None:
    message = EmailMessage.from_record(mail_id, record)
    if message.retry_count >= ctx.settings.email_max_retries:
        logger.warning(
            "verification_email_retries_exhausted mail_id=%s uid=%s retry_count=%s",
            mail_id,
            message.uid,
            message.retry_count,
        )
        return None
    root_id = message.retry_of or mail_id
    next_count = message.retry_count + 1
    retry = EmailMessage(
        mail_id=retry_mail_id(root_id, next_count),
        to=message.to,
        template_name=message.template_name,
        template_data=message.template_data,
        purpose=message.purpose,
        uid=message.uid,
        retry_count=next_count,
        retry_of=root_id,
    )
    outcome = ctx.email_sender.send(retry)
    if not outcome.ok:
        logger.error("verification_email_retry_failed mail_id=%s error=%s", retry.mail_id, outcome.error)
        return None
    logger.info("verification_email_retry_queued mail_id=%s retry_count=%s", retry.mail_id, next_count)
    return retry.mail_id


@trigger_handler("on_email_record_updated")
def on_email_record_updated(ctx: "ServerContext", event: TriggerEvent) -> str:
    after = event.after or {}
    if after.get("purpose") != VERIFICATION_PURPOSE:
        return "ignored"
    before_state = delivery_state(event.before)
    after_state = delivery_state(after)
    if before_state == after_state:
        return "unchanged"
    if after_state in SUCCESS_STATES:
        logger.info("verification_email_delivered mail_id=%s", event.doc_id)
        return "delivered"
    if after_state not in FAILURE_STATES:
        return "in_progress"

    uid = str(after.get("uid") or "")
    delivery = after.get("delivery") if isinstance(after.get("delivery"), dict) else {}
    error = str(delivery.get("error") or after_state)
    logger.warning("verification_email_failed mail_id=%s uid=%s state=%s", event.doc_id, uid, after_state)
    if not uid:
        return "failed"
    marked = mark_delivery_failed(ctx, uid, error)
    if marked != "marked":
        logger.info("verification_email_failure_ignored uid=%s reason=%s", uid, marked)
        return marked
    schedule_retry(ctx, event.doc_id, after)
    return "failed"
