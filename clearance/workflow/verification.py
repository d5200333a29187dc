"""
Email verification codes.

Issuing and validating both run as one transaction on the profile. Side
effects on external services (sending the email, flipping the provider's
verified flag) happen only after that transaction committed and never undo it.
"""

from __future__ import annotations

import hmac
import logging
import re
import secrets
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from clearance.db.documents import DELETE_FIELD, SERVER_TIMESTAMP, Transaction
from clearance.email import VERIFICATION_PURPOSE, EmailMessage
from clearance.errors import api_error
from clearance.repositories.profiles import PROFILES, status_of
from clearance.security import CallerContext, redact_sensitive
from clearance.status import VERIFICATION_STATES, ProfileStatus, StatusTransition
from clearance.timestamps import parse_timestamp, seconds_until, to_iso

if TYPE_CHECKING:
    from clearance.context import ServerContext

logger = logging.getLogger(__name__)

CODE_PATTERN = re.compile(r"^\d{4}$")


def generate_code() -> str:
    return f"{secrets.randbelow(10000):04d}"


@dataclass(frozen=True)
class _Issued:
    code: str
    correlation_id: str
    profile: dict[str, Any]


def _issue_in_tx(ctx: "ServerContext", uid: str) -> dict[str, Any] | _Issued:
    settings = ctx.settings

    def _op(tx: Transaction) -> dict[str, Any] | _Issued:
        profile = tx.get(PROFILES, uid)
        if profile is None:
            return {"ok": False, "status": "failed", "reason": "profile_not_found"}
        if profile.get("isEmailVerified") is True:
            return {"ok": False, "status": "already_verified", "reason": "already_verified"}
        now = ctx.store.now()
        verification = profile.get("verification") if isinstance(profile.get("verification"), dict) else {}
        issued_at = parse_timestamp(verification.get("issuedAt"))
        if issued_at is not None:
            retry_after = seconds_until(issued_at + timedelta(seconds=settings.code_cooldown_seconds), now)
            if retry_after > 0:
                return {"ok": False, "status": "cooldown", "reason": "cooldown", "retryAfterSec": retry_after}
        code = generate_code()
        correlation_id = uuid.uuid4().hex
        updates: dict[str, Any] = {
            "verification": {
                "code": code,
                "issuedAt": to_iso(now),
                "expiresAt": to_iso(now + timedelta(seconds=settings.code_ttl_seconds)),
                "attempts": 0,
                "correlationId": correlation_id,
            }
        }
        current = status_of(profile)
        if current == ProfileStatus.EMAIL_VERIFICATION_FAILED:
            transition = StatusTransition(current, ProfileStatus.PENDING_EMAIL_VERIFICATION)
            updates["status"] = transition.target.value
            updates["updatedAt"] = SERVER_TIMESTAMP
        tx.update(PROFILES, uid, updates)
        return _Issued(code=code, correlation_id=correlation_id, profile=profile)

    return ctx.store.run_transaction(_op)


def resolve_recipient(ctx: "ServerContext", caller: CallerContext, profile: dict[str, Any]) -> tuple[str, str]:
    """Email and display name: token claims first, then the identity provider, then the profile."""
    principal = ctx.identity.get_principal(caller.uid)
    email = caller.email or (principal.email if principal else "") or str(profile.get("email") or "")
    name = caller.name or (principal.display_name if principal else "") or str(profile.get("displayName") or "")
    if not name and email:
        name = email.split("@", 1)[0]
    return email, name


def issue_verification_code(ctx: "ServerContext", caller: CallerContext) -> dict[str, Any]:
    issued = _issue_in_tx(ctx, caller.uid)
    if isinstance(issued, dict):
        logger.info("verification_code_not_issued uid=%s reason=%s", caller.uid, issued.get("reason"))
        return issued

    email, name = resolve_recipient(ctx, caller, issued.profile)
    if not email:
        logger.warning("verification_email_skipped uid=%s reason=missing_email", caller.uid)
        return {"ok": False, "status": "failed", "reason": "email_dispatch_failed"}
    message = EmailMessage(
        mail_id=f"{caller.uid}_{issued.correlation_id}",
        to=email,
        template_name=ctx.settings.email_template,
        template_data={
            "code": issued.code,
            "displayName": name,
            "expiresInMinutes": max(1, ctx.settings.code_ttl_seconds // 60),
        },
        purpose=VERIFICATION_PURPOSE,
        uid=caller.uid,
    )
    outcome = ctx.email_sender.send(message)
    if not outcome.ok:
        logger.error(
            "verification_email_dispatch_failed uid=%s correlation_id=%s error=%s",
            caller.uid,
            issued.correlation_id,
            outcome.error,
        )
        return {"ok": False, "status": "failed", "reason": "email_dispatch_failed"}
    logger.info(
        "verification_code_issued uid=%s correlation_id=%s template=%s",
        caller.uid,
        issued.correlation_id,
        redact_sensitive(message.template_data),
    )
    return {"ok": True, "status": "queued"}


def validate_verification_code(ctx: "ServerContext", caller: CallerContext, code: str) -> dict[str, Any]:
    submitted = str(code or "").strip()
    if not CODE_PATTERN.fullmatch(submitted):
        raise api_error("invalid-argument", "code must be exactly 4 digits")
    max_attempts = ctx.settings.code_max_attempts

    def _op(tx: Transaction) -> str:
        profile = tx.get(PROFILES, caller.uid)
        if profile is None:
            raise api_error("not-found", "profile not found")
        verification = profile.get("verification")
        if not isinstance(verification, dict) or not verification.get("code"):
            raise api_error("failed-precondition", "no active verification code")
        attempts = int(verification.get("attempts") or 0)
        if attempts >= max_attempts:
            raise api_error("resource-exhausted", "too many attempts; request a new code")
        expires_at = parse_timestamp(verification.get("expiresAt"))
        if expires_at is None or expires_at <= ctx.store.now():
            raise api_error("deadline-exceeded", "verification code expired")
        if not hmac.compare_digest(str(verification.get("code")), submitted):
            tx.update(PROFILES, caller.uid, {"verification": {**verification, "attempts": attempts + 1}})
            return "mismatch"
        updates: dict[str, Any] = {
            "verification": DELETE_FIELD,
            "isEmailVerified": True,
            "updatedAt": SERVER_TIMESTAMP,
        }
        current = status_of(profile)
        if current in VERIFICATION_STATES:
            transition = StatusTransition(current, ProfileStatus.PENDING_DOCUMENTS)
            updates["status"] = transition.target.value
        tx.update(PROFILES, caller.uid, updates)
        return "verified"

    result = ctx.store.run_transaction(_op)
    if result == "mismatch":
        logger.info("verification_code_mismatch uid=%s", caller.uid)
        raise api_error("permission-denied", "verification code does not match")

    outcome = ctx.identity.set_email_verified(caller.uid)
    if not outcome.ok:
        logger.error("provider_email_verified_failed uid=%s error=%s", caller.uid, outcome.error)
    logger.info("verification_code_accepted uid=%s", caller.uid)
    return {"ok": True}
