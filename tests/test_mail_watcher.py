from __future__ import annotations

from clearance.email import MAIL
from clearance.events import MAIL_UPDATED, TriggerEvent
from clearance.security import CallerContext
from clearance.workflow.mail_watcher import on_email_record_updated, retry_mail_id
from clearance.workflow.verification import issue_verification_code


def _issue(ctx, signup, uid: str = "u1") -> str:
    signup(uid)
    issue_verification_code(ctx, CallerContext(uid=uid, email=f"{uid}@example.com"))
    correlation_id = ctx.profiles.get(uid)["verification"]["correlationId"]
    return f"{uid}_{correlation_id}"


def _mail_ids(ctx) -> list[str]:
    return [row["id"] for row in ctx.store.list(MAIL)]


def test_delivery_failure_marks_profile_and_schedules_retry(ctx, signup):
    mail_id = _issue(ctx, signup)
    assert ctx.email_sender.record_delivery(mail_id, state="error", error="mailbox unavailable") is True
    ctx.worker.run_until_idle()

    profile = ctx.profiles.get("u1")
    assert profile["status"] == "email_verification_failed"
    assert profile["emailDeliveryError"] == "mailbox unavailable"
    retry = ctx.store.get(MAIL, retry_mail_id(mail_id, 1))
    assert retry["retryCount"] == 1
    assert retry["retryOf"] == mail_id
    assert retry["template"] == ctx.store.get(MAIL, mail_id)["template"]


def test_retries_stop_at_the_configured_limit(ctx, signup):
    mail_id = _issue(ctx, signup)
    current = mail_id
    for attempt in range(1, ctx.settings.email_max_retries + 2):
        ctx.email_sender.record_delivery(current, state="BOUNCED")
        ctx.worker.run_until_idle()
        current = retry_mail_id(mail_id, attempt)

    expected = [mail_id] + [retry_mail_id(mail_id, n) for n in range(1, ctx.settings.email_max_retries + 1)]
    assert sorted(_mail_ids(ctx)) == sorted(expected)


def test_successful_delivery_leaves_profile_alone(ctx, signup):
    mail_id = _issue(ctx, signup)
    ctx.email_sender.record_delivery(mail_id, state="DELIVERED")
    ctx.worker.run_until_idle()
    assert ctx.profiles.get("u1")["status"] == "pending_email_verification"
    assert _mail_ids(ctx) == [mail_id]


def test_failure_after_verification_is_ignored(ctx, signup):
    mail_id = _issue(ctx, signup)
    ctx.store.update("profiles", "u1", {"isEmailVerified": True, "status": "pending_documents"})
    ctx.email_sender.record_delivery(mail_id, state="FAILED")
    ctx.worker.run_until_idle()
    assert ctx.profiles.get("u1")["status"] == "pending_documents"
    assert _mail_ids(ctx) == [mail_id]


def test_unrelated_or_unchanged_records_are_skipped(ctx):
    other = TriggerEvent(
        event_id="evt_m1",
        event_type=MAIL_UPDATED,
        resource="mail/newsletter_1",
        before={"purpose": "newsletter", "delivery": {"state": "PENDING"}},
        after={"purpose": "newsletter", "delivery": {"state": "ERROR"}},
    )
    assert on_email_record_updated(ctx, other) == "ignored"
    same = TriggerEvent(
        event_id="evt_m2",
        event_type=MAIL_UPDATED,
        resource="mail/u1_x",
        before={"purpose": "email_verification", "delivery": {"state": "error"}},
        after={"purpose": "email_verification", "delivery": {"state": "ERROR"}},
    )
    assert on_email_record_updated(ctx, same) == "unchanged"


def test_delivery_report_endpoint(client, ctx, signup, internal_headers):
    mail_id = _issue(ctx, signup)
    forbidden = client.post(f"/api/v1/internal/mail/{mail_id}/delivery", json={"state": "ERROR"})
    assert forbidden.status_code == 403
    assert forbidden.json()["error"]["code"] == "AUTH_FORBIDDEN"

    missing = client.post("/api/v1/internal/mail/nope/delivery", json={"state": "ERROR"}, headers=internal_headers)
    assert missing.status_code == 404

    ok = client.post(
        f"/api/v1/internal/mail/{mail_id}/delivery",
        json={"state": "error", "error": "quota"},
        headers=internal_headers,
    )
    assert ok.status_code == 200
    assert ok.json()["data"] == {"mailId": mail_id, "state": "ERROR"}
    drained = client.post("/api/v1/internal/worker/drain", headers=internal_headers)
    assert drained.json()["data"]["processed"] >= 1
    assert ctx.profiles.get("u1")["status"] == "email_verification_failed"
