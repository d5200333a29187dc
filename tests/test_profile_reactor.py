from __future__ import annotations

from clearance.events import PROFILE_UPDATED, TriggerEvent
from clearance.repositories.review_queue import REVIEW_QUEUE
from clearance.security import CallerContext
from clearance.status import ProfileStatus
from clearance.timestamps import to_millis
from clearance.workflow.profile_actions import mark_documents_uploaded
from clearance.workflow.profile_reactor import on_profile_updated, plan_reaction


def _upload_and_drain(ctx, uid: str) -> None:
    mark_documents_uploaded(ctx, CallerContext(uid=uid))
    ctx.worker.run_until_idle()


def test_plan_enforces_pending_approval_when_documents_arrive():
    plan = plan_reaction(
        "u1",
        {"status": "pending_documents", "hasUploadedDocuments": False},
        {"status": "pending_documents", "hasUploadedDocuments": True},
    )
    assert plan.enforce_pending_approval is True
    assert plan.enqueue_review is False
    assert plan.notify is None


def test_plan_enqueues_once_per_submission():
    entering = plan_reaction("u1", {"status": "pending_documents"}, {"status": "pending_approval"})
    assert entering.enqueue_review is True
    assert entering.counter_deltas == {"pendingAccounts": 1}

    unrelated = plan_reaction(
        "u1",
        {"status": "pending_approval", "hasUploadedDocuments": True},
        {"status": "pending_approval", "hasUploadedDocuments": True, "documents": [{"documentName": "a.pdf"}]},
    )
    assert unrelated.is_noop


def test_plan_flags_illegal_transitions():
    plan = plan_reaction("u1", {"status": "approved"}, {"status": "pending_documents"})
    assert plan.illegal is not None
    assert plan.after_status == ProfileStatus.PENDING_DOCUMENTS


def test_documents_upload_moves_profile_to_pending_approval_with_one_queue_entry(ctx, signup):
    signup("u1", verified=True)
    _upload_and_drain(ctx, "u1")

    profile = ctx.profiles.get("u1")
    assert profile["status"] == "pending_approval"
    entries = ctx.review_queue.list(uid="u1")
    assert len(entries) == 1
    assert entries[0]["id"] == f"u1_{to_millis(profile['updatedAt'])}"
    assert entries[0]["email"] == "u1@example.com"
    assert ctx.counters.get_dashboard()["pendingAccounts"] == 1


def test_redelivered_update_event_creates_no_duplicate_entry(ctx, signup):
    published: list[TriggerEvent] = []
    publish = ctx.publisher.publish

    def _record(event):
        published.append(event)
        return publish(event)

    ctx.publisher.publish = _record
    signup("u1", verified=True)
    _upload_and_drain(ctx, "u1")
    submitted = [
        event
        for event in published
        if event.event_type == PROFILE_UPDATED and (event.after or {}).get("status") == "pending_approval"
    ]
    assert len(submitted) == 1

    on_profile_updated(ctx, submitted[0])
    on_profile_updated(ctx, submitted[0])

    assert len(ctx.store.list(REVIEW_QUEUE)) == 1
    assert ctx.counters.get_dashboard()["pendingAccounts"] == 1


def test_concurrent_triggers_with_same_timestamp_share_one_queue_entry(ctx, signup):
    signup("u1", verified=True)
    _upload_and_drain(ctx, "u1")
    profile = ctx.profiles.get("u1")
    for event_id in ("evt_a", "evt_b"):
        on_profile_updated(
            ctx,
            TriggerEvent(
                event_id=event_id,
                event_type=PROFILE_UPDATED,
                resource="profiles/u1",
                before={"status": "pending_documents"},
                after=profile,
            ),
        )
    assert len(ctx.store.list(REVIEW_QUEUE)) == 1


def test_enforcement_loses_to_a_concurrent_writer(ctx, signup):
    signup("u1", verified=True)
    ctx.store.update("profiles", "u1", {"status": "pending_approval"})
    ctx.worker.run_until_idle()
    event = TriggerEvent(
        event_id="evt_stale",
        event_type=PROFILE_UPDATED,
        resource="profiles/u1",
        before={"status": "pending_documents", "hasUploadedDocuments": False},
        after={"status": "pending_documents", "hasUploadedDocuments": True},
    )
    summary = on_profile_updated(ctx, event)
    assert summary["enforced"] is False
    assert ctx.profiles.get("u1")["status"] == "pending_approval"


def test_terminal_decision_creates_single_notification(ctx, signup):
    signup("u1", verified=True)
    _upload_and_drain(ctx, "u1")
    ctx.store.update("profiles", "u1", {"status": "rejected", "decidedAt": "2026-03-02T10:00:00+00:00"})
    ctx.worker.run_until_idle()

    items = ctx.notifications.list_for("u1")
    assert len(items) == 1
    assert items[0]["type"] == "rejected"
    assert items[0]["id"] == f"rejected_{to_millis('2026-03-02T10:00:00+00:00')}"
    assert items[0]["message"] == "Your account has been rejected."
    assert ctx.counters.get_dashboard()["pendingAccounts"] == 0


def test_illegal_transition_is_logged_and_ignored(ctx, signup, caplog):
    signup("u1", verified=True)
    event = TriggerEvent(
        event_id="evt_bad",
        event_type=PROFILE_UPDATED,
        resource="profiles/u1",
        before={"status": "approved"},
        after={"status": "pending_documents", "hasUploadedDocuments": True},
    )
    with caplog.at_level("ERROR"):
        assert on_profile_updated(ctx, event) is None
    assert "illegal_status_transition" in caplog.text
    assert ctx.profiles.get("u1")["status"] == "pending_documents"
