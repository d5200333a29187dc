from __future__ import annotations

from clearance.events import PRINCIPAL_CREATED, TriggerEvent
from clearance.identity import PrincipalRecord
from clearance.repositories.profiles import PROFILES
from clearance.side_effects import Outcome
from clearance.workflow.identity_bridge import backfill_updates, on_principal_created, provision_principal


def _profile_writes(ctx) -> list:
    writes = []
    ctx.store.add_listener(lambda change: writes.append(change) if change.collection == PROFILES else None)
    return writes


def test_new_unverified_principal_gets_pending_email_verification_profile(ctx, signup):
    signup("u1")
    profile = ctx.profiles.get("u1")
    assert profile["status"] == "pending_email_verification"
    assert profile["isEmailVerified"] is False
    assert profile["hasUploadedDocuments"] is False
    assert profile["documents"] == []
    assert profile["role"] == "user"
    assert profile["email"] == "u1@example.com"
    assert profile["createdAt"] == profile["updatedAt"]
    assert ctx.identity.get_principal("u1").custom_claims == {"role": "user"}


def test_verified_principal_starts_at_pending_documents(ctx, signup):
    signup("u2", verified=True)
    assert ctx.profiles.get("u2")["status"] == "pending_documents"


def test_second_creation_performs_zero_writes(ctx, signup):
    signup("u1")
    writes = _profile_writes(ctx)
    result = provision_principal(ctx, PrincipalRecord(uid="u1", email="u1@example.com"))
    assert result == "noop"
    assert writes == []
    assert len(ctx.store.list(PROFILES)) == 1


def test_rerun_after_external_verification_is_exactly_one_write(ctx, signup):
    signup("u1")
    ctx.identity.set_email_verified("u1")
    writes = _profile_writes(ctx)

    result = provision_principal(ctx, PrincipalRecord(uid="u1", email="u1@example.com"))

    assert result == "updated"
    assert len(writes) == 1
    profile = ctx.profiles.get("u1")
    assert profile["status"] == "pending_documents"
    assert profile["isEmailVerified"] is True


def test_backfill_fills_only_missing_fields():
    current = {"uid": "u1", "email": "u1@example.com", "status": "approved", "role": "officer", "createdAt": "x"}
    updates = backfill_updates(current, PrincipalRecord(uid="u1", email="u1@example.com"), verified=False)
    assert set(updates) == {"hasUploadedDocuments", "documents", "updatedAt"}
    assert "role" not in updates
    assert "status" not in updates


def test_existing_role_claim_is_not_demoted(ctx, signup):
    ctx.identity.register(PrincipalRecord(uid="o1", email="o1@example.com", custom_claims={"role": "officer"}))
    signup("o1")
    assert ctx.identity.get_principal("o1").custom_claims == {"role": "officer"}


def test_claim_failure_does_not_block_profile_creation(ctx):
    ctx.identity.set_custom_claims = lambda uid, claims: Outcome.failure("set_custom_claims", "provider down")
    event = TriggerEvent(
        event_id="evt_p1",
        event_type=PRINCIPAL_CREATED,
        resource="principals/u3",
        data={"uid": "u3", "email": "u3@example.com", "emailVerified": False},
    )
    assert on_principal_created(ctx, event) == "created"
    assert ctx.profiles.get("u3")["status"] == "pending_email_verification"


def test_event_without_uid_is_ignored(ctx):
    event = TriggerEvent(event_id="evt_p2", event_type=PRINCIPAL_CREATED, resource="", data={})
    assert on_principal_created(ctx, event) is None
    assert ctx.store.list(PROFILES) == []


def test_replayed_registration_keeps_verified_email(ctx, signup):
    signup("u1")
    ctx.identity.set_email_verified("u1")

    ctx.identity.register(PrincipalRecord(uid="u1", email="u1@example.com", display_name="Ada"))

    principal = ctx.identity.get_principal("u1")
    assert principal.email_verified is True
    assert principal.display_name == "Ada"
