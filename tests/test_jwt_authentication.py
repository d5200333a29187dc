from __future__ import annotations

from datetime import UTC, datetime, timedelta

import jwt
import pytest

from clearance.errors import ApiError
from clearance.security import JwtSecurityConfig, parse_and_validate_bearer_token, redact_sensitive
from clearance.status import Role

SECRET = "jwt_test_secret"


def _cfg(**overrides) -> JwtSecurityConfig:
    values = {
        "issuer": "test-issuer",
        "audience": "test-audience",
        "shared_secret": SECRET,
        "role_claim": "role",
        "log_redaction_enabled": True,
    }
    values.update(overrides)
    return JwtSecurityConfig(**values)


def _token(*, ttl_minutes: int = 15, secret: str = SECRET, **claims) -> str:
    now = datetime.now(UTC)
    payload: dict[str, object] = {
        "iss": "test-issuer",
        "aud": "test-audience",
        "sub": "u1",
        "exp": int((now + timedelta(minutes=ttl_minutes)).timestamp()),
        "iat": int(now.timestamp()),
    }
    payload.update(claims)
    return jwt.encode(payload, secret, algorithm="HS256")


def _kind_of(authorization: str | None, cfg: JwtSecurityConfig | None = None) -> str:
    with pytest.raises(ApiError) as exc:
        parse_and_validate_bearer_token(authorization=authorization, cfg=cfg or _cfg())
    return exc.value.kind


def test_valid_token_yields_caller_context():
    caller = parse_and_validate_bearer_token(
        authorization=f"Bearer {_token(role='officer', email='o@example.com', name='Olu')}",
        cfg=_cfg(),
    )
    assert caller.uid == "u1"
    assert caller.role == Role.OFFICER
    assert caller.is_reviewer and not caller.is_admin
    assert caller.display_id == "o@example.com"


def test_missing_or_unknown_role_claim_defaults_to_user():
    caller = parse_and_validate_bearer_token(authorization=f"Bearer {_token(role='root')}", cfg=_cfg())
    assert caller.role == Role.USER
    assert caller.display_id == "u1"


def test_custom_role_claim_name_is_honoured():
    token = _token(**{"https://clearance/role": "admin"})
    caller = parse_and_validate_bearer_token(authorization=f"Bearer {token}", cfg=_cfg(role_claim="https://clearance/role"))
    assert caller.is_admin


@pytest.mark.parametrize(
    "authorization",
    [None, "", "Basic abc", "Bearer ", "Bearer not-a-jwt"],
)
def test_malformed_authorization_is_unauthenticated(authorization):
    assert _kind_of(authorization) == "unauthenticated"


def test_expired_wrong_issuer_and_bad_signature_are_rejected():
    assert _kind_of(f"Bearer {_token(ttl_minutes=-1)}") == "unauthenticated"
    assert _kind_of(f"Bearer {_token(iss='someone-else')}") == "unauthenticated"
    assert _kind_of(f"Bearer {_token(secret='other-secret-of-sufficient-length')}") == "unauthenticated"


def test_unconfigured_secret_rejects_everything():
    assert _kind_of(f"Bearer {_token()}", _cfg(shared_secret="")) == "unauthenticated"


def test_config_reads_environment():
    cfg = JwtSecurityConfig.from_env(
        {"JWT_ISSUER": "iss", "JWT_AUDIENCE": "aud", "JWT_SHARED_SECRET": "s", "SECURITY_LOG_REDACTION_ENABLED": "false"}
    )
    assert (cfg.issuer, cfg.audience, cfg.shared_secret, cfg.role_claim) == ("iss", "aud", "s", "role")
    assert cfg.log_redaction_enabled is False


def test_redaction_hides_codes_and_tokens():
    redacted = redact_sensitive({"Authorization": "Bearer abc", "data": {"code": "1234", "displayName": "Ada"}})
    assert redacted == {"Authorization": "***REDACTED***", "data": {"code": "***REDACTED***", "displayName": "Ada"}}


def test_api_requires_bearer_token(client):
    resp = client.get("/api/v1/profile")
    assert resp.status_code == 401
    body = resp.json()
    assert body["error"]["code"] == "AUTH_UNAUTHENTICATED"
    assert body["error"]["kind"] == "unauthenticated"
    assert resp.headers.get("x-trace-id")


def test_internal_routes_skip_bearer_but_need_internal_token(client):
    resp = client.post("/api/v1/internal/worker/drain")
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "AUTH_FORBIDDEN"
    wrong = client.post("/api/v1/internal/worker/drain", headers={"x-internal-token": "guess"})
    assert wrong.status_code == 403
