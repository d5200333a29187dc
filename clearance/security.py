from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import jwt

from clearance.errors import api_error
from clearance.status import REVIEWER_ROLES, Role


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = str(env.get(name, "")).strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def redact_sensitive(value: object) -> object:
    sensitive_keys = {
        "authorization",
        "token",
        "secret",
        "password",
        "api_key",
        "apikey",
        "access_token",
        "code",
    }
    if isinstance(value, dict):
        redacted: dict[str, object] = {}
        for key, item in value.items():
            key_lower = str(key).lower()
            if key_lower in sensitive_keys:
                redacted[str(key)] = "***REDACTED***"
            else:
                redacted[str(key)] = redact_sensitive(item)
        return redacted
    if isinstance(value, list):
        return [redact_sensitive(x) for x in value]
    if isinstance(value, str):
        if len(value) >= 24 and any(k in value.lower() for k in ("bearer ", "token")):
            return "***REDACTED***"
    return value


@dataclass
class CallerContext:
    uid: str
    email: str = ""
    email_verified: bool = False
    name: str = ""
    role: Role = Role.USER
    claims: dict[str, Any] = field(default_factory=dict)

    @property
    def is_reviewer(self) -> bool:
        return self.role in REVIEWER_ROLES

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def display_id(self) -> str:
        return self.email or self.uid


@dataclass(frozen=True)
class JwtSecurityConfig:
    issuer: str
    audience: str
    shared_secret: str
    role_claim: str
    log_redaction_enabled: bool
    algorithms: tuple[str, ...] = ("HS256",)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "JwtSecurityConfig":
        env = os.environ if environ is None else environ
        return cls(
            issuer=str(env.get("JWT_ISSUER", "")).strip(),
            audience=str(env.get("JWT_AUDIENCE", "")).strip(),
            shared_secret=str(env.get("JWT_SHARED_SECRET", "")).strip(),
            role_claim=str(env.get("JWT_ROLE_CLAIM", "role")).strip() or "role",
            log_redaction_enabled=_env_bool(env, "SECURITY_LOG_REDACTION_ENABLED", True),
        )


def parse_and_validate_bearer_token(*, authorization: str | None, cfg: JwtSecurityConfig) -> CallerContext:
    if not authorization:
        raise api_error("unauthenticated", "missing Authorization bearer token")
    prefix = "Bearer "
    if not authorization.startswith(prefix):
        raise api_error("unauthenticated", "invalid Authorization header")
    token = authorization[len(prefix) :].strip()
    if not token:
        raise api_error("unauthenticated", "empty bearer token")
    if not cfg.shared_secret:
        raise api_error("unauthenticated", "jwt shared secret not configured")

    options: dict[str, Any] = {"require": ["exp", "sub"]}
    if not cfg.audience:
        options["verify_aud"] = False
    try:
        claims = jwt.decode(
            token,
            cfg.shared_secret,
            algorithms=list(cfg.algorithms),
            audience=cfg.audience or None,
            issuer=cfg.issuer or None,
            options=options,
        )
    except jwt.ExpiredSignatureError:
        raise api_error("unauthenticated", "token expired") from None
    except jwt.InvalidIssuerError:
        raise api_error("unauthenticated", "jwt issuer mismatch") from None
    except jwt.InvalidAudienceError:
        raise api_error("unauthenticated", "jwt audience mismatch") from None
    except jwt.InvalidTokenError as exc:
        raise api_error("unauthenticated", f"invalid token: {exc}") from None

    uid = str(claims.get("sub") or "").strip()
    if not uid:
        raise api_error("unauthenticated", "missing subject claim")
    return CallerContext(
        uid=uid,
        email=str(claims.get("email") or "").strip(),
        email_verified=bool(claims.get("email_verified", False)),
        name=str(claims.get("name") or "").strip(),
        role=Role.parse(claims.get(cfg.role_claim)),
        claims=dict(claims),
    )


def require_admin(caller: CallerContext) -> None:
    if not caller.is_admin:
        raise api_error("permission-denied", "admin role required")


def require_reviewer(caller: CallerContext) -> None:
    if not caller.is_reviewer:
        raise api_error("permission-denied", "officer or admin role required")
