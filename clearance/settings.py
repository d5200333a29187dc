from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_str(env: Mapping[str, str], name: str, *, default: str) -> str:
    return str(env.get(name, "")).strip() or default


def true_stack_required(environ: Mapping[str, str] | None = None) -> bool:
    """True when CLEARANCE_REQUIRE_TRUESTACK forbids in-memory store and queue fallbacks."""
    env = os.environ if environ is None else environ
    return str(env.get("CLEARANCE_REQUIRE_TRUESTACK", "")).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class WorkflowSettings:
    code_cooldown_seconds: int = 60
    code_ttl_seconds: int = 600
    code_max_attempts: int = 5
    email_max_retries: int = 3
    email_template: str = "email_verification"
    storage_scheme: str = "gs"
    internal_token: str = ""
    trigger_max_retries: int = 5
    trigger_backoff_base_ms: int = 1000
    trigger_backoff_max_ms: int = 30000

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "WorkflowSettings":
        env = os.environ if environ is None else environ
        return cls(
            code_cooldown_seconds=_env_int(env, "CLEARANCE_CODE_COOLDOWN_SECONDS", default=60),
            code_ttl_seconds=_env_int(env, "CLEARANCE_CODE_TTL_SECONDS", default=600, minimum=1),
            code_max_attempts=_env_int(env, "CLEARANCE_CODE_MAX_ATTEMPTS", default=5, minimum=1),
            email_max_retries=_env_int(env, "CLEARANCE_EMAIL_MAX_RETRIES", default=3),
            email_template=_env_str(env, "CLEARANCE_EMAIL_TEMPLATE", default="email_verification"),
            storage_scheme=_env_str(env, "CLEARANCE_STORAGE_SCHEME", default="gs"),
            internal_token=str(env.get("CLEARANCE_INTERNAL_TOKEN", "")).strip(),
            trigger_max_retries=_env_int(env, "CLEARANCE_TRIGGER_MAX_RETRIES", default=5),
            trigger_backoff_base_ms=_env_int(env, "CLEARANCE_TRIGGER_BACKOFF_BASE_MS", default=1000),
            trigger_backoff_max_ms=_env_int(env, "CLEARANCE_TRIGGER_BACKOFF_MAX_MS", default=30000),
        )
