from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Outcome:
    """Result of a best-effort side effect; callers decide whether to log and continue."""

    ok: bool
    action: str
    error: str = ""
    detail: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, action: str, **detail: Any) -> "Outcome":
        return cls(ok=True, action=action, detail=dict(detail))

    @classmethod
    def failure(cls, action: str, error: str, **detail: Any) -> "Outcome":
        return cls(ok=False, action=action, error=error, detail=dict(detail))


def attempt(action: str, fn: Callable[[], Any], *, expected: tuple[type[BaseException], ...] = (Exception,)) -> Outcome:
    """Run a provider call and capture its failure as an Outcome."""
    try:
        result = fn()
    except expected as exc:
        return Outcome.failure(action, f"{type(exc).__name__}: {exc}")
    if isinstance(result, Outcome):
        return result
    return Outcome.success(action)
