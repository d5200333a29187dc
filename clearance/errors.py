from __future__ import annotations

_KIND_DEFAULTS: dict[str, tuple[str, str, int]] = {
    "unauthenticated": ("AUTH_UNAUTHENTICATED", "security_sensitive", 401),
    "permission-denied": ("PERMISSION_DENIED", "security_sensitive", 403),
    "invalid-argument": ("INVALID_ARGUMENT", "validation", 400),
    "not-found": ("NOT_FOUND", "validation", 404),
    "failed-precondition": ("FAILED_PRECONDITION", "business_rule", 409),
    "resource-exhausted": ("RESOURCE_EXHAUSTED", "business_rule", 429),
    "deadline-exceeded": ("CODE_EXPIRED", "business_rule", 410),
    "internal": ("INTERNAL", "dependency", 500),
}

ERROR_KINDS = frozenset(_KIND_DEFAULTS)


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
        kind: str = "internal",
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status
        self.kind = kind


def api_error(kind: str, message: str, *, code: str | None = None, retryable: bool = False) -> ApiError:
    if kind not in _KIND_DEFAULTS:
        raise ValueError(f"unknown error kind: {kind}")
    default_code, error_class, http_status = _KIND_DEFAULTS[kind]
    return ApiError(
        code=code or default_code,
        message=message,
        error_class=error_class,
        retryable=retryable,
        http_status=http_status,
        kind=kind,
    )


class StoreUnavailableError(RuntimeError):
    """Raised by document store backends when the database cannot be reached."""
