from __future__ import annotations

import functools
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from clearance.db.documents import DocumentExistsError, DocumentNotFoundError
from clearance.errors import ApiError
from clearance.events import TriggerEvent
from clearance.status import IllegalTransitionError
from clearance.timestamps import to_millis, utcnow

if TYPE_CHECKING:
    from clearance.context import ServerContext

logger = logging.getLogger(__name__)

DOMAIN_ERRORS = (ApiError, IllegalTransitionError, DocumentNotFoundError, DocumentExistsError)

Handler = Callable[["ServerContext", TriggerEvent], Any]


def trigger_handler(name: str) -> Callable[[Handler], Handler]:
    """Log domain failures at the trigger boundary.

    Anything else (store outages, bugs) propagates so the worker redelivers
    the event.
    """

    def decorator(fn: Handler) -> Handler:
        @functools.wraps(fn)
        def wrapper(ctx: "ServerContext", event: TriggerEvent) -> Any:
            try:
                return fn(ctx, event)
            except DOMAIN_ERRORS as exc:
                logger.error(
                    "%s_failed event_id=%s resource=%s error=%s: %s",
                    name,
                    event.event_id,
                    event.resource,
                    type(exc).__name__,
                    exc,
                )
                return None

        return wrapper

    return decorator


def dedupe_millis(snapshot: dict[str, Any] | None, event: TriggerEvent, *fields: str) -> int:
    """Millisecond value for deterministic keys.

    Prefers the snapshot's own resolved timestamps, then the commit time the
    event carries (identical on redelivery), and only then the wall clock.
    """
    data = snapshot or {}
    for name in fields:
        millis = to_millis(data.get(name))
        if millis is not None:
            return millis
    millis = to_millis(event.occurred_at)
    if millis is not None:
        return millis
    logger.warning("dedupe_wall_clock_fallback event_id=%s resource=%s", event.event_id, event.resource)
    return int(utcnow().timestamp() * 1000)
