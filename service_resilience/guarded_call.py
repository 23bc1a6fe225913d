"""
guarded_call: wrap one outbound request in its service's breaker.

    allow_request()?
      no  → ServiceUnavailableError, no network traffic at all
      yes → fn()
              returns → record_success(), return the result
              raises  → record_failure() (if the error counts), re-raise

Which errors count is the caller's decision (is_failure).  A rejected API key
says nothing about whether the service is healthy; a 503 does.
"""

import logging
from typing import Callable, Optional, TypeVar

from circuit_breaker import CircuitBreaker
from durable_store import StorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ServiceUnavailableError(Exception):
    """The breaker for this service is OPEN; the request was not attempted."""

    def __init__(self, service_id: str) -> None:
        super().__init__(f"{service_id} service temporarily unavailable")
        self.service_id = service_id


def guarded_call(
    breaker: CircuitBreaker,
    fn: Callable[..., T],
    *args,
    is_failure: Optional[Callable[[BaseException], bool]] = None,
    **kwargs,
) -> T:
    if not breaker.allow_request():
        logger.warning("Circuit OPEN: rejecting request to %r", breaker.service_id)
        raise ServiceUnavailableError(breaker.service_id)

    try:
        result = fn(*args, **kwargs)
    except Exception as exc:
        if is_failure is None or is_failure(exc):
            try:
                breaker.record_failure()
            except StorageError:
                # The request error is what the caller needs to see
                logger.exception("Could not persist failure for %r", breaker.service_id)
        raise

    try:
        breaker.record_success()
    except StorageError:
        # The call itself succeeded; don't turn a good response into an error.
        # In-memory state already advanced, the next mutation re-persists it.
        logger.exception("Could not persist success for %r", breaker.service_id)
    return result
