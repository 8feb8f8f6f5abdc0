"""
Transient-Failure Retry Layer

Wraps a single async operation with exponential backoff. Only failures
classified as transient (network blips, dropped DB connections, throttling,
upstream 5xx) are retried; everything else propagates on the first attempt.

Delays: min(initial_delay * multiplier ** (attempt - 1), max_delay)
With the defaults: 1s, 2s, 4s ... capped at 30s, three attempts in total.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx
from sqlalchemy.exc import DBAPIError

from deed_integrity.core.errors import DeedIntegrityError, OperationCancelledError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# SQLSTATE codes for connection loss, serialization failure, deadlock and
# connection exhaustion
TRANSIENT_SQLSTATES = {
    "08000",  # connection_exception
    "08001",  # sqlclient_unable_to_establish_sqlconnection
    "08003",  # connection_does_not_exist
    "08004",  # sqlserver_rejected_establishment_of_sqlconnection
    "08006",  # connection_failure
    "40001",  # serialization_failure
    "40P01",  # deadlock_detected
    "53300",  # too_many_connections
}

TRANSIENT_MESSAGE_KEYWORDS = (
    "timeout",
    "timed out",
    "network",
    "connection refused",
    "econnrefused",
    "econnreset",
    "too many connections",
    "connection pool",
    "rate limit",
    "throttl",
    "service unavailable",
    "temporarily unavailable",
)


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters for one retried operation."""
    max_attempts: int = 3
    initial_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            initial_delay=settings.retry_initial_delay,
            multiplier=settings.retry_multiplier,
            max_delay=settings.retry_max_delay,
        )


def backoff_delay(attempt: int, policy: RetryPolicy) -> float:
    """Delay before retrying after the given (1-based) failed attempt."""
    return min(policy.initial_delay * policy.multiplier ** (attempt - 1), policy.max_delay)


def _sqlstate(exc: BaseException) -> Optional[str]:
    orig = getattr(exc, "orig", None)
    for candidate in (exc, orig):
        if candidate is None:
            continue
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if code:
            return str(code)
    return None


def is_transient_error(exc: BaseException) -> bool:
    """
    Classify a failure as transient (worth retrying) or permanent.

    Cancellation is never transient. Domain errors carry their own
    classification; everything else is judged by type, SQLSTATE and
    finally by message keywords.
    """
    if isinstance(exc, (OperationCancelledError, asyncio.CancelledError)):
        return False

    if isinstance(exc, DeedIntegrityError):
        return exc.transient

    if isinstance(exc, (TimeoutError, asyncio.TimeoutError, ConnectionError, httpx.TransportError)):
        return True

    if isinstance(exc, DBAPIError):
        if exc.connection_invalidated:
            return True
        if _sqlstate(exc) in TRANSIENT_SQLSTATES:
            return True

    message = str(exc).lower()
    return any(keyword in message for keyword in TRANSIENT_MESSAGE_KEYWORDS)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    operation_name: str,
    *,
    policy: RetryPolicy = RetryPolicy(),
    context: Optional[dict[str, Any]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Run ``operation`` until it succeeds, fails permanently, or attempts run out.

    The operation's result is returned untouched. The last error is re-raised
    unchanged once attempts are exhausted. ``asyncio.CancelledError`` is not
    caught and interrupts any pending backoff sleep.
    """
    log_context = {"operation": operation_name, **(context or {})}
    attempt = 1

    while True:
        try:
            result = await operation()
        except Exception as e:
            transient = is_transient_error(e)
            if not transient or attempt >= policy.max_attempts:
                if transient:
                    logger.error(
                        "%s failed after %d attempts: %s",
                        operation_name,
                        attempt,
                        e,
                        extra={**log_context, "attempts": attempt, "error_type": type(e).__name__},
                    )
                raise

            delay = backoff_delay(attempt, policy)
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                operation_name,
                attempt,
                policy.max_attempts,
                delay,
                e,
                extra={**log_context, "attempt": attempt, "delay": delay, "error_type": type(e).__name__},
            )
            await sleep(delay)
            attempt += 1
            continue

        if attempt > 1:
            logger.info(
                "%s succeeded after %d attempts",
                operation_name,
                attempt,
                extra={**log_context, "attempts": attempt},
            )
        return result
