"""Retry policy for idempotent machine provider calls.

Provider reads (get, list) and destroy are safe to repeat. Create is not:
a create whose response was lost may already exist, so a repeat would fail
with a name conflict. File pushes use the sync engine's fixed retry policy
(SyncConfig.retries / retry_delay) instead of this backoff.

Usage:
    from devhub.core.retryable import PROVIDER_POLICY, is_retryable, with_retry

    machines = await with_retry("list", self._list_once, PROVIDER_POLICY)
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import httpx

from devhub.core.errors import AgentUnavailableError, ReadinessTimeoutError
from devhub.core.logging_schema import ErrorClass

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Connection-level failures: the request may never have reached the API
_TRANSIENT_HTTPX = (
    httpx.ConnectError,
    httpx.ConnectTimeout,
    httpx.ReadTimeout,
    httpx.WriteTimeout,
    httpx.PoolTimeout,
    httpx.RemoteProtocolError,
)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with 50-150% jitter."""

    max_retries: int = 2
    base_delay: float = 0.5
    max_delay: float = 8.0

    def delay(self, attempt: int) -> float:
        delay = min(self.base_delay * (2**attempt), self.max_delay)
        return delay * (0.5 + random.random())


PROVIDER_POLICY = RetryPolicy()


# =============================================================================
# Classification
# =============================================================================


def classify_status(status: int) -> ErrorClass:
    """Classify a provider/agent HTTP status code."""
    if status == 429 or status >= 500:
        return ErrorClass.TRANSIENT
    return ErrorClass.PERMANENT


def classify_error(exc: Exception) -> ErrorClass:
    """Map an exception to an ErrorClass.

    Errors this module does not recognise count as PERMANENT: retrying an
    unknown failure against a remote API only delays the report.
    """
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_status(exc.response.status_code)
    if isinstance(exc, _TRANSIENT_HTTPX):
        return ErrorClass.TRANSIENT
    if isinstance(exc, ReadinessTimeoutError | asyncio.TimeoutError):
        return ErrorClass.TIMEOUT
    if isinstance(exc, AgentUnavailableError):
        return ErrorClass.LIVENESS
    return ErrorClass.PERMANENT


def is_retryable(exc: Exception) -> bool:
    """Whether repeating the same call may succeed.

    Readiness timeouts are not retryable here: the caller already spent its
    whole deadline.
    """
    if isinstance(exc, ReadinessTimeoutError):
        return False
    return classify_error(exc) in (ErrorClass.TRANSIENT, ErrorClass.TIMEOUT)


# =============================================================================
# Retry
# =============================================================================


async def with_retry(
    operation: str,
    call: Callable[[], Awaitable[T]],
    policy: RetryPolicy = PROVIDER_POLICY,
) -> T:
    """Run call, repeating it while it fails with a retryable error.

    Args:
        operation: Short label for logs ("get", "list", "destroy").
        call: Factory returning a fresh coroutine per attempt.
        policy: Attempt count and backoff.

    Raises:
        The last error once attempts run out, or the first non-retryable one.
    """
    attempt = 0
    while True:
        try:
            return await call()
        except Exception as exc:
            error_class = classify_error(exc)
            if not is_retryable(exc) or attempt >= policy.max_retries:
                logger.warning(
                    "Provider %s failed after %d attempt(s): %s",
                    operation,
                    attempt + 1,
                    exc,
                    extra={"error_class": error_class, "attempt": attempt + 1},
                )
                raise

            delay = policy.delay(attempt)
            attempt += 1
            logger.info(
                "Provider %s failed (%s), retry %d/%d in %.2fs",
                operation,
                error_class,
                attempt,
                policy.max_retries,
                delay,
                extra={"error_class": error_class, "attempt": attempt},
            )
            await asyncio.sleep(delay)
