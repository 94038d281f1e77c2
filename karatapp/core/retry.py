"""Retry with exponential backoff for backend calls.

Wraps tenacity's ``AsyncRetrying`` with a policy object and a set of
predicates deciding which errors are transient.
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
from dataclasses import dataclass
from functools import wraps
from typing import TYPE_CHECKING, Any

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt

from .metrics import RETRY_ATTEMPTS

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from tenacity import RetryCallState

    from .config import RetryConfig

    type RetryPredicate = Callable[[BaseException], bool]

log = logging.getLogger(__name__)

_STATUS_RE = re.compile(r"(?:http|status)\D{0,12}(\d{3})", re.IGNORECASE)

_TRANSIENT_MARKERS = ("network", "timeout", "connection", "server error", "service unavailable", "rate limit")
_AUTH_PERMANENT_MARKERS = ("invalid", "unauthorized", "forbidden", "not found", "email", "password")
_IMAGE_PERMANENT_MARKERS = ("not found", "permission denied", "access denied", "file does not exist")


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Backoff parameters.

    ``max_retries`` counts retries, so the operation runs at most
    ``max_retries + 1`` times.
    """

    max_retries: int = 3
    initial_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.1

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        return cls(
            max_retries=config.max_retries,
            initial_delay=config.initial_delay,
            multiplier=config.multiplier,
            max_delay=config.max_delay,
            jitter=config.jitter,
        )

    @classmethod
    def network(cls) -> RetryPolicy:
        return cls(max_retries=3, initial_delay=1.0, multiplier=2.0, max_delay=10.0)

    @classmethod
    def auth(cls) -> RetryPolicy:
        return cls(max_retries=2, initial_delay=0.5, multiplier=2.0, max_delay=5.0)

    @classmethod
    def image(cls) -> RetryPolicy:
        return cls(max_retries=3, initial_delay=2.0, multiplier=1.5, max_delay=15.0)

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        base = min(self.initial_delay * self.multiplier ** max(attempt - 1, 0), self.max_delay)
        return base * (1 + random.random() * self.jitter)


def _status_code(error: BaseException) -> int | None:
    for attr in ("status_code", "status", "code"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    match = _STATUS_RE.search(str(error))
    return int(match.group(1)) if match else None


def should_retry_error(error: BaseException) -> bool:
    """True for network trouble, timeouts, 5xx, 408 and 429."""
    if isinstance(error, asyncio.TimeoutError | ConnectionError):
        return True

    status = _status_code(error)
    if status is not None and (status >= 500 or status in (408, 429)):
        return True

    text = str(error).lower()
    return any(marker in text for marker in _TRANSIENT_MARKERS)


def should_retry_auth_error(error: BaseException) -> bool:
    """Like should_retry_error, but credential problems are never retried."""
    text = str(error).lower()
    if any(marker in text for marker in _AUTH_PERMANENT_MARKERS):
        return False
    return should_retry_error(error)


def should_retry_image_error(error: BaseException) -> bool:
    """Like should_retry_error, but missing files and denied access are final."""
    text = str(error).lower()
    if any(marker in text for marker in _IMAGE_PERMANENT_MARKERS):
        return False
    return should_retry_error(error)


def _policy_wait(policy: RetryPolicy) -> Callable[[RetryCallState], float]:
    def wait(retry_state: RetryCallState) -> float:
        return policy.delay_for(retry_state.attempt_number)

    return wait


def _log_retry(operation: str, policy: RetryPolicy) -> Callable[[RetryCallState], None]:
    def before_sleep(retry_state: RetryCallState) -> None:
        RETRY_ATTEMPTS.labels(operation=operation).inc()
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None else None
        sleep = retry_state.next_action.sleep if retry_state.next_action else 0.0
        log.warning(
            "Retry %d/%d for %s after %.0fms: %s",
            retry_state.attempt_number,
            policy.max_retries,
            operation,
            sleep * 1000,
            error,
        )

    return before_sleep


async def retry_async[T](
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    predicate: RetryPredicate = should_retry_error,
    *,
    operation: str = "operation",
) -> T:
    """Run ``func`` and retry it while ``predicate`` accepts the error.

    The last error is re-raised unchanged once retries are exhausted or the
    predicate rejects it.
    """
    policy = policy or RetryPolicy()
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(policy.max_retries + 1),
        wait=_policy_wait(policy),
        retry=retry_if_exception(predicate),
        before_sleep=_log_retry(operation, policy),
        reraise=True,
    ):
        with attempt:
            return await func()
    raise AssertionError("unreachable")


def with_retry(
    predicate: RetryPredicate = should_retry_error,
    *,
    policy: RetryPolicy | None = None,
):
    """Decorate a service coroutine method with retry.

    Without an explicit ``policy`` the instance's ``retry_policy`` attribute
    is used.
    """

    def decorator(func):
        @wraps(func)
        async def wrapper(self: Any, *args, **kwargs):
            effective = policy or getattr(self, "retry_policy", None) or RetryPolicy()
            return await retry_async(
                lambda: func(self, *args, **kwargs),
                effective,
                predicate,
                operation=func.__qualname__,
            )

        return wrapper

    return decorator
