"""Retry timing for classified sync failures.

``RetryPolicy.decide`` turns a ``ClassifiedError`` and the index of the
attempt that just failed into a ``RetryDecision``: exponential backoff seeded
by the error's ``retry_after_seconds``, plus up to one second of jitter,
capped at ``max_delay_ms``.

The scheduler's interval timer is the steady-state retry mechanism; this
policy is for callers that wrap a single operation with bounded retries
(see ``retry_with_policy``).
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from calsync.sync.errors import ClassifiedError, ErrorClassifier, RetryExhaustedError

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_SECONDS = 5
DEFAULT_MAX_DELAY_MS = 60_000
JITTER_MAX_MS = 1_000

T = TypeVar("T")


@dataclass(frozen=True)
class RetryDecision:
    should_retry: bool
    delay_ms: float
    attempts_used: int
    max_attempts: int


class RetryPolicy:
    """Attempt-bounded exponential backoff with jitter.

    ``attempt`` passed to :meth:`decide` is the zero-based index of the
    attempt that just failed, so with ``max_attempts=3`` attempts 0 and 1
    are retried and attempt 2 is final.
    """

    def __init__(
        self,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        max_delay_ms: float = DEFAULT_MAX_DELAY_MS,
        rng: random.Random | None = None,
    ) -> None:
        if max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")
        if max_delay_ms <= 0:
            raise ValueError("max_delay_ms must be > 0")
        self._max_attempts = max_attempts
        self._max_delay_ms = max_delay_ms
        self._rng = rng or random.Random()

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def decide(self, error: ClassifiedError, attempt: int) -> RetryDecision:
        if attempt < 0:
            raise ValueError("attempt must be >= 0")

        max_attempts = self._max_attempts if error.recoverable else 0
        attempts_used = min(attempt + 1, max_attempts)

        if not error.recoverable or attempt + 1 >= max_attempts:
            return RetryDecision(
                should_retry=False,
                delay_ms=0,
                attempts_used=attempts_used,
                max_attempts=max_attempts,
            )

        base_ms = (error.retry_after_seconds or DEFAULT_BASE_DELAY_SECONDS) * 1000
        delay = base_ms * (2**attempt) + self._rng.uniform(0, JITTER_MAX_MS)
        return RetryDecision(
            should_retry=True,
            delay_ms=min(delay, self._max_delay_ms),
            attempts_used=attempts_used,
            max_attempts=max_attempts,
        )


async def retry_with_policy(
    operation: Callable[[], Awaitable[T]],
    *,
    classifier: ErrorClassifier,
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    on_retry: Callable[[ClassifiedError, RetryDecision], None] | None = None,
) -> T:
    """Run *operation*, retrying classified failures as *policy* allows.

    Raises:
        RetryExhaustedError: when the policy declines another attempt. The
            last classified error is attached; the original exception is
            chained as ``__cause__``.
    """
    policy = policy or RetryPolicy()
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as exc:
            error = classifier.classify(exc)
            decision = policy.decide(error, attempt)
            if not decision.should_retry:
                logger.debug(
                    "Giving up after attempt %d/%d (%s)",
                    attempt + 1,
                    max(decision.max_attempts, 1),
                    error.code,
                )
                raise RetryExhaustedError(error, attempts=attempt + 1) from exc

            logger.warning(
                "Calendar operation failed (%s), retrying in %.1fs (attempt %d/%d)",
                error.code,
                decision.delay_ms / 1000,
                attempt + 1,
                decision.max_attempts,
            )
            if on_retry is not None:
                on_retry(error, decision)
            await sleep(decision.delay_ms / 1000)
            attempt += 1
