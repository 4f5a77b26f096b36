"""
Retry execution with exponential backoff, jitter, and a whole-call timeout.

A call is described by a *thunk*: a zero-argument callable that starts one
fresh attempt and returns an awaitable.  :func:`execute` runs the thunk,
classifies each failure with :func:`classifier.classify`, and retries
transient failures until the policy is exhausted.

The overall timeout is measured from the first attempt, not per attempt,
so a slow call cannot be retried into an even longer tail.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from .classifier import CallTimeoutError, ErrorVerdict, classify
from .config import (
    DEFAULT_BACKOFF_FACTOR,
    DEFAULT_INITIAL_DELAY,
    DEFAULT_JITTER_FACTOR,
    DEFAULT_MAX_DELAY,
    DEFAULT_MAX_RETRIES,
    DEFAULT_OVERALL_TIMEOUT,
    RETRY_PROFILES,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
CallThunk = Callable[[], Awaitable[T]]


# ---------------------------------------------------------------------------
# Policy and bookkeeping types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RetryPolicy:
    """
    Immutable retry configuration, supplied per call site.

    Delays and the overall timeout are in seconds.  ``quota_is_fatal``
    controls whether quota exhaustion stops the process (AI extraction) or
    is retried like any other rate limit (spreadsheet calls).
    """

    max_retries: int = DEFAULT_MAX_RETRIES
    initial_delay: float = DEFAULT_INITIAL_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    backoff_factor: float = DEFAULT_BACKOFF_FACTOR
    jitter_factor: float = DEFAULT_JITTER_FACTOR
    overall_timeout: float = DEFAULT_OVERALL_TIMEOUT
    quota_is_fatal: bool = True

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("initial_delay and max_delay must be non-negative")
        if self.backoff_factor <= 1:
            raise ValueError(f"backoff_factor must be > 1, got {self.backoff_factor}")
        if not 0 <= self.jitter_factor <= 1:
            raise ValueError(f"jitter_factor must be in [0, 1], got {self.jitter_factor}")
        if self.overall_timeout <= 0:
            raise ValueError(f"overall_timeout must be > 0, got {self.overall_timeout}")

    @classmethod
    def for_profile(cls, name: str) -> RetryPolicy:
        """
        Build the policy for a named collaborator profile.

        Args:
            name: Key of ``RETRY_PROFILES`` (``'ai_extraction'``,
                  ``'sheets'`` or ``'search'``).

        Raises:
            ValueError: Unknown profile name.
        """
        if name not in RETRY_PROFILES:
            raise ValueError(
                f"Unknown retry profile '{name}'. "
                f"Known profiles: {sorted(RETRY_PROFILES)}"
            )
        return cls(**RETRY_PROFILES[name])


@dataclass(frozen=True)
class AttemptRecord:
    """One failed attempt; discarded once the call resolves."""

    attempt: int
    elapsed: float
    error: BaseException


class QuotaExhaustedExit(SystemExit):
    """
    Raised when the upstream quota is exhausted.

    A ``SystemExit`` subclass (exit code 1) so that no ``except Exception``
    handler, including the batch orchestrator's per-item guard, absorbs it.
    A host supervisor can still catch it explicitly and restart instead.
    """

    def __init__(self, error: BaseException) -> None:
        super().__init__(1)
        self.error = error


# ---------------------------------------------------------------------------
# Backoff helpers
# ---------------------------------------------------------------------------

def compute_backoff_delay(
    retry: int,
    policy: RetryPolicy,
    rng: random.Random | None = None,
) -> float:
    """
    Return the jittered wait before a given retry.

    The theoretical delay is ``initial_delay * backoff_factor ** (retry - 1)``
    capped at ``max_delay``; it is then scaled by a uniform factor in
    ``[1 - jitter_factor, 1 + jitter_factor]`` and capped again.

    Args:
        retry: 1-based retry number (1 → the wait before the second attempt).
        policy: Retry policy supplying the schedule.
        rng: Random source; the module-level ``random`` when omitted.

    Returns:
        Seconds to wait.
    """
    base = min(policy.initial_delay * policy.backoff_factor ** (retry - 1), policy.max_delay)
    if policy.jitter_factor == 0:
        return base
    uniform = (rng or random).uniform
    jitter = uniform(1 - policy.jitter_factor, 1 + policy.jitter_factor)
    return min(base * jitter, policy.max_delay)


def should_retry(verdict: ErrorVerdict, retries: int, policy: RetryPolicy) -> bool:
    """
    Decide whether another attempt is allowed.

    Args:
        verdict: Classification of the failure that just happened.
        retries: Retries already counted, including the one being considered.
        policy: Retry policy supplying ``max_retries``.
    """
    return verdict is ErrorVerdict.RETRYABLE and retries <= policy.max_retries


def blocking_thunk(func: Callable[..., T], *args: Any, **kwargs: Any) -> CallThunk[T]:
    """
    Adapt a blocking callable (e.g. a ``requests`` call) into a thunk.

    Each invocation runs ``func(*args, **kwargs)`` in a worker thread.  If the
    overall timeout fires, the awaiting task is cancelled but the thread
    itself cannot be interrupted: it runs until ``func`` returns and its
    result is discarded.  ``asyncio.run`` waits for such threads at shutdown,
    so pass blocking calls their own timeout (as the provider calls do with
    ``REQUEST_TIMEOUT_SECONDS``) to bound that wait.
    """
    async def thunk() -> T:
        return await asyncio.to_thread(func, *args, **kwargs)

    return thunk


async def _invoke(thunk: Callable[[], Any]) -> Any:
    result = thunk()
    if inspect.isawaitable(result):
        result = await result
    return result


# ---------------------------------------------------------------------------
# Main retry wrapper
# ---------------------------------------------------------------------------

async def execute(
    thunk: Callable[[], Any],
    policy: RetryPolicy | None = None,
    *,
    label: str = "operation",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rng: random.Random | None = None,
) -> Any:
    """
    Run ``thunk`` with bounded retries and a whole-call timeout.

    Each attempt races the thunk against the time left in
    ``policy.overall_timeout``.  On failure the error is classified:

    - ``PROCESS_FATAL`` → :class:`QuotaExhaustedExit` is raised.
    - ``FATAL`` → the error is re-raised immediately.
    - ``RETRYABLE`` → wait :func:`compute_backoff_delay` and try again, up to
      ``policy.max_retries`` retries; then the last error is re-raised.

    Args:
        thunk: Zero-argument callable starting one attempt.  It may return
               an awaitable (normal case) or a plain value.
        policy: Retry policy; ``RetryPolicy()`` defaults when omitted.
        label: Name used in log messages.
        sleep: Awaitable sleep used between attempts.
        rng: Random source for jitter.

    Returns:
        The thunk's result from the first successful attempt.

    Raises:
        CallTimeoutError: The overall timeout elapsed (never retried).
        QuotaExhaustedExit: The upstream quota is exhausted.
        Exception: The last error from the thunk, for fatal errors or
            once retries are exhausted.
    """
    policy = policy or RetryPolicy()
    start = time.monotonic()
    attempt = 0
    retries = 0

    while True:
        attempt += 1
        remaining = policy.overall_timeout - (time.monotonic() - start)
        task = asyncio.ensure_future(_invoke(thunk))
        try:
            done, _ = await asyncio.wait({task}, timeout=max(remaining, 0))
        finally:
            if not task.done():
                task.cancel()
                # let the attempt run its cleanup; wait() never re-raises it
                await asyncio.wait({task})

        if not done:
            elapsed = time.monotonic() - start
            logger.warning(
                "TIMEOUT: %s exceeded %.1fs (attempt %d)",
                label, policy.overall_timeout, attempt,
            )
            raise CallTimeoutError(
                f"TIMEOUT: {label} exceeded {policy.overall_timeout}s",
                timeout=policy.overall_timeout,
                elapsed=elapsed,
                attempts=attempt,
            )

        try:
            return task.result()
        except Exception as exc:
            record = AttemptRecord(attempt, time.monotonic() - start, exc)
            verdict = classify(exc, quota_is_fatal=policy.quota_is_fatal)

            if verdict is ErrorVerdict.PROCESS_FATAL:
                logger.critical(
                    "Quota exhausted during %s: %s. Stopping the process.", label, exc
                )
                raise QuotaExhaustedExit(exc) from exc

            if verdict is ErrorVerdict.FATAL:
                logger.error("%s failed with non-retryable error: %s", label, exc)
                raise

            retries += 1
            if not should_retry(verdict, retries, policy):
                logger.error(
                    "%s failed after %d retries: %s", label, policy.max_retries, exc
                )
                raise

            delay = compute_backoff_delay(retries, policy, rng)
            if record.elapsed + delay >= policy.overall_timeout:
                logger.warning(
                    "TIMEOUT: %s cannot wait %.1fs more within %.1fs budget",
                    label, delay, policy.overall_timeout,
                )
                raise CallTimeoutError(
                    f"TIMEOUT: {label} exceeded {policy.overall_timeout}s",
                    timeout=policy.overall_timeout,
                    elapsed=record.elapsed,
                    attempts=record.attempt,
                    last_error=exc,
                ) from exc

            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                label, retries, policy.max_retries, delay, exc,
            )
            await sleep(delay)
