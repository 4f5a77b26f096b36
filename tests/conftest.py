"""
Shared pytest fixtures and helpers for the execution layer tests.

Async code is driven with ``asyncio.run`` inside ordinary tests.  Waits are
injected (``RecordingSleep``) so that backoff schedules can be asserted
without the suite actually sleeping.
"""

from __future__ import annotations

import requests
import pytest

from esg_collector.retry import RetryPolicy


# ---------------------------------------------------------------------------
# Error helpers
# ---------------------------------------------------------------------------

class FakeApiError(Exception):
    """Client-library style error carrying a status code attribute."""

    def __init__(self, message: str = "api error", status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


def make_http_response(status_code: int, text: str = "") -> requests.Response:
    response = requests.Response()
    response.status_code = status_code
    response._content = text.encode("utf-8")
    return response


def make_http_error(
    status_code: int, message: str | None = None, body: str = ""
) -> requests.HTTPError:
    """``requests.HTTPError`` with a response attached, as ``raise_for_status`` raises it."""
    return requests.HTTPError(
        message or f"{status_code} Error",
        response=make_http_response(status_code, body),
    )


# Body Gemini returns with a 429 once the project quota is used up.
GEMINI_QUOTA_BODY = (
    '{"error": {"code": 429, "message": "Quota exceeded for quota metric '
    '\'Generate Content API requests per day\'", "status": "RESOURCE_EXHAUSTED"}}'
)


# ---------------------------------------------------------------------------
# Async helpers
# ---------------------------------------------------------------------------

class RecordingSleep:
    """Awaitable sleep replacement that records requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FlakyCall:
    """
    Thunk that fails ``failures`` times with errors from ``error_factory``,
    then returns ``result``.  ``calls`` counts attempts started.
    """

    def __init__(self, failures: int, error_factory, result="ok"):
        self.failures = failures
        self.error_factory = error_factory
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error_factory()
        return self.result


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def fast_policy():
    """Deterministic policy: no jitter, 100 ms initial delay, doubling."""
    return RetryPolicy(
        max_retries=3,
        initial_delay=0.1,
        max_delay=10.0,
        backoff_factor=2.0,
        jitter_factor=0.0,
        overall_timeout=30.0,
    )


@pytest.fixture
def tiny_policy():
    """Real-time policy for executor tests: millisecond waits, no jitter."""
    return RetryPolicy(
        max_retries=2,
        initial_delay=0.01,
        max_delay=0.05,
        backoff_factor=2.0,
        jitter_factor=0.0,
        overall_timeout=5.0,
    )
