"""
Error classification for unreliable external calls.

Every failure seen by the retry executor is routed through :func:`classify`,
which decides whether the call is worth another attempt, should be abandoned,
or signals that the whole process should stop.  Classification is pure and
total: it never raises, whatever shape the error has.
"""

from __future__ import annotations

import asyncio
import json
from enum import Enum
from typing import Any

import requests

from .config import (
    MAX_ERROR_SIZE_CHARS,
    QUOTA_EXHAUSTED_PHRASES,
    RETRYABLE_STATUS_CODES,
    STACK_OVERFLOW_PHRASES,
    TRANSIENT_ERROR_PHRASES,
)


class ErrorVerdict(str, Enum):
    """Outcome of classifying a failed call."""

    RETRYABLE = "retryable"
    FATAL = "fatal"
    PROCESS_FATAL = "process_fatal"


class CallTimeoutError(Exception):
    """
    The overall wall-clock budget of a call was exhausted.

    Raised by the retry executor, never retried, and classified as
    :attr:`ErrorVerdict.FATAL` if it surfaces inside an outer call.
    """

    def __init__(
        self,
        message: str,
        timeout: float,
        elapsed: float,
        attempts: int,
        last_error: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.timeout = timeout
        self.elapsed = elapsed
        self.attempts = attempts
        self.last_error = last_error


# Transport failures that are transient by nature regardless of message.
_TRANSIENT_EXCEPTION_TYPES: tuple[type[BaseException], ...] = (
    requests.Timeout,
    requests.ConnectionError,
    asyncio.TimeoutError,
    TimeoutError,
    ConnectionError,
)


# ---------------------------------------------------------------------------
# Error inspection helpers
# ---------------------------------------------------------------------------

def _error_message(error: Any) -> str:
    """Best-effort human-readable message for any error-shaped value."""
    if isinstance(error, str):
        return error
    if isinstance(error, dict):
        message = error.get("message") or error.get("error") or ""
        return message if isinstance(message, str) else str(message)
    return str(error)


def _status_code(error: Any) -> int | None:
    """
    Extract an HTTP-style status code from an exception or dict.

    Looks at ``status_code``, ``status`` and ``code`` on the error itself,
    then on its ``response`` attribute (``requests.HTTPError`` keeps the
    status there).
    """
    candidates: list[Any] = []
    if isinstance(error, dict):
        candidates.extend(error.get(key) for key in ("status_code", "status", "code"))
        response = error.get("response")
    else:
        candidates.extend(getattr(error, key, None) for key in ("status_code", "status", "code"))
        response = getattr(error, "response", None)

    if isinstance(response, dict):
        candidates.extend(response.get(key) for key in ("status_code", "status"))
    elif response is not None:
        candidates.extend(getattr(response, key, None) for key in ("status_code", "status"))

    for value in candidates:
        if value is None or isinstance(value, bool):
            continue
        try:
            return int(value)
        except (TypeError, ValueError):
            continue
    return None


def _response_body(error: Any) -> str | None:
    response = error.get("response") if isinstance(error, dict) else getattr(error, "response", None)
    text = getattr(response, "text", None)
    return text if isinstance(text, str) else None


def _error_text(error: Any) -> str:
    """Lower-cased message plus response body; API error details often live in the body."""
    message = _error_message(error)
    body = _response_body(error)
    return f"{message}\n{body}".lower() if body else message.lower()


def _serialize_error(error: Any) -> str:
    """
    Serialize an error to JSON for the size ceiling check.

    Raises whatever ``json.dumps`` raises on pathological input (circular
    references, runaway recursion); :func:`classify` treats that as fatal.
    """
    if isinstance(error, (dict, list, str)):
        return json.dumps(error, default=repr)

    payload = {
        "type": type(error).__name__,
        "message": _error_message(error),
        "status": _status_code(error),
        "body": _response_body(error),
        "args": list(getattr(error, "args", ())),
    }
    return json.dumps(payload, default=repr)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def is_quota_exhausted(error: Any) -> bool:
    """
    Return ``True`` if the error says the upstream quota is used up.

    Quota exhaustion does not heal within a retry loop's timeframe, so the
    caller is expected to stop the process rather than keep burning attempts.
    Never raises.
    """
    try:
        message = _error_text(error)
    except Exception:
        return False
    return any(phrase in message for phrase in QUOTA_EXHAUSTED_PHRASES)


def _is_pathological(error: Any) -> bool:
    if isinstance(error, RecursionError):
        return True
    if len(_serialize_error(error)) > MAX_ERROR_SIZE_CHARS:
        return True
    message = _error_message(error).lower()
    return any(phrase in message for phrase in STACK_OVERFLOW_PHRASES)


def _is_transient(error: Any) -> bool:
    if isinstance(error, _TRANSIENT_EXCEPTION_TYPES):
        return True
    if _status_code(error) in RETRYABLE_STATUS_CODES:
        return True
    message = _error_text(error)
    return any(phrase in message for phrase in TRANSIENT_ERROR_PHRASES)


def classify(error: Any, *, quota_is_fatal: bool = True) -> ErrorVerdict:
    """
    Decide whether a failed call should be retried.

    Rules, in priority order:

    1. Oversized, unserializable (e.g. circular) or stack-overflow errors
       → ``FATAL``.
    2. :class:`CallTimeoutError` → ``FATAL``; the call's budget is spent.
    3. Quota exhaustion → ``PROCESS_FATAL`` when ``quota_is_fatal``.
    4. Rate-limit / transient-server status codes, transport timeouts and
       connection failures, or known transient phrases → ``RETRYABLE``.
    5. Anything else → ``FATAL``.

    Args:
        error: Exception, dict, or string describing the failure.
        quota_is_fatal: Whether quota exhaustion should stop the process.
            Spreadsheet quotas are per-minute and refill, so sheet calls
            pass ``False`` and quota errors are retried instead.

    Returns:
        An :class:`ErrorVerdict`.  Any failure during classification
        itself yields ``FATAL``.
    """
    try:
        if _is_pathological(error):
            return ErrorVerdict.FATAL
        if isinstance(error, CallTimeoutError):
            return ErrorVerdict.FATAL
        if quota_is_fatal and is_quota_exhausted(error):
            return ErrorVerdict.PROCESS_FATAL
        if _is_transient(error):
            return ErrorVerdict.RETRYABLE
        return ErrorVerdict.FATAL
    except Exception:
        return ErrorVerdict.FATAL
