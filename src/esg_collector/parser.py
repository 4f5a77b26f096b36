"""
Best-effort recovery of structured data from model output.

The extraction model sometimes truncates its answer, wraps JSON in prose or
code fences, or emits near-valid JSON with a stray comma.  :func:`parse`
tries progressively more invasive recoveries and always returns a
:class:`Structured` or :class:`Unparseable` value; it never raises.

No I/O occurs here; logging the raw text of unparseable responses is the
caller's job (see ``executor.record_unparseable_response``).
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, ClassVar, Iterator, Union

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Outcome types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Structured:
    """
    Parsed value plus the recovery stage that produced it.

    ``method`` is one of ``'strict'``, ``'extracted'``, ``'repaired'``,
    ``'fragment'`` or ``'key_values'``.  Schema checks are the caller's
    concern: a value that parses is ``Structured`` even if fields are wrong.
    """

    value: Any
    method: str = "strict"
    ok: ClassVar[bool] = True


@dataclass(frozen=True)
class Unparseable:
    """No stage recovered structured data; ``raw_text`` is the exact input."""

    raw_text: Any
    ok: ClassVar[bool] = False


ParseOutcome = Union[Structured, Unparseable]

_FAILED = object()

# Upper bound on fragments tried in stage 4, so garbage input stays cheap.
_MAX_FRAGMENTS = 64

_CLOSERS = {"{": "}", "[": "]"}

_CODE_FENCE = re.compile(r"```(?:json|JSON)?")
_MISSING_SEPARATOR = re.compile(r"}(\s*){")
_TRAILING_SEPARATOR = re.compile(r",(\s*)([}\]])")
_TRAILING_COMMA_AT_END = re.compile(r",\s*$")
# A member cut off after its key, optionally with a partial bare literal.
_DANGLING_MEMBER = re.compile(r',?\s*"(?:[^"\\]|\\.)*"\s*:\s*[A-Za-z0-9.+\-]*$')
_KEY_VALUE = re.compile(
    r'"((?:[^"\\]|\\.)+)"\s*:\s*'
    r'("(?:[^"\\]|\\.)*"|-?\d+(?:\.\d+)?(?:[eE][+-]?\d+)?|true|false|null)'
)


# ---------------------------------------------------------------------------
# Low-level helpers
# ---------------------------------------------------------------------------

def _strict(text: str) -> Any:
    """Strict JSON parse; returns ``_FAILED`` instead of raising."""
    try:
        return json.loads(text)
    except (ValueError, RecursionError):
        return _FAILED


def _chunks(text: str) -> Iterator[tuple[str, bool]]:
    """
    Split text into ``(segment, is_string_literal)`` chunks.

    String literal chunks include their quotes; an unterminated literal runs
    to the end of the text.
    """
    start = 0
    i = 0
    in_string = False
    while i < len(text):
        char = text[i]
        if in_string:
            if char == "\\":
                i += 2
                continue
            if char == '"':
                yield text[start:i + 1], True
                start = i + 1
                in_string = False
        elif char == '"':
            if i > start:
                yield text[start:i], False
            start = i
            in_string = True
        i += 1
    if start < len(text):
        yield text[start:], in_string


def _sub_outside_strings(pattern: re.Pattern, repl: str, text: str) -> str:
    """Apply ``pattern.sub`` only to the parts of ``text`` outside string literals."""
    return "".join(
        chunk if is_string else pattern.sub(repl, chunk)
        for chunk, is_string in _chunks(text)
    )


def _scan(text: str) -> tuple[list[str], int | None, int | None]:
    """
    Track bracket nesting outside string literals.

    Returns:
        Tuple of (open_stack, balanced_end, open_string_at):
        - ``open_stack``: unmatched openers at end of text, outermost first.
        - ``balanced_end``: index just past the point where the first opener
          is closed again, or ``None`` if it never is.
        - ``open_string_at``: index of the opening quote of an unterminated
          string literal, or ``None``.
    """
    stack: list[str] = []
    balanced_end: int | None = None
    open_string_at: int | None = None
    i = 0
    while i < len(text):
        char = text[i]
        if open_string_at is not None:
            if char == "\\":
                i += 2
                continue
            if char == '"':
                open_string_at = None
        elif char == '"':
            open_string_at = i
        elif char in _CLOSERS:
            stack.append(char)
        elif char in "}]":
            if stack and _CLOSERS[stack[-1]] == char:
                stack.pop()
                if not stack and balanced_end is None:
                    balanced_end = i + 1
        i += 1
    return stack, balanced_end, open_string_at


def _closers_for(stack: list[str]) -> str:
    return "".join(_CLOSERS[opener] for opener in reversed(stack))


def extract_brace_block(text: str) -> str | None:
    """
    Return the largest brace-delimited substring (first ``{`` to last ``}``).

    Returns ``None`` when the text has no such span.
    """
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    return text[start:end + 1]


# ---------------------------------------------------------------------------
# Textual repairs (stage 3), in order of invasiveness
# ---------------------------------------------------------------------------

def strip_code_fences(text: str) -> str:
    """Remove Markdown code fence markers (```` ``` ```` / ```` ```json ````)."""
    return _sub_outside_strings(_CODE_FENCE, "", text).strip()


def insert_missing_separators(text: str) -> str:
    """Insert a comma between adjacent ``}`` and ``{``."""
    return _sub_outside_strings(_MISSING_SEPARATOR, r"},\1{", text)


def strip_trailing_separators(text: str) -> str:
    """Drop a comma that directly precedes ``}`` or ``]``."""
    return _sub_outside_strings(_TRAILING_SEPARATOR, r"\1\2", text)


def close_unterminated(text: str) -> str:
    """
    Append the closers an unterminated object or array needs.

    Text that ends inside a string literal is returned unchanged; closing
    strings is left to fragment recovery.
    """
    stack, _, open_string_at = _scan(text)
    if open_string_at is not None:
        return text
    return text + _closers_for(stack)


_REPAIRS = (
    strip_code_fences,
    insert_missing_separators,
    strip_trailing_separators,
    close_unterminated,
)


# ---------------------------------------------------------------------------
# Recovery stages
# ---------------------------------------------------------------------------

def _parse_extracted(text: str) -> Any:
    block = extract_brace_block(text)
    if block is None or block == text:
        return _FAILED
    return _strict(block)


def _parse_repaired(text: str) -> Any:
    candidate = extract_brace_block(text)
    if candidate is None:
        start = text.find("{")
        if start == -1:
            return _FAILED
        candidate = text[start:]

    for repair in _REPAIRS:
        candidate = repair(candidate)
        value = _strict(candidate)
        if value is not _FAILED:
            return value
    return _FAILED


def _fragment_candidates(fragment: str) -> Iterator[str]:
    """Yield balanced versions of a fragment, least invasive first."""
    stack, _, open_string_at = _scan(fragment)
    if open_string_at is None:
        yield fragment + _closers_for(stack)

    repaired = fragment
    if open_string_at is not None:
        before = fragment[:open_string_at].rstrip()
        head_stack, _, _ = _scan(before)
        is_key = bool(head_stack) and head_stack[-1] == "{" and before.endswith(("{", ","))
        # A truncated key is dropped; a truncated value becomes "".
        repaired = before if is_key else fragment[:open_string_at] + '""'

    repaired = _DANGLING_MEMBER.sub("", repaired)
    repaired = _TRAILING_COMMA_AT_END.sub("", repaired)
    stack, _, open_string_at = _scan(repaired)
    if open_string_at is None:
        yield repaired + _closers_for(stack)


def _parse_fragments(text: str) -> Any:
    """
    Try each ``{``-opened fragment, outermost first.

    A fragment runs from its opening brace to the point where that brace is
    closed, or to the end of the text when truncated.  A fragment that only
    balances as an empty object is skipped so the raw text is not reported
    as recovered.
    """
    offset = 0
    tried = 0
    for chunk, is_string in list(_chunks(text)):
        if not is_string:
            for index, char in enumerate(chunk):
                if char != "{":
                    continue
                if tried >= _MAX_FRAGMENTS:
                    return _FAILED
                tried += 1
                start = offset + index
                _, balanced_end, _ = _scan(text[start:])
                fragment = text[start:start + balanced_end] if balanced_end else text[start:]
                for candidate in _fragment_candidates(fragment):
                    value = _strict(candidate)
                    if value is not _FAILED and value != {}:
                        return value
        offset += len(chunk)
    return _FAILED


def _parse_key_values(text: str) -> Any:
    """Rebuild a flat object from ``"key": value`` pairs found anywhere."""
    rebuilt: dict[str, Any] = {}
    for key, raw_value in _KEY_VALUE.findall(text):
        name = _strict(f'"{key}"')
        value = _strict(raw_value)
        if name is _FAILED or value is _FAILED:
            continue
        rebuilt[name] = value
    return rebuilt or _FAILED


_STAGES = (
    ("strict", _strict),
    ("extracted", _parse_extracted),
    ("repaired", _parse_repaired),
    ("fragment", _parse_fragments),
    ("key_values", _parse_key_values),
)


def _recover(text: str) -> Structured | None:
    for method, stage in _STAGES:
        value = stage(text)
        if value is not _FAILED:
            return Structured(value, method)
    return None


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------

def parse(raw_text: Any) -> ParseOutcome:
    """
    Recover structured data from model output.

    Stages run in strictly increasing order of invasiveness; the first that
    yields valid JSON wins:

    1. strict parse of the whole text;
    2. strict parse of the largest brace-delimited substring;
    3. textual repairs on that substring (code fences, missing separators,
       trailing separators, missing closers), re-parsing after each;
    4. per-fragment recovery: balance brackets, close a dangling string,
       drop a dangling key;
    5. a flat object rebuilt from ``"key": value`` pairs.

    Args:
        raw_text: Text returned by the extraction service.  ``bytes`` are
                  decoded as UTF-8; other non-string values are unparseable.

    Returns:
        :class:`Structured` with the value and the stage that produced it,
        or :class:`Unparseable` carrying ``raw_text`` unchanged.
    """
    text = raw_text
    if isinstance(text, (bytes, bytearray)):
        text = bytes(text).decode("utf-8", errors="replace")

    outcome: Structured | None = None
    if isinstance(text, str) and text.strip():
        try:
            outcome = _recover(text.strip())
        except Exception:
            logger.warning("Recovery parse aborted unexpectedly", exc_info=True)

    if outcome is None:
        preview = raw_text[:150] if isinstance(raw_text, (str, bytes)) else repr(raw_text)[:150]
        logger.warning("Failed to extract structured data from text: %r...", preview)
        return Unparseable(raw_text)

    logger.debug("Recovered structured data via '%s' stage", outcome.method)
    return outcome
