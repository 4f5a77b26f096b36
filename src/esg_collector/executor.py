"""
Provider boundary: request construction and resilient provider calls.

Each function here builds a blocking ``requests`` call, wraps it in a thunk,
and runs it through :func:`retry.execute` with the matching retry profile.
HTTP errors are raised with their response attached, so the classifier sees
the status code.

Design notes:
- API keys come only from the environment; a missing key raises
  ``ValueError``, which the classifier treats as fatal.
- Extraction output that cannot be parsed is appended to the unparseable
  response log so the raw text is available for manual review.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime
from pathlib import Path

import requests

from .config import (
    API_CONFIG,
    DEFAULT_GEMINI_MODEL,
    GENERATION_TEMPERATURE,
    MAX_DOCUMENT_BYTES,
    REQUEST_TIMEOUT_SECONDS,
    SEARCH_RESULTS_PER_QUERY,
    UNPARSEABLE_LOG,
)
from .parser import ParseOutcome, Unparseable, parse
from .retry import RetryPolicy, blocking_thunk, execute

logger = logging.getLogger(__name__)


class DocumentTooLargeError(Exception):
    """A report exceeds the upload size ceiling; never retried."""

    def __init__(self, url: str, size_bytes: int) -> None:
        super().__init__(
            f"Document is too large to process "
            f"({size_bytes / (1024 * 1024):.2f}MB): {url}"
        )
        self.url = url
        self.size_bytes = size_bytes


# ---------------------------------------------------------------------------
# Request construction
# ---------------------------------------------------------------------------

def get_api_key(config: dict) -> str:
    """
    Read the provider's API key from its environment variable.

    Raises:
        ValueError: The environment variable is unset or empty.
    """
    env_var = config["api_key_env"]
    api_key = os.getenv(env_var)
    if not api_key:
        raise ValueError(
            f"API key not found. Set the '{env_var}' environment variable."
        )
    return api_key


def build_endpoint_url(config: dict, **path_params: str) -> str:
    """Fill the endpoint template with path parameters (e.g. ``model``)."""
    return config["endpoint"].format(**path_params)


def build_request_headers(config: dict) -> dict:
    """
    Construct HTTP headers, including the API key for header-auth providers.

    Raises:
        ValueError: Missing API key, or unknown ``auth_type``.
    """
    auth_type = config["auth_type"]

    if auth_type == "api_key_header":
        return {
            config["key_header"]: get_api_key(config),
            "Content-Type": "application/json",
        }

    if auth_type == "api_key_param":
        return {"Content-Type": "application/json"}

    raise ValueError(f"Unknown auth_type '{auth_type}' in provider config.")


def build_auth_params(config: dict) -> dict:
    """
    Return the query parameters that authenticate a request.

    Empty for header-auth providers.  Query-parameter keys end up in the
    request URL, so prefer header auth where the provider supports it.
    """
    if config["auth_type"] == "api_key_param":
        return {config["key_param"]: get_api_key(config)}
    return {}


def build_generation_payload(
    prompt: str,
    parts: list[dict] | None = None,
    temperature: float = GENERATION_TEMPERATURE,
) -> dict:
    """
    Construct the Gemini ``generateContent`` request body.

    Args:
        prompt: Prompt text, sent as the first part.
        parts: Extra content parts (e.g. ``{"fileData": {...}}`` for an
               uploaded report), appended after the prompt.
        temperature: Sampling temperature.
    """
    return {
        "contents": [{"parts": [{"text": prompt}, *(parts or [])]}],
        "generationConfig": {"temperature": temperature},
    }


def extract_response_content(response_json: dict) -> str:
    """
    Extract the text from a Gemini response.

    Joins every text part of the first candidate.

    Raises:
        ValueError: No candidate or no text parts (e.g. a blocked prompt).
    """
    candidates = response_json.get("candidates") or []
    if not candidates:
        feedback = response_json.get("promptFeedback", {})
        raise ValueError(f"Gemini returned no candidates: {feedback}")

    parts = candidates[0].get("content", {}).get("parts", [])
    texts = [part["text"] for part in parts if "text" in part]
    if not texts:
        raise ValueError("Gemini candidate contained no text parts")
    return "".join(texts)


# ---------------------------------------------------------------------------
# Blocking calls (run in worker threads)
# ---------------------------------------------------------------------------

def _post_json(url: str, headers: dict, payload: dict) -> dict:
    response = requests.post(url, headers=headers, json=payload, timeout=REQUEST_TIMEOUT_SECONDS)
    response.raise_for_status()  # HTTPError keeps .response for classification
    return response.json()


def _get_json(url: str, params: dict) -> dict:
    response = requests.get(url, params=params, timeout=REQUEST_TIMEOUT_SECONDS)
    response.raise_for_status()
    return response.json()


# ---------------------------------------------------------------------------
# Provider calls
# ---------------------------------------------------------------------------

async def generate_content(
    prompt: str,
    *,
    model: str = DEFAULT_GEMINI_MODEL,
    parts: list[dict] | None = None,
    policy: RetryPolicy | None = None,
) -> str:
    """
    Ask Gemini for a completion and return its text.

    Args:
        prompt: Prompt text.
        model: Gemini model name.
        parts: Extra content parts appended after the prompt.
        policy: Retry policy; the ``ai_extraction`` profile when omitted.

    Returns:
        Response text (not yet parsed).
    """
    config = API_CONFIG["gemini"]
    url = build_endpoint_url(config, model=model)
    headers = build_request_headers(config)
    payload = build_generation_payload(prompt, parts)

    response_json = await execute(
        blocking_thunk(_post_json, url, headers, payload),
        policy or RetryPolicy.for_profile("ai_extraction"),
        label=f"Gemini {model} generateContent",
    )
    return extract_response_content(response_json)


def record_unparseable_response(
    outcome: Unparseable,
    context: str,
    log_path: Path = UNPARSEABLE_LOG,
) -> None:
    """
    Append an unparseable response to the JSONL review log.

    Args:
        outcome: Parser result carrying the raw text.
        context: What the extraction was for (e.g. company name and task).
        log_path: Path to the JSONL log file.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    raw = outcome.raw_text
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    record = {
        "context": context,
        "raw_text": raw if isinstance(raw, str) else repr(raw),
        "timestamp": datetime.now().isoformat(),
    }
    with log_path.open("a", encoding="utf-8") as fh:
        fh.write(json.dumps(record) + "\n")


async def extract_structured(
    prompt: str,
    *,
    context: str = "",
    model: str = DEFAULT_GEMINI_MODEL,
    parts: list[dict] | None = None,
    policy: RetryPolicy | None = None,
    unparseable_log: Path = UNPARSEABLE_LOG,
) -> ParseOutcome:
    """
    Run an extraction prompt and recover structured data from the answer.

    Call failures propagate (already retried and classified).  A response
    that cannot be parsed is returned as :class:`Unparseable` and recorded
    in ``unparseable_log``.

    Args:
        prompt: Extraction prompt.
        context: Label stored with unparseable responses.
        model: Gemini model name.
        parts: Extra content parts (e.g. the uploaded report).
        policy: Retry policy; the ``ai_extraction`` profile when omitted.
        unparseable_log: JSONL path for unparseable responses.
    """
    text = await generate_content(prompt, model=model, parts=parts, policy=policy)
    outcome = parse(text)
    if not outcome.ok:
        logger.warning("Unparseable extraction response for %s", context or "request")
        record_unparseable_response(outcome, context, unparseable_log)
    return outcome


async def web_search(
    query: str,
    *,
    num_results: int = SEARCH_RESULTS_PER_QUERY,
    policy: RetryPolicy | None = None,
) -> list[dict]:
    """
    Run a Google web search through SerpApi.

    Args:
        query: Search query.
        num_results: Number of results requested.
        policy: Retry policy; the ``search`` profile when omitted.

    Returns:
        List of dicts with keys ``title``, ``link``, ``snippet``,
        ``position``, ``displayed_link``.  Empty when nothing was found.
    """
    config = API_CONFIG["serpapi"]
    params = {
        "q": query,
        "engine": "google",
        "num": num_results,
        "hl": "en",
        "gl": "us",
        **build_auth_params(config),
    }
    data = await execute(
        blocking_thunk(_get_json, build_endpoint_url(config), params),
        policy or RetryPolicy.for_profile("search"),
        label=f"Web search: {query}",
    )

    organic = (data or {}).get("organic_results") or []
    logger.info("Found %d search results for %r", len(organic), query)
    return [
        {
            "title": result.get("title", ""),
            "link": result.get("link", ""),
            "snippet": result.get("snippet", ""),
            "position": result.get("position", 0),
            "displayed_link": result.get("displayed_link", ""),
        }
        for result in organic
    ]


async def check_document_size(
    url: str,
    *,
    max_bytes: int = MAX_DOCUMENT_BYTES,
    policy: RetryPolicy | None = None,
) -> int | None:
    """
    Check a report's size with a HEAD request before uploading it.

    Returns:
        Size in bytes, or ``None`` when the server does not report it.

    Raises:
        DocumentTooLargeError: ``Content-Length`` exceeds ``max_bytes``.
    """
    def head() -> requests.Response:
        response = requests.head(url, allow_redirects=True, timeout=REQUEST_TIMEOUT_SECONDS)
        response.raise_for_status()
        return response

    response = await execute(
        blocking_thunk(head),
        policy or RetryPolicy.for_profile("search"),
        label=f"HEAD {url}",
    )
    length = response.headers.get("Content-Length")
    if length is None or not str(length).isdigit():
        return None

    size = int(length)
    if size > max_bytes:
        logger.warning("Document too large (%.2fMB), skipping: %s", size / (1024 * 1024), url)
        raise DocumentTooLargeError(url, size)
    return size
