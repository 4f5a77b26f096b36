"""
Retry policies, error-classification tables, batch defaults, provider
endpoints, and project path constants.

All constants used by the classifier, retry, parser, batch and executor
modules are centralized here so that config is separated from logic.

API keys are never stored here; each provider entry names the environment
variable that holds its key.
"""

from pathlib import Path

# ---------------------------------------------------------------------------
# Project paths
# ---------------------------------------------------------------------------

# Resolve from this file: src/esg_collector/config.py → src/esg_collector → src → root
PROJECT_ROOT = Path(__file__).resolve().parents[2]

DATA_DIR = PROJECT_ROOT / "data"
LOGS_DIR = PROJECT_ROOT / "logs"

FAILED_ITEMS_LOG = LOGS_DIR / "failed_items.jsonl"
UNPARSEABLE_LOG = LOGS_DIR / "unparseable_responses.jsonl"
OUTCOME_REPORT_PATH = DATA_DIR / "batch_outcomes.csv"

# ---------------------------------------------------------------------------
# Error classification tables
# ---------------------------------------------------------------------------

# Rate limiting (429), transient server errors (5xx), and 403, which some
# Google APIs return when a per-user rate limit is hit.
RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({403, 429, 500, 502, 503, 504})

# Matched case-insensitively against the error message.
TRANSIENT_ERROR_PHRASES: tuple[str, ...] = (
    "rate limit",
    "quota exceeded",
    "too many requests",
    "internal server error",
    "backend error",
    "timeout",
    "timed out",
    "service unavailable",
    "temporarily unavailable",
    "connection reset",
    "connection closed",
    "socket hang up",
)

# Narrower set: the upstream quota is gone and will not refill within the
# lifetime of a retry loop.
QUOTA_EXHAUSTED_PHRASES: tuple[str, ...] = (
    "quota exceeded",
    "resource exhausted",
    "resource_exhausted",
)

STACK_OVERFLOW_PHRASES: tuple[str, ...] = (
    "maximum recursion depth",
    "maximum call stack size exceeded",
    "stack overflow",
)

# Errors whose serialized form is larger than this are never retried.
MAX_ERROR_SIZE_CHARS: int = 10_000

# ---------------------------------------------------------------------------
# Retry policy defaults (seconds)
# ---------------------------------------------------------------------------

DEFAULT_MAX_RETRIES: int = 5
DEFAULT_INITIAL_DELAY: float = 1.0
DEFAULT_MAX_DELAY: float = 60.0
DEFAULT_BACKOFF_FACTOR: float = 2.0
DEFAULT_JITTER_FACTOR: float = 0.2
DEFAULT_OVERALL_TIMEOUT: float = 10 * 60

# RETRY_PROFILES: one entry per class of external collaborator.
#   ai_extraction — Gemini calls; slow, long budget, quota exhaustion is fatal
#   sheets        — spreadsheet reads/writes; per-minute quotas refill, so
#                   "quota exceeded" is retried like any rate limit
#   search        — web search; short budget
RETRY_PROFILES: dict[str, dict] = {
    "ai_extraction": {
        "max_retries": 5,
        "initial_delay": 60.0,
        "max_delay": 480.0,
        "backoff_factor": 2.0,
        "jitter_factor": 0.2,
        "overall_timeout": 10 * 60,
        "quota_is_fatal": True,
    },
    "sheets": {
        "max_retries": 5,
        "initial_delay": 1.0,
        "max_delay": 60.0,
        "backoff_factor": 2.0,
        "jitter_factor": 0.2,
        "overall_timeout": 5 * 60,
        "quota_is_fatal": False,
    },
    "search": {
        "max_retries": 3,
        "initial_delay": 2.0,
        "max_delay": 30.0,
        "backoff_factor": 2.0,
        "jitter_factor": 0.2,
        "overall_timeout": 2 * 60,
        "quota_is_fatal": False,
    },
}

# ---------------------------------------------------------------------------
# Batch execution parameters
# ---------------------------------------------------------------------------

DEFAULT_GROUP_SIZE: int = 10                  # items in flight at once
DEFAULT_INTER_GROUP_DELAY_SECONDS: float = 1.0  # cooldown between groups

# ---------------------------------------------------------------------------
# Provider configuration
# ---------------------------------------------------------------------------
#
# Fields:
#   endpoint      — URL template; {model} is filled in for Gemini
#   auth_type     — 'api_key_header': key sent in the header named by key_header
#                   'api_key_param':  key sent as the query parameter named by key_param
#   api_key_env   — environment variable holding the API key

API_CONFIG: dict[str, dict] = {
    "gemini": {
        "endpoint": (
            "https://generativelanguage.googleapis.com"
            "/v1beta/models/{model}:generateContent"
        ),
        "auth_type": "api_key_header",
        "key_header": "x-goog-api-key",
        "api_key_env": "GEMINI_API_KEY",
    },
    "serpapi": {
        "endpoint": "https://serpapi.com/search",
        "auth_type": "api_key_param",
        "key_param": "api_key",
        "api_key_env": "SERP_API_KEY",
    },
}

DEFAULT_GEMINI_MODEL: str = "gemini-2.0-flash"
GENERATION_TEMPERATURE: float = 0.1

REQUEST_TIMEOUT_SECONDS: int = 60   # per HTTP request, inside the retry budget
SEARCH_RESULTS_PER_QUERY: int = 10

# Reports above this size are rejected before upload (50 MB).
MAX_DOCUMENT_BYTES: int = 50 * 1024 * 1024
