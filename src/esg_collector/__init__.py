"""
src/esg_collector — resilient execution layer for the ESG data collector.

Module layout
-------------
config.py      — retry profiles, classification tables, provider config, paths
classifier.py  — error classification (retryable / fatal / process-fatal)
retry.py       — retry policy, exponential backoff with jitter, overall timeout
parser.py      — best-effort recovery of structured data from model output
batch.py       — bounded-concurrency batch orchestration and outcome reporting
executor.py    — provider requests (Gemini, SerpApi) run through the retry layer

Public interface
----------------
Run one unreliable call:
    await execute(thunk, RetryPolicy.for_profile("ai_extraction"))

Recover JSON from model output:
    parse(raw_text)  → Structured | Unparseable

Process a list of companies:
    summary = await run_batch(companies, processor, group_size=10)
    print_batch_summary(summary)
    log_failed_outcomes(summary)
"""

from .batch import (
    BatchOrchestrator,
    BatchState,
    BatchSummary,
    ItemOutcome,
    clear_failed_outcomes_log,
    export_outcome_report,
    load_failed_outcomes,
    log_failed_outcomes,
    print_batch_summary,
    run_batch,
)
from .classifier import CallTimeoutError, ErrorVerdict, classify, is_quota_exhausted
from .parser import Structured, Unparseable, parse
from .retry import (
    QuotaExhaustedExit,
    RetryPolicy,
    blocking_thunk,
    compute_backoff_delay,
    execute,
)

__all__ = [
    # Classification
    "classify",
    "is_quota_exhausted",
    "ErrorVerdict",
    "CallTimeoutError",
    # Retry execution
    "execute",
    "RetryPolicy",
    "compute_backoff_delay",
    "blocking_thunk",
    "QuotaExhaustedExit",
    # Parsing
    "parse",
    "Structured",
    "Unparseable",
    # Batch orchestration
    "run_batch",
    "BatchOrchestrator",
    "BatchSummary",
    "ItemOutcome",
    "BatchState",
    "print_batch_summary",
    "export_outcome_report",
    "log_failed_outcomes",
    "load_failed_outcomes",
    "clear_failed_outcomes_log",
]
