"""
Bounded-concurrency batch orchestration and batch outcome reporting.

Items are processed in consecutive groups: every item in a group runs
concurrently, and the next group starts only after the whole group has
settled.  The group size is therefore the cap on simultaneously in-flight
external calls.

One item's failure never aborts the run.  Every input item gets exactly one
:class:`ItemOutcome`, so ``succeeded + failed == total`` always holds.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Sequence

import pandas as pd

from .config import (
    DEFAULT_GROUP_SIZE,
    DEFAULT_INTER_GROUP_DELAY_SECONDS,
    FAILED_ITEMS_LOG,
    OUTCOME_REPORT_PATH,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Outcome types
# ---------------------------------------------------------------------------

class BatchState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"


@dataclass(frozen=True)
class ItemOutcome:
    """Result of processing one work item, success or failure."""

    item_id: str
    success: bool
    error: str | None = None
    error_type: str | None = None
    result: Any = None
    item: Any = None


@dataclass
class BatchSummary:
    """
    Aggregated outcome of a batch run.

    ``outcomes`` follows input order.  Counts are derived from the outcomes
    so they can never disagree with them.
    """

    outcomes: list[ItemOutcome] = field(default_factory=list)
    duration_seconds: float = 0.0
    label: str = "items"

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def succeeded(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.success)

    @property
    def failed(self) -> int:
        return self.total - self.succeeded

    @property
    def success(self) -> bool:
        """``True`` when no item failed."""
        return self.failed == 0

    @property
    def failed_outcomes(self) -> list[ItemOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.success]

    @property
    def message(self) -> str:
        return (
            f"Processed {self.total} {self.label}: "
            f"{self.succeeded} successful, {self.failed} failed"
        )

    def as_report(self) -> dict:
        """
        Operation report in the shape the pipeline endpoints return.

        Returns:
            Dict with keys ``success``, ``message``, ``successful_updates``,
            ``failed_updates``.
        """
        return {
            "success": self.success,
            "message": self.message,
            "successful_updates": self.succeeded,
            "failed_updates": self.failed,
        }

    def to_frame(self) -> pd.DataFrame:
        """One row per item: position, item_id, success, error, error_type."""
        return pd.DataFrame(
            [
                {
                    "position": position,
                    "item_id": outcome.item_id,
                    "success": outcome.success,
                    "error": outcome.error,
                    "error_type": outcome.error_type,
                }
                for position, outcome in enumerate(self.outcomes, start=1)
            ],
            columns=["position", "item_id", "success", "error", "error_type"],
        )


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

def partition(items: Sequence[Any], group_size: int) -> list[list[Any]]:
    """Split ``items`` into consecutive groups of at most ``group_size``."""
    if group_size < 1:
        raise ValueError(f"group_size must be >= 1, got {group_size}")
    return [list(items[i:i + group_size]) for i in range(0, len(items), group_size)]


class BatchOrchestrator:
    """
    Runs one batch: ``PENDING → RUNNING (group i of N) → COMPLETED``.

    An instance runs once.  There is no resumption; a failed run is restarted
    from the beginning by the caller.
    """

    def __init__(
        self,
        processor: Callable[[Any], Any],
        group_size: int = DEFAULT_GROUP_SIZE,
        inter_group_delay: float = DEFAULT_INTER_GROUP_DELAY_SECONDS,
        *,
        item_key: Callable[[Any], str] = str,
        label: str = "items",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if group_size < 1:
            raise ValueError(f"group_size must be >= 1, got {group_size}")
        if inter_group_delay < 0:
            raise ValueError(f"inter_group_delay must be >= 0, got {inter_group_delay}")

        self.processor = processor
        self.group_size = group_size
        self.inter_group_delay = inter_group_delay
        self.item_key = item_key
        self.label = label
        self._sleep = sleep

        self.state = BatchState.PENDING
        self.current_group = 0
        self.group_count = 0

    def _identify(self, item: Any) -> str:
        try:
            return str(self.item_key(item))
        except Exception:
            return repr(item)

    async def _run_item(self, item: Any) -> ItemOutcome:
        """Run the processor for one item, capturing any failure as an outcome."""
        item_id = self._identify(item)
        try:
            result = self.processor(item)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            logger.warning("Item %s failed: %s", item_id, exc)
            return ItemOutcome(
                item_id=item_id,
                success=False,
                error=str(exc) or type(exc).__name__,
                error_type=type(exc).__name__,
                item=item,
            )
        return ItemOutcome(item_id=item_id, success=True, result=result, item=item)

    async def run(self, items: Iterable[Any]) -> BatchSummary:
        """
        Process every item and return the summary.

        Args:
            items: Work items, in the order outcomes should be reported.

        Returns:
            :class:`BatchSummary` with one outcome per input item.

        Raises:
            RuntimeError: The orchestrator has already been run.
        """
        if self.state is not BatchState.PENDING:
            raise RuntimeError(f"Batch orchestrator already {self.state.value}")

        items = list(items)
        groups = partition(items, self.group_size)
        self.group_count = len(groups)
        self.state = BatchState.RUNNING
        start = time.monotonic()
        outcomes: list[ItemOutcome] = []

        logger.info(
            "Starting batch: %d %s in %d groups of up to %d",
            len(items), self.label, len(groups), self.group_size,
        )

        first = 1
        for index, group in enumerate(groups, start=1):
            self.current_group = index
            logger.info(
                "Processing group %d/%d (%s %d-%d)",
                index, len(groups), self.label, first, first + len(group) - 1,
            )
            # gather schedules every item before any is awaited
            group_outcomes = await asyncio.gather(*(self._run_item(item) for item in group))
            outcomes.extend(group_outcomes)
            first += len(group)

            if index < len(groups) and self.inter_group_delay > 0:
                await self._sleep(self.inter_group_delay)

        summary = BatchSummary(
            outcomes=outcomes,
            duration_seconds=round(time.monotonic() - start, 3),
            label=self.label,
        )
        self.state = BatchState.COMPLETED
        logger.info(summary.message)
        return summary


async def run_batch(
    items: Iterable[Any],
    processor: Callable[[Any], Any],
    group_size: int = DEFAULT_GROUP_SIZE,
    inter_group_delay: float = DEFAULT_INTER_GROUP_DELAY_SECONDS,
    *,
    item_key: Callable[[Any], str] = str,
    label: str = "items",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> BatchSummary:
    """
    Process ``items`` in sequential groups of concurrent ``processor`` calls.

    Args:
        items: Work items.
        processor: Per-item action, ``async`` or plain; typically built on
                   :func:`retry.execute`.
        group_size: Maximum items in flight at once.
        inter_group_delay: Seconds to wait between groups (not after the last).
        item_key: Maps an item to the identity recorded in its outcome.
        label: Noun used in log messages and the summary message.
        sleep: Awaitable sleep used for the inter-group delay.

    Returns:
        :class:`BatchSummary` with outcomes in input order.
    """
    orchestrator = BatchOrchestrator(
        processor,
        group_size,
        inter_group_delay,
        item_key=item_key,
        label=label,
        sleep=sleep,
    )
    return await orchestrator.run(items)


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------

def print_batch_summary(summary: BatchSummary) -> None:
    """Print the end-of-batch banner for operators."""
    sep = "=" * 60
    print(f"\n{sep}")
    print("BATCH COMPLETE")
    print(f"  Attempted: {summary.total:,}")
    print(f"  Succeeded: {summary.succeeded:,}")
    print(f"  Failed:    {summary.failed:,}")
    print(f"  Duration:  {summary.duration_seconds / 60:.1f} min")
    print(f"{sep}\n")


def export_outcome_report(
    summary: BatchSummary,
    path: Path = OUTCOME_REPORT_PATH,
) -> Path:
    """
    Write the per-item outcome table to CSV.

    Args:
        summary: Batch summary to export.
        path: Destination CSV path; parent directories are created.

    Returns:
        The path written.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    summary.to_frame().to_csv(path, index=False)
    logger.info("Outcome report (%d rows) written to %s", summary.total, path)
    return path


# ---------------------------------------------------------------------------
# Failed-item log
# ---------------------------------------------------------------------------

def log_failed_outcomes(
    summary: BatchSummary,
    log_path: Path = FAILED_ITEMS_LOG,
) -> int:
    """
    Append one JSONL record per failed item.

    Records are appended (not overwritten) so the log accumulates across
    runs.  The log is an audit trail for manual review; runs are not resumed
    from it.

    Args:
        summary: Batch summary whose failures should be recorded.
        log_path: Path to the JSONL log file.

    Returns:
        Number of records written.
    """
    failures = summary.failed_outcomes
    if not failures:
        return 0

    log_path.parent.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().isoformat()
    with log_path.open("a", encoding="utf-8") as fh:
        for outcome in failures:
            record = {
                "label": summary.label,
                "item_id": outcome.item_id,
                "error": outcome.error,
                "error_type": outcome.error_type,
                "timestamp": timestamp,
            }
            fh.write(json.dumps(record) + "\n")

    logger.info("Logged %d failed %s to %s", len(failures), summary.label, log_path)
    return len(failures)


def load_failed_outcomes(log_path: Path = FAILED_ITEMS_LOG) -> list[dict]:
    """
    Load failed-item records from the JSONL log.

    Returns:
        List of record dicts (empty list if the file does not exist).
    """
    if not log_path.exists():
        logger.info("No failed items log found at %s", log_path)
        return []

    records: list[dict] = []
    with log_path.open("r", encoding="utf-8") as fh:
        for line in fh:
            line = line.strip()
            if line:
                records.append(json.loads(line))
    return records


def clear_failed_outcomes_log(log_path: Path = FAILED_ITEMS_LOG) -> None:
    """Delete the failed-items log once its entries have been reviewed."""
    if log_path.exists():
        log_path.unlink()
        logger.info("Cleared failed items log: %s", log_path)
