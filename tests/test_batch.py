"""
Tests for batch orchestration and outcome reporting.

Covers:
  - Completeness: one outcome per item, in input order
  - Isolation: a failing item never aborts the batch
  - Concurrency cap and sequential groups
  - Inter-group delay between groups only
  - Run-once state machine
  - Summary message, report dict, CSV export and failed-item log
"""

from __future__ import annotations

import asyncio

import pandas as pd
import pytest

from esg_collector.batch import (
    BatchOrchestrator,
    BatchState,
    BatchSummary,
    ItemOutcome,
    clear_failed_outcomes_log,
    export_outcome_report,
    load_failed_outcomes,
    log_failed_outcomes,
    partition,
    print_batch_summary,
    run_batch,
)
from esg_collector.retry import QuotaExhaustedExit


async def _double(item):
    await asyncio.sleep(0)
    return item * 2


def _summary_with_failures() -> BatchSummary:
    return BatchSummary(
        outcomes=[
            ItemOutcome("Acme", True, result={"scope1": 10}),
            ItemOutcome("Globex", False, error="503 Error", error_type="HTTPError"),
            ItemOutcome("Initech", False, error="TIMEOUT", error_type="CallTimeoutError"),
        ],
        duration_seconds=12.0,
        label="companies",
    )


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

class TestRunBatch:

    def test_every_item_has_one_outcome_in_order(self, recording_sleep):
        items = list(range(25))
        summary = asyncio.run(run_batch(items, _double, group_size=10, sleep=recording_sleep))

        assert summary.total == 25
        assert summary.succeeded == 25
        assert [o.result for o in summary.outcomes] == [i * 2 for i in items]
        assert [o.item_id for o in summary.outcomes] == [str(i) for i in items]

    def test_failure_is_isolated(self, recording_sleep):
        def process(item):
            if item == 3:
                raise ValueError("bad item 3")
            return item

        summary = asyncio.run(run_batch(range(6), process, group_size=4, sleep=recording_sleep))

        assert summary.succeeded == 5
        assert summary.failed == 1
        failed = summary.failed_outcomes[0]
        assert failed.item_id == "3"
        assert failed.error == "bad item 3"
        assert failed.error_type == "ValueError"
        assert summary.succeeded + summary.failed == summary.total

    def test_error_without_message_uses_type_name(self, recording_sleep):
        async def process(item):
            raise RuntimeError()

        summary = asyncio.run(run_batch(["a"], process, sleep=recording_sleep))
        assert summary.outcomes[0].error == "RuntimeError"

    def test_five_companies_two_failures(self, recording_sleep):
        async def process(name):
            if name in {"B", "D"}:
                raise RuntimeError(f"{name} failed")
            return name.lower()

        summary = asyncio.run(run_batch(
            ["A", "B", "C", "D", "E"], process,
            group_size=2, inter_group_delay=1.0, label="companies", sleep=recording_sleep,
        ))

        assert summary.message == "Processed 5 companies: 3 successful, 2 failed"
        assert summary.as_report() == {
            "success": False,
            "message": "Processed 5 companies: 3 successful, 2 failed",
            "successful_updates": 3,
            "failed_updates": 2,
        }
        assert recording_sleep.delays == [1.0, 1.0]

    def test_empty_batch(self, recording_sleep):
        summary = asyncio.run(run_batch([], _double, sleep=recording_sleep))

        assert summary.total == 0
        assert summary.success is True
        assert recording_sleep.delays == []

    def test_item_key_names_outcomes(self, recording_sleep):
        companies = [{"name": "Acme"}, {"name": "Globex"}]
        summary = asyncio.run(run_batch(
            companies, lambda c: c["name"], item_key=lambda c: c["name"], sleep=recording_sleep,
        ))
        assert [o.item_id for o in summary.outcomes] == ["Acme", "Globex"]
        assert summary.outcomes[0].item == {"name": "Acme"}

    def test_quota_exit_stops_the_batch(self, recording_sleep):
        async def process(item):
            raise QuotaExhaustedExit(RuntimeError("Quota exceeded"))

        with pytest.raises(SystemExit):
            asyncio.run(run_batch([1, 2], process, sleep=recording_sleep))


class TestGrouping:

    def test_concurrency_capped_at_group_size(self, recording_sleep):
        in_flight = 0
        peak = 0

        async def process(item):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0)
            in_flight -= 1

        asyncio.run(run_batch(range(10), process, group_size=3, sleep=recording_sleep))
        assert peak == 3

    def test_groups_run_sequentially(self, recording_sleep):
        events = []

        async def process(item):
            events.append(("start", item))
            await asyncio.sleep(0)
            events.append(("end", item))

        asyncio.run(run_batch(range(4), process, group_size=2, sleep=recording_sleep))

        last_end_group_1 = max(events.index(("end", i)) for i in (0, 1))
        first_start_group_2 = min(events.index(("start", i)) for i in (2, 3))
        assert last_end_group_1 < first_start_group_2

    def test_delay_only_between_groups(self, recording_sleep):
        asyncio.run(run_batch(range(5), _double, group_size=2, inter_group_delay=0.5, sleep=recording_sleep))
        assert recording_sleep.delays == [0.5, 0.5]

    def test_zero_delay_skips_sleep(self, recording_sleep):
        asyncio.run(run_batch(range(5), _double, group_size=2, inter_group_delay=0.0, sleep=recording_sleep))
        assert recording_sleep.delays == []

    def test_partition(self):
        assert partition([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]
        assert partition([], 3) == []


class TestOrchestratorState:

    def test_state_transitions(self, recording_sleep):
        orchestrator = BatchOrchestrator(_double, group_size=2, sleep=recording_sleep)
        assert orchestrator.state is BatchState.PENDING

        asyncio.run(orchestrator.run(range(5)))

        assert orchestrator.state is BatchState.COMPLETED
        assert orchestrator.group_count == 3
        assert orchestrator.current_group == 3

    def test_runs_only_once(self, recording_sleep):
        orchestrator = BatchOrchestrator(_double, sleep=recording_sleep)
        asyncio.run(orchestrator.run([1]))

        with pytest.raises(RuntimeError, match="already completed"):
            asyncio.run(orchestrator.run([1]))

    @pytest.mark.parametrize("kwargs", [{"group_size": 0}, {"inter_group_delay": -1}])
    def test_invalid_arguments(self, kwargs):
        with pytest.raises(ValueError):
            BatchOrchestrator(_double, **kwargs)


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------

class TestReporting:

    def test_print_batch_summary(self, capsys):
        print_batch_summary(_summary_with_failures())
        out = capsys.readouterr().out

        assert "BATCH COMPLETE" in out
        assert "Succeeded: 1" in out
        assert "Failed:    2" in out

    def test_export_outcome_report(self, tmp_path):
        path = export_outcome_report(_summary_with_failures(), tmp_path / "reports" / "outcomes.csv")
        df = pd.read_csv(path)

        assert list(df.columns) == ["position", "item_id", "success", "error", "error_type"]
        assert list(df["item_id"]) == ["Acme", "Globex", "Initech"]
        assert list(df["success"]) == [True, False, False]

    def test_failed_log_appends_across_runs(self, tmp_path):
        log_path = tmp_path / "failed.jsonl"

        assert log_failed_outcomes(_summary_with_failures(), log_path) == 2
        assert log_failed_outcomes(_summary_with_failures(), log_path) == 2

        records = load_failed_outcomes(log_path)
        assert len(records) == 4
        assert records[0]["item_id"] == "Globex"
        assert records[0]["label"] == "companies"
        assert records[1]["error_type"] == "CallTimeoutError"

    def test_no_failures_writes_nothing(self, tmp_path):
        log_path = tmp_path / "failed.jsonl"
        summary = BatchSummary(outcomes=[ItemOutcome("Acme", True)])

        assert log_failed_outcomes(summary, log_path) == 0
        assert not log_path.exists()

    def test_load_missing_log(self, tmp_path):
        assert load_failed_outcomes(tmp_path / "missing.jsonl") == []

    def test_clear_log(self, tmp_path):
        log_path = tmp_path / "failed.jsonl"
        log_failed_outcomes(_summary_with_failures(), log_path)

        clear_failed_outcomes_log(log_path)
        assert not log_path.exists()
