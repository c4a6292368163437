import json
from datetime import datetime, timezone

import pytest

from crate_apply.results import (
    Crashed,
    ExecutionResult,
    Failure,
    FetchFailed,
    RunSummary,
    Skipped,
    Success,
    Timeout,
    outcome_from_dict,
    outcome_to_dict,
    result_key,
)
from crate_apply.targets import Exact, Latest, Mode, Target

STARTED = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def test_outcome_dict_is_tagged_by_kind() -> None:
    assert outcome_to_dict(Failure(duration=2.5, exit_info="exit code 101")) == {
        "kind": "failure",
        "duration": 2.5,
        "exit_info": "exit code 101",
    }
    assert outcome_to_dict(Crashed(signal_or_code=-11, reason="killed by SIGSEGV"))["kind"] == "crashed"
    assert outcome_to_dict(FetchFailed(reason="404"))["kind"] == "fetch_error"


def test_outcome_from_dict_rejects_unknown_kind() -> None:
    with pytest.raises(ValueError, match="Unknown outcome kind"):
        outcome_from_dict({"kind": "exploded"})


def test_execution_result_survives_json() -> None:
    result = ExecutionResult(
        target=Target("left_pad", Exact("1.0.0"), "1.0.0"),
        mode=Mode.TEST,
        outcome=Timeout(elapsed=900.1),
        started_at=STARTED,
        duration=900.1,
        log_excerpt="running 3 tests",
        fetch_seconds=0.25,
        log_path="work/logs/left_pad-1.0.0.test.log",
    )
    restored = ExecutionResult.from_dict(json.loads(json.dumps(result.to_dict())))
    assert restored == result


def test_serialized_result_records_requested_and_resolved_version() -> None:
    result = ExecutionResult(Target("serde", Latest(), "1.0.200"), Mode.BUILD, Success(1.0), STARTED, 1.0)
    payload = result.to_dict()
    assert payload["requested_version"] is None
    assert payload["version"] == "1.0.200"
    assert payload["mode"] == "build"
    assert payload["started_at"] == "2024-05-01T12:00:00+00:00"


def test_result_key_for_unresolved_targets() -> None:
    assert result_key(Target("nope", Latest()), Mode.BUILD) == ("nope", "", "build")
    assert result_key(Target("serde", Exact("9.9.9")), Mode.TEST) == ("serde", "9.9.9", "test")
    assert result_key(Target("serde", Latest(), "1.0.0"), Mode.BENCH) == ("serde", "1.0.0", "bench")


def test_run_summary_counts_and_exit_codes() -> None:
    summary = RunSummary(store_path="work/results.jsonl", resolved=2)
    summary.record(Success(1.0))
    summary.record(Skipped("gone"))
    assert summary.attempted == 2
    assert summary.counts["success"] == 1
    assert summary.exit_code() == 0

    summary.cancelled = True
    assert summary.exit_code() == 130

    summary.breaker_tripped = True
    assert summary.exit_code() == 1


def test_run_summary_exit_code_when_nothing_resolved() -> None:
    assert RunSummary(store_path="x", resolved=0).exit_code() == 1
    assert RunSummary(store_path="x", resolved=1, fatal_error="disk full").exit_code() == 1
