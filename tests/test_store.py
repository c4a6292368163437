import json
import threading
from datetime import datetime, timezone
from pathlib import Path

import pytest

from crate_apply.errors import DuplicateResultError, StoreError
from crate_apply.results import ExecutionResult, Failure, Skipped, Success
from crate_apply.store import ResultStore, iter_results
from crate_apply.targets import Exact, Latest, Mode, Target

STARTED = datetime(2024, 5, 1, tzinfo=timezone.utc)


def _result(name: str, version: str = "1.0.0", mode: Mode = Mode.BUILD, outcome=None) -> ExecutionResult:
    return ExecutionResult(
        target=Target(name, Latest(), version),
        mode=mode,
        outcome=outcome or Success(duration=1.0),
        started_at=STARTED,
        duration=1.0,
    )


def test_append_then_has(tmp_path: Path) -> None:
    store = ResultStore(tmp_path / "results.jsonl")
    assert not store.has(("a", "1.0.0"), Mode.BUILD)
    store.append(_result("a"))
    assert store.has(("a", "1.0.0"), Mode.BUILD)
    assert not store.has(("a", "1.0.0"), Mode.TEST)
    assert len(store) == 1


def test_each_record_is_one_json_line(tmp_path: Path) -> None:
    path = tmp_path / "results.jsonl"
    store = ResultStore(path)
    store.append(_result("a"))
    store.append(_result("b", outcome=Failure(duration=2.0, exit_info="exit code 101")))
    lines = path.read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["name"] for line in lines] == ["a", "b"]


def test_duplicate_key_is_rejected(tmp_path: Path) -> None:
    store = ResultStore(tmp_path / "results.jsonl")
    store.append(_result("a"))
    with pytest.raises(DuplicateResultError):
        store.append(_result("a", outcome=Failure(duration=1.0, exit_info="exit code 1")))
    store.append(_result("a", mode=Mode.TEST))
    assert store.counts() == {"success": 2}


def test_reopen_keeps_committed_keys(tmp_path: Path) -> None:
    path = tmp_path / "results.jsonl"
    with ResultStore(path) as store:
        store.append(_result("a"))
    reopened = ResultStore(path)
    assert reopened.has(("a", "1.0.0"), Mode.BUILD)
    with pytest.raises(DuplicateResultError):
        reopened.append(_result("a"))


def test_torn_trailing_record_is_truncated(tmp_path: Path) -> None:
    path = tmp_path / "results.jsonl"
    with ResultStore(path) as store:
        store.append(_result("a"))
        store.append(_result("b"))
    intact = path.read_bytes()
    with path.open("ab") as fh:
        fh.write(b'{"name": "c", "version": "1.0')

    store = ResultStore(path)
    assert path.read_bytes() == intact
    assert [result.target.name for result in store.iterate()] == ["a", "b"]
    store.append(_result("c"))
    assert [result.target.name for result in store.iterate()] == ["a", "b", "c"]


def test_torn_only_record_leaves_empty_store(tmp_path: Path) -> None:
    path = tmp_path / "results.jsonl"
    path.write_bytes(b'{"name": "a"')
    store = ResultStore(path)
    assert path.read_bytes() == b""
    assert len(store) == 0


def test_undecodable_lines_are_skipped(tmp_path: Path) -> None:
    path = tmp_path / "results.jsonl"
    with ResultStore(path) as store:
        store.append(_result("a"))
    with path.open("ab") as fh:
        fh.write(b"not json\n")
    with ResultStore(path) as store:
        store.append(_result("b"))
        assert [result.target.name for result in store.iterate()] == ["a", "b"]


def test_reset_archives_and_starts_empty(tmp_path: Path) -> None:
    path = tmp_path / "results.jsonl"
    store = ResultStore(path)
    store.append(_result("a"))
    archived = store.reset()
    assert archived is not None
    assert archived.parent == tmp_path
    assert archived.name.startswith("results.") and archived.name.endswith(".jsonl")
    assert [result.target.name for result in iter_results(archived)] == ["a"]
    assert not store.has(("a", "1.0.0"), Mode.BUILD)
    store.append(_result("a"))
    assert len(list(store.iterate())) == 1


def test_reset_of_empty_store_archives_nothing(tmp_path: Path) -> None:
    store = ResultStore(tmp_path / "results.jsonl")
    assert store.reset() is None


def test_skip_records_use_empty_version(tmp_path: Path) -> None:
    store = ResultStore(tmp_path / "results.jsonl")
    skipped = ExecutionResult(Target("nope", Latest()), Mode.BUILD, Skipped("not found"), STARTED, 0.0)
    store.append(skipped)
    assert store.has_skip(("nope", ""), Mode.BUILD)
    assert not store.has(("nope", ""), Mode.BUILD)


def test_skip_does_not_shadow_attempt_result(tmp_path: Path) -> None:
    path = tmp_path / "results.jsonl"
    store = ResultStore(path)
    pinned = Target("foo", Exact("1.0.0"))
    store.append(ExecutionResult(pinned, Mode.BUILD, Skipped("registry error: 503", transient=True), STARTED, 0.0))
    assert not store.has(("foo", "1.0.0"), Mode.BUILD)

    store.append(_result("foo"))
    assert store.has(("foo", "1.0.0"), Mode.BUILD)
    store.close()

    reopened = ResultStore(path)
    assert reopened.has(("foo", "1.0.0"), Mode.BUILD)
    assert not reopened.has_skip(("foo", "1.0.0"), Mode.BUILD)
    assert [r.outcome.kind for r in reopened.iterate()] == ["skipped", "success"]


def test_transient_skips_may_repeat_but_settled_skips_may_not(tmp_path: Path) -> None:
    store = ResultStore(tmp_path / "results.jsonl")
    pinned = Target("foo", Exact("1.0.0"))
    for _ in range(2):
        store.append(ExecutionResult(pinned, Mode.BUILD, Skipped("registry error", transient=True), STARTED, 0.0))
    assert not store.has_skip(("foo", "1.0.0"), Mode.BUILD)

    settled = ExecutionResult(pinned, Mode.BUILD, Skipped("could not find `foo` version 1.0.0"), STARTED, 0.0)
    store.append(settled)
    with pytest.raises(DuplicateResultError):
        store.append(settled)


def test_concurrent_appends_are_all_committed(tmp_path: Path) -> None:
    path = tmp_path / "results.jsonl"
    store = ResultStore(path)

    def _writer(prefix: str) -> None:
        for index in range(25):
            store.append(_result(f"{prefix}{index}"))

    threads = [threading.Thread(target=_writer, args=(prefix,)) for prefix in "abcd"]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 100
    assert all(json.loads(line)["outcome"]["kind"] == "success" for line in lines)


def test_append_after_close_fails(tmp_path: Path) -> None:
    store = ResultStore(tmp_path / "results.jsonl")
    store.close()
    with pytest.raises(StoreError):
        store.append(_result("a"))


def test_unopenable_store_raises_store_error(tmp_path: Path) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("x", encoding="utf-8")
    with pytest.raises(StoreError):
        ResultStore(blocker / "results.jsonl")
