from __future__ import annotations

import threading
from pathlib import Path
from typing import Callable, Iterable, Iterator

from .errors import DuplicateResultError, InvalidSpecifierError, StoreError, SystemicFailure
from .execution.engine import ExecutionEngine
from .fetch import Fetcher
from .logging import get_logger
from .policy import HarnessPolicy
from .registry.client import RegistryClient
from .resolver import SkippedTarget, TargetResolver
from .results import ExecutionResult, RunSummary, Skipped, result_key, utc_now
from .sandbox import ExecutionSandbox
from .scheduler import Scheduler
from .store import RESULTS_FILE, ResultStore
from .targets import Mode, Specifier, Target, parse_specifier

log = get_logger(__name__)

LOGS_DIR = "logs"
SCRATCH_DIR = "scratch"


def _normalize_specifiers(specifiers: Iterable[str | Specifier]) -> list[Specifier]:
    """Parse raw specifier strings, passing parsed ones through.

    Example:
        ```python
        specs = _normalize_specifiers(["serde", parse_specifier("rand=0.8.5")])
        ```
    """
    items = list(specifiers)
    if not items:
        raise InvalidSpecifierError("at least one package specifier is required")
    return [parse_specifier(item) if isinstance(item, str) else item for item in items]


def open_store(out_dir: Path | str) -> ResultStore:
    """Open the result store of an output directory.

    Example:
        ```python
        store = open_store("work")
        ```
    """
    try:
        return ResultStore(Path(out_dir) / RESULTS_FILE)
    except StoreError as exc:
        raise SystemicFailure(str(exc)) from exc


def run_batch(
    specifiers: Iterable[str | Specifier],
    *,
    mode: Mode,
    registry: RegistryClient,
    fetcher: Fetcher,
    engine: ExecutionEngine,
    policy: HarnessPolicy,
    out_dir: Path | str,
    force: bool = False,
    cancel_event: threading.Event | None = None,
    on_result: Callable[[ExecutionResult], None] | None = None,
) -> RunSummary:
    """Resolve specifiers, run every pending target and return the run summary.

    Specifiers are validated before any work starts. Settled resolution skips
    are recorded once; skips caused by registry errors are retried on the next
    run. Raises SystemicFailure when the store cannot be opened or when
    registry enumeration fails before any target was resolved.

    Example:
        ```python
        summary = run_batch(
            ["left_pad", "*"],
            mode=Mode.BUILD,
            registry=client,
            fetcher=fetcher,
            engine=LocalEngine(),
            policy=HarnessPolicy(),
            out_dir="work",
        )
        ```
    """
    specs = _normalize_specifiers(specifiers)
    out = Path(out_dir)
    store = open_store(out)
    try:
        if force:
            store.reset()
        summary = RunSummary(store_path=str(store.path))
        sandbox = ExecutionSandbox(
            fetcher,
            engine,
            policy,
            scratch_root=out / SCRATCH_DIR,
            log_dir=out / LOGS_DIR,
        )
        resolver = TargetResolver(registry, enumeration_retries=policy.enumeration_retries)
        scheduler = Scheduler(store, sandbox, policy, on_result=on_result)
        failures: list[SystemicFailure] = []
        log.info(
            "run_started",
            mode=mode.value,
            specifiers=[str(spec) for spec in specs],
            workers=policy.workers,
            store=str(store.path),
            force=force,
        )

        def worklist() -> Iterator[Target]:
            """Yield resolved targets, recording skips as they appear.

            Example:
                ```python
                report = scheduler.run(worklist(), mode)
                ```
            """
            try:
                for item in resolver.iter_resolve(specs):
                    if isinstance(item, SkippedTarget):
                        _record_skip(store, summary, item, mode, on_result)
                        continue
                    summary.resolved += 1
                    yield item
            except SystemicFailure as exc:
                log.error("enumeration_failed", error=str(exc))
                failures.append(exc)

        report = scheduler.run(worklist(), mode, cancel_event)
        summary.counts.update(report.counts)
        summary.resumed += report.resumed
        summary.breaker_tripped = report.breaker_tripped
        summary.cancelled = report.cancelled
        summary.fatal_error = report.fatal_error
        if failures:
            if summary.resolved == 0:
                raise failures[0]
            summary.fatal_error = summary.fatal_error or str(failures[0])
    finally:
        store.close()
    log.info(
        "run_finished",
        counts=dict(summary.counts),
        resolved=summary.resolved,
        resumed=summary.resumed,
        breaker_tripped=summary.breaker_tripped,
        cancelled=summary.cancelled,
        fatal_error=summary.fatal_error,
    )
    return summary


def _record_skip(
    store: ResultStore,
    summary: RunSummary,
    skipped: SkippedTarget,
    mode: Mode,
    on_result: Callable[[ExecutionResult], None] | None,
) -> None:
    """Commit a resolution skip unless a settled skip for the key is recorded.

    Transient skips are recorded on every run that hits them and never count
    as resumed.

    Example:
        ```python
        _record_skip(store, summary, SkippedTarget(Target("nope", Latest()), "not found"), Mode.BUILD, None)
        ```
    """
    name, version, _ = result_key(skipped.target, mode)
    if not skipped.transient and store.has_skip((name, version), mode):
        summary.resumed += 1
        return
    result = ExecutionResult(
        target=skipped.target,
        mode=mode,
        outcome=Skipped(reason=skipped.reason, transient=skipped.transient),
        started_at=utc_now(),
        duration=0.0,
    )
    try:
        store.append(result)
    except DuplicateResultError:
        log.warning("duplicate_skip_dropped", target=str(skipped.target), mode=mode.value)
        summary.resumed += 1
        return
    summary.record(result.outcome)
    if on_result is not None:
        on_result(result)
