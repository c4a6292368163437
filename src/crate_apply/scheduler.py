from __future__ import annotations

import queue
import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Iterable

from .errors import CircuitBreakerTripped, DuplicateResultError, StoreError
from .logging import bind_context, clear_context, get_logger
from .policy import HarnessPolicy
from .results import ABNORMAL_KINDS, ExecutionResult
from .sandbox import ExecutionSandbox
from .store import ResultStore
from .targets import Mode, Target

log = get_logger(__name__)

_PUT_POLL_SECONDS = 0.2


@dataclass(slots=True)
class ScheduleReport:
    """What the scheduler did with one worklist.

    Example:
        ```python
        report = scheduler.run(worklist, Mode.BUILD)
        print(report.counts["success"])
        ```
    """

    counts: Counter[str] = field(default_factory=Counter)
    resumed: int = 0
    dispatched: int = 0
    breaker_tripped: bool = False
    cancelled: bool = False
    fatal_error: str | None = None


class Scheduler:
    """Dispatch targets to a fixed pool of worker threads and commit results.

    Workers pull from a bounded queue fed lazily from the worklist, so a
    wildcard enumeration is never materialized up front.

    Example:
        ```python
        scheduler = Scheduler(store, sandbox, HarnessPolicy(workers=4))
        report = scheduler.run(targets, Mode.TEST)
        ```
    """

    def __init__(
        self,
        store: ResultStore,
        sandbox: ExecutionSandbox,
        policy: HarnessPolicy,
        *,
        on_result: Callable[[ExecutionResult], None] | None = None,
    ) -> None:
        """Bind collaborators; `on_result` is called after every commit.

        Example:
            ```python
            scheduler = Scheduler(store, sandbox, policy, on_result=print)
            ```
        """
        self._store = store
        self._sandbox = sandbox
        self._policy = policy
        self._on_result = on_result
        self._lock = threading.Lock()
        self._halt = threading.Event()
        self._consecutive_abnormal = 0
        self._report = ScheduleReport()

    def run(
        self,
        worklist: Iterable[Target],
        mode: Mode,
        cancel_event: threading.Event | None = None,
    ) -> ScheduleReport:
        """Run every pending target once and return the report.

        Targets already committed for `mode` are skipped and counted as
        resumed. Dispatch stops on cancellation, a tripped circuit breaker or a
        store failure; attempts already running are allowed to finish. An
        exception raised while feeding (such as KeyboardInterrupt) propagates at
        once, leaving running attempts to the daemon worker threads.

        Example:
            ```python
            report = scheduler.run(targets, Mode.BUILD, cancel_event=threading.Event())
            ```
        """
        cancel = cancel_event or threading.Event()
        self._halt.clear()
        self._consecutive_abnormal = 0
        self._report = ScheduleReport()
        work: queue.Queue[Target | None] = queue.Queue(maxsize=self._policy.workers * 2)
        threads = [
            threading.Thread(
                target=self._worker,
                args=(work, mode, cancel),
                name=f"crate-apply-worker-{index}",
                daemon=True,
            )
            for index in range(self._policy.workers)
        ]
        for thread in threads:
            thread.start()
        log.info("schedule_started", mode=mode.value, workers=len(threads))
        try:
            self._feed(work, worklist, mode, cancel)
        except BaseException:
            # Interrupted: stop intake without waiting on the queue or on running attempts.
            self._halt.set()
            _release(work, len(threads), block=False)
            raise
        _release(work, len(threads))
        for thread in threads:
            thread.join()
        self._report.cancelled = cancel.is_set()
        log.info(
            "schedule_finished",
            dispatched=self._report.dispatched,
            resumed=self._report.resumed,
            breaker_tripped=self._report.breaker_tripped,
            cancelled=self._report.cancelled,
        )
        return self._report

    def _feed(
        self,
        work: queue.Queue[Target | None],
        worklist: Iterable[Target],
        mode: Mode,
        cancel: threading.Event,
    ) -> None:
        """Push pending targets onto the queue until the worklist or intake ends.

        Example:
            ```python
            scheduler._feed(work, targets, Mode.BUILD, threading.Event())
            ```
        """
        claimed: set[tuple[str, str]] = set()
        try:
            for target in worklist:
                if self._stopped(cancel):
                    return
                if not target.is_resolved:
                    log.warning("unresolved_target_ignored", target=str(target))
                    continue
                key = target.key
                if key in claimed:
                    continue
                claimed.add(key)
                if self._store.has(key, mode):
                    with self._lock:
                        self._report.resumed += 1
                    log.debug("target_resumed", target=str(target), mode=mode.value)
                    continue
                while True:
                    if self._stopped(cancel):
                        return
                    try:
                        work.put(target, timeout=_PUT_POLL_SECONDS)
                        break
                    except queue.Full:
                        continue
                with self._lock:
                    self._report.dispatched += 1
        except StoreError as exc:
            self._fatal(str(exc))

    def _worker(self, work: queue.Queue[Target | None], mode: Mode, cancel: threading.Event) -> None:
        """Execute queued targets until a None stop marker arrives.

        Log lines emitted during an attempt carry the run mode, worker and target.

        Example:
            ```python
            threading.Thread(target=scheduler._worker, args=(work, Mode.BUILD, cancel)).start()
            ```
        """
        bind_context(run_mode=mode.value, worker=threading.current_thread().name)
        try:
            while True:
                target = work.get()
                if target is None:
                    return
                if self._stopped(cancel):
                    continue
                bind_context(target=str(target))
                try:
                    self._attempt(target, mode)
                except Exception as exc:
                    log.exception("worker_error", target=str(target))
                    self._fatal(f"worker error on {target}: {exc!r}")
        finally:
            clear_context()

    def _attempt(self, target: Target, mode: Mode) -> None:
        """Execute one target, commit its result and update the breaker.

        Example:
            ```python
            scheduler._attempt(Target("a", Latest(), "1.0"), Mode.BUILD)
            ```
        """
        log.info("target_started", target=str(target), mode=mode.value)
        result = self._sandbox.execute(target, mode)
        try:
            self._store.append(result)
        except DuplicateResultError as exc:
            log.warning("duplicate_result_dropped", target=str(target), error=str(exc))
            return
        except StoreError as exc:
            log.error("store_append_failed", target=str(target), error=str(exc))
            self._fatal(str(exc))
            return
        kind = result.outcome.kind
        log.info(
            "target_finished",
            target=str(target),
            mode=mode.value,
            outcome=kind,
            duration=round(result.duration, 3),
        )
        with self._lock:
            self._report.counts[kind] += 1
            if kind in ABNORMAL_KINDS:
                self._consecutive_abnormal += 1
            else:
                self._consecutive_abnormal = 0
            threshold = self._policy.breaker_threshold
            tripped = (
                threshold > 0
                and self._consecutive_abnormal >= threshold
                and not self._report.breaker_tripped
            )
            if tripped:
                error = CircuitBreakerTripped(
                    f"{threshold} consecutive crashed or timed out attempts, last was {target}"
                )
                self._report.breaker_tripped = True
                if self._report.fatal_error is None:
                    self._report.fatal_error = str(error)
                self._halt.set()
        if tripped:
            log.error("breaker_tripped", consecutive=threshold, last_target=str(target), error=str(error))
        if self._on_result is not None:
            self._on_result(result)

    def _fatal(self, message: str) -> None:
        """Record the first fatal error and stop intake.

        Example:
            ```python
            scheduler._fatal("disk full")
            ```
        """
        with self._lock:
            if self._report.fatal_error is None:
                self._report.fatal_error = message
        self._halt.set()

    def _stopped(self, cancel: threading.Event) -> bool:
        """Return True when no further targets may be dispatched.

        Example:
            ```python
            if scheduler._stopped(cancel):
                return
            ```
        """
        return self._halt.is_set() or cancel.is_set()


def _release(work: queue.Queue[Target | None], count: int, *, block: bool = True) -> None:
    """Queue one None stop marker per worker.

    Without `block`, markers that do not fit are dropped; halted workers then
    idle until the interpreter exits.

    Example:
        ```python
        _release(work, 4)
        ```
    """
    for _ in range(count):
        if block:
            work.put(None)
            continue
        try:
            work.put_nowait(None)
        except queue.Full:
            return
