from __future__ import annotations

import re
import shutil
import signal
import tempfile
import time
from datetime import datetime
from pathlib import Path

from .errors import FetchError
from .execution.engine import ExecutionEngine
from .execution.process import tail_excerpt
from .execution.types import ToolInvocation, ToolOutcome
from .fetch import Fetcher
from .logging import get_logger
from .policy import HarnessPolicy
from .results import (
    Crashed,
    ExecutionResult,
    Failure,
    FetchFailed,
    Outcome,
    Success,
    Timeout,
    utc_now,
)
from .targets import Mode, Target

log = get_logger(__name__)

# Code recorded when the harness itself failed during an attempt.
INTERNAL_ERROR_CODE = 70
# How cargo reports a compiler or test binary killed by the CPU limit.
_CHILD_CPU_LIMIT = re.compile(r"\(signal: \d+, SIGXCPU")


def classify(tool: ToolOutcome) -> Outcome:
    """Map a raw engine outcome onto the closed set of outcome variants.

    CPU-limit kills (SIGXCPU) count as timeouts, including a failing exit whose
    output shows cargo reporting a child killed that way. Any other signal or
    an engine-level error is a crash.

    Example:
        ```python
        outcome = classify(ToolOutcome(returncode=101, output="", timed_out=False, elapsed=2.0))
        ```
    """
    if tool.timed_out:
        return Timeout(elapsed=tool.elapsed)
    if tool.error is not None:
        return Crashed(signal_or_code=tool.returncode, reason=tool.error)
    signum = tool.signal
    if signum is not None:
        if signum == signal.SIGXCPU:
            return Timeout(elapsed=tool.elapsed)
        return Crashed(signal_or_code=-signum, reason=f"killed by {_signal_name(signum)}")
    if tool.returncode == 0:
        return Success(duration=tool.elapsed)
    if _CHILD_CPU_LIMIT.search(tool.output):
        return Timeout(elapsed=tool.elapsed)
    return Failure(duration=tool.elapsed, exit_info=f"exit code {tool.returncode}")


def _signal_name(signum: int) -> str:
    """Return the symbolic name of a signal number.

    Example:
        ```python
        assert _signal_name(9) == "SIGKILL"
        ```
    """
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"signal {signum}"


class ExecutionSandbox:
    """Run one target in a fresh disposable directory and classify the result.

    `execute` never raises: every failure becomes an outcome.

    Example:
        ```python
        sandbox = ExecutionSandbox(fetcher, LocalEngine(), HarnessPolicy())
        result = sandbox.execute(target, Mode.BUILD)
        ```
    """

    def __init__(
        self,
        fetcher: Fetcher,
        engine: ExecutionEngine,
        policy: HarnessPolicy,
        *,
        scratch_root: Path | None = None,
        log_dir: Path | None = None,
    ) -> None:
        """Bind collaborators; `log_dir` enables per-attempt log files.

        Example:
            ```python
            sandbox = ExecutionSandbox(fetcher, engine, policy, scratch_root=Path("work/scratch"))
            ```
        """
        self._fetcher = fetcher
        self._engine = engine
        self._policy = policy
        self._scratch_root = scratch_root
        self._log_dir = log_dir
        if scratch_root is not None:
            scratch_root.mkdir(parents=True, exist_ok=True)
        if log_dir is not None:
            log_dir.mkdir(parents=True, exist_ok=True)

    def execute(self, target: Target, mode: Mode) -> ExecutionResult:
        """Fetch, run and classify one target.

        Example:
            ```python
            result = sandbox.execute(Target("left_pad", Latest(), "1.0.0"), Mode.TEST)
            ```
        """
        started_at = utc_now()
        try:
            return self._execute(target, mode, started_at)
        except Exception as exc:
            log.exception("attempt_internal_error", target=str(target), mode=mode.value)
            return ExecutionResult(
                target=target,
                mode=mode,
                outcome=Crashed(signal_or_code=INTERNAL_ERROR_CODE, reason=f"internal error: {exc!r}"),
                started_at=started_at,
                duration=0.0,
            )

    def _execute(self, target: Target, mode: Mode, started_at: datetime) -> ExecutionResult:
        """Run one attempt inside its own temporary directory.

        Example:
            ```python
            result = sandbox._execute(target, Mode.BUILD, utc_now())
            ```
        """
        if target.resolved_version is None:
            raise ValueError(f"cannot execute unresolved target {target}")
        version = target.resolved_version
        workdir = Path(tempfile.mkdtemp(prefix=f"{target.name}-{version}-", dir=self._scratch_root))
        try:
            fetch_start = time.monotonic()
            try:
                root = self._fetcher.fetch(target.name, version, workdir)
            except FetchError as exc:
                fetch_seconds = time.monotonic() - fetch_start
                log.info("fetch_failed", target=str(target), error=str(exc))
                return ExecutionResult(
                    target=target,
                    mode=mode,
                    outcome=FetchFailed(reason=str(exc)),
                    started_at=started_at,
                    duration=0.0,
                    fetch_seconds=fetch_seconds,
                )
            fetch_seconds = time.monotonic() - fetch_start

            request = ToolInvocation(
                mode=mode,
                working_dir=root,
                scratch_dir=workdir,
                timeout_seconds=self._policy.timeout_seconds,
                memory_limit_mb=self._policy.memory_limit_mb,
                cpu_limit_seconds=self._policy.cpu_limit_seconds,
                file_size_limit_mb=self._policy.file_size_limit_mb,
                max_output_bytes=self._policy.max_output_bytes,
                release=self._policy.release,
                network=self._policy.network,
            )
            tool = self._engine.invoke(request)
            outcome = classify(tool)
            output = tool.output
            if tool.error:
                output = f"{output}\n[crate-apply] {tool.error}\n" if output else f"[crate-apply] {tool.error}\n"
            log_path = self._write_log(target, mode, outcome, output)
            return ExecutionResult(
                target=target,
                mode=mode,
                outcome=outcome,
                started_at=started_at,
                duration=tool.elapsed,
                log_excerpt=tail_excerpt(output, self._policy.max_excerpt_bytes),
                fetch_seconds=fetch_seconds,
                log_path=log_path,
            )
        finally:
            # Build artifacts may be read-only; the directory is disposable either way.
            shutil.rmtree(workdir, ignore_errors=True)

    def _write_log(self, target: Target, mode: Mode, outcome: Outcome, output: str) -> str | None:
        """Write the bounded tool output to `<log_dir>/<name>-<version>.<mode>.log`.

        Example:
            ```python
            path = sandbox._write_log(target, Mode.BUILD, Success(1.0), "Finished")
            ```
        """
        if self._log_dir is None:
            return None
        path = self._log_dir / f"{target}.{mode.value}.log"
        try:
            path.write_text(f"# {target} {mode.value}: {outcome.kind}\n{output}", encoding="utf-8")
        except OSError as exc:
            log.warning("log_write_failed", path=str(path), error=str(exc))
            return None
        return str(path)
