from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from ..targets import Mode


@dataclass(slots=True)
class ToolInvocation:
    """Normalized request sent to an execution engine.

    `working_dir` is the unpacked package root; `scratch_dir` is the disposable
    attempt directory that also holds cargo's home and target directories.

    Example:
        ```python
        req = ToolInvocation(Mode.BUILD, Path("/tmp/a/src/pkg-1.0.0"), Path("/tmp/a"), timeout_seconds=60)
        ```
    """

    mode: Mode
    working_dir: Path
    scratch_dir: Path
    timeout_seconds: int
    memory_limit_mb: int = 0
    cpu_limit_seconds: int = 0
    file_size_limit_mb: int = 0
    max_output_bytes: int = 512 * 1024
    release: bool = False
    network: bool = True
    env: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class ToolOutcome:
    """Normalized response returned by an execution engine.

    `returncode` is negative when the process was killed by a signal, following
    the subprocess convention. `error` is set when the engine itself failed and
    the tool may never have run.

    Example:
        ```python
        out = ToolOutcome(returncode=0, output="Finished", timed_out=False, elapsed=3.2)
        ```
    """

    returncode: int
    output: str
    timed_out: bool
    elapsed: float
    error: str | None = None
    truncated_bytes: int = 0

    @property
    def signal(self) -> int | None:
        """Return the terminating signal number, if any.

        Example:
            ```python
            assert ToolOutcome(-9, "", False, 1.0).signal == 9
            ```
        """
        if self.returncode < 0:
            return -self.returncode
        return None
