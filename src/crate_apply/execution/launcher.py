"""Apply resource ceilings to the current process, then exec the build tool.

Runs as `python -m crate_apply.execution.launcher [limits] -- cmd ...` so the
limits are set in a single-threaded child before the tool starts, and are
inherited by everything the tool spawns.
"""

from __future__ import annotations

import argparse
import os
import sys
from typing import Any, Sequence

_resource: Any
try:
    import resource as _resource_module  # POSIX only
    _resource = _resource_module
except ImportError:  # pragma: no cover - platform specific
    _resource = None

EXEC_FAILED_EXIT = 127
# The CPU hard limit sits above the soft one so the tool receives SIGXCPU first.
CPU_HARD_GRACE_SECONDS = 5


def limits_supported() -> bool:
    """Return True when POSIX rlimits can be applied on this platform.

    Example:
        ```python
        if limits_supported():
            ...
        ```
    """
    return _resource is not None


def _set_limit(name: str, value: int, hard: int | None = None) -> str | None:
    """Lower one rlimit to `value` (hard limit `hard`), never raising the current hard limit.

    Example:
        ```python
        error = _set_limit("RLIMIT_AS", 256 * 1024 * 1024)
        ```
    """
    if _resource is None:
        return "RLIMIT limits unavailable on this platform"
    limit_id = getattr(_resource, name, None)
    if limit_id is None:
        return f"{name} unavailable on this platform"
    try:
        _, current_hard = _resource.getrlimit(limit_id)
        wanted_hard = value if hard is None else max(value, hard)
        if current_hard in (-1, _resource.RLIM_INFINITY):
            target_hard = wanted_hard
        else:
            target_hard = min(wanted_hard, current_hard)
        target_soft = min(value, target_hard)
        _resource.setrlimit(limit_id, (target_soft, target_hard))
    except (ValueError, OSError) as exc:
        return f"{name} not applied: {exc}"
    return None


def set_limits(*, memory_limit_mb: int, cpu_limit_seconds: int, file_size_limit_mb: int) -> list[str]:
    """Apply every non-zero ceiling and return the ones that failed.

    Example:
        ```python
        errors = set_limits(memory_limit_mb=4096, cpu_limit_seconds=0, file_size_limit_mb=2048)
        ```
    """
    errors: list[str] = []
    if memory_limit_mb > 0:
        error = _set_limit("RLIMIT_AS", int(memory_limit_mb) * 1024 * 1024)
        if error:
            errors.append(error)
    if cpu_limit_seconds > 0:
        error = _set_limit("RLIMIT_CPU", int(cpu_limit_seconds), int(cpu_limit_seconds) + CPU_HARD_GRACE_SECONDS)
        if error:
            errors.append(error)
    if file_size_limit_mb > 0:
        error = _set_limit("RLIMIT_FSIZE", int(file_size_limit_mb) * 1024 * 1024)
        if error:
            errors.append(error)
    # No core files in scratch.
    _set_limit("RLIMIT_CORE", 0)
    return errors


def launcher_command(
    cmd: Sequence[str],
    *,
    memory_limit_mb: int,
    cpu_limit_seconds: int,
    file_size_limit_mb: int,
    python: str | None = None,
) -> list[str]:
    """Wrap a tool command so it starts under the given ceilings.

    Example:
        ```python
        argv = launcher_command(["cargo", "build"], memory_limit_mb=4096, cpu_limit_seconds=0, file_size_limit_mb=0)
        ```
    """
    return [
        python or sys.executable,
        "-m",
        "crate_apply.execution.launcher",
        "--memory-mb",
        str(memory_limit_mb),
        "--cpu-seconds",
        str(cpu_limit_seconds),
        "--fsize-mb",
        str(file_size_limit_mb),
        "--",
        *cmd,
    ]


def main(argv: Sequence[str] | None = None) -> int:
    """Parse limits, apply them, and replace this process with the tool.

    Example:
        ```python
        main(["--memory-mb", "256", "--", "cargo", "build"])
        ```
    """
    parser = argparse.ArgumentParser(prog="crate_apply.execution.launcher")
    parser.add_argument("--memory-mb", type=int, default=0)
    parser.add_argument("--cpu-seconds", type=int, default=0)
    parser.add_argument("--fsize-mb", type=int, default=0)
    parser.add_argument("command", nargs=argparse.REMAINDER)
    args = parser.parse_args(list(argv) if argv is not None else None)
    command = list(args.command)
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        parser.error("missing command after --")

    errors = set_limits(
        memory_limit_mb=args.memory_mb,
        cpu_limit_seconds=args.cpu_seconds,
        file_size_limit_mb=args.fsize_mb,
    )
    for error in errors:
        sys.stderr.write(f"crate-apply launcher: {error}\n")
    sys.stderr.flush()
    try:
        os.execvp(command[0], command)
    except OSError as exc:
        sys.stderr.write(f"crate-apply launcher: cannot execute {command[0]}: {exc}\n")
        return EXEC_FAILED_EXIT
    return 0  # pragma: no cover - execvp does not return


if __name__ == "__main__":
    raise SystemExit(main())
