from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Mapping, Sequence

from ..targets import Mode
from .launcher import launcher_command, limits_supported
from .process import run_bounded
from .types import ToolInvocation, ToolOutcome

CARGO_SUBCOMMANDS = {
    Mode.BUILD: "build",
    Mode.TEST: "test",
    Mode.BENCH: "bench",
}

# Inherited from the host so cargo and rustup keep working; everything else is dropped.
_PASSTHROUGH_ENV = ("PATH", "HOME", "USER", "LANG", "LC_ALL", "TERM", "RUSTUP_HOME", "RUSTUP_TOOLCHAIN", "TMPDIR")


def cargo_command(mode: Mode, *, release: bool, cargo: str = "cargo") -> list[str]:
    """Build the cargo argv for a mode.

    Example:
        ```python
        argv = cargo_command(Mode.TEST, release=True)
        ```
    """
    cmd = [cargo, CARGO_SUBCOMMANDS[mode]]
    if release:
        cmd.append("--release")
    return cmd


def tool_environment(request: ToolInvocation, base: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return the environment for one attempt with cargo state kept in scratch.

    Example:
        ```python
        env = tool_environment(request)
        ```
    """
    source = os.environ if base is None else base
    env = {key: source[key] for key in _PASSTHROUGH_ENV if key in source}
    if "RUSTUP_HOME" not in env and "HOME" in env:
        env["RUSTUP_HOME"] = str(Path(env["HOME"]) / ".rustup")
    env["CARGO_HOME"] = str(request.scratch_dir / "cargo-home")
    env["CARGO_TARGET_DIR"] = str(request.scratch_dir / "target")
    env["CARGO_TERM_COLOR"] = "never"
    env.update(request.env)
    return env


def _package_parent() -> str:
    """Return the directory the launcher module is importable from.

    Example:
        ```python
        path = _package_parent()
        ```
    """
    return str(Path(__file__).resolve().parents[2])


class LocalEngine:
    """Run the build/test tool on this host under rlimits and a hard timeout.

    Example:
        ```python
        engine = LocalEngine()
        ```
    """

    def __init__(
        self,
        *,
        cargo: str = "cargo",
        commands: Mapping[Mode, Sequence[str]] | None = None,
        apply_limits: bool = True,
    ) -> None:
        """Initialize the engine; `commands` overrides the cargo argv per mode.

        Example:
            ```python
            engine = LocalEngine(commands={Mode.BUILD: ["make"]})
            ```
        """
        cleaned = cargo.strip()
        if not cleaned:
            raise ValueError("LocalEngine requires a non-empty 'cargo' executable")
        self._cargo = cleaned
        self._commands = {mode: list(cmd) for mode, cmd in (commands or {}).items()}
        self._apply_limits = apply_limits and limits_supported()

    def command_for(self, request: ToolInvocation) -> list[str]:
        """Return the tool argv for a request, before any limit wrapper.

        Example:
            ```python
            argv = engine.command_for(request)
            ```
        """
        if request.mode in self._commands:
            return list(self._commands[request.mode])
        return cargo_command(request.mode, release=request.release, cargo=self._cargo)

    def invoke(self, request: ToolInvocation) -> ToolOutcome:
        """Execute one request in a new session on this host.

        Example:
            ```python
            outcome = engine.invoke(request)
            ```
        """
        tool_cmd = self.command_for(request)
        if shutil.which(tool_cmd[0]) is None:
            return ToolOutcome(
                returncode=127,
                output="",
                timed_out=False,
                elapsed=0.0,
                error=f"Build tool '{tool_cmd[0]}' was not found on PATH",
            )
        cmd = tool_cmd
        env = tool_environment(request)
        if self._apply_limits:
            cmd = launcher_command(
                tool_cmd,
                memory_limit_mb=request.memory_limit_mb,
                cpu_limit_seconds=request.cpu_limit_seconds,
                file_size_limit_mb=request.file_size_limit_mb,
            )
            env["PYTHONPATH"] = _package_parent()
        try:
            completed = run_bounded(
                cmd,
                cwd=request.working_dir,
                env=env,
                timeout_seconds=max(1, int(request.timeout_seconds)),
                max_output_bytes=request.max_output_bytes,
                output_dir=request.scratch_dir,
            )
        except OSError as exc:
            return ToolOutcome(
                returncode=126,
                output="",
                timed_out=False,
                elapsed=0.0,
                error=f"Failed to start build tool: {exc}",
            )
        if completed.timed_out:
            return ToolOutcome(
                returncode=completed.returncode,
                output=completed.output,
                timed_out=True,
                elapsed=completed.elapsed,
                error=f"Execution timed out after {request.timeout_seconds}s",
                truncated_bytes=completed.dropped,
            )
        return ToolOutcome(
            returncode=completed.returncode,
            output=completed.output,
            timed_out=False,
            elapsed=completed.elapsed,
            truncated_bytes=completed.dropped,
        )
