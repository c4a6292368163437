from __future__ import annotations

import os
import subprocess
from pathlib import Path

from .config import (
    CONTAINER_WORKDIR,
    DEFAULT_DOCKER_IMAGE,
    DEFAULT_PIDS_LIMIT,
    MANAGED_LABELS_BASE,
    container_name,
    docker_cmd,
    docker_is_available,
)
from .launcher import CPU_HARD_GRACE_SECONDS
from .local_engine import cargo_command
from .process import kill_process_group, run_bounded
from .types import ToolInvocation, ToolOutcome

# `docker run` reserves these for its own failures, not the container's.
_DOCKER_ERROR_CODES = {125: "docker daemon error", 126: "command cannot be invoked", 127: "command not found"}


class DockerEngine:
    """Run each attempt in a fresh `docker run --rm` container.

    Example:
        ```python
        engine = DockerEngine(image="rust:1-slim")
        ```
    """

    def __init__(
        self,
        *,
        image: str = DEFAULT_DOCKER_IMAGE,
        pids_limit: int = DEFAULT_PIDS_LIMIT,
        cpus: float | None = None,
        docker_host: str | None = None,
        docker_context: str | None = None,
        ssh_host: str | None = None,
        ssh_user: str | None = None,
        ssh_port: int | None = None,
        ssh_key_path: str | None = None,
    ) -> None:
        """Initialize Docker execution settings and connection strategy.

        Example:
            ```python
            engine = DockerEngine(ssh_host="server", ssh_user="ubuntu", ssh_port=22)
            ```
        """
        if not image.strip():
            raise ValueError("DockerEngine requires a non-empty 'image'")
        self._image = image.strip()
        self._pids_limit = pids_limit
        self._cpus = cpus
        self._docker_host = docker_host
        self._docker_context = docker_context
        self._ssh_host = ssh_host
        self._ssh_user = ssh_user
        self._ssh_port = ssh_port
        self._ssh_key_path = ssh_key_path
        self._image_ready = False
        self._validate_connection_options()

    def invoke(self, request: ToolInvocation) -> ToolOutcome:
        """Execute one request inside a throwaway container.

        Example:
            ```python
            outcome = engine.invoke(request)
            ```
        """
        available, reason = docker_is_available(
            docker_env=self._docker_env(),
            docker_context=self._docker_context,
        )
        if not available:
            return ToolOutcome(125, "", False, 0.0, reason)
        if not self._ensure_image_available(self._image):
            return ToolOutcome(125, "", False, 0.0, f"Docker image '{self._image}' is not available")

        name = container_name()
        cmd = self.run_command(request, name)
        try:
            completed = run_bounded(
                cmd,
                cwd=request.scratch_dir,
                env=self._docker_env(),
                timeout_seconds=max(1, int(request.timeout_seconds)),
                max_output_bytes=request.max_output_bytes,
                output_dir=request.scratch_dir,
                on_timeout=lambda proc: self._kill(name, proc),
            )
        except OSError as exc:
            return ToolOutcome(125, "", False, 0.0, f"Failed to start docker: {exc}")
        finally:
            self._stop_and_remove(name)

        if completed.timed_out:
            return ToolOutcome(
                completed.returncode,
                completed.output,
                True,
                completed.elapsed,
                f"Execution timed out after {request.timeout_seconds}s",
                completed.dropped,
            )
        returncode = completed.returncode
        if returncode in _DOCKER_ERROR_CODES:
            return ToolOutcome(
                returncode,
                completed.output,
                False,
                completed.elapsed,
                _DOCKER_ERROR_CODES[returncode],
                completed.dropped,
            )
        if 128 < returncode < 160:
            # Container main process killed by signal (returncode - 128).
            returncode = -(returncode - 128)
        return ToolOutcome(returncode, completed.output, False, completed.elapsed, None, completed.dropped)

    def run_command(self, request: ToolInvocation, name: str) -> list[str]:
        """Build the `docker run` argv for one attempt.

        Example:
            ```python
            argv = engine.run_command(request, "crate-apply-1a2b")
            ```
        """
        relative = request.working_dir.resolve().relative_to(request.scratch_dir.resolve())
        workdir = (Path(CONTAINER_WORKDIR) / relative).as_posix()
        args = [
            "run",
            "--rm",
            "--name",
            name,
            "--init",
            "--cap-drop",
            "ALL",
            "--security-opt",
            "no-new-privileges",
            "--pids-limit",
            str(self._pids_limit),
            "--ulimit",
            "core=0:0",
            "-v",
            f"{request.scratch_dir.resolve()}:{CONTAINER_WORKDIR}",
            "-w",
            workdir,
            "-e",
            f"CARGO_HOME={CONTAINER_WORKDIR}/cargo-home",
            "-e",
            f"CARGO_TARGET_DIR={CONTAINER_WORKDIR}/target",
            "-e",
            "CARGO_TERM_COLOR=never",
        ]
        if hasattr(os, "getuid"):
            args.extend(["--user", f"{os.getuid()}:{os.getgid()}"])
        if request.memory_limit_mb:
            args.extend(["--memory", f"{request.memory_limit_mb}m", "--memory-swap", f"{request.memory_limit_mb}m"])
        if request.cpu_limit_seconds:
            cpu_hard = request.cpu_limit_seconds + CPU_HARD_GRACE_SECONDS
            args.extend(["--ulimit", f"cpu={request.cpu_limit_seconds}:{cpu_hard}"])
        if request.file_size_limit_mb:
            size = request.file_size_limit_mb * 1024 * 1024
            args.extend(["--ulimit", f"fsize={size}:{size}"])
        if self._cpus:
            args.extend(["--cpus", str(self._cpus)])
        if not request.network:
            args.extend(["--network", "none"])
        for key, value in MANAGED_LABELS_BASE.items():
            args.extend(["--label", f"{key}={value}"])
        for key, value in request.env.items():
            args.extend(["-e", f"{key}={value}"])
        args.append(self._image)
        args.extend(cargo_command(request.mode, release=request.release))
        return docker_cmd(args, docker_context=self._docker_context)

    def _kill(self, name: str, proc: subprocess.Popen[bytes]) -> None:
        """Kill the container, then the local docker CLI process group.

        Example:
            ```python
            engine._kill("crate-apply-1a2b", proc)
            ```
        """
        self._run_docker(["kill", name])
        kill_process_group(proc)

    def _stop_and_remove(self, name: str) -> None:
        """Force-remove a container if it still exists.

        Example:
            ```python
            engine._stop_and_remove("crate-apply-1a2b")
            ```
        """
        self._run_docker(["rm", "-f", name])

    def _ensure_image_available(self, image: str) -> bool:
        """Ensure an image exists locally, pulling when needed.

        Example:
            ```python
            ok = engine._ensure_image_available("rust:1-slim")
            ```
        """
        if self._image_ready:
            return True
        inspected = self._run_docker(["image", "inspect", image])
        if inspected.returncode != 0:
            pulled = self._run_docker(["pull", image])
            if pulled.returncode != 0:
                return False
        self._image_ready = True
        return True

    def _run_docker(self, args: list[str]) -> subprocess.CompletedProcess[str]:
        """Run a Docker CLI command against the configured target.

        Example:
            ```python
            completed = engine._run_docker(["ps"])
            ```
        """
        return subprocess.run(
            docker_cmd(args, docker_context=self._docker_context),
            capture_output=True,
            text=True,
            check=False,
            env=self._docker_env(),
        )

    def _docker_env(self) -> dict[str, str]:
        """Build environment variables for Docker CLI targeting.

        Example:
            ```python
            env = engine._docker_env()
            ```
        """
        env = dict(os.environ)
        docker_host = self._docker_host
        if self._ssh_host:
            user = f"{self._ssh_user}@" if self._ssh_user else ""
            docker_host = f"ssh://{user}{self._ssh_host}"
        if docker_host:
            env["DOCKER_HOST"] = docker_host
        if self._ssh_host:
            parts = ["ssh"]
            if self._ssh_port:
                parts.extend(["-p", str(self._ssh_port)])
            if self._ssh_key_path:
                parts.extend(["-i", self._ssh_key_path])
            env["DOCKER_SSH_COMMAND"] = " ".join(parts)
        return env

    def _validate_connection_options(self) -> None:
        """Validate mutually exclusive Docker connection settings.

        Example:
            ```python
            engine._validate_connection_options()
            ```
        """
        if self._docker_context and (self._docker_host or self._ssh_host):
            raise ValueError("Use either docker_context or docker_host/ssh settings, not both")
        if self._ssh_user and not self._ssh_host:
            raise ValueError("ssh_user requires ssh_host")
        if self._ssh_port and not self._ssh_host:
            raise ValueError("ssh_port requires ssh_host")
        if self._ssh_key_path and not self._ssh_host:
            raise ValueError("ssh_key_path requires ssh_host")


__all__ = ["DockerEngine"]
