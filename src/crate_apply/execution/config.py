from __future__ import annotations

import shutil
import subprocess
import uuid
from typing import Mapping

DEFAULT_DOCKER_IMAGE = "rust:1-slim"
CONTAINER_WORKDIR = "/work"
CONTAINER_NAME_PREFIX = "crate-apply"
DEFAULT_PIDS_LIMIT = 1024
MANAGED_LABEL_VALUE = "true"
MANAGED_LABELS_BASE = {
    "crate_apply.managed": MANAGED_LABEL_VALUE,
    "crate_apply.engine": "docker",
    "crate_apply.project": "crate-apply",
}


def container_name() -> str:
    """Return a unique name for a per-attempt container.

    Example:
        ```python
        name = container_name()
        ```
    """
    return f"{CONTAINER_NAME_PREFIX}-{uuid.uuid4().hex[:12]}"


def docker_cmd(args: list[str], *, docker_context: str | None) -> list[str]:
    """Build a Docker CLI command with optional context.

    Example:
        ```python
        cmd = docker_cmd(["ps"], docker_context="remote")
        ```
    """
    cmd = ["docker"]
    if docker_context:
        cmd.extend(["--context", docker_context])
    cmd.extend(args)
    return cmd


def docker_is_available(*, docker_env: Mapping[str, str], docker_context: str | None) -> tuple[bool, str | None]:
    """Check Docker CLI and daemon accessibility for the selected target.

    Example:
        ```python
        ok, reason = docker_is_available(docker_env=os.environ, docker_context=None)
        ```
    """
    if shutil.which("docker") is None:
        return False, "Docker CLI was not found. Install Docker and ensure it is on PATH."
    check = subprocess.run(
        docker_cmd(["info"], docker_context=docker_context),
        capture_output=True,
        text=True,
        check=False,
        env=dict(docker_env),
    )
    if check.returncode != 0:
        return False, "Docker is installed but the daemon is not running or not accessible."
    return True, None
