from __future__ import annotations

from dataclasses import dataclass

from ..logging import get_logger
from ..policy import HarnessPolicy
from .launcher import limits_supported

log = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class BackendCapabilities:
    """Containment features a backend can enforce.

    Example:
        ```python
        caps = BackendCapabilities(True, True, True, True, False)
        ```
    """

    supports_timeout: bool
    supports_memory_limit: bool
    supports_cpu_limit: bool
    supports_file_size_limit: bool
    supports_network_isolation: bool


def capabilities_for_backend(backend: str) -> BackendCapabilities:
    """Return capability flags for a backend name.

    Example:
        ```python
        caps = capabilities_for_backend("docker")
        ```
    """
    if backend in {"local", "localengine"}:
        rlimits = limits_supported()
        return BackendCapabilities(True, rlimits, rlimits, rlimits, False)
    if backend in {"docker", "dockerengine"}:
        return BackendCapabilities(True, True, True, True, True)
    return BackendCapabilities(False, False, False, False, False)


def preflight_validate_backend_capabilities(backend: str, policy: HarnessPolicy) -> list[str]:
    """Warn about policy ceilings the backend cannot enforce.

    Containment is best-effort beyond the timeout, so gaps are logged and
    returned rather than raised. A backend without timeout support is refused.

    Example:
        ```python
        gaps = preflight_validate_backend_capabilities("local", policy)
        ```
    """
    caps = capabilities_for_backend(backend)
    if not caps.supports_timeout:
        raise ValueError(f"Backend '{backend}' cannot enforce a timeout")
    gaps: list[str] = []
    if policy.memory_limit_mb and not caps.supports_memory_limit:
        gaps.append("memory_limit_mb")
    if policy.cpu_limit_seconds and not caps.supports_cpu_limit:
        gaps.append("cpu_limit_seconds")
    if policy.file_size_limit_mb and not caps.supports_file_size_limit:
        gaps.append("file_size_limit_mb")
    if not policy.network and not caps.supports_network_isolation:
        gaps.append("network")
    for gap in gaps:
        log.warning("limit_not_enforced", backend=backend, limit=gap)
    return gaps
