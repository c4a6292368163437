from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

_BUILTIN_DEFAULTS: dict[str, Any] = {
    "timeout_seconds": 900,
    "memory_limit_mb": 4096,
    "cpu_limit_seconds": 0,
    "file_size_limit_mb": 2048,
    "max_output_kb": 512,
    "max_excerpt_kb": 16,
    "workers": 0,
    "breaker_threshold": 10,
    "enumeration_retries": 3,
    "release": False,
    "network": True,
    "registry_url": "https://crates.io",
    "download_url": "https://static.crates.io/crates",
    "user_agent": "crate-apply (batch build harness)",
    "requests_per_second": 1.0,
}


def _default_policy_path() -> Path:
    """Return bundled default policy TOML path.

    Example:
        ```python
        path = _default_policy_path()
        ```
    """
    return Path(__file__).with_name("default_policy.toml")


def _read_policy_toml(path: Path) -> dict[str, Any]:
    """Read policy TOML and return the policy table.

    Example:
        ```python
        raw = _read_policy_toml(Path("/tmp/policy.toml"))
        ```
    """
    if not path.exists():
        return dict(_BUILTIN_DEFAULTS)
    raw = tomllib.loads(path.read_text(encoding="utf-8"))
    policy_obj = raw.get("policy", raw)
    if not isinstance(policy_obj, dict):
        raise ValueError("Policy config must be a TOML table")
    return policy_obj


def default_workers() -> int:
    """Return the default worker count: CPU count capped at 4.

    Example:
        ```python
        workers = default_workers()
        ```
    """
    return min(os.cpu_count() or 1, 4)


_DEFAULT_POLICY_RAW = {**_BUILTIN_DEFAULTS, **_read_policy_toml(_default_policy_path())}


@dataclass(frozen=True, slots=True)
class HarnessPolicy:
    """Limits and knobs applied to every attempt of a run.

    Example:
        ```python
        policy = HarnessPolicy(timeout_seconds=300, workers=8)
        ```
    """

    timeout_seconds: int = int(_DEFAULT_POLICY_RAW["timeout_seconds"])
    memory_limit_mb: int = int(_DEFAULT_POLICY_RAW["memory_limit_mb"])
    cpu_limit_seconds: int = int(_DEFAULT_POLICY_RAW["cpu_limit_seconds"])
    file_size_limit_mb: int = int(_DEFAULT_POLICY_RAW["file_size_limit_mb"])
    max_output_kb: int = int(_DEFAULT_POLICY_RAW["max_output_kb"])
    max_excerpt_kb: int = int(_DEFAULT_POLICY_RAW["max_excerpt_kb"])
    workers: int = int(_DEFAULT_POLICY_RAW["workers"]) or default_workers()
    breaker_threshold: int = int(_DEFAULT_POLICY_RAW["breaker_threshold"])
    enumeration_retries: int = int(_DEFAULT_POLICY_RAW["enumeration_retries"])
    release: bool = bool(_DEFAULT_POLICY_RAW["release"])
    network: bool = bool(_DEFAULT_POLICY_RAW["network"])
    registry_url: str = str(_DEFAULT_POLICY_RAW["registry_url"])
    download_url: str = str(_DEFAULT_POLICY_RAW["download_url"])
    user_agent: str = str(_DEFAULT_POLICY_RAW["user_agent"])
    requests_per_second: float = float(_DEFAULT_POLICY_RAW["requests_per_second"])

    def __post_init__(self) -> None:
        """Validate limits after dataclass initialization.

        Example:
            ```python
            HarnessPolicy(timeout_seconds=1)
            ```
        """
        if self.timeout_seconds < 1:
            raise ValueError("timeout_seconds must be at least 1")
        if self.workers == 0:
            object.__setattr__(self, "workers", default_workers())
        if self.workers < 1:
            raise ValueError("workers must be at least 1")
        for name in (
            "memory_limit_mb",
            "cpu_limit_seconds",
            "file_size_limit_mb",
            "breaker_threshold",
            "enumeration_retries",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative")
        if self.max_output_kb < 1 or self.max_excerpt_kb < 1:
            raise ValueError("max_output_kb and max_excerpt_kb must be at least 1")
        if self.requests_per_second < 0:
            raise ValueError("requests_per_second must not be negative")

    @classmethod
    def from_file(cls, config_path: str) -> "HarnessPolicy":
        """Create a policy from a TOML file, unknown keys rejected.

        Example:
            ```python
            policy = HarnessPolicy.from_file("/tmp/policy.toml")
            ```
        """
        if not Path(config_path).exists():
            raise ValueError(f"Policy file not found: {config_path}")
        raw = _read_policy_toml(Path(config_path))
        known = {item.name for item in fields(cls)}
        unknown = sorted(set(raw) - known)
        if unknown:
            raise ValueError(f"Unknown policy keys: {', '.join(unknown)}")
        return cls().with_overrides(**raw)

    def with_overrides(self, **overrides: Any) -> "HarnessPolicy":
        """Return a copy with non-None overrides applied and coerced.

        Example:
            ```python
            policy = HarnessPolicy().with_overrides(workers=2, timeout_seconds=None)
            ```
        """
        coerced: dict[str, Any] = {}
        types = {item.name: item.type for item in fields(self)}
        for name, value in overrides.items():
            if value is None:
                continue
            if name not in types:
                raise ValueError(f"Unknown policy key: {name}")
            coerced[name] = _coerce(name, types[name], value)
        return replace(self, **coerced)

    @property
    def max_output_bytes(self) -> int:
        """Return the captured-output ceiling in bytes.

        Example:
            ```python
            limit = policy.max_output_bytes
            ```
        """
        return self.max_output_kb * 1024

    @property
    def max_excerpt_bytes(self) -> int:
        """Return the stored log excerpt ceiling in bytes.

        Example:
            ```python
            limit = policy.max_excerpt_bytes
            ```
        """
        return self.max_excerpt_kb * 1024


def _coerce(name: str, type_name: Any, value: Any) -> Any:
    """Coerce a raw TOML or CLI value to the declared field type.

    Example:
        ```python
        workers = _coerce("workers", "int", "4")
        ```
    """
    type_str = str(type_name)
    try:
        if type_str == "bool":
            if isinstance(value, str):
                return value.strip().lower() in {"1", "true", "yes", "on"}
            return bool(value)
        if type_str == "int":
            return int(value)
        if type_str == "float":
            return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"'{name}' must be of type {type_str}") from exc
    return str(value)
