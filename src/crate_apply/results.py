from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, ClassVar

from .targets import Exact, Latest, Mode, Target

ABNORMAL_KINDS = frozenset({"timeout", "crashed"})


@dataclass(frozen=True, slots=True)
class Success:
    """The tool ran and exited with status 0.

    Example:
        ```python
        outcome = Success(duration=12.5)
        ```
    """

    kind: ClassVar[str] = "success"
    duration: float


@dataclass(frozen=True, slots=True)
class Failure:
    """The tool ran and reported failure with a non-zero exit status.

    Example:
        ```python
        outcome = Failure(duration=3.0, exit_info="exit code 101")
        ```
    """

    kind: ClassVar[str] = "failure"
    duration: float
    exit_info: str


@dataclass(frozen=True, slots=True)
class Timeout:
    """The attempt exceeded its time budget and was forcibly terminated.

    Example:
        ```python
        outcome = Timeout(elapsed=900.0)
        ```
    """

    kind: ClassVar[str] = "timeout"
    elapsed: float


@dataclass(frozen=True, slots=True)
class Crashed:
    """The process or the sandbox died abnormally.

    `signal_or_code` is a negative signal number for signal deaths and a
    positive code for engine-level failures.

    Example:
        ```python
        outcome = Crashed(signal_or_code=-11, reason="killed by SIGSEGV")
        ```
    """

    kind: ClassVar[str] = "crashed"
    signal_or_code: int
    reason: str = ""


@dataclass(frozen=True, slots=True)
class FetchFailed:
    """Source for the target could not be obtained.

    Example:
        ```python
        outcome = FetchFailed(reason="checksum mismatch")
        ```
    """

    kind: ClassVar[str] = "fetch_error"
    reason: str


@dataclass(frozen=True, slots=True)
class Skipped:
    """The target was not attempted, e.g. its version could not be resolved.

    `transient` marks skips caused by registry errors; those are retried on
    the next run instead of being treated as settled.

    Example:
        ```python
        outcome = Skipped(reason="crate `nope` not in registry")
        ```
    """

    kind: ClassVar[str] = "skipped"
    reason: str
    transient: bool = False


Outcome = Success | Failure | Timeout | Crashed | FetchFailed | Skipped

OUTCOME_TYPES: dict[str, type] = {
    cls.kind: cls for cls in (Success, Failure, Timeout, Crashed, FetchFailed, Skipped)
}
OUTCOME_KINDS: tuple[str, ...] = tuple(OUTCOME_TYPES)


def outcome_to_dict(outcome: Outcome) -> dict[str, Any]:
    """Serialize an outcome into a JSON-ready mapping tagged by `kind`.

    Example:
        ```python
        payload = outcome_to_dict(Success(duration=1.0))
        ```
    """
    payload: dict[str, Any] = {"kind": outcome.kind}
    for item in fields(outcome):
        payload[item.name] = getattr(outcome, item.name)
    return payload


def outcome_from_dict(payload: dict[str, Any]) -> Outcome:
    """Rebuild an outcome from its serialized mapping.

    Example:
        ```python
        outcome = outcome_from_dict({"kind": "timeout", "elapsed": 5.0})
        ```
    """
    kind = payload.get("kind")
    cls = OUTCOME_TYPES.get(str(kind))
    if cls is None:
        raise ValueError(f"Unknown outcome kind: {kind!r}")
    values = {item.name: payload[item.name] for item in fields(cls) if item.name in payload}
    return cls(**values)


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime.

    Example:
        ```python
        started = utc_now()
        ```
    """
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Immutable record of one attempt for one target in one mode.

    Example:
        ```python
        result = ExecutionResult(target, Mode.BUILD, Success(1.0), utc_now(), 1.0)
        ```
    """

    target: Target
    mode: Mode
    outcome: Outcome
    started_at: datetime
    duration: float
    log_excerpt: str = ""
    fetch_seconds: float = 0.0
    log_path: str | None = None

    @property
    def key(self) -> tuple[str, str, str]:
        """Return the `(name, version, mode)` store key.

        Unresolved targets (resolution skips) use an empty version.

        Example:
            ```python
            name, version, mode = result.key
            ```
        """
        return result_key(self.target, self.mode)

    @property
    def is_resolution_record(self) -> bool:
        """Return True for a resolution skip rather than an attempt outcome.

        Resolution records live in their own key namespace in the store, so
        they never shadow the result of a runnable target.

        Example:
            ```python
            if result.is_resolution_record:
                ...
            ```
        """
        return isinstance(self.outcome, Skipped)

    def to_dict(self) -> dict[str, Any]:
        """Serialize into a JSON-ready mapping.

        Example:
            ```python
            line = json.dumps(result.to_dict())
            ```
        """
        constraint = self.target.constraint
        return {
            "name": self.target.name,
            "requested_version": constraint.version if isinstance(constraint, Exact) else None,
            "version": self.target.resolved_version,
            "mode": self.mode.value,
            "outcome": outcome_to_dict(self.outcome),
            "started_at": self.started_at.isoformat(),
            "duration": round(self.duration, 6),
            "fetch_seconds": round(self.fetch_seconds, 6),
            "log_excerpt": self.log_excerpt,
            "log_path": self.log_path,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ExecutionResult":
        """Rebuild a result from its serialized mapping.

        Example:
            ```python
            result = ExecutionResult.from_dict(json.loads(line))
            ```
        """
        requested = payload.get("requested_version")
        constraint = Exact(str(requested)) if requested is not None else Latest()
        version = payload.get("version")
        target = Target(
            name=str(payload["name"]),
            constraint=constraint,
            resolved_version=str(version) if version is not None else None,
        )
        return cls(
            target=target,
            mode=Mode(payload["mode"]),
            outcome=outcome_from_dict(payload["outcome"]),
            started_at=datetime.fromisoformat(payload["started_at"]),
            duration=float(payload.get("duration", 0.0)),
            log_excerpt=str(payload.get("log_excerpt", "")),
            fetch_seconds=float(payload.get("fetch_seconds", 0.0)),
            log_path=payload.get("log_path"),
        )


def result_key(target: Target, mode: Mode) -> tuple[str, str, str]:
    """Return the store key for a target in a mode.

    Example:
        ```python
        key = result_key(Target("a", Latest(), "1.0"), Mode.BUILD)
        ```
    """
    version = target.resolved_version
    if version is None:
        version = target.constraint.version if isinstance(target.constraint, Exact) else ""
    return (target.name, version, mode.value)


@dataclass(slots=True)
class RunSummary:
    """Counts and flags reported at the end of a run.

    Example:
        ```python
        summary = RunSummary(store_path="work/results.jsonl")
        ```
    """

    store_path: str
    counts: Counter[str] = field(default_factory=Counter)
    resolved: int = 0
    resumed: int = 0
    breaker_tripped: bool = False
    cancelled: bool = False
    fatal_error: str | None = None

    def record(self, outcome: Outcome) -> None:
        """Count one committed outcome.

        Example:
            ```python
            summary.record(Success(duration=1.0))
            ```
        """
        self.counts[outcome.kind] += 1

    @property
    def attempted(self) -> int:
        """Return how many outcomes were committed during this run.

        Example:
            ```python
            total = summary.attempted
            ```
        """
        return sum(self.counts.values())

    def exit_code(self) -> int:
        """Map the run state to a process exit code.

        Example:
            ```python
            raise SystemExit(summary.exit_code())
            ```
        """
        if self.breaker_tripped or self.fatal_error is not None:
            return 1
        if self.cancelled:
            return 130
        if self.resolved == 0:
            return 1
        return 0
