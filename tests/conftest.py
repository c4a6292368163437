from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Callable, Iterator

import pytest

from crate_apply.errors import FetchError, PackageNotFoundError, RegistryError
from crate_apply.execution.types import ToolInvocation, ToolOutcome
from crate_apply.policy import HarnessPolicy
from crate_apply.registry.client import RegistryPage


class FakeRegistry:
    """In-memory registry: `packages` maps name -> versions, newest last."""

    def __init__(self, packages: dict[str, list[str]], page_size: int = 2) -> None:
        self.packages = packages
        self.page_size = page_size
        self.page_failures: dict[int, int] = {}
        self.broken: set[str] = set()
        self.latest_calls: list[str] = []

    def latest_version(self, name: str) -> str:
        self.latest_calls.append(name)
        if name in self.broken:
            raise RegistryError(f"boom for {name}")
        versions = self.packages.get(name)
        if not versions:
            raise PackageNotFoundError(f"crate `{name}` not in registry")
        return versions[-1]

    def check_version(self, name: str, version: str) -> bool:
        if name in self.broken:
            raise RegistryError(f"boom for {name}")
        return version in self.packages.get(name, [])

    def list_pages(self, cursor: str | None = None) -> Iterator[RegistryPage]:
        names = sorted(self.packages)
        start = int(cursor) if cursor else 0
        while True:
            if self.page_failures.get(start, 0) > 0:
                self.page_failures[start] -= 1
                raise RegistryError(f"page at {start} failed")
            end = start + self.page_size
            next_cursor = str(end) if end < len(names) else None
            yield RegistryPage(names=names[start:end], next_cursor=next_cursor)
            if next_cursor is None:
                return
            start = end

    def checksum(self, name: str, version: str) -> str | None:
        return None


class FakeFetcher:
    """Creates an empty package directory; names in `failing` raise FetchError."""

    def __init__(self, failing: set[str] | None = None) -> None:
        self.failing = failing or set()
        self.calls: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def fetch(self, name: str, version: str, dest_dir: Path) -> Path:
        with self._lock:
            self.calls.append((name, version))
        if name in self.failing:
            raise FetchError(f"cannot download {name}-{version}")
        root = dest_dir / "src" / f"{name}-{version}"
        root.mkdir(parents=True)
        (root / "Cargo.toml").write_text(f'[package]\nname = "{name}"\nversion = "{version}"\n')
        return root


class FakeEngine:
    """Returns a scripted ToolOutcome per crate name, success by default."""

    def __init__(
        self,
        outcomes: dict[str, ToolOutcome] | None = None,
        delay: float = 0.0,
        hook: Callable[[ToolInvocation], None] | None = None,
    ) -> None:
        self.outcomes = outcomes or {}
        self.delay = delay
        self.hook = hook
        self.requests: list[ToolInvocation] = []
        self.active: dict[str, int] = {}
        self.max_active = 0
        self.overlapping: list[str] = []
        self._lock = threading.Lock()

    def invoke(self, request: ToolInvocation) -> ToolOutcome:
        label = request.working_dir.name
        name = label.rsplit("-", 1)[0]
        with self._lock:
            self.requests.append(request)
            if self.active.get(label):
                self.overlapping.append(label)
            self.active[label] = self.active.get(label, 0) + 1
            self.max_active = max(self.max_active, sum(self.active.values()))
        try:
            if self.hook is not None:
                self.hook(request)
            if self.delay:
                time.sleep(self.delay)
            return self.outcomes.get(name, ToolOutcome(0, f"Compiling {label}\nFinished\n", False, 0.5))
        finally:
            with self._lock:
                self.active[label] -= 1


@pytest.fixture
def policy() -> HarnessPolicy:
    return HarnessPolicy(
        timeout_seconds=5,
        workers=2,
        breaker_threshold=3,
        enumeration_retries=2,
        requests_per_second=0,
    )


@pytest.fixture
def registry() -> FakeRegistry:
    return FakeRegistry({"left_pad": ["0.9.0", "1.0.0"], "right_pad": ["2.0.0"]})


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()
