from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Iterator

from .errors import PackageNotFoundError, RegistryError, SystemicFailure, UnknownVersionError
from .logging import get_logger
from .registry.client import RegistryClient, RegistryPage
from .targets import Exact, Latest, Specifier, Target

log = get_logger(__name__)

Worklist = list[Target]


@dataclass(frozen=True, slots=True)
class SkippedTarget:
    """A specifier that could not be turned into a runnable target.

    `transient` is set when the registry failed rather than answered.

    Example:
        ```python
        skipped = SkippedTarget(Target("nope", Latest()), "crate `nope` not in registry")
        ```
    """

    target: Target
    reason: str
    transient: bool = False


@dataclass(slots=True)
class Resolution:
    """Eager result of resolving a list of specifiers.

    Example:
        ```python
        resolution = TargetResolver(client).resolve(specs)
        ```
    """

    worklist: Worklist = field(default_factory=list)
    skipped: list[SkippedTarget] = field(default_factory=list)


class TargetResolver:
    """Turn parsed specifiers into an ordered, deduplicated worklist.

    Example:
        ```python
        resolver = TargetResolver(CratesIoClient(), enumeration_retries=3)
        ```
    """

    def __init__(self, registry: RegistryClient, *, enumeration_retries: int = 3) -> None:
        """Bind the registry; `enumeration_retries` bounds retries of one failed page.

        Example:
            ```python
            resolver = TargetResolver(client)
            ```
        """
        self._registry = registry
        self._enumeration_retries = enumeration_retries

    def resolve(self, specifiers: Iterable[Specifier]) -> Resolution:
        """Resolve every specifier eagerly.

        Example:
            ```python
            resolution = resolver.resolve([parse_specifier("left_pad")])
            ```
        """
        resolution = Resolution()
        for item in self.iter_resolve(specifiers):
            if isinstance(item, SkippedTarget):
                resolution.skipped.append(item)
            else:
                resolution.worklist.append(item)
        return resolution

    def iter_resolve(self, specifiers: Iterable[Specifier]) -> Iterator[Target | SkippedTarget]:
        """Lazily yield resolved targets and skips, first occurrence wins.

        Raises SystemicFailure when a registry enumeration keeps failing.

        Example:
            ```python
            for item in resolver.iter_resolve(specs):
                ...
            ```
        """
        seen: set[tuple[str, str]] = set()
        for spec in specifiers:
            if spec.is_wildcard:
                items: Iterable[Target | SkippedTarget] = self._resolve_all()
            else:
                items = (self._resolve_one(spec.name, spec.constraint),)
            for item in items:
                if isinstance(item, Target):
                    if item.key in seen:
                        continue
                    seen.add(item.key)
                yield item

    def _resolve_one(
        self,
        name: str,
        constraint: Exact | Latest,
        hint: str | None = None,
    ) -> Target | SkippedTarget:
        """Resolve one name; per-package registry problems become skips.

        Example:
            ```python
            item = resolver._resolve_one("left_pad", Exact("1.0.0"))
            ```
        """
        unresolved = Target(name, constraint)
        try:
            if isinstance(constraint, Exact):
                if not self._registry.check_version(name, constraint.version):
                    raise UnknownVersionError(f"could not find `{name}` version {constraint.version}")
                return Target(name, constraint, constraint.version)
            version = hint or self._registry.latest_version(name)
            return Target(name, constraint, version)
        except (PackageNotFoundError, UnknownVersionError) as exc:
            log.warning("target_skipped", target=str(unresolved), reason=str(exc))
            return SkippedTarget(unresolved, str(exc))
        except RegistryError as exc:
            log.warning("target_skipped", target=str(unresolved), reason=str(exc))
            return SkippedTarget(unresolved, f"registry error: {exc}", transient=True)

    def _resolve_all(self) -> Iterator[Target | SkippedTarget]:
        """Resolve every package the registry lists, page by page.

        Example:
            ```python
            targets = list(resolver._resolve_all())
            ```
        """
        for page in self._pages():
            for name in page.names:
                yield self._resolve_one(name, Latest(), page.latest.get(name))

    def _pages(self) -> Iterator[RegistryPage]:
        """Enumerate pages, resuming from the last good cursor after a failure.

        Stops only on an explicit end-of-list page.

        Example:
            ```python
            pages = list(resolver._pages())
            ```
        """
        cursor: str | None = None
        failures = 0
        pages = 0
        while True:
            try:
                for page in self._registry.list_pages(cursor):
                    failures = 0
                    pages += 1
                    yield page
                    if page.next_cursor is None:
                        log.info("enumeration_finished", pages=pages)
                        return
                    cursor = page.next_cursor
                log.info("enumeration_finished", pages=pages)
                return
            except RegistryError as exc:
                failures += 1
                if failures > self._enumeration_retries:
                    raise SystemicFailure(
                        f"registry enumeration failed after {failures} attempts at cursor {cursor!r}: {exc}"
                    ) from exc
                log.warning("enumeration_retry", cursor=cursor, attempt=failures, error=str(exc))
