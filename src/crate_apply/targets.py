from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from .errors import InvalidSpecifierError

WILDCARD = "*"
_SPECIFIER_PATTERN = re.compile(r"^\s*([^=\s]+)\s*(?:=\s*([^=\s]+))?\s*$")


class Mode(str, Enum):
    """What to do with every target of a run.

    Example:
        ```python
        mode = Mode("test")
        ```
    """

    BUILD = "build"
    TEST = "test"
    BENCH = "bench"


@dataclass(frozen=True, slots=True)
class Exact:
    """Version constraint pinning one published version.

    Example:
        ```python
        constraint = Exact("1.0.0")
        ```
    """

    version: str

    def __str__(self) -> str:
        """Render as the `=version` suffix used in specifiers.

        Example:
            ```python
            assert str(Exact("1.0.0")) == "=1.0.0"
            ```
        """
        return f"={self.version}"


@dataclass(frozen=True, slots=True)
class Latest:
    """Version constraint meaning the newest non-yanked version.

    Example:
        ```python
        constraint = Latest()
        ```
    """

    def __str__(self) -> str:
        """Render as an empty suffix.

        Example:
            ```python
            assert str(Latest()) == ""
            ```
        """
        return ""


VersionConstraint = Exact | Latest


@dataclass(frozen=True, slots=True)
class Specifier:
    """Parsed command-line package specifier.

    Example:
        ```python
        spec = Specifier(name="serde", constraint=Exact("1.0.0"))
        ```
    """

    name: str
    constraint: VersionConstraint

    @property
    def is_wildcard(self) -> bool:
        """Return True for the all-packages selector.

        Example:
            ```python
            assert parse_specifier("*").is_wildcard
            ```
        """
        return self.name == WILDCARD

    def __str__(self) -> str:
        """Render back into `name` or `name=version`.

        Example:
            ```python
            assert str(parse_specifier("serde = 1.0.0")) == "serde=1.0.0"
            ```
        """
        return f"{self.name}{self.constraint}"


@dataclass(frozen=True, slots=True)
class Target:
    """One unit of work: a package name and the version it resolved to.

    Example:
        ```python
        target = Target("left_pad", Latest(), resolved_version="1.0.0")
        ```
    """

    name: str
    constraint: VersionConstraint
    resolved_version: str | None = None

    @property
    def is_resolved(self) -> bool:
        """Return True once a concrete version is known.

        Example:
            ```python
            assert Target("a", Latest(), "1.0").is_resolved
            ```
        """
        return self.resolved_version is not None

    @property
    def key(self) -> tuple[str, str]:
        """Return the `(name, version)` identity used for dedup and resume.

        Example:
            ```python
            assert Target("a", Latest(), "1.0").key == ("a", "1.0")
            ```
        """
        if self.resolved_version is None:
            raise ValueError(f"Target '{self.name}' has not been resolved")
        return (self.name, self.resolved_version)

    def __str__(self) -> str:
        """Render as `name-version`, or the specifier form if unresolved.

        Example:
            ```python
            assert str(Target("a", Latest(), "1.0")) == "a-1.0"
            ```
        """
        if self.resolved_version is None:
            return f"{self.name}{self.constraint}"
        return f"{self.name}-{self.resolved_version}"


def parse_specifier(raw: str) -> Specifier:
    """Parse `name`, `name=version` or `*` into a specifier.

    Example:
        ```python
        spec = parse_specifier("left_pad=1.0.0")
        ```
    """
    if raw.strip() == WILDCARD:
        return Specifier(name=WILDCARD, constraint=Latest())
    match = _SPECIFIER_PATTERN.match(raw)
    if match is None:
        raise InvalidSpecifierError(
            f"invalid package name / version `{raw}`, try `foo` or `foo=0.1`"
        )
    name, version = match.group(1), match.group(2)
    if WILDCARD in name:
        raise InvalidSpecifierError(f"wildcard must be used alone, got `{raw}`")
    if version is None:
        return Specifier(name=name, constraint=Latest())
    return Specifier(name=name, constraint=Exact(version))


def parse_specifiers(raw_values: list[str]) -> list[Specifier]:
    """Parse every raw specifier, failing on the first malformed one.

    Example:
        ```python
        specs = parse_specifiers(["serde", "rand=0.8.5"])
        ```
    """
    if not raw_values:
        raise InvalidSpecifierError("at least one package specifier is required")
    return [parse_specifier(raw) for raw in raw_values]
