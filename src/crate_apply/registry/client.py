from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator, Protocol


@dataclass(frozen=True, slots=True)
class RegistryPage:
    """One page of a registry enumeration.

    `next_cursor` is None on the last page; enumeration stops only there.

    Example:
        ```python
        page = RegistryPage(names=["a", "b"], next_cursor="b")
        ```
    """

    names: list[str]
    next_cursor: str | None
    latest: dict[str, str] = field(default_factory=dict)


class RegistryClient(Protocol):
    def latest_version(self, name: str) -> str:
        """Return the newest non-yanked version or raise PackageNotFoundError.

        Example:
            ```python
            version = client.latest_version("serde")
            ```
        """
        ...

    def check_version(self, name: str, version: str) -> bool:
        """Return True when `version` of `name` is published.

        Example:
            ```python
            ok = client.check_version("serde", "1.0.0")
            ```
        """
        ...

    def list_pages(self, cursor: str | None = None) -> Iterator[RegistryPage]:
        """Lazily enumerate every package, starting after `cursor`.

        Example:
            ```python
            for page in client.list_pages():
                ...
            ```
        """
        ...

    def checksum(self, name: str, version: str) -> str | None:
        """Return the published sha256 of the source archive, when known.

        Example:
            ```python
            digest = client.checksum("serde", "1.0.0")
            ```
        """
        ...


def list_all(client: RegistryClient, cursor: str | None = None) -> Iterator[str]:
    """Flatten a paginated enumeration into a lazy sequence of names.

    Example:
        ```python
        names = list(list_all(client))
        ```
    """
    for page in client.list_pages(cursor):
        yield from page.names
