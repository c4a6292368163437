from __future__ import annotations

import hashlib
import tarfile
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Protocol

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from .errors import FetchError, RegistryError
from .logging import get_logger
from .policy import HarnessPolicy

log = get_logger(__name__)

MAX_ARCHIVE_BYTES = 256 * 1024 * 1024


class Fetcher(Protocol):
    def fetch(self, name: str, version: str, dest_dir: Path) -> Path:
        """Materialize the source tree under `dest_dir` and return its root.

        Raises FetchError when the source cannot be obtained.

        Example:
            ```python
            root = fetcher.fetch("serde", "1.0.0", Path("/tmp/attempt"))
            ```
        """
        ...


class CratesIoFetcher:
    """Download, verify and unpack `.crate` archives.

    Example:
        ```python
        fetcher = CratesIoFetcher(checksum_lookup=client.checksum)
        ```
    """

    def __init__(
        self,
        *,
        download_url: str = "https://static.crates.io/crates",
        user_agent: str = "crate-apply (batch build harness)",
        checksum_lookup: Callable[[str, str], str | None] | None = None,
        timeout_seconds: float = 60.0,
        max_archive_bytes: int = MAX_ARCHIVE_BYTES,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Create the download client.

        Example:
            ```python
            fetcher = CratesIoFetcher(download_url="https://static.crates.io/crates")
            ```
        """
        self._download_url = download_url.rstrip("/")
        self._checksum_lookup = checksum_lookup
        self._max_archive_bytes = max_archive_bytes
        self._client = httpx.Client(
            headers={"User-Agent": user_agent},
            timeout=timeout_seconds,
            follow_redirects=True,
            transport=transport,
        )

    @classmethod
    def from_policy(
        cls,
        policy: HarnessPolicy,
        checksum_lookup: Callable[[str, str], str | None] | None = None,
        **kwargs: Any,
    ) -> "CratesIoFetcher":
        """Create a fetcher from the download settings of a policy.

        Example:
            ```python
            fetcher = CratesIoFetcher.from_policy(policy, checksum_lookup=client.checksum)
            ```
        """
        return cls(
            download_url=policy.download_url,
            user_agent=policy.user_agent,
            checksum_lookup=checksum_lookup,
            **kwargs,
        )

    def close(self) -> None:
        """Close the underlying connection pool.

        Example:
            ```python
            fetcher.close()
            ```
        """
        self._client.close()

    def archive_url(self, name: str, version: str) -> str:
        """Return the static download URL of a crate archive.

        Example:
            ```python
            url = fetcher.archive_url("serde", "1.0.0")
            ```
        """
        return f"{self._download_url}/{name}/{name}-{version}.crate"

    def fetch(self, name: str, version: str, dest_dir: Path) -> Path:
        """Download, verify and extract one crate into `dest_dir`.

        Example:
            ```python
            root = fetcher.fetch("serde", "1.0.0", Path("/tmp/attempt"))
            ```
        """
        dest_dir.mkdir(parents=True, exist_ok=True)
        archive = dest_dir / f"{name}-{version}.crate"
        digest = self._download(self.archive_url(name, version), archive)
        expected = self._expected_checksum(name, version)
        if expected is not None and expected.lower() != digest:
            raise FetchError(f"checksum mismatch for {name}-{version}: expected {expected}, got {digest}")
        extract_root = dest_dir / "src"
        safe_extract(archive, extract_root)
        archive.unlink(missing_ok=True)
        package_root = extract_root / f"{name}-{version}"
        if package_root.is_dir():
            return package_root
        entries = [path for path in extract_root.iterdir() if path.is_dir()]
        if len(entries) == 1:
            return entries[0]
        raise FetchError(f"archive for {name}-{version} has no single top-level directory")

    def _expected_checksum(self, name: str, version: str) -> str | None:
        """Return the published checksum; lookup failures only skip verification.

        Example:
            ```python
            expected = fetcher._expected_checksum("serde", "1.0.0")
            ```
        """
        if self._checksum_lookup is None:
            return None
        try:
            return self._checksum_lookup(name, version)
        except RegistryError as exc:
            log.warning("checksum_lookup_failed", crate=name, version=version, error=str(exc))
            return None

    def _download(self, url: str, dest: Path) -> str:
        """Stream `url` into `dest` and return its sha256 hex digest.

        Example:
            ```python
            digest = fetcher._download(url, Path("/tmp/a.crate"))
            ```
        """
        try:
            return self._download_with_retry(url, dest)
        except httpx.HTTPStatusError as exc:
            raise FetchError(f"download of {url} returned HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise FetchError(f"download of {url} failed: {exc}") from exc
        except OSError as exc:
            raise FetchError(f"could not write {dest}: {exc}") from exc

    @retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential_jitter(initial=1.0, max=10.0),
        retry=retry_if_exception_type(httpx.TransportError),
    )
    def _download_with_retry(self, url: str, dest: Path) -> str:
        """Download once; transport errors are retried by tenacity.

        Example:
            ```python
            digest = fetcher._download_with_retry(url, Path("/tmp/a.crate"))
            ```
        """
        hasher = hashlib.sha256()
        written = 0
        with self._client.stream("GET", url) as response:
            response.raise_for_status()
            with dest.open("wb") as fh:
                for chunk in response.iter_bytes():
                    written += len(chunk)
                    if written > self._max_archive_bytes:
                        raise FetchError(
                            f"archive {url} exceeds {self._max_archive_bytes} bytes"
                        )
                    hasher.update(chunk)
                    fh.write(chunk)
        return hasher.hexdigest()


def safe_extract(archive: Path, dest: Path) -> None:
    """Extract a gzipped tarball, refusing links and paths escaping `dest`.

    Example:
        ```python
        safe_extract(Path("/tmp/a.crate"), Path("/tmp/src"))
        ```
    """
    dest.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(archive, mode="r:gz") as tar:
            members = tar.getmembers()
            for member in members:
                _check_member(member)
            tar.extractall(dest, members=members, filter="data")
    except (tarfile.TarError, EOFError) as exc:
        raise FetchError(f"corrupt archive {archive.name}: {exc}") from exc
    except OSError as exc:
        raise FetchError(f"could not extract {archive.name}: {exc}") from exc


def _check_member(member: tarfile.TarInfo) -> None:
    """Reject absolute, parent-relative, link and device members.

    Example:
        ```python
        _check_member(tarfile.TarInfo("pkg-1.0.0/Cargo.toml"))
        ```
    """
    path = PurePosixPath(member.name)
    if path.is_absolute() or ".." in path.parts:
        raise FetchError(f"unsafe archive member path: {member.name}")
    if member.issym() or member.islnk():
        raise FetchError(f"archive member is a link: {member.name}")
    if not (member.isfile() or member.isdir()):
        raise FetchError(f"unsupported archive member type: {member.name}")
