from __future__ import annotations

import threading
from typing import Any, Iterator
from urllib.parse import parse_qsl

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from ..errors import PackageNotFoundError, RegistryError
from ..logging import get_logger
from ..policy import HarnessPolicy
from ..ratelimit import SyncRateLimiter
from .client import RegistryPage

log = get_logger(__name__)

PAGE_SIZE = 100
_RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


class _RetryableStatus(Exception):
    """Transient HTTP status worth retrying."""


class CratesIoClient:
    """Registry client for the crates.io web API.

    Example:
        ```python
        client = CratesIoClient.from_policy(HarnessPolicy())
        ```
    """

    def __init__(
        self,
        *,
        base_url: str = "https://crates.io",
        user_agent: str = "crate-apply (batch build harness)",
        requests_per_second: float = 1.0,
        timeout_seconds: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Create the HTTP client and its shared rate limiter.

        Example:
            ```python
            client = CratesIoClient(base_url="https://crates.io", requests_per_second=0)
            ```
        """
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers={"User-Agent": user_agent, "Accept": "application/json"},
            timeout=timeout_seconds,
            follow_redirects=True,
            transport=transport,
        )
        self._limiter = SyncRateLimiter.per_second(requests_per_second)
        self._latest_hint: dict[str, str] = {}
        self._checksums: dict[tuple[str, str], str | None] = {}
        self._cache_lock = threading.Lock()

    @classmethod
    def from_policy(cls, policy: HarnessPolicy, **kwargs: Any) -> "CratesIoClient":
        """Create a client from the registry settings of a policy.

        Example:
            ```python
            client = CratesIoClient.from_policy(policy)
            ```
        """
        return cls(
            base_url=policy.registry_url,
            user_agent=policy.user_agent,
            requests_per_second=policy.requests_per_second,
            **kwargs,
        )

    def close(self) -> None:
        """Close the underlying connection pool.

        Example:
            ```python
            client.close()
            ```
        """
        self._client.close()

    def latest_version(self, name: str) -> str:
        """Return the newest stable version, else the newest version.

        Example:
            ```python
            version = client.latest_version("serde")
            ```
        """
        with self._cache_lock:
            hinted = self._latest_hint.get(name)
        if hinted:
            return hinted
        payload = self._get_json(f"/api/v1/crates/{name}")
        if payload is None:
            raise PackageNotFoundError(f"crate `{name}` not in registry")
        crate = payload.get("crate") or {}
        version = _pick_latest(crate)
        if version is None:
            raise PackageNotFoundError(f"crate `{name}` has no installable version")
        with self._cache_lock:
            for item in payload.get("versions") or []:
                if isinstance(item, dict) and "num" in item:
                    self._checksums[(name, str(item["num"]))] = item.get("checksum")
        return version

    def check_version(self, name: str, version: str) -> bool:
        """Return True when the exact version exists and is not yanked.

        Example:
            ```python
            ok = client.check_version("serde", "1.0.0")
            ```
        """
        payload = self._get_json(f"/api/v1/crates/{name}/{version}")
        if payload is None:
            return False
        info = payload.get("version") or {}
        with self._cache_lock:
            self._checksums[(name, version)] = info.get("checksum")
        return not bool(info.get("yanked", False))

    def checksum(self, name: str, version: str) -> str | None:
        """Return the sha256 of the `.crate` archive, fetching it if needed.

        Example:
            ```python
            digest = client.checksum("serde", "1.0.0")
            ```
        """
        with self._cache_lock:
            if (name, version) in self._checksums:
                return self._checksums[(name, version)]
        payload = self._get_json(f"/api/v1/crates/{name}/{version}")
        digest = None
        if payload is not None:
            digest = (payload.get("version") or {}).get("checksum")
        with self._cache_lock:
            self._checksums[(name, version)] = digest
        return digest

    def list_pages(self, cursor: str | None = None) -> Iterator[RegistryPage]:
        """Enumerate every crate with seek pagination, resuming after `cursor`.

        The cursor is the opaque query string crates.io returns as `next_page`.

        Example:
            ```python
            first = next(client.list_pages())
            rest = client.list_pages(first.next_cursor)
            ```
        """
        params: dict[str, str] = {"per_page": str(PAGE_SIZE), "sort": "alpha"}
        if cursor:
            params = dict(parse_qsl(cursor.lstrip("?")))
        while True:
            payload = self._get_json("/api/v1/crates", params=params)
            if payload is None:
                raise RegistryError("crate listing endpoint returned 404")
            crates = payload.get("crates") or []
            names: list[str] = []
            latest: dict[str, str] = {}
            for crate in crates:
                if not isinstance(crate, dict) or "name" not in crate:
                    continue
                name = str(crate["name"])
                names.append(name)
                version = _pick_latest(crate)
                if version is not None:
                    latest[name] = version
            with self._cache_lock:
                self._latest_hint.update(latest)
            next_page = (payload.get("meta") or {}).get("next_page")
            next_cursor = str(next_page).lstrip("?") if next_page else None
            if next_cursor is not None and not crates:
                raise RegistryError("crate listing returned an empty page before end of list")
            yield RegistryPage(names=names, next_cursor=next_cursor, latest=latest)
            if next_cursor is None:
                return
            params = dict(parse_qsl(next_cursor))

    def _get_json(self, path: str, params: dict[str, str] | None = None) -> dict[str, Any] | None:
        """GET a JSON document; None on 404, RegistryError on other failures.

        Example:
            ```python
            payload = client._get_json("/api/v1/crates/serde")
            ```
        """
        try:
            response = self._get_with_retry(path, params)
        except (httpx.HTTPError, _RetryableStatus) as exc:
            raise RegistryError(f"registry request {path} failed: {exc}") from exc
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise RegistryError(f"registry request {path} returned HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise RegistryError(f"registry request {path} returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise RegistryError(f"registry request {path} returned a non-object document")
        return payload

    @retry(
        reraise=True,
        stop=stop_after_attempt(4),
        wait=wait_exponential_jitter(initial=1.0, max=30.0),
        retry=retry_if_exception_type((httpx.TransportError, _RetryableStatus)),
    )
    def _get_with_retry(self, path: str, params: dict[str, str] | None) -> httpx.Response:
        """Rate-limited GET, retried on transport errors and transient statuses.

        Example:
            ```python
            response = client._get_with_retry("/api/v1/crates", {"per_page": "100"})
            ```
        """
        self._limiter.wait()
        response = self._client.get(path, params=params)
        if response.status_code in _RETRYABLE_STATUS:
            log.warning("registry_retry", path=path, status=response.status_code)
            raise _RetryableStatus(f"HTTP {response.status_code}")
        return response


def _pick_latest(crate: dict[str, Any]) -> str | None:
    """Return `max_stable_version`, falling back to `max_version`.

    Example:
        ```python
        version = _pick_latest({"max_stable_version": "1.0.0", "max_version": "1.1.0-rc1"})
        ```
    """
    for key in ("max_stable_version", "max_version", "newest_version"):
        value = crate.get(key)
        if value and value != "0.0.0":
            return str(value)
    return None
