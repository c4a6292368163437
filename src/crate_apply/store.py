"""Append-only JSON Lines result store.

Each committed record is one line written with a single `os.write` on an
`O_APPEND` descriptor and flushed with `os.fsync` before `append` returns.
"""

from __future__ import annotations

import json
import os
import threading
from collections import Counter
from pathlib import Path
from typing import Iterator

from .errors import DuplicateResultError, StoreError
from .logging import get_logger
from .results import ExecutionResult, Skipped, utc_now
from .targets import Mode

log = get_logger(__name__)

RESULTS_FILE = "results.jsonl"
_SCAN_CHUNK_BYTES = 64 * 1024


class ResultStore:
    """Durable, resumable record of every committed attempt.

    At most one attempt result exists per `(name, version, mode)` key.
    Resolution skips are indexed separately: a settled skip is unique per key,
    a transient one (registry error) is never indexed so the next run retries
    it. Neither kind ever satisfies `has` for a runnable target.

    Example:
        ```python
        store = ResultStore(Path("work/results.jsonl"))
        ```
    """

    def __init__(self, path: Path | str) -> None:
        """Open the store, repairing a torn trailing record if present.

        Example:
            ```python
            store = ResultStore("work/results.jsonl")
            ```
        """
        self._path = Path(path)
        self._lock = threading.Lock()
        self._keys: set[tuple[str, str, str]] = set()
        self._skip_keys: set[tuple[str, str, str]] = set()
        self._fd: int | None = None
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._repair_tail()
            self._load_keys()
            self._fd = os.open(self._path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o644)
        except OSError as exc:
            raise StoreError(f"cannot open result store {self._path}: {exc}") from exc

    @property
    def path(self) -> Path:
        """Return the JSON Lines file backing this store.

        Example:
            ```python
            print(store.path)
            ```
        """
        return self._path

    def __len__(self) -> int:
        """Return the number of committed attempt results.

        Example:
            ```python
            total = len(store)
            ```
        """
        with self._lock:
            return len(self._keys)

    def __enter__(self) -> "ResultStore":
        """Return the store for use in a `with` block.

        Example:
            ```python
            with ResultStore(path) as store:
                ...
            ```
        """
        return self

    def __exit__(self, *exc_info: object) -> None:
        """Close the store when leaving a `with` block.

        Example:
            ```python
            store.__exit__(None, None, None)
            ```
        """
        self.close()

    def close(self) -> None:
        """Release the append descriptor.

        Example:
            ```python
            store.close()
            ```
        """
        with self._lock:
            if self._fd is not None:
                os.close(self._fd)
                self._fd = None

    def has(self, key: tuple[str, str], mode: Mode) -> bool:
        """Return True when an attempt result for `(name, version)` in `mode` is committed.

        Example:
            ```python
            done = store.has(("serde", "1.0.0"), Mode.BUILD)
            ```
        """
        name, version = key
        with self._lock:
            return (name, version, mode.value) in self._keys

    def has_skip(self, key: tuple[str, str], mode: Mode) -> bool:
        """Return True when a settled resolution skip for `(name, version)` is committed.

        Example:
            ```python
            settled = store.has_skip(("nope", ""), Mode.BUILD)
            ```
        """
        name, version = key
        with self._lock:
            return (name, version, mode.value) in self._skip_keys

    def append(self, result: ExecutionResult) -> None:
        """Durably commit one result.

        Raises DuplicateResultError when the key is already committed in the
        result's namespace and StoreError when the write or fsync fails.

        Example:
            ```python
            store.append(result)
            ```
        """
        line = (json.dumps(result.to_dict(), ensure_ascii=False) + "\n").encode("utf-8")
        key = result.key
        index = self._index_for(result)
        with self._lock:
            if index is not None and key in index:
                raise DuplicateResultError(f"result for {key[0]}-{key[1]} ({key[2]}) already committed")
            if self._fd is None:
                raise StoreError(f"result store {self._path} is closed")
            try:
                written = os.write(self._fd, line)
                if written != len(line):
                    raise StoreError(f"short write to {self._path}: {written} of {len(line)} bytes")
                os.fsync(self._fd)
            except OSError as exc:
                raise StoreError(f"cannot append to {self._path}: {exc}") from exc
            if index is not None:
                index.add(key)

    def iterate(self) -> Iterator[ExecutionResult]:
        """Yield every committed result in commit order.

        Lines that cannot be decoded are skipped with a warning; an unterminated
        last line is a write in progress and is never yielded.

        Example:
            ```python
            for result in store.iterate():
                print(result.outcome.kind)
            ```
        """
        yield from iter_results(self._path)

    def counts(self) -> Counter[str]:
        """Return how many committed results exist per outcome kind.

        Example:
            ```python
            counts = store.counts()
            ```
        """
        return Counter(result.outcome.kind for result in self.iterate())

    def reset(self) -> Path | None:
        """Archive the current log and start an empty one.

        The archive is named `results.<UTC timestamp>.jsonl` next to the store.
        Returns the archive path, or None when there was nothing to archive.

        Example:
            ```python
            archived = store.reset()
            ```
        """
        with self._lock:
            archived: Path | None = None
            try:
                if self._fd is not None:
                    os.close(self._fd)
                    self._fd = None
                if self._path.exists() and self._path.stat().st_size > 0:
                    stamp = utc_now().strftime("%Y%m%dT%H%M%S%fZ")
                    archived = self._path.with_name(f"{self._path.stem}.{stamp}{self._path.suffix}")
                    os.replace(self._path, archived)
                self._keys.clear()
                self._skip_keys.clear()
                self._fd = os.open(self._path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o644)
            except OSError as exc:
                raise StoreError(f"cannot reset result store {self._path}: {exc}") from exc
        log.info("store_reset", path=str(self._path), archived=str(archived) if archived else None)
        return archived

    def _repair_tail(self) -> None:
        """Truncate an unterminated trailing record left by an abrupt stop.

        Example:
            ```python
            store._repair_tail()
            ```
        """
        if not self._path.exists():
            return
        with self._path.open("rb+") as fh:
            size = fh.seek(0, os.SEEK_END)
            if size == 0:
                return
            fh.seek(size - 1)
            if fh.read(1) == b"\n":
                return
            keep = 0
            position = size
            while position > 0:
                start = max(0, position - _SCAN_CHUNK_BYTES)
                fh.seek(start)
                chunk = fh.read(position - start)
                index = chunk.rfind(b"\n")
                if index >= 0:
                    keep = start + index + 1
                    break
                position = start
            fh.truncate(keep)
            fh.flush()
            os.fsync(fh.fileno())
        log.warning("store_repaired", path=str(self._path), dropped_bytes=size - keep)

    def _load_keys(self) -> None:
        """Index the keys of every committed record.

        Example:
            ```python
            store._load_keys()
            ```
        """
        for result in self.iterate():
            index = self._index_for(result)
            if index is not None:
                index.add(result.key)

    def _index_for(self, result: ExecutionResult) -> set[tuple[str, str, str]] | None:
        """Return the key index a result belongs to; None for transient skips.

        Example:
            ```python
            index = store._index_for(result)
            ```
        """
        if not result.is_resolution_record:
            return self._keys
        if isinstance(result.outcome, Skipped) and result.outcome.transient:
            return None
        return self._skip_keys


def iter_results(path: Path | str) -> Iterator[ExecutionResult]:
    """Read committed results from a store file without opening it for writing.

    Lines that cannot be decoded are skipped with a warning; an unterminated
    last line is a write in progress and is never yielded.

    Example:
        ```python
        kinds = [result.outcome.kind for result in iter_results("work/results.jsonl")]
        ```
    """
    path = Path(path)
    try:
        fh = path.open("rb")
    except FileNotFoundError:
        return
    except OSError as exc:
        raise StoreError(f"cannot read {path}: {exc}") from exc
    with fh:
        for lineno, raw in enumerate(fh, start=1):
            if not raw.endswith(b"\n"):
                return
            if not raw.strip():
                continue
            try:
                yield ExecutionResult.from_dict(json.loads(raw))
            except (ValueError, KeyError, TypeError) as exc:
                log.warning("store_line_skipped", path=str(path), line=lineno, error=str(exc))
