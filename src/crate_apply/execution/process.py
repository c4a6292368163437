from __future__ import annotations

import os
import signal
import subprocess
import tempfile
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Callable, Mapping, Sequence

from ..logging import get_logger

log = get_logger(__name__)

READ_CHUNK_BYTES = 64 * 1024
# Every process started for an attempt inherits this variable; the sweep finds
# escaped descendants by it.
ATTEMPT_MARKER_ENV = "CRATE_APPLY_ATTEMPT"
SWEEP_ROUNDS = 5

_running_lock = threading.Lock()
_running: dict[str, subprocess.Popen[bytes]] = {}
TRUNCATION_MARKER = "\n... [{dropped} bytes truncated] ...\n"


class BoundedCapture:
    """Keep the head and tail of a byte stream within a fixed budget.

    Example:
        ```python
        capture = BoundedCapture(limit=1024)
        capture.feed(b"hello")
        ```
    """

    def __init__(self, limit: int) -> None:
        """Split the budget evenly between head and tail.

        Example:
            ```python
            capture = BoundedCapture(limit=512 * 1024)
            ```
        """
        if limit < 2:
            raise ValueError("capture limit must be at least 2 bytes")
        self._head_limit = limit // 2
        self._tail_limit = limit - self._head_limit
        self._head = bytearray()
        self._tail = bytearray()
        self.dropped = 0

    def feed(self, chunk: bytes) -> None:
        """Append a chunk, discarding the middle once over budget.

        Example:
            ```python
            capture.feed(b"compiling...\\n")
            ```
        """
        room = self._head_limit - len(self._head)
        if room > 0:
            self._head.extend(chunk[:room])
            chunk = chunk[room:]
        if not chunk:
            return
        self._tail.extend(chunk)
        overflow = len(self._tail) - self._tail_limit
        if overflow > 0:
            del self._tail[:overflow]
            self.dropped += overflow

    def text(self) -> str:
        """Decode the kept bytes, marking where output was dropped.

        Example:
            ```python
            output = capture.text()
            ```
        """
        head = self._head.decode("utf-8", errors="replace")
        tail = self._tail.decode("utf-8", errors="replace")
        if self.dropped:
            return head + TRUNCATION_MARKER.format(dropped=self.dropped) + tail
        return head + tail


def tail_excerpt(text: str, limit_bytes: int) -> str:
    """Return at most `limit_bytes` of the end of `text`.

    Example:
        ```python
        excerpt = tail_excerpt(output, 16 * 1024)
        ```
    """
    encoded = text.encode("utf-8", errors="replace")
    if len(encoded) <= limit_bytes:
        return text
    return encoded[-limit_bytes:].decode("utf-8", errors="ignore")


@dataclass(slots=True)
class ProcessResult:
    """Exit status and bounded output of one child process.

    Example:
        ```python
        result = ProcessResult(returncode=0, output="ok", timed_out=False, elapsed=0.1, dropped=0)
        ```
    """

    returncode: int
    output: str
    timed_out: bool
    elapsed: float
    dropped: int


def kill_process_group(proc: subprocess.Popen[bytes]) -> None:
    """SIGKILL the whole process group led by `proc`, if any member is alive.

    Example:
        ```python
        kill_process_group(proc)
        ```
    """
    if os.name != "posix":
        proc.kill()
        return
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass


def _marked_pids(marker: str) -> list[int]:
    """Return live processes whose environment carries the attempt marker.

    Example:
        ```python
        pids = _marked_pids("3f2a9c...")
        ```
    """
    proc_root = Path("/proc")
    if not proc_root.is_dir():
        return []
    needle = f"{ATTEMPT_MARKER_ENV}={marker}".encode()
    own = os.getpid()
    pids: list[int] = []
    for entry in proc_root.iterdir():
        if not entry.name.isdigit() or int(entry.name) == own:
            continue
        try:
            environ = (entry / "environ").read_bytes()
        except OSError:
            # Gone, or owned by someone else.
            continue
        if needle in environ.split(b"\0"):
            pids.append(int(entry.name))
    return pids


def sweep_marked_processes(marker: str) -> set[int]:
    """SIGKILL every process still tagged with `marker`, including ones that left the group.

    Linux only; elsewhere nothing is found. Repeats a few rounds to catch
    processes forked while the sweep runs.

    Example:
        ```python
        killed = sweep_marked_processes(marker)
        ```
    """
    killed: set[int] = set()
    for _ in range(SWEEP_ROUNDS):
        pids = _marked_pids(marker)
        if not pids:
            break
        for pid in pids:
            try:
                os.kill(pid, signal.SIGKILL)
            except (ProcessLookupError, PermissionError):
                continue
            killed.add(pid)
        time.sleep(0.05)
    return killed


def terminate_running() -> int:
    """SIGKILL the process tree of every `run_bounded` call still in progress.

    Used when the caller abandons running attempts. Returns how many were killed.

    Example:
        ```python
        killed = terminate_running()
        ```
    """
    with _running_lock:
        running = list(_running.items())
    for marker, proc in running:
        kill_process_group(proc)
        sweep_marked_processes(marker)
    return len(running)


def _read_bounded(sink: IO[bytes], capture: BoundedCapture) -> None:
    """Feed a captured output file into a bounded capture from the start.

    Example:
        ```python
        _read_bounded(sink, capture)
        ```
    """
    sink.seek(0)
    while True:
        chunk = sink.read(READ_CHUNK_BYTES)
        if not chunk:
            return
        capture.feed(chunk)


def run_bounded(
    cmd: Sequence[str],
    *,
    cwd: Path,
    env: Mapping[str, str],
    timeout_seconds: float,
    max_output_bytes: int,
    on_timeout: Callable[[subprocess.Popen[bytes]], None] = kill_process_group,
    output_dir: Path | None = None,
    kill_grace_seconds: float = 5.0,
) -> ProcessResult:
    """Run `cmd` in its own session with a hard timeout and bounded output.

    stdout and stderr are merged into an unlinked file under `output_dir`, so
    a descendant that keeps the stream open can never stall the caller. On
    timeout `on_timeout` terminates the child tree. Afterwards the process
    group is killed and every process carrying this run's marker in its
    environment is swept, so nothing the command started survives.

    Example:
        ```python
        result = run_bounded(["cargo", "build"], cwd=root, env=os.environ, timeout_seconds=60, max_output_bytes=65536)
        ```
    """
    capture = BoundedCapture(max_output_bytes)
    marker = uuid.uuid4().hex
    child_env = dict(env)
    child_env[ATTEMPT_MARKER_ENV] = marker
    timed_out = False
    with tempfile.TemporaryFile(dir=output_dir) as sink:
        start = time.monotonic()
        proc = subprocess.Popen(
            list(cmd),
            cwd=str(cwd),
            env=child_env,
            stdin=subprocess.DEVNULL,
            stdout=sink,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )
        with _running_lock:
            _running[marker] = proc
        try:
            proc.wait(timeout=timeout_seconds)
        except subprocess.TimeoutExpired:
            timed_out = True
            on_timeout(proc)
            try:
                proc.wait(timeout=kill_grace_seconds)
            except subprocess.TimeoutExpired:
                kill_process_group(proc)
                proc.wait()
        finally:
            elapsed = time.monotonic() - start
            kill_process_group(proc)
            escaped = sweep_marked_processes(marker)
            with _running_lock:
                _running.pop(marker, None)
            if escaped:
                log.warning("escaped_processes_killed", pids=sorted(escaped), command=cmd[0])
        _read_bounded(sink, capture)
    return ProcessResult(
        returncode=proc.returncode if proc.returncode is not None else -signal.SIGKILL,
        output=capture.text(),
        timed_out=timed_out,
        elapsed=elapsed,
        dropped=capture.dropped,
    )
