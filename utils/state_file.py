"""Atomic file writes and locked appends for reports and tuning event logs."""

from __future__ import annotations

import errno
import json
import os
import tempfile
import time
from contextlib import contextmanager
from typing import Any, Iterator

try:  # pragma: no cover - platform specific
    import msvcrt
except ImportError:  # pragma: no cover - platform specific
    msvcrt = None  # type: ignore[assignment]

try:  # pragma: no cover - platform specific
    import fcntl
except ImportError:  # pragma: no cover - platform specific
    fcntl = None  # type: ignore[assignment]

E_FILE_LOCKED = "E_FILE_LOCKED"

_TRANSIENT_REPLACE_ERRNOS = {errno.EACCES, errno.EBUSY, errno.EPERM}
_REPLACE_RETRIES = 8
_REPLACE_BASE_DELAY_SECONDS = 0.03


class FileLockError(RuntimeError):
    """Raised when a sidecar lock cannot be acquired in time."""

    code = E_FILE_LOCKED


def _acquire(handle: Any) -> None:
    if os.name == "nt" and msvcrt is not None:  # pragma: no cover - windows-only runtime path
        handle.seek(0)
        try:
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
        except OSError as exc:
            raise BlockingIOError(str(exc)) from exc
    elif fcntl is not None:  # pragma: no cover - unix-only runtime path
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)


def _release(handle: Any) -> None:
    if os.name == "nt" and msvcrt is not None:  # pragma: no cover - windows-only runtime path
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
    elif fcntl is not None:  # pragma: no cover - unix-only runtime path
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


@contextmanager
def file_lock(target_path: str, *, timeout_seconds: float = 2.0, poll_seconds: float = 0.05) -> Iterator[None]:
    """Hold an inter-process lock on `<target>.lock` for the duration of the block."""

    lock_path = f"{target_path}.lock"
    os.makedirs(os.path.dirname(lock_path) or ".", exist_ok=True)
    deadline = time.monotonic() + max(0.05, float(timeout_seconds))
    poll = max(0.01, float(poll_seconds))

    with open(lock_path, "a+b") as handle:
        handle.seek(0, os.SEEK_END)
        if handle.tell() == 0:
            handle.write(b"0")
            handle.flush()
        while True:
            try:
                _acquire(handle)
                break
            except BlockingIOError as exc:
                if time.monotonic() >= deadline:
                    raise FileLockError(f"{E_FILE_LOCKED}: lock timeout path={target_path}") from exc
                time.sleep(poll)
        try:
            yield
        finally:
            try:
                _release(handle)
            except OSError:
                pass


def _replace_with_retry(tmp_path: str, target: str) -> None:
    for attempt in range(_REPLACE_RETRIES + 1):
        try:
            os.replace(tmp_path, target)
            return
        except OSError as exc:
            if exc.errno not in _TRANSIENT_REPLACE_ERRNOS or attempt >= _REPLACE_RETRIES:
                raise
            time.sleep(_REPLACE_BASE_DELAY_SECONDS * (1.5**attempt))


def atomic_write_text(path: str, text: str, *, encoding: str = "utf-8") -> str:
    """Write text via temp file + replace in the same directory; returns the path."""

    target = str(path)
    directory = os.path.dirname(target) or "."
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=f"{os.path.basename(target)}.", suffix=".tmp", dir=directory, text=True)
    try:
        with os.fdopen(fd, "w", encoding=encoding, newline="\n") as f:
            f.write(text)
            f.flush()
            try:
                os.fsync(f.fileno())
            except OSError:
                pass
        _replace_with_retry(tmp_path, target)
    except Exception:
        try:
            os.remove(tmp_path)
        except OSError:
            pass
        raise
    return target


def atomic_write_json(path: str, payload: Any, *, indent: int = 2, sort_keys: bool = False) -> str:
    text = json.dumps(payload, ensure_ascii=False, indent=indent, sort_keys=sort_keys, default=str)
    return atomic_write_text(path, text + "\n")


def append_jsonl_locked(path: str, row: dict[str, Any], *, timeout_seconds: float = 2.0) -> None:
    """Append one JSON row under the sidecar lock so concurrent writers do not interleave."""

    os.makedirs(os.path.dirname(str(path)) or ".", exist_ok=True)
    line = json.dumps(row, ensure_ascii=False, sort_keys=True, default=str)
    with file_lock(str(path), timeout_seconds=timeout_seconds):
        with open(path, "a", encoding="utf-8", newline="\n") as f:
            f.write(line + "\n")


def read_jsonl(path: str) -> list[dict[str, Any]]:
    if not os.path.exists(path):
        return []
    rows: list[dict[str, Any]] = []
    with open(path, "r", encoding="utf-8-sig") as f:
        for line in f:
            line = line.strip()
            if line:
                rows.append(json.loads(line))
    return rows
