"""Locked, atomic JSON state-file helpers."""

from __future__ import annotations

import json
import os
import tempfile
import time
from contextlib import contextmanager
from typing import Any, Iterator

try:  # pragma: no cover - platform specific
    import msvcrt
except Exception:  # pragma: no cover - platform specific
    msvcrt = None  # type: ignore[assignment]

try:  # pragma: no cover - platform specific
    import fcntl
except Exception:  # pragma: no cover - platform specific
    fcntl = None  # type: ignore[assignment]


class StateFileError(RuntimeError):
    """Base error for state-file I/O."""


class StateFileLockError(StateFileError):
    """Raised when the sidecar lock cannot be acquired in time."""


class StateFileCorruptError(StateFileError):
    """Raised when a state file exists but does not hold valid JSON."""


def _acquire(handle: Any) -> None:
    if os.name == "nt" and msvcrt is not None:  # pragma: no cover - windows-only runtime path
        handle.seek(0)
        try:
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
        except OSError as exc:
            raise BlockingIOError(str(exc)) from exc
        return
    if fcntl is not None:  # pragma: no cover - unix-only runtime path
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            raise BlockingIOError(str(exc)) from exc


def _release(handle: Any) -> None:
    if os.name == "nt" and msvcrt is not None:  # pragma: no cover - windows-only runtime path
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
        return
    if fcntl is not None:  # pragma: no cover - unix-only runtime path
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


@contextmanager
def state_file_lock(path: str, *, timeout_seconds: float = 2.0, poll_seconds: float = 0.05) -> Iterator[None]:
    """Hold an exclusive inter-process lock on `<path>.lock`."""

    lock_path = f"{path}.lock"
    os.makedirs(os.path.dirname(os.path.abspath(lock_path)), exist_ok=True)
    deadline = time.monotonic() + max(0.05, float(timeout_seconds))
    poll = max(0.01, float(poll_seconds))

    with open(lock_path, "a+b") as handle:
        # msvcrt locks a byte range, so the file must not be empty.
        handle.seek(0, os.SEEK_END)
        if handle.tell() == 0:
            handle.write(b"0")
            handle.flush()
        handle.seek(0)

        while True:
            try:
                _acquire(handle)
                break
            except BlockingIOError as exc:
                if time.monotonic() >= deadline:
                    raise StateFileLockError(f"state lock timeout path={path}") from exc
                time.sleep(poll)
        try:
            yield
        finally:
            try:
                _release(handle)
            except OSError:
                pass


def write_json(path: str, payload: Any, *, timeout_seconds: float = 2.0) -> None:
    """Replace `path` with `payload` as pretty JSON via temp file + os.replace."""

    abs_path = os.path.abspath(path)
    state_dir = os.path.dirname(abs_path)
    os.makedirs(state_dir, exist_ok=True)

    with state_file_lock(abs_path, timeout_seconds=timeout_seconds):
        fd, tmp_path = tempfile.mkstemp(prefix=f"{os.path.basename(abs_path)}.", suffix=".tmp", dir=state_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, ensure_ascii=False, indent=2, sort_keys=True)
                f.flush()
                try:
                    os.fsync(f.fileno())
                except OSError:
                    pass
            os.replace(tmp_path, abs_path)
        except Exception:
            try:
                os.remove(tmp_path)
            except OSError:
                pass
            raise


def read_json(path: str, *, timeout_seconds: float = 2.0) -> Any:
    """Read JSON from `path`; returns None when the file does not exist."""

    abs_path = os.path.abspath(path)
    if not os.path.exists(abs_path):
        return None
    with state_file_lock(abs_path, timeout_seconds=timeout_seconds):
        try:
            with open(abs_path, "r", encoding="utf-8-sig") as f:
                return json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise StateFileCorruptError(f"state file is not valid JSON path={path}: {exc}") from exc
