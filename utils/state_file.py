"""Inter-process locking and atomic JSON replace for local keeper state files."""

from __future__ import annotations

import errno
import json
import os
import tempfile
import time
from contextlib import contextmanager
from typing import Any, Callable, Iterator

try:  # pragma: no cover - platform specific
    import msvcrt
except Exception:  # pragma: no cover - platform specific
    msvcrt = None  # type: ignore[assignment]

try:  # pragma: no cover - platform specific
    import fcntl
except Exception:  # pragma: no cover - platform specific
    fcntl = None  # type: ignore[assignment]

E_STATE_LOCKED = "E_STATE_LOCKED"
E_JSON_CORRUPT = "E_JSON_CORRUPT"

_TRANSIENT_REPLACE_ERRNOS = {errno.EACCES, errno.EBUSY, errno.EPERM}
_REPLACE_RETRIES = 8
_REPLACE_BASE_DELAY_SECONDS = 0.03


class StateFileLockError(RuntimeError):
    """Raised when the state-file lock cannot be acquired in time."""

    code = E_STATE_LOCKED


class StateFileCorruptError(ValueError):
    """Raised when a state file exists but does not hold a JSON object."""

    code = E_JSON_CORRUPT


def _try_lock(handle: Any) -> None:
    if os.name == "nt" and msvcrt is not None:  # pragma: no cover - windows-only runtime path
        handle.seek(0)
        try:
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
            return
        except OSError as exc:
            raise BlockingIOError(str(exc)) from exc
    if fcntl is not None:  # pragma: no cover - unix-only runtime path
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            return
        except OSError as exc:
            raise BlockingIOError(str(exc)) from exc


def _unlock(handle: Any) -> None:
    if os.name == "nt" and msvcrt is not None:  # pragma: no cover - windows-only runtime path
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
        return
    if fcntl is not None:  # pragma: no cover - unix-only runtime path
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


@contextmanager
def state_file_lock(
    target_path: str,
    *,
    timeout_seconds: float = 2.0,
    poll_seconds: float = 0.05,
) -> Iterator[None]:
    """Acquire an inter-process lock for a state file using `<state>.lock`."""

    lock_path = f"{str(target_path)}.lock"
    os.makedirs(os.path.dirname(lock_path) or ".", exist_ok=True)
    timeout = max(0.05, float(timeout_seconds))
    poll = max(0.01, float(poll_seconds))
    deadline = time.monotonic() + timeout

    handle = open(lock_path, "a+b")
    locked = False
    try:
        handle.seek(0, os.SEEK_END)
        if handle.tell() == 0:
            # msvcrt locks a byte range, so the file must not be empty.
            handle.write(b"0")
            handle.flush()
        handle.seek(0)
        while True:
            try:
                _try_lock(handle)
                locked = True
                break
            except BlockingIOError as exc:
                if time.monotonic() >= deadline:
                    raise StateFileLockError(
                        f"{E_STATE_LOCKED}: state lock timeout path={target_path}"
                    ) from exc
                time.sleep(poll)
        yield
    finally:
        if locked:
            try:
                _unlock(handle)
            except OSError:
                pass
        handle.close()


def atomic_write_json(path: str, payload: Any, *, indent: int | None = 2) -> None:
    """Write JSON atomically via temp file + replace in the same directory."""

    abs_path = str(path)
    state_dir = os.path.dirname(abs_path) or "."
    os.makedirs(state_dir, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(
        prefix=f"{os.path.basename(abs_path)}.",
        suffix=".tmp",
        dir=state_dir,
        text=True,
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, indent=indent, sort_keys=True)
            f.flush()
            try:
                os.fsync(f.fileno())
            except OSError:
                pass
        for attempt in range(_REPLACE_RETRIES + 1):
            try:
                os.replace(tmp_path, abs_path)
                break
            except OSError as exc:
                transient = int(getattr(exc, "errno", 0) or 0) in _TRANSIENT_REPLACE_ERRNOS
                if (not transient) or attempt >= _REPLACE_RETRIES:
                    raise
                time.sleep(_REPLACE_BASE_DELAY_SECONDS * (1.5**attempt))
    except Exception:
        try:
            os.remove(tmp_path)
        except OSError:
            pass
        raise


def _read_json_object(path: str) -> dict[str, Any]:
    if not os.path.exists(path):
        return {}
    with open(path, "r", encoding="utf-8-sig") as f:
        raw = f.read().strip()
    if not raw:
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise StateFileCorruptError(f"{E_JSON_CORRUPT}: path={path} error={exc}") from exc
    if not isinstance(payload, dict):
        raise StateFileCorruptError(f"{E_JSON_CORRUPT}: path={path} expected object")
    return payload


def update_json_locked(
    path: str,
    mutate: Callable[[dict[str, Any]], Any],
    *,
    timeout_seconds: float = 2.0,
    poll_seconds: float = 0.05,
) -> Any:
    """Read-modify-write a JSON object under the state lock.

    `mutate` receives the current object and edits it in place. The file is only
    rewritten when the object changed; `mutate`'s return value is passed through.
    """

    with state_file_lock(path, timeout_seconds=timeout_seconds, poll_seconds=poll_seconds):
        state = _read_json_object(path)
        before = json.dumps(state, sort_keys=True)
        result = mutate(state)
        if json.dumps(state, sort_keys=True) != before:
            atomic_write_json(path, state)
        return result
