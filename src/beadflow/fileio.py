"""File primitives for state shared between worker processes.

Three building blocks, all POSIX same-filesystem:

* ``acquire_lock`` creates ``<path>.lock`` exclusively and recovers locks left
  behind by dead processes.
* ``write_atomic`` writes a sibling temp file and renames it into place, so a
  reader never observes partial content.
* ``deep_merge`` / ``patch_json_locked`` apply partial updates under the lock,
  so concurrent background writers never lose each other's fields.

Readers do not take the lock; atomic rename is what makes that safe.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
import time
import uuid
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")


class _Unset:
    """Marker for "leave this key alone" inside a merge patch."""

    _instance: _Unset | None = None

    def __new__(cls) -> _Unset:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


@dataclass(frozen=True)
class LockOptions:
    timeout_ms: int = 5000
    retry_interval_ms: int = 50
    stale_ttl_ms: int = 30000


DEFAULT_LOCK_OPTIONS = LockOptions()


class LockTimeoutError(TimeoutError):
    """Raised when a lock could not be acquired before the timeout. Retryable."""

    def __init__(self, file_path: str | Path, timeout_ms: int, lock_path: str | Path) -> None:
        super().__init__(
            f"Failed to acquire lock on {file_path} after {timeout_ms}ms. Lock file: {lock_path}"
        )
        self.file_path = str(file_path)
        self.lock_path = str(lock_path)


def lock_path_for(file_path: str | Path) -> Path:
    return Path(f"{file_path}.lock")


def now_iso() -> str:
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else.
        return True
    except OSError:
        return False
    return True


def _stale_lock_content(lock_path: Path, stale_ttl_ms: int) -> str | None:
    """Return the lock's content if it is stale, else None.

    A lock is stale once it is older than the TTL and its owner is gone.
    Raises FileNotFoundError when the lock was released in the meantime.
    """
    age_ms = (time.time() - lock_path.stat().st_mtime) * 1000
    if age_ms <= stale_ttl_ms:
        return None
    content = lock_path.read_text()
    try:
        payload = json.loads(content)
    except ValueError:
        return content
    pid = payload.get("pid") if isinstance(payload, dict) else None
    if not isinstance(pid, int) or isinstance(pid, bool) or pid <= 0:
        return content
    return None if _pid_alive(pid) else content


def _break_stale_lock(lock_path: Path, observed: str) -> None:
    """Remove a stale lock, unless another process already replaced it.

    The lock is renamed aside first, so only one breaker can take it. If what
    was taken is not the lock judged stale, it is linked back into place.
    """
    aside = lock_path.with_name(f"{lock_path.name}.stale.{os.getpid()}.{uuid.uuid4().hex[:8]}")
    try:
        os.rename(lock_path, aside)
    except FileNotFoundError:
        return
    try:
        if aside.read_text() != observed:
            log.debug("Lock %s was re-acquired before it could be broken", lock_path)
            with contextlib.suppress(FileExistsError):
                os.link(aside, lock_path)
        else:
            log.warning("Breaking stale lock %s", lock_path)
    finally:
        aside.unlink(missing_ok=True)


def acquire_lock(
    file_path: str | Path, options: LockOptions | None = None
) -> Callable[[], None]:
    """Acquire the exclusive lock for *file_path* and return its release function.

    Raises ``LockTimeoutError`` once ``options.timeout_ms`` has elapsed. The
    release function may be called more than once.
    """
    opts = options or DEFAULT_LOCK_OPTIONS
    lock_path = lock_path_for(file_path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    payload = json.dumps(
        {
            "pid": os.getpid(),
            "timestamp": now_iso(),
            "filePath": str(file_path),
            "token": uuid.uuid4().hex,
        }
    )
    deadline = time.monotonic() + opts.timeout_ms / 1000

    while True:
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            try:
                stale = _stale_lock_content(lock_path, opts.stale_ttl_ms)
            except FileNotFoundError:
                # Released between our attempt and the check; retry at once.
                continue
            if stale is not None:
                _break_stale_lock(lock_path, stale)
                continue
            if time.monotonic() >= deadline:
                raise LockTimeoutError(file_path, opts.timeout_ms, lock_path) from None
            time.sleep(opts.retry_interval_ms / 1000)
            continue

        try:
            os.write(fd, payload.encode())
        finally:
            os.close(fd)
        break

    def release() -> None:
        with contextlib.suppress(FileNotFoundError):
            lock_path.unlink()

    return release


@contextlib.contextmanager
def locked(file_path: str | Path, options: LockOptions | None = None) -> Iterator[None]:
    release = acquire_lock(file_path, options)
    try:
        yield
    finally:
        release()


def ensure_dir(path: str | Path) -> Path:
    directory = Path(path)
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def write_atomic(file_path: str | Path, data: str) -> None:
    """Replace *file_path* with *data* via a same-directory temp file and rename."""
    target = Path(file_path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(dir=target.parent, prefix=f"{target.name}.tmp.{os.getpid()}.")
    temp = Path(temp_name)
    try:
        with open(fd, "w", encoding="utf-8") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp, target)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            temp.unlink()
        raise


def write_json_atomic(file_path: str | Path, data: object) -> None:
    write_atomic(file_path, json.dumps(data, indent=2))


def write_json_locked(
    file_path: str | Path, data: object, options: LockOptions | None = None
) -> None:
    with locked(file_path, options):
        write_json_atomic(file_path, data)


def read_json(file_path: str | Path) -> Any | None:
    """Parse a JSON file. Missing file -> None; malformed content raises ValueError."""
    path = Path(file_path)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Failed to parse JSON file {path}: {exc}") from None


def read_text(file_path: str | Path) -> str | None:
    try:
        return Path(file_path).read_text(encoding="utf-8")
    except FileNotFoundError:
        return None


def write_text(file_path: str | Path, content: str) -> None:
    path = Path(file_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def deep_merge(target: Mapping[str, Any], patch: Mapping[str, Any]) -> dict[str, Any]:
    """Merge *patch* into a copy of *target*.

    ``UNSET`` values are skipped, ``None`` overwrites, lists replace wholesale
    and dict-into-dict recurses. Neither argument is mutated.
    """
    result = dict(target)
    for key, value in patch.items():
        if value is UNSET:
            continue
        current = result.get(key)
        if isinstance(value, Mapping) and isinstance(current, Mapping):
            result[key] = deep_merge(current, value)
        elif isinstance(value, Mapping):
            result[key] = deep_merge({}, value)
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def patch_json_locked(
    file_path: str | Path, patch: Mapping[str, Any], options: LockOptions | None = None
) -> dict[str, Any]:
    """Deep-merge *patch* into the JSON object at *file_path* under its lock."""
    with locked(file_path, options):
        current = read_json(file_path) or {}
        merged = deep_merge(current, patch)
        write_json_atomic(file_path, merged)
    return merged


def update_json_locked(
    file_path: str | Path,
    updater: Callable[[T], T],
    fallback: T,
    options: LockOptions | None = None,
) -> T:
    """Read-modify-write the JSON at *file_path* under its lock."""
    with locked(file_path, options):
        current = read_json(file_path)
        updated = updater(fallback if current is None else current)
        write_json_atomic(file_path, updated)
    return updated
