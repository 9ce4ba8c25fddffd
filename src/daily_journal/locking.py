"""File locking and atomic publish utilities shared by every commit path."""

from __future__ import annotations

import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

import portalocker

DEFAULT_LOCK_TIMEOUT = 60.0


def lock_path_for(path: Path) -> Path:
    """Hidden sibling lock file, ignored by the watcher and migration."""
    return path.parent / f".{path.name}.lock"


@contextmanager
def file_lock(path: Path, timeout: float = DEFAULT_LOCK_TIMEOUT) -> Generator[None, None, None]:
    """Acquire an exclusive inter-process lock for a journal file.

    Args:
        path: File to lock (need not exist yet)
        timeout: Seconds to wait for lock

    Raises:
        portalocker.LockException: If lock cannot be acquired
    """
    lock_path = lock_path_for(path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)

    if not lock_path.exists():
        lock_path.touch()

    with portalocker.Lock(lock_path, timeout=timeout):
        yield


def private_temp_file(target: Path, tag: str = "tmp") -> Path:
    """Create an empty private temp file next to target.

    The file lives in the target's directory so the final rename stays on one
    filesystem, keeps the target's suffix so encryption rules match it, and is
    hidden so watchers skip it.
    """
    fd, name = tempfile.mkstemp(
        prefix=f".{target.stem}.{tag}.",
        suffix=target.suffix,
        dir=target.parent,
    )
    os.close(fd)
    return Path(name)


def discard(path: Path) -> None:
    """Remove a temp artifact if it is still there."""
    try:
        path.unlink()
    except FileNotFoundError:
        pass


def publish(tmp_path: Path, target: Path) -> None:
    """Atomically move tmp_path onto target."""
    os.replace(tmp_path, target)


@contextmanager
def atomic_write(path: Path, encoding: str = "utf-8") -> Generator:
    """Write to a file atomically.

    Writes to a private temp file then renames to target path. Combined with
    file_lock for full safety.

    Yields:
        Text file handle for writing
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = private_temp_file(path)

    try:
        with open(tmp_path, "w", encoding=encoding) as f:
            yield f
        if path.exists():
            os.chmod(tmp_path, path.stat().st_mode & 0o777)
        publish(tmp_path, path)
    except BaseException:
        discard(tmp_path)
        raise

