"""Journal timestamp monitor - keeps each entry's `updated:` field fresh.

Monitors a journal directory and, whenever an entry changes, rewrites its
`updated:` frontmatter line to the current time, decrypting and re-encrypting
sops-encrypted entries transparently.

This module provides:
1. Change sources - inotifywait events, mtime polling, or a fixed list
2. TimestampReconciler - the per-file update state machine
3. run() - a loop dispatching change events to a bounded worker pool
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional

from .errors import EncryptionError, WatchedDirectoryLost
from .locking import atomic_write, discard, file_lock, private_temp_file, publish
from .models import (
    EncryptionState,
    format_timestamp,
    is_candidate_file,
    now,
    parse_timestamp,
    read_frontmatter,
    split_frontmatter,
)
from .sops import SopsTool, is_encrypted

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 60.0  # seconds
INOTIFY_SESSION_TIMEOUT = 3600  # seconds before inotifywait is restarted
INOTIFY_RESTART_DELAY = 5.0  # seconds
DEFAULT_WORKERS = 4

_UPDATED_RE = re.compile(r"^updated:.*$")


class ReconcileOutcome(Enum):
    """What happened to one change notification."""
    UPDATED = "updated"
    SKIPPED = "skipped"
    FAILED = "failed"


# ========== Change sources ==========


class StaticChangeSource:
    """A finite, pre-recorded sequence of changed paths."""

    def __init__(self, paths: Iterable[Path]):
        self.paths = list(paths)

    def __iter__(self) -> Iterator[Path]:
        return iter(self.paths)


class PollingChangeSource:
    """Periodically scan a directory for entries whose mtime changed.

    Staleness is bounded by the poll interval. The first scan reports files
    modified within the last interval, matching a `find -mmin` sweep.
    """

    def __init__(
        self,
        directory: Path,
        interval: float = DEFAULT_POLL_INTERVAL,
        stop_event: Optional[threading.Event] = None,
        max_scans: Optional[int] = None,
    ):
        self.directory = directory
        self.interval = interval
        self.stop_event = stop_event or threading.Event()
        self.max_scans = max_scans
        self._seen: dict[Path, int] = {}
        self._primed = False

    def scan(self) -> list[Path]:
        """One pass over the directory.

        Raises:
            WatchedDirectoryLost: If the directory no longer exists.
        """
        if not self.directory.is_dir():
            raise WatchedDirectoryLost(f"Journal directory no longer exists: {self.directory}")

        cutoff = time.time() - self.interval
        changed = []
        current: dict[Path, int] = {}
        for path in sorted(self.directory.iterdir()):
            if not is_candidate_file(path):
                continue
            try:
                st = path.stat()
            except OSError:
                continue
            current[path] = st.st_mtime_ns
            if self._primed:
                if self._seen.get(path) != st.st_mtime_ns:
                    changed.append(path)
            elif st.st_mtime >= cutoff:
                changed.append(path)

        self._seen = current
        self._primed = True
        return changed

    def __iter__(self) -> Iterator[Path]:
        scans = 0
        while not self.stop_event.is_set():
            logger.debug("Checking for files modified in %s", self.directory)
            yield from self.scan()
            scans += 1
            if self.max_scans is not None and scans >= self.max_scans:
                return
            self.stop_event.wait(self.interval)


class InotifyChangeSource:
    """Event-driven source backed by an `inotifywait -m` subprocess.

    The subprocess is restarted after INOTIFY_SESSION_TIMEOUT seconds or if it
    dies, so a long-running monitor survives transient failures.
    """

    def __init__(
        self,
        directory: Path,
        executable: str = "inotifywait",
        stop_event: Optional[threading.Event] = None,
        session_timeout: float = INOTIFY_SESSION_TIMEOUT,
        restart_delay: float = INOTIFY_RESTART_DELAY,
    ):
        self.directory = directory
        self.executable = executable
        self.stop_event = stop_event or threading.Event()
        self.session_timeout = session_timeout
        self.restart_delay = restart_delay
        self._process: Optional[subprocess.Popen] = None

    @staticmethod
    def available(executable: str = "inotifywait") -> bool:
        return shutil.which(executable) is not None

    def command(self) -> list[str]:
        return [
            self.executable, "-q", "-m",
            "-e", "modify", "-e", "close_write",
            "--format", "%w%f",
            str(self.directory),
        ]

    def _session(self) -> Iterator[Path]:
        self._process = subprocess.Popen(
            self.command(),
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            text=True,
        )
        timer = threading.Timer(self.session_timeout, self._process.terminate)
        timer.daemon = True
        timer.start()
        try:
            assert self._process.stdout is not None
            for line in self._process.stdout:
                if self.stop_event.is_set():
                    break
                line = line.strip()
                if line:
                    yield Path(line)
        finally:
            timer.cancel()
            self.close()

    def close(self) -> None:
        """Terminate the running inotifywait, if any."""
        process, self._process = self._process, None
        if process is None:
            return
        if process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()

    def __iter__(self) -> Iterator[Path]:
        while not self.stop_event.is_set():
            if not self.directory.is_dir():
                raise WatchedDirectoryLost(f"Journal directory no longer exists: {self.directory}")
            logger.debug("Starting inotify monitoring on %s", self.directory)
            try:
                yield from self._session()
            except OSError as e:
                logger.warning("inotifywait monitoring interrupted: %s", e)
            if self.stop_event.is_set():
                return
            logger.info("Restarting inotify monitoring in %gs", self.restart_delay)
            self.stop_event.wait(self.restart_delay)


def choose_change_source(
    directory: Path,
    poll: bool = False,
    interval: float = DEFAULT_POLL_INTERVAL,
    stop_event: Optional[threading.Event] = None,
):
    """Prefer inotify; fall back to polling when inotifywait is missing."""
    if not poll and InotifyChangeSource.available():
        logger.info("Using inotifywait for file monitoring")
        return InotifyChangeSource(directory, stop_event=stop_event)
    if not poll:
        logger.warning("inotifywait not found, using periodic checking instead")
        logger.warning("For better performance, consider installing inotify-tools package")
    logger.info("Polling %s every %gs", directory, interval)
    return PollingChangeSource(directory, interval=interval, stop_event=stop_event)


# ========== Reconciler ==========


def update_timestamp_text(text: str, timestamp: str) -> Optional[str]:
    """Rewrite the `updated:` line of the metadata block.

    Returns:
        New text, or None if the text has no metadata block with an
        `updated:` line.
    """
    located = split_frontmatter(text)
    if located is None:
        return None
    lines, start, end = located
    for i in range(start + 1, end):
        body = lines[i].rstrip("\r\n")
        if _UPDATED_RE.match(body):
            ending = lines[i][len(body):]
            lines[i] = f"updated: {timestamp}{ending}"
            return "".join(lines)
    return None


def next_timestamp(text: str, current: datetime) -> datetime:
    """The new `updated:` value, strictly later than the one in text.

    Timestamps have one-second resolution, so an edit in the same second as
    the previous update (or a clock that stepped back) bumps the old value.
    """
    previous = read_frontmatter(text).get("updated")
    if previous:
        try:
            last = parse_timestamp(previous)
        except ValueError:
            return current
        if current <= last:
            return last + timedelta(seconds=1)
    return current


class TimestampReconciler:
    """Applies `updated:` refreshes without disturbing encryption state."""

    def __init__(
        self,
        directory: Path,
        tool: Optional[SopsTool] = None,
        config_path: Optional[Path] = None,
        clock: Callable = now,
        workers: int = DEFAULT_WORKERS,
    ):
        self.directory = directory
        self.tool = tool or SopsTool()
        self.config_path = config_path
        self.clock = clock
        self.workers = workers

        self._guard = threading.Lock()
        self._path_locks: dict[Path, threading.Lock] = {}
        self._pending: set[Path] = set()
        self._own_writes: dict[Path, int] = {}

    def _lock_for(self, path: Path) -> threading.Lock:
        with self._guard:
            return self._path_locks.setdefault(path, threading.Lock())

    def _is_own_write(self, path: Path) -> bool:
        try:
            mtime = path.stat().st_mtime_ns
        except OSError:
            return False
        with self._guard:
            return self._own_writes.get(path) == mtime

    def _remember_write(self, path: Path) -> None:
        try:
            mtime = path.stat().st_mtime_ns
        except OSError:
            return
        with self._guard:
            self._own_writes[path] = mtime

    def reconcile(self, path: Path) -> ReconcileOutcome:
        """Refresh one file's `updated:` field.

        Per-file problems are logged and reported as an outcome, never raised.
        """
        path = Path(path)
        if not is_candidate_file(path):
            logger.debug("Skipping non-journal file: %s", path)
            return ReconcileOutcome.SKIPPED

        with self._lock_for(path):
            if self._is_own_write(path):
                logger.debug("Ignoring our own update of %s", path)
                return ReconcileOutcome.SKIPPED
            try:
                with file_lock(path):
                    return self._reconcile_locked(path)
            except EncryptionError as e:
                logger.error("%s: %s", path, e)
                if e.diagnostics:
                    logger.debug("sops said: %s", e.diagnostics)
                return ReconcileOutcome.FAILED
            except Exception as e:
                logger.error("Failed to update timestamp in %s: %s", path, e)
                return ReconcileOutcome.FAILED

    def _reconcile_locked(self, path: Path) -> ReconcileOutcome:
        if not path.is_file():
            logger.warning("File does not exist: %s", path)
            return ReconcileOutcome.SKIPPED
        if not os.access(path, os.R_OK):
            logger.warning("File is not readable: %s", path)
            return ReconcileOutcome.SKIPPED
        if not os.access(path, os.W_OK):
            logger.warning("File is not writable: %s", path)
            return ReconcileOutcome.SKIPPED

        state = is_encrypted(path)
        if state == EncryptionState.NOT_FOUND:
            logger.warning("File disappeared before it could be read: %s", path)
            return ReconcileOutcome.SKIPPED

        encrypted = state == EncryptionState.ENCRYPTED
        if encrypted and not self.tool.available:
            logger.warning("File appears encrypted but SOPS not available: %s", path)
            return ReconcileOutcome.SKIPPED

        text = self.tool.decrypt(path, self.config_path) if encrypted else path.read_text(encoding="utf-8")

        updated = update_timestamp_text(text, format_timestamp(next_timestamp(text, self.clock())))
        if updated is None:
            logger.debug("Skipping file without frontmatter 'updated:' field: %s", path)
            return ReconcileOutcome.SKIPPED

        logger.info("Updating timestamp for %sfile: %s", "encrypted " if encrypted else "", path)
        if encrypted:
            self._commit_encrypted(path, updated)
        else:
            with atomic_write(path) as f:
                f.write(updated)

        self._remember_write(path)
        return ReconcileOutcome.UPDATED

    def _commit_encrypted(self, path: Path, text: str) -> None:
        tmp_path = private_temp_file(path)
        try:
            tmp_path.write_text(text, encoding="utf-8")
            self.tool.encrypt_in_place(tmp_path, self.config_path)
            if is_encrypted(tmp_path) != EncryptionState.ENCRYPTED:
                raise EncryptionError(
                    "SOPS reported success but the update carries no encryption marker",
                    operation=f"re-encryption of {path.name}",
                )
            os.chmod(tmp_path, path.stat().st_mode & 0o777)
            publish(tmp_path, path)
        except BaseException:
            discard(tmp_path)
            raise

    # ========== Event loop ==========

    def _worker(self, path: Path) -> ReconcileOutcome:
        with self._guard:
            self._pending.discard(path)
        return self.reconcile(path)

    def submit(self, executor: ThreadPoolExecutor, path: Path) -> Optional[Future]:
        """Queue a change unless one for the same path is already waiting."""
        path = Path(path)
        if not is_candidate_file(path):
            return None
        with self._guard:
            if path in self._pending:
                logger.debug("Coalescing duplicate change for %s", path)
                return None
            self._pending.add(path)
        return executor.submit(self._worker, path)

    def run(self, source: Iterable[Path]) -> dict[ReconcileOutcome, int]:
        """Consume change events until the source is exhausted.

        Work is handed to a thread pool so one slow sops call cannot stall
        event consumption; same-path events are serialized by a per-path lock.

        Raises:
            WatchedDirectoryLost: If the watched directory disappears.
        """
        logger.info("Starting journal timestamp monitor for directory: %s", self.directory)
        futures: list[Future] = []
        counts = {outcome: 0 for outcome in ReconcileOutcome}

        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="reconcile") as executor:
            for path in source:
                if not self.directory.is_dir():
                    raise WatchedDirectoryLost(f"Journal directory no longer exists: {self.directory}")
                logger.debug("File modified: %s", path)
                future = self.submit(executor, path)
                if future is not None:
                    futures.append(future)
                futures = self._collect(futures, counts)

            for future in futures:
                counts[future.result()] += 1

        return counts

    @staticmethod
    def _collect(futures: list[Future], counts: dict[ReconcileOutcome, int]) -> list[Future]:
        remaining = []
        for future in futures:
            if future.done():
                counts[future.result()] += 1
            else:
                remaining.append(future)
        return remaining
