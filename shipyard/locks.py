"""
Per-project mutual exclusion.

A pipeline run against a project holds two locks: an in-process lock (threads
of the webhook server) and an flock on <lock_dir>/<name>.lock (the CLI and the
webhook server are separate processes). Different projects never block each
other.
"""

import errno
import fcntl
import json
import os
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Dict, Iterator, Optional

from .errors import ProjectBusy


class ProjectLocks:
    def __init__(self, lock_dir: Path, poll_interval: float = 0.2):
        self.lock_dir = Path(lock_dir)
        self.poll_interval = poll_interval
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def _thread_lock(self, name: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(name, threading.Lock())

    def lock_file(self, name: str) -> Path:
        return self.lock_dir / f"{name}.lock"

    @contextmanager
    def hold(self, name: str, timeout: float = 0.0) -> Iterator[None]:
        """
        Hold the project's lock for the duration of the block.

        Args:
            name: Sanitized project name
            timeout: Seconds to wait for a busy lock; 0 rejects immediately

        Raises:
            ProjectBusy: The lock could not be taken in time
        """
        deadline = time.monotonic() + max(timeout, 0.0)
        lock = self._thread_lock(name)
        if timeout > 0:
            acquired = lock.acquire(timeout=timeout)
        else:
            acquired = lock.acquire(blocking=False)
        if not acquired:
            raise ProjectBusy(name)

        handle: Optional[IO[str]] = None
        try:
            handle = self._acquire_file(name, deadline)
            yield
        finally:
            if handle is not None:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
                handle.close()
            lock.release()

    def _acquire_file(self, name: str, deadline: float) -> IO[str]:
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        handle = open(self.lock_file(name), "a+", encoding="utf-8")
        while True:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except OSError as exc:
                if exc.errno not in (errno.EACCES, errno.EAGAIN):
                    handle.close()
                    raise
                if time.monotonic() >= deadline:
                    handle.close()
                    raise ProjectBusy(name)
                time.sleep(self.poll_interval)

        handle.seek(0)
        handle.truncate()
        handle.write(json.dumps({"pid": os.getpid(), "started_at": datetime.now(timezone.utc).isoformat()}))
        handle.flush()
        return handle

    def is_locked(self, name: str) -> bool:
        """Best-effort check used for status display; does not take the lock."""
        if self._thread_lock(name).locked():
            return True
        path = self.lock_file(name)
        if not path.exists():
            return False
        with open(path, "a+", encoding="utf-8") as handle:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except OSError:
                return True
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        return False
