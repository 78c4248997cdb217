"""Single-instance guard for cron invocations."""
from __future__ import annotations

import fcntl
import os
from pathlib import Path
from typing import IO, Optional


class LockHeldError(RuntimeError):
    """Raised when another invocation already holds the lock."""


class ProcessLock:
    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._handle: Optional[IO[str]] = None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = self.path.open("a+", encoding="utf-8")
        try:
            fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            handle.close()
            raise LockHeldError(f"another db-monitor run holds {self.path}") from exc
        handle.seek(0)
        handle.truncate()
        handle.write(str(os.getpid()))
        handle.flush()
        self._handle = handle

    def release(self) -> None:
        if self._handle is None:
            return
        try:
            fcntl.flock(self._handle, fcntl.LOCK_UN)
        finally:
            self._handle.close()
            self._handle = None

    def __enter__(self) -> "ProcessLock":
        self.acquire()
        return self

    def __exit__(self, *_exc: object) -> None:
        self.release()
