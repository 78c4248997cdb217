"""Logging path helpers and the plain-text monitor log."""
from __future__ import annotations

import fcntl
import os
import sys
import time
from pathlib import Path
from typing import Optional

DEFAULT_MONITOR_LOG = Path("/var/log/db-monitor/db-monitor-log.txt")


def monitor_log_path(default: Optional[Path] = None) -> Path:
    """Return the monitor log path, honoring DB_MONITOR_LOG."""
    override = os.environ.get("DB_MONITOR_LOG")
    if override:
        return Path(override)
    return default or DEFAULT_MONITOR_LOG


def ensure_log_dir(path: Path) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError:
        pass


class MonitorLog:
    """Append ``[YYYY-MM-DD HH:MM:SS] LEVEL message`` lines under an exclusive flock."""

    def __init__(self, path: Path, *, echo: bool = False) -> None:
        self.path = path
        self.echo = echo
        ensure_log_dir(path)

    def log(self, message: str, level: str = "INFO") -> None:
        line = f"[{time.strftime('%Y-%m-%d %H:%M:%S')}] {level.upper()} {message}\n"
        if self.echo:
            sys.stderr.write(line)
        try:
            with self.path.open("a", encoding="utf-8") as handle:
                fcntl.flock(handle, fcntl.LOCK_EX)
                try:
                    handle.write(line)
                    handle.flush()
                finally:
                    fcntl.flock(handle, fcntl.LOCK_UN)
        except OSError as exc:
            sys.stderr.write(f"db-monitor: cannot write {self.path}: {exc}\n")

    def info(self, message: str) -> None:
        self.log(message, "INFO")

    def warning(self, message: str) -> None:
        self.log(message, "WARNING")

    def error(self, message: str) -> None:
        self.log(message, "ERROR")

    def debug(self, message: str) -> None:
        if self.echo:
            self.log(message, "DEBUG")
