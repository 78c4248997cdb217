"""Small on-disk state kept between cron invocations."""
from __future__ import annotations

import json
import re
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

_RECORD_RE = re.compile(r"^\[([^\]]+)\](?:\s+epoch=(\d+(?:\.\d+)?))?")
_STAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def format_timestamp(value: float) -> str:
    return datetime.fromtimestamp(value).strftime(_STAMP_FORMAT)


def parse_timestamp(text: str) -> Optional[float]:
    try:
        return datetime.strptime(text.strip(), _STAMP_FORMAT).timestamp()
    except ValueError:
        return None


def load_json(path: Path) -> Dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except (OSError, json.JSONDecodeError):
        return {}
    return data if isinstance(data, dict) else {}


def save_json(path: Path, data: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(json.dumps(data, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
    tmp_path.replace(path)


class StateStore:
    def __init__(self, base_dir: Path) -> None:
        self.base_dir = Path(base_dir)
        self.restart_log = self.base_dir / "restart-history.log"
        self.restart_marker = self.base_dir / "last_restart.json"
        self.last_error_file = self.base_dir / "last_error.json"
        self.hash_file = self.base_dir / "config_hashes.json"
        self.security_scan_file = self.base_dir / "security_scan.json"

    def ensure(self) -> None:
        self.base_dir.mkdir(parents=True, exist_ok=True)

    # restart history
    def append_restart_record(self, timestamp: float, output: str = "") -> None:
        self.ensure()
        summary = " ".join(output.split())
        with self.restart_log.open("a", encoding="utf-8") as handle:
            handle.write(f"[{format_timestamp(timestamp)}] epoch={float(timestamp)!r} {summary}".rstrip() + "\n")

    def restart_records(self) -> List[float]:
        try:
            lines = self.restart_log.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return []
        records: List[float] = []
        for line in lines:
            match = _RECORD_RE.match(line)
            if not match:
                continue
            # older lines carry only the second-resolution stamp
            stamp = float(match.group(2)) if match.group(2) else parse_timestamp(match.group(1))
            if stamp is not None:
                records.append(stamp)
        return records

    def recent_restart_count(self, now: float, period: float) -> int:
        return sum(1 for stamp in self.restart_records() if now - stamp < period)

    # restart marker
    def set_restart_marker(self, timestamp: float) -> None:
        save_json(self.restart_marker, {"restarted_at": timestamp, "time": format_timestamp(timestamp)})

    def restart_marker_time(self) -> Optional[float]:
        value = load_json(self.restart_marker).get("restarted_at")
        if isinstance(value, (int, float)):
            return float(value)
        return None

    def clear_restart_marker(self) -> None:
        try:
            self.restart_marker.unlink()
        except FileNotFoundError:
            pass

    # last error snapshot
    def write_last_error(self, snapshot: Dict[str, Any]) -> None:
        save_json(self.last_error_file, snapshot)

    def read_last_error(self) -> Optional[Dict[str, Any]]:
        data = load_json(self.last_error_file)
        return data or None

    def clear_last_error(self) -> Optional[Dict[str, Any]]:
        previous = self.read_last_error()
        try:
            self.last_error_file.unlink()
        except FileNotFoundError:
            pass
        return previous

    # config hashes
    def load_hashes(self) -> Dict[str, str]:
        return {str(k): str(v) for k, v in load_json(self.hash_file).items()}

    def save_hashes(self, hashes: Dict[str, str]) -> None:
        save_json(self.hash_file, hashes)

    # security scan window
    def last_security_scan(self) -> Optional[float]:
        value = load_json(self.security_scan_file).get("last_scan")
        if isinstance(value, (int, float)):
            return float(value)
        return None

    def set_last_security_scan(self, timestamp: Optional[float] = None) -> None:
        stamp = time.time() if timestamp is None else timestamp
        save_json(self.security_scan_file, {"last_scan": stamp, "time": format_timestamp(stamp)})
