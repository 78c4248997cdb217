"""Remote version check and script replacement for db-monitor."""
from __future__ import annotations

import argparse
import os
import re
import shutil
import sys
import time
import urllib.error
import urllib.request
from pathlib import Path
from typing import Iterable, Optional, Tuple

__version__ = "1.1.0"
USER_AGENT = f"db-monitor/{__version__}"
DEFAULT_TARGET = Path(__file__).resolve().parents[1] / "monitoring" / "db_monitor.py"


class UpdateError(RuntimeError):
    """Raised when the remote version or script cannot be fetched or written."""


def version_tuple(value: str) -> Tuple[int, ...]:
    parts = re.findall(r"\d+", value.strip().lstrip("vV"))
    if not parts:
        raise UpdateError(f"unparseable version: {value!r}")
    return tuple(int(part) for part in parts)


def is_newer(remote: str, local: str = __version__) -> bool:
    remote_v, local_v = version_tuple(remote), version_tuple(local)
    width = max(len(remote_v), len(local_v))
    return remote_v + (0,) * (width - len(remote_v)) > local_v + (0,) * (width - len(local_v))


def fetch_text(url: str, timeout: int = 5) -> str:
    if not url.lower().startswith("https://"):
        raise UpdateError(f"refusing non-HTTPS update source: {url}")
    req = urllib.request.Request(url, headers={"User-Agent": USER_AGENT})
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:  # nosec B310
            return resp.read().decode("utf-8")
    except (urllib.error.URLError, OSError, UnicodeDecodeError) as exc:
        raise UpdateError(f"fetch {url} failed: {exc}") from exc


def remote_version(url: str, timeout: int = 5) -> str:
    text = fetch_text(url, timeout).strip()
    if not text:
        raise UpdateError("remote version is empty")
    version_tuple(text)
    return text


def check_for_update(version_url: str, local: str = __version__, timeout: int = 5) -> Optional[str]:
    """Return the remote version when it is newer than ``local``."""
    remote = remote_version(version_url, timeout)
    return remote if is_newer(remote, local) else None


def apply_update(script_url: str, target: Path, timeout: int = 10) -> Path:
    """Back up ``target`` and replace it with the remote script body; return the backup path."""
    body = fetch_text(script_url, timeout)
    if not body.strip():
        raise UpdateError("remote script is empty")
    target = Path(target)
    backup = target.with_name(f"{target.name}.bak.{int(time.time())}")
    tmp_path = target.with_name(f".{target.name}.new")
    try:
        if target.exists():
            shutil.copy2(target, backup)
        tmp_path.write_text(body, encoding="utf-8")
        if target.exists():
            shutil.copymode(target, tmp_path)
        tmp_path.replace(target)
    except OSError as exc:
        raise UpdateError(f"unable to write {target}: {exc}") from exc
    return backup


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Install a newer db-monitor script from the update source")
    parser.add_argument("--version-url", default=os.environ.get("UPDATE_VERSION_URL", ""))
    parser.add_argument("--script-url", default=os.environ.get("UPDATE_SCRIPT_URL", ""))
    parser.add_argument(
        "--target",
        type=Path,
        default=Path(os.environ.get("DB_MONITOR_SCRIPT", str(DEFAULT_TARGET))),
        help=f"file to replace (default: {DEFAULT_TARGET})",
    )
    parser.add_argument("--check-only", action="store_true", help="report the remote version without installing")
    parser.add_argument("--force", action="store_true", help="install even when the remote version is not newer")
    return parser


def main(argv: Iterable[str] | None = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)
    if not args.version_url or not args.script_url:
        print("UPDATE_VERSION_URL and UPDATE_SCRIPT_URL are required", file=sys.stderr)
        return 3
    try:
        remote = remote_version(args.version_url)
        if not args.force and not is_newer(remote):
            print(f"db-monitor {__version__} is up to date (remote {remote}).")
            return 0
        if args.check_only:
            print(f"db-monitor {remote} available (installed {__version__}).")
            return 0
        backup = apply_update(args.script_url, args.target)
    except UpdateError as exc:
        print(f"update failed: {exc}", file=sys.stderr)
        return 1
    print(f"Updated {args.target} to {remote}; backup at {backup}. The next scheduled run uses the new version.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
