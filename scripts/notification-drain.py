#!/usr/bin/env python3
"""Drain and replay db-monitor alerts that failed to reach Telegram."""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Dict, List, Optional

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from dbmonitor.lib import notification_queue  # type: ignore  # noqa: E402
from dbmonitor.lib.config_loader import ConfigError, load_config  # type: ignore  # noqa: E402


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Replay queued Telegram alerts")
    parser.add_argument("--config", type=Path, help="YAML config file (default: $DB_MONITOR_CONFIG)")
    parser.add_argument("--queue-dir", help="queue directory (default: <log_dir>/notify-queue)")
    parser.add_argument("--max", type=int, default=0, help="maximum records to process (0 = all)")
    parser.add_argument("--dry-run", action="store_true", help="simulate without deleting files")
    parser.add_argument("--verbose", action="store_true", help="print every record result")
    parser.add_argument("--json-status", action="store_true", help="print JSON summary of remaining queue")
    return parser.parse_args(argv)


def load_record(path: Path) -> Optional[dict]:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        print(f"[SKIP] {path.name}: unable to parse JSON ({exc})", file=sys.stderr)
        return None


def build_status(files: List[Path], queue_dir: Path) -> dict:
    summary: Dict[str, object] = {"queue_dir": str(queue_dir), "total": len(files), "attempts": {}}
    attempts: Dict[str, int] = {}
    for path in files:
        record = load_record(path) or {}
        attempts[path.name] = int(record.get("attempts", 0))
    summary["attempts"] = attempts
    return summary


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        print(f"config error: {exc}", file=sys.stderr)
        return 3
    queue_dir = Path(args.queue_dir) if args.queue_dir else config.queue_dir
    if not queue_dir.exists():
        print(f"Queue directory {queue_dir} does not exist; nothing to do.")
        return 0

    files: List[Path] = sorted(queue_dir.glob("*.json"))
    if not files:
        print("Queue is empty.")
        if args.json_status:
            print(json.dumps(build_status([], queue_dir), ensure_ascii=False))
        return 0

    processed = success = 0
    limit = args.max if args.max and args.max > 0 else None
    for path in files:
        if limit is not None and processed >= limit:
            break
        record = load_record(path)
        if not record:
            continue
        processed += 1
        ok, info = notification_queue.retry_record(
            record,
            token=config.telegram_token,
            timeout=config.telegram_timeout,
            dry_run=args.dry_run,
        )
        prefix = "[OK]" if ok else "[FAIL]"
        if args.verbose or not ok:
            print(f"{prefix} {path.name}: {record.get('tag')} -> {info}")
        if ok:
            if not args.dry_run:
                try:
                    path.unlink()
                except FileNotFoundError:
                    pass
            success += 1
        elif not args.dry_run:
            notification_queue.update_record_metadata(path, record, info)

    print(f"Processed {processed} record(s); {'dry-run' if args.dry_run else success} succeeded.")
    if not args.dry_run and processed - success:
        print(f"{processed - success} record(s) still pending.")
    if args.json_status:
        print(json.dumps(build_status(sorted(queue_dir.glob("*.json")), queue_dir), ensure_ascii=False, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
