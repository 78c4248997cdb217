"""Helpers to inspect and replay notification failure queue records."""
from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Dict, Tuple

from . import notification as notif


def retry_record(
    record: Dict[str, object],
    *,
    token: str,
    timeout: int = 10,
    dry_run: bool = False,
) -> Tuple[bool, str]:
    destination = record.get("destination")
    if destination == "telegram":
        return _retry_telegram(record, token, timeout, dry_run)
    return False, f"unsupported destination {destination}"


def _retry_telegram(record: Dict[str, object], token: str, timeout: int, dry_run: bool) -> Tuple[bool, str]:
    payload = record.get("payload")
    if not isinstance(payload, dict):
        return False, "invalid payload"
    message = payload.get("message")
    if not message:
        return False, "missing message"
    context = record.get("context") if isinstance(record.get("context"), dict) else {}
    chat_id = context.get("chat_id")
    if not chat_id:
        return False, "missing chat_id"
    if dry_run:
        return True, "dry-run"
    if not token:
        return False, "missing token"
    parse_mode = str(context.get("parse_mode") or "HTML")
    return notif.post_telegram(token, str(chat_id), str(message), parse_mode=parse_mode, timeout=timeout)


def update_record_metadata(record_path: Path, record: Dict[str, object], error: str) -> None:
    record["attempts"] = int(record.get("attempts", 0)) + 1
    record["last_error"] = error
    record["last_attempt"] = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
    record_path.write_text(json.dumps(record, ensure_ascii=False, indent=2), encoding="utf-8")
