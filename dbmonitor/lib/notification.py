from __future__ import annotations

import html
import json
import os
import re
import time
import urllib.error
import urllib.parse
import urllib.request
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .logging_utils import MonitorLog

_LEVELS = {
    "DEBUG": 0,
    "INFO": 1,
    "NOTICE": 2,
    "WARNING": 3,
    "ERROR": 4,
    "CRITICAL": 5,
}

_TAG_RE = re.compile(r"<[^>]+>")
_ELEMENT_RE = re.compile(r"<(/?)([a-zA-Z][a-zA-Z0-9-]*)[^>]*>")
_PARTIAL_TAIL_RE = re.compile(r"(<[^>]*|&[#a-zA-Z0-9]*)$")
TELEGRAM_API = os.environ.get("TELEGRAM_API_URL", "https://api.telegram.org")
MAX_MESSAGE_LENGTH = 4096
TRUNCATION_MARKER = "\n…[truncated]"


def level_value(name: str) -> int:
    return _LEVELS.get(str(name).upper(), _LEVELS["INFO"])


def html_to_plain(content: str) -> str:
    if not content:
        return ""
    return html.unescape(_TAG_RE.sub("", content))


def _closing_tags(content: str) -> str:
    """Closing tags for every element still open at the end of ``content``."""
    stack: List[str] = []
    for closing, name in _ELEMENT_RE.findall(content):
        name = name.lower()
        if not closing:
            stack.append(name)
        elif name in stack:
            while stack.pop() != name:
                pass
    return "".join(f"</{name}>" for name in reversed(stack))


def truncate_message(text: str, limit: int = MAX_MESSAGE_LENGTH) -> str:
    """Cut ``text`` to ``limit`` characters without leaving broken HTML behind.

    A tag or entity split by the cut is dropped, open elements are closed,
    then the truncation marker is appended.
    """
    if len(text) <= limit:
        return text
    budget = limit - len(TRUNCATION_MARKER)
    cut = text[:budget]
    while True:
        cut = _PARTIAL_TAIL_RE.sub("", cut)
        closers = _closing_tags(cut)
        if len(cut) + len(closers) <= budget:
            return cut + closers + TRUNCATION_MARKER
        cut = cut[: budget - len(closers)]


def queue_failure(
    queue_dir: Path,
    destination: str,
    tag: str,
    payload: Dict[str, object],
    error: str | None = None,
    context: Optional[Dict[str, object]] = None,
) -> Optional[Path]:
    try:
        queue_dir.mkdir(parents=True, exist_ok=True)
        ctx = dict(context) if isinstance(context, dict) else {}
        record = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "destination": destination,
            "tag": tag,
            "payload": payload,
            "error": error,
            "context": ctx,
            "attempts": 0,
        }
        path = queue_dir / f"{int(time.time())}_{os.getpid()}_{time.monotonic_ns()}.json"
        path.write_text(json.dumps(record, ensure_ascii=False, indent=2), encoding="utf-8")
        return path
    except OSError:
        return None


def post_telegram(token: str, chat_id: str, text: str, *, parse_mode: str = "HTML", timeout: int = 10) -> Tuple[bool, str]:
    """POST one sendMessage call; return (ok, description)."""
    data = urllib.parse.urlencode(
        {"chat_id": chat_id, "text": text, "parse_mode": parse_mode, "disable_web_page_preview": "true"}
    ).encode()
    url = f"{TELEGRAM_API}/bot{token}/sendMessage"
    req = urllib.request.Request(url, data=data)
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:  # nosec B310
            raw = resp.read()
    except urllib.error.HTTPError as exc:
        try:
            raw = exc.read()
        except Exception:
            return False, f"HTTP {exc.code}"
    except (urllib.error.URLError, OSError) as exc:
        return False, str(getattr(exc, "reason", exc))
    try:
        response = json.loads(raw or b"{}")
    except ValueError:
        return False, "invalid JSON response"
    if not isinstance(response, dict):
        return False, "invalid JSON response"
    if not response.get("ok"):
        return False, str(response.get("description") or "unknown error")
    return True, "sent"


class AlertSink:
    """Deliver operator alerts to a Telegram chat."""

    def __init__(
        self,
        token: str,
        chat_id: str,
        log: MonitorLog,
        *,
        timeout: int = 10,
        min_severity: str = "INFO",
        queue_dir: Optional[Path] = None,
        dry_run: bool = False,
    ) -> None:
        self.token = token
        self.chat_id = chat_id
        self.log = log
        self.timeout = timeout
        self.min_level_value = level_value(min_severity)
        self.queue_dir = queue_dir
        self.dry_run = dry_run
        self.sent: List[Dict[str, str]] = []

    def should_send(self, severity: str) -> bool:
        return level_value(severity) >= self.min_level_value

    def send(self, text: str, *, tag: str = "db-monitor", severity: str = "INFO") -> bool:
        if not self.should_send(severity):
            self.log.debug(f"alert {tag} filtered (severity {severity})")
            return False
        message = truncate_message(text)
        if self.dry_run:
            print(f"[ALERT {severity}] {html_to_plain(message)}")
            self.sent.append({"tag": tag, "severity": severity, "text": message})
            return True
        if not self.token or not self.chat_id:
            self.log.warning("Telegram token/chat id missing; alert not sent")
            return False
        ok, info = post_telegram(self.token, self.chat_id, message, timeout=self.timeout)
        if ok:
            self.sent.append({"tag": tag, "severity": severity, "text": message})
            return True
        self.log.error(f"Telegram delivery failed ({tag}): {info}")
        if self.queue_dir is not None:
            queue_failure(
                self.queue_dir,
                "telegram",
                tag,
                {"message": message, "severity": severity},
                info,
                {"chat_id": self.chat_id, "parse_mode": "HTML"},
            )
        return False
