"""Read database settings and the site domain from a WordPress wp-config.php."""
from __future__ import annotations

import re
import socket
import urllib.parse
from pathlib import Path
from typing import Dict, Optional


class WPConfigError(RuntimeError):
    """Raised when wp-config.php cannot be read."""


def local_hostname() -> str:
    return socket.gethostname() or "localhost"


def local_ip() -> str:
    try:
        return socket.gethostbyname(local_hostname())
    except OSError:
        return "127.0.0.1"


class WPConfigParser:
    def __init__(self, path: Path) -> None:
        try:
            self.text = Path(path).read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            raise WPConfigError(f"wp-config.php not readable: {path} ({exc})") from exc
        self.path = Path(path)

    def value(self, key: str) -> Optional[str]:
        pattern = r"define\s*\(\s*['\"]" + re.escape(key) + r"['\"]\s*,\s*['\"](.*?)['\"]\s*\)"
        match = re.search(pattern, self.text)
        return match.group(1) if match else None

    def database_settings(self) -> Dict[str, str]:
        settings: Dict[str, str] = {}
        for key in ("DB_HOST", "DB_USER", "DB_PASSWORD", "DB_NAME"):
            value = self.value(key)
            if value is not None:
                settings[key] = value
        return settings

    def site_domain(self) -> Optional[str]:
        home = self.value("WP_HOME") or self.value("WP_SITEURL")
        if not home:
            return None
        return urllib.parse.urlparse(home).hostname
