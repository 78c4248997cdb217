"""Per-run collaborators passed explicitly into every monitoring component."""
from __future__ import annotations

import html
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from dbmonitor.lib.config_loader import MonitorConfig
from dbmonitor.lib.logging_utils import MonitorLog
from dbmonitor.lib.notification import AlertSink
from dbmonitor.lib.state_store import StateStore
from dbmonitor.lib.system_commands import CommandRunner


@dataclass(frozen=True)
class Alert:
    category: str
    emoji: str
    title: str
    detail: str = ""
    severity: str = "WARNING"
    remediation: str = ""

    def render(self, site: str) -> str:
        lines = [f"{self.emoji} <b>{html.escape(site)}</b> {html.escape(self.title)}"]
        if self.detail:
            lines.append(f"<pre>{html.escape(self.detail)}</pre>")
        if self.remediation:
            lines.append(f"<i>{html.escape(self.remediation)}</i>")
        return "\n".join(lines)


@dataclass
class MonitorContext:
    config: MonitorConfig
    log: MonitorLog
    alerts: AlertSink
    state: StateStore
    runner: CommandRunner = field(default_factory=CommandRunner)
    clock: Callable[[], float] = time.time
    sleep: Callable[[float], None] = time.sleep

    @property
    def site(self) -> str:
        return self.config.target.site

    def notify(self, alert: Alert, *, tag: Optional[str] = None) -> bool:
        self.log.log(f"{alert.category}: {alert.title}" + (f" ({alert.detail})" if alert.detail else ""), alert.severity)
        return self.alerts.send(alert.render(self.site), tag=tag or f"db-monitor/{alert.category}", severity=alert.severity)
