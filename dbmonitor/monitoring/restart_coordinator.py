"""Rate-limited MySQL restarts and cross-run recovery confirmation."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from dbmonitor.lib import config_loader
from dbmonitor.lib.system_commands import CommandUnavailable

from .context import Alert, MonitorContext
from .health_probe import ProbeResult

SUPPRESSED = "suppressed"
RESTARTED = "restarted"
SKIPPED = "skipped"


@dataclass
class RestartOutcome:
    kind: str
    output: str = ""
    reason: str = ""
    recent_count: int = 0
    verified: Optional[bool] = None


class RestartCoordinator:
    """Decide between restarting MySQL and escalating.

    Restarts inside the trailing ``restart_period`` window are counted from the
    restart history; once ``max_restarts`` is reached the restart is
    suppressed and a CRITICAL escalation is sent instead. A restart counts as
    verified only when the restart command exits 0 and ``verify`` (a single
    re-probe) succeeds; the command output text is reported but never parsed.
    """

    def __init__(self, ctx: MonitorContext, verify: Optional[Callable[[], ProbeResult]] = None) -> None:
        self.ctx = ctx
        self.verify = verify

    def on_probe_failure(self, result: ProbeResult, auto_restart_enabled: bool) -> RestartOutcome:
        ctx = self.ctx
        cfg = ctx.config
        if not auto_restart_enabled:
            ctx.log.info("auto restart disabled; skipping restart")
            return RestartOutcome(SKIPPED, reason="disabled")

        now = ctx.clock()
        recent = ctx.state.recent_restart_count(now, cfg.restart_period)
        if recent >= cfg.max_restarts:
            ctx.notify(
                Alert(
                    "restart",
                    "🚨",
                    f"MySQL restarted {recent}x within {cfg.restart_period}s and is still failing; auto restart suppressed",
                    detail=f"Server: {cfg.target.ip}\nError: {result.last_error}",
                    severity="CRITICAL",
                    remediation="Manual intervention required: inspect the MySQL error log and journalctl.",
                ),
                tag="db-monitor/restart/suppressed",
            )
            config_loader.fire_event(
                "db-monitor/restart/suppressed",
                {"site": cfg.target.site, "recent": recent, "error": result.last_error},
            )
            return RestartOutcome(SUPPRESSED, reason="rate limited", recent_count=recent)

        argv = cfg.restart_argv()
        try:
            command = ctx.runner.run(argv, timeout=120)
            output = command.output or "restart command sent"
            exit_ok = command.ok
        except CommandUnavailable as exc:
            output = str(exc)
            exit_ok = False
        ctx.state.append_restart_record(now, output)
        ctx.state.set_restart_marker(now)
        ctx.log.info(f"restart ({' '.join(argv)}): {output}")

        verified = False
        if exit_ok and self.verify is not None:
            verified = self.verify().success
        status = "verified by re-probe" if verified else "NOT verified"
        ctx.notify(
            Alert(
                "restart",
                "🔄",
                f"MySQL restarted ({status})",
                detail=output,
                severity="WARNING" if verified else "ERROR",
            ),
            tag="db-monitor/restart",
        )
        config_loader.fire_event(
            "db-monitor/restart",
            {"site": cfg.target.site, "verified": verified, "output": output},
        )
        return RestartOutcome(RESTARTED, output=output, recent_count=recent, verified=verified)

    def confirm_recovery(self, result: ProbeResult) -> bool:
        """Send the recovery alert when a restart in the previous run led to success."""
        if not result.success:
            return False
        ctx = self.ctx
        marker = ctx.state.restart_marker_time()
        if marker is None:
            return False
        age = ctx.clock() - marker
        ctx.state.clear_restart_marker()
        if age > ctx.config.recovery_window:
            ctx.log.info(f"restart marker is {int(age)}s old; cleared without recovery alert")
            return False
        ctx.notify(Alert("recovery", "✅", "MySQL recovered after restart", severity="INFO"))
        return True
