#!/usr/bin/env python3
"""
db-monitor entry point.

Probes MySQL, restarts it (rate limited) when it stays unreachable, confirms
recovery on the following run, then runs the host resource checks. Meant to
be invoked by cron; one pass per invocation.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from dbmonitor.lib import auto_update  # noqa: E402
from dbmonitor.lib.config_loader import ConfigError, MonitorConfig, load_config  # noqa: E402
from dbmonitor.lib.logging_utils import MonitorLog, monitor_log_path  # noqa: E402
from dbmonitor.lib.notification import AlertSink  # noqa: E402
from dbmonitor.lib.process_lock import LockHeldError, ProcessLock  # noqa: E402
from dbmonitor.lib.state_store import StateStore  # noqa: E402
from dbmonitor.lib.system_commands import CommandRunner  # noqa: E402
from dbmonitor.monitoring import health_probe, resource_checks  # noqa: E402
from dbmonitor.monitoring.context import Alert, MonitorContext  # noqa: E402
from dbmonitor.monitoring.restart_coordinator import RestartCoordinator, RestartOutcome  # noqa: E402

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_LOCKED = 2
EXIT_CONFIG = 3
EXIT_RUNTIME = 4
EXIT_DEPENDENCY = 5
MIN_PYTHON = (3, 8)
WEB_CONTEXT_VARS = ("GATEWAY_INTERFACE", "REQUEST_METHOD")


@dataclass
class RunReport:
    status: str
    probe: Optional[health_probe.ProbeResult] = None
    restart: Optional[RestartOutcome] = None
    recovered: bool = False
    alerts: List[str] = field(default_factory=list)
    update_available: Optional[str] = None


def build_context(config: MonitorConfig, *, dry_run: bool = False, runner: Optional[CommandRunner] = None) -> MonitorContext:
    log = MonitorLog(monitor_log_path(config.log_file), echo=config.debug)
    alerts = AlertSink(
        config.telegram_token,
        config.telegram_chat_id,
        log,
        timeout=config.telegram_timeout,
        min_severity=config.alert_min_severity,
        queue_dir=config.queue_dir,
        dry_run=dry_run,
    )
    state = StateStore(config.log_dir)
    state.ensure()
    return MonitorContext(config=config, log=log, alerts=alerts, state=state, runner=runner or CommandRunner())


def failure_alert(ctx: MonitorContext, result: health_probe.ProbeResult) -> Alert:
    target = ctx.config.target
    if result.category == health_probe.TRANSPORT:
        title = f"MySQL unreachable ({target.host}:{target.port}) after {result.latency_ms} ms"
    else:
        title = f"DB connection FAILED after {result.attempt_count} attempt(s)"
    return Alert(
        "probe",
        "❌",
        title,
        detail=f"Server: {target.ip}\nError: {result.last_error}",
        severity="CRITICAL",
    )


def check_updates(ctx: MonitorContext) -> Optional[str]:
    cfg = ctx.config
    if not cfg.update_check or not cfg.update_version_url:
        return None
    try:
        newer = auto_update.check_for_update(cfg.update_version_url)
    except auto_update.UpdateError as exc:
        ctx.log.warning(f"update check failed: {exc}")
        return None
    if newer is None:
        ctx.log.info(f"update check: already at {auto_update.__version__}")
        return None
    ctx.notify(
        Alert(
            "update",
            "🔄",
            f"db-monitor {newer} available (installed {auto_update.__version__})",
            severity="NOTICE",
            remediation="Run db-monitor-update to install it.",
        )
    )
    return newer


def system_info(loadavg=os.getloadavg) -> str:
    try:
        load1, load5, load15 = loadavg()
        load = f"{load1:.2f} {load5:.2f} {load15:.2f}"
    except OSError:
        load = "n/a"
    try:
        mem = f"{resource_checks.memory_usage_percent(resource_checks.read_meminfo()):.1f}%"
    except resource_checks.SampleError:
        mem = "n/a"
    return f"Load: {load} | Mem used: {mem}"


def run(ctx: MonitorContext, *, skip_resources: bool = False) -> RunReport:
    """One monitoring pass in fixed order: update check, probe, restart/recovery, resources."""
    report = RunReport(status="")
    report.update_available = check_updates(ctx)

    result = health_probe.probe(ctx)
    report.probe = result
    coordinator = RestartCoordinator(ctx, verify=lambda: health_probe.probe(ctx, max_retries=1, persist=False))
    if result.success:
        report.status = f"✔ {ctx.site} connection OK. Attempts: {result.attempt_count}"
        if ctx.config.normal_notification:
            ctx.alerts.send(f"✔ <b>{ctx.site}</b> connection OK. Attempts: {result.attempt_count}", tag="db-monitor/ok")
        report.recovered = coordinator.confirm_recovery(result)
    else:
        report.status = f"✖ {ctx.site} connection failed ({result.category}): {result.last_error}"
        ctx.notify(failure_alert(ctx, result), tag="db-monitor/probe")
        report.restart = coordinator.on_probe_failure(result, ctx.config.auto_restart)

    if not skip_resources:
        report.alerts = [alert.title for alert in resource_checks.run_checks(ctx)]
    return report


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="MySQL liveness monitor with Telegram alerts")
    parser.add_argument("--config", type=Path, help="YAML config file (default: $DB_MONITOR_CONFIG)")
    parser.add_argument("--dry-run", action="store_true", help="print alerts instead of sending them")
    parser.add_argument("--skip-resources", action="store_true", help="only probe the database")
    parser.add_argument("--status-json", action="store_true", help="print the run report as JSON")
    parser.add_argument("--version", action="version", version=f"%(prog)s {auto_update.__version__}")
    return parser.parse_args(list(argv) if argv is not None else None)


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)
    if sys.version_info < MIN_PYTHON:
        print(f"db-monitor requires Python {'.'.join(map(str, MIN_PYTHON))}+", file=sys.stderr)
        return EXIT_RUNTIME
    if any(os.environ.get(name) for name in WEB_CONTEXT_VARS):
        print("db-monitor must be run from the command line.", file=sys.stderr)
        return EXIT_ERROR

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        print(f"config error: {exc}", file=sys.stderr)
        return EXIT_CONFIG

    lock = ProcessLock(config.lock_file)
    try:
        lock.acquire()
    except LockHeldError as exc:
        MonitorLog(monitor_log_path(config.log_file), echo=config.debug).warning(f"skipping run: {exc}")
        print(str(exc), file=sys.stderr)
        return EXIT_LOCKED
    except OSError as exc:
        print(f"cannot open lock file {config.lock_file}: {exc}", file=sys.stderr)
        return EXIT_ERROR

    ctx: Optional[MonitorContext] = None
    try:
        try:
            ctx = build_context(config, dry_run=args.dry_run)
        except OSError as exc:
            print(f"cannot prepare {config.log_dir}: {exc}", file=sys.stderr)
            return EXIT_CONFIG
        if not ctx.runner.available("mysql"):
            ctx.log.error("mysql client not found in PATH")
            ctx.notify(Alert("runtime", "⛔", "db-monitor cannot run: mysql client missing", severity="CRITICAL"))
            print("mysql client not found in PATH", file=sys.stderr)
            return EXIT_DEPENDENCY
        report = run(ctx, skip_resources=args.skip_resources)
        print(report.status)
        if config.debug:
            print(system_info())
        if args.status_json:
            print(json.dumps(asdict(report), ensure_ascii=False, indent=2, default=str))
        return EXIT_OK
    except Exception as exc:  # noqa: BLE001
        if ctx is not None:
            ctx.log.error(f"run aborted: {exc}")
            ctx.notify(Alert("runtime", "⛔", "db-monitor run aborted", detail=str(exc), severity="CRITICAL"))
        print(f"db-monitor failed: {exc}", file=sys.stderr)
        return EXIT_ERROR
    finally:
        lock.release()


if __name__ == "__main__":
    raise SystemExit(main())
