#!/usr/bin/env python3
"""
db-monitor host resource checks.

Each checker samples one metric through the command seam or a /proc read,
compares it with its threshold and returns the alerts to send. Sampling
failures are logged at WARNING and produce no alert.
"""

from __future__ import annotations

import hashlib
import os
import re
from collections import Counter
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from dbmonitor.lib.system_commands import CommandUnavailable

from .context import Alert, MonitorContext
from .health_probe import mysql_client_argv, mysql_env

MEMINFO = Path("/proc/meminfo")
_DF_PERCENT_RE = re.compile(r"\s(\d+)%\s")
_SSH_FAIL_RE = re.compile(r"Failed (?:password|publickey) for (?:invalid user )?\S+ from ([0-9a-fA-F:.]+)")
_SMART_RESULT_RE = re.compile(r"(?:self-assessment test result|SMART Health Status):\s*(\S+)", re.IGNORECASE)


class SampleError(RuntimeError):
    """Raised when a metric cannot be sampled or parsed."""


# -- pure comparisons -------------------------------------------------------

def evaluate_disk(path: str, usage: float, threshold: float) -> Optional[Alert]:
    if usage <= threshold:
        return None
    return Alert(
        "disk",
        "⚠️",
        f"Disk usage {path} at {usage:g}%",
        detail=f"threshold {threshold:g}%",
        remediation="Purge binary logs or old backups, or grow the volume.",
    )


def evaluate_load(load1: float, threshold: float) -> Optional[Alert]:
    if load1 <= threshold:
        return None
    return Alert(
        "cpu",
        "🔥",
        f"CPU load average {load1:.2f}",
        detail=f"1m load > {threshold:g}",
        remediation="Check SHOW PROCESSLIST for long-running queries.",
    )


def evaluate_memory(percent: float, threshold: float) -> Optional[Alert]:
    if percent <= threshold:
        return None
    return Alert(
        "memory",
        "🧠",
        f"Memory usage {percent:.1f}%",
        detail=f"threshold {threshold:g}%",
        remediation="Review innodb_buffer_pool_size and per-connection buffers.",
    )


def evaluate_connection_pool(used: int, maximum: int, threshold: float) -> Optional[Alert]:
    if maximum <= 0:
        return None
    percent = round(used / maximum * 100, 1)
    if percent <= threshold:
        return None
    return Alert(
        "connpool",
        "🔄",
        f"MySQL connections {used}/{maximum} ({percent:g}%)",
        detail=f"threshold {threshold:g}%",
        remediation="Look for connection leaks or raise max_connections.",
    )


def evaluate_service(name: str, state: str) -> Optional[Alert]:
    if state == "active":
        return None
    return Alert(
        "dependency",
        "⚙️",
        f"Service {name} is not active",
        detail=f"state: {state or 'unknown'}",
        severity="ERROR",
        remediation=f"systemctl status {name}",
    )


def evaluate_smart(device: str, status: str) -> Optional[Alert]:
    if status.upper() in {"PASSED", "OK"}:
        return None
    return Alert(
        "smart",
        "💽",
        f"SMART health {device}: {status}",
        severity="CRITICAL",
        remediation="Replace the disk and verify backups.",
    )


def evaluate_login_failures(counts: Dict[str, int], threshold: int) -> List[Tuple[str, int]]:
    return sorted(
        ((ip, count) for ip, count in counts.items() if count >= threshold),
        key=lambda item: (-item[1], item[0]),
    )


def evaluate_config_hashes(
    previous: Dict[str, str],
    current: Dict[str, str],
) -> Tuple[List[str], Dict[str, str]]:
    """Return (changed basenames, merged hash table); a missing prior hash is a first observation."""
    changed = [name for name, digest in current.items() if name in previous and previous[name] != digest]
    merged = dict(previous)
    merged.update(current)
    return changed, merged


# -- parsers ----------------------------------------------------------------

def parse_df_percent(output: str) -> int:
    lines = [line for line in output.strip().splitlines() if line.strip()]
    if len(lines) < 2:
        raise SampleError("unexpected df output")
    match = _DF_PERCENT_RE.search(lines[-1] + " ")
    if not match:
        raise SampleError("no usage column in df output")
    return int(match.group(1))


def read_meminfo(path: Path = MEMINFO) -> Dict[str, int]:
    result: Dict[str, int] = {}
    try:
        with open(path, "r", encoding="utf-8") as fh:
            for line in fh:
                if ":" not in line:
                    continue
                key, value = line.split(":", 1)
                value = value.strip().split()[0]
                try:
                    result[key] = int(value)
                except ValueError:
                    continue
    except OSError as exc:
        raise SampleError(f"cannot read {path}: {exc}") from exc
    return result


def memory_usage_percent(info: Dict[str, int]) -> float:
    mem_total = info.get("MemTotal")
    if not mem_total:
        raise SampleError("MemTotal missing")
    mem_available = info.get("MemAvailable")
    if mem_available is None:
        mem_free = info.get("MemFree", 0)
        buffers = info.get("Buffers", 0)
        cached = info.get("Cached", 0)
        mem_available = mem_free + buffers + cached
    used = mem_total - mem_available
    return (used / mem_total) * 100.0


def parse_mysql_variable(output: str) -> int:
    for line in output.splitlines():
        parts = line.strip().split()
        if len(parts) == 2:
            try:
                return int(float(parts[1]))
            except ValueError:
                continue
    raise SampleError("unexpected mysql output")


def count_login_failures(lines: Iterable[str]) -> Dict[str, int]:
    counts: Counter = Counter()
    for line in lines:
        match = _SSH_FAIL_RE.search(line)
        if match:
            counts[match.group(1)] += 1
    return dict(counts)


def parse_smart_status(output: str) -> str:
    match = _SMART_RESULT_RE.search(output)
    if not match:
        raise SampleError("no SMART health line in smartctl output")
    return match.group(1).upper()


def count_upgradable(output: str) -> Tuple[int, int]:
    total = security = 0
    for line in output.splitlines():
        if "/" not in line or "upgradable from" not in line:
            continue
        total += 1
        if "-security" in line.split()[0]:
            security += 1
    return total, security


def file_md5(path: Path) -> str:
    digest = hashlib.md5()  # nosec B324 - change detection only
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


# -- samplers ---------------------------------------------------------------

def _skip(ctx: MonitorContext, name: str, exc: Exception) -> List[Alert]:
    ctx.log.warning(f"{name} check skipped: {exc}")
    return []


def check_disk(ctx: MonitorContext) -> List[Alert]:
    alerts: List[Alert] = []
    for path in ctx.config.disk_paths:
        try:
            result = ctx.runner.run(["df", "-P", path])
            if not result.ok:
                raise SampleError(result.stderr.strip() or f"df exited with {result.returncode}")
            usage = parse_df_percent(result.stdout)
        except (CommandUnavailable, SampleError) as exc:
            _skip(ctx, f"disk {path}", exc)
            continue
        alert = evaluate_disk(path, usage, ctx.config.disk_threshold)
        if alert:
            alerts.append(alert)
    return alerts


def check_cpu(ctx: MonitorContext, loadavg: Callable[[], Tuple[float, float, float]] = os.getloadavg) -> List[Alert]:
    try:
        load1 = loadavg()[0]
    except OSError as exc:
        return _skip(ctx, "cpu", exc)
    alert = evaluate_load(load1, ctx.config.cpu_threshold_load_avg)
    return [alert] if alert else []


def check_memory(ctx: MonitorContext, meminfo: Path = MEMINFO) -> List[Alert]:
    try:
        percent = memory_usage_percent(read_meminfo(meminfo))
    except SampleError as exc:
        return _skip(ctx, "memory", exc)
    alert = evaluate_memory(percent, ctx.config.mem_threshold_percent)
    return [alert] if alert else []


def check_connection_pool(ctx: MonitorContext) -> List[Alert]:
    target = ctx.config.target
    timeout = ctx.config.connect_timeout

    def _query(query: str) -> int:
        result = ctx.runner.run(mysql_client_argv(target, timeout, query), timeout=timeout + 5, env=mysql_env(target))
        if not result.ok:
            raise SampleError(result.stderr.strip() or f"mysql exited with {result.returncode}")
        return parse_mysql_variable(result.stdout)

    try:
        maximum = _query("SHOW VARIABLES LIKE 'max_connections'")
        used = _query("SHOW GLOBAL STATUS LIKE 'Threads_connected'")
    except (CommandUnavailable, SampleError) as exc:
        return _skip(ctx, "connection pool", exc)
    alert = evaluate_connection_pool(used, maximum, ctx.config.conn_pool_threshold)
    return [alert] if alert else []


def check_dependencies(ctx: MonitorContext) -> List[Alert]:
    alerts: List[Alert] = []
    for service in ctx.config.dependencies:
        try:
            result = ctx.runner.run(["systemctl", "is-active", service])
        except CommandUnavailable as exc:
            return alerts + _skip(ctx, "dependency", exc)
        alert = evaluate_service(service, result.stdout.strip())
        if alert:
            alerts.append(alert)
    return alerts


def check_smart(ctx: MonitorContext) -> List[Alert]:
    alerts: List[Alert] = []
    for device in ctx.config.smart_devices:
        try:
            result = ctx.runner.run(["smartctl", "-H", device])
            status = parse_smart_status(result.stdout)
        except (CommandUnavailable, SampleError) as exc:
            _skip(ctx, f"SMART {device}", exc)
            continue
        alert = evaluate_smart(device, status)
        if alert:
            alerts.append(alert)
    return alerts


def check_config_integrity(ctx: MonitorContext) -> List[Alert]:
    current: Dict[str, str] = {}
    for path in ctx.config.config_files():
        if not path.exists():
            continue
        try:
            current[path.name] = file_md5(path)
        except OSError as exc:
            _skip(ctx, f"config hash {path}", exc)
    previous = ctx.state.load_hashes()
    changed, merged = evaluate_config_hashes(previous, current)
    ctx.state.save_hashes(merged)
    return [
        Alert(
            "config",
            "🔧",
            f"Config {name} changed",
            remediation="Verify the change was intended.",
        )
        for name in changed
    ]


def check_ssh_bruteforce(ctx: MonitorContext) -> List[Alert]:
    cfg = ctx.config
    now = ctx.clock()
    since = ctx.state.last_security_scan()
    if since is None:
        since = now - cfg.ssh_initial_window
    alerts: List[Alert] = []
    try:
        result = ctx.runner.run(
            [
                "journalctl",
                "-u",
                cfg.ssh_unit,
                "--since",
                f"@{int(since)}",
                "--until",
                f"@{int(now)}",
                "--no-pager",
                "-o",
                "cat",
            ]
        )
        if not result.ok:
            raise SampleError(result.stderr.strip() or f"journalctl exited with {result.returncode}")
        offenders = evaluate_login_failures(count_login_failures(result.stdout.splitlines()), cfg.login_fail_threshold)
        for ip, count in offenders:
            blocked = ""
            if cfg.auto_block_ip:
                blocked = _ban_ip(ctx, ip)
            alerts.append(
                Alert(
                    "security",
                    "🛡️",
                    f"SSH brute force from {ip}: {count} failed logins",
                    detail=blocked or f"threshold {cfg.login_fail_threshold}",
                    remediation="" if blocked else "Consider AUTO_BLOCK_IP=true or a fail2ban jail.",
                )
            )
    except (CommandUnavailable, SampleError) as exc:
        _skip(ctx, "ssh", exc)
    finally:
        ctx.state.set_last_security_scan(now)
    return alerts


def _ban_ip(ctx: MonitorContext, ip: str) -> str:
    try:
        result = ctx.runner.run(["fail2ban-client", "set", ctx.config.fail2ban_jail, "banip", ip])
    except CommandUnavailable as exc:
        ctx.log.warning(f"auto block {ip} failed: {exc}")
        return ""
    if not result.ok:
        ctx.log.warning(f"auto block {ip} failed: {result.output}")
        return ""
    ctx.log.info(f"banned {ip} in jail {ctx.config.fail2ban_jail}")
    return f"blocked in fail2ban jail {ctx.config.fail2ban_jail}"


def check_package_updates(ctx: MonitorContext) -> List[Alert]:
    if not ctx.config.check_package_updates:
        return []
    try:
        result = ctx.runner.run(["apt", "list", "--upgradable"], timeout=120)
        if not result.ok:
            raise SampleError(result.stderr.strip() or f"apt exited with {result.returncode}")
    except (CommandUnavailable, SampleError) as exc:
        return _skip(ctx, "package updates", exc)
    total, security = count_upgradable(result.stdout)
    if total <= ctx.config.package_update_threshold:
        return []
    return [
        Alert(
            "packages",
            "📦",
            f"{total} package update(s) available ({security} security)",
            severity="NOTICE" if not security else "WARNING",
            remediation="apt upgrade during the next maintenance window.",
        )
    ]


CHECKS: List[Tuple[str, Callable[[MonitorContext], List[Alert]]]] = [
    ("disk", check_disk),
    ("cpu", check_cpu),
    ("memory", check_memory),
    ("connpool", check_connection_pool),
    ("ssh", check_ssh_bruteforce),
    ("dependency", check_dependencies),
    ("smart", check_smart),
    ("config", check_config_integrity),
    ("packages", check_package_updates),
]


def run_checks(ctx: MonitorContext, checks: Optional[List[Tuple[str, Callable[[MonitorContext], List[Alert]]]]] = None) -> List[Alert]:
    """Run every checker in order and send the alerts they produce."""
    collected: List[Alert] = []
    for _name, check in checks or CHECKS:
        for alert in check(ctx):
            ctx.notify(alert)
            collected.append(alert)
    return collected
