"""MySQL liveness probe: socket reachability, then a handshake with backoff."""
from __future__ import annotations

import socket
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from dbmonitor.lib.config_loader import DatabaseTarget
from dbmonitor.lib.state_store import format_timestamp
from dbmonitor.lib.system_commands import CommandRunner, CommandUnavailable

from .context import MonitorContext

TRANSPORT = "transport"
HANDSHAKE = "handshake"


@dataclass
class ProbeResult:
    success: bool
    attempt_count: int
    last_error: Optional[str] = None
    latency_ms: int = 0
    category: Optional[str] = None
    recovered_from: Optional[Dict[str, Any]] = None


def backoff_delay(attempt: int, retry_delay: float) -> float:
    """Delay slept after failed ``attempt`` (1-based) before the next one."""
    return retry_delay * 2 ** (attempt - 1)


def check_transport(host: str, port: int, timeout: float) -> Tuple[bool, int, Optional[str]]:
    start = time.monotonic()
    try:
        with socket.create_connection((host, port), timeout=timeout):
            pass
    except OSError as exc:
        elapsed = int(round((time.monotonic() - start) * 1000))
        return False, elapsed, str(exc) or exc.__class__.__name__
    return True, int(round((time.monotonic() - start) * 1000)), None


def mysql_client_argv(target: DatabaseTarget, timeout: int, query: str) -> List[str]:
    argv = [
        "mysql",
        "--protocol=TCP",
        "-h",
        target.host,
        "-P",
        str(target.port),
        "-u",
        target.user,
        f"--connect-timeout={timeout}",
    ]
    if target.database:
        argv += ["-D", target.database]
    return argv + ["-Nse", query]


def mysql_env(target: DatabaseTarget) -> Dict[str, str]:
    return {"MYSQL_PWD": target.password} if target.password else {}


def handshake(runner: CommandRunner, target: DatabaseTarget, timeout: int) -> Optional[str]:
    """Return None on a successful login, else the error text."""
    try:
        result = runner.run(
            mysql_client_argv(target, timeout, "SELECT 1"),
            timeout=timeout + 5,
            env=mysql_env(target),
        )
    except CommandUnavailable as exc:
        return str(exc)
    if result.ok:
        return None
    return result.stderr.strip() or result.stdout.strip() or f"mysql exited with {result.returncode}"


def _record_failure(ctx: MonitorContext, result: ProbeResult, persist: bool = True) -> None:
    target = ctx.config.target
    if persist:
        ctx.state.write_last_error(
            {
                "site": target.site,
                "ip": target.ip,
                "time": format_timestamp(ctx.clock()),
                "error": result.last_error,
                "attempts": result.attempt_count,
                "type": result.category,
            }
        )
    ctx.log.error(f"probe failed ({result.category}) after {result.attempt_count} attempt(s): {result.last_error}")


def probe(
    ctx: MonitorContext,
    target: Optional[DatabaseTarget] = None,
    *,
    max_retries: Optional[int] = None,
    persist: bool = True,
) -> ProbeResult:
    """Check the database; failures are returned, never raised.

    With ``persist`` false the last-error snapshot is neither written nor
    cleared, so a follow-up check cannot overwrite the run's own failure.
    """
    target = target or ctx.config.target
    retries = max_retries or ctx.config.max_retries
    timeout = ctx.config.connect_timeout

    ok, latency, error = check_transport(target.host, target.port, timeout)
    if not ok:
        result = ProbeResult(False, 1, error, latency, TRANSPORT)
        _record_failure(ctx, result, persist)
        return result

    last_error: Optional[str] = None
    for attempt in range(1, retries + 1):
        start = time.monotonic()
        last_error = handshake(ctx.runner, target, timeout)
        latency = int(round((time.monotonic() - start) * 1000))
        if last_error is None:
            previous = ctx.state.clear_last_error() if persist else None
            ctx.log.info(f"{target.site} connection OK. Attempts: {attempt}")
            if previous:
                ctx.log.info(f"recovered since failure at {previous.get('time')}: {previous.get('error')}")
            return ProbeResult(True, attempt, None, latency, None, previous)
        ctx.log.warning(f"attempt {attempt}: {last_error}")
        if attempt < retries:
            ctx.sleep(backoff_delay(attempt, ctx.config.retry_delay))

    result = ProbeResult(False, retries, last_error, latency, HANDSHAKE)
    _record_failure(ctx, result, persist)
    return result
