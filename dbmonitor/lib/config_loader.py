"""Unified configuration loading helpers for db-monitor.

Settings are layered: built-in defaults, an optional YAML file, the Salt
pillar key ``db_monitor`` (when a minion is available), and finally
environment variables. The result is a frozen ``MonitorConfig`` snapshot that
is built once per invocation.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

try:
    from salt.client import Caller  # type: ignore
except Exception:  # pragma: no cover
    Caller = None  # type: ignore

from . import wp_config

_CALLER: Caller | None = None
DEFAULT_CONFIG_FILE = Path("/etc/db-monitor/config.yml")
DEFAULT_LOG_DIR = Path("/var/log/db-monitor")
DEFAULT_LOCK_FILE = Path("/tmp/db_monitor.lock")
PILLAR_KEY = "db_monitor"
_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


class ConfigError(RuntimeError):
    """Raised when configuration values are missing or malformed."""


@dataclass(frozen=True)
class DatabaseTarget:
    host: str = "localhost"
    port: int = 3306
    user: str = "root"
    password: str = ""
    database: str = ""
    site: str = "localhost"
    ip: str = "127.0.0.1"


@dataclass(frozen=True)
class MonitorConfig:
    log_dir: Path = DEFAULT_LOG_DIR
    lock_file: Path = DEFAULT_LOCK_FILE
    max_retries: int = 3
    retry_delay: float = 5.0
    connect_timeout: int = 5
    auto_restart: bool = True
    auto_block_ip: bool = False
    normal_notification: bool = False
    debug: bool = False
    telegram_token: str = ""
    telegram_chat_id: str = ""
    telegram_timeout: int = 10
    alert_min_severity: str = "INFO"
    wp_config_path: Optional[Path] = None
    mysql_config_path: Path = Path("/etc/mysql/my.cnf")
    watched_configs: Tuple[Path, ...] = ()
    disk_threshold: float = 90.0
    disk_paths: Tuple[str, ...] = ("/var/lib/mysql",)
    cpu_threshold_load_avg: float = 4.0
    mem_threshold_percent: float = 90.0
    conn_pool_threshold: float = 80.0
    login_fail_threshold: int = 5
    ssh_unit: str = "ssh"
    ssh_initial_window: int = 600
    fail2ban_jail: str = "sshd"
    dependencies: Tuple[str, ...] = ("cron",)
    smart_devices: Tuple[str, ...] = ()
    check_package_updates: bool = False
    package_update_threshold: int = 0
    max_restarts: int = 3
    restart_period: int = 600
    recovery_window: int = 300
    mysql_service: str = "mysql"
    restart_command: Tuple[str, ...] = ()
    update_check: bool = False
    update_version_url: str = ""
    update_script_url: str = ""
    target: DatabaseTarget = field(default_factory=DatabaseTarget)

    @property
    def log_file(self) -> Path:
        return self.log_dir / "db-monitor-log.txt"

    @property
    def queue_dir(self) -> Path:
        return self.log_dir / "notify-queue"

    def restart_argv(self) -> List[str]:
        if self.restart_command:
            return list(self.restart_command)
        return ["systemctl", "restart", self.mysql_service]

    def config_files(self) -> List[Path]:
        if self.watched_configs:
            return list(self.watched_configs)
        files = [self.mysql_config_path]
        if self.wp_config_path is not None:
            files.insert(0, self.wp_config_path)
        return files


# key -> (environment variable, parser)
_FIELDS: Dict[str, Tuple[str, str]] = {
    "log_dir": ("DB_MONITOR_LOG_DIR", "path"),
    "lock_file": ("DB_MONITOR_LOCK_FILE", "path"),
    "max_retries": ("DB_MAX_RETRIES", "int"),
    "retry_delay": ("DB_RETRY_DELAY", "float"),
    "connect_timeout": ("DB_CONNECT_TIMEOUT", "int"),
    "auto_restart": ("AUTO_RESTART", "bool"),
    "auto_block_ip": ("AUTO_BLOCK_IP", "bool"),
    "normal_notification": ("NORMAL_NOTIFICATION", "bool"),
    "debug": ("DEBUG_MODE", "bool"),
    "telegram_token": ("TELEGRAM_TOKEN", "str"),
    "telegram_chat_id": ("TELEGRAM_CHAT_ID", "str"),
    "telegram_timeout": ("TELEGRAM_TIMEOUT", "int"),
    "alert_min_severity": ("ALERT_MIN_SEVERITY", "upper"),
    "wp_config_path": ("WP_CONFIG_PATH", "path"),
    "mysql_config_path": ("MYSQL_CONFIG", "path"),
    "watched_configs": ("WATCHED_CONFIGS", "paths"),
    "disk_threshold": ("DISK_THRESHOLD", "float"),
    "disk_paths": ("DISK_PATHS", "list"),
    "cpu_threshold_load_avg": ("CPU_THRESHOLD_LOAD_AVG", "float"),
    "mem_threshold_percent": ("MEM_THRESHOLD_PERCENT", "float"),
    "conn_pool_threshold": ("CONN_POOL_THRESHOLD", "float"),
    "login_fail_threshold": ("LOGIN_FAIL_THRESHOLD", "int"),
    "ssh_unit": ("SSH_UNIT", "str"),
    "ssh_initial_window": ("SSH_INITIAL_WINDOW", "int"),
    "fail2ban_jail": ("FAIL2BAN_JAIL", "str"),
    "dependencies": ("DEPENDENCIES", "list"),
    "smart_devices": ("SMART_DEVICES", "list"),
    "check_package_updates": ("CHECK_PACKAGE_UPDATES", "bool"),
    "package_update_threshold": ("PACKAGE_UPDATE_THRESHOLD", "int"),
    "max_restarts": ("MAX_RESTARTS", "int"),
    "restart_period": ("RESTART_PERIOD", "int"),
    "recovery_window": ("RECOVERY_WINDOW", "int"),
    "mysql_service": ("MYSQL_SERVICE", "str"),
    "restart_command": ("RESTART_COMMAND", "argv"),
    "update_check": ("UPDATE_CHECK", "bool"),
    "update_version_url": ("UPDATE_VERSION_URL", "str"),
    "update_script_url": ("UPDATE_SCRIPT_URL", "str"),
}

_POSITIVE = {"max_retries", "connect_timeout", "telegram_timeout", "max_restarts", "restart_period"}


def _get_caller() -> Caller | None:
    global _CALLER
    if Caller is None:  # type: ignore
        return None
    if _CALLER is None:
        try:
            _CALLER = Caller()
        except Exception:
            return None
    return _CALLER


def pillar_get(path: str, default: Any = None) -> Any:
    if os.environ.get("DB_MONITOR_SKIP_PILLAR", "0").lower() in _TRUE:
        return default
    caller = _get_caller()
    if caller is None:
        return default
    try:
        value = caller.cmd("pillar.get", path, default)
    except Exception:
        return default
    return default if value is None else value


def fire_event(tag: str, payload: Dict[str, Any]) -> bool:
    caller = _get_caller()
    if caller is None:
        return False
    try:
        caller.cmd("event.send", tag, payload)
        return True
    except Exception:
        return False


def load_yaml_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    import yaml

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"unable to read {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping")
    section = data.get(PILLAR_KEY)
    return section if isinstance(section, dict) else data


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _split(value: Any) -> List[str]:
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item).strip()]
    return [item.strip() for item in str(value).split(",") if item.strip()]


def _coerce(key: str, kind: str, value: Any) -> Any:
    try:
        if kind == "int":
            result = int(value)
        elif kind == "float":
            result = float(value)
        elif kind == "bool":
            return parse_bool(value)
        elif kind == "path":
            return Path(str(value)).expanduser() if str(value).strip() else None
        elif kind == "paths":
            return tuple(Path(item).expanduser() for item in _split(value))
        elif kind == "list":
            return tuple(_split(value))
        elif kind == "argv":
            if isinstance(value, (list, tuple)):
                return tuple(str(item) for item in value)
            return tuple(str(value).split())
        elif kind == "upper":
            return str(value).strip().upper()
        else:
            return str(value).strip()
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"invalid value for {key}: {value!r}") from exc
    if key in _POSITIVE and result < 1:
        raise ConfigError(f"{key} must be >= 1 (got {result})")
    if result < 0:
        raise ConfigError(f"{key} must not be negative (got {result})")
    return result


def split_host_port(raw: str, default_port: int = 3306) -> Tuple[str, int]:
    host = raw.strip() or "localhost"
    if host.count(":") == 1:
        name, _, port = host.partition(":")
        # DB_HOST may carry a socket path instead of a port
        if port.isdigit():
            return name or "localhost", int(port)
        return name or "localhost", default_port
    return host, default_port


def _resolve_target(
    values: Mapping[str, Any],
    environ: Mapping[str, str],
    wp_path: Optional[Path],
) -> DatabaseTarget:
    wp: Dict[str, str] = {}
    site_from_wp: Optional[str] = None
    if wp_path is not None and wp_path.exists():
        try:
            parser = wp_config.WPConfigParser(wp_path)
        except wp_config.WPConfigError as exc:
            raise ConfigError(str(exc)) from exc
        wp = parser.database_settings()
        site_from_wp = parser.site_domain()

    def pick(env_key: str, yaml_key: str, wp_key: str, default: str) -> str:
        if environ.get(env_key):
            return environ[env_key]
        if values.get(yaml_key) not in (None, ""):
            return str(values[yaml_key])
        return wp.get(wp_key) or default

    raw_host = pick("DB_HOST", "db_host", "DB_HOST", "localhost")
    host, port = split_host_port(raw_host)
    port_override = environ.get("DB_PORT") or values.get("db_port")
    if port_override not in (None, ""):
        try:
            port = int(port_override)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"invalid value for db_port: {port_override!r}") from exc
    site = environ.get("SITE_NAME") or values.get("site_name") or site_from_wp or wp_config.local_hostname()
    return DatabaseTarget(
        host=host,
        port=port,
        user=pick("DB_USER", "db_user", "DB_USER", "root"),
        password=pick("DB_PASSWORD", "db_password", "DB_PASSWORD", ""),
        database=pick("DB_NAME", "db_name", "DB_NAME", ""),
        site=str(site),
        ip=wp_config.local_ip(),
    )


def load_config(
    config_file: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> MonitorConfig:
    """Build the per-run configuration snapshot."""
    env = os.environ if environ is None else environ
    path = config_file or Path(env.get("DB_MONITOR_CONFIG", str(DEFAULT_CONFIG_FILE)))
    values: Dict[str, Any] = dict(load_yaml_file(path))
    pillar = pillar_get(PILLAR_KEY, {})
    if isinstance(pillar, dict):
        values.update(pillar)

    kwargs: Dict[str, Any] = {}
    for key, (env_key, kind) in _FIELDS.items():
        raw = env.get(env_key)
        if raw is None or raw == "":
            raw = values.get(key)
        if raw is None:
            continue
        coerced = _coerce(key, kind, raw)
        if coerced is None and kind == "path" and key != "wp_config_path":
            continue
        kwargs[key] = coerced

    config = MonitorConfig(**kwargs)
    target = _resolve_target(values, env, config.wp_config_path)
    return replace(config, target=target)
