from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
import ipaddress
import json
import logging
import math
import os
from pathlib import Path
from typing import Any


APP_NAME = "FluxWatch"
CONFIG_FILENAME = "config.json"

MIN_AUTOMATION_INTERVAL_SEC = 60
DEFAULT_REQUEST_TIMEOUT_SEC = 10
DEFAULT_SETTLE_DELAY_SEC = 5

_logger = logging.getLogger("fluxwatch.config")


def get_app_dir() -> Path:
    override = os.getenv("FLUXWATCH_HOME")
    if override:
        return Path(override)
    base = os.getenv("APPDATA") or str(Path.home())
    return Path(base) / APP_NAME


def get_log_dir() -> Path:
    return get_app_dir() / "logs"


def get_config_path() -> Path:
    return get_app_dir() / CONFIG_FILENAME


@dataclass
class MonitorConfig:
    scan_ips: list[str] = field(default_factory=list)
    target_app_prefixes: list[str] = field(default_factory=list)
    automation_interval_sec: int = MIN_AUTOMATION_INTERVAL_SEC
    settle_delay_sec: float = DEFAULT_SETTLE_DELAY_SEC
    request_timeout_sec: float = DEFAULT_REQUEST_TIMEOUT_SEC

    # Nodes reachable without probing: [{"id", "name", "ui_url", "api_url"}].
    static_nodes: list[dict[str, str]] = field(default_factory=list)

    check_connectivity: bool = True

    debug: bool = False
    log_level: str = "INFO"
    json_console_logs: bool = False
    log_file: str = "session.log"
    log_clear_on_start: bool = False
    max_log_history: int = 1000
    max_log_file_size_mb: float = 10

    @property
    def max_log_file_size_bytes(self) -> int:
        return int(self.max_log_file_size_mb * 1024 * 1024)

    @property
    def log_path(self) -> Path:
        path = Path(self.log_file)
        return path if path.is_absolute() else get_app_dir() / path


def ensure_dirs() -> None:
    get_app_dir().mkdir(parents=True, exist_ok=True)
    get_log_dir().mkdir(parents=True, exist_ok=True)


def _split_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = list(value)
    else:
        items = [value]
    return [str(item).strip() for item in items if str(item).strip()]


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


def _as_number(value: Any, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) else default


def parse_scan_ips(value: Any) -> list[str]:
    valid: list[str] = []
    for item in _split_list(value):
        try:
            ipaddress.ip_address(item)
        except ValueError:
            _logger.warning("invalid_scan_ip_ignored", extra={"ip": item})
            continue
        valid.append(item)
    return valid


def clamp_interval(seconds: Any) -> int:
    value = int(_as_number(seconds, MIN_AUTOMATION_INTERVAL_SEC))
    if value < MIN_AUTOMATION_INTERVAL_SEC:
        _logger.warning(
            "automation_interval_clamped",
            extra={"requested": value, "applied": MIN_AUTOMATION_INTERVAL_SEC},
        )
        return MIN_AUTOMATION_INTERVAL_SEC
    return value


def _normalize_static_nodes(value: Any) -> list[dict[str, str]]:
    nodes: list[dict[str, str]] = []
    if not isinstance(value, list):
        return nodes
    for item in value:
        if not isinstance(item, dict):
            continue
        node_id = str(item.get("id") or "").strip()
        api_url = str(item.get("api_url") or "").strip().rstrip("/")
        if not node_id or not api_url:
            _logger.warning("static_node_ignored", extra={"node": item})
            continue
        nodes.append(
            {
                "id": node_id,
                "name": str(item.get("name") or node_id).strip(),
                "ui_url": str(item.get("ui_url") or "").strip(),
                "api_url": api_url,
            }
        )
    return nodes


def normalize_config(cfg: MonitorConfig) -> MonitorConfig:
    cfg.scan_ips = parse_scan_ips(cfg.scan_ips)
    cfg.target_app_prefixes = _split_list(cfg.target_app_prefixes)
    cfg.automation_interval_sec = clamp_interval(cfg.automation_interval_sec)
    cfg.settle_delay_sec = max(0.0, _as_number(cfg.settle_delay_sec, DEFAULT_SETTLE_DELAY_SEC))

    timeout = _as_number(cfg.request_timeout_sec, DEFAULT_REQUEST_TIMEOUT_SEC)
    cfg.request_timeout_sec = timeout if timeout > 0 else DEFAULT_REQUEST_TIMEOUT_SEC

    cfg.static_nodes = _normalize_static_nodes(cfg.static_nodes)
    cfg.check_connectivity = _as_bool(cfg.check_connectivity)
    cfg.debug = _as_bool(cfg.debug)
    cfg.json_console_logs = _as_bool(cfg.json_console_logs)
    cfg.log_clear_on_start = _as_bool(cfg.log_clear_on_start)
    cfg.log_file = str(cfg.log_file or "").strip() or "session.log"
    cfg.log_level = str(cfg.log_level or "INFO").strip().upper() or "INFO"

    history = int(_as_number(cfg.max_log_history, 1000))
    cfg.max_log_history = history if history > 0 else 1000
    size_mb = _as_number(cfg.max_log_file_size_mb, 10)
    cfg.max_log_file_size_mb = size_mb if size_mb > 0 else 10
    return cfg


def load_config() -> MonitorConfig:
    ensure_dirs()
    config_path = get_config_path()
    cfg = MonitorConfig()
    if not config_path.exists():
        save_config(cfg)
        return cfg

    try:
        data = json.loads(config_path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        _logger.warning("config_unreadable_using_defaults", extra={"path": str(config_path), "error": str(exc)})
        backup = config_path.with_suffix(".invalid.json")
        try:
            config_path.replace(backup)
        except OSError:
            return cfg
        save_config(cfg)
        return cfg

    if not isinstance(data, dict):
        _logger.warning("config_not_an_object_using_defaults", extra={"path": str(config_path)})
        return cfg

    for item in fields(cfg):
        if item.name in data:
            setattr(cfg, item.name, data[item.name])

    return normalize_config(cfg)


def save_config(cfg: MonitorConfig) -> None:
    ensure_dirs()
    get_config_path().write_text(
        json.dumps(asdict(cfg), indent=2, sort_keys=True),
        encoding="utf-8",
    )
