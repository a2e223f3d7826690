"""Configuration loading from defaults, an optional YAML file, env vars, and CLI args."""

import logging
import os
from dataclasses import dataclass, field, fields

import yaml

logger = logging.getLogger(__name__)

VERBOSITY_LEVELS = ("minimal", "standard", "verbose")
DEFAULT_DOMAINS = ("Runtime", "Network", "Log", "Performance", "Page", "Security", "DOM")

# YAML section -> {yaml key: Config field}
_YAML_LAYOUT = {
    "browser": {
        "host": "cdp_host",
        "port": "cdp_port",
        "ws_url": "ws_url",
        "start_url": "start_url",
        "domains": "domains",
        "reconnect_attempts": "reconnect_attempts",
        "reconnect_delay": "reconnect_delay",
    },
    "logging": {
        "file": "log_file",
        "verbosity": "verbosity",
        "network_history": "network_history",
        "capture_response_bodies": "capture_response_bodies",
        "tail_debounce": "tail_debounce",
    },
    "screenshots": {
        "dir": "screenshot_dir",
        "on_error": "screenshot_on_error",
        "on_load": "screenshot_on_load",
    },
    "control": {
        "enabled": "control_enabled",
        "host": "control_host",
        "port": "control_port",
    },
    "bridge": {
        "command_timeout": "command_timeout",
        "poll_interval": "poll_interval",
        "queue_timeout": "queue_timeout",
    },
    "metrics": {
        "file": "metrics_file",
        "interval": "metrics_interval",
    },
}

_ENV_VARS = {
    "LOGBRIDGE_CDP_HOST": "cdp_host",
    "LOGBRIDGE_CDP_PORT": "cdp_port",
    "LOGBRIDGE_WS_URL": "ws_url",
    "LOGBRIDGE_LOG_FILE": "log_file",
    "LOGBRIDGE_SCREENSHOT_DIR": "screenshot_dir",
    "LOGBRIDGE_VERBOSITY": "verbosity",
    "LOGBRIDGE_CONTROL_HOST": "control_host",
    "LOGBRIDGE_CONTROL_PORT": "control_port",
    "LOGBRIDGE_COMMAND_TIMEOUT": "command_timeout",
    "LOGBRIDGE_METRICS_FILE": "metrics_file",
}


def _parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes", "on")


@dataclass(frozen=True)
class Config:
    cdp_host: str = "localhost"
    cdp_port: int = 9222
    ws_url: str | None = None
    start_url: str | None = None
    domains: tuple[str, ...] = DEFAULT_DOMAINS
    reconnect_attempts: int = 5
    reconnect_delay: float = 0.2

    log_file: str = "./browser-debug.log"
    verbosity: str = "standard"
    network_history: int = 200
    capture_response_bodies: bool = True
    tail_debounce: float = 0.25

    screenshot_dir: str = "./screenshots"
    screenshot_on_error: bool = True
    screenshot_on_load: bool = False

    control_enabled: bool = True
    control_host: str = "127.0.0.1"
    control_port: int = 3001

    command_timeout: float = 10.0
    poll_interval: float = 0.1
    queue_timeout: float = 60.0

    metrics_file: str | None = None
    metrics_interval: float = 30.0

    extra: dict = field(default_factory=dict, compare=False)

    def __post_init__(self):
        if self.verbosity not in VERBOSITY_LEVELS:
            raise ValueError(
                f"verbosity must be one of {', '.join(VERBOSITY_LEVELS)}, got {self.verbosity!r}"
            )


_FIELD_TYPES = {f.name: f.type for f in fields(Config)}


def _coerce(name: str, value):
    if value is None:
        return None
    default = getattr(Config, name, None)
    if isinstance(default, bool):
        return _parse_bool(value)
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    if isinstance(default, tuple):
        if isinstance(value, str):
            value = [v.strip() for v in value.split(",") if v.strip()]
        return tuple(value)
    return value


def load_yaml_config(path: str | None) -> dict:
    """Load a YAML config file. Returns an empty dict if no path, missing file, or bad YAML."""
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning("Config file %s not found, using defaults", path)
        return {}
    except yaml.YAMLError as e:
        logger.warning("Invalid YAML in %s (%s), using defaults", path, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Config file %s is not a mapping, using defaults", path)
        return {}
    logger.info("Loaded YAML config from %s", path)
    return data


def _flatten_yaml(yaml_data: dict) -> dict:
    values = {}
    for section, mapping in _YAML_LAYOUT.items():
        section_data = yaml_data.get(section) or {}
        if not isinstance(section_data, dict):
            logger.warning("Ignoring config section %r: not a mapping", section)
            continue
        for key, field_name in mapping.items():
            if key in section_data:
                values[field_name] = section_data[key]
    return values


def load_config(cli_args=None, yaml_data: dict | None = None, env=None) -> Config:
    """Build Config from defaults < YAML < environment < CLI args."""
    env = os.environ if env is None else env
    values = _flatten_yaml(yaml_data or {})

    for var, field_name in _ENV_VARS.items():
        if env.get(var):
            values[field_name] = env[var]

    if cli_args is not None:
        for field_name in _FIELD_TYPES:
            value = getattr(cli_args, field_name, None)
            if value is not None:
                values[field_name] = value

    known = {name: _coerce(name, value) for name, value in values.items() if name in _FIELD_TYPES}
    extra = {k: v for k, v in (yaml_data or {}).items() if k not in _YAML_LAYOUT}
    return Config(**known, extra=extra)
