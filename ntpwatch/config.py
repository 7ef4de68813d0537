"""
ntpwatch - Configuration loader.

Loads and validates configuration from a YAML file and resolves the
configured monitors into immutable probe targets.
"""

from __future__ import annotations

import copy
import logging
import os

import yaml

from ntpwatch.constants import (
    DEFAULT_INTERVAL_SECONDS,
    DEFAULT_MAX_HEARTBEATS,
    DEFAULT_NTP_PORT,
    DEFAULT_TIMEOUT_SECONDS,
    MAX_PORT,
    MAX_STRATUM,
)
from ntpwatch.probe import ProbeTarget

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = {
    "monitors": [],
    "defaults": {
        "port": DEFAULT_NTP_PORT,
        "timeout": DEFAULT_TIMEOUT_SECONDS,
        "expected_stratum": None,
    },
    "schedule": {
        "interval_seconds": DEFAULT_INTERVAL_SECONDS,
        "check_on_start": True,
    },
    "history": {
        "max_heartbeats": DEFAULT_MAX_HEARTBEATS,
    },
    "web": {
        "enabled": True,
        "port": 8080,
        "host": "0.0.0.0",
    },
    "logging": {
        "level": "INFO",
        "file": "",
    },
}

_CONFIG_PATH_ENV = "NTPWATCH_CONFIG"
_DEFAULT_CONFIG_PATH = "/config/config.yaml"

# Map NTPWATCH_* env vars to config paths. Type: str, int, float, bool, or "monitors"
_ENV_TO_CONFIG: list[tuple[str, tuple[str, ...], str | type]] = [
    ("NTPWATCH_MONITORS", ("monitors",), "monitors"),
    ("NTPWATCH_DEFAULTS_PORT", ("defaults", "port"), int),
    ("NTPWATCH_DEFAULTS_TIMEOUT", ("defaults", "timeout"), "float"),
    ("NTPWATCH_DEFAULTS_EXPECTED_STRATUM", ("defaults", "expected_stratum"), int),
    ("NTPWATCH_SCHEDULE_INTERVAL_SECONDS", ("schedule", "interval_seconds"), int),
    ("NTPWATCH_SCHEDULE_CHECK_ON_START", ("schedule", "check_on_start"), bool),
    ("NTPWATCH_HISTORY_MAX_HEARTBEATS", ("history", "max_heartbeats"), int),
    ("NTPWATCH_WEB_ENABLED", ("web", "enabled"), bool),
    ("NTPWATCH_WEB_PORT", ("web", "port"), int),
    ("NTPWATCH_WEB_HOST", ("web", "host"), str),
    ("NTPWATCH_LOGGING_LEVEL", ("logging", "level"), str),
    ("NTPWATCH_LOGGING_FILE", ("logging", "file"), str),
]


def _parse_env_bool(val: str) -> bool:
    """Parse string to bool. Accepts true/false, 1/0, yes/no (case-insensitive)."""
    v = val.strip().lower()
    return v in ("true", "1", "yes", "on")


def _parse_env_monitors(val: str) -> list[dict]:
    """
    Parse comma/newline-separated ``host[:port]`` entries into monitor dicts.

    Raises ValueError when a port is not an integer.
    """
    monitors = []
    for part in val.replace(",", "\n").splitlines():
        entry = part.strip()
        if not entry:
            continue
        host, sep, port = entry.rpartition(":")
        if sep and host:
            monitors.append({"hostname": host, "port": int(port)})
        else:
            monitors.append({"hostname": entry})
    return monitors


def _env_overrides() -> dict:
    """Build config override dict from NTPWATCH_* environment variables."""
    overrides: dict = {}
    for env_key, path, typ in _ENV_TO_CONFIG:
        val = os.environ.get(env_key, "").strip()
        if not val:
            continue
        try:
            if typ is str:
                parsed = val
            elif typ is int:
                parsed = int(val)
            elif typ == "float":
                parsed = float(val) if "." in str(val) else int(val)
            elif typ is bool:
                parsed = _parse_env_bool(val)
            elif typ == "monitors":
                parsed = _parse_env_monitors(val)
            else:
                continue
        except (ValueError, TypeError):
            logger.warning("Invalid env %s=%r; ignoring.", env_key, val)
            continue
        target = overrides
        for key in path[:-1]:
            target = target.setdefault(key, {})
        target[path[-1]] = parsed
    return overrides


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base, returning a new dict."""
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config(config_path: str | None = None) -> dict:
    """
    Load configuration from a YAML file, falling back to defaults.

    The config file path is resolved in this order:
    1. Explicit ``config_path`` argument
    2. ``NTPWATCH_CONFIG`` environment variable
    3. Default path ``/config/config.yaml``

    Missing keys fall back to DEFAULT_CONFIG values.
    """
    path = config_path or os.environ.get(_CONFIG_PATH_ENV, _DEFAULT_CONFIG_PATH)

    config = copy.deepcopy(DEFAULT_CONFIG)

    if os.path.isfile(path):
        try:
            with open(path, "r", encoding="utf-8") as fh:
                user_config = yaml.safe_load(fh) or {}
            if isinstance(user_config, dict):
                config = _deep_merge(config, user_config)
                logger.info("Configuration loaded from %s", path)
            else:
                logger.error(
                    "Config file %s must contain a mapping at the top level, "
                    "got %s; using defaults.",
                    path,
                    type(user_config).__name__,
                )
        except yaml.YAMLError as exc:
            logger.error("Failed to parse config file %s: %s", path, exc)
        except OSError as exc:
            logger.error("Failed to read config file %s: %s", path, exc)
    else:
        logger.warning(
            "Config file not found at %s; using defaults. "
            "Use NTPWATCH_* env vars to configure.",
            path,
        )

    env_overrides = _env_overrides()
    if env_overrides:
        config = _deep_merge(config, env_overrides)
        logger.debug("Applied config overrides from NTPWATCH_* environment variables")

    return config


def _as_monitor(entry) -> dict | None:
    """Accept a bare hostname string as shorthand for ``{"hostname": ...}``."""
    if isinstance(entry, str):
        return {"hostname": entry}
    if isinstance(entry, dict):
        return entry
    return None


def _monitor_label(index: int, monitor: dict) -> str:
    return str(monitor.get("name") or monitor.get("hostname") or f"#{index + 1}")


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _validate_monitor(index: int, monitor: dict, defaults: dict) -> list[str]:
    errors: list[str] = []
    label = _monitor_label(index, monitor)

    hostname = monitor.get("hostname")
    if not isinstance(hostname, str) or not hostname.strip():
        errors.append(f"Monitor {label}: hostname must not be empty.")

    port = monitor.get("port", defaults.get("port", DEFAULT_NTP_PORT))
    if not _is_int(port) or not 1 <= port <= MAX_PORT:
        errors.append(f"Monitor {label}: port must be between 1 and {MAX_PORT}.")

    timeout = monitor.get("timeout", defaults.get("timeout", DEFAULT_TIMEOUT_SECONDS))
    if not isinstance(timeout, (int, float)) or isinstance(timeout, bool) or timeout <= 0:
        errors.append(f"Monitor {label}: timeout must be a number greater than 0.")

    stratum = monitor.get("expected_stratum", defaults.get("expected_stratum"))
    if stratum is not None and (not _is_int(stratum) or not 0 <= stratum <= MAX_STRATUM):
        errors.append(
            f"Monitor {label}: expected_stratum must be between 0 and {MAX_STRATUM}."
        )
    return errors


def validate_config(config: dict) -> list[str]:
    """
    Validate configuration for minimal operation.

    Args:
        config: Configuration dict (from load_config or similar).

    Returns:
        List of error messages. Empty list means config is valid.
    """
    errors: list[str] = []

    monitors = config.get("monitors") or []
    defaults = config.get("defaults") or {}
    if not isinstance(monitors, list) or not monitors:
        errors.append(
            "Configure at least one monitor (monitors: list of hostnames, "
            "or NTPWATCH_MONITORS)."
        )
        monitors = []

    seen: set[str] = set()
    for index, entry in enumerate(monitors):
        monitor = _as_monitor(entry)
        if monitor is None:
            errors.append(f"Monitor #{index + 1} must be a mapping with a hostname.")
            continue
        errors.extend(_validate_monitor(index, monitor, defaults))
        label = _monitor_label(index, monitor)
        if label in seen:
            errors.append(f"Monitor name {label} is used more than once.")
        seen.add(label)

    interval = config.get("schedule", {}).get(
        "interval_seconds", DEFAULT_INTERVAL_SECONDS
    )
    if not _is_int(interval) or interval < 1:
        errors.append(
            "Schedule interval (schedule.interval_seconds) must be at least 1 second."
        )

    if errors:
        logger.debug("Config validation failed: %s", "; ".join(errors))
    else:
        logger.debug("Config validation passed.")
    return errors


def build_targets(config: dict) -> list[ProbeTarget]:
    """
    Resolve configured monitors into probe targets, applying ``defaults``.

    Expects a config that passed validate_config; invalid entries raise
    ValueError from ProbeTarget.
    """
    defaults = config.get("defaults") or {}
    targets = []
    for index, entry in enumerate(config.get("monitors") or []):
        monitor = _as_monitor(entry)
        if monitor is None:
            raise ValueError(f"Monitor #{index + 1} must be a mapping with a hostname.")
        targets.append(
            ProbeTarget(
                hostname=monitor["hostname"].strip(),
                port=monitor.get("port", defaults.get("port", DEFAULT_NTP_PORT)),
                timeout=monitor.get(
                    "timeout", defaults.get("timeout", DEFAULT_TIMEOUT_SECONDS)
                ),
                expected_stratum=monitor.get(
                    "expected_stratum", defaults.get("expected_stratum")
                ),
                name=_monitor_label(index, monitor),
            )
        )
    return targets
