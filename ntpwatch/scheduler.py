"""
ntpwatch - Background scheduler.

Runs check passes over all configured monitors on a configurable interval
using APScheduler. Each pass probes every target concurrently on a private
event loop in the scheduler thread.
"""

import asyncio
import json
import logging
import threading
import time
from datetime import datetime, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ntpwatch.config import build_targets, validate_config
from ntpwatch.constants import DEFAULT_INTERVAL_SECONDS, DEFAULT_MAX_HEARTBEATS
from ntpwatch.probe import check_targets

logger = logging.getLogger(__name__)

# Shared in-memory state (written by scheduler thread, read by web thread)
_state_lock = threading.Lock()
_state = {
    "last_run": None,  # datetime | None
    "next_run": None,  # datetime | None
    "running": False,  # bool - True while a pass is in progress
    "_running_since": None,  # float | None - time.time() when pass started
    "run_count": 0,  # int - total number of completed passes
    "monitors": {},  # dict[str, dict] - latest heartbeat per monitor name
    "heartbeats": {},  # dict[str, list[dict]] - recent heartbeats per monitor
    "log_entries": [],  # list[dict] - recent log entries
    "_log_bytes": 0,  # internal: approximate byte size of log_entries
}

_MAX_LOG_BYTES = 500 * 1024  # 500 KB


def get_state() -> dict:
    """Return a copy of the current scheduler state."""
    with _state_lock:
        state = {k: v for k, v in _state.items() if not k.startswith("_")}
        state["monitors"] = dict(_state["monitors"])
        state["heartbeats"] = {k: list(v) for k, v in _state["heartbeats"].items()}
        state["log_entries"] = list(_state["log_entries"])
        return state


def _append_log(message: str, level: str = "INFO") -> None:
    entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "level": level,
        "message": message,
    }
    with _state_lock:
        entry_bytes = len(json.dumps(entry))
        _state["log_entries"].append(entry)
        _state["_log_bytes"] = _state.get("_log_bytes", 0) + entry_bytes

        while _state["_log_bytes"] > _MAX_LOG_BYTES and len(_state["log_entries"]) > 1:
            removed = _state["log_entries"].pop(0)
            _state["_log_bytes"] -= len(json.dumps(removed))


def _record_heartbeat(name: str, heartbeat: dict, max_heartbeats: int) -> None:
    with _state_lock:
        _state["monitors"][name] = heartbeat
        history = _state["heartbeats"].setdefault(name, [])
        history.append(heartbeat)
        if len(history) > max_heartbeats:
            del history[: len(history) - max_heartbeats]


class _SchedulerLogHandler(logging.Handler):
    """Captures log records from probes and the scheduler and stores them in _state."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            _append_log(self.format(record), record.levelname)
        except Exception as exc:
            # Log to root logger to avoid losing the failure (don't use _append_log
            # to avoid recursion if that is also failing)
            logging.getLogger().warning(
                "Scheduler log handler failed to store entry: %s", exc
            )


def _apply_log_level(config: dict) -> None:
    """Apply logging level from config so changes take effect on next pass."""
    level_str = config.get("logging", {}).get("level", "INFO").upper()
    level = getattr(logging, level_str, logging.INFO)
    logging.getLogger().setLevel(level)


def _interval_seconds(config: dict) -> int:
    return max(
        1,
        config.get("schedule", {}).get("interval_seconds", DEFAULT_INTERVAL_SECONDS),
    )


def _check_job(config: dict) -> None:
    """Scheduled job: probe every monitor once and update shared state."""
    _apply_log_level(config)
    errors = validate_config(config)
    if errors:
        for err in errors:
            logger.warning("Config validation: %s", err)
            _append_log(f"Config error: {err}", "WARNING")
        return

    # Stale threshold: 2x interval - if running longer, assume previous pass died
    stale_threshold_seconds = _interval_seconds(config) * 2

    with _state_lock:
        if _state["running"]:
            running_since = _state.get("_running_since")
            elapsed = time.time() - running_since if running_since else 0
            if running_since is not None and elapsed > stale_threshold_seconds:
                logger.warning(
                    "Previous check pass appears stuck (%.0f s); clearing lock.",
                    elapsed,
                )
                _state["running"] = False
                _state["_running_since"] = None
            else:
                logger.warning("Check pass skipped; previous pass still in progress.")
                return
        _state["running"] = True
        _state["_running_since"] = time.time()

    try:
        targets = build_targets(config)
        logger.debug("Starting check pass over %d monitor(s).", len(targets))
        results = asyncio.run(check_targets(targets))

        max_heartbeats = max(
            1,
            config.get("history", {}).get("max_heartbeats", DEFAULT_MAX_HEARTBEATS),
        )
        up = 0
        for target, result in zip(targets, results):
            _record_heartbeat(target.label, result.to_dict(), max_heartbeats)
            if result.status:
                up += 1

        with _state_lock:
            _state["last_run"] = datetime.now(timezone.utc)
            _state["run_count"] += 1
        logger.info(
            "Check pass complete: %d up, %d down.", up, len(targets) - up
        )
    except Exception:
        logger.exception("Check pass failed")
    finally:
        with _state_lock:
            _state["running"] = False
            _state["_running_since"] = None


def start_scheduler(config_getter) -> BackgroundScheduler:
    """
    Create, configure, and start the background scheduler.

    Args:
        config_getter: Callable returning the current config dict. Used so
            config changes are picked up on each scheduled pass.

    Returns:
        The scheduler instance for graceful shutdown.
    """
    handler = _SchedulerLogHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))
    logging.getLogger("ntpwatch.probe").addHandler(handler)
    logging.getLogger("ntpwatch.scheduler").addHandler(handler)

    def _job_wrapper() -> None:
        _check_job(config_getter())

    def _record_next_run() -> None:
        job = scheduler.get_job("checks")
        if job and job.next_run_time:
            with _state_lock:
                _state["next_run"] = job.next_run_time

    config = config_getter()
    interval_seconds = _interval_seconds(config)

    scheduler = BackgroundScheduler(daemon=True)
    scheduler.add_job(
        _job_wrapper,
        trigger=IntervalTrigger(seconds=interval_seconds),
        id="checks",
        name="NTP checks",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_listener(lambda _event: _record_next_run())
    scheduler.start()
    _record_next_run()

    logger.info("Scheduler started; interval: %d second(s).", interval_seconds)

    if config.get("schedule", {}).get("check_on_start", True):
        logger.info("check_on_start is enabled; running initial check pass.")
        threading.Thread(target=_job_wrapper, daemon=True).start()

    return scheduler


def trigger_run(config: dict) -> bool:
    """
    Trigger an immediate check pass in a background thread.

    Args:
        config: Configuration dict for the pass.

    Returns:
        True if the pass was started, False if already running or config invalid.
    """
    if validate_config(config):
        logger.debug("Trigger skipped: config validation failed.")
        return False
    with _state_lock:
        if _state["running"]:
            logger.debug("Trigger skipped: check pass already in progress.")
            return False
    logger.debug("Manual check pass triggered.")
    threading.Thread(target=_check_job, args=[config], daemon=True).start()
    return True
