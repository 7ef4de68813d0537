"""
ntpwatch - Flask JSON API.

Endpoints:
  - /api/status: service status and latest heartbeat per monitor
  - /api/monitors/<name>: heartbeat history for one monitor
  - /api/run: trigger an immediate check pass
  - /healthz: liveness
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from flask import Flask, abort, jsonify

from ntpwatch.config import validate_config
from ntpwatch.scheduler import get_state, trigger_run
from ntpwatch.version import GIT_SHA, VERSION

logger = logging.getLogger(__name__)

app = Flask(__name__)


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _monitor_counts(monitors: dict) -> dict:
    """Count monitors by status of their latest heartbeat."""
    up = sum(1 for hb in monitors.values() if hb.get("status") == "up")
    return {"total": len(monitors), "up": up, "down": len(monitors) - up}


@app.errorhandler(404)
def _not_found(exc):
    return jsonify({"error": exc.description}), 404


@app.route("/healthz")
def healthz():
    return jsonify({"status": "ok"})


@app.route("/api/status")
def api_status():
    """JSON status endpoint: run bookkeeping and latest result per monitor."""
    state = get_state()
    config = app.config["NTPWATCH_CONFIG"]
    monitors = state.get("monitors", {})
    return jsonify(
        {
            "status": "ok",
            "version": VERSION,
            "git_sha": GIT_SHA or None,
            "running": state.get("running", False),
            "last_run": _isoformat(state.get("last_run")),
            "next_run": _isoformat(state.get("next_run")),
            "run_count": state.get("run_count", 0),
            "config_errors": validate_config(config),
            "counts": _monitor_counts(monitors),
            "monitors": monitors,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    )


@app.route("/api/monitors/<name>")
def api_monitor(name: str):
    heartbeats = get_state().get("heartbeats", {})
    if name not in heartbeats:
        abort(404, description=f"Unknown monitor: {name}")
    history = heartbeats[name]
    return jsonify({"name": name, "latest": history[-1], "heartbeats": history})


@app.route("/api/run", methods=["POST"])
def api_run():
    config = app.config["NTPWATCH_CONFIG"]
    errors = validate_config(config)
    if errors:
        return jsonify({"started": False, "errors": errors}), 400
    if not trigger_run(config):
        return jsonify({"started": False, "errors": ["Check pass already running."]}), 409
    logger.info("Manual check pass triggered via API.")
    return jsonify({"started": True}), 202
