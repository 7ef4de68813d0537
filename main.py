"""
ntpwatch - application entry point.

Starts the background check scheduler and optionally the Flask JSON API.
"""

from __future__ import annotations

import logging
import os
import sys
import time

from ntpwatch.config import load_config, validate_config
from ntpwatch.scheduler import start_scheduler
from ntpwatch.web import app


def setup_logging(config: dict) -> None:
    level_str = config.get("logging", {}).get("level", "INFO").upper()
    level = getattr(logging, level_str, logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]

    log_file = config.get("logging", {}).get("file", "")
    if log_file:
        try:
            log_dir = os.path.dirname(log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            handlers.append(logging.FileHandler(log_file))
        except OSError as exc:
            logging.getLogger(__name__).warning(
                "Could not open log file %s: %s. Logging to stdout only.",
                log_file,
                exc,
            )

    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%SZ",
        handlers=handlers,
    )


def main() -> None:
    config = load_config()
    setup_logging(config)

    logger = logging.getLogger(__name__)
    logger.info("ntpwatch starting up.")

    for err in validate_config(config):
        logger.warning("Config validation: %s", err)

    app.config["NTPWATCH_CONFIG"] = config
    scheduler = start_scheduler(lambda: app.config["NTPWATCH_CONFIG"])

    try:
        if config["web"].get("enabled", True):
            host = config["web"]["host"]
            port = int(config["web"]["port"])
            logger.info("Status API listening on http://%s:%d/api/status", host, port)
            app.run(host=host, port=port, debug=False, use_reloader=False)
        else:
            logger.info("Web API disabled; running scheduler only.")
            while True:
                time.sleep(3600)
    finally:
        scheduler.shutdown(wait=False)
        logger.info("ntpwatch shut down.")


if __name__ == "__main__":
    main()
