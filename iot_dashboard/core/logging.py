from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO

    # No-op when uvicorn (or a test runner) already installed handlers.
    logging.basicConfig(level=resolved, format=LOG_FORMAT)
    logging.getLogger("iot_dashboard").setLevel(resolved)
    # paho logs every PINGREQ/PINGRESP at DEBUG.
    logging.getLogger("paho").setLevel(max(resolved, logging.INFO))
