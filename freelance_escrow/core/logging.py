"""JSON logging for the escrow service.

Transition logs carry their ids in ``extra`` (``escrow_id``, ``milestone_id``,
``resolution``); the JSON formatter lifts those keys to top-level fields.
"""
from __future__ import annotations

import logging

from pythonjsonlogger import jsonlogger

SERVICE_NAME = "freelance-escrow"

# Third-party loggers that are chatty at INFO on every scheduler tick or HTTP call.
QUIET_LOGGERS = ("apscheduler", "httpx", "httpcore", "stripe")


def setup_logging(level: str = "INFO", *, env: str | None = None) -> None:
    """Route every logger through one JSON handler on the root logger."""

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
    root_logger.setLevel(level.upper())

    static_fields = {"service": SERVICE_NAME}
    if env:
        static_fields["env"] = env
    handler = logging.StreamHandler()
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
            static_fields=static_fields,
        )
    )
    root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


__all__ = ["setup_logging"]
