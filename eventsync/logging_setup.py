from __future__ import annotations

import json
import logging


EXTRA_FIELDS = (
    "calendar_id",
    "calendar_slug",
    "sync_run_id",
    "triggered_by",
    "status",
    "duration_ms",
    "error_type",
    "people_found",
    "people_created",
    "people_updated",
    "events_found",
    "events_created",
    "events_updated",
    "users_linked",
    "wait_seconds",
)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }
        for key in EXTRA_FIELDS:
            if key in record.__dict__:
                log_data[key] = record.__dict__[key]
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO", json_output: bool = True) -> None:
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))
