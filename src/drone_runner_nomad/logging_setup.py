"""Logging helpers.

Decision points emit structured fields through ``extra=``; the JSON
formatter renders them as one object per line for log shippers.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any, TextIO

TRACE = 5
PACKAGE_LOGGER = "drone_runner_nomad"

STRUCTURED_FIELDS = (
    "event",
    "stage_id",
    "stage_number",
    "stage_os",
    "stage_arch",
    "build_id",
    "job_id",
    "eval_id",
    "machine",
    "outcome",
    "signal",
    "variable",
    "delay_seconds",
    "status_code",
)

logging.addLevelName(TRACE, "TRACE")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        base: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        for key in STRUCTURED_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                base[key] = value

        if record.exc_info:
            base["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(base, ensure_ascii=True, sort_keys=True)


class TextFormatter(logging.Formatter):
    """Human-readable formatter appending structured fields as key=value pairs."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)-5s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        pairs = [
            f"{key}={getattr(record, key)}"
            for key in STRUCTURED_FIELDS
            if getattr(record, key, None) is not None
        ]
        if pairs:
            line = f"{line} [{' '.join(pairs)}]"
        return line


def resolve_level(*, debug: bool, trace: bool) -> int:
    if trace:
        return TRACE
    if debug:
        return logging.DEBUG
    return logging.INFO


def configure_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    json_output: bool = True,
    stream: TextIO | None = None,
) -> logging.Logger:
    """Install a single stream handler on the package logger."""

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)

    handler = logging.StreamHandler(stream)
    handler.setFormatter(JSONFormatter() if json_output else TextFormatter())
    package_logger.addHandler(handler)
    package_logger.setLevel(resolve_level(debug=debug, trace=trace))
    return package_logger
