"""Logging setup for the control API, the proxy and the standalone runner."""

import json
import logging
import sys
from typing import Literal

DEV_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

# Loggers whose INFO output would drown ours (httpx logs every provider URL)
NOISY_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "httpx", "httpcore")

# LogRecord attributes copied into structured entries when set via `extra=`
CONTEXT_FIELDS = ("plugin", "pid")


class JSONFormatter(logging.Formatter):
    """One JSON object per line.

    Messages go through json.dumps(), so agent output logged verbatim
    (quotes, backslashes, stray newlines) still yields one valid entry.
    """

    def __init__(self):
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                entry[field] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(
    level: str = "INFO",
    format_type: Literal["structured", "dev"] = "dev",
) -> None:
    """
    Configure root logging for any tunnelgate entry point.

    Agent output is logged on `tunnelgate.agent` at DEBUG, so it only
    shows up when `level` is DEBUG.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_type: 'structured' for JSON lines, 'dev' for readable text
    """
    numeric_level = getattr(logging, level.upper())
    handler = logging.StreamHandler(sys.stdout)
    if format_type == "structured":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(DEV_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    logging.root.handlers = [handler]
    logging.root.setLevel(numeric_level)

    third_party_level = logging.DEBUG if numeric_level == logging.DEBUG else logging.WARNING
    for logger_name in NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(third_party_level)

    logging.getLogger("tunnelgate").info(
        f"Logging configured: level={level}, format={format_type}"
    )


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the tunnelgate namespace."""
    return logging.getLogger(f"tunnelgate.{name}")
