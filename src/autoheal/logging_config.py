"""
Structured Logging Configuration for Autoheal

Provides:
- JSON formatted logs that can be shipped to Loki as-is
- Cycle ID tracking so every line of one scan or dispatch cycle correlates
- Log level filtering via environment variable
"""

import json
import logging
import os
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

# Context variable for per-cycle correlation
cycle_id_ctx: ContextVar[Optional[str]] = ContextVar("cycle_id", default=None)

_RESERVED = frozenset((
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "taskName",
))


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Output format:
    {
        "timestamp": "2025-12-17T19:30:00.000000+00:00",
        "level": "INFO",
        "logger": "autoheal.dispatcher",
        "message": "Issue fixed",
        "cycle_id": "abc12345",
        "extra": { "signature_id": "esm-import-error" }
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_obj = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        cycle_id = cycle_id_ctx.get()
        if cycle_id:
            log_obj["cycle_id"] = cycle_id

        extra_fields = {
            key: value for key, value in record.__dict__.items()
            if key not in _RESERVED
        }
        if extra_fields:
            log_obj["extra"] = extra_fields

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj, default=str)


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    log_to_file: Optional[str] = None,
) -> logging.Logger:
    """
    Configure logging for the process.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting (True) or a plain line format (False)
        log_to_file: Optional file path for log output

    Returns:
        Configured root logger
    """
    level = os.environ.get("AUTOHEAL_LOG_LEVEL", level).upper()
    json_format = os.environ.get("AUTOHEAL_LOG_JSON", str(json_format)).lower() == "true"

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level, logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_to_file:
        file_handler = logging.FileHandler(log_to_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    return root_logger


def get_uvicorn_log_config(json_format: bool = False) -> dict:
    """
    Uvicorn logging configuration matching setup_logging().

    Access logs are dropped; the status API is polled often and they drown the
    remediation log.
    """
    config = {
        "version": 1,
        "disable_existing_loggers": False,
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stderr",
            },
        },
        "loggers": {
            "uvicorn": {"handlers": ["default"], "level": "INFO", "propagate": False},
            "uvicorn.error": {"handlers": ["default"], "level": "INFO", "propagate": False},
            "uvicorn.access": {"handlers": [], "level": "CRITICAL", "propagate": False},
        },
    }
    if json_format:
        config["formatters"] = {"json": {"()": "autoheal.logging_config.JSONFormatter"}}
        config["handlers"]["default"]["formatter"] = "json"
    return config


def new_cycle_id() -> str:
    """Generate a short id for a scan or dispatch cycle and make it current."""
    cycle_id = str(uuid.uuid4())[:8]
    cycle_id_ctx.set(cycle_id)
    return cycle_id


def get_cycle_id() -> Optional[str]:
    """Get the cycle id for the current context."""
    return cycle_id_ctx.get()
