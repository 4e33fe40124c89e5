"""
Salesflow - Logging Setup

setup_logging() configures the root logger once per process (API startup,
scheduler CLI). Engines log through named loggers:
    from salesflow.logging_config import get_agent_logger
    logger = get_agent_logger("sequence_engine")       # salesflow.agents.sequence_engine
    logger.info("Step sent", extra={"contact_id": cid, "enrollment_id": eid})

Formats:
- "text": one line per record; structured extras are appended as key=value
- "json": one JSON object per line with the extras as top-level keys

Defaults come from salesflow.config (LOG_LEVEL, LOG_FORMAT, LOG_FILE).
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from salesflow import config

# Extras the engines attach via logger.info(..., extra={...})
STRUCTURED_FIELDS = ("contact_id", "enrollment_id", "task_id", "sequence_id",
                     "reason_code", "mode", "phase", "duration_ms")

QUIET_LOGGERS = ("urllib3", "asyncio", "uvicorn.access", "httpx")


def _structured_extras(record: logging.LogRecord) -> dict:
    extras = {}
    for key in STRUCTURED_FIELDS:
        value = getattr(record, key, None)
        if value not in (None, ""):
            extras[key] = value
    return extras


class JSONFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "function": record.funcName,
            "line": record.lineno,
        }
        entry.update(_structured_extras(record))
        if record.exc_info and record.exc_info[0]:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
            }
        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """`2026-03-02 09:00:00 [salesflow.agents.x] INFO: message  contact_id=con_1 mode=send`"""

    def __init__(self):
        super().__init__(fmt="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
                         datefmt="%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extras = _structured_extras(record)
        if extras:
            line += "  " + " ".join(f"{k}={v}" for k, v in extras.items())
        return line


_initialized = False


def setup_logging(level: str = None, fmt: str = None, log_file: str = None):
    """Configure the root logger. Later calls are no-ops.

    Args:
        level: Overrides LOG_LEVEL.
        fmt: "text" or "json"; overrides LOG_FORMAT.
        log_file: Extra file handler path; overrides LOG_FILE.
    """
    global _initialized
    if _initialized:
        return
    _initialized = True

    level = (level or config.LOG_LEVEL).upper()
    fmt = fmt or config.LOG_FORMAT
    log_file = log_file or config.LOG_FILE
    formatter = JSONFormatter() if fmt == "json" else TextFormatter()

    root = logging.getLogger()
    root.setLevel(getattr(logging, level, logging.INFO))
    root.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_file:
        os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger("salesflow").info(
        "Logging configured: level=%s, format=%s%s",
        level, fmt, f", file={log_file}" if log_file else "",
    )


def get_agent_logger(agent_name: str) -> logging.Logger:
    return logging.getLogger(f"salesflow.agents.{agent_name}")
