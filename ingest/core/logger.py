# ingest/core/logger.py
from __future__ import annotations

"""
BBMovie Ingest: Logging (Loguru)
---------------------------------
Three processes share this setup: the API, the transcode worker and the
maintenance runner. Each one tags its lines with a `component` so a merged
log stream can be split again.

- Pretty console lines by default, JSON lines with `LOG_JSON=1`
- `request_id` bound by RequestIDMiddleware, "N/A" outside requests
- stdlib loggers (our modules, uvicorn, apscheduler, sqlalchemy) routed here
- Optional rotating file sink

Env
---
LOG_LEVEL=INFO|DEBUG|WARNING|ERROR (default: INFO)
LOG_JSON=1
LOG_TO_FILE=1 (default: 0) with LOG_DIR / LOG_ROTATION
APP_DEBUG=1 (backtrace/diagnose on the console sink)
SQL_LOG_LEVEL=WARNING
"""

import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict

from dotenv import load_dotenv
from loguru import logger

load_dotenv()

_TRUTHY = {"1", "true", "yes"}

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_JSON = os.getenv("LOG_JSON", "0").lower() in _TRUTHY
APP_DEBUG = os.getenv("APP_DEBUG", "0").lower() in _TRUTHY
LOG_TO_FILE = os.getenv("LOG_TO_FILE", "0").lower() in _TRUTHY
LOG_DIR = Path(os.getenv("LOG_DIR", "logs"))
LOG_ROTATION = os.getenv("LOG_ROTATION", "10 MB")

# stdlib loggers that install their own handlers and must be re-pointed
_FRAMEWORK_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi", "apscheduler")


def _escape(text: str) -> str:
    return text.replace("<", "[").replace(">", "]")


def _fmt_pretty(record) -> str:
    extra = record["extra"]
    extra.setdefault("request_id", "N/A")
    extra.setdefault("component", "-")
    extra["where"] = f"{_escape(record['name'] or '')}:{_escape(record['function'])}:{record['line']}"
    return (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "
        "<magenta>{extra[component]}</magenta> | "
        "<cyan>{extra[where]}</cyan> - "
        "<level>{message}</level> | request_id={extra[request_id]}\n"
        "{exception}"
    )


def _fmt_json(record) -> str:
    """One JSON object per line for Loki/ELK."""
    payload: Dict[str, Any] = {
        "time": record["time"].strftime("%Y-%m-%dT%H:%M:%S.%f%z"),
        "level": record["level"].name,
        "logger": record["name"],
        "line": record["line"],
        "message": record["message"],
    }
    for k, v in record["extra"].items():
        if k != "where":
            payload.setdefault(k, v)
    payload.setdefault("request_id", "N/A")
    if record["exception"] is not None:
        payload["exception"] = repr(record["exception"].value)
    # the returned string is a loguru template
    return json.dumps(payload, ensure_ascii=False, default=str).replace("{", "{{").replace("}", "}}") + "\n"


class InterceptHandler(logging.Handler):
    """Forward a stdlib `LogRecord` to Loguru, keeping its level and traceback."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        logger.opt(depth=6, exception=record.exc_info).log(level, record.getMessage())


def configure_logging(component: str, *, level: str = LOG_LEVEL) -> None:
    """
    (Re)build the sinks for one process and tag every line with `component`.

    Safe to call more than once; the last call wins.
    """
    fmt = _fmt_json if LOG_JSON else _fmt_pretty
    logger.remove()
    logger.configure(extra={"component": component, "request_id": "N/A"})
    logger.add(sys.stdout, level=level, format=fmt, enqueue=True, backtrace=APP_DEBUG, diagnose=APP_DEBUG)
    if LOG_TO_FILE:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(LOG_DIR / f"{component}.log"),
            rotation=LOG_ROTATION,
            level=level,
            format=fmt,
            enqueue=True,
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=level, force=True)
    for name in _FRAMEWORK_LOGGERS:
        std_logger = logging.getLogger(name)
        std_logger.handlers = [InterceptHandler()]
        std_logger.setLevel(level)
        std_logger.propagate = False
    logging.getLogger("sqlalchemy.engine").setLevel(os.getenv("SQL_LOG_LEVEL", "WARNING").upper())


configure_logging("api")

__all__ = ["logger", "InterceptHandler", "configure_logging"]
