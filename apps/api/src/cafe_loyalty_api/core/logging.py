from __future__ import annotations

import json
import logging
import sys
from logging import LogRecord
from typing import Any, Dict

from loguru import logger
from opentelemetry import trace


_RESERVED_LOG_RECORD_ATTRS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
}

_CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level> | {extra}"
)


class InterceptHandler(logging.Handler):
    """Route stdlib logging (uvicorn, sqlalchemy, apscheduler) through Loguru."""

    def emit(self, record: LogRecord) -> None:  # pragma: no cover - bridging glue
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        try:
            message = record.getMessage()
        except Exception:  # pragma: no cover - malformed format strings
            message = record.msg if isinstance(record.msg, str) else str(record.msg)

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_LOG_RECORD_ATTRS and not key.startswith("otel")
        }

        bound_logger = logger.bind(**extra) if extra else logger
        bound_logger.opt(depth=6, exception=record.exc_info).log(
            level, message.replace("{", "{{").replace("}", "}}")
        )


def _trace_context() -> Dict[str, str]:
    span = trace.get_current_span()
    span_context = span.get_span_context() if span else None
    if span_context is None or not span_context.is_valid:
        return {}
    return {
        "trace_id": f"{span_context.trace_id:032x}",
        "span_id": f"{span_context.span_id:016x}",
    }


def _json_sink(metadata: Dict[str, Any]):
    def _write(message: "logger.Message") -> None:
        record = message.record
        payload: Dict[str, Any] = {
            "timestamp": record["time"].isoformat(),
            "level": record["level"].name.lower(),
            "message": record["message"],
            "logger": record["name"],
            **metadata,
        }
        payload.update(_trace_context())
        if record["extra"]:
            payload.update(record["extra"])
        if record["exception"] is not None:
            exc_type = record["exception"].type
            payload["exception"] = exc_type.__name__ if exc_type else None

        sys.stdout.write(json.dumps(payload, default=str) + "\n")

    return _write


def configure_logging(
    *,
    service_name: str,
    environment: str,
    version: str,
    level: str = "INFO",
    json_logs: bool = True,
) -> None:
    """Install the Loguru sink (JSON lines or console) and bridge stdlib logging into it."""

    logger.remove()
    metadata = {"service": service_name, "environment": environment, "version": version}
    if json_logs:
        logger.add(_json_sink(metadata), level=level.upper(), backtrace=False, diagnose=False)
    else:
        logger.add(sys.stderr, level=level.upper(), format=_CONSOLE_FORMAT, colorize=True)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
