"""Structured logging configuration.

Provides correlation-ID propagation for RPC calls and Loguru configuration
for JSON structured logging. Records emitted by aio-pika and aiormq through
the standard library are routed into Loguru.
"""

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Iterator

from loguru import logger

from rmq_client.config import Settings, get_settings

# Context variable for correlation ID propagation across async boundaries
correlation_id_ctx: ContextVar[str] = ContextVar("correlation_id", default="")

# Third-party loggers whose records are forwarded to Loguru
INTERCEPTED_LOGGERS = ("aio_pika", "aiormq")


def get_correlation_id() -> str:
    """Get the current correlation ID from context.

    Returns empty string outside of an RPC call.
    """
    return correlation_id_ctx.get()


@contextmanager
def correlation_scope(correlation_id: str) -> Iterator[str]:
    """Bind a correlation ID to the context and to every log line inside it."""
    token = correlation_id_ctx.set(correlation_id)
    try:
        with logger.contextualize(correlation_id=correlation_id):
            yield correlation_id
    finally:
        correlation_id_ctx.reset(token)


def text_formatter(record: dict) -> str:
    """Human-readable formatter for development.

    Includes correlation_id when available for easier debugging.
    """
    correlation_id = record["extra"].get("correlation_id", "")
    correlation_id_str = f"[{correlation_id[:8]}] " if correlation_id else ""

    return (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "
        f"<cyan>{correlation_id_str}</cyan>"
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
        "<level>{message}</level>\n"
    )


def format_json_record(record: dict) -> str:
    """Render a Loguru record as a single JSON line."""
    log_entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "level": record["level"].name,
        "message": record["message"],
        "logger": record["name"],
        "module": record["module"],
        "function": record["function"],
        "line": record["line"],
    }

    for key, value in record["extra"].items():
        # Skip complex objects that can't be serialized
        try:
            json.dumps(value)
            log_entry[key] = value
        except (TypeError, ValueError):
            log_entry[key] = str(value)

    if record["exception"] is not None:
        exc = record["exception"]
        log_entry["exception"] = {
            "type": exc.type.__name__ if exc.type else None,
            "value": str(exc.value) if exc.value else None,
            "traceback": exc.traceback is not None,
        }

    return json.dumps(log_entry)


def json_sink(message) -> None:
    """Custom sink that outputs JSON formatted logs."""
    sys.stdout.write(format_json_record(message.record) + "\n")
    sys.stdout.flush()


class InterceptHandler(logging.Handler):
    """Handler to redirect standard library logging to Loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        # Get corresponding Loguru level if it exists
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find caller from where originated the logged message
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def intercept_library_logging(level: str = "INFO") -> None:
    """Route aio-pika/aiormq stdlib loggers into Loguru."""
    handler = InterceptHandler()
    for name in INTERCEPTED_LOGGERS:
        library_logger = logging.getLogger(name)
        library_logger.handlers = [handler]
        library_logger.setLevel(level)
        library_logger.propagate = False


def setup_logging(settings: Settings | None = None) -> None:
    """Configure Loguru for the application.

    Sets up structured logging based on configuration:
    - JSON format for production (LOG_FORMAT=json)
    - Human-readable format for development (LOG_FORMAT=text)
    """
    settings = settings or get_settings()

    # Remove default handler
    logger.remove()

    if settings.log_format == "json":
        logger.add(
            json_sink,
            level=settings.log_level,
            backtrace=True,
            diagnose=False,
        )
    else:
        logger.add(
            sys.stdout,
            format=text_formatter,
            level=settings.log_level,
            colorize=True,
            backtrace=True,
            diagnose=True,
        )

    if settings.log_file:
        logger.add(
            settings.log_file,
            rotation=settings.log_rotation,
            retention=settings.log_retention,
            level=settings.log_level,
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message}",
            serialize=settings.log_format == "json",
            backtrace=True,
            diagnose=False,
        )

    intercept_library_logging(settings.log_level)

    logger.info(
        "Logging configured",
        level=settings.log_level,
        format=settings.log_format,
        log_file=settings.log_file,
    )
