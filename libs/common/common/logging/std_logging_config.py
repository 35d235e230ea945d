from __future__ import annotations

import atexit
import os
import sys
from contextvars import ContextVar
from datetime import datetime
from enum import Enum
from logging import Filter, Handler, LogRecord
from logging.handlers import QueueHandler, QueueListener
from queue import Queue
from typing import Any

import msgspec
import structlog
from pydantic import BaseModel
from structlog.typing import EventDict, Processor, WrappedLogger

from common.core.request_context import RequestContext
from common.utils import encode_json, is_dict

_EXCLUDED_KEYS = {"webhook_secret", "api_key", "authorization", "stripe_signature"}


def _get_formatter_name() -> str:
    """Compact JSON outside local/dev, opt-in JSON (optionally pretty) locally."""
    app_env = os.getenv("APP_ENV", "local").lower()
    if app_env not in ("development", "local", "test", "testing"):
        return "json"
    if os.getenv("LOG_JSON_FORMAT", "").lower() in {"true", "1", "t", "yes"}:
        pretty = os.getenv("LOG_JSON_PRETTY", "").lower() in {"true", "1", "t", "yes"}
        return "json_pretty" if pretty else "json"
    return "plain"


class LoggingQueueListener(QueueListener):
    """``QueueListener`` that starts with the handler and stops at exit."""

    def __init__(self, queue: Queue[LogRecord], *handlers: Handler, respect_handler_level: bool = False) -> None:
        super().__init__(queue, *handlers, respect_handler_level=respect_handler_level)
        self.start()
        _ = atexit.register(self.stop)


def _process_values(
    _logger: WrappedLogger,
    _name: str,
    event_dict: EventDict,
) -> EventDict:
    """Attaches the request context and flattens models, enums and context vars."""
    request_context = RequestContext.get_or_none()
    if request_context is not None:
        event_dict["requestContext"] = request_context

    for key, value in list(event_dict.items()):
        _process_value(event_dict, key, value)

    return event_dict


def _process_value(event_dict: dict[str, Any], key: str, value: Any) -> None:
    if key in _EXCLUDED_KEYS or value is None:
        event_dict.pop(key, None)
        return

    processed_value = value
    if isinstance(value, ContextVar):
        processed_value = value.get(None)  # type: ignore
        if processed_value is None:
            event_dict.pop(key, None)
            return
    elif isinstance(value, BaseModel):
        processed_value = value.model_dump(exclude_none=True, by_alias=True, mode="json")
    elif isinstance(value, Enum):
        processed_value = value.value
    elif isinstance(value, datetime):
        processed_value = value.isoformat()

    if is_dict(processed_value):
        for k, v in list(processed_value.items()):
            _process_value(processed_value, k, v)

    event_dict[key] = processed_value


def json_serializer(value: EventDict, **_: Any) -> str:
    return encode_json(value).decode("utf-8")


def json_serializer_pretty(value: EventDict, **_: Any) -> str:
    return msgspec.json.format(encode_json(value), indent=2).decode("utf-8")


class NoHealthMetricsFilter(Filter):
    def filter(self, record: LogRecord) -> bool:
        message = record.getMessage()
        return not ("GET /health" in message or "GET /metrics" in message)


def _filter_console_fields(_logger: WrappedLogger, _name: str, event_dict: EventDict) -> EventDict:
    for field in ("color_message", "message", "process", "thread", "thread_name", "process_name", "requestContext"):
        event_dict.pop(field, None)
    return event_dict


def _console_renderer(_logger: WrappedLogger, _name: str, event_dict: EventDict) -> str:
    """HH:MM:SS [LEVEL] logger event (key=value, ...) with the traceback appended."""
    use_colors = hasattr(sys.stdout, "isatty") and sys.stdout.isatty()
    gray, red, reset = ("\033[90m", "\033[91m", "\033[0m") if use_colors else ("", "", "")

    level = str(event_dict.pop("level", "info")).upper()
    logger_name = str(event_dict.pop("logger", ""))
    event = str(event_dict.pop("event", ""))
    timestamp = str(event_dict.pop("timestamp", ""))
    exception = event_dict.pop("exception", None)

    short_time = timestamp
    if timestamp:
        try:
            short_time = datetime.fromisoformat(timestamp.replace("Z", "+00:00")).strftime("%H:%M:%S")
        except ValueError:
            pass

    line = f"{gray}{short_time}{reset} [{level:<7}] {logger_name[-20:]:<20} {event}"
    if level in {"ERROR", "CRITICAL"}:
        line = f"{red}{line}{reset}"
    if event_dict:
        fields = ", ".join(f"{key}={encode_json(value).decode() if isinstance(value, dict) else value}" for key, value in event_dict.items())
        line = f"{line} {gray}({fields}){reset}"
    if exception:
        line = f"{line}\n{exception}"
    return line


class StdLoggingConfig:
    foreign_pre_chain_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.ExtraAdder(),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        _process_values,
    ]

    structlog_processors: list[Processor] = [*foreign_pre_chain_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter]

    json_renderer: list[Processor] = [
        structlog.stdlib.ProcessorFormatter.remove_processors_meta,
        structlog.processors.dict_tracebacks,
        structlog.processors.JSONRenderer(serializer=json_serializer),
    ]

    json_renderer_pretty: list[Processor] = [
        structlog.stdlib.ProcessorFormatter.remove_processors_meta,
        structlog.processors.dict_tracebacks,
        structlog.processors.JSONRenderer(serializer=json_serializer_pretty),
    ]

    console_renderer: list[Processor] = [
        structlog.stdlib.ProcessorFormatter.remove_processors_meta,
        structlog.processors.format_exc_info,
        _filter_console_fields,
        _console_renderer,
    ]

    formatters: dict[str, Any] = {
        "json": {
            "()": structlog.stdlib.ProcessorFormatter,
            "processors": json_renderer,
            "foreign_pre_chain": foreign_pre_chain_processors,
        },
        "json_pretty": {
            "()": structlog.stdlib.ProcessorFormatter,
            "processors": json_renderer_pretty,
            "foreign_pre_chain": foreign_pre_chain_processors,
        },
        "plain": {
            "()": structlog.stdlib.ProcessorFormatter,
            "processors": console_renderer,
            "foreign_pre_chain": foreign_pre_chain_processors,
        },
    }

    filters: dict[str, Any] = {
        "no_health_metrics": {
            "()": NoHealthMetricsFilter,
        },
    }

    logger_factory = structlog.stdlib.LoggerFactory()


def _get_handlers(formatter: str) -> dict[str, Any]:
    return {
        "console": {
            "class": "logging.StreamHandler",
            "level": "DEBUG",
            "stream": sys.stdout,
            "formatter": formatter,
            "filters": ["no_health_metrics"],
        },
        "standard": {
            "class": QueueHandler,
            "level": "DEBUG",
            "listener": LoggingQueueListener,
            "handlers": ["console"],
            "filters": ["no_health_metrics"],
        },
    }


def _quiet(level: str) -> dict[str, Any]:
    return {"handlers": ["standard"], "propagate": False, "level": level}


def build_logger_config(level: str | None = None) -> dict[str, Any]:
    root_level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": StdLoggingConfig.formatters,
        "filters": StdLoggingConfig.filters,
        "handlers": _get_handlers(_get_formatter_name()),
        "root": {"handlers": ["standard"], "level": root_level},
        "loggers": {
            "botocore": _quiet("ERROR"),
            "stripe": _quiet("WARNING"),
            "sqlalchemy.engine": _quiet("WARNING"),
            "aiosqlite": _quiet("WARNING"),
            "uvicorn": _quiet("INFO"),
            "uvicorn.error": _quiet("INFO"),
            "uvicorn.access": _quiet("WARNING"),
        },
    }

