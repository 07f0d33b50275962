"""
Structured logging for the relay.

structlog is layered over stdlib logging so that both our own events and
third-party loggers (websockets, asyncio) end up in the same JSON (default) or
console stream. Every event carries the connection id of the client it
belongs to, when there is one, and secrets are redacted before rendering.
"""

import contextvars
import logging
import os
import sys
import time
import uuid
from logging.handlers import RotatingFileHandler

import structlog
from structlog import dev as structlog_dev

SERVICE_NAME = "gemini-relay"

# Connection id of the client currently being served
correlation_id_var = contextvars.ContextVar("correlation_id", default=None)

SENSITIVE_KEYS = {
    "api_key", "apikey", "api-key", "api_keys",
    "key",
    "token", "access_token", "refresh_token", "auth_token", "bearer",
    "password", "passwd", "pwd", "pass",
    "authorization",
    "credential", "credentials", "secret", "secrets",
    "private_key", "client_secret",
}



def get_correlation_id():
    return correlation_id_var.get()


def set_correlation_id(value=None):
    """Bind a correlation id to the current task context and return it."""
    if value is None:
        value = uuid.uuid4().hex
    correlation_id_var.set(value)
    return value


def add_correlation_id(logger, method_name, event_dict):
    correlation_id = get_correlation_id()
    if correlation_id and "conn_id" not in event_dict:
        event_dict["conn_id"] = correlation_id
    return event_dict


def add_service_context(logger, method_name, event_dict):
    event_dict["service"] = SERVICE_NAME
    component = event_dict.get("logger")
    if not component:
        component = getattr(getattr(logger, "logger", None), "name", None) or "unknown"
    event_dict["component"] = component
    return event_dict


def _is_sensitive(key) -> bool:
    normalized = str(key).lower().replace("-", "_")
    compact = normalized.replace("_", "")
    for pattern in SENSITIVE_KEYS:
        pattern_compact = pattern.replace("_", "").replace("-", "")
        if compact == pattern_compact:
            return True
        # A bare "key" suffix is too broad (cache_key, monkey)
        if pattern_compact != "key" and compact.endswith(pattern_compact):
            return True
    return False


def _redact_value(value):
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, str):
        if not value:
            return ""
        # Keep a short prefix so operators can tell which key was in use
        if len(value) > 4:
            return f"{value[:2]}***REDACTED***"
        return "***REDACTED***"
    if isinstance(value, (list, tuple)):
        return [_redact_value(v) for v in value]
    return "***REDACTED***"


def _sanitize(value):
    if isinstance(value, dict):
        return {
            k: (_redact_value(v) if _is_sensitive(k) else _sanitize(v))
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_sanitize(v) for v in value]
    return value


def sanitize_secrets(logger, method_name, event_dict):
    """
    Redact API keys, tokens and passwords from a log event.

    Matching is on the key name, case-insensitive, ignoring ``_``/``-``
    separators, and also catches suffixed names such as ``gemini_api_key``.
    Nested dictionaries are sanitized recursively.
    """
    return _sanitize(event_dict)


def configure_logging(log_level="INFO", log_to_file=False, log_file_path="relay.log"):
    """
    Configure structlog and the stdlib root logger.

    Environment overrides:
      - LOG_LEVEL: debug|info|warning|error|critical
      - LOG_FORMAT: json|console (default: json)
      - LOG_COLOR: 0|1 (console only)
      - LOG_TO_FILE: 0|1
      - LOG_FILE_PATH: file path, ``{ts}`` is replaced by a timestamp
      - LOG_SHOW_TRACEBACKS: auto|always|never (auto = only at DEBUG)
    """
    log_level = (os.getenv("LOG_LEVEL") or str(log_level)).upper()
    if os.getenv("LOG_TO_FILE") is not None:
        log_to_file = os.getenv("LOG_TO_FILE", "0").strip().lower() in ("1", "true", "yes")
    log_file_path = os.getenv("LOG_FILE_PATH", log_file_path)
    log_format = os.getenv("LOG_FORMAT", "json").strip().lower()
    log_color = os.getenv("LOG_COLOR", "1").strip().lower() not in ("0", "false")

    tb_mode = os.getenv("LOG_SHOW_TRACEBACKS", "auto").strip().lower()
    if tb_mode == "always":
        show_tracebacks = True
    elif tb_mode == "never":
        show_tracebacks = False
    else:
        show_tracebacks = log_level == "DEBUG"

    def suppress_exc_info_if_disabled(logger, method_name, event_dict):
        if not show_tracebacks and event_dict.get("exc_info"):
            event_dict.pop("exc_info", None)
        return event_dict

    level_value = getattr(logging, log_level, logging.INFO)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            add_service_context,
            add_correlation_id,
            sanitize_secrets,
            suppress_exc_info_if_disabled,
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    if log_format == "console":
        renderer = structlog_dev.ConsoleRenderer(colors=log_color)
    else:
        renderer = structlog.processors.JSONRenderer()

    processor_formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=[
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
        ],
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(level_value)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(processor_formatter)
    root_logger.addHandler(console_handler)

    if log_to_file:
        path = log_file_path.replace("{ts}", time.strftime("%Y%m%d-%H%M%S"))
        try:
            directory = os.path.dirname(path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            file_handler = RotatingFileHandler(path, maxBytes=10 * 1024 * 1024, backupCount=5)
            file_handler.setFormatter(processor_formatter)
            root_logger.addHandler(file_handler)
        except OSError as e:
            get_logger(__name__).warning(
                "File logging disabled; continuing with console only",
                error=str(e),
                configured_path=log_file_path,
            )

    for noisy in ("websockets", "websockets.client", "websockets.server", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str):
    """Get a structlog logger."""
    return structlog.get_logger(name)
