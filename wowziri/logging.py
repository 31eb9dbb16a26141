from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def redact_email(email: str) -> str:
    """Keep the first two characters of the local part and the domain."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def mask_secret(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return f"{value[:2]}***{value[-2:]}"


# Substrings of event keys whose values never reach the log sink in clear
_SECRET_KEY_PARTS = ("password", "secret", "token", "code", "authorization", "link")
_EMAIL_KEY_PART = "email"
_UNMASKED_KEYS = frozenset({"event", "error_code", "status_code", "logger", "level"})


def _tag_correlation_id(_logger: Any, _method: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _redact_sensitive(_logger: Any, _method: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        if key in _UNMASKED_KEYS or not isinstance(value, str):
            continue
        lowered = key.lower()
        if _EMAIL_KEY_PART in lowered:
            event_dict[key] = redact_email(value)
        elif any(part in lowered for part in _SECRET_KEY_PARTS):
            event_dict[key] = mask_secret(value)
    return event_dict


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: Optional[str] = None,
    *,
    json_output: Optional[bool] = None,
    dev_mode: Optional[bool] = None,
) -> None:
    """Install the structlog pipeline.

    Arguments left as None fall back to ``LOG_LEVEL``, ``LOG_JSON`` and
    ``LOG_DEV_MODE``. JSON lines are the default; dev mode switches to the
    coloured console renderer.
    """
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = _env_flag("LOG_JSON", True)
    if dev_mode is None:
        dev_mode = _env_flag("LOG_DEV_MODE", False)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _tag_correlation_id,
        _redact_sensitive,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend([structlog.processors.format_exc_info, structlog.processors.JSONRenderer()])

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level, logging.INFO)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Fragments stripped from error text before it is shown to a client
_CLIENT_UNSAFE_PATTERNS = tuple(
    re.compile(pattern)
    for pattern in (
        r"(?i)(sql|query|select|insert|update|delete|where|from|join)\s+.{0,50}",
        r"(?i)connection\s+.*\s+(failed|refused|timeout)",
        r"(?i)/(?:home|var|etc|usr|opt|tmp|root|srv)/[^\s]+",
        r"(?i)[a-z]:\\[^\s]+",
        r"(?i)(password|secret|token|key|credential|api.?key)\s*[:=]\s*[^\s]+",
        r"(?i)traceback\s*\(most recent call last\)",
    )
)
_MAX_CLIENT_ERROR_CHARS = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip paths, credentials, SQL and stack traces from ``error``.

    Used when the underlying error text is echoed to clients outside
    production.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"
    result = error
    for pattern in _CLIENT_UNSAFE_PATTERNS:
        result = pattern.sub(replacement, result)
    if len(result) > _MAX_CLIENT_ERROR_CHARS:
        result = result[: _MAX_CLIENT_ERROR_CHARS - 3] + "..."
    return result
