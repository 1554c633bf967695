from __future__ import annotations

import hashlib
import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, populated from X-Request-ID by the app middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


# Values that are never useful in a log line
_DROPPED_FIELDS = frozenset(
    {"password", "new_password", "password_hash", "jwt_secret", "authorization", "id_token"}
)
_JWT_SHAPE = re.compile(r"eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]*")


def _fingerprint(value: str) -> str:
    # same token, same fingerprint
    return "sha256:" + hashlib.sha256(value.encode("utf-8")).hexdigest()[:12]


def _mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return "[redacted]"
    return f"{local[:1]}***@{domain}"


def _redact_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Keep passwords, hashes and bearer tokens out of log sinks.

    Password and secret fields are dropped, token fields are replaced by a
    short fingerprint and email addresses keep only their domain. Any other
    string that looks like a signed token is fingerprinted as well.
    """
    for key, value in list(event_dict.items()):
        if not isinstance(value, str) or not value:
            continue
        lower_key = key.lower()
        if lower_key in _DROPPED_FIELDS or "password" in lower_key or "secret" in lower_key:
            event_dict[key] = "[redacted]"
        elif "token" in lower_key:
            event_dict[key] = _fingerprint(value)
        elif "email" in lower_key:
            event_dict[key] = _mask_email(value)
        elif key != "event":
            event_dict[key] = _JWT_SHAPE.sub(lambda m: _fingerprint(m.group(0)), value)
    return event_dict


def _truthy(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def configure_logging(level: str = "INFO", *, console: bool = False) -> None:
    """Install the structlog pipeline used by every fairshare logger.

    Exception text is rendered before redaction so tokens quoted inside a
    traceback are fingerprinted too. ``console`` switches from one JSON
    object per line to coloured developer output.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        _redact_secrets,
        structlog.processors.UnicodeDecoder(),
    ]
    if console:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    console=_truthy("LOG_DEV_MODE", "false") or not _truthy("LOG_JSON", "true"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger with correlation ID support."""
    return structlog.get_logger(name)


# Ordered: connection URLs and bearer credentials go before the looser
# path and email shapes that would otherwise eat part of them
_CLIENT_UNSAFE_PATTERNS = [
    (re.compile(r"(?i)rediss?://\S+"), "[store-url]"),
    (re.compile(r"(?i)bearer\s+\S+"), "Bearer [token]"),
    (_JWT_SHAPE, "[token]"),
    (re.compile(r"\$argon2(?:id|i|d)\$\S+"), "[password-hash]"),
    (
        re.compile(
            r"(?i)\b(password|passwd|secret|jwt_secret|token|id_token|client_secret)"
            r"\s*[:=]\s*[^\s,;]+"
        ),
        r"\1=[redacted]",
    ),
    (re.compile(r"(?:/[\w.-]+){2,}"), "[path]"),
    (re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+"), "[email]"),
    (re.compile(r"(?is)traceback \(most recent call last\).*"), "[traceback]"),
]

MAX_CLIENT_ERROR_LENGTH = 500


def sanitize_error_message(error: str) -> str:
    """Make exception text safe to return to an API client.

    Store URLs, tokens, password hashes, credential assignments, file paths
    (the persisted JWT secret lives under ``DATA_DIR``), email addresses and
    tracebacks are replaced with placeholders.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern, placeholder in _CLIENT_UNSAFE_PATTERNS:
        result = pattern.sub(placeholder, result)

    if len(result) > MAX_CLIENT_ERROR_LENGTH:
        result = result[: MAX_CLIENT_ERROR_LENGTH - 3] + "..."
    return result
