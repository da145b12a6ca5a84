"""Centralized structured logging for the chat gateway.

Every module asks :func:`get_logger` for a structlog logger. Log calls carry an
event name plus keyword metadata; the processor chain redacts anything that may
hold user content or credentials and renders one JSON object per line through
the standard-library handler attached by :func:`configure_logging`.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, MutableMapping, Optional

import structlog

ROOT_LOGGER_NAME = "edge_chat"

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}

_SENSITIVE_KEY_PATTERN = re.compile(
    r"(prompt|content|messages|authorization|token|secret|api[_-]?key|assertion)",
    re.IGNORECASE,
)
_TOKEN_COUNT_KEYS = {
    "prompt_tokens",
    "completion_tokens",
    "input_tokens",
    "output_tokens",
    "total_tokens",
}
_RESERVED_KEYS = ("event", "level", "logger", "ts")
_MAX_STRING_LENGTH = 300
_MAX_DEPTH = 4


def sanitize(value: Any, depth: int = 0) -> Any:
    """Redact sensitive keys and bound strings and nesting depth."""
    if depth > _MAX_DEPTH:
        return "[truncated-depth]"
    if isinstance(value, str):
        if len(value) <= _MAX_STRING_LENGTH:
            return value
        return f"{value[:_MAX_STRING_LENGTH]}...[truncated]"
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, (list, tuple)):
        return [sanitize(item, depth + 1) for item in value]
    if isinstance(value, dict):
        result: Dict[str, Any] = {}
        for key, raw in value.items():
            key_text = str(key)
            is_token_count = (
                key_text.strip().lower() in _TOKEN_COUNT_KEYS
                and isinstance(raw, (int, float))
                and not isinstance(raw, bool)
            )
            if not is_token_count and _SENSITIVE_KEY_PATTERN.search(key_text):
                result[key_text] = "[redacted]"
            else:
                result[key_text] = sanitize(raw, depth + 1)
        return result
    return "[unsupported-type]"


def redact_event(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> Dict[str, Any]:
    """structlog processor applying :func:`sanitize` to every metadata field."""
    reserved = {key: event_dict.pop(key) for key in _RESERVED_KEYS if key in event_dict}
    cleaned = sanitize(dict(event_dict))
    cleaned.update(reserved)
    return cleaned


structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
        redact_event,
        structlog.processors.JSONRenderer(ensure_ascii=False, default=str),
    ],
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)


def configure_logging(level: str = "info") -> logging.Logger:
    """Attach the line handler to the package root logger and set its level."""
    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(_LEVELS.get((level or "").strip().lower(), logging.INFO))
    if not any(getattr(h, "_edge_chat_handler", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(message)s"))
        handler._edge_chat_handler = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    return root


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a logger under the package root, e.g. ``edge_chat.api``."""
    return structlog.get_logger(f"{ROOT_LOGGER_NAME}.{name}")


def request_logger(
    name: str, *, request_id: str, method: str, path: str
) -> structlog.stdlib.BoundLogger:
    """A logger bound to one request's id, method and path."""
    return get_logger(name).bind(request_id=request_id, method=method, path=path)


def subject_prefix(subject: Optional[str]) -> str:
    return (subject or "")[:8] or "unknown"


def email_domain(email: Optional[str]) -> str:
    parts = (email or "").split("@")
    return parts[1] if len(parts) > 1 and parts[1] else "unknown"
