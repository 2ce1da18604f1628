from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar, Token
from typing import Any, Dict, Optional

import structlog

# One id per authenticate() call so trigger/fetch/login lines can be correlated
attempt_id_var: ContextVar[Optional[str]] = ContextVar("attempt_id", default=None)


def get_attempt_id() -> Optional[str]:
    """Get the attempt ID bound to the current thread/context."""
    return attempt_id_var.get()


def set_attempt_id(attempt_id: Optional[str] = None) -> str:
    """Set or generate an attempt ID for the current authentication flow."""
    aid = attempt_id or uuid.uuid4().hex[:12]
    attempt_id_var.set(aid)
    return aid


def clear_attempt_id() -> None:
    attempt_id_var.set(None)


def bind_attempt_id(attempt_id: Optional[str] = None) -> Token:
    """Bind an attempt ID and return the token that restores the previous one."""
    return attempt_id_var.set(attempt_id or uuid.uuid4().hex[:12])


def reset_attempt_id(token: Token) -> None:
    """Restore whatever attempt ID was bound before ``bind_attempt_id``."""
    attempt_id_var.reset(token)


def _add_attempt_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to add attempt_id to all log entries."""
    aid = get_attempt_id()
    if aid:
        event_dict["attempt_id"] = aid
    return event_dict


_SECRET_KEYS = ("password", "secret", "token", "otp", "cookie", "authorization", "api_key")


def _redact_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to redact credential-bearing values from log entries."""
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        if any(secret in lower_key for secret in _SECRET_KEYS):
            value = event_dict[key]
            if isinstance(value, str) and len(value) > 4:
                # Keep first/last 2 chars for debugging
                event_dict[key] = value[:2] + "***" + value[-2:]
            elif isinstance(value, str) and value:
                event_dict[key] = "***"
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_attempt_id,
        _redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Initialize logging on module import
_log_level = os.getenv("LOG_LEVEL", "INFO").upper()
_json_output = os.getenv("LOG_JSON", "true").lower() in {"1", "true", "yes", "on"}
_dev_mode = os.getenv("LOG_DEV_MODE", "false").lower() in {"1", "true", "yes", "on"}

_configure_structlog(
    log_level=_log_level,
    json_output=_json_output,
    development_mode=_dev_mode,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger; attempt_id is attached automatically."""
    return structlog.get_logger(name)


def mask_identity(identity: Optional[str]) -> str:
    """Mask an email or phone identity for logging.

    user@test.com -> us***@test.com, 9999999999 -> ******9999
    """
    if not identity:
        return "<blank>"
    if "@" in identity:
        local, domain = identity.split("@", 1)
        return f"{local[:2]}***@{domain}"
    if len(identity) <= 4:
        return "*" * len(identity)
    return "*" * (len(identity) - 4) + identity[-4:]


_SENSITIVE_ERROR_PATTERNS = [
    # Credentials embedded in URLs (redis://:pw@host)
    r'(?i)[a-z][a-z0-9+.-]*://[^\s/@]*:[^\s/@]*@',
    r'(?i)(password|secret|token|key|credential|api.?key|otp)\s*[:=]\s*[^\s,]+',
    r'(?i)bearer\s+[a-z0-9._~+/-]+=*',
    r'(?i)traceback\s*\(most recent call last\)',
]

_SENSITIVE_PATTERNS_COMPILED = [re.compile(p) for p in _SENSITIVE_ERROR_PATTERNS]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Sanitize an error message before it is placed in a result object.

    Removes credentials, bearer tokens and stack traces and caps the length.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _SENSITIVE_PATTERNS_COMPILED:
        result = pattern.sub(replacement, result)

    if len(result) > 500:
        result = result[:497] + "..."

    return result
