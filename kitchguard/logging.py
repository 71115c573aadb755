from __future__ import annotations

import hashlib
import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

_request_correlation: ContextVar[Optional[str]] = ContextVar("kitchguard_correlation_id", default=None)

# Substrings that mark a log key as carrying credential material
_CREDENTIAL_KEY_MARKERS = ("password", "secret", "token", "authorization", "hash")
_MASK = "***"


def get_correlation_id() -> Optional[str]:
    return _request_correlation.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the request's correlation id, minting a uuid4 when the client sent none."""
    value = correlation_id or str(uuid.uuid4())
    _request_correlation.set(value)
    return value


def bind_request_context(client_ip: Optional[str]) -> None:
    """Reset per-request structlog context and bind the caller's address."""
    structlog.contextvars.clear_contextvars()
    if client_ip:
        structlog.contextvars.bind_contextvars(client_ip=client_ip)


def get_client_ip() -> Optional[str]:
    return structlog.contextvars.get_contextvars().get("client_ip")


def _attach_correlation_id(_logger: Any, _method: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    value = _request_correlation.get()
    if value and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = value
    return event_dict


def _is_credential_key(key: str) -> bool:
    lowered = key.lower()
    if lowered.endswith("_fingerprint"):
        return False
    return any(marker in lowered for marker in _CREDENTIAL_KEY_MARKERS)


def _redact_secrets(_logger: Any, _method: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask string values under credential-like keys, keeping a two-char prefix.

    ``*_fingerprint`` keys hold ``hash_for_logging`` digests and are left alone.
    """
    for key, value in event_dict.items():
        if isinstance(value, str) and len(value) > 4 and _is_credential_key(key):
            event_dict[key] = value[:2] + _MASK
    return event_dict


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(level: str = "INFO", *, json_output: bool = True, dev_mode: bool = False) -> None:
    """Install the structlog pipeline.

    Console rendering is used whenever ``dev_mode`` is set or JSON is turned
    off; production output is one JSON object per line on stdout.
    """
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _attach_correlation_id,
        _redact_secrets,
        structlog.processors.StackInfoRenderer(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.extend([structlog.processors.format_exc_info, structlog.processors.JSONRenderer()])

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper(), logging.INFO)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", True),
    dev_mode=_env_flag("LOG_DEV_MODE", False),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def hash_for_logging(value: str) -> str:
    """Short stable fingerprint of a token or identifier (first 8 hex chars of SHA-256)."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:8]


_LEAK_PATTERNS = tuple(
    re.compile(pattern)
    for pattern in (
        r"(?i)postgres(?:ql)?://\S+",
        r"\$argon2(?:id|i|d)\$\S+",
        r"eyJ[\w-]+\.[\w-]+\.[\w-]+",
        r"(?i)bearer\s+\S+",
        r"(?i)\b(?:select|insert|update|delete)\b.{0,80}",
        r"(?i)(?:password|secret|token|credential)\s*[:=]\s*\S+",
        r"(?i)traceback \(most recent call last\).*",
        r"(?:/[\w.-]+){2,}",
    )
)
_MAX_ERROR_LENGTH = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Scrub DSNs, password hashes, tokens, SQL and filesystem paths from an error text."""
    if not isinstance(error, str) or not error:
        return "An error occurred"
    cleaned = error
    for pattern in _LEAK_PATTERNS:
        cleaned = pattern.sub(replacement, cleaned)
    if len(cleaned) > _MAX_ERROR_LENGTH:
        cleaned = cleaned[: _MAX_ERROR_LENGTH - 3] + "..."
    return cleaned
