"""Structured logging for riskgate.

Every event is tagged with the id of the HTTP request being served, and
credential material is masked before any renderer sees it. Output is JSON
unless ``LOG_FORMAT=console``; the level comes from ``LOG_LEVEL``.
"""
from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

import structlog

_request_id: ContextVar[Optional[str]] = ContextVar("riskgate_request_id", default=None)

# client supplied ids are echoed into headers and log lines
_MAX_REQUEST_ID_LENGTH = 64

# exact key names, then suffixes: "refresh_token" is hidden, "access_token_ttl_minutes" is not
_MASKED_NAMES = frozenset(
    {"password", "token", "secret", "authorization", "cookie", "totp_code", "password_hash"}
)
_MASKED_SUFFIXES = ("_password", "_token", "_secret", "_hash")
_PARTIAL_SUFFIXES = ("email", "identifier")

MASK = "[masked]"


def current_request_id() -> Optional[str]:
    return _request_id.get()


def bind_request_id(candidate: Optional[str] = None) -> str:
    """Bind the id of the request being served and return it.

    A fresh id is generated when the client sent none, or sent one that is
    too long or carries non-printable characters.
    """
    value = (candidate or "").strip()
    if not value or len(value) > _MAX_REQUEST_ID_LENGTH or not value.isprintable():
        value = uuid.uuid4().hex
    _request_id.set(value)
    return value


def _stamp_request_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    request_id = _request_id.get()
    if request_id:
        event_dict.setdefault("request_id", request_id)
    return event_dict


def _partially_masked(value: str) -> str:
    local, at, domain = value.partition("@")
    if at:
        return f"{local[:1]}***@{domain}"
    return f"{value[:2]}***" if len(value) > 4 else MASK


def _mask_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Hide passwords, tokens and TOTP material; shorten contact details."""
    for key in list(event_dict):
        if key == "event":
            continue
        lowered = key.lower()
        if lowered in _MASKED_NAMES or lowered.endswith(_MASKED_SUFFIXES):
            event_dict[key] = MASK
        elif lowered.endswith(_PARTIAL_SUFFIXES):
            value = event_dict[key]
            if isinstance(value, str):
                event_dict[key] = _partially_masked(value)
    return event_dict


def configure_logging(level: str = "INFO", log_format: str = "json") -> None:
    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _stamp_request_id,
        _mask_credentials,
        structlog.processors.StackInfoRenderer(),
    ]
    if log_format == "console":
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

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
    level=os.getenv("LOG_LEVEL", "INFO"),
    log_format=os.getenv("LOG_FORMAT", "json").strip().lower(),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
