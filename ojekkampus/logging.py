from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Substrings of event keys whose string values are partially masked
_SECRET_KEY_PARTS = ("password", "secret", "token", "authorization", "email", "otp", "code")
_NON_SECRET_KEYS = frozenset({"error_code", "status_code"})


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the request's ``X-Request-ID`` (or a fresh UUID) to this context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def mask_phone(phone: Optional[str]) -> Optional[str]:
    """Keep the country prefix and last three digits of a phone number."""
    if not phone:
        return phone
    if len(phone) <= 6:
        return "***"
    return phone[:4] + "***" + phone[-3:]


def _mask_secret(value: str) -> str:
    if len(value) > 4:
        return value[:2] + "***" + value[-2:]
    return "***"


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials, one-time codes, emails and phone numbers."""
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        lower_key = key.lower()
        if lower_key in _NON_SECRET_KEYS:
            continue
        if any(part in lower_key for part in _SECRET_KEY_PARTS):
            event_dict[key] = _mask_secret(value)
        elif "phone" in lower_key:
            event_dict[key] = mask_phone(value)
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def _configure_structlog(log_level: str = "INFO", console: bool = False) -> None:
    """JSON lines by default; ``console`` switches to the coloured dev renderer."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if console:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors += [
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


_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    console=_env_flag("LOG_DEV_MODE", "false") or not _env_flag("LOG_JSON", "true"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
