from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, MutableMapping, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the request's correlation id, generating one when the client sent none."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def mask_email(email: Optional[str]) -> str:
    """Shorten an email for log lines, keeping only the first three characters."""
    if not email:
        return ""
    return email[:3] + "***"


# Digests and labels that share a substring with a secret field name
_SAFE_FIELDS = frozenset({"token_hash", "old_token_hash", "token_type", "token_hash_prefix"})
_SECRET_MARKERS = ("password", "secret", "token", "authorization", "cookie")


def _bind_correlation_id(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    cid = get_correlation_id()
    if cid and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = cid
    return event_dict


def _scrub_credentials(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Never let a bearer secret or a full email address reach the log sink."""
    for key, value in list(event_dict.items()):
        lowered = key.lower()
        if lowered in _SAFE_FIELDS or not isinstance(value, str):
            continue
        if "email" in lowered:
            event_dict[key] = mask_email(value)
        elif any(marker in lowered for marker in _SECRET_MARKERS):
            event_dict[key] = "[redacted]"
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: str = "INFO",
    *,
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the structlog pipeline.

    Args:
        level: Minimum level (DEBUG, INFO, WARNING, ERROR)
        json_output: Render one JSON object per line; console output otherwise
        development_mode: Force colored console output
    """
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _bind_correlation_id,
        _scrub_credentials,
        structlog.processors.StackInfoRenderer(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
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
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


__all__ = [
    "configure_logging",
    "get_correlation_id",
    "get_logger",
    "mask_email",
    "set_correlation_id",
]
