from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Optional

import structlog

# Substrings that mark a log key as carrying a credential or PII
_REDACT_KEY_PARTS = ("secret", "token", "authorization", "password", "email")
# Whole keys carrying OAuth one-time values
_REDACT_EXACT_KEYS = frozenset({"code", "state", "session_id"})


def _redact_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor masking tokens, OAuth codes and PII before rendering."""
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        if lower_key in _REDACT_EXACT_KEYS or any(
            part in lower_key for part in _REDACT_KEY_PARTS
        ):
            value = event_dict[key]
            if isinstance(value, str) and len(value) > 4:
                # Keep first/last 2 chars for debugging
                event_dict[key] = value[:2] + "***" + value[-2:]
    return event_dict


def configure_logging(
    level: str = "INFO", json_output: bool = True, dev_mode: bool = False
) -> None:
    """(Re)configure structlog for the auth service.

    Request-scoped fields (``correlation_id``, ``user_id``, ``auth_tier``)
    live in structlog's contextvars and are merged into every event.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _redact_secrets,
        structlog.processors.StackInfoRenderer(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=dev_mode))
    else:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        # Module-level loggers must pick up the settings applied at startup
        cache_logger_on_first_use=False,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the request's correlation id, generating one when absent."""
    cid = correlation_id or str(uuid.uuid4())
    structlog.contextvars.bind_contextvars(correlation_id=cid)
    return cid


def bind_request_identity(user_id: str, tier: str) -> None:
    """Attach the authenticated user to every log line of the current request."""
    structlog.contextvars.bind_contextvars(user_id=user_id, auth_tier=tier)


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()
