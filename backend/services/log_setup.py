# services/log_setup.py
# ============================================================================
# SHIPROCKET → TRIPLE WHALE BRIDGE — STRUCTURED LOGGING
# ============================================================================
# structlog configuration shared by the server and the scheduled sync.
# Credentials never reach the log stream: any key that looks sensitive is
# masked before rendering, at any nesting depth.
# ============================================================================

import logging
from typing import Any, Dict, Optional

import structlog

REDACTED = "[REDACTED]"

SENSITIVE_KEYS = (
    "password",
    "secret",
    "token",
    "api_key",
    "api-key",
    "apikey",
    "auth",
    "authorization",
    "signature",
    "private_key",
    "credit_card",
    "cc_number",
    "cvv",
)


def _is_sensitive(key: Any) -> bool:
    lowered = str(key).lower()
    return any(field in lowered for field in SENSITIVE_KEYS)


def sanitize(value: Any) -> Any:
    """Return a copy of ``value`` with sensitive mapping keys masked."""
    if isinstance(value, dict):
        return {
            k: REDACTED if _is_sensitive(k) else sanitize(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return type(value)(sanitize(v) for v in value)
    return value


def redact_sensitive(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """structlog processor applying sanitize() to every bound key except the event."""
    for key in list(event_dict.keys()):
        if key == "event":
            continue
        if _is_sensitive(key):
            event_dict[key] = REDACTED
        else:
            event_dict[key] = sanitize(event_dict[key])
    return event_dict


def configure_logging(level: str = "INFO", json_logs: Optional[bool] = None, env: str = "development") -> None:
    """Configure structlog once at startup."""
    if json_logs is None:
        json_logs = env == "production"

    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            redact_sensitive,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


__all__ = ["configure_logging", "redact_sensitive", "sanitize", "REDACTED"]
