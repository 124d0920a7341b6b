# services/__init__.py
# ============================================================================
# SHIPROCKET → TRIPLE WHALE BRIDGE — SERVICES MODULE
# ============================================================================
# Process-level services: counters and structured logging
# ============================================================================

from services.collector import MetricsCollector
from services.log_setup import configure_logging, redact_sensitive, sanitize

__all__ = [
    "MetricsCollector",
    "configure_logging",
    "redact_sensitive",
    "sanitize",
]
