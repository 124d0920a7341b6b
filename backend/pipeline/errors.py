# pipeline/errors.py
# ============================================================================
# SHIPROCKET → TRIPLE WHALE BRIDGE — ERROR TAXONOMY
# ============================================================================
# Every failure the pipeline surfaces is a SyncError subclass. Remote errors
# carry enough context (service, status, body) to be logged and classified
# by the retry policy without re-inspecting the HTTP response.
# ============================================================================

from typing import Any, List, Optional


class SyncError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(SyncError):
    """Required configuration is missing or invalid."""

    def __init__(self, message: str, missing: Optional[List[str]] = None):
        super().__init__(message)
        self.missing = missing or []


class ValidationError(SyncError):
    """Bad or missing input. Surfaced as 400, never retried."""

    def __init__(self, message: str, details: Optional[List[dict]] = None):
        super().__init__(message)
        self.details = details or []


class RemoteError(SyncError):
    """A call to an external platform failed."""

    def __init__(
        self,
        message: str,
        *,
        service: str,
        status_code: Optional[int] = None,
        response_text: Optional[str] = None,
    ):
        super().__init__(message)
        self.service = service
        self.status_code = status_code
        self.response_text = response_text


class AuthenticationError(RemoteError):
    """Credential exchange or token rejected by the remote side."""


class TransientRemoteError(RemoteError):
    """5xx, 408, 429 or a network-level failure. Retried with backoff."""


class PermanentRemoteError(RemoteError):
    """Any other 4xx. Surfaced immediately."""


class BreakerOpenError(SyncError):
    """The dependency's circuit breaker is open; no call was attempted."""

    def __init__(self, breaker_name: str, retry_after: Optional[float] = None):
        super().__init__(f"Circuit breaker {breaker_name} is OPEN - request blocked")
        self.breaker_name = breaker_name
        self.retry_after = retry_after


class PartialDeliveryError(SyncError):
    """Some metric chunks were delivered before a chunk failed."""

    def __init__(self, delivered: int, total: int, cause: Exception):
        super().__init__(
            f"Delivered {delivered} of {total} metrics before failure: {cause}"
        )
        self.delivered = delivered
        self.total = total
        self.cause = cause


def error_for_status(
    service: str,
    status_code: int,
    response_text: Optional[str] = None,
    context: Any = None,
) -> RemoteError:
    """Map an HTTP error status onto the taxonomy."""
    message = f"{service} responded {status_code}"
    if context:
        message = f"{message} for {context}"

    if status_code == 401:
        cls = AuthenticationError
    elif status_code >= 500 or status_code in (408, 429):
        cls = TransientRemoteError
    else:
        cls = PermanentRemoteError

    return cls(
        message,
        service=service,
        status_code=status_code,
        response_text=(response_text or "")[:500] or None,
    )


__all__ = [
    "SyncError",
    "ConfigurationError",
    "ValidationError",
    "RemoteError",
    "AuthenticationError",
    "TransientRemoteError",
    "PermanentRemoteError",
    "BreakerOpenError",
    "PartialDeliveryError",
    "error_for_status",
]
