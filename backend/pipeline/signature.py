# pipeline/signature.py
# ============================================================================
# SHIPROCKET → TRIPLE WHALE BRIDGE — WEBHOOK SIGNATURE VERIFICATION
# ============================================================================

import hashlib
import hmac
from typing import Optional

SIGNATURE_PREFIX = "sha256="


def compute_signature(raw_body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the body keyed by the webhook secret."""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(
    raw_body: bytes,
    signature_header: Optional[str],
    secret: str,
    enabled: bool = True,
) -> bool:
    """
    Check an inbound webhook signature.

    Returns True unconditionally when verification is disabled. A missing
    header, an empty secret or a header that is not ASCII never verifies.
    """
    if not enabled:
        return True

    if not signature_header or not secret:
        return False

    supplied = signature_header.strip()
    if supplied.lower().startswith(SIGNATURE_PREFIX):
        supplied = supplied[len(SIGNATURE_PREFIX):]

    try:
        supplied_bytes = supplied.encode("ascii")
    except UnicodeEncodeError:
        return False

    expected = compute_signature(raw_body, secret).encode("ascii")
    return hmac.compare_digest(expected, supplied_bytes)


__all__ = ["compute_signature", "verify_signature"]
