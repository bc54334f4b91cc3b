"""
Utility functions for the outreach API.
"""

import hashlib
import hmac
import logging

logger = logging.getLogger(__name__)


def verify_hmac_signature(body: bytes, signature: str, secret: str) -> bool:
    """
    Verify the hex HMAC-SHA256 of a raw webhook body.

    Args:
        body: Raw request body bytes
        signature: Hex-encoded signature from the X-Signature header
        secret: WEBHOOK_SECRET

    Returns:
        True if signature is valid, False otherwise
    """
    expected_signature = hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()

    # Constant-time comparison
    is_valid = hmac.compare_digest(expected_signature, signature)
    logger.debug(f"HMAC signature verification: {'valid' if is_valid else 'invalid'}")
    return is_valid
