"""
Webhook Security Module

Shared helpers for authenticating payment provider webhooks:
- Constant-time comparison of signatures and shared tokens
- Timestamp tolerance used when verifying signed payloads
- Signature generation for tests and outgoing webhooks
"""

import hashlib
import hmac
import logging
import time
from typing import Optional

logger = logging.getLogger(__name__)

# Maximum age of webhook in seconds (5 minutes)
MAX_WEBHOOK_AGE_SECONDS = 300


def constant_time_compare(a: Optional[str], b: Optional[str]) -> bool:
    """
    Compare two strings in constant time to prevent timing attacks.
    Uses hmac.compare_digest which is designed for this purpose.
    """
    if not a or not b:
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def compute_hmac_sha256(secret: str, payload: bytes) -> str:
    """Compute HMAC-SHA256 signature of payload"""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_shared_token(received: Optional[str], expected: Optional[str]) -> bool:
    """
    Verify a webhook authenticated by a shared token header (Asaas style).

    Asaas sends the token configured on the webhook back in the
    'asaas-access-token' header of every delivery.
    """
    if not received:
        logger.warning("🚫 Webhook missing access token header")
        return False

    if not constant_time_compare(received.strip(), expected):
        logger.warning("🚫 Webhook access token mismatch")
        return False

    logger.debug("✅ Webhook access token verified")
    return True


def create_webhook_signature(
    secret: str, payload: bytes, provider: str = "generic", timestamp: Optional[int] = None
) -> str:
    """
    Create a webhook signature for testing or outgoing webhooks.

    Args:
        secret: Signing secret
        payload: Request body bytes
        provider: Provider format ('generic', 'stripe')
        timestamp: Unix timestamp for the Stripe format (defaults to now)

    Returns:
        Signature string in provider's format
    """
    if provider == "stripe":
        timestamp = int(time.time()) if timestamp is None else timestamp
        signed_payload = f"{timestamp}.{payload.decode('utf-8')}"
        sig = compute_hmac_sha256(secret, signed_payload.encode())
        return f"t={timestamp},v1={sig}"
    return compute_hmac_sha256(secret, payload)
