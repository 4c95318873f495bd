"""
Webhook Security Service - signature validation for custody provider notifications
"""

import logging
import hmac
import hashlib
from typing import Optional, Union

logger = logging.getLogger(__name__)


def compute_signature(payload: Union[str, bytes], secret: str) -> str:
    body = payload.encode() if isinstance(payload, str) else payload
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def validate_webhook_signature(payload: Union[str, bytes], signature: Optional[str], secret: str) -> bool:
    """
    Validate an HMAC-SHA256 webhook signature.

    Accepts both the bare hex digest and the ``sha256=<hex>`` form.
    """
    if not signature or not secret:
        return False
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]
    expected_signature = compute_signature(payload, secret)
    # Use secure comparison
    return hmac.compare_digest(signature, expected_signature)
