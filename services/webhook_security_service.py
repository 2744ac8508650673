"""
Webhook Security Service - carrier webhook signature validation
HMAC-SHA256 over the raw request body, hex encoded, optionally prefixed with "sha256="
"""

import logging
import hmac
import hashlib
from typing import Dict, Any, Optional

from config import Config

logger = logging.getLogger(__name__)


def compute_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def validate_webhook_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """
    Validate webhook signature

    Args:
        body: The raw request body
        signature: The signature header value
        secret: The shared secret

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature or not secret:
        return False
    provided = signature[len("sha256="):] if signature.startswith("sha256=") else signature
    expected = compute_signature(body, secret)
    return hmac.compare_digest(provided.strip().lower(), expected)


class CarrierWebhookSecurity:
    """Authentication of inbound carrier calls"""

    @staticmethod
    def validate_carrier_webhook(body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Returns: {'valid': bool, 'error': str}

        Without a configured secret, development accepts unsigned calls and
        production rejects everything.
        """
        secret = Config.CARRIER_WEBHOOK_SECRET
        if not secret:
            if Config.IS_PRODUCTION:
                logger.error("❌ CARRIER_WEBHOOK_SECRET not configured in production - rejecting webhook")
                return {"valid": False, "error": "Webhook authentication is not configured"}
            logger.warning("⚠️ CARRIER_WEBHOOK_UNSIGNED: accepting unsigned webhook in development")
            return {"valid": True, "error": None}

        if not signature:
            logger.warning("⚠️ Missing carrier webhook signature")
            return {"valid": False, "error": "Missing webhook signature"}

        if not validate_webhook_signature(body, signature, secret):
            logger.warning("🚨 Invalid carrier webhook signature")
            return {"valid": False, "error": "Invalid webhook signature"}

        return {"valid": True, "error": None}
