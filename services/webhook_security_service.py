"""
Webhook Security Service - signature validation for the payment gateway
Covers the checkout callback signature and the webhook body signature
"""

import logging
import hmac
import hashlib
from typing import Dict, Any, Optional, Union
from fastapi import Request

logger = logging.getLogger(__name__)

MAX_WEBHOOK_BODY_BYTES = 1024 * 1024  # 1MB


def _to_bytes(value: Union[str, bytes]) -> bytes:
    return value if isinstance(value, bytes) else value.encode()


def compute_signature(payload: Union[str, bytes], secret: str) -> str:
    """Hex HMAC-SHA256 of payload"""
    return hmac.new(_to_bytes(secret), _to_bytes(payload), hashlib.sha256).hexdigest()


def validate_webhook_signature(payload: Union[str, bytes], signature: Optional[str], secret: str) -> bool:
    """
    Validate webhook signature

    Args:
        payload: The webhook payload (raw body)
        signature: The signature to verify (usually from headers)
        secret: The secret key for verification

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature or not secret:
        return False

    # Handle "sha256=" prefixed format as well as bare hex
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]

    expected_signature = compute_signature(payload, secret)

    # Use secure comparison
    return hmac.compare_digest(signature, expected_signature)


def checkout_payload(order_id: str, payment_id: Optional[str] = None) -> str:
    """Checkout signatures cover order_id|payment_id, or the order id alone"""
    return f"{order_id}|{payment_id}" if payment_id else order_id


def validate_checkout_signature(
    order_id: str, payment_id: Optional[str], signature: Optional[str], secret: str
) -> bool:
    return validate_webhook_signature(checkout_payload(order_id, payment_id), signature, secret)


class WebhookSecurityService:
    """Centralized webhook security validation service"""

    SIGNATURE_HEADER = "X-Razorpay-Signature"

    @classmethod
    def validate_gateway_webhook(
        cls, request: Request, body: bytes, secret: str
    ) -> Dict[str, Any]:
        """
        Pre-flight checks on an incoming gateway webhook.
        Returns: {'valid': bool, 'error': str, 'signature': str}

        The signature itself is verified by the payment gateway adapter.
        """
        signature = request.headers.get(cls.SIGNATURE_HEADER)

        if not signature:
            logger.warning("🚫 WEBHOOK_SECURITY: Missing gateway signature header")
            return {"valid": False, "error": "Missing signature header", "signature": None}

        if not secret:
            logger.error("❌ WEBHOOK_SECURITY: Webhook secret not configured, rejecting")
            return {"valid": False, "error": "Webhook secret not configured", "signature": signature}

        content_length = len(body)
        if content_length > MAX_WEBHOOK_BODY_BYTES:
            logger.error(f"❌ WEBHOOK_SECURITY: Payload too large: {content_length} bytes")
            return {"valid": False, "error": "Payload too large", "signature": signature}

        content_type = request.headers.get("Content-Type", "")
        if content_type and "application/json" not in content_type:
            logger.warning(f"⚠️ WEBHOOK_SECURITY: Unexpected content type: {content_type}")

        return {"valid": True, "signature": signature}
