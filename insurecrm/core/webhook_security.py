"""
WhatsApp webhook signature validation

Meta signs every webhook delivery with HMAC-SHA256 over the raw request body,
keyed with the app secret of the receiving credential, and sends it in the
``x-hub-signature-256`` header as ``sha256=<hex>``.
"""
import hmac
import hashlib
import logging
from typing import Optional, Union

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-hub-signature-256"
SIGNATURE_PREFIX = "sha256="


class WebhookSecurityError(Exception):
    """Base class for webhook security errors"""
    pass


class InvalidSignatureError(WebhookSecurityError):
    """Raised when webhook signature is invalid"""
    pass


class MissingSignatureError(WebhookSecurityError):
    """Raised when required webhook signature is missing"""
    pass


def compute_signature(payload: Union[str, bytes], secret: str) -> str:
    """Header value Meta would send for this payload"""
    if isinstance(payload, str):
        payload = payload.encode('utf-8')
    digest = hmac.new(secret.encode('utf-8'), payload, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


class WebhookSignatureValidator:
    """
    Per-credential Meta webhook verification

    Uses constant-time comparison for both the signature and the
    subscription verify token.
    """

    def verify_signature(self, payload: Union[str, bytes], signature: Optional[str], app_secret: Optional[str]) -> bool:
        """
        Raises:
            MissingSignatureError: header or app secret missing
            InvalidSignatureError: signature does not match
        """
        if not app_secret:
            logger.warning("No app secret configured for webhook credential")
            raise MissingSignatureError("No app secret configured")

        if not signature or not signature.strip():
            raise MissingSignatureError("Webhook signature is empty")

        if not signature.startswith(SIGNATURE_PREFIX):
            logger.warning(f"Invalid Meta signature format: {signature[:20]}...")
            raise InvalidSignatureError("Invalid signature format")

        expected = compute_signature(payload, app_secret)
        if not hmac.compare_digest(expected, signature.strip()):
            logger.warning("Meta webhook signature verification failed")
            raise InvalidSignatureError("Signature mismatch")

        return True

    def verify_subscription(self, mode: Optional[str], token: Optional[str], expected_token: Optional[str]) -> bool:
        """GET handshake: hub.mode must be subscribe and the token must match"""
        if mode != "subscribe" or not token or not expected_token:
            return False
        return hmac.compare_digest(token, expected_token)


webhook_validator = WebhookSignatureValidator()
