"""
Widget Auth Gateway

Issues and verifies signed, time-limited tokens that bind anonymous website
widget traffic to a tenant. Token layout:

    base64url(json payload) "." base64url(HMAC-SHA256(secret, encoded payload))

Verification failures are reported with one uniform error so callers cannot
tell a bad signature from an expired token or a domain mismatch.
"""
import base64
import hashlib
import hmac
import json
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

from insurecrm.core.config import get_settings

logger = logging.getLogger(__name__)

INVALID_TOKEN_MESSAGE = "Invalid widget token"


class WidgetTokenError(Exception):
    """Raised for any rejected widget token"""

    def __init__(self):
        super().__init__(INVALID_TOKEN_MESSAGE)


@dataclass(frozen=True)
class WidgetIdentity:
    tenant_id: str
    widget_id: str
    domain: Optional[str]


def normalize_domain(domain: Optional[str]) -> Optional[str]:
    """Lowercase hostname of a domain, Origin or Referer URL, without ``www.``"""
    if not domain or not domain.strip():
        return None
    value = domain.strip()
    if "://" not in value:
        value = "//" + value
    try:
        host = urlsplit(value).hostname
    except ValueError:
        return None
    if host and host.startswith("www."):
        host = host[4:]
    return host or None


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64decode(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


class WidgetAuthService:
    def __init__(self, secret: Optional[str] = None, default_ttl: Optional[int] = None, clock=time.time):
        settings = get_settings()
        self.secret = (secret or settings.widget_secret).encode("utf-8")
        self.default_ttl = default_ttl or settings.widget_token_ttl_seconds
        self.clock = clock

    def _sign(self, encoded_payload: str) -> str:
        return _b64encode(hmac.new(self.secret, encoded_payload.encode("ascii"), hashlib.sha256).digest())

    def issue_token(self, tenant_id: str, widget_id: str, domain: Optional[str] = None,
                    ttl_seconds: Optional[int] = None) -> str:
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl
        payload = {
            "tenantId": tenant_id,
            "widgetId": widget_id,
            "domain": normalize_domain(domain),
            "expiresAt": int((self.clock() + ttl) * 1000),
        }
        encoded = _b64encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
        return f"{encoded}.{self._sign(encoded)}"

    def verify_token(self, token: Optional[str], request_domain: Optional[str] = None) -> WidgetIdentity:
        """
        Raises:
            WidgetTokenError: for every failure, without saying which check failed
        """
        try:
            encoded, signature = (token or "").split(".", 1)
        except ValueError:
            logger.warning("Widget token rejected: malformed")
            raise WidgetTokenError()

        if not hmac.compare_digest(signature, self._sign(encoded)):
            logger.warning("Widget token rejected: signature")
            raise WidgetTokenError()

        try:
            payload: Dict[str, Any] = json.loads(_b64decode(encoded))
            tenant_id = payload["tenantId"]
            widget_id = payload["widgetId"]
            expires_at = int(payload["expiresAt"])
        except (ValueError, KeyError, TypeError):
            logger.warning("Widget token rejected: payload")
            raise WidgetTokenError()

        if expires_at <= int(self.clock() * 1000):
            logger.info(f"Widget token rejected: expired (widget {widget_id})")
            raise WidgetTokenError()

        allowed_domain = payload.get("domain")
        if allowed_domain and normalize_domain(request_domain) != allowed_domain:
            logger.warning(f"Widget token rejected: domain mismatch (widget {widget_id})")
            raise WidgetTokenError()

        return WidgetIdentity(tenant_id=tenant_id, widget_id=widget_id, domain=allowed_domain)

    def generate_widget_config(self, tenant_id: str, domain: Optional[str] = None,
                               widget_id: Optional[str] = None) -> Dict[str, str]:
        widget_id = widget_id or f"widget_{secrets.token_hex(8)}"
        return {
            "widget_id": widget_id,
            "token": self.issue_token(tenant_id, widget_id, domain),
            "api_url": get_settings().app_url.rstrip("/") + "/api/v1/widget",
        }
