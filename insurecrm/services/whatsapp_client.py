"""
WhatsApp Business Cloud API client

Thin async wrapper over the Graph API ``/{phone_number_id}/messages`` endpoint.
``WhatsAppMessenger`` binds it to per-tenant credentials and retries once when
Graph reports an expired or invalid token (error code 190).
"""
import logging
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy.orm import Session

from insurecrm.core.config import get_settings
from insurecrm.services.credential_resolver import CredentialResolver, WhatsAppSendCredentials
from insurecrm.utils.phone import normalize_phone

logger = logging.getLogger(__name__)

TOKEN_ERROR_CODE = 190
TOKEN_ERROR_TYPE = "OAuthException"


class WhatsAppSendError(Exception):
    """An outbound send failed at the provider or transport level"""

    def __init__(self, message: str, code: Optional[int] = None, error_type: Optional[str] = None,
                 status_code: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.error_type = error_type
        self.status_code = status_code

    @property
    def is_token_error(self) -> bool:
        return self.code == TOKEN_ERROR_CODE or self.error_type == TOKEN_ERROR_TYPE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": str(self),
            "code": self.code,
            "type": self.error_type,
            "status_code": self.status_code,
        }


class WhatsAppClient:
    """Graph API transport. One instance can serve every tenant."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_version: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.whatsapp_graph_api_base).rstrip("/")
        self.api_version = api_version or settings.whatsapp_graph_api_version
        self.timeout = timeout or settings.whatsapp_api_timeout
        self._transport = transport

    def _messages_url(self, phone_number_id: str) -> str:
        return f"{self.base_url}/{self.api_version}/{phone_number_id}/messages"

    async def _post_message(self, credentials: WhatsAppSendCredentials, payload: Dict[str, Any]) -> str:
        headers = {
            "Authorization": f"Bearer {credentials.access_token}",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    self._messages_url(credentials.phone_number_id),
                    json=payload,
                    headers=headers,
                )
        except httpx.TimeoutException as e:
            raise WhatsAppSendError(f"WhatsApp API timeout: {e}") from e
        except httpx.HTTPError as e:
            raise WhatsAppSendError(f"WhatsApp API request failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code >= 400 or "error" in data:
            error = data.get("error") or {}
            raise WhatsAppSendError(
                error.get("message") or f"WhatsApp API returned HTTP {response.status_code}",
                code=error.get("code"),
                error_type=error.get("type"),
                status_code=response.status_code,
            )

        messages = data.get("messages") or []
        message_id = messages[0].get("id") if messages else None
        if not message_id:
            raise WhatsAppSendError("WhatsApp API response did not include a message id",
                                    status_code=response.status_code)
        return message_id

    async def send_text(self, credentials: WhatsAppSendCredentials, to: str, body: str) -> str:
        payload = {
            "messaging_product": "whatsapp",
            "to": normalize_phone(to),
            "type": "text",
            "text": {"body": body},
        }
        return await self._post_message(credentials, payload)

    async def send_template(
        self,
        credentials: WhatsAppSendCredentials,
        to: str,
        template_name: str,
        language: str = "en_US",
        body_parameters: Optional[List[str]] = None,
    ) -> str:
        template: Dict[str, Any] = {"name": template_name, "language": {"code": language}}
        if body_parameters:
            template["components"] = [{
                "type": "body",
                "parameters": [{"type": "text", "text": str(value)} for value in body_parameters],
            }]
        payload = {
            "messaging_product": "whatsapp",
            "to": normalize_phone(to),
            "type": "template",
            "template": template,
        }
        return await self._post_message(credentials, payload)


class WhatsAppMessenger:
    """Sends on behalf of a tenant, resolving and decrypting its credentials per call"""

    MAX_TOKEN_RETRIES = 1

    def __init__(self, db: Session, client: Optional[WhatsAppClient] = None,
                 resolver: Optional[CredentialResolver] = None):
        self.db = db
        self.client = client or WhatsAppClient()
        self.resolver = resolver or CredentialResolver(db)

    async def _with_token_retry(self, tenant_id: str, credential_id: Optional[str], send) -> str:
        attempt = 0
        while True:
            credentials = self.resolver.resolve_whatsapp(tenant_id, credential_id)
            try:
                return await send(credentials)
            except WhatsAppSendError as e:
                if e.is_token_error and attempt < self.MAX_TOKEN_RETRIES:
                    attempt += 1
                    logger.warning(
                        f"WhatsApp token rejected for tenant {tenant_id} (code {e.code}); "
                        f"re-resolving credentials and retrying"
                    )
                    # Drop cached rows so a token rotated meanwhile is picked up
                    self.db.expire_all()
                    continue
                raise

    async def send_text(self, tenant_id: str, to: str, body: str, credential_id: Optional[str] = None) -> str:
        return await self._with_token_retry(
            tenant_id, credential_id,
            lambda credentials: self.client.send_text(credentials, to, body),
        )

    async def send_template(self, tenant_id: str, to: str, template_name: str, language: str = "en_US",
                            body_parameters: Optional[List[str]] = None,
                            credential_id: Optional[str] = None) -> str:
        return await self._with_token_retry(
            tenant_id, credential_id,
            lambda credentials: self.client.send_template(credentials, to, template_name, language, body_parameters),
        )
