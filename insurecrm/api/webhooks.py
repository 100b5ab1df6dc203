"""
WhatsApp Cloud API webhook endpoints

One URL per credential: ``/webhook/{credential_id}``. GET answers Meta's
subscription handshake; POST receives messages and delivery status callbacks.

POST returns 200 for anything past signature verification, including internal
failures, so Meta does not start a retry storm. Signature and verify-token
failures are the only 401s.
"""
import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from insurecrm.api.deps import get_ai_provider, get_whatsapp_messenger
from insurecrm.core.tenant_context import establish
from insurecrm.core.webhook_security import SIGNATURE_HEADER, WebhookSecurityError, webhook_validator
from insurecrm.db.database import get_db
from insurecrm.middleware.tenant_context import WebhookTenantError, resolve_webhook_tenant, webhook_context
from insurecrm.services.ai_provider import OpenAIProvider
from insurecrm.services.campaign_service import CampaignService
from insurecrm.services.conversation_engine import ConversationEngine, InboundMessage
from insurecrm.services.credential_resolver import CredentialResolver
from insurecrm.services.whatsapp_client import WhatsAppMessenger

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhook", tags=["Webhooks"])


@router.get("/{credential_id}")
async def verify_webhook(
    credential_id: str,
    hub_mode: Optional[str] = Query(None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(None, alias="hub.challenge"),
    db: Session = Depends(get_db)
):
    """Echo hub.challenge iff the verify token matches the credential's"""
    try:
        credential = resolve_webhook_tenant(db, credential_id)
    except WebhookTenantError as e:
        logger.warning(f"Webhook verification for credential {credential_id} rejected: {e}")
        raise HTTPException(status_code=401, detail="Verification failed")

    if not webhook_validator.verify_subscription(hub_mode, hub_verify_token, credential.webhook_verify_token):
        logger.warning(f"Webhook verification for credential {credential_id} rejected: token mismatch")
        raise HTTPException(status_code=401, detail="Verification failed")

    logger.info(f"Webhook verified for credential {credential_id}")
    return PlainTextResponse(hub_challenge or "")


def _contact_names(value: Dict[str, Any]) -> Dict[str, str]:
    names = {}
    for contact in value.get("contacts") or []:
        wa_id = contact.get("wa_id")
        name = (contact.get("profile") or {}).get("name")
        if wa_id and name:
            names[wa_id] = name
    return names


def _status_error(status: Dict[str, Any]) -> Optional[str]:
    errors: List[Dict[str, Any]] = status.get("errors") or []
    if not errors:
        return None
    first = errors[0]
    return first.get("title") or first.get("message") or str(first.get("code"))


async def process_webhook_payload(payload: Dict[str, Any], credential_id: str,
                                  engine: ConversationEngine, campaigns: CampaignService) -> Dict[str, int]:
    """Walk entry -> changes -> value and dispatch messages and statuses"""
    stats = {"messages": 0, "unsupported": 0, "statuses": 0}

    for entry in payload.get("entry") or []:
        for change in entry.get("changes") or []:
            value = change.get("value") or {}
            names = _contact_names(value)

            for message in value.get("messages") or []:
                sender = message.get("from")
                inbound = InboundMessage(
                    phone_number=sender,
                    content=((message.get("text") or {}).get("body") or ""),
                    customer_name=names.get(sender),
                    external_message_id=message.get("id"),
                    credential_id=credential_id,
                )
                if message.get("type") == "text" and inbound.content:
                    await engine.ingest_inbound_message(inbound)
                    stats["messages"] += 1
                else:
                    await engine.reply_unsupported(inbound)
                    stats["unsupported"] += 1

            for status in value.get("statuses") or []:
                if status.get("id") and status.get("status"):
                    if campaigns.record_delivery_status(status["id"], status["status"], _status_error(status)):
                        stats["statuses"] += 1
            if value.get("statuses"):
                campaigns.db.commit()

    return stats


@router.post("/{credential_id}")
async def receive_webhook(
    credential_id: str,
    request: Request,
    db: Session = Depends(get_db),
    messenger: WhatsAppMessenger = Depends(get_whatsapp_messenger),
    ai_provider: Optional[OpenAIProvider] = Depends(get_ai_provider),
):
    body = await request.body()

    try:
        credential = resolve_webhook_tenant(db, credential_id)
    except WebhookTenantError as e:
        logger.warning(f"Webhook for credential {credential_id} rejected: {e}")
        raise HTTPException(status_code=401, detail="Invalid signature")

    with establish(webhook_context(credential)):
        try:
            app_secret = CredentialResolver(db).get_app_secret(credential)
            webhook_validator.verify_signature(body, request.headers.get(SIGNATURE_HEADER), app_secret)
        except WebhookSecurityError as e:
            logger.warning(f"SECURITY: webhook signature rejected for credential {credential_id}: {e}")
            raise HTTPException(status_code=401, detail="Invalid signature")

        try:
            payload = json.loads(body or b"{}")
            engine = ConversationEngine(db, messenger=messenger, ai_provider=ai_provider)
            stats = await process_webhook_payload(payload, credential.id, engine, CampaignService(db))
        except Exception as e:
            db.rollback()
            logger.error(f"Webhook processing failed for credential {credential_id}: {e}", exc_info=True)
            return {"status": "error"}

    logger.info(f"Webhook processed for credential {credential_id}: {stats}")
    return {"status": "ok", **stats}
