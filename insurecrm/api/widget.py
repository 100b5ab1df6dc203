"""
Website chat widget API

``/chat`` is public and authenticated by the signed widget token in the
``X-Widget-Token`` header. ``/config`` is for tenant admins embedding the widget.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from insurecrm.api.deps import get_ai_provider, get_whatsapp_messenger
from insurecrm.core.tenant_context import TenantContext, establish
from insurecrm.db.database import get_db
from insurecrm.middleware.tenant_context import get_widget_auth, get_widget_identity, require_role, widget_context
from insurecrm.services.ai_provider import OpenAIProvider
from insurecrm.services.conversation_engine import ConversationEngine
from insurecrm.services.widget_auth import WidgetAuthService, WidgetIdentity
from insurecrm.services.whatsapp_client import WhatsAppMessenger

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/widget", tags=["Widget"])


class WidgetUserInfo(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class WidgetChatRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=4000, description="Visitor message")
    conversation_id: Optional[str] = Field(None, description="Conversation to continue")
    user_info: Optional[WidgetUserInfo] = None
    page_url: Optional[str] = None


class WidgetChatResponse(BaseModel):
    conversation_id: str
    response: str
    should_escalate: bool
    already_escalated: bool
    needs_user_info: bool
    confidence: float
    lead_id: Optional[str] = None


class WidgetConfigRequest(BaseModel):
    domain: Optional[str] = Field(None, description="Site the widget is embedded on")
    widget_id: Optional[str] = None


class WidgetConfigResponse(BaseModel):
    widget_id: str
    token: str
    api_url: str


@router.post("/chat", response_model=WidgetChatResponse)
async def widget_chat(
    request: WidgetChatRequest,
    identity: WidgetIdentity = Depends(get_widget_identity),
    db: Session = Depends(get_db),
    messenger: WhatsAppMessenger = Depends(get_whatsapp_messenger),
    ai_provider: Optional[OpenAIProvider] = Depends(get_ai_provider),
):
    with establish(widget_context(identity)):
        engine = ConversationEngine(db, messenger=messenger, ai_provider=ai_provider)
        outcome = await engine.handle_widget_message(
            widget_id=identity.widget_id,
            content=request.message,
            conversation_id=request.conversation_id,
            domain=identity.domain,
            user_info=request.user_info.model_dump() if request.user_info else None,
            page_url=request.page_url,
        )

    return WidgetChatResponse(
        conversation_id=outcome.conversation_id,
        response=outcome.response or "",
        should_escalate=outcome.should_escalate,
        already_escalated=outcome.already_escalated,
        needs_user_info=outcome.needs_user_info,
        confidence=outcome.confidence,
        lead_id=outcome.lead_id,
    )


@router.post("/config", response_model=WidgetConfigResponse)
async def widget_config(
    request: WidgetConfigRequest,
    tenant_context: TenantContext = Depends(require_role("admin")),
    widget_auth: WidgetAuthService = Depends(get_widget_auth),
):
    """Issue an embed token bound to this tenant and, optionally, one domain"""
    if not tenant_context.tenant_id:
        raise HTTPException(status_code=400, detail="Widget config requires a tenant")
    with establish(tenant_context):
        config = widget_auth.generate_widget_config(tenant_context.tenant_id, request.domain, request.widget_id)
    logger.info(f"Issued widget token {config['widget_id']} for tenant {tenant_context.tenant_id}")
    return config
