"""
Agent inbox API: read conversations, reply as a human, and move conversations
between the AI and human agents.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from insurecrm.api.deps import get_ai_provider, get_whatsapp_messenger
from insurecrm.core.tenant_context import TenantContext, establish
from insurecrm.db.database import get_db
from insurecrm.middleware.tenant_context import get_tenant_context
from insurecrm.services.ai_provider import OpenAIProvider
from insurecrm.services.conversation_engine import (
    ConversationEngine, ConversationNotFoundError, ConversationStateError,
)
from insurecrm.services.whatsapp_client import WhatsAppMessenger

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/conversations", tags=["Conversations"])


class AgentMessageRequest(BaseModel):
    content: str = Field(..., min_length=1, max_length=4096)


class EscalateRequest(BaseModel):
    reason: str = Field("Escalated by agent", description="Why a human is taking over")


def _raise_for(e: Exception):
    if isinstance(e, ConversationNotFoundError):
        raise HTTPException(status_code=404, detail="Conversation not found")
    raise HTTPException(status_code=409, detail=str(e))


@router.get("")
async def list_conversations(
    status: Optional[str] = Query(None, description="active, escalated or closed"),
    limit: int = Query(50, ge=1, le=200),
    tenant_context: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
    messenger: WhatsAppMessenger = Depends(get_whatsapp_messenger),
    ai_provider: Optional[OpenAIProvider] = Depends(get_ai_provider),
):
    with establish(tenant_context):
        engine = ConversationEngine(db, messenger=messenger, ai_provider=ai_provider)
        return [conversation.to_dict() for conversation in engine.list_conversations(status, limit)]


@router.get("/{conversation_id}")
async def get_conversation(
    conversation_id: str = Path(..., description="Conversation ID"),
    tenant_context: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
    messenger: WhatsAppMessenger = Depends(get_whatsapp_messenger),
    ai_provider: Optional[OpenAIProvider] = Depends(get_ai_provider),
):
    with establish(tenant_context):
        engine = ConversationEngine(db, messenger=messenger, ai_provider=ai_provider)
        try:
            conversation = engine.get_conversation(conversation_id)
            messages = engine.get_messages(conversation_id)
        except ConversationNotFoundError as e:
            _raise_for(e)
        return {**conversation.to_dict(), "messages": [message.to_dict() for message in messages]}


@router.post("/{conversation_id}/messages")
async def send_agent_message(
    request: AgentMessageRequest,
    conversation_id: str = Path(..., description="Conversation ID"),
    tenant_context: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
    messenger: WhatsAppMessenger = Depends(get_whatsapp_messenger),
    ai_provider: Optional[OpenAIProvider] = Depends(get_ai_provider),
):
    """Reply as a human agent; the conversation stays with humans afterwards"""
    with establish(tenant_context):
        engine = ConversationEngine(db, messenger=messenger, ai_provider=ai_provider)
        try:
            delivered = await engine.send_as_agent(conversation_id, request.content, tenant_context.caller_id)
        except (ConversationNotFoundError, ConversationStateError) as e:
            _raise_for(e)
    return {"delivered": delivered}


@router.post("/{conversation_id}/escalate")
async def escalate_conversation(
    request: EscalateRequest,
    conversation_id: str = Path(..., description="Conversation ID"),
    tenant_context: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
    messenger: WhatsAppMessenger = Depends(get_whatsapp_messenger),
    ai_provider: Optional[OpenAIProvider] = Depends(get_ai_provider),
):
    with establish(tenant_context):
        engine = ConversationEngine(db, messenger=messenger, ai_provider=ai_provider)
        try:
            changed = await engine.escalate_by_id(conversation_id, request.reason, escalated_by=tenant_context.caller_id)
        except (ConversationNotFoundError, ConversationStateError) as e:
            _raise_for(e)
    return {"escalated": True, "changed": changed}


@router.post("/{conversation_id}/de-escalate")
async def de_escalate_conversation(
    conversation_id: str = Path(..., description="Conversation ID"),
    tenant_context: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
    messenger: WhatsAppMessenger = Depends(get_whatsapp_messenger),
    ai_provider: Optional[OpenAIProvider] = Depends(get_ai_provider),
):
    """Hand the conversation back to the AI"""
    with establish(tenant_context):
        engine = ConversationEngine(db, messenger=messenger, ai_provider=ai_provider)
        try:
            return engine.de_escalate(conversation_id, agent_id=tenant_context.caller_id).to_dict()
        except (ConversationNotFoundError, ConversationStateError) as e:
            _raise_for(e)


@router.post("/{conversation_id}/close")
async def close_conversation(
    conversation_id: str = Path(..., description="Conversation ID"),
    tenant_context: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
    messenger: WhatsAppMessenger = Depends(get_whatsapp_messenger),
    ai_provider: Optional[OpenAIProvider] = Depends(get_ai_provider),
):
    with establish(tenant_context):
        engine = ConversationEngine(db, messenger=messenger, ai_provider=ai_provider)
        try:
            return engine.close(conversation_id).to_dict()
        except (ConversationNotFoundError, ConversationStateError) as e:
            _raise_for(e)
