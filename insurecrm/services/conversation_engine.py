"""
Conversation Engine

Owns the turn-taking of a single customer conversation (WhatsApp or web
widget) between the AI assistant and human agents.

States: active (AI may respond) -> escalated (only humans respond) -> active
(explicit de-escalation); closed is terminal. All reads go through the tenant
gateway, so every operation runs inside an established tenant context.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from insurecrm.core.clock import Clock, utcnow
from insurecrm.db.json_fields import WhatsAppConversationMetadata, WidgetConversationMetadata
from insurecrm.db.models import (
    AIConversation, ChatMessage, ConversationStatus, ConversationType,
    KnowledgeBaseEntry, Lead, MessageSender, Platform,
)
from insurecrm.services.ai_provider import AIProviderError, OpenAIProvider
from insurecrm.services.credential_resolver import PROVIDER_OPENAI, CredentialNotConfiguredError, CredentialResolver
from insurecrm.services.escalation import EscalationClassifier
from insurecrm.services.kyc_extractor import ExtractedIdentity, KYCExtractor
from insurecrm.services.tenant_gateway import TenantGateway
from insurecrm.services.whatsapp_client import WhatsAppMessenger, WhatsAppSendError
from insurecrm.utils.phone import normalize_phone

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 6
KNOWLEDGE_BASE_CHAR_LIMIT = 4000

ESCALATION_NOTICE = (
    "I understand you need additional assistance. I'm connecting you with one of our human agents. "
    "A human agent will respond to you shortly during business hours (Monday-Friday 9AM-6PM)."
)
UNSUPPORTED_MESSAGE_REPLY = "Sorry, I can only process text messages at the moment."


class ConversationError(Exception):
    pass


class ConversationNotFoundError(ConversationError):
    pass


class ConversationStateError(ConversationError):
    """Requested transition is not allowed from the current state"""
    pass


@dataclass
class InboundMessage:
    """A customer message as received from a channel"""
    phone_number: str
    content: str
    customer_name: Optional[str] = None
    external_message_id: Optional[str] = None
    credential_id: Optional[str] = None


@dataclass
class AIResponse:
    text: str
    confidence: float
    should_escalate: bool
    escalation_reason: Optional[str] = None
    intent: Optional[str] = None
    provider_error: Optional[str] = None


@dataclass
class ConversationOutcome:
    conversation_id: str
    lead_id: Optional[str]
    response: Optional[str] = None
    should_escalate: bool = False
    already_escalated: bool = False
    needs_user_info: bool = False
    confidence: float = 0.0
    created_conversation: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)


class ConversationEngine:
    def __init__(
        self,
        db: Session,
        messenger: Optional[WhatsAppMessenger] = None,
        ai_provider: Optional[OpenAIProvider] = None,
        classifier: Optional[EscalationClassifier] = None,
        kyc_extractor: Optional[KYCExtractor] = None,
        now: Clock = utcnow,
    ):
        self.db = db
        self.gateway = TenantGateway(db)
        self.messenger = messenger or WhatsAppMessenger(db)
        self._ai_provider = ai_provider
        self.classifier = classifier or EscalationClassifier()
        self.kyc = kyc_extractor or KYCExtractor()
        self.now = now

    @property
    def ai_provider(self) -> OpenAIProvider:
        """The injected provider, or one keyed with the tenant's own OpenAI key when it has one"""
        if self._ai_provider is None:
            tenant_id = self.gateway.require_tenant_id()
            api_key = CredentialResolver(self.db).get_access_token(tenant_id, PROVIDER_OPENAI)
            self._ai_provider = OpenAIProvider(api_key=api_key)
        return self._ai_provider

    # Lookup

    def get_conversation(self, conversation_id: str) -> AIConversation:
        conversation = self.gateway.get(AIConversation, conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        return conversation

    def find_open_conversation(self, phone_number: str) -> Optional[AIConversation]:
        """Most recent non-closed WhatsApp conversation for the phone number"""
        return self.gateway.query(
            AIConversation,
            AIConversation.type == ConversationType.WHATSAPP_CHAT.value,
            AIConversation.phone_number == phone_number,
            AIConversation.status != ConversationStatus.CLOSED.value,
        ).order_by(AIConversation.created_at.desc()).first()

    def get_history(self, conversation: AIConversation, exclude_id: Optional[str] = None,
                    limit: int = HISTORY_LIMIT) -> List[Dict[str, str]]:
        """Last ``limit`` messages, oldest first, in chat-completion role format"""
        criteria = [ChatMessage.conversation_id == conversation.id]
        if exclude_id:
            criteria.append(ChatMessage.id != exclude_id)
        recent = self.gateway.query(ChatMessage, *criteria).order_by(
            ChatMessage.created_at.desc()
        ).limit(limit).all()

        return [
            {
                "role": "user" if message.sender == MessageSender.CUSTOMER.value else "assistant",
                "content": message.content,
            }
            for message in reversed(recent)
        ]

    def list_conversations(self, status: Optional[str] = None, limit: int = 50) -> List[AIConversation]:
        criteria = [AIConversation.status == status] if status else []
        return self.gateway.query(AIConversation, *criteria).order_by(
            AIConversation.updated_at.desc()
        ).limit(limit).all()

    def get_messages(self, conversation_id: str) -> List[ChatMessage]:
        conversation = self.get_conversation(conversation_id)
        return self.gateway.query(ChatMessage, ChatMessage.conversation_id == conversation.id).order_by(
            ChatMessage.created_at.asc()
        ).all()

    def get_knowledge_base(self) -> Optional[str]:
        entries = self.gateway.query(
            KnowledgeBaseEntry, KnowledgeBaseEntry.is_active.is_(True)
        ).order_by(KnowledgeBaseEntry.created_at.asc()).all()
        if not entries:
            return None
        text = "\n\n".join(f"{entry.title}:\n{entry.content}" for entry in entries)
        return text[:KNOWLEDGE_BASE_CHAR_LIMIT]

    # Leads

    def find_or_create_lead(self, identity: ExtractedIdentity, source: str) -> Optional[Lead]:
        """Match by phone, then email; fill gaps on a match, create otherwise"""
        phone = normalize_phone(identity.phone)
        lead = None
        if phone:
            lead = self.gateway.query(Lead, Lead.phone == phone).first()
        if lead is None and identity.email:
            lead = self.gateway.query(Lead, Lead.email == identity.email).first()

        if lead is not None:
            lead.name = lead.name or identity.name
            lead.email = lead.email or identity.email
            lead.phone = lead.phone or phone
            return lead

        if not identity.has_personal_info:
            return None

        lead = Lead(
            tenant_id=self.gateway.require_tenant_id(),
            name=identity.name,
            email=identity.email,
            phone=phone,
            source=source,
        )
        self.gateway.add(lead)
        self.db.flush()
        logger.info(f"Created lead {lead.id} from {source} conversation")
        return lead

    def _link_identity(self, conversation: AIConversation, identity: ExtractedIdentity, source: str):
        lead = self.find_or_create_lead(identity, source)
        if lead is not None and conversation.lead_id != lead.id:
            if conversation.lead_id is None:
                conversation.lead_id = lead.id
            else:
                # Already linked; enrich the existing lead instead of relinking
                existing = self.gateway.get(Lead, conversation.lead_id)
                if existing is not None:
                    existing.name = existing.name or identity.name
                    existing.email = existing.email or identity.email
                    existing.phone = existing.phone or normalize_phone(identity.phone)

    def _lead_needs_info(self, conversation: AIConversation) -> bool:
        if conversation.lead_id is None:
            return True
        lead = self.gateway.get(Lead, conversation.lead_id)
        return lead is None or not (lead.email or lead.phone)

    # Messages

    def _append(self, conversation: AIConversation, content: str, sender: MessageSender,
                sender_id: Optional[str] = None, external_message_id: Optional[str] = None) -> ChatMessage:
        platform = Platform.WHATSAPP if conversation.type == ConversationType.WHATSAPP_CHAT.value else Platform.WEB_WIDGET
        message = ChatMessage(
            tenant_id=conversation.tenant_id,
            conversation_id=conversation.id,
            lead_id=conversation.lead_id,
            content=content,
            sender=sender.value,
            sender_id=sender_id,
            platform=platform.value,
            external_message_id=external_message_id,
            created_at=self.now(),
        )
        self.gateway.add(message)
        conversation.updated_at = self.now()
        self.db.flush()
        return message

    async def _deliver(self, conversation: AIConversation, content: str, sender: MessageSender,
                       sender_id: Optional[str] = None) -> bool:
        """
        Store an outbound message and push it to the customer's channel.

        Widget replies travel back in the HTTP response, so only WhatsApp
        conversations are sent through the provider here.
        """
        external_id = None
        delivered = True
        if conversation.type == ConversationType.WHATSAPP_CHAT.value and conversation.phone_number:
            metadata = conversation.conversation_metadata or {}
            try:
                external_id = await self.messenger.send_text(
                    conversation.tenant_id,
                    conversation.phone_number,
                    content,
                    credential_id=metadata.get("credentialId"),
                )
            except (WhatsAppSendError, CredentialNotConfiguredError) as e:
                delivered = False
                logger.error(f"Failed to deliver message for conversation {conversation.id}: {e}")

        self._append(conversation, content, sender, sender_id=sender_id, external_message_id=external_id)
        return delivered

    # AI

    async def generate_ai_response(self, conversation: AIConversation, message: ChatMessage) -> AIResponse:
        history = self.get_history(conversation, exclude_id=message.id)
        knowledge_base = self.get_knowledge_base()

        try:
            completion = await self.ai_provider.complete(message.content, history, knowledge_base)
        except AIProviderError as e:
            logger.error(f"AI provider failure in conversation {conversation.id}: {e.kind.value}")
            return AIResponse(
                text=e.customer_message,
                confidence=0.0,
                should_escalate=True,
                escalation_reason=f"AI provider error ({e.kind.value})",
                provider_error=e.kind.value,
            )

        decision = self.classifier.classify(message.content, completion.text, completion.confidence)
        return AIResponse(
            text=completion.text,
            confidence=completion.confidence,
            should_escalate=decision.should_escalate,
            escalation_reason=decision.reason,
            intent=completion.intent,
        )

    # State transitions

    async def escalate(self, conversation: AIConversation, reason: Optional[str] = None,
                       escalated_by: Optional[str] = None) -> bool:
        """
        Hand the conversation to human agents.

        Returns True when this call performed the transition. The customer
        notice is sent only on the first escalation.
        """
        if conversation.status == ConversationStatus.CLOSED.value:
            raise ConversationStateError("Cannot escalate a closed conversation")
        if conversation.status == ConversationStatus.ESCALATED.value:
            return False

        conversation.status = ConversationStatus.ESCALATED.value
        conversation.is_escalated = True
        conversation.escalated_at = self.now()
        conversation.escalation_reason = reason
        logger.info(f"Conversation {conversation.id} escalated: {reason} (by {escalated_by or 'system'})")

        if not conversation.escalation_notice_sent:
            conversation.escalation_notice_sent = True
            await self._deliver(conversation, ESCALATION_NOTICE, MessageSender.AI_ASSISTANT)

        # Best-effort lead linkage so agents can follow up
        if conversation.lead_id is None and conversation.phone_number:
            metadata = conversation.conversation_metadata or {}
            identity = ExtractedIdentity(name=metadata.get("customerName"), phone=conversation.phone_number)
            self._link_identity(conversation, identity, "WHATSAPP")

        self.db.flush()
        return True

    async def send_as_agent(self, conversation_id: str, text: str, agent_id: str) -> bool:
        """
        Send a human-agent message. Always leaves the conversation escalated so
        the AI never answers a conversation a human has joined.
        """
        conversation = self.get_conversation(conversation_id)
        if conversation.status == ConversationStatus.CLOSED.value:
            raise ConversationStateError("Cannot send to a closed conversation")

        if conversation.status != ConversationStatus.ESCALATED.value:
            conversation.status = ConversationStatus.ESCALATED.value
            conversation.is_escalated = True
            conversation.escalated_at = self.now()
            conversation.escalation_reason = conversation.escalation_reason or f"agent {agent_id} joined"
            # The agent's own message replaces the automated notice
            conversation.escalation_notice_sent = True

        delivered = await self._deliver(conversation, text, MessageSender.HUMAN_AGENT, sender_id=agent_id)
        self.db.commit()
        return delivered

    def de_escalate(self, conversation_id: str, agent_id: Optional[str] = None) -> AIConversation:
        conversation = self.get_conversation(conversation_id)
        if conversation.status != ConversationStatus.ESCALATED.value:
            raise ConversationStateError(f"Conversation is {conversation.status}, not escalated")

        conversation.status = ConversationStatus.ACTIVE.value
        conversation.is_escalated = False
        conversation.escalation_notice_sent = False
        self.db.commit()
        logger.info(f"Conversation {conversation.id} returned to AI by {agent_id or 'system'}")
        return conversation

    def close(self, conversation_id: str) -> AIConversation:
        conversation = self.get_conversation(conversation_id)
        if not conversation.can_transition_to(ConversationStatus.CLOSED.value):
            raise ConversationStateError("Conversation is already closed")
        conversation.status = ConversationStatus.CLOSED.value
        conversation.closed_at = self.now()
        self.db.commit()
        return conversation

    async def escalate_by_id(self, conversation_id: str, reason: str, escalated_by: Optional[str] = None) -> bool:
        conversation = self.get_conversation(conversation_id)
        changed = await self.escalate(conversation, reason, escalated_by)
        self.db.commit()
        return changed

    # Inbound

    async def _respond(self, conversation: AIConversation, message: ChatMessage,
                       outcome: ConversationOutcome) -> ConversationOutcome:
        ai = await self.generate_ai_response(conversation, message)
        outcome.confidence = ai.confidence
        outcome.should_escalate = ai.should_escalate

        if ai.provider_error:
            # Apology first, then the hand-off notice
            await self._deliver(conversation, ai.text, MessageSender.AI_ASSISTANT)
            await self.escalate(conversation, ai.escalation_reason)
            outcome.response = f"{ai.text}\n\n{ESCALATION_NOTICE}"
        elif ai.should_escalate:
            await self.escalate(conversation, ai.escalation_reason)
            outcome.response = ESCALATION_NOTICE
        else:
            await self._deliver(conversation, ai.text, MessageSender.AI_ASSISTANT)
            outcome.response = ai.text

        outcome.lead_id = conversation.lead_id
        outcome.needs_user_info = ai.should_escalate and self._lead_needs_info(conversation)
        if ai.intent:
            outcome.extra["intent"] = ai.intent
        return outcome

    async def ingest_inbound_message(self, inbound: InboundMessage) -> ConversationOutcome:
        """Handle one WhatsApp text message from a customer"""
        phone = normalize_phone(inbound.phone_number)
        if not phone:
            raise ConversationError("Inbound message without a sender phone number")

        identity = self.kyc.extract(inbound.content).merge(ExtractedIdentity(name=inbound.customer_name))

        created = False
        conversation = self.find_open_conversation(phone)
        if conversation is None:
            metadata = WhatsAppConversationMetadata(
                phone_number=phone,
                customer_name=inbound.customer_name,
                credential_id=inbound.credential_id,
            )
            conversation = AIConversation(
                tenant_id=self.gateway.require_tenant_id(),
                type=ConversationType.WHATSAPP_CHAT.value,
                status=ConversationStatus.ACTIVE.value,
                phone_number=phone,
                conversation_metadata=metadata.model_dump(by_alias=True, exclude_none=True),
                created_at=self.now(),
            )
            self.gateway.add(conversation)
            self.db.flush()
            created = True
            # The sender's phone is always known on WhatsApp
            identity = identity.merge(ExtractedIdentity(phone=phone))

        if identity.has_personal_info:
            self._link_identity(conversation, identity, "WHATSAPP")

        message = self._append(conversation, inbound.content, MessageSender.CUSTOMER,
                               external_message_id=inbound.external_message_id)

        outcome = ConversationOutcome(
            conversation_id=conversation.id,
            lead_id=conversation.lead_id,
            created_conversation=created,
        )

        if conversation.status == ConversationStatus.ESCALATED.value:
            # A human owns the conversation; no automated reply or acknowledgement
            outcome.already_escalated = True
            outcome.should_escalate = True
            self.db.commit()
            return outcome

        outcome = await self._respond(conversation, message, outcome)
        self.db.commit()
        return outcome

    async def reply_unsupported(self, inbound: InboundMessage):
        """Non-text messages get a fixed reply; nothing is stored"""
        phone = normalize_phone(inbound.phone_number)
        try:
            await self.messenger.send_text(self.gateway.require_tenant_id(), phone, UNSUPPORTED_MESSAGE_REPLY,
                                           credential_id=inbound.credential_id)
        except (WhatsAppSendError, CredentialNotConfiguredError) as e:
            logger.error(f"Failed to send unsupported-message reply: {e}")

    async def handle_widget_message(
        self,
        widget_id: str,
        content: str,
        conversation_id: Optional[str] = None,
        domain: Optional[str] = None,
        user_info: Optional[Dict[str, Optional[str]]] = None,
        page_url: Optional[str] = None,
    ) -> ConversationOutcome:
        """Handle one message from the website chat widget"""
        conversation = None
        if conversation_id:
            conversation = self.gateway.get(AIConversation, conversation_id)
            if conversation is not None and (
                conversation.type != ConversationType.WIDGET_CHAT.value
                or conversation.status == ConversationStatus.CLOSED.value
            ):
                conversation = None

        created = False
        if conversation is None:
            metadata = WidgetConversationMetadata(widget_id=widget_id, domain=domain, page_url=page_url)
            conversation = AIConversation(
                tenant_id=self.gateway.require_tenant_id(),
                type=ConversationType.WIDGET_CHAT.value,
                status=ConversationStatus.ACTIVE.value,
                conversation_metadata=metadata.model_dump(by_alias=True, exclude_none=True),
                created_at=self.now(),
            )
            self.gateway.add(conversation)
            self.db.flush()
            created = True

        identity = self.kyc.extract(content)
        if user_info:
            identity = identity.merge(ExtractedIdentity(
                name=user_info.get("name"),
                email=user_info.get("email"),
                phone=user_info.get("phone"),
            ))
        if identity.has_personal_info:
            self._link_identity(conversation, identity, "WEB_WIDGET")

        message = self._append(conversation, content, MessageSender.CUSTOMER)

        outcome = ConversationOutcome(
            conversation_id=conversation.id,
            lead_id=conversation.lead_id,
            created_conversation=created,
        )

        if conversation.status == ConversationStatus.ESCALATED.value:
            outcome.already_escalated = True
            outcome.should_escalate = True
            outcome.response = ""
            outcome.needs_user_info = self._lead_needs_info(conversation)
            self.db.commit()
            return outcome

        outcome = await self._respond(conversation, message, outcome)
        self.db.commit()
        return outcome
