from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text, JSON, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import relationship
from enum import Enum
from typing import Dict, Any
import uuid

from insurecrm.core.clock import utcnow
from insurecrm.db.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def _iso(value):
    return value.isoformat() if value else None


class TenantStatus(str, Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"


class UserRole(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    AGENT = "agent"


class ConversationType(str, Enum):
    WIDGET_CHAT = "WIDGET_CHAT"
    WHATSAPP_CHAT = "WHATSAPP_CHAT"
    CHATBOT = "CHATBOT"
    EMAIL = "EMAIL"


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    ESCALATED = "escalated"
    CLOSED = "closed"


class MessageSender(str, Enum):
    CUSTOMER = "CUSTOMER"
    AI_ASSISTANT = "AI_ASSISTANT"
    HUMAN_AGENT = "HUMAN_AGENT"


class Platform(str, Enum):
    WHATSAPP = "WHATSAPP"
    WEB_WIDGET = "WEB_WIDGET"


class TemplateStatus(str, Enum):
    DRAFT = "DRAFT"
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class TriggerType(str, Enum):
    CONVERSATION_WINDOW_EXPIRED = "CONVERSATION_WINDOW_EXPIRED"
    LABEL_ASSIGNED = "LABEL_ASSIGNED"
    TIME_DELAY = "TIME_DELAY"
    MANUAL = "MANUAL"


class SendingFrequency(str, Enum):
    ONCE = "ONCE"
    EVERY_WINDOW = "EVERY_WINDOW"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"


class AutomationLogStatus(str, Enum):
    SENT = "SENT"
    FAILED = "FAILED"


class CampaignStatus(str, Enum):
    DRAFT = "DRAFT"
    SCHEDULED = "SCHEDULED"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class CampaignTargetType(str, Enum):
    ALL_CONTACTS = "ALL_CONTACTS"
    CONTACT_GROUP = "CONTACT_GROUP"
    CUSTOM_FILTER = "CUSTOM_FILTER"
    CSV_UPLOAD = "CSV_UPLOAD"
    SPECIFIC_CONTACTS = "SPECIFIC_CONTACTS"


class SendingSpeed(str, Enum):
    SLOW = "SLOW"
    NORMAL = "NORMAL"
    FAST = "FAST"


class MessageStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    READ = "READ"
    FAILED = "FAILED"


class Tenant(Base):
    """
    An isolated customer organization; the unit of data partitioning.

    ``settings`` is a nested bag keyed category -> key (for example
    ``settings["credentials"]["whatsapp"]["accessToken"]``). Secret values in it
    may be stored encrypted.
    """
    __tablename__ = "tenants"

    id = Column(String, primary_key=True, default=_uuid)
    name = Column(String, nullable=False)
    subdomain = Column(String, unique=True, index=True, nullable=False)
    status = Column(String(20), nullable=False, default=TenantStatus.TRIAL.value, index=True)
    plan = Column(String(50), nullable=False, default="trial")
    trial_ends_at = Column(DateTime, nullable=True)
    settings = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    users = relationship("User", back_populates="tenant")

    def is_operational(self) -> bool:
        return self.status in (TenantStatus.ACTIVE.value, TenantStatus.TRIAL.value)

    def can_transition_to(self, new_status: str) -> bool:
        """trial -> active|suspended, active -> suspended, suspended -> active, any -> cancelled"""
        valid_transitions = {
            "trial": ["active", "suspended", "cancelled"],
            "active": ["suspended", "cancelled"],
            "suspended": ["active", "cancelled"],
            "cancelled": []
        }
        return new_status in valid_transitions.get(self.status, [])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "subdomain": self.subdomain,
            "status": self.status,
            "plan": self.plan,
            "trial_ends_at": _iso(self.trial_ends_at),
        }


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    full_name = Column(String, nullable=True)
    hashed_password = Column(String, nullable=False)
    role = Column(String(20), nullable=False, default=UserRole.AGENT.value)
    is_active = Column(Boolean, default=True, nullable=False)
    is_super_admin = Column(Boolean, default=False, nullable=False)
    last_login_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    tenant = relationship("Tenant", back_populates="users")


class WhatsAppCredential(Base):
    """WhatsApp Business number of a tenant. Access token and app secret are encrypted at rest."""
    __tablename__ = "whatsapp_credentials"

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    phone_number = Column(String, nullable=True)
    phone_number_id = Column(String, nullable=False)
    business_account_id = Column(String, nullable=True)
    access_token = Column(Text, nullable=False)
    app_secret = Column(Text, nullable=True)
    webhook_verify_token = Column(String, nullable=False)
    webhook_url = Column(String, nullable=True)
    is_default = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('idx_wa_cred_tenant_default', 'tenant_id', 'is_default'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "phone_number": self.phone_number,
            "phone_number_id": self.phone_number_id,
            "business_account_id": self.business_account_id,
            "webhook_verify_token": self.webhook_verify_token,
            "webhook_url": self.webhook_url,
            "is_default": self.is_default,
            "is_active": self.is_active,
            "access_token_configured": bool(self.access_token),
            "app_secret_configured": bool(self.app_secret),
            "created_at": _iso(self.created_at),
        }


class EmailCredential(Base):
    __tablename__ = "email_credentials"

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False)
    smtp_host = Column(String, nullable=False)
    smtp_port = Column(Integer, nullable=False, default=587)
    smtp_user = Column(String, nullable=False)
    smtp_password = Column(Text, nullable=False)
    use_tls = Column(Boolean, default=True, nullable=False)
    is_default = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "smtp_host": self.smtp_host,
            "smtp_port": self.smtp_port,
            "smtp_user": self.smtp_user,
            "use_tls": self.use_tls,
            "is_default": self.is_default,
            "is_active": self.is_active,
            "password_configured": bool(self.smtp_password),
            "created_at": _iso(self.created_at),
        }


class Lead(Base):
    """Prospective insurance customer, created manually or from chat KYC extraction"""
    __tablename__ = "leads"

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=True)
    email = Column(String, nullable=True, index=True)
    phone = Column(String, nullable=True, index=True)
    source = Column(String(30), nullable=False, default="MANUAL")  # MANUAL, WHATSAPP, WEB_WIDGET, CAMPAIGN
    status = Column(String(20), nullable=False, default="NEW", index=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('idx_lead_tenant_phone', 'tenant_id', 'phone'),
        Index('idx_lead_tenant_email', 'tenant_id', 'email'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "source": self.source,
            "status": self.status,
            "created_at": _iso(self.created_at),
        }


class ContactGroup(Base):
    __tablename__ = "contact_groups"

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    members = relationship("ContactGroupMember", back_populates="group", cascade="all, delete-orphan")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "lead_count": len(self.members),
            "created_at": _iso(self.created_at),
        }


class ContactGroupMember(Base):
    __tablename__ = "contact_group_members"

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    group_id = Column(String, ForeignKey("contact_groups.id", ondelete="CASCADE"), nullable=False, index=True)
    lead_id = Column(String, ForeignKey("leads.id", ondelete="CASCADE"), nullable=False)

    group = relationship("ContactGroup", back_populates="members")
    lead = relationship("Lead")

    __table_args__ = (
        UniqueConstraint('group_id', 'lead_id', name='uq_group_member'),
    )


class AIConversation(Base):
    """
    One customer conversation on the web widget or WhatsApp.

    State machine: active -> escalated -> active (explicit de-escalation),
    active|escalated -> closed (terminal).
    """
    __tablename__ = "ai_conversations"

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    lead_id = Column(String, ForeignKey("leads.id", ondelete="SET NULL"), nullable=True, index=True)
    type = Column(String(30), nullable=False, default=ConversationType.WHATSAPP_CHAT.value)
    status = Column(String(20), nullable=False, default=ConversationStatus.ACTIVE.value, index=True)
    is_escalated = Column(Boolean, default=False, nullable=False)
    escalated_at = Column(DateTime, nullable=True)
    escalation_reason = Column(String, nullable=True)
    escalation_notice_sent = Column(Boolean, default=False, nullable=False)
    closed_at = Column(DateTime, nullable=True)
    phone_number = Column(String, nullable=True, index=True)
    conversation_metadata = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    lead = relationship("Lead")
    messages = relationship("ChatMessage", back_populates="conversation", order_by="ChatMessage.created_at")

    __table_args__ = (
        Index('idx_conv_tenant_phone_status', 'tenant_id', 'phone_number', 'status'),
    )

    def can_transition_to(self, new_status: str) -> bool:
        valid_transitions = {
            "active": ["escalated", "closed"],
            "escalated": ["active", "closed"],
            "closed": []  # Terminal state
        }
        return new_status in valid_transitions.get(self.status, [])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "lead_id": self.lead_id,
            "type": self.type,
            "status": self.status,
            "is_escalated": self.is_escalated,
            "escalated_at": _iso(self.escalated_at),
            "escalation_reason": self.escalation_reason,
            "phone_number": self.phone_number,
            "metadata": self.conversation_metadata or {},
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class ChatMessage(Base):
    """Append-only; only ``is_read`` changes after creation"""
    __tablename__ = "chat_messages"

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    conversation_id = Column(String, ForeignKey("ai_conversations.id", ondelete="CASCADE"), nullable=False, index=True)
    lead_id = Column(String, ForeignKey("leads.id", ondelete="SET NULL"), nullable=True)
    content = Column(Text, nullable=False)
    sender = Column(String(20), nullable=False)
    sender_id = Column(String, nullable=True)
    platform = Column(String(20), nullable=False, default=Platform.WHATSAPP.value)
    external_message_id = Column(String, nullable=True, index=True)
    is_read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    conversation = relationship("AIConversation", back_populates="messages")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "content": self.content,
            "sender": self.sender,
            "platform": self.platform,
            "is_read": self.is_read,
            "created_at": _iso(self.created_at),
        }


class WhatsAppTemplate(Base):
    """Provider-approved message template"""
    __tablename__ = "whatsapp_templates"

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    language = Column(String(10), nullable=False, default="en_US")
    category = Column(String(30), nullable=False, default="MARKETING")
    body = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default=TemplateStatus.DRAFT.value)
    meta_template_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint('tenant_id', 'name', 'language', name='uq_template_tenant_name_lang'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "language": self.language,
            "category": self.category,
            "body": self.body,
            "status": self.status,
        }


class ConversationLabel(Base):
    __tablename__ = "conversation_labels"

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    color = Column(String(20), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "color": self.color}


class ConversationLabelAssignment(Base):
    __tablename__ = "conversation_label_assignments"

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    label_id = Column(String, ForeignKey("conversation_labels.id", ondelete="CASCADE"), nullable=False, index=True)
    conversation_id = Column(String, ForeignKey("ai_conversations.id", ondelete="CASCADE"), nullable=False, index=True)
    assigned_by = Column(String, nullable=True)
    assigned_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    conversation = relationship("AIConversation")
    label = relationship("ConversationLabel")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "label_id": self.label_id,
            "conversation_id": self.conversation_id,
            "assigned_by": self.assigned_by,
            "assigned_at": _iso(self.assigned_at),
        }


class AutomationRule(Base):
    """Tenant-defined trigger -> template binding evaluated by the scheduler"""
    __tablename__ = "automation_rules"

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    trigger_type = Column(String(40), nullable=False)
    trigger_conditions = Column(JSON, nullable=False, default=dict)
    template_id = Column(String, ForeignKey("whatsapp_templates.id"), nullable=False)
    template_variables = Column(JSON, nullable=True)
    sending_frequency = Column(String(20), nullable=False, default=SendingFrequency.ONCE.value)
    max_send_count = Column(Integer, nullable=True)
    send_after_minutes = Column(Integer, nullable=False, default=0)
    active_days = Column(JSON, nullable=True)  # 0=Sunday .. 6=Saturday
    active_hours_start = Column(Integer, nullable=True)
    active_hours_end = Column(Integer, nullable=True)
    total_sent = Column(Integer, nullable=False, default=0)
    last_executed_at = Column(DateTime, nullable=True)
    created_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    template = relationship("WhatsAppTemplate")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "is_active": self.is_active,
            "trigger_type": self.trigger_type,
            "trigger_conditions": self.trigger_conditions or {},
            "template_id": self.template_id,
            "template_variables": self.template_variables,
            "sending_frequency": self.sending_frequency,
            "max_send_count": self.max_send_count,
            "send_after_minutes": self.send_after_minutes,
            "active_days": self.active_days,
            "active_hours_start": self.active_hours_start,
            "active_hours_end": self.active_hours_end,
            "total_sent": self.total_sent,
            "last_executed_at": _iso(self.last_executed_at),
        }


class AutomationLog(Base):
    """Append-only record of each rule execution attempt"""
    __tablename__ = "automation_logs"

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    rule_id = Column(String, ForeignKey("automation_rules.id", ondelete="CASCADE"), nullable=False, index=True)
    conversation_id = Column(String, nullable=True, index=True)
    lead_id = Column(String, nullable=True)
    phone_number = Column(String, nullable=True, index=True)
    success = Column(Boolean, nullable=False)
    status = Column(String(20), nullable=False)
    message_id = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    error_details = Column(JSON, nullable=True)
    executed_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    __table_args__ = (
        Index('idx_autolog_rule_conv', 'rule_id', 'conversation_id'),
        Index('idx_autolog_rule_phone', 'rule_id', 'phone_number'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "conversation_id": self.conversation_id,
            "phone_number": self.phone_number,
            "success": self.success,
            "status": self.status,
            "message_id": self.message_id,
            "error_message": self.error_message,
            "executed_at": _iso(self.executed_at),
        }


class Campaign(Base):
    """
    Bulk template send.

    Lifecycle: DRAFT -> SCHEDULED|RUNNING -> COMPLETED, RUNNING <-> PAUSED,
    any non-terminal -> FAILED. ``locked_until`` is the dispatcher lease.
    """
    __tablename__ = "campaigns"

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default=CampaignStatus.DRAFT.value, index=True)
    template_id = Column(String, ForeignKey("whatsapp_templates.id"), nullable=False)
    template_variables = Column(JSON, nullable=True)
    target_type = Column(String(30), nullable=False)
    target_group_id = Column(String, ForeignKey("contact_groups.id", ondelete="SET NULL"), nullable=True)
    target_filter = Column(JSON, nullable=True)
    contacts_list = Column(JSON, nullable=True)
    sending_speed = Column(String(10), nullable=False, default=SendingSpeed.NORMAL.value)
    respect_working_hours = Column(Boolean, default=False, nullable=False)
    working_hours_start = Column(Integer, nullable=True)
    working_hours_end = Column(Integer, nullable=True)
    scheduled_at = Column(DateTime, nullable=True, index=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    total_contacts = Column(Integer, nullable=False, default=0)
    sent_count = Column(Integer, nullable=False, default=0)
    delivered_count = Column(Integer, nullable=False, default=0)
    read_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)
    locked_until = Column(DateTime, nullable=True)
    created_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    template = relationship("WhatsAppTemplate")
    messages = relationship("CampaignMessage", back_populates="campaign", cascade="all, delete-orphan")

    def can_transition_to(self, new_status: str) -> bool:
        valid_transitions = {
            "DRAFT": ["SCHEDULED", "RUNNING", "FAILED"],
            "SCHEDULED": ["RUNNING", "PAUSED", "FAILED"],
            "RUNNING": ["PAUSED", "COMPLETED", "FAILED"],
            "PAUSED": ["RUNNING", "SCHEDULED", "FAILED"],
            # Reopened only by resubmitting failed messages
            "COMPLETED": ["RUNNING"],
            "FAILED": ["RUNNING"]
        }
        return new_status in valid_transitions.get(self.status, [])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "status": self.status,
            "template_id": self.template_id,
            "target_type": self.target_type,
            "target_group_id": self.target_group_id,
            "sending_speed": self.sending_speed,
            "respect_working_hours": self.respect_working_hours,
            "working_hours_start": self.working_hours_start,
            "working_hours_end": self.working_hours_end,
            "scheduled_at": _iso(self.scheduled_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "total_contacts": self.total_contacts,
            "sent_count": self.sent_count,
            "delivered_count": self.delivered_count,
            "read_count": self.read_count,
            "failed_count": self.failed_count,
        }


class CampaignMessage(Base):
    __tablename__ = "campaign_messages"

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    campaign_id = Column(String, ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True)
    lead_id = Column(String, nullable=True)
    phone_number = Column(String, nullable=False)
    recipient_name = Column(String, nullable=True)
    status = Column(String(20), nullable=False, default=MessageStatus.PENDING.value, index=True)
    meta_message_id = Column(String, nullable=True, index=True)
    error_message = Column(Text, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    read_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    campaign = relationship("Campaign", back_populates="messages")

    __table_args__ = (
        Index('idx_campaign_msg_campaign_status', 'campaign_id', 'status'),
    )


class KnowledgeBaseEntry(Base):
    """Tenant-specific reference text injected into AI prompts"""
    __tablename__ = "knowledge_base_entries"

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    category = Column(String(50), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)


# Entities whose rows belong to exactly one tenant. Reads of these always
# carry a tenant filter; users and tenants are outside the set.
TENANT_SCOPED_MODELS = frozenset({
    WhatsAppCredential,
    EmailCredential,
    Lead,
    ContactGroup,
    ContactGroupMember,
    AIConversation,
    ChatMessage,
    WhatsAppTemplate,
    ConversationLabel,
    ConversationLabelAssignment,
    AutomationRule,
    AutomationLog,
    Campaign,
    CampaignMessage,
    KnowledgeBaseEntry,
})
