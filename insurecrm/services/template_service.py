"""
WhatsApp templates and conversation labels

Also hosts the approval gate shared by automation rules and campaigns: a rule or
campaign may only be bound to a template Meta has APPROVED. The gate runs at
create and update time, never retroactively.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from insurecrm.core.clock import Clock, utcnow
from insurecrm.db.models import (
    AIConversation, ConversationLabel, ConversationLabelAssignment,
    Lead, TemplateStatus, WhatsAppTemplate,
)
from insurecrm.services.tenant_gateway import TenantGateway

logger = logging.getLogger(__name__)


class TemplateNotFoundError(Exception):
    pass


class TemplateNotApprovedError(Exception):
    """The template exists but is not APPROVED by Meta"""

    def __init__(self, template: WhatsAppTemplate, usage: str):
        self.template_id = template.id
        self.status = template.status
        super().__init__(
            f'Template "{template.name}" must be APPROVED by Meta before it can be used in {usage}. '
            f"Current status: {template.status}"
        )


class LabelNotFoundError(Exception):
    pass


class TemplateVariableError(ValueError):
    """A template variable is not a valid placeholder string"""

    def __init__(self, variable: Any, reason: str):
        self.variable = variable
        self.reason = reason
        super().__init__(f'Invalid template variable "{variable}": {reason}')

    def to_dict(self) -> Dict[str, Any]:
        return {"variable": str(self.variable), "reason": self.reason}


class _SafeDict(dict):
    def __missing__(self, key):
        return ""


def render_variables(variables: Optional[List[Any]], lead: Optional[Lead]) -> List[str]:
    """
    Fill ``{name}``, ``{email}``, ``{phone}`` placeholders from the lead

    Raises:
        TemplateVariableError: a variable has unbalanced braces, positional
            fields or attribute/index lookups
    """
    values = _SafeDict(
        name=(lead.name if lead else None) or "Customer",
        email=(lead.email if lead else None) or "",
        phone=(lead.phone if lead else None) or "",
    )
    rendered = []
    for variable in variables or []:
        try:
            rendered.append(str(variable).format_map(values))
        except (ValueError, IndexError, KeyError, AttributeError, TypeError) as e:
            raise TemplateVariableError(variable, str(e)) from e
    return rendered


def validate_variables(variables: Optional[List[Any]]):
    """Reject variables that could never render; raises TemplateVariableError"""
    render_variables(variables, None)


def require_approved_template(gateway: TenantGateway, template_id: str, usage: str) -> WhatsAppTemplate:
    """
    Raises:
        TemplateNotFoundError: no such template for this tenant
        TemplateNotApprovedError: template status is not APPROVED
    """
    template = gateway.get(WhatsAppTemplate, template_id)
    if template is None:
        raise TemplateNotFoundError("Template not found")
    if template.status != TemplateStatus.APPROVED.value:
        logger.info(f"Rejected {usage} bound to template {template.id} with status {template.status}")
        raise TemplateNotApprovedError(template, usage)
    return template


class TemplateService:
    def __init__(self, db: Session, now: Clock = utcnow):
        self.db = db
        self.gateway = TenantGateway(db)
        self.now = now

    def list_templates(self, status: Optional[str] = None) -> List[WhatsAppTemplate]:
        criteria = [WhatsAppTemplate.status == status] if status else []
        return self.gateway.query(WhatsAppTemplate, *criteria).order_by(WhatsAppTemplate.name.asc()).all()

    def create_template(self, data: Dict[str, Any]) -> WhatsAppTemplate:
        template = WhatsAppTemplate(
            tenant_id=self.gateway.require_tenant_id(),
            name=data["name"],
            language=data.get("language") or "en_US",
            category=data.get("category") or "MARKETING",
            body=data["body"],
            status=data.get("status") or TemplateStatus.DRAFT.value,
            meta_template_id=data.get("meta_template_id"),
        )
        self.gateway.add(template)
        self.db.commit()
        self.db.refresh(template)
        return template

    def update_status(self, template_id: str, status: str, meta_template_id: Optional[str] = None) -> WhatsAppTemplate:
        """Record Meta's review outcome; bound rules and campaigns are left untouched"""
        template = self.gateway.get(WhatsAppTemplate, template_id)
        if template is None:
            raise TemplateNotFoundError("Template not found")
        template.status = TemplateStatus(status).value
        if meta_template_id:
            template.meta_template_id = meta_template_id
        self.db.commit()
        self.db.refresh(template)
        return template

    # Labels

    def list_labels(self) -> List[ConversationLabel]:
        return self.gateway.query(ConversationLabel).order_by(ConversationLabel.name.asc()).all()

    def create_label(self, name: str, color: Optional[str] = None) -> ConversationLabel:
        label = ConversationLabel(tenant_id=self.gateway.require_tenant_id(), name=name, color=color)
        self.gateway.add(label)
        self.db.commit()
        self.db.refresh(label)
        return label

    def assign_label(self, label_id: str, conversation_id: str, assigned_by: Optional[str] = None) -> ConversationLabelAssignment:
        label = self.gateway.get(ConversationLabel, label_id)
        if label is None:
            raise LabelNotFoundError("Label not found")
        conversation = self.gateway.get(AIConversation, conversation_id)
        if conversation is None:
            raise LabelNotFoundError("Conversation not found")

        assignment = ConversationLabelAssignment(
            tenant_id=self.gateway.require_tenant_id(),
            label_id=label.id,
            conversation_id=conversation.id,
            assigned_by=assigned_by,
            assigned_at=self.now(),
        )
        self.gateway.add(assignment)
        self.db.commit()
        self.db.refresh(assignment)
        return assignment
