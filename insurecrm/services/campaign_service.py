"""
Campaign management

Create/update validation (target, working hours, approved template), lifecycle
transitions, recipient materialization and delivery statistics.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from insurecrm.core.clock import Clock, utcnow
from insurecrm.db.models import (
    Campaign, CampaignMessage, CampaignStatus, CampaignTargetType, ContactGroup,
    ContactGroupMember, Lead, MessageStatus, SendingSpeed,
)
from insurecrm.services.template_service import (
    TemplateVariableError, require_approved_template, validate_variables,
)
from insurecrm.services.tenant_gateway import TenantGateway
from insurecrm.utils.phone import normalize_phone

logger = logging.getLogger(__name__)

CAMPAIGN_FIELDS = (
    "name", "description", "template_id", "template_variables", "target_type", "target_group_id",
    "target_filter", "contacts_list", "sending_speed", "respect_working_hours",
    "working_hours_start", "working_hours_end", "scheduled_at",
)

# Forward-only delivery progression for status callbacks
_STATUS_RANK = {
    MessageStatus.PENDING.value: 0,
    MessageStatus.SENT.value: 1,
    MessageStatus.DELIVERED.value: 2,
    MessageStatus.READ.value: 3,
}


class CampaignValidationError(Exception):
    pass


class CampaignNotFoundError(Exception):
    pass


class CampaignStateError(Exception):
    """Requested action is not allowed in the campaign's current status"""
    pass


class CampaignService:
    def __init__(self, db: Session, now: Clock = utcnow):
        self.db = db
        self.gateway = TenantGateway(db)
        self.now = now

    # Validation

    def validate(self, data: Dict[str, Any]):
        try:
            target_type = CampaignTargetType(data.get("target_type")).value
        except ValueError:
            raise CampaignValidationError(f"Invalid target type: {data.get('target_type')}")

        try:
            SendingSpeed(data.get("sending_speed") or SendingSpeed.NORMAL.value)
        except ValueError:
            raise CampaignValidationError(f"Invalid sending speed: {data.get('sending_speed')}")

        if target_type == CampaignTargetType.CONTACT_GROUP.value:
            group_id = data.get("target_group_id")
            if not group_id:
                raise CampaignValidationError("target_group_id is required for CONTACT_GROUP campaigns")
            if self.gateway.get(ContactGroup, group_id) is None:
                raise CampaignValidationError("Contact group not found")

        if target_type in (CampaignTargetType.SPECIFIC_CONTACTS.value, CampaignTargetType.CSV_UPLOAD.value):
            if not data.get("contacts_list"):
                raise CampaignValidationError(f"contacts_list is required for {target_type} campaigns")

        start, end = data.get("working_hours_start"), data.get("working_hours_end")
        if data.get("respect_working_hours") and (start is None or end is None):
            raise CampaignValidationError("Working hours start and end are required when respecting working hours")
        if start is not None and end is not None:
            if not (0 <= start <= 23 and 0 <= end <= 23):
                raise CampaignValidationError("Working hours must be between 0 and 23")
            if start >= end:
                raise CampaignValidationError("Working hours start must be before end")

        try:
            validate_variables(data.get("template_variables"))
        except TemplateVariableError as e:
            raise CampaignValidationError(str(e))

    # CRUD

    def get_campaign(self, campaign_id: str) -> Campaign:
        campaign = self.gateway.get(Campaign, campaign_id)
        if campaign is None:
            raise CampaignNotFoundError("Campaign not found")
        return campaign

    def list_campaigns(self, status: Optional[str] = None) -> List[Campaign]:
        criteria = [Campaign.status == status] if status else []
        return self.gateway.query(Campaign, *criteria).order_by(Campaign.created_at.desc()).all()

    def create_campaign(self, data: Dict[str, Any], created_by: Optional[str] = None) -> Campaign:
        self.validate(data)
        require_approved_template(self.gateway, data.get("template_id"), "campaigns")

        campaign = Campaign(
            tenant_id=self.gateway.require_tenant_id(),
            status=CampaignStatus.DRAFT.value,
            created_by=created_by,
            **{key: data[key] for key in CAMPAIGN_FIELDS if data.get(key) is not None},
        )
        self.gateway.add(campaign)
        self.db.commit()
        self.db.refresh(campaign)
        logger.info(f"Created campaign {campaign.id} ({campaign.target_type})")
        return campaign

    def update_campaign(self, campaign_id: str, data: Dict[str, Any]) -> Campaign:
        campaign = self.get_campaign(campaign_id)
        if campaign.status in (CampaignStatus.RUNNING.value, CampaignStatus.COMPLETED.value):
            raise CampaignStateError(f"Cannot update a {campaign.status} campaign")

        changes = {key: data[key] for key in CAMPAIGN_FIELDS if key in data}
        merged = {key: getattr(campaign, key) for key in CAMPAIGN_FIELDS}
        merged.update(changes)
        self.validate(merged)

        if "template_id" in changes:
            require_approved_template(self.gateway, changes["template_id"], "campaigns")

        for key, value in changes.items():
            setattr(campaign, key, value)
        self.db.commit()
        self.db.refresh(campaign)
        return campaign

    def delete_campaign(self, campaign_id: str):
        campaign = self.get_campaign(campaign_id)
        if campaign.status == CampaignStatus.RUNNING.value:
            raise CampaignStateError("Pause the campaign before deleting it")
        self.db.delete(campaign)
        self.db.commit()

    # Recipients

    def resolve_recipients(self, campaign: Campaign) -> List[Dict[str, Optional[str]]]:
        """Target list as of now, deduplicated by normalized phone"""
        recipients: List[Dict[str, Optional[str]]] = []
        target_type = campaign.target_type

        if target_type == CampaignTargetType.ALL_CONTACTS.value:
            leads = self.gateway.query(Lead, Lead.phone.isnot(None)).all()
            recipients = [{"phone": lead.phone, "name": lead.name, "lead_id": lead.id} for lead in leads]

        elif target_type == CampaignTargetType.CONTACT_GROUP.value:
            members = self.gateway.query(
                ContactGroupMember, ContactGroupMember.group_id == campaign.target_group_id
            ).all()
            lead_ids = [member.lead_id for member in members]
            leads = self.gateway.query(Lead, Lead.id.in_(lead_ids), Lead.phone.isnot(None)).all() if lead_ids else []
            recipients = [{"phone": lead.phone, "name": lead.name, "lead_id": lead.id} for lead in leads]

        elif target_type == CampaignTargetType.CUSTOM_FILTER.value:
            criteria = [Lead.phone.isnot(None)]
            target_filter = campaign.target_filter or {}
            if target_filter.get("status"):
                criteria.append(Lead.status == target_filter["status"])
            if target_filter.get("source"):
                criteria.append(Lead.source == target_filter["source"])
            leads = self.gateway.query(Lead, *criteria).all()
            recipients = [{"phone": lead.phone, "name": lead.name, "lead_id": lead.id} for lead in leads]

        else:
            for entry in campaign.contacts_list or []:
                if isinstance(entry, dict):
                    recipients.append({
                        "phone": entry.get("phone") or entry.get("phoneNumber"),
                        "name": entry.get("name"),
                        "lead_id": entry.get("lead_id") or entry.get("leadId"),
                    })
                else:
                    recipients.append({"phone": str(entry), "name": None, "lead_id": None})

        unique = {}
        for recipient in recipients:
            phone = normalize_phone(recipient.get("phone"))
            if phone and phone not in unique:
                unique[phone] = {**recipient, "phone": phone}
        return list(unique.values())

    def materialize_messages(self, campaign: Campaign) -> int:
        """Create one PENDING message per recipient and mark the campaign RUNNING"""
        recipients = self.resolve_recipients(campaign)
        for recipient in recipients:
            self.gateway.add(CampaignMessage(
                tenant_id=campaign.tenant_id,
                campaign_id=campaign.id,
                lead_id=recipient.get("lead_id"),
                phone_number=recipient["phone"],
                recipient_name=recipient.get("name"),
                status=MessageStatus.PENDING.value,
                created_at=self.now(),
            ))

        campaign.total_contacts = len(recipients)
        campaign.status = CampaignStatus.RUNNING.value
        campaign.started_at = self.now()
        self.db.flush()
        logger.info(f"Campaign {campaign.id} started with {len(recipients)} recipients")
        return len(recipients)

    # Lifecycle

    def start_campaign(self, campaign_id: str) -> Campaign:
        campaign = self.get_campaign(campaign_id)
        if campaign.status != CampaignStatus.DRAFT.value:
            raise CampaignStateError(f"Only DRAFT campaigns can be started (status: {campaign.status})")

        if campaign.scheduled_at and campaign.scheduled_at > self.now():
            campaign.status = CampaignStatus.SCHEDULED.value
        else:
            self.materialize_messages(campaign)
        self.db.commit()
        self.db.refresh(campaign)
        return campaign

    def pause_campaign(self, campaign_id: str) -> Campaign:
        campaign = self.get_campaign(campaign_id)
        if not (campaign.status in (CampaignStatus.RUNNING.value, CampaignStatus.SCHEDULED.value)
                and campaign.can_transition_to(CampaignStatus.PAUSED.value)):
            raise CampaignStateError(f"Cannot pause a {campaign.status} campaign")
        campaign.status = CampaignStatus.PAUSED.value
        self.db.commit()
        self.db.refresh(campaign)
        return campaign

    def resume_campaign(self, campaign_id: str) -> Campaign:
        campaign = self.get_campaign(campaign_id)
        if campaign.status != CampaignStatus.PAUSED.value:
            raise CampaignStateError(f"Cannot resume a {campaign.status} campaign")
        if campaign.started_at is None and campaign.scheduled_at and campaign.scheduled_at > self.now():
            campaign.status = CampaignStatus.SCHEDULED.value
        elif campaign.started_at is None:
            # Paused before its scheduled start; recipients were never materialized
            self.materialize_messages(campaign)
        else:
            campaign.status = CampaignStatus.RUNNING.value
        self.db.commit()
        self.db.refresh(campaign)
        return campaign

    def resubmit_failed(self, campaign_id: str) -> int:
        """Queue FAILED messages again; the dispatcher never retries on its own"""
        campaign = self.get_campaign(campaign_id)
        if campaign.status not in (CampaignStatus.RUNNING.value, CampaignStatus.PAUSED.value,
                                   CampaignStatus.COMPLETED.value, CampaignStatus.FAILED.value):
            raise CampaignStateError(f"Cannot resubmit messages of a {campaign.status} campaign")

        count = self.gateway.query(
            CampaignMessage,
            CampaignMessage.campaign_id == campaign.id,
            CampaignMessage.status == MessageStatus.FAILED.value,
        ).update({"status": MessageStatus.PENDING.value, "error_message": None}, synchronize_session=False)

        if count:
            campaign.failed_count = max((campaign.failed_count or 0) - count, 0)
            if (campaign.status in (CampaignStatus.COMPLETED.value, CampaignStatus.FAILED.value)
                    and campaign.can_transition_to(CampaignStatus.RUNNING.value)):
                campaign.status = CampaignStatus.RUNNING.value
                campaign.completed_at = None
        self.db.commit()
        return count

    # Statistics

    def update_campaign_stats(self, campaign_id: str) -> Dict[str, int]:
        """Recompute counters from message statuses (delivered includes read)"""
        campaign = self.get_campaign(campaign_id)
        rows = self.db.query(CampaignMessage.status, func.count(CampaignMessage.id)).filter(
            *self.gateway.scoped_filter(CampaignMessage, CampaignMessage.campaign_id == campaign.id)
        ).group_by(CampaignMessage.status).all()
        counts = {status: count for status, count in rows}

        read = counts.get(MessageStatus.READ.value, 0)
        delivered = counts.get(MessageStatus.DELIVERED.value, 0) + read
        sent = counts.get(MessageStatus.SENT.value, 0) + delivered
        failed = counts.get(MessageStatus.FAILED.value, 0)

        campaign.sent_count = sent
        campaign.delivered_count = delivered
        campaign.read_count = read
        campaign.failed_count = failed
        self.db.commit()

        return {
            "total_contacts": campaign.total_contacts,
            "pending": counts.get(MessageStatus.PENDING.value, 0),
            "sent": sent,
            "delivered": delivered,
            "read": read,
            "failed": failed,
        }

    def record_delivery_status(self, meta_message_id: str, status: str, error: Optional[str] = None) -> bool:
        """Apply a provider status callback to the matching campaign message"""
        message = self.gateway.query(CampaignMessage, CampaignMessage.meta_message_id == meta_message_id).first()
        if message is None:
            return False

        status = status.upper()
        now = self.now()
        if status == MessageStatus.FAILED.value:
            message.status = MessageStatus.FAILED.value
            message.error_message = error
        elif status in _STATUS_RANK and _STATUS_RANK[status] > _STATUS_RANK.get(message.status, -1):
            message.status = status
            if status == MessageStatus.DELIVERED.value:
                message.delivered_at = now
            elif status == MessageStatus.READ.value:
                message.read_at = now
                message.delivered_at = message.delivered_at or now
        else:
            return False

        self.db.flush()
        self.update_campaign_stats(message.campaign_id)
        return True
