"""
Contact groups: named sets of leads that CONTACT_GROUP campaigns target
"""
import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from insurecrm.db.models import ContactGroup, ContactGroupMember, Lead
from insurecrm.services.lead_service import LeadNotFoundError
from insurecrm.services.tenant_gateway import TenantGateway

logger = logging.getLogger(__name__)


class ContactGroupNotFoundError(Exception):
    pass


class ContactGroupService:
    def __init__(self, db: Session):
        self.db = db
        self.gateway = TenantGateway(db)

    def get_group(self, group_id: str) -> ContactGroup:
        group = self.gateway.get(ContactGroup, group_id)
        if group is None:
            raise ContactGroupNotFoundError("Contact group not found")
        return group

    def list_groups(self) -> List[ContactGroup]:
        return self.gateway.query(ContactGroup).order_by(ContactGroup.created_at.desc()).all()

    def create_group(self, name: str, description: Optional[str] = None,
                     lead_ids: Optional[List[str]] = None) -> ContactGroup:
        group = ContactGroup(tenant_id=self.gateway.require_tenant_id(), name=name, description=description)
        self.gateway.add(group)
        self.db.flush()
        if lead_ids:
            try:
                self._add_members(group, lead_ids)
            except LeadNotFoundError:
                self.db.rollback()
                raise
        self.db.commit()
        self.db.refresh(group)
        logger.info(f"Created contact group {group.id} with {len(group.members)} leads")
        return group

    def _add_members(self, group: ContactGroup, lead_ids: List[str]) -> int:
        """
        Raises:
            LeadNotFoundError: an id is not a lead of this tenant
        """
        wanted = list(dict.fromkeys(lead_ids))
        found = {lead.id for lead in self.gateway.query(Lead, Lead.id.in_(wanted)).all()}
        missing = [lead_id for lead_id in wanted if lead_id not in found]
        if missing:
            raise LeadNotFoundError(f"Leads not found: {', '.join(missing)}")

        existing = {
            member.lead_id for member in self.gateway.query(
                ContactGroupMember,
                ContactGroupMember.group_id == group.id,
                ContactGroupMember.lead_id.in_(wanted),
            ).all()
        }
        added = 0
        for lead_id in wanted:
            if lead_id in existing:
                continue
            self.gateway.add(ContactGroupMember(tenant_id=group.tenant_id, group_id=group.id, lead_id=lead_id))
            added += 1
        self.db.flush()
        return added

    def add_leads(self, group_id: str, lead_ids: List[str]) -> ContactGroup:
        """Add leads not already in the group"""
        group = self.get_group(group_id)
        added = self._add_members(group, lead_ids)
        self.db.commit()
        self.db.refresh(group)
        logger.info(f"Added {added} leads to contact group {group.id}")
        return group

    def remove_lead(self, group_id: str, lead_id: str) -> bool:
        group = self.get_group(group_id)
        removed = self.gateway.query(
            ContactGroupMember,
            ContactGroupMember.group_id == group.id,
            ContactGroupMember.lead_id == lead_id,
        ).delete(synchronize_session=False)
        self.db.commit()
        return removed > 0

    def get_contacts(self, group_id: str) -> List[Lead]:
        group = self.get_group(group_id)
        members = self.gateway.query(ContactGroupMember, ContactGroupMember.group_id == group.id).all()
        lead_ids = [member.lead_id for member in members]
        if not lead_ids:
            return []
        return self.gateway.query(Lead, Lead.id.in_(lead_ids)).order_by(Lead.created_at.asc()).all()

    def delete_group(self, group_id: str):
        group = self.get_group(group_id)
        self.db.delete(group)
        self.db.commit()
