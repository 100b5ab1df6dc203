"""
Leads entered by hand

Chat channels create leads on their own through KYC extraction; this covers
agents adding prospects directly so they can be grouped and targeted by
campaigns.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from insurecrm.db.models import Lead
from insurecrm.services.tenant_gateway import TenantGateway
from insurecrm.utils.phone import normalize_phone

logger = logging.getLogger(__name__)


class LeadNotFoundError(Exception):
    pass


class LeadValidationError(Exception):
    pass


class DuplicateLeadError(Exception):
    pass


class LeadService:
    def __init__(self, db: Session):
        self.db = db
        self.gateway = TenantGateway(db)

    def get_lead(self, lead_id: str) -> Lead:
        lead = self.gateway.get(Lead, lead_id)
        if lead is None:
            raise LeadNotFoundError("Lead not found")
        return lead

    def list_leads(self, status: Optional[str] = None, source: Optional[str] = None,
                   limit: int = 100) -> List[Lead]:
        criteria = []
        if status:
            criteria.append(Lead.status == status)
        if source:
            criteria.append(Lead.source == source)
        return self.gateway.query(Lead, *criteria).order_by(Lead.created_at.desc()).limit(limit).all()

    def create_lead(self, data: Dict[str, Any]) -> Lead:
        """
        Raises:
            LeadValidationError: neither phone nor email given
            DuplicateLeadError: a lead with the same phone already exists
        """
        phone = normalize_phone(data.get("phone"))
        email = (data.get("email") or "").strip().lower() or None
        if not phone and not email:
            raise LeadValidationError("A lead needs a phone number or an email address")

        if phone and self.gateway.query(Lead, Lead.phone == phone).first() is not None:
            raise DuplicateLeadError(f"A lead with phone {phone} already exists")

        lead = Lead(
            tenant_id=self.gateway.require_tenant_id(),
            name=data.get("name"),
            email=email,
            phone=phone,
            source=data.get("source") or "MANUAL",
            notes=data.get("notes"),
        )
        self.gateway.add(lead)
        self.db.commit()
        self.db.refresh(lead)
        logger.info(f"Created lead {lead.id} ({lead.source})")
        return lead
