"""
Contact groups API

Groups are campaign audiences, so managing them takes the same role as
managing campaigns.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from insurecrm.core.tenant_context import TenantContext, establish
from insurecrm.db.database import get_db
from insurecrm.middleware.tenant_context import require_role
from insurecrm.services.contact_group_service import ContactGroupNotFoundError, ContactGroupService
from insurecrm.services.lead_service import LeadNotFoundError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/contact-groups", tags=["Contact Groups"])


class ContactGroupCreate(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    lead_ids: List[str] = Field(default_factory=list)


class AddLeads(BaseModel):
    lead_ids: List[str] = Field(..., min_length=1)


@router.get("")
async def list_groups(
    tenant_context: TenantContext = Depends(require_role("manager")),
    db: Session = Depends(get_db)
):
    with establish(tenant_context):
        return [group.to_dict() for group in ContactGroupService(db).list_groups()]


@router.post("", status_code=201)
async def create_group(
    request: ContactGroupCreate,
    tenant_context: TenantContext = Depends(require_role("manager")),
    db: Session = Depends(get_db)
):
    with establish(tenant_context):
        try:
            group = ContactGroupService(db).create_group(request.name, request.description, request.lead_ids)
        except LeadNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        return group.to_dict()


@router.get("/{group_id}")
async def get_group(
    group_id: str = Path(..., description="Contact group ID"),
    tenant_context: TenantContext = Depends(require_role("manager")),
    db: Session = Depends(get_db)
):
    with establish(tenant_context):
        service = ContactGroupService(db)
        try:
            group = service.get_group(group_id)
        except ContactGroupNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        data = group.to_dict()
        data["contacts"] = [lead.to_dict() for lead in service.get_contacts(group_id)]
        return data


@router.post("/{group_id}/leads")
async def add_leads(
    request: AddLeads,
    group_id: str = Path(..., description="Contact group ID"),
    tenant_context: TenantContext = Depends(require_role("manager")),
    db: Session = Depends(get_db)
):
    with establish(tenant_context):
        try:
            return ContactGroupService(db).add_leads(group_id, request.lead_ids).to_dict()
        except (ContactGroupNotFoundError, LeadNotFoundError) as e:
            raise HTTPException(status_code=404, detail=str(e))


@router.delete("/{group_id}/leads/{lead_id}", status_code=204)
async def remove_lead(
    group_id: str = Path(..., description="Contact group ID"),
    lead_id: str = Path(..., description="Lead ID"),
    tenant_context: TenantContext = Depends(require_role("manager")),
    db: Session = Depends(get_db)
):
    with establish(tenant_context):
        try:
            ContactGroupService(db).remove_lead(group_id, lead_id)
        except ContactGroupNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))


@router.delete("/{group_id}", status_code=204)
async def delete_group(
    group_id: str = Path(..., description="Contact group ID"),
    tenant_context: TenantContext = Depends(require_role("manager")),
    db: Session = Depends(get_db)
):
    with establish(tenant_context):
        try:
            ContactGroupService(db).delete_group(group_id)
        except ContactGroupNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
