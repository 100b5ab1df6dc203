"""
Leads API
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from insurecrm.core.tenant_context import TenantContext, establish
from insurecrm.db.database import get_db
from insurecrm.middleware.tenant_context import get_tenant_context
from insurecrm.services.lead_service import (
    DuplicateLeadError, LeadNotFoundError, LeadService, LeadValidationError,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/leads", tags=["Leads"])


class LeadCreate(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = Field(None, description="Any format; stored as digits only")
    source: Optional[str] = None
    notes: Optional[str] = None


@router.get("")
async def list_leads(
    status: Optional[str] = Query(None),
    source: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    tenant_context: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db)
):
    with establish(tenant_context):
        return [lead.to_dict() for lead in LeadService(db).list_leads(status, source, limit)]


@router.post("", status_code=201)
async def create_lead(
    request: LeadCreate,
    tenant_context: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db)
):
    with establish(tenant_context):
        try:
            return LeadService(db).create_lead(request.model_dump()).to_dict()
        except LeadValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except DuplicateLeadError as e:
            raise HTTPException(status_code=409, detail=str(e))


@router.get("/{lead_id}")
async def get_lead(
    lead_id: str = Path(..., description="Lead ID"),
    tenant_context: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db)
):
    with establish(tenant_context):
        try:
            return LeadService(db).get_lead(lead_id).to_dict()
        except LeadNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
