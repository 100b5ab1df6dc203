"""
Campaigns API
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.orm import Session

from insurecrm.core.tenant_context import TenantContext, establish
from insurecrm.db.database import get_db
from insurecrm.middleware.tenant_context import require_role
from insurecrm.services.campaign_service import (
    CampaignNotFoundError, CampaignService, CampaignStateError, CampaignValidationError,
)
from insurecrm.services.template_service import TemplateNotApprovedError, TemplateNotFoundError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/campaigns", tags=["Campaigns"])

DOMAIN_ERRORS = (
    CampaignNotFoundError, CampaignStateError, CampaignValidationError,
    TemplateNotApprovedError, TemplateNotFoundError,
)


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class CampaignCreate(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    template_id: str = Field(..., description="APPROVED WhatsApp template to send")
    template_variables: Optional[List[str]] = None
    target_type: str = Field(..., description="ALL_CONTACTS, CONTACT_GROUP, CUSTOM_FILTER, SPECIFIC_CONTACTS or CSV_UPLOAD")
    target_group_id: Optional[str] = None
    target_filter: Optional[Dict[str, Any]] = None
    contacts_list: Optional[List[Any]] = None
    sending_speed: str = "NORMAL"
    respect_working_hours: bool = False
    working_hours_start: Optional[int] = None
    working_hours_end: Optional[int] = None
    scheduled_at: Optional[datetime] = None

    @field_validator("scheduled_at")
    @classmethod
    def scheduled_at_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _naive_utc(value)


class CampaignUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    template_id: Optional[str] = None
    template_variables: Optional[List[str]] = None
    target_type: Optional[str] = None
    target_group_id: Optional[str] = None
    target_filter: Optional[Dict[str, Any]] = None
    contacts_list: Optional[List[Any]] = None
    sending_speed: Optional[str] = None
    respect_working_hours: Optional[bool] = None
    working_hours_start: Optional[int] = None
    working_hours_end: Optional[int] = None
    scheduled_at: Optional[datetime] = None

    @field_validator("scheduled_at")
    @classmethod
    def scheduled_at_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _naive_utc(value)


def _raise_for(e: Exception):
    if isinstance(e, (CampaignNotFoundError, TemplateNotFoundError)):
        raise HTTPException(status_code=404, detail=str(e))
    if isinstance(e, CampaignStateError):
        raise HTTPException(status_code=409, detail=str(e))
    raise HTTPException(status_code=400, detail=str(e))


@router.get("")
async def list_campaigns(
    status: Optional[str] = Query(None),
    tenant_context: TenantContext = Depends(require_role("manager")),
    db: Session = Depends(get_db)
):
    with establish(tenant_context):
        return [campaign.to_dict() for campaign in CampaignService(db).list_campaigns(status)]


@router.post("", status_code=201)
async def create_campaign(
    request: CampaignCreate,
    tenant_context: TenantContext = Depends(require_role("manager")),
    db: Session = Depends(get_db)
):
    """Create a DRAFT campaign; the template must already be APPROVED by Meta"""
    with establish(tenant_context):
        try:
            campaign = CampaignService(db).create_campaign(request.model_dump(), created_by=tenant_context.caller_id)
        except DOMAIN_ERRORS as e:
            _raise_for(e)
        return campaign.to_dict()


@router.get("/{campaign_id}")
async def get_campaign(
    campaign_id: str = Path(..., description="Campaign ID"),
    tenant_context: TenantContext = Depends(require_role("manager")),
    db: Session = Depends(get_db)
):
    with establish(tenant_context):
        try:
            return CampaignService(db).get_campaign(campaign_id).to_dict()
        except DOMAIN_ERRORS as e:
            _raise_for(e)


@router.patch("/{campaign_id}")
async def update_campaign(
    request: CampaignUpdate,
    campaign_id: str = Path(..., description="Campaign ID"),
    tenant_context: TenantContext = Depends(require_role("manager")),
    db: Session = Depends(get_db)
):
    with establish(tenant_context):
        try:
            campaign = CampaignService(db).update_campaign(campaign_id, request.model_dump(exclude_unset=True))
        except DOMAIN_ERRORS as e:
            _raise_for(e)
        return campaign.to_dict()


@router.delete("/{campaign_id}", status_code=204)
async def delete_campaign(
    campaign_id: str = Path(..., description="Campaign ID"),
    tenant_context: TenantContext = Depends(require_role("manager")),
    db: Session = Depends(get_db)
):
    with establish(tenant_context):
        try:
            CampaignService(db).delete_campaign(campaign_id)
        except DOMAIN_ERRORS as e:
            _raise_for(e)


@router.post("/{campaign_id}/start")
async def start_campaign(
    campaign_id: str = Path(..., description="Campaign ID"),
    tenant_context: TenantContext = Depends(require_role("manager")),
    db: Session = Depends(get_db)
):
    with establish(tenant_context):
        try:
            return CampaignService(db).start_campaign(campaign_id).to_dict()
        except DOMAIN_ERRORS as e:
            _raise_for(e)


@router.post("/{campaign_id}/pause")
async def pause_campaign(
    campaign_id: str = Path(..., description="Campaign ID"),
    tenant_context: TenantContext = Depends(require_role("manager")),
    db: Session = Depends(get_db)
):
    with establish(tenant_context):
        try:
            return CampaignService(db).pause_campaign(campaign_id).to_dict()
        except DOMAIN_ERRORS as e:
            _raise_for(e)


@router.post("/{campaign_id}/resume")
async def resume_campaign(
    campaign_id: str = Path(..., description="Campaign ID"),
    tenant_context: TenantContext = Depends(require_role("manager")),
    db: Session = Depends(get_db)
):
    with establish(tenant_context):
        try:
            return CampaignService(db).resume_campaign(campaign_id).to_dict()
        except DOMAIN_ERRORS as e:
            _raise_for(e)


@router.post("/{campaign_id}/resubmit-failed")
async def resubmit_failed(
    campaign_id: str = Path(..., description="Campaign ID"),
    tenant_context: TenantContext = Depends(require_role("manager")),
    db: Session = Depends(get_db)
):
    with establish(tenant_context):
        try:
            return {"requeued": CampaignService(db).resubmit_failed(campaign_id)}
        except DOMAIN_ERRORS as e:
            _raise_for(e)


@router.get("/{campaign_id}/stats")
async def campaign_stats(
    campaign_id: str = Path(..., description="Campaign ID"),
    tenant_context: TenantContext = Depends(require_role("manager")),
    db: Session = Depends(get_db)
):
    """Recompute and return delivery counters from message statuses"""
    with establish(tenant_context):
        try:
            return CampaignService(db).update_campaign_stats(campaign_id)
        except DOMAIN_ERRORS as e:
            _raise_for(e)
