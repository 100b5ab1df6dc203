"""
WhatsApp templates and conversation labels API
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from insurecrm.core.tenant_context import TenantContext, establish
from insurecrm.db.database import get_db
from insurecrm.db.models import TemplateStatus
from insurecrm.middleware.tenant_context import get_tenant_context, require_role
from insurecrm.services.template_service import LabelNotFoundError, TemplateNotFoundError, TemplateService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/templates", tags=["Templates"])
labels_router = APIRouter(prefix="/api/v1/labels", tags=["Labels"])


class TemplateCreate(BaseModel):
    name: str = Field(..., min_length=1, description="Template name as registered with Meta")
    language: str = "en_US"
    category: str = "MARKETING"
    body: str = Field(..., min_length=1)
    status: Optional[str] = None
    meta_template_id: Optional[str] = None


class TemplateStatusUpdate(BaseModel):
    status: str = Field(..., description="DRAFT, PENDING, APPROVED or REJECTED")
    meta_template_id: Optional[str] = None


class LabelCreate(BaseModel):
    name: str = Field(..., min_length=1)
    color: Optional[str] = None


class LabelAssign(BaseModel):
    conversation_id: str


def _check_status(status: Optional[str]):
    if status is not None and status not in TemplateStatus._value2member_map_:
        raise HTTPException(status_code=400, detail=f"Invalid template status: {status}")


@router.get("")
async def list_templates(
    status: Optional[str] = Query(None),
    tenant_context: TenantContext = Depends(require_role("manager")),
    db: Session = Depends(get_db)
):
    with establish(tenant_context):
        return [template.to_dict() for template in TemplateService(db).list_templates(status)]


@router.post("", status_code=201)
async def create_template(
    request: TemplateCreate,
    tenant_context: TenantContext = Depends(require_role("manager")),
    db: Session = Depends(get_db)
):
    _check_status(request.status)
    with establish(tenant_context):
        return TemplateService(db).create_template(request.model_dump()).to_dict()


@router.put("/{template_id}/status")
async def update_template_status(
    request: TemplateStatusUpdate,
    template_id: str = Path(..., description="Template ID"),
    tenant_context: TenantContext = Depends(require_role("manager")),
    db: Session = Depends(get_db)
):
    """Record Meta's review result for a template"""
    _check_status(request.status)
    with establish(tenant_context):
        try:
            template = TemplateService(db).update_status(template_id, request.status, request.meta_template_id)
        except TemplateNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        return template.to_dict()


@labels_router.get("")
async def list_labels(
    tenant_context: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db)
):
    with establish(tenant_context):
        return [label.to_dict() for label in TemplateService(db).list_labels()]


@labels_router.post("", status_code=201)
async def create_label(
    request: LabelCreate,
    tenant_context: TenantContext = Depends(require_role("manager")),
    db: Session = Depends(get_db)
):
    with establish(tenant_context):
        return TemplateService(db).create_label(request.name, request.color).to_dict()


@labels_router.post("/{label_id}/assign", status_code=201)
async def assign_label(
    request: LabelAssign,
    label_id: str = Path(..., description="Label ID"),
    tenant_context: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db)
):
    """Tag a conversation; LABEL_ASSIGNED automation rules pick this up"""
    with establish(tenant_context):
        try:
            assignment = TemplateService(db).assign_label(label_id, request.conversation_id,
                                                          assigned_by=tenant_context.caller_id)
        except LabelNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        return assignment.to_dict()
