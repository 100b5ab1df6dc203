"""
Automation rules API
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from insurecrm.api.deps import get_whatsapp_messenger
from insurecrm.core.tenant_context import TenantContext, establish
from insurecrm.db.database import get_db
from insurecrm.middleware.tenant_context import require_role
from insurecrm.services.automation_engine import AutomationEngine
from insurecrm.services.automation_rule_service import (
    AutomationRuleNotFoundError, AutomationRuleService, AutomationValidationError,
)
from insurecrm.services.template_service import TemplateNotApprovedError, TemplateNotFoundError
from insurecrm.services.whatsapp_client import WhatsAppMessenger

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/automation-rules", tags=["Automation"])


class AutomationRuleCreate(BaseModel):
    name: str = Field(..., min_length=1, description="Rule name")
    description: Optional[str] = None
    is_active: bool = True
    trigger_type: str = Field(..., description="CONVERSATION_WINDOW_EXPIRED, LABEL_ASSIGNED, TIME_DELAY or MANUAL")
    trigger_conditions: Dict[str, Any] = Field(default_factory=dict)
    template_id: str = Field(..., description="APPROVED WhatsApp template to send")
    template_variables: Optional[List[str]] = None
    sending_frequency: str = "ONCE"
    max_send_count: Optional[int] = None
    send_after_minutes: int = 0
    active_days: Optional[List[int]] = Field(None, description="0=Sunday .. 6=Saturday")
    active_hours_start: Optional[int] = None
    active_hours_end: Optional[int] = None


class AutomationRuleUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None
    trigger_type: Optional[str] = None
    trigger_conditions: Optional[Dict[str, Any]] = None
    template_id: Optional[str] = None
    template_variables: Optional[List[str]] = None
    sending_frequency: Optional[str] = None
    max_send_count: Optional[int] = None
    send_after_minutes: Optional[int] = None
    active_days: Optional[List[int]] = None
    active_hours_start: Optional[int] = None
    active_hours_end: Optional[int] = None


class AutomationRuleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: Optional[str] = None
    is_active: bool
    trigger_type: str
    trigger_conditions: Dict[str, Any]
    template_id: str
    template_variables: Optional[List[str]] = None
    sending_frequency: str
    max_send_count: Optional[int] = None
    send_after_minutes: int
    active_days: Optional[List[int]] = None
    active_hours_start: Optional[int] = None
    active_hours_end: Optional[int] = None
    total_sent: int
    last_executed_at: Optional[str] = None


class ManualTriggerRequest(BaseModel):
    conversation_id: str


def _raise_for(e: Exception):
    if isinstance(e, (AutomationRuleNotFoundError, TemplateNotFoundError)):
        raise HTTPException(status_code=404, detail=str(e))
    raise HTTPException(status_code=400, detail=str(e))


DOMAIN_ERRORS = (AutomationRuleNotFoundError, AutomationValidationError, TemplateNotApprovedError, TemplateNotFoundError)


@router.get("", response_model=List[AutomationRuleResponse])
async def list_rules(
    is_active: Optional[bool] = Query(None),
    tenant_context: TenantContext = Depends(require_role("manager")),
    db: Session = Depends(get_db)
):
    with establish(tenant_context):
        return [rule.to_dict() for rule in AutomationRuleService(db).list_rules(is_active)]


@router.post("", response_model=AutomationRuleResponse, status_code=201)
async def create_rule(
    request: AutomationRuleCreate,
    tenant_context: TenantContext = Depends(require_role("manager")),
    db: Session = Depends(get_db)
):
    """Create a rule; the template must already be APPROVED by Meta"""
    with establish(tenant_context):
        try:
            rule = AutomationRuleService(db).create_rule(request.model_dump(), created_by=tenant_context.caller_id)
        except DOMAIN_ERRORS as e:
            _raise_for(e)
        return rule.to_dict()


@router.get("/{rule_id}", response_model=AutomationRuleResponse)
async def get_rule(
    rule_id: str = Path(..., description="Rule ID"),
    tenant_context: TenantContext = Depends(require_role("manager")),
    db: Session = Depends(get_db)
):
    with establish(tenant_context):
        try:
            return AutomationRuleService(db).get_rule(rule_id).to_dict()
        except DOMAIN_ERRORS as e:
            _raise_for(e)


@router.patch("/{rule_id}", response_model=AutomationRuleResponse)
async def update_rule(
    request: AutomationRuleUpdate,
    rule_id: str = Path(..., description="Rule ID"),
    tenant_context: TenantContext = Depends(require_role("manager")),
    db: Session = Depends(get_db)
):
    with establish(tenant_context):
        try:
            rule = AutomationRuleService(db).update_rule(rule_id, request.model_dump(exclude_unset=True))
        except DOMAIN_ERRORS as e:
            _raise_for(e)
        return rule.to_dict()


@router.post("/{rule_id}/toggle", response_model=AutomationRuleResponse)
async def toggle_rule(
    rule_id: str = Path(..., description="Rule ID"),
    tenant_context: TenantContext = Depends(require_role("manager")),
    db: Session = Depends(get_db)
):
    with establish(tenant_context):
        try:
            return AutomationRuleService(db).toggle_rule(rule_id).to_dict()
        except DOMAIN_ERRORS as e:
            _raise_for(e)


@router.delete("/{rule_id}", status_code=204)
async def delete_rule(
    rule_id: str = Path(..., description="Rule ID"),
    tenant_context: TenantContext = Depends(require_role("manager")),
    db: Session = Depends(get_db)
):
    with establish(tenant_context):
        try:
            AutomationRuleService(db).delete_rule(rule_id)
        except DOMAIN_ERRORS as e:
            _raise_for(e)


@router.get("/{rule_id}/logs")
async def get_rule_logs(
    rule_id: str = Path(..., description="Rule ID"),
    limit: int = Query(100, ge=1, le=500),
    tenant_context: TenantContext = Depends(require_role("manager")),
    db: Session = Depends(get_db)
):
    with establish(tenant_context):
        try:
            return [log.to_dict() for log in AutomationRuleService(db).get_logs(rule_id, limit)]
        except DOMAIN_ERRORS as e:
            _raise_for(e)


@router.post("/{rule_id}/trigger")
async def trigger_rule(
    request: ManualTriggerRequest,
    rule_id: str = Path(..., description="Rule ID"),
    tenant_context: TenantContext = Depends(require_role("manager")),
    db: Session = Depends(get_db),
    messenger: WhatsAppMessenger = Depends(get_whatsapp_messenger),
):
    """Fire a rule at one conversation now, subject to its frequency limits"""
    with establish(tenant_context):
        try:
            rule = AutomationRuleService(db).get_rule(rule_id)
        except DOMAIN_ERRORS as e:
            _raise_for(e)
        sent = await AutomationEngine(db, messenger=messenger).trigger_manually(rule, request.conversation_id)
    return {"sent": sent}
