"""
Automation rule management

CRUD for tenant automation rules with validation of trigger conditions, active
hours/days, sending frequency and the approved-template gate.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from insurecrm.db.json_fields import InvalidTriggerConditions, parse_trigger_conditions
from insurecrm.db.models import AutomationLog, AutomationRule, SendingFrequency, TriggerType
from insurecrm.services.template_service import (
    TemplateVariableError, require_approved_template, validate_variables,
)
from insurecrm.services.tenant_gateway import TenantGateway

logger = logging.getLogger(__name__)

RULE_FIELDS = (
    "name", "description", "is_active", "trigger_type", "trigger_conditions", "template_id",
    "template_variables", "sending_frequency", "max_send_count", "send_after_minutes",
    "active_days", "active_hours_start", "active_hours_end",
)


class AutomationValidationError(Exception):
    pass


class AutomationRuleNotFoundError(Exception):
    pass


def validate_rule_fields(data: Dict[str, Any]):
    """Validate a complete (merged) rule definition"""
    try:
        trigger_type = TriggerType(data.get("trigger_type")).value
    except ValueError:
        raise AutomationValidationError(f"Invalid trigger type: {data.get('trigger_type')}")

    try:
        SendingFrequency(data.get("sending_frequency") or SendingFrequency.ONCE.value)
    except ValueError:
        raise AutomationValidationError(f"Invalid sending frequency: {data.get('sending_frequency')}")

    try:
        parse_trigger_conditions(trigger_type, data.get("trigger_conditions"))
    except InvalidTriggerConditions as e:
        raise AutomationValidationError(str(e))

    start, end = data.get("active_hours_start"), data.get("active_hours_end")
    if (start is None) != (end is None):
        raise AutomationValidationError("Both active_hours_start and active_hours_end are required together")
    if start is not None:
        if not (0 <= start <= 23 and 0 <= end <= 23):
            raise AutomationValidationError("Active hours must be between 0 and 23")
        if start >= end:
            raise AutomationValidationError("activeHoursStart must be before activeHoursEnd")

    days = data.get("active_days")
    if days is not None:
        if not isinstance(days, list) or not all(isinstance(d, int) and 0 <= d <= 6 for d in days):
            raise AutomationValidationError("active_days must be a list of integers 0 (Sunday) to 6 (Saturday)")

    max_send_count = data.get("max_send_count")
    if max_send_count is not None and max_send_count < 1:
        raise AutomationValidationError("max_send_count must be at least 1")

    if (data.get("send_after_minutes") or 0) < 0:
        raise AutomationValidationError("send_after_minutes cannot be negative")

    try:
        validate_variables(data.get("template_variables"))
    except TemplateVariableError as e:
        raise AutomationValidationError(str(e))


class AutomationRuleService:
    def __init__(self, db: Session):
        self.db = db
        self.gateway = TenantGateway(db)

    def get_rule(self, rule_id: str) -> AutomationRule:
        rule = self.gateway.get(AutomationRule, rule_id)
        if rule is None:
            raise AutomationRuleNotFoundError("Automation rule not found")
        return rule

    def list_rules(self, is_active: Optional[bool] = None) -> List[AutomationRule]:
        criteria = [AutomationRule.is_active.is_(is_active)] if is_active is not None else []
        return self.gateway.query(AutomationRule, *criteria).order_by(AutomationRule.created_at.desc()).all()

    def create_rule(self, data: Dict[str, Any], created_by: Optional[str] = None) -> AutomationRule:
        validate_rule_fields(data)
        require_approved_template(self.gateway, data.get("template_id"), "automation rules")

        rule = AutomationRule(
            tenant_id=self.gateway.require_tenant_id(),
            created_by=created_by,
            **{key: data[key] for key in RULE_FIELDS if data.get(key) is not None},
        )
        self.gateway.add(rule)
        self.db.commit()
        self.db.refresh(rule)
        logger.info(f"Created automation rule {rule.id} ({rule.trigger_type})")
        return rule

    def update_rule(self, rule_id: str, data: Dict[str, Any]) -> AutomationRule:
        rule = self.get_rule(rule_id)
        changes = {key: data[key] for key in RULE_FIELDS if key in data}

        merged = {key: getattr(rule, key) for key in RULE_FIELDS}
        merged.update(changes)
        validate_rule_fields(merged)

        if "template_id" in changes:
            require_approved_template(self.gateway, changes["template_id"], "automation rules")

        for key, value in changes.items():
            setattr(rule, key, value)
        self.db.commit()
        self.db.refresh(rule)
        return rule

    def toggle_rule(self, rule_id: str) -> AutomationRule:
        rule = self.get_rule(rule_id)
        rule.is_active = not rule.is_active
        self.db.commit()
        self.db.refresh(rule)
        return rule

    def delete_rule(self, rule_id: str):
        if not self.gateway.delete(AutomationRule, rule_id):
            raise AutomationRuleNotFoundError("Automation rule not found")
        self.db.commit()

    def get_logs(self, rule_id: str, limit: int = 100) -> List[AutomationLog]:
        self.get_rule(rule_id)
        return self.gateway.query(AutomationLog, AutomationLog.rule_id == rule_id).order_by(
            AutomationLog.executed_at.desc()
        ).limit(limit).all()
