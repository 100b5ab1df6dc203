"""
Automation Rule Engine

Periodically evaluates active tenant automation rules and sends their template
to matching conversations:

- CONVERSATION_WINDOW_EXPIRED: last customer message near now - 24h - send_after_minutes
- LABEL_ASSIGNED: label assignments in the lookback window, once per assignment
- TIME_DELAY: conversations created near now - delay_minutes

Every attempt writes an AutomationLog row. Successful rows drive the
frequency limits; failed rows are kept for audit only.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from insurecrm.core.clock import Clock, utcnow
from insurecrm.core.tenant_context import TenantContext, establish
from insurecrm.db.json_fields import parse_trigger_conditions
from insurecrm.db.models import (
    AIConversation, AutomationLog, AutomationLogStatus, AutomationRule, ChatMessage,
    ConversationLabelAssignment, ConversationStatus, ConversationType, Lead,
    MessageSender, SendingFrequency, Tenant, TriggerType, WhatsAppTemplate,
)
from insurecrm.services.credential_resolver import CredentialNotConfiguredError
from insurecrm.services.template_service import TemplateVariableError, render_variables
from insurecrm.services.tenant_gateway import TenantGateway
from insurecrm.services.whatsapp_client import WhatsAppMessenger, WhatsAppSendError

logger = logging.getLogger(__name__)

CALLER_ID = "automation-scheduler"
CONVERSATION_WINDOW = timedelta(hours=24)
LABEL_LOOKBACK = timedelta(minutes=15)
TIME_DELAY_TOLERANCE = timedelta(minutes=15)
# Assignment and its log row may be stamped within the same second
DEDUP_SKEW = timedelta(seconds=1)

SCAN_CONTEXT = TenantContext(tenant_id=None, caller_id=CALLER_ID, is_super_admin=True)


@dataclass
class AutomationTarget:
    conversation_id: str
    phone_number: str
    lead_id: Optional[str] = None


def sunday_based_weekday(moment: datetime) -> int:
    """0=Sunday .. 6=Saturday"""
    return (moment.weekday() + 1) % 7


def is_within_active_window(rule: AutomationRule, now: datetime) -> bool:
    """Active days and the [start, end) hour range, both in UTC"""
    if rule.active_days is not None and sunday_based_weekday(now) not in rule.active_days:
        return False
    if rule.active_hours_start is not None and rule.active_hours_end is not None:
        if not (rule.active_hours_start <= now.hour < rule.active_hours_end):
            return False
    return True


class AutomationEngine:
    def __init__(self, db: Session, messenger: Optional[WhatsAppMessenger] = None, now: Clock = utcnow):
        self.db = db
        self.gateway = TenantGateway(db)
        self.messenger = messenger or WhatsAppMessenger(db)
        self.now = now

    # Target discovery

    def find_window_expired_targets(self, rule: AutomationRule, now: datetime) -> List[AutomationTarget]:
        conditions = parse_trigger_conditions(rule.trigger_type, rule.trigger_conditions)
        expiry = now - CONVERSATION_WINDOW - timedelta(minutes=rule.send_after_minutes or 0)
        tolerance = timedelta(minutes=conditions.window_tolerance_minutes)

        last_customer_message = func.max(ChatMessage.created_at)
        rows = self.db.query(ChatMessage.conversation_id, last_customer_message).filter(
            *self.gateway.scoped_filter(
                ChatMessage,
                ChatMessage.sender == MessageSender.CUSTOMER.value,
                ChatMessage.platform == "WHATSAPP",
            )
        ).group_by(ChatMessage.conversation_id).having(
            last_customer_message.between(expiry - tolerance, expiry + tolerance)
        ).all()

        conversation_ids = [row[0] for row in rows]
        if not conversation_ids:
            return []
        return self._targets_for(conversation_ids)

    def find_label_assigned_targets(self, rule: AutomationRule, now: datetime) -> List[AutomationTarget]:
        conditions = parse_trigger_conditions(rule.trigger_type, rule.trigger_conditions)
        delay = timedelta(minutes=rule.send_after_minutes or 0)
        since = now - LABEL_LOOKBACK - delay

        assignments = self.gateway.query(
            ConversationLabelAssignment,
            ConversationLabelAssignment.label_id == conditions.label_id,
            ConversationLabelAssignment.assigned_at >= since,
        ).order_by(ConversationLabelAssignment.assigned_at.asc()).all()

        targets = []
        seen = set()
        for assignment in assignments:
            if now - assignment.assigned_at < delay:
                continue
            if assignment.conversation_id in seen:
                continue

            already_fired = self.gateway.query(
                AutomationLog,
                AutomationLog.rule_id == rule.id,
                AutomationLog.conversation_id == assignment.conversation_id,
                AutomationLog.executed_at >= assignment.assigned_at - DEDUP_SKEW,
            ).first()
            if already_fired is not None:
                continue

            seen.add(assignment.conversation_id)
            targets.extend(self._targets_for([assignment.conversation_id]))
        return targets

    def find_time_delay_targets(self, rule: AutomationRule, now: datetime) -> List[AutomationTarget]:
        conditions = parse_trigger_conditions(rule.trigger_type, rule.trigger_conditions)
        delay_minutes = conditions.delay_minutes if conditions.delay_minutes is not None else (rule.send_after_minutes or 0)
        anchor = now - timedelta(minutes=delay_minutes)

        conversations = self.gateway.query(
            AIConversation,
            AIConversation.type == ConversationType.WHATSAPP_CHAT.value,
            AIConversation.status != ConversationStatus.CLOSED.value,
            AIConversation.created_at.between(anchor - TIME_DELAY_TOLERANCE, anchor + TIME_DELAY_TOLERANCE),
        ).all()
        return [self._target(conversation) for conversation in conversations if conversation.phone_number]

    def _targets_for(self, conversation_ids: List[str]) -> List[AutomationTarget]:
        conversations = self.gateway.query(
            AIConversation,
            AIConversation.id.in_(conversation_ids),
            AIConversation.type == ConversationType.WHATSAPP_CHAT.value,
            AIConversation.status != ConversationStatus.CLOSED.value,
        ).all()
        return [self._target(conversation) for conversation in conversations if conversation.phone_number]

    @staticmethod
    def _target(conversation: AIConversation) -> AutomationTarget:
        return AutomationTarget(
            conversation_id=conversation.id,
            phone_number=conversation.phone_number,
            lead_id=conversation.lead_id,
        )

    def find_targets(self, rule: AutomationRule, now: datetime) -> List[AutomationTarget]:
        if rule.trigger_type == TriggerType.CONVERSATION_WINDOW_EXPIRED.value:
            return self.find_window_expired_targets(rule, now)
        if rule.trigger_type == TriggerType.LABEL_ASSIGNED.value:
            return self.find_label_assigned_targets(rule, now)
        if rule.trigger_type == TriggerType.TIME_DELAY.value:
            return self.find_time_delay_targets(rule, now)
        return []

    # Frequency control

    def check_sending_frequency(self, rule: AutomationRule, conversation_id: Optional[str],
                                phone_number: Optional[str]) -> bool:
        """Whether another send is allowed for this rule and recipient"""
        recipient = []
        if conversation_id:
            recipient.append(AutomationLog.conversation_id == conversation_id)
        if phone_number:
            recipient.append(AutomationLog.phone_number == phone_number)
        if not recipient:
            return False

        def successes(*criteria):
            return self.gateway.query(
                AutomationLog,
                AutomationLog.rule_id == rule.id,
                AutomationLog.success.is_(True),
                or_(*recipient),
                *criteria,
            )

        sent_count = successes().count()
        if rule.max_send_count is not None and sent_count >= rule.max_send_count:
            return False

        now = self.now()
        frequency = rule.sending_frequency
        if frequency == SendingFrequency.ONCE.value:
            return sent_count == 0
        if frequency == SendingFrequency.EVERY_WINDOW.value:
            return successes(AutomationLog.executed_at >= now - CONVERSATION_WINDOW).first() is None
        if frequency == SendingFrequency.DAILY.value:
            midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
            return successes(AutomationLog.executed_at >= midnight).first() is None
        if frequency == SendingFrequency.WEEKLY.value:
            return successes(AutomationLog.executed_at >= now - timedelta(days=7)).first() is None
        if frequency == SendingFrequency.MONTHLY.value:
            return successes(AutomationLog.executed_at >= now - timedelta(days=30)).first() is None

        logger.warning(f"Unknown sending frequency {frequency} on rule {rule.id}; not sending")
        return False

    # Execution

    async def execute(self, rule: AutomationRule, target: AutomationTarget) -> bool:
        """Send the rule's template to one recipient and log the attempt"""
        template = self.gateway.get(WhatsAppTemplate, rule.template_id)
        lead = self.gateway.get(Lead, target.lead_id) if target.lead_id else None

        log = AutomationLog(
            tenant_id=rule.tenant_id,
            rule_id=rule.id,
            conversation_id=target.conversation_id,
            lead_id=target.lead_id,
            phone_number=target.phone_number,
            executed_at=self.now(),
        )

        try:
            if template is None:
                raise WhatsAppSendError("Template no longer exists")
            message_id = await self.messenger.send_template(
                rule.tenant_id,
                target.phone_number,
                template.name,
                template.language,
                body_parameters=render_variables(rule.template_variables, lead),
            )
        except (WhatsAppSendError, CredentialNotConfiguredError, TemplateVariableError) as e:
            log.success = False
            log.status = AutomationLogStatus.FAILED.value
            log.error_message = str(e)
            if isinstance(e, CredentialNotConfiguredError):
                log.error_details = {"provider": e.provider}
            else:
                log.error_details = e.to_dict()
            self.gateway.add(log)
            self.db.commit()
            logger.error(f"Automation rule {rule.id} failed for conversation {target.conversation_id}: {e}")
            return False

        log.success = True
        log.status = AutomationLogStatus.SENT.value
        log.message_id = message_id
        self.gateway.add(log)
        rule.total_sent = (rule.total_sent or 0) + 1
        rule.last_executed_at = log.executed_at
        self.db.commit()
        logger.info(f"Automation rule {rule.id} sent template to conversation {target.conversation_id}")
        return True

    async def evaluate_rule(self, rule: AutomationRule) -> int:
        """Evaluate one rule inside its tenant's context; returns messages sent"""
        now = self.now()
        if not is_within_active_window(rule, now):
            logger.debug(f"Rule {rule.id} outside active hours/days")
            return 0

        sent = 0
        for target in self.find_targets(rule, now):
            if not self.check_sending_frequency(rule, target.conversation_id, target.phone_number):
                continue
            if await self.execute(rule, target):
                sent += 1
        return sent

    async def trigger_manually(self, rule: AutomationRule, conversation_id: str) -> bool:
        """Fire a rule at one conversation on demand (MANUAL rules and testing)"""
        conversation = self.gateway.get(AIConversation, conversation_id)
        if conversation is None or not conversation.phone_number:
            return False
        target = self._target(conversation)
        if not self.check_sending_frequency(rule, target.conversation_id, target.phone_number):
            return False
        return await self.execute(rule, target)

    async def run_all(self) -> Dict[str, int]:
        """One scheduler pass over every active rule of every operational tenant"""
        scan = TenantGateway(self.db, context=SCAN_CONTEXT)
        rules = scan.query(
            AutomationRule,
            AutomationRule.is_active.is_(True),
            AutomationRule.trigger_type != TriggerType.MANUAL.value,
        ).join(Tenant, Tenant.id == AutomationRule.tenant_id).filter(
            Tenant.status.in_(["active", "trial"])
        ).all()

        stats = {"rules": len(rules), "sent": 0, "errors": 0}
        for rule in rules:
            with establish(TenantContext(tenant_id=rule.tenant_id, caller_id=CALLER_ID)):
                try:
                    stats["sent"] += await self.evaluate_rule(rule)
                except Exception as e:
                    # One broken rule must not stop the pass
                    stats["errors"] += 1
                    self.db.rollback()
                    logger.error(f"Error evaluating automation rule {rule.id}: {e}", exc_info=True)

        logger.info(f"Automation pass complete: {stats}")
        return stats
