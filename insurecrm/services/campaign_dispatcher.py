"""
Campaign Dispatcher

Drains RUNNING campaigns in small batches, sending strictly sequentially with a
pause after each send set by the campaign's speed. Two guards keep a campaign
from being processed twice at once: an in-process set of campaign ids, and a
``locked_until`` lease row claimed with a conditional UPDATE so several worker
processes can run the poll loop safely.

A failed message stays FAILED; the loop never retries it.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Optional, Set

from sqlalchemy import or_
from sqlalchemy.orm import Session

from insurecrm.core.clock import Clock, utcnow
from insurecrm.core.config import get_settings
from insurecrm.core.tenant_context import TenantContext, establish
from insurecrm.db.models import (
    Campaign, CampaignMessage, CampaignStatus, Lead, MessageStatus,
    SendingSpeed, Tenant, WhatsAppTemplate,
)
from insurecrm.services.campaign_service import CampaignService
from insurecrm.services.credential_resolver import CredentialNotConfiguredError
from insurecrm.services.template_service import TemplateVariableError, render_variables
from insurecrm.services.tenant_gateway import TenantGateway
from insurecrm.services.whatsapp_client import WhatsAppMessenger, WhatsAppSendError

logger = logging.getLogger(__name__)

CALLER_ID = "campaign-scheduler"
BATCH_SIZE = 10

SPEED_DELAYS = {
    SendingSpeed.SLOW.value: 5.0,
    SendingSpeed.NORMAL.value: 2.0,
    SendingSpeed.FAST.value: 1.0,
}

SCAN_CONTEXT = TenantContext(tenant_id=None, caller_id=CALLER_ID, is_super_admin=True)

# Campaign ids with a batch in flight in this process
_processing_campaigns: Set[str] = set()


def send_delay(campaign: Campaign) -> float:
    return SPEED_DELAYS.get(campaign.sending_speed, SPEED_DELAYS[SendingSpeed.NORMAL.value])


def is_within_working_hours(campaign: Campaign, now: datetime) -> bool:
    """[start, end) by UTC hour; campaigns that ignore working hours always pass"""
    if not campaign.respect_working_hours:
        return True
    if campaign.working_hours_start is None or campaign.working_hours_end is None:
        return True
    return campaign.working_hours_start <= now.hour < campaign.working_hours_end


class CampaignDispatcher:
    def __init__(
        self,
        db: Session,
        messenger: Optional[WhatsAppMessenger] = None,
        now: Clock = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        lease_seconds: Optional[int] = None,
        batch_size: int = BATCH_SIZE,
    ):
        self.db = db
        self.gateway = TenantGateway(db)
        self.messenger = messenger or WhatsAppMessenger(db)
        self.now = now
        self.sleep = sleep
        self.lease = timedelta(seconds=lease_seconds or get_settings().campaign_lease_seconds)
        self.batch_size = batch_size

    # Lease

    def acquire_lease(self, campaign_id: str) -> bool:
        """Atomically claim the campaign unless another worker holds a live lease"""
        now = self.now()
        claimed = self.gateway.query(
            Campaign,
            Campaign.id == campaign_id,
            Campaign.status == CampaignStatus.RUNNING.value,
            or_(Campaign.locked_until.is_(None), Campaign.locked_until < now),
        ).update({"locked_until": now + self.lease}, synchronize_session=False)
        self.db.commit()
        return claimed == 1

    def release_lease(self, campaign_id: str):
        self.gateway.query(Campaign, Campaign.id == campaign_id).update(
            {"locked_until": None}, synchronize_session=False
        )
        self.db.commit()

    # Sending

    async def send_campaign_message(self, campaign: Campaign, template: WhatsAppTemplate,
                                    message: CampaignMessage) -> bool:
        lead = self.gateway.get(Lead, message.lead_id) if message.lead_id else None
        try:
            meta_message_id = await self.messenger.send_template(
                campaign.tenant_id,
                message.phone_number,
                template.name,
                template.language,
                body_parameters=render_variables(campaign.template_variables, lead),
            )
        except (WhatsAppSendError, CredentialNotConfiguredError, TemplateVariableError) as e:
            message.status = MessageStatus.FAILED.value
            message.error_message = str(e)
            campaign.failed_count = (campaign.failed_count or 0) + 1
            self.db.commit()
            logger.error(f"Campaign {campaign.id} message {message.id} failed: {e}")
            return False

        message.status = MessageStatus.SENT.value
        message.sent_at = self.now()
        message.meta_message_id = meta_message_id
        campaign.sent_count = (campaign.sent_count or 0) + 1
        self.db.commit()
        return True

    def _complete_if_drained(self, campaign: Campaign) -> bool:
        pending = self.gateway.query(
            CampaignMessage,
            CampaignMessage.campaign_id == campaign.id,
            CampaignMessage.status == MessageStatus.PENDING.value,
        ).count()
        if pending:
            return False

        if campaign.total_contacts and campaign.sent_count == 0 and campaign.failed_count >= campaign.total_contacts:
            campaign.status = CampaignStatus.FAILED.value
            logger.warning(f"Campaign {campaign.id} failed: every message failed")
        else:
            # Remaining shortfall is FAILED messages awaiting manual resubmission
            campaign.status = CampaignStatus.COMPLETED.value
            if campaign.sent_count < campaign.total_contacts:
                logger.info(
                    f"Campaign {campaign.id} drained with {campaign.failed_count} failed of {campaign.total_contacts}"
                )
        campaign.completed_at = self.now()
        self.db.commit()
        logger.info(f"Campaign {campaign.id} finished with status {campaign.status}")
        return True

    async def process_campaign(self, campaign: Campaign) -> Dict[str, int]:
        """Send one batch for a campaign. Must run inside the campaign's tenant context."""
        result = {"sent": 0, "failed": 0, "completed": 0, "skipped": 0}

        if not is_within_working_hours(campaign, self.now()):
            logger.debug(f"Campaign {campaign.id} outside working hours")
            result["skipped"] = 1
            return result

        template = self.gateway.get(WhatsAppTemplate, campaign.template_id)
        if template is None:
            campaign.status = CampaignStatus.FAILED.value
            self.db.commit()
            logger.error(f"Campaign {campaign.id} failed: template {campaign.template_id} missing")
            return result

        batch = self.gateway.query(
            CampaignMessage,
            CampaignMessage.campaign_id == campaign.id,
            CampaignMessage.status == MessageStatus.PENDING.value,
        ).order_by(CampaignMessage.created_at.asc()).limit(self.batch_size).all()

        delay = send_delay(campaign)
        for message in batch:
            if await self.send_campaign_message(campaign, template, message):
                result["sent"] += 1
            else:
                result["failed"] += 1
            await self.sleep(delay)

        if self._complete_if_drained(campaign):
            result["completed"] = 1
        return result

    async def _process_guarded(self, campaign: Campaign) -> Optional[Dict[str, int]]:
        campaign_id = campaign.id
        if campaign_id in _processing_campaigns:
            logger.debug(f"Campaign {campaign_id} already processing in this worker")
            return None

        _processing_campaigns.add(campaign_id)
        try:
            with establish(TenantContext(tenant_id=campaign.tenant_id, caller_id=CALLER_ID)):
                if not self.acquire_lease(campaign_id):
                    logger.debug(f"Campaign {campaign_id} leased by another worker")
                    return None
                try:
                    return await self.process_campaign(campaign)
                finally:
                    self.release_lease(campaign_id)
        finally:
            _processing_campaigns.discard(campaign_id)

    async def run_all(self) -> Dict[str, int]:
        """One dispatch pass over every RUNNING campaign of operational tenants"""
        scan = TenantGateway(self.db, context=SCAN_CONTEXT)
        campaigns = scan.query(Campaign, Campaign.status == CampaignStatus.RUNNING.value).join(
            Tenant, Tenant.id == Campaign.tenant_id
        ).filter(Tenant.status.in_(["active", "trial"])).all()

        stats = {"campaigns": len(campaigns), "sent": 0, "failed": 0, "completed": 0, "errors": 0}
        for campaign in campaigns:
            try:
                result = await self._process_guarded(campaign)
            except Exception as e:
                # Isolate failures per campaign
                stats["errors"] += 1
                self.db.rollback()
                logger.error(f"Error dispatching campaign {campaign.id}: {e}", exc_info=True)
                continue
            if result:
                stats["sent"] += result["sent"]
                stats["failed"] += result["failed"]
                stats["completed"] += result["completed"]

        logger.info(f"Campaign dispatch pass complete: {stats}")
        return stats

    def promote_scheduled(self) -> int:
        """Start SCHEDULED campaigns whose time has come, materializing recipients now"""
        scan = TenantGateway(self.db, context=SCAN_CONTEXT)
        due = scan.query(
            Campaign,
            Campaign.status == CampaignStatus.SCHEDULED.value,
            Campaign.scheduled_at.isnot(None),
            Campaign.scheduled_at <= self.now(),
        ).all()

        started = 0
        for campaign in due:
            with establish(TenantContext(tenant_id=campaign.tenant_id, caller_id=CALLER_ID)):
                try:
                    CampaignService(self.db, now=self.now).materialize_messages(campaign)
                    self.db.commit()
                    started += 1
                except Exception as e:
                    self.db.rollback()
                    logger.error(f"Failed to start scheduled campaign {campaign.id}: {e}", exc_info=True)
        return started
