"""
Campaign dispatch and scheduled-campaign promotion tasks
"""
import asyncio
from typing import Any, Dict

from celery import shared_task
from celery.utils.log import get_task_logger

from insurecrm.services.campaign_dispatcher import CampaignDispatcher
from insurecrm.tasks.db_session_manager import get_celery_db_session

logger = get_task_logger(__name__)


@shared_task(name="dispatch_campaigns")
def dispatch_campaigns() -> Dict[str, Any]:
    with get_celery_db_session() as db:
        stats = asyncio.run(CampaignDispatcher(db).run_all())

    if stats["sent"] or stats["failed"]:
        logger.info(f"Campaign dispatch: {stats}")
    return stats


@shared_task(name="promote_scheduled_campaigns")
def promote_scheduled_campaigns() -> Dict[str, Any]:
    with get_celery_db_session() as db:
        started = CampaignDispatcher(db).promote_scheduled()

    if started:
        logger.info(f"Started {started} scheduled campaigns")
    return {"started": started}
