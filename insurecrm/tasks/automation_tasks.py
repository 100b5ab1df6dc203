"""
Automation rule scheduler task
"""
import asyncio
from typing import Any, Dict

from celery import shared_task
from celery.utils.log import get_task_logger

from insurecrm.services.automation_engine import AutomationEngine
from insurecrm.tasks.db_session_manager import get_celery_db_session

logger = get_task_logger(__name__)


@shared_task(name="evaluate_automation_rules")
def evaluate_automation_rules() -> Dict[str, Any]:
    """One pass over every active rule; each rule runs in its own tenant context"""
    with get_celery_db_session() as db:
        stats = asyncio.run(AutomationEngine(db).run_all())

    logger.info(f"Automation rules evaluated: {stats}")
    return stats
