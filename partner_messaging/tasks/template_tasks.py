"""
Periodic template approval polling.
"""
import asyncio
import logging
from typing import Any, Dict

from partner_messaging.core.service_factory import ServiceFactory
from partner_messaging.tasks.celery_app import celery_app
from partner_messaging.tasks.db_session_manager import get_celery_db_session

logger = logging.getLogger(__name__)


async def _poll_pending_templates() -> Dict[str, Any]:
    # A fresh factory per run: the HTTP and Redis pools are bound to this event loop
    factory = ServiceFactory()
    try:
        with get_celery_db_session() as db:
            result = await factory.build(db).templates.poll_pending()
        return result.to_dict()
    finally:
        await factory.close()


@celery_app.task(
    bind=True,
    name='partner_messaging.tasks.template_tasks.poll_pending_templates',
    acks_late=True
)
def poll_pending_templates(self) -> Dict[str, Any]:
    """Check gateway approval status for every submitted template."""
    logger.info(f"Template status poll started: task_id={self.request.id}")
    summary = asyncio.run(_poll_pending_templates())
    logger.info(f"Template status poll finished: {summary}")
    return summary
