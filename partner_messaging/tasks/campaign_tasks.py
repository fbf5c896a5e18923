"""
Detached bulk campaign execution.
"""
import asyncio
import logging
from typing import Any, Dict

from partner_messaging.core.service_factory import ServiceFactory
from partner_messaging.tasks.celery_app import celery_app
from partner_messaging.tasks.db_session_manager import get_celery_db_session

logger = logging.getLogger(__name__)


async def _run_campaign(campaign_id: str) -> Dict[str, Any]:
    factory = ServiceFactory()
    try:
        with get_celery_db_session() as db:
            campaign = await factory.build(db).campaigns.start(campaign_id)
            return {
                "campaign_id": campaign.id,
                "status": campaign.status,
                "messages_sent": campaign.messages_sent,
                "messages_failed": campaign.messages_failed
            }
    finally:
        await factory.close()


@celery_app.task(
    bind=True,
    name='partner_messaging.tasks.campaign_tasks.run_bulk_campaign',
    acks_late=True,
    reject_on_worker_lost=False,
    max_retries=0
)
def run_bulk_campaign(self, campaign_id: str) -> Dict[str, Any]:
    """
    Run one campaign to its end state.

    Not retried: a failed run is recorded on the campaign itself, and
    re-sending would message recipients twice.
    """
    logger.info(f"Running campaign: task_id={self.request.id}", extra={"campaign_id": campaign_id})
    return asyncio.run(_run_campaign(campaign_id))
