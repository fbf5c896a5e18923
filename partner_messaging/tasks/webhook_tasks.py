"""
Webhook subscription maintenance for all agents.

Run after deploying a new callback URL or subscription version so every
gateway app converges on one current subscription.
"""
import asyncio
import logging
from typing import Any, Dict, Optional

from partner_messaging.core.exceptions import ConfigurationError
from partner_messaging.core.service_factory import ServiceFactory
from partner_messaging.tasks.celery_app import celery_app
from partner_messaging.tasks.db_session_manager import get_celery_db_session

logger = logging.getLogger(__name__)


async def _configure_all(webhook_url: Optional[str]) -> Dict[str, Any]:
    factory = ServiceFactory()
    try:
        url = webhook_url or factory.settings.get_webhook_url()
        if not url:
            raise ConfigurationError("WEBHOOK_BASE_URL is not configured")
        with get_celery_db_session() as db:
            return await factory.build(db).onboarding.configure_webhooks_for_all_agents(url)
    finally:
        await factory.close()


@celery_app.task(
    bind=True,
    name='partner_messaging.tasks.webhook_tasks.configure_webhooks_for_all_agents',
    acks_late=True
)
def configure_webhooks_for_all_agents(self, webhook_url: Optional[str] = None) -> Dict[str, Any]:
    """
    Converge every agent app onto the current webhook subscription.

    Args:
        webhook_url: Callback URL; defaults to WEBHOOK_BASE_URL + WEBHOOK_PATH

    Returns:
        Summary with configured/unchanged/failed counts
    """
    logger.info(f"Configuring webhooks for all agents: task_id={self.request.id}")
    summary = asyncio.run(_configure_all(webhook_url))
    logger.info(
        f"Webhook configuration finished: {summary['configured']} configured, "
        f"{summary['unchanged']} unchanged, {summary['failed']} failed"
    )
    return summary
