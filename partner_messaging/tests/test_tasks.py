"""
Tests for Celery task wiring
"""
from contextlib import contextmanager
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from partner_messaging.services.template_service import PollResult
from partner_messaging.tasks import campaign_tasks, template_tasks, webhook_tasks
from partner_messaging.tasks.celery_app import celery_app


def fake_factory(services):
    factory = MagicMock()
    factory.build.return_value = services
    factory.close = AsyncMock()
    factory.settings.get_webhook_url.return_value = "https://hooks.example.com/api/gupshup/webhook"
    return factory


@contextmanager
def fake_session():
    yield MagicMock()


class TestCeleryConfiguration:

    def test_template_poll_is_scheduled(self):
        entry = celery_app.conf.beat_schedule["poll-pending-templates"]

        assert entry["task"] == "partner_messaging.tasks.template_tasks.poll_pending_templates"
        assert entry["schedule"] == 30 * 60.0

    def test_campaigns_are_routed_to_their_queue(self):
        routes = celery_app.conf.task_routes
        assert routes["partner_messaging.tasks.campaign_tasks.*"] == {"queue": "campaigns"}

    def test_campaign_task_is_never_retried(self):
        assert campaign_tasks.run_bulk_campaign.max_retries == 0


@pytest.mark.asyncio
class TestTaskBodies:
    """Each run builds its own factory and always closes it"""

    async def test_poll_pending_templates(self):
        services = MagicMock()
        services.templates.poll_pending = AsyncMock(return_value=PollResult(checked=2, approved=1, unchanged=1))
        factory = fake_factory(services)

        with patch.object(template_tasks, "ServiceFactory", return_value=factory), \
                patch.object(template_tasks, "get_celery_db_session", fake_session):
            summary = await template_tasks._poll_pending_templates()

        assert summary == {"checked": 2, "approved": 1, "rejected": 0, "unchanged": 1, "errors": 0}
        factory.close.assert_awaited_once()

    async def test_run_campaign_closes_factory_on_failure(self):
        services = MagicMock()
        services.campaigns.start = AsyncMock(side_effect=RuntimeError("boom"))
        factory = fake_factory(services)

        with patch.object(campaign_tasks, "ServiceFactory", return_value=factory), \
                patch.object(campaign_tasks, "get_celery_db_session", fake_session):
            with pytest.raises(RuntimeError):
                await campaign_tasks._run_campaign("campaign-1")

        services.campaigns.start.assert_awaited_once_with("campaign-1")
        factory.close.assert_awaited_once()

    async def test_configure_webhooks_defaults_to_configured_url(self):
        services = MagicMock()
        services.onboarding.configure_webhooks_for_all_agents = AsyncMock(
            return_value={"configured": 2, "unchanged": 0, "failed": 0, "errors": []}
        )
        factory = fake_factory(services)

        with patch.object(webhook_tasks, "ServiceFactory", return_value=factory), \
                patch.object(webhook_tasks, "get_celery_db_session", fake_session):
            summary = await webhook_tasks._configure_all(None)

        assert summary["configured"] == 2
        services.onboarding.configure_webhooks_for_all_agents.assert_awaited_once_with(
            "https://hooks.example.com/api/gupshup/webhook"
        )
