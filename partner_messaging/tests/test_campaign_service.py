"""
Tests for bulk campaign execution and controls
"""
from typing import Any, Callable, Dict, List, Optional

import pytest

from partner_messaging.core.exceptions import ConflictError, NotFoundError, TransientNetworkError, ValidationError
from partner_messaging.db.models import Lead, MessageCampaign, MessageLog, WabaTemplate
from partner_messaging.services.campaign_service import (
    COMPLETED,
    FAILED,
    IN_PROGRESS,
    PAUSE_TIMEOUT_ERROR,
    PAUSED,
    QUEUED,
    CampaignService,
    progress_percent,
)
from partner_messaging.services.message_dispatch_service import DispatchResult, MessageDispatchService
from partner_messaging.services.notification_service import (
    BULK_MESSAGE_COMPLETED,
    BULK_MESSAGE_FAILED,
    BULK_MESSAGE_PROGRESS,
)


class FakeDispatcher:
    """Records sends; can fail chosen leads or run a hook after each send"""

    def __init__(self, provisioner):
        self.provisioner = provisioner
        self.calls: List[Dict[str, Any]] = []
        self.fail_leads: Dict[str, Exception] = {}
        self.after_send: Optional[Callable[[int], None]] = None

    async def send(self, **kwargs) -> DispatchResult:
        self.calls.append(kwargs)
        try:
            error = self.fail_leads.get(kwargs["lead_id"])
            if error is not None:
                raise error
            return DispatchResult(
                message_id=f"wamid.{len(self.calls)}",
                status="sent",
                phone_number=kwargs["recipient_phone"],
                protocol_version="v3"
            )
        finally:
            if self.after_send is not None:
                self.after_send(len(self.calls))


@pytest.fixture
def more_leads(db_session, agent, leads):
    extra = [
        Lead(id="lead-4", agent_id=agent.id, full_name="Chen Hui", phone_number="94567890", intent="sell"),
        Lead(id="lead-5", agent_id=agent.id, full_name="Devi Nair", phone_number="95678901", intent="buy"),
    ]
    db_session.add_all(extra)
    db_session.commit()
    return leads + extra


@pytest.fixture
def dispatcher(provisioner):
    return FakeDispatcher(provisioner)


@pytest.fixture
def campaigns(db_session, dispatcher, notifier, settings, sleeper):
    return CampaignService(db_session, dispatcher, notifier, settings, sleep=sleeper)


def queue_campaign(campaigns, agent, lead_list):
    return campaigns.create_campaign(
        agent_id=agent.id,
        template_id="tpl-local-1",
        template_name="welcome_msg",
        lead_ids=[lead.id for lead in lead_list]
    )


class TestCampaignCreation:

    def test_queues_owned_leads_once(self, campaigns, agent, leads, db_session):
        outsider = Lead(id="lead-x", agent_id="agent-other", full_name="Outsider", phone_number="99999999")
        db_session.add(outsider)
        db_session.commit()

        campaign = campaigns.create_campaign(
            agent_id=agent.id,
            template_id="tpl-local-1",
            template_name="welcome_msg",
            lead_ids=["lead-2", "lead-1", "lead-2", "lead-x"]
        )

        assert campaign.status == QUEUED
        assert campaign.recipient_lead_ids == ["lead-2", "lead-1"]
        assert campaign.total_recipients == 2
        assert campaign.name == "welcome_msg campaign"

    def test_requires_leads(self, campaigns, agent):
        with pytest.raises(ValidationError):
            campaigns.create_campaign(agent.id, "tpl-local-1", "welcome_msg", [])

    def test_requires_owned_leads(self, campaigns, agent):
        with pytest.raises(ValidationError):
            campaigns.create_campaign(agent.id, "tpl-local-1", "welcome_msg", ["lead-x"])

    def test_unknown_agent(self, campaigns):
        with pytest.raises(NotFoundError):
            campaigns.create_campaign("missing", "tpl-local-1", "welcome_msg", ["lead-1"])

    def test_progress_percent(self):
        assert progress_percent(1, 1, 4) == 50
        assert progress_percent(0, 0, 0) == 100


@pytest.mark.asyncio
class TestCampaignRun:
    """Sequential execution with pause and cancel checkpoints"""

    async def test_uninterrupted_run_completes(self, campaigns, dispatcher, notifier, sleeper, agent, leads):
        campaign = queue_campaign(campaigns, agent, leads)

        result = await campaigns.start(campaign.id)

        assert result.status == COMPLETED
        assert result.messages_sent == 3
        assert result.messages_failed == 0
        assert result.started_at is not None
        assert result.completed_at is not None
        assert [call["lead_id"] for call in dispatcher.calls] == ["lead-1", "lead-2", "lead-3"]
        assert sleeper.delays == [1.0, 1.0]

        progress = notifier.of_type(BULK_MESSAGE_PROGRESS)
        assert [event["progress"] for event in progress] == [33, 67, 100]
        assert progress[-1]["sent"] == 3
        assert notifier.of_type(BULK_MESSAGE_COMPLETED) == [
            {"campaignId": campaign.id, "sent": 3, "failed": 0, "total": 3}
        ]

    async def test_failed_recipients_are_counted(self, campaigns, dispatcher, notifier, agent, leads):
        dispatcher.fail_leads["lead-2"] = TransientNetworkError("gateway unavailable")
        campaign = queue_campaign(campaigns, agent, leads)

        result = await campaigns.start(campaign.id)

        assert result.status == COMPLETED
        assert result.messages_sent == 2
        assert result.messages_failed == 1
        assert result.error_details["errors"] == [
            {"lead_id": "lead-2", "lead_name": "Ben Ong", "error": "gateway unavailable"}
        ]

    async def test_pause_blocks_until_resumed(self, campaigns, dispatcher, sleeper, agent, more_leads):
        campaign = queue_campaign(campaigns, agent, more_leads)
        sends_at_resume = []

        def pause_after_two(count):
            if count == 2:
                campaigns.pause(agent.id, campaign.id)

        def resume_on_poll(delay):
            if delay == 5.0 and not sends_at_resume:
                sends_at_resume.append(len(dispatcher.calls))
                campaigns.resume(agent.id, campaign.id)

        dispatcher.after_send = pause_after_two
        sleeper.hooks.append(resume_on_poll)

        result = await campaigns.start(campaign.id)

        assert sends_at_resume == [2]
        assert result.status == COMPLETED
        assert result.messages_sent == 5
        assert 5.0 in sleeper.delays

    async def test_cancel_stops_after_current_send(self, campaigns, dispatcher, notifier, agent, more_leads, db_session):
        campaign = queue_campaign(campaigns, agent, more_leads)

        def cancel_after_two(count):
            if count == 2:
                campaigns.cancel(agent.id, campaign.id)

        dispatcher.after_send = cancel_after_two

        result = await campaigns.start(campaign.id)

        assert len(dispatcher.calls) == 2
        assert result.status == FAILED
        assert result.messages_sent + result.messages_failed == 2
        assert result.error_details["cancelled"] is True
        assert result.completed_at is not None
        assert notifier.of_type(BULK_MESSAGE_COMPLETED) == []

    async def test_pause_timeout_fails_campaign(self, campaigns, dispatcher, notifier, sleeper, agent, leads):
        campaign = queue_campaign(campaigns, agent, leads)

        def pause_after_one(count):
            if count == 1:
                campaigns.pause(agent.id, campaign.id)

        dispatcher.after_send = pause_after_one

        result = await campaigns.start(campaign.id)

        assert len(dispatcher.calls) == 1
        assert result.status == FAILED
        assert result.error_details == {"error": PAUSE_TIMEOUT_ERROR}
        assert sleeper.delays.count(5.0) == 3
        assert notifier.of_type(BULK_MESSAGE_FAILED) == [
            {"campaignId": campaign.id, "error": PAUSE_TIMEOUT_ERROR}
        ]

    async def test_unexpected_error_fails_campaign(self, campaigns, dispatcher, notifier, agent, leads):
        dispatcher.fail_leads["lead-1"] = RuntimeError("database connection lost")
        campaign = queue_campaign(campaigns, agent, leads)

        with pytest.raises(RuntimeError):
            await campaigns.start(campaign.id)

        stored = campaigns.get_campaign(agent.id, campaign.id)
        assert stored.status == FAILED
        assert stored.error_details == {"error": "database connection lost"}
        assert len(notifier.of_type(BULK_MESSAGE_FAILED)) == 1

    async def test_cancelled_before_start_sends_nothing(self, campaigns, dispatcher, notifier, agent, leads):
        campaign = queue_campaign(campaigns, agent, leads)
        campaigns.cancel(agent.id, campaign.id)

        result = await campaigns.start(campaign.id)

        assert dispatcher.calls == []
        assert result.status == FAILED
        assert result.error_details["cancelled"] is True
        assert result.started_at is None
        assert notifier.events == []

    async def test_rerun_of_completed_campaign_still_runs(self, campaigns, dispatcher, agent, leads, db_session):
        campaign = queue_campaign(campaigns, agent, leads)
        campaign.status = COMPLETED
        db_session.commit()

        result = await campaigns.start(campaign.id)

        assert len(dispatcher.calls) == 3
        assert result.status == COMPLETED

    async def test_error_after_cancel_keeps_cancellation(self, campaigns, dispatcher, agent, leads):
        dispatcher.fail_leads["lead-1"] = RuntimeError("database connection lost")
        campaign = queue_campaign(campaigns, agent, leads)
        dispatcher.after_send = lambda count: campaigns.cancel(agent.id, campaign.id)

        with pytest.raises(RuntimeError):
            await campaigns.start(campaign.id)

        stored = campaigns.get_campaign(agent.id, campaign.id)
        assert stored.status == FAILED
        assert stored.error_details["cancelled"] is True
        assert "error" not in stored.error_details

    async def test_start_unknown_campaign(self, campaigns):
        with pytest.raises(NotFoundError):
            await campaigns.start("missing")


class TestCampaignControls:
    """Status transitions requested through the API"""

    def test_pause_requires_running_campaign(self, campaigns, agent, leads):
        campaign = queue_campaign(campaigns, agent, leads)

        with pytest.raises(ConflictError):
            campaigns.pause(agent.id, campaign.id)

    def test_resume_requires_paused_campaign(self, campaigns, agent, leads, db_session):
        campaign = queue_campaign(campaigns, agent, leads)
        campaign.status = IN_PROGRESS
        db_session.commit()

        with pytest.raises(ConflictError):
            campaigns.resume(agent.id, campaign.id)

    def test_pause_and_resume(self, campaigns, agent, leads, db_session):
        campaign = queue_campaign(campaigns, agent, leads)
        campaign.status = IN_PROGRESS
        db_session.commit()

        assert campaigns.pause(agent.id, campaign.id).status == PAUSED
        assert campaigns.resume(agent.id, campaign.id).status == IN_PROGRESS

    def test_cancel_queued_campaign(self, campaigns, agent, leads):
        campaign = queue_campaign(campaigns, agent, leads)

        cancelled = campaigns.cancel(agent.id, campaign.id)

        assert cancelled.status == FAILED
        assert cancelled.error_details["cancelled"] is True

    def test_cannot_cancel_finished_campaign(self, campaigns, agent, leads, db_session):
        campaign = queue_campaign(campaigns, agent, leads)
        campaign.status = COMPLETED
        db_session.commit()

        with pytest.raises(ConflictError):
            campaigns.cancel(agent.id, campaign.id)

    def test_other_agents_campaign_is_not_found(self, campaigns, agent, leads):
        campaign = queue_campaign(campaigns, agent, leads)

        with pytest.raises(NotFoundError):
            campaigns.pause("agent-other", campaign.id)

    def test_list_campaigns(self, campaigns, agent, leads):
        queue_campaign(campaigns, agent, leads)
        queue_campaign(campaigns, agent, leads[:1])

        assert len(campaigns.list_campaigns(agent.id)) == 2
        assert campaigns.list_campaigns(agent.id, status=COMPLETED) == []


@pytest.mark.asyncio
class TestCampaignWithGateway:
    """Campaign driving the real dispatcher against the scripted gateway"""

    async def test_each_recipient_logged_once(
        self, stub_partner_login, db_session, provisioner, http_client, settings, notifier, sleeper, agent, leads
    ):
        db_session.add(WabaTemplate(
            id="tpl-local-1",
            agent_id=agent.id,
            name="welcome_msg",
            category="UTILITY",
            content="Hi {{1}}, thanks for asking about {{2}}.",
            params=["name", "inquiry_type"],
            status="approved",
            gateway_template_id="gw-tpl-1"
        ))
        db_session.commit()
        stub_partner_login.add(
            "POST", "/app/app-1/v3/message",
            (200, {"messages": [{"id": "wamid.1"}]}),
            (400, {"message": "Recipient not on WhatsApp"}),
            (200, {"messages": [{"id": "wamid.3"}]})
        )
        dispatcher = MessageDispatchService(db_session, provisioner, http_client, settings)
        service = CampaignService(db_session, dispatcher, notifier, settings, sleep=sleeper)
        campaign = queue_campaign(service, agent, leads)

        result = await service.start(campaign.id)

        assert result.status == COMPLETED
        assert (result.messages_sent, result.messages_failed) == (2, 1)
        logs = db_session.query(MessageLog).filter(MessageLog.campaign_id == campaign.id).all()
        assert sorted(log.delivery_status for log in logs) == ["failed", "sent", "sent"]
        assert db_session.query(MessageCampaign).count() == 1
