"""
Bulk Campaign Service

Runs a template campaign one recipient at a time. Pause, resume and cancel
are requested by writing the campaign status; the running loop re-reads that
status from the database before every recipient, so a request takes effect
within one message interval and works across worker processes.

Status flow: queued -> in_progress <-> paused -> completed | failed.
Cancellation is recorded as failed with error_details.cancelled set.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from partner_messaging.core.cache import utc_now
from partner_messaging.core.config import Settings
from partner_messaging.core.exceptions import ConflictError, NotFoundError, PartnerMessagingError, ValidationError
from partner_messaging.core.logging import get_logger
from partner_messaging.db.models import Lead, MessageCampaign
from partner_messaging.services.message_dispatch_service import MessageDispatchService
from partner_messaging.services.notification_service import (
    BULK_MESSAGE_COMPLETED,
    BULK_MESSAGE_FAILED,
    BULK_MESSAGE_PROGRESS,
    NotificationService,
)

logger = logging.getLogger(__name__)

QUEUED = "queued"
IN_PROGRESS = "in_progress"
PAUSED = "paused"
COMPLETED = "completed"
FAILED = "failed"
TERMINAL_STATUSES = (COMPLETED, FAILED)
CANCELLABLE_STATUSES = (QUEUED, IN_PROGRESS, PAUSED)

PAUSE_TIMEOUT_ERROR = "Campaign paused for too long, automatically cancelled"


def progress_percent(sent: int, failed: int, total: int) -> int:
    if not total:
        return 100
    return round((sent + failed) / total * 100)


def is_cancelled(campaign: MessageCampaign) -> bool:
    return campaign.status == FAILED and bool((campaign.error_details or {}).get("cancelled"))


class CampaignService:
    """
    Bulk campaign creation, execution and control.

    Sends are strictly sequential within a campaign with a fixed delay between
    them. There is no throttling across campaigns.
    """

    def __init__(
        self,
        db: Session,
        dispatcher: MessageDispatchService,
        notifier: NotificationService,
        settings: Settings,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now
    ):
        self.db = db
        self.dispatcher = dispatcher
        self.notifier = notifier
        self.settings = settings
        self.sleep = sleep
        self.clock = clock

    def create_campaign(
        self,
        agent_id: str,
        template_id: str,
        template_name: str,
        lead_ids: Iterable[str],
        params: Optional[Any] = None,
        name: Optional[str] = None
    ) -> MessageCampaign:
        """
        Create a queued campaign for the agent's leads.

        Args:
            agent_id: Owning agent
            template_id: Local or gateway template id
            template_name: Template name
            lead_ids: Recipients, in send order
            params: Template parameters shared by every recipient (None to fill per lead)
            name: Optional display name

        Returns:
            The queued campaign

        Raises:
            ValidationError: If no recipients or template are given, or none of the leads belong to the agent
        """
        lead_ids = list(dict.fromkeys(lead_ids or []))
        if not lead_ids:
            raise ValidationError("At least one lead is required")
        if not template_id or not template_name:
            raise ValidationError("Template id and name are required")

        self.dispatcher.provisioner.get_agent(agent_id)
        known = {
            row.id for row in self.db.query(Lead.id).filter(
                Lead.id.in_(lead_ids),
                Lead.agent_id == agent_id
            ).all()
        }
        recipients = [lead_id for lead_id in lead_ids if lead_id in known]
        if not recipients:
            raise ValidationError("None of the selected leads belong to this agent")
        if len(recipients) < len(lead_ids):
            logger.warning(
                f"Skipping {len(lead_ids) - len(recipients)} lead(s) not owned by the agent",
                extra={"agent_id": agent_id}
            )

        campaign = MessageCampaign(
            agent_id=agent_id,
            name=name or f"{template_name} campaign",
            template_id=template_id,
            template_name=template_name,
            status=QUEUED,
            total_recipients=len(recipients),
            recipient_lead_ids=recipients,
            template_params=params
        )
        try:
            self.db.add(campaign)
            self.db.commit()
            self.db.refresh(campaign)
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to create campaign: {e}", extra={"agent_id": agent_id})
            raise

        logger.info(
            f"Queued campaign for {len(recipients)} recipient(s)",
            extra={"agent_id": agent_id, "campaign_id": campaign.id}
        )
        return campaign

    def get_campaign(self, agent_id: str, campaign_id: str) -> MessageCampaign:
        campaign = self.db.query(MessageCampaign).filter(
            MessageCampaign.id == campaign_id,
            MessageCampaign.agent_id == agent_id
        ).first()
        if not campaign:
            raise NotFoundError(f"Campaign {campaign_id} not found", context={"agent_id": agent_id})
        return campaign

    def list_campaigns(self, agent_id: str, status: Optional[str] = None, limit: int = 50) -> List[MessageCampaign]:
        query = self.db.query(MessageCampaign).filter(MessageCampaign.agent_id == agent_id)
        if status:
            query = query.filter(MessageCampaign.status == status)
        return query.order_by(MessageCampaign.created_at.desc()).limit(limit).all()

    def pause(self, agent_id: str, campaign_id: str) -> MessageCampaign:
        return self._transition(agent_id, campaign_id, (IN_PROGRESS,), {"status": PAUSED}, "paused")

    def resume(self, agent_id: str, campaign_id: str) -> MessageCampaign:
        return self._transition(agent_id, campaign_id, (PAUSED,), {"status": IN_PROGRESS}, "resumed")

    def cancel(self, agent_id: str, campaign_id: str) -> MessageCampaign:
        now = self.clock()
        return self._transition(
            agent_id,
            campaign_id,
            CANCELLABLE_STATUSES,
            {
                "status": FAILED,
                "completed_at": now,
                "error_details": {"cancelled": True, "cancelled_at": now.isoformat()}
            },
            "cancelled"
        )

    def fail_unqueued(self, campaign_id: str, error: str) -> None:
        """Fail a campaign that never reached the task queue."""
        logger.error(f"Campaign could not be queued: {error}", extra={"campaign_id": campaign_id})
        self._mark_failed(campaign_id, {"error": "Campaign could not be queued", "detail": error}, only_from=(QUEUED,))

    def _transition(
        self,
        agent_id: str,
        campaign_id: str,
        allowed_from: tuple,
        values: Dict[str, Any],
        action: str
    ) -> MessageCampaign:
        campaign = self.get_campaign(agent_id, campaign_id)
        try:
            updated = self.db.query(MessageCampaign).filter(
                MessageCampaign.id == campaign_id,
                MessageCampaign.status.in_(allowed_from)
            ).update(values, synchronize_session=False)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to update campaign status: {e}", extra={"campaign_id": campaign_id})
            raise

        self.db.refresh(campaign)
        if not updated:
            raise ConflictError(
                f"Campaign cannot be {action} while {campaign.status}",
                context={"agent_id": agent_id, "campaign_id": campaign_id}
            )
        logger.info(f"Campaign {action}", extra={"agent_id": agent_id, "campaign_id": campaign_id})
        return campaign

    async def start(self, campaign_id: str) -> MessageCampaign:
        """
        Run a campaign to completion, cancellation or failure.

        The campaign is claimed only while it still has the status it was read
        with; a cancelled campaign sends nothing. Per-recipient send failures
        are counted and recorded; any other error fails the whole campaign and
        is re-raised.

        Returns:
            The campaign in its final persisted state
        """
        campaign = self.db.query(MessageCampaign).filter(MessageCampaign.id == campaign_id).first()
        if not campaign:
            raise NotFoundError(f"Campaign {campaign_id} not found")
        agent_id = campaign.agent_id
        if is_cancelled(campaign):
            logger.info("Campaign was cancelled before it started", extra={"agent_id": agent_id, "campaign_id": campaign_id})
            return campaign
        if campaign.status in TERMINAL_STATUSES:
            logger.warning(
                f"Starting campaign that is already {campaign.status}",
                extra={"agent_id": agent_id, "campaign_id": campaign_id}
            )

        try:
            claimed = self.db.query(MessageCampaign).filter(
                MessageCampaign.id == campaign_id,
                MessageCampaign.status == campaign.status
            ).update({
                "status": IN_PROGRESS,
                "started_at": self.clock(),
                "messages_sent": 0,
                "messages_failed": 0
            }, synchronize_session=False)
            self.db.commit()
            self.db.refresh(campaign)
            if not claimed:
                logger.info(
                    f"Campaign changed to {campaign.status} before it started",
                    extra={"agent_id": agent_id, "campaign_id": campaign_id}
                )
                return campaign

            await self._run(campaign)
        except Exception as e:
            self.db.rollback()
            logger.error(
                f"Campaign failed: {e}",
                extra={"agent_id": agent_id, "campaign_id": campaign_id},
                exc_info=True
            )
            self._mark_failed(campaign_id, {"error": str(e)}, only_from=CANCELLABLE_STATUSES)
            await self.notifier.publish(agent_id, BULK_MESSAGE_FAILED, {
                "campaignId": campaign_id,
                "error": "Campaign failed"
            })
            raise

        self.db.refresh(campaign)
        return campaign

    async def _run(self, campaign: MessageCampaign) -> None:
        campaign_id = campaign.id
        agent_id = campaign.agent_id
        leads = self._load_leads(campaign)
        total = len(leads)
        sent = 0
        failed = 0
        errors: List[Dict[str, Any]] = []
        log = get_logger(__name__, agent_id=agent_id, campaign_id=campaign_id)

        log.info(f"Starting campaign for {total} recipient(s)")

        for index, lead in enumerate(leads):
            status = self._read_status(campaign_id)
            if status == PAUSED:
                status = await self._wait_while_paused(campaign_id, agent_id)
            if status != IN_PROGRESS:
                log.info(f"Campaign stopped at {sent + failed}/{total} ({status})")
                return

            try:
                await self.dispatcher.send(
                    agent_id=agent_id,
                    recipient_phone=lead.phone_number,
                    template_id=campaign.template_id,
                    template_name=campaign.template_name,
                    params=campaign.template_params,
                    lead_id=lead.id,
                    campaign_id=campaign_id
                )
                sent += 1
            except PartnerMessagingError as e:
                failed += 1
                errors.append({"lead_id": lead.id, "lead_name": lead.full_name, "error": e.message})

            self._save_progress(campaign_id, sent, failed)
            await self.notifier.publish(agent_id, BULK_MESSAGE_PROGRESS, {
                "campaignId": campaign_id,
                "sent": sent,
                "failed": failed,
                "total": total,
                "currentLead": lead.full_name,
                "progress": progress_percent(sent, failed, total)
            })

            if index < total - 1:
                await self.sleep(self.settings.campaign_message_delay)

        self._finish(campaign_id, sent, failed, errors)
        log.info(f"Campaign completed: {sent} sent, {failed} failed")
        await self.notifier.publish(agent_id, BULK_MESSAGE_COMPLETED, {
            "campaignId": campaign_id,
            "sent": sent,
            "failed": failed,
            "total": total
        })

    async def _wait_while_paused(self, campaign_id: str, agent_id: str) -> str:
        """Block until the campaign leaves 'paused'; fail it once the pause outlasts the timeout."""
        logger.info("Campaign paused, waiting for resume", extra={"agent_id": agent_id, "campaign_id": campaign_id})
        interval = self.settings.campaign_pause_poll_interval
        waited = 0.0

        while waited < self.settings.campaign_pause_timeout:
            await self.sleep(interval)
            waited += interval
            status = self._read_status(campaign_id)
            if status != PAUSED:
                return status

        logger.warning(PAUSE_TIMEOUT_ERROR, extra={"agent_id": agent_id, "campaign_id": campaign_id})
        self._mark_failed(campaign_id, {"error": PAUSE_TIMEOUT_ERROR}, only_from=(PAUSED,))
        await self.notifier.publish(agent_id, BULK_MESSAGE_FAILED, {
            "campaignId": campaign_id,
            "error": PAUSE_TIMEOUT_ERROR
        })
        return FAILED

    def _load_leads(self, campaign: MessageCampaign) -> List[Lead]:
        lead_ids = list(campaign.recipient_lead_ids or [])
        leads = self.db.query(Lead).filter(
            Lead.id.in_(lead_ids),
            Lead.agent_id == campaign.agent_id
        ).all()
        order = {lead_id: position for position, lead_id in enumerate(lead_ids)}
        return sorted(leads, key=lambda lead: order[lead.id])

    def _read_status(self, campaign_id: str) -> Optional[str]:
        return self.db.query(MessageCampaign.status).filter(MessageCampaign.id == campaign_id).scalar()

    def _save_progress(self, campaign_id: str, sent: int, failed: int) -> None:
        # Status is left alone so a concurrent pause/cancel is never overwritten
        self.db.query(MessageCampaign).filter(MessageCampaign.id == campaign_id).update(
            {"messages_sent": sent, "messages_failed": failed, "updated_at": self.clock()},
            synchronize_session=False
        )
        self.db.commit()

    def _finish(self, campaign_id: str, sent: int, failed: int, errors: List[Dict[str, Any]]) -> None:
        self.db.query(MessageCampaign).filter(
            MessageCampaign.id == campaign_id,
            MessageCampaign.status.in_((IN_PROGRESS, PAUSED))
        ).update({
            "status": COMPLETED,
            "messages_sent": sent,
            "messages_failed": failed,
            "error_details": {"errors": errors} if errors else None,
            "completed_at": self.clock()
        }, synchronize_session=False)
        self.db.commit()

    def _mark_failed(self, campaign_id: str, details: Dict[str, Any], only_from: Optional[tuple] = None) -> None:
        try:
            query = self.db.query(MessageCampaign).filter(MessageCampaign.id == campaign_id)
            if only_from:
                query = query.filter(MessageCampaign.status.in_(only_from))
            query.update({
                "status": FAILED,
                "error_details": details,
                "completed_at": self.clock()
            }, synchronize_session=False)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Could not mark campaign failed: {e}", extra={"campaign_id": campaign_id})
