"""
Agent WhatsApp onboarding

Brings an agent from nothing to a working WhatsApp Business integration:
gateway app, phone number, delivery webhook and a default welcome template.
App creation is required; the later steps are attempted independently and
reported so a partial setup can be completed later.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from partner_messaging.core.cache import utc_now
from partner_messaging.core.config import Settings
from partner_messaging.core.exceptions import ConflictError, PartnerMessagingError
from partner_messaging.db.models import Agent, WabaTemplate
from partner_messaging.services.app_provisioning_service import AppProvisioningService, TenantApp, APP_NAME_MAX_LENGTH
from partner_messaging.services.template_service import TemplateService, WELCOME_TEMPLATE
from partner_messaging.services.webhook_subscription_service import WebhookSubscription, WebhookSubscriptionService

logger = logging.getLogger(__name__)


@dataclass
class OnboardingResult:
    agent_id: str
    app_id: Optional[str] = None
    steps: Dict[str, str] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.app_id is not None and not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "app_id": self.app_id,
            "success": self.success,
            "steps": self.steps,
            "errors": self.errors
        }


def derive_app_name(agent: Agent) -> str:
    """Gateway-safe app name built from the agent's name and id."""
    base = re.sub(r"[^a-zA-Z0-9_-]+", "_", (agent.full_name or "agent").strip()).strip("_") or "agent"
    suffix = re.sub(r"[^a-zA-Z0-9]", "", agent.id)[:8]
    return f"{base[:APP_NAME_MAX_LENGTH - len(suffix) - 1]}_{suffix}"


def record_webhook_subscription(db: Session, agent: Agent, subscription: WebhookSubscription) -> None:
    try:
        agent.webhook_subscription_id = subscription.id
        agent.webhook_url = subscription.url
        agent.webhook_configured_at = utc_now()
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to record webhook subscription: {e}", extra={"agent_id": agent.id})
        raise


class OnboardingService:
    """Composes provisioning, webhook and template steps for one agent."""

    def __init__(
        self,
        db: Session,
        provisioner: AppProvisioningService,
        webhooks: WebhookSubscriptionService,
        templates: TemplateService,
        settings: Settings
    ):
        self.db = db
        self.provisioner = provisioner
        self.webhooks = webhooks
        self.templates = templates
        self.settings = settings

    async def onboard(
        self,
        agent_id: str,
        app_name: Optional[str] = None,
        phone_number: Optional[str] = None,
        webhook_url: Optional[str] = None
    ) -> OnboardingResult:
        """
        Provision (or adopt) the agent's gateway app and finish its setup.

        Args:
            agent_id: Agent to onboard
            app_name: Gateway app name; derived from the agent when omitted
            phone_number: WhatsApp number to register
            webhook_url: Callback URL; defaults to the configured webhook URL

        Returns:
            OnboardingResult describing each step

        Raises:
            NotFoundError: If the agent does not exist
            PartnerMessagingError: If no app could be created or adopted
        """
        agent = self.provisioner.get_agent(agent_id)
        result = OnboardingResult(agent_id=agent_id)

        if agent.gupshup_app_id:
            result.app_id = agent.gupshup_app_id
            result.steps["app"] = "existing"
        else:
            app = await self._create_or_adopt_app(app_name or derive_app_name(agent), result)
            self.provisioner.attach_app_to_agent(agent_id, app)
            result.app_id = app.app_id

        if phone_number:
            try:
                await self.provisioner.register_phone(result.app_id, phone_number)
                agent.waba_phone_number = phone_number
                self.db.commit()
                result.steps["phone"] = "registered"
            except PartnerMessagingError as e:
                result.errors["phone"] = e.message

        url = webhook_url or self.settings.get_webhook_url()
        if url:
            try:
                subscription = await self.webhooks.ensure(result.app_id, url)
                record_webhook_subscription(self.db, agent, subscription)
                result.steps["webhook"] = "configured"
            except PartnerMessagingError as e:
                result.errors["webhook"] = e.message
        else:
            result.steps["webhook"] = "skipped"

        has_welcome = self.db.query(WabaTemplate).filter(
            WabaTemplate.agent_id == agent_id,
            WabaTemplate.name == WELCOME_TEMPLATE.name
        ).first()
        if has_welcome:
            result.steps["welcome_template"] = "existing"
        else:
            try:
                await self.templates.create(agent_id, WELCOME_TEMPLATE)
                result.steps["welcome_template"] = "submitted"
            except PartnerMessagingError as e:
                result.errors["welcome_template"] = e.message

        agent.waba_status = "active" if not result.errors else "app_created"
        self.db.commit()

        logger.info(
            f"Onboarding finished with {len(result.errors)} error(s)",
            extra={"agent_id": agent_id, "app_id": result.app_id, "operation": "onboard_agent"}
        )
        return result

    async def _create_or_adopt_app(self, name: str, result: OnboardingResult) -> TenantApp:
        try:
            app = await self.provisioner.create_app(name)
            result.steps["app"] = "created"
            return app
        except ConflictError:
            existing = await self.provisioner.find_app_by_name(name)
            if existing is None:
                raise
            logger.info(f"Adopting existing gateway app '{name}'", extra={"app_id": existing.app_id})
            result.steps["app"] = "adopted"
            return existing

    async def validate_agent_setup(self, agent_id: str) -> Dict[str, Any]:
        """
        Check the agent's integration against the gateway's view of its app.

        Returns:
            Dict of individual checks plus an overall 'valid' flag
        """
        agent = self.provisioner.get_agent(agent_id)
        checks = {
            "app_configured": bool(agent.gupshup_app_id),
            "app_found": False,
            "app_live": False,
            "app_healthy": False,
            "phone_registered": bool(agent.waba_phone_number),
            "webhook_configured": bool(agent.webhook_subscription_id)
        }

        if agent.gupshup_app_id:
            apps = {app.app_id: app for app in await self.provisioner.list_apps()}
            app = apps.get(agent.gupshup_app_id)
            if app:
                checks["app_found"] = True
                checks["app_live"] = app.live_status
                checks["app_healthy"] = app.healthy_status
                checks["phone_registered"] = checks["phone_registered"] or bool(app.phone_number)
                agent.app_live = app.live_status
                agent.app_healthy = app.healthy_status
                self.db.commit()

        required = ("app_configured", "app_found", "phone_registered", "webhook_configured")
        return {
            "agent_id": agent_id,
            "app_id": agent.gupshup_app_id,
            "valid": all(checks[name] for name in required),
            "checks": checks
        }

    async def configure_webhooks_for_all_agents(self, webhook_url: str) -> Dict[str, Any]:
        """
        Point every provisioned agent's app at webhook_url.

        Stale subscriptions are removed per app; one agent failing does not
        stop the others.

        Returns:
            Counts of configured, unchanged and failed agents with per-agent errors
        """
        summary: Dict[str, Any] = {"configured": 0, "unchanged": 0, "failed": 0, "errors": []}
        agents = self.db.query(Agent).filter(Agent.gupshup_app_id.isnot(None)).all()
        logger.info(f"Configuring webhooks for {len(agents)} agent(s)")

        for agent in agents:
            previous = agent.webhook_subscription_id
            try:
                subscription = await self.webhooks.ensure(agent.gupshup_app_id, webhook_url)
                record_webhook_subscription(self.db, agent, subscription)
            except PartnerMessagingError as e:
                summary["failed"] += 1
                summary["errors"].append({"agent_id": agent.id, "error": e.message})
                logger.error(
                    f"Webhook configuration failed: {e.message}",
                    extra={"agent_id": agent.id, "app_id": agent.gupshup_app_id, "operation": "configure_webhook"}
                )
                continue

            if subscription.id == previous:
                summary["unchanged"] += 1
            else:
                summary["configured"] += 1

        return summary
