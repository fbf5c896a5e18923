"""
Service Factory for Dependency Injection

Builds the partner messaging service graph explicitly. Process-wide resources
(settings, credential vault, HTTP client, partner token cache, notification
publisher) are created once per factory; services that need a database
session are built per session. Dependencies point strictly downward:

    CredentialVault, TTLCache
      -> PartnerAuthService
        -> AppProvisioningService
          -> WebhookSubscriptionService, TemplateService, MessageDispatchService
            -> CampaignService, OnboardingService
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy.orm import Session

from partner_messaging.core.cache import TTLCache
from partner_messaging.core.config import Settings, get_settings
from partner_messaging.core.encryption import CredentialVault
from partner_messaging.core.http_client import HTTPClient, HTTPClientConfig
from partner_messaging.services.app_provisioning_service import AppProvisioningService
from partner_messaging.services.campaign_service import CampaignService
from partner_messaging.services.message_dispatch_service import MessageDispatchService
from partner_messaging.services.notification_service import NotificationService
from partner_messaging.services.onboarding_service import OnboardingService
from partner_messaging.services.partner_auth_service import PartnerAuthService
from partner_messaging.services.template_service import TemplateService
from partner_messaging.services.webhook_subscription_service import WebhookSubscriptionService

logger = logging.getLogger(__name__)


@dataclass
class PartnerServices:
    """Services bound to one database session."""
    auth: PartnerAuthService
    provisioner: AppProvisioningService
    webhooks: WebhookSubscriptionService
    templates: TemplateService
    dispatcher: MessageDispatchService
    campaigns: CampaignService
    onboarding: OnboardingService


class ServiceFactory:
    """
    Factory for creating partner messaging services.

    Any collaborator can be replaced at construction time (tests pass a fake
    HTTP transport, fakeredis notifier or no-op sleep).
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[HTTPClient] = None,
        notifier: Optional[NotificationService] = None,
        vault: Optional[CredentialVault] = None,
        token_cache: Optional[TTLCache] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        """
        Args:
            settings: Application settings (defaults to get_settings())
            http_client: Shared gateway HTTP client
            notifier: Campaign event publisher
            vault: Credential vault for stored partner tokens
            token_cache: Process-wide partner token cache
            sleep: Awaitable sleep used for pacing and polling

        Raises:
            ConfigurationError: If the encryption key or partner credentials are missing
        """
        self.settings = settings or get_settings()
        self.settings.require_partner_secrets()

        self.vault = vault or CredentialVault(self.settings.token_encryption_key)
        self.http_client = http_client or HTTPClient(HTTPClientConfig.from_settings(self.settings))
        self.notifier = notifier or NotificationService(redis_url=self.settings.redis_url)
        self.token_cache = token_cache or TTLCache()
        self.sleep = sleep
        self._overrides: Dict[str, Any] = {}

    def override(self, service_name: str, instance: Any):
        """Override a per-session service (useful for testing)."""
        self._overrides[service_name] = instance
        logger.debug("Overrode service '{}'".format(service_name))

    def reset(self, service_name: Optional[str] = None):
        if service_name:
            self._overrides.pop(service_name, None)
        else:
            self._overrides.clear()

    def build(self, db: Session) -> PartnerServices:
        """Wire every service against one session."""
        o = self._overrides
        settings = self.settings

        auth = o.get("auth") or PartnerAuthService(
            db, self.vault, self.http_client, settings, cache=self.token_cache
        )
        provisioner = o.get("provisioner") or AppProvisioningService(db, auth, self.http_client)
        webhooks = o.get("webhooks") or WebhookSubscriptionService(provisioner, self.http_client, settings)
        templates = o.get("templates") or TemplateService(
            db, provisioner, self.http_client, settings, sleep=self.sleep
        )
        dispatcher = o.get("dispatcher") or MessageDispatchService(db, provisioner, self.http_client, settings)
        campaigns = o.get("campaigns") or CampaignService(
            db, dispatcher, self.notifier, settings, sleep=self.sleep
        )
        onboarding = o.get("onboarding") or OnboardingService(db, provisioner, webhooks, templates, settings)

        return PartnerServices(
            auth=auth,
            provisioner=provisioner,
            webhooks=webhooks,
            templates=templates,
            dispatcher=dispatcher,
            campaigns=campaigns,
            onboarding=onboarding
        )

    async def close(self):
        """Release the HTTP pool and notification connection."""
        await self.http_client.close()
        try:
            await self.notifier.close()
        except Exception as e:
            logger.warning("Failed to close notifier: {}".format(e))


_factory: Optional[ServiceFactory] = None


def get_factory() -> ServiceFactory:
    """Get the process-wide service factory, creating it on first use."""
    global _factory
    if _factory is None:
        _factory = ServiceFactory()
    return _factory


def set_factory(factory: Optional[ServiceFactory]):
    """Install a factory (or clear it with None)."""
    global _factory
    _factory = factory
