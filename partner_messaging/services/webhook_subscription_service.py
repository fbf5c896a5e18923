"""
Webhook Subscription Service

Registers, lists and deletes per-app delivery callback subscriptions on the
gateway. When the callback URL changes, stale subscriptions are removed before
a replacement is created so events are not delivered twice.
"""
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List

from partner_messaging.core.config import Settings
from partner_messaging.core.exceptions import ConfigurationError, ExternalServiceError, PartnerMessagingError
from partner_messaging.core.http_client import HTTPClient, RetryPolicy, parse_json, raise_for_gateway_status
from partner_messaging.services.app_provisioning_service import AppProvisioningService

logger = logging.getLogger(__name__)

EVENT_MODES = ("MESSAGE", "ENQUEUED", "SENT", "DELIVERED", "READ", "FAILED", "DELETED", "OTHERS")
SUBSCRIPTION_VERSION = 3
ALL_MODES_MASK = 2047
WEBHOOK_RETRY_STATUSES = (502, 503, 504)
APP_ID_HEADER = "X-Partner-App-Id"


@dataclass
class WebhookSubscription:
    id: str
    app_id: str
    url: str
    event_modes: List[str] = field(default_factory=list)
    version: int = SUBSCRIPTION_VERSION
    tag: str = ""
    active: bool = True

    @classmethod
    def from_gateway(cls, app_id: str, data: Dict[str, Any]) -> "WebhookSubscription":
        modes = data.get("modes", [])
        if isinstance(modes, int):
            modes = ["ALL"] if modes >= ALL_MODES_MASK else [str(modes)]
        elif isinstance(modes, str):
            modes = [m.strip() for m in modes.split(",") if m.strip()]
        return cls(
            id=str(data.get("id", "")),
            app_id=str(data.get("appId") or app_id),
            url=data.get("url", ""),
            event_modes=list(modes),
            version=int(data.get("version") or 0),
            tag=data.get("tag", ""),
            active=bool(data.get("active", True))
        )

    def covers_all_modes(self) -> bool:
        return "ALL" in self.event_modes or set(EVENT_MODES).issubset(self.event_modes)

    def is_current_for(self, url: str) -> bool:
        return (
            self.url == url
            and self.active
            and self.version == SUBSCRIPTION_VERSION
            and self.covers_all_modes()
        )


def build_subscription_tag(app_id: str, now: float) -> str:
    """Tag unique per configuration attempt: app id, millisecond timestamp and a random suffix."""
    return f"{app_id}_{int(now * 1000)}_{uuid.uuid4().hex[:6]}".replace("-", "")


class WebhookSubscriptionService:
    """Per-app webhook subscription management."""

    def __init__(
        self,
        provisioner: AppProvisioningService,
        http_client: HTTPClient,
        settings: Settings,
        clock: Callable[[], float] = time.time
    ):
        self.provisioner = provisioner
        self.http = http_client
        self.settings = settings
        self.clock = clock
        self.base_url = settings.gupshup_partner_base_url.rstrip("/")
        self.retry_policy = RetryPolicy(
            max_attempts=3,
            base_delay=settings.webhook_retry_base_delay,
            retry_on_status=WEBHOOK_RETRY_STATUSES
        )

    async def configure(self, app_id: str, webhook_url: str) -> WebhookSubscription:
        """
        Create a subscription for every event mode at the latest version.

        Args:
            app_id: Gateway app id
            webhook_url: Callback URL owned by this system

        Returns:
            The created subscription

        Raises:
            ConfigurationError: If the gateway rejects the subscription or stays unavailable
        """
        if not webhook_url:
            raise ConfigurationError("Webhook URL is not configured", context={"app_id": app_id})

        tag = build_subscription_tag(app_id, self.clock())
        data = {
            "modes": ",".join(EVENT_MODES),
            "tag": tag,
            "url": webhook_url,
            "version": str(SUBSCRIPTION_VERSION),
            "showOnUI": "false",
            "meta": json.dumps({"headers": {APP_ID_HEADER: app_id}})
        }

        try:
            app_token = await self.provisioner.get_app_access_token(app_id)
            response = await self.http.post(
                f"{self.base_url}/app/{app_id}/subscription",
                data=data,
                headers={"Authorization": app_token, "Content-Type": "application/x-www-form-urlencoded"},
                retry_policy=self.retry_policy,
                operation="configure_webhook"
            )
            raise_for_gateway_status(response, "configure_webhook", {"app_id": app_id})
        except PartnerMessagingError as e:
            logger.error(
                f"Webhook configuration failed: {e.message}",
                extra={"app_id": app_id, "operation": "configure_webhook"}
            )
            raise ConfigurationError(
                f"Webhook configuration failed for app {app_id}: {e.message}",
                context={"app_id": app_id, "cause": e.code}
            )

        payload = parse_json(response) or {}
        subscription = WebhookSubscription.from_gateway(app_id, payload.get("subscription") or {})
        if not subscription.id:
            raise ConfigurationError(
                "Webhook configuration response did not include a subscription id",
                context={"app_id": app_id}
            )
        if not subscription.url:
            subscription.url = webhook_url
        if not subscription.tag:
            subscription.tag = tag

        logger.info(
            f"Webhook subscription {subscription.id} configured",
            extra={"app_id": app_id, "operation": "configure_webhook"}
        )
        return subscription

    async def list_subscriptions(self, app_id: str) -> List[WebhookSubscription]:
        app_token = await self.provisioner.get_app_access_token(app_id)
        response = await self.http.get(
            f"{self.base_url}/app/{app_id}/subscription",
            headers={"Authorization": app_token},
            operation="list_webhooks"
        )
        raise_for_gateway_status(response, "list_webhooks", {"app_id": app_id})
        payload = parse_json(response) or {}
        return [WebhookSubscription.from_gateway(app_id, item) for item in payload.get("subscriptions", [])]

    async def delete_subscription(self, app_id: str, subscription_id: str) -> None:
        app_token = await self.provisioner.get_app_access_token(app_id)
        response = await self.http.delete(
            f"{self.base_url}/app/{app_id}/subscription/{subscription_id}",
            headers={"Authorization": app_token},
            operation="delete_webhook"
        )
        try:
            raise_for_gateway_status(response, "delete_webhook", {"app_id": app_id})
        except ExternalServiceError as e:
            if e.http_status != 404:
                raise
            logger.info(f"Subscription {subscription_id} already removed", extra={"app_id": app_id})
            return
        logger.info(f"Deleted webhook subscription {subscription_id}", extra={"app_id": app_id})

    async def ensure(self, app_id: str, webhook_url: str) -> WebhookSubscription:
        """
        Converge an app onto exactly one current subscription for webhook_url.

        Subscriptions for other URLs, older versions or partial mode sets are
        deleted before anything new is created.
        """
        existing = await self.list_subscriptions(app_id)
        current = [s for s in existing if s.is_current_for(webhook_url)]
        keep = current[0] if current else None

        for subscription in existing:
            if keep is not None and subscription.id == keep.id:
                continue
            logger.info(
                f"Removing stale subscription {subscription.id} ({subscription.url}, v{subscription.version})",
                extra={"app_id": app_id, "operation": "ensure_webhook"}
            )
            await self.delete_subscription(app_id, subscription.id)

        if keep is not None:
            return keep
        return await self.configure(app_id, webhook_url)
