"""
Partner API

Gateway app provisioning, agent onboarding and webhook subscription
management under the shared partner account.
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Path, status
from pydantic import BaseModel, Field

from partner_messaging.api.dependencies import get_partner_services
from partner_messaging.core.exceptions import ConfigurationError
from partner_messaging.core.service_factory import PartnerServices

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/partner", tags=["Partner"])


class CreateAppRequest(BaseModel):
    name: str = Field(..., description="3-50 letters, digits, '_' or '-'")
    template_messaging: bool = Field(True, description="Allow template messages")


class TenantAppResponse(BaseModel):
    app_id: str
    name: str
    phone_number: Optional[str] = None
    template_messaging_enabled: bool = True
    live_status: bool = False
    healthy_status: bool = False


class RegisterPhoneRequest(BaseModel):
    phone_number: str = Field(..., description="WhatsApp Business number")


class OnboardAgentRequest(BaseModel):
    """Request to provision an agent's WhatsApp integration"""
    app_name: Optional[str] = Field(None, description="Gateway app name; derived from the agent when omitted")
    phone_number: Optional[str] = Field(None, description="Number to register")
    webhook_url: Optional[str] = Field(None, description="Callback URL; defaults to the configured one")


class WebhookRequest(BaseModel):
    webhook_url: Optional[str] = Field(None, description="Callback URL; defaults to the configured one")


class WebhookSubscriptionResponse(BaseModel):
    id: str
    app_id: str
    url: str
    event_modes: List[str]
    version: int
    tag: str
    active: bool


def _app_response(app) -> TenantAppResponse:
    return TenantAppResponse(
        app_id=app.app_id,
        name=app.name,
        phone_number=app.phone_number,
        template_messaging_enabled=app.template_messaging_enabled,
        live_status=app.live_status,
        healthy_status=app.healthy_status
    )


def _subscription_response(subscription) -> WebhookSubscriptionResponse:
    return WebhookSubscriptionResponse(
        id=subscription.id,
        app_id=subscription.app_id,
        url=subscription.url,
        event_modes=subscription.event_modes,
        version=subscription.version,
        tag=subscription.tag,
        active=subscription.active
    )


@router.post("/apps", response_model=TenantAppResponse, status_code=status.HTTP_201_CREATED)
async def create_app(
    request: CreateAppRequest,
    services: PartnerServices = Depends(get_partner_services)
):
    """Create a gateway app under the partner account"""
    app = await services.provisioner.create_app(request.name, request.template_messaging)
    return _app_response(app)


@router.get("/apps", response_model=List[TenantAppResponse])
async def list_apps(services: PartnerServices = Depends(get_partner_services)):
    """List all apps under the partner account"""
    return [_app_response(app) for app in await services.provisioner.list_apps()]


@router.post("/apps/{app_id}/phone")
async def register_phone(
    request: RegisterPhoneRequest,
    app_id: str = Path(..., description="Gateway app ID"),
    services: PartnerServices = Depends(get_partner_services)
) -> Dict[str, Any]:
    """Attach a phone number to an app"""
    await services.provisioner.register_phone(app_id, request.phone_number)
    return {"success": True, "app_id": app_id}


@router.post("/apps/{app_id}/webhook", response_model=WebhookSubscriptionResponse)
async def configure_webhook(
    request: WebhookRequest,
    app_id: str = Path(..., description="Gateway app ID"),
    services: PartnerServices = Depends(get_partner_services)
):
    """Converge the app onto one subscription for the callback URL, removing stale ones"""
    url = request.webhook_url or services.webhooks.settings.get_webhook_url()
    if not url:
        raise ConfigurationError("No webhook URL supplied or configured", context={"app_id": app_id})
    return _subscription_response(await services.webhooks.ensure(app_id, url))


@router.get("/apps/{app_id}/webhooks", response_model=List[WebhookSubscriptionResponse])
async def list_webhooks(
    app_id: str = Path(..., description="Gateway app ID"),
    services: PartnerServices = Depends(get_partner_services)
):
    """List the app's webhook subscriptions"""
    return [_subscription_response(s) for s in await services.webhooks.list_subscriptions(app_id)]


@router.delete("/apps/{app_id}/webhooks/{subscription_id}")
async def delete_webhook(
    app_id: str = Path(..., description="Gateway app ID"),
    subscription_id: str = Path(..., description="Subscription ID"),
    services: PartnerServices = Depends(get_partner_services)
) -> Dict[str, Any]:
    """Delete one webhook subscription"""
    await services.webhooks.delete_subscription(app_id, subscription_id)
    return {"success": True, "subscription_id": subscription_id}


@router.post("/agents/{agent_id}/onboard")
async def onboard_agent(
    request: OnboardAgentRequest,
    agent_id: str = Path(..., description="Agent ID"),
    services: PartnerServices = Depends(get_partner_services)
) -> Dict[str, Any]:
    """
    Provision an agent's WhatsApp integration

    Creates (or adopts) the gateway app, then registers the phone, configures
    the webhook and submits the welcome template. Later steps report their own
    errors without undoing earlier ones.
    """
    result = await services.onboarding.onboard(
        agent_id,
        app_name=request.app_name,
        phone_number=request.phone_number,
        webhook_url=request.webhook_url
    )
    return result.to_dict()


@router.get("/agents/{agent_id}/validate")
async def validate_agent(
    agent_id: str = Path(..., description="Agent ID"),
    services: PartnerServices = Depends(get_partner_services)
) -> Dict[str, Any]:
    """Check the agent's integration against the gateway"""
    return await services.onboarding.validate_agent_setup(agent_id)
