"""
Messaging API

Template management, single sends, bulk campaigns and campaign controls for
one agent. Gateway and validation failures are raised as partner messaging
errors and rendered by the application's exception handlers.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, Path, Query, status
from pydantic import BaseModel, ConfigDict, Field

from partner_messaging.core.exceptions import QueueUnavailableError
from partner_messaging.core.service_factory import PartnerServices
from partner_messaging.api.dependencies import get_partner_services
from partner_messaging.services.campaign_service import progress_percent
from partner_messaging.services.template_service import TemplateDefinition
from partner_messaging.tasks.campaign_tasks import run_bulk_campaign

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/agents/{agent_id}", tags=["Messaging"])

TemplateParamsField = Optional[Union[List[str], Dict[str, str]]]


# Request/Response Models

class TemplateCreateRequest(BaseModel):
    """Request to submit a template for approval"""
    name: str = Field(..., description="Lowercase letters, digits and underscores")
    category: str = Field(..., description="MARKETING, UTILITY or AUTHENTICATION")
    content: str = Field(..., description="Body text with {{1}}-style placeholders")
    params: List[str] = Field(default_factory=list, description="Declared parameter names, in placeholder order")
    language_code: str = Field("en", description="Template language")


class TemplateResponse(BaseModel):
    """Template details response"""
    model_config = ConfigDict(from_attributes=True)

    id: str
    agent_id: str
    name: str
    category: str
    content: str
    params: List[str]
    language_code: str
    status: str
    gateway_template_id: Optional[str]
    submitted_at: Optional[datetime]
    approved_at: Optional[datetime]
    rejected_at: Optional[datetime]
    rejection_reason: Optional[str]
    created_at: Optional[datetime]


class SendMessageRequest(BaseModel):
    """Request to send one template message"""
    phone_number: str = Field(..., description="Recipient number")
    template_id: str = Field(..., description="Local or gateway template id")
    template_name: Optional[str] = Field(None, description="Template name; looked up when omitted")
    params: TemplateParamsField = Field(None, description="Template parameters; filled from the lead when empty")
    lead_id: Optional[str] = Field(None, description="Recipient lead")


class SendMessageResponse(BaseModel):
    success: bool = True
    message_id: str
    status: str
    phone_number: str
    protocol_version: str


class BulkSendRequest(BaseModel):
    """Request to send one template to many leads"""
    lead_ids: List[str] = Field(..., min_length=1, description="Recipients, in send order")
    template_id: str = Field(..., description="Local or gateway template id")
    template_name: str = Field(..., description="Template name")
    params: TemplateParamsField = Field(None, description="Shared parameters; filled per lead when empty")
    name: Optional[str] = Field(None, description="Campaign display name")


class CampaignResponse(BaseModel):
    """Campaign status and progress"""
    model_config = ConfigDict(from_attributes=True)

    id: str
    agent_id: str
    name: Optional[str]
    template_id: str
    template_name: str
    status: str
    total_recipients: int
    messages_sent: int
    messages_failed: int
    progress: int = 0
    error_details: Optional[Dict[str, Any]]
    created_at: Optional[datetime]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]


def _campaign_response(campaign) -> CampaignResponse:
    response = CampaignResponse.model_validate(campaign)
    response.progress = progress_percent(
        campaign.messages_sent or 0, campaign.messages_failed or 0, campaign.total_recipients or 0
    )
    return response


# Templates

@router.post("/templates", response_model=TemplateResponse, status_code=status.HTTP_201_CREATED)
async def create_template(
    request: TemplateCreateRequest,
    agent_id: str = Path(..., description="Agent ID"),
    services: PartnerServices = Depends(get_partner_services)
):
    """
    Create a template and submit it for WhatsApp approval

    Validation happens before anything is sent to the gateway. If submission
    fails the template is kept as pending.
    """
    template = await services.templates.create(agent_id, TemplateDefinition(
        name=request.name,
        category=request.category,
        content=request.content,
        params=request.params,
        language_code=request.language_code
    ))
    return template


@router.get("/templates", response_model=List[TemplateResponse])
async def list_templates(
    agent_id: str = Path(..., description="Agent ID"),
    status_filter: Optional[str] = Query(None, alias="status", description="pending, submitted, approved or rejected"),
    services: PartnerServices = Depends(get_partner_services)
):
    """List the agent's templates"""
    return services.templates.list_templates(agent_id, status_filter)


@router.get("/templates/live")
async def list_live_templates(
    agent_id: str = Path(..., description="Agent ID"),
    services: PartnerServices = Depends(get_partner_services)
) -> Dict[str, Any]:
    """Templates as currently reported by the gateway"""
    templates = await services.templates.list_live_templates(agent_id)
    return {"templates": templates, "count": len(templates)}


# Sending

@router.post("/messages/send", response_model=SendMessageResponse)
async def send_message(
    request: SendMessageRequest,
    agent_id: str = Path(..., description="Agent ID"),
    services: PartnerServices = Depends(get_partner_services)
):
    """Send one template message"""
    result = await services.dispatcher.send(
        agent_id=agent_id,
        recipient_phone=request.phone_number,
        template_id=request.template_id,
        template_name=request.template_name,
        params=request.params,
        lead_id=request.lead_id
    )
    return SendMessageResponse(
        message_id=result.message_id,
        status=result.status,
        phone_number=result.phone_number,
        protocol_version=result.protocol_version
    )


@router.post("/messages/send-bulk", status_code=status.HTTP_202_ACCEPTED)
async def send_bulk(
    request: BulkSendRequest,
    agent_id: str = Path(..., description="Agent ID"),
    services: PartnerServices = Depends(get_partner_services)
) -> Dict[str, Any]:
    """
    Queue a bulk campaign

    Returns immediately; progress is pushed to the agent's notification
    channel and can be polled from the campaign endpoints.
    """
    campaign = services.campaigns.create_campaign(
        agent_id=agent_id,
        template_id=request.template_id,
        template_name=request.template_name,
        lead_ids=request.lead_ids,
        params=request.params,
        name=request.name
    )
    try:
        run_bulk_campaign.delay(campaign.id)
    except Exception as e:
        services.campaigns.fail_unqueued(campaign.id, str(e))
        raise QueueUnavailableError(
            "Campaign task could not be queued",
            context={"agent_id": agent_id, "campaign_id": campaign.id}
        ) from e
    logger.info("Campaign queued for execution", extra={"agent_id": agent_id, "campaign_id": campaign.id})
    return {
        "success": True,
        "campaign_id": campaign.id,
        "status": campaign.status,
        "total_recipients": campaign.total_recipients
    }


# Campaigns

@router.get("/campaigns", response_model=List[CampaignResponse])
async def list_campaigns(
    agent_id: str = Path(..., description="Agent ID"),
    status_filter: Optional[str] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    services: PartnerServices = Depends(get_partner_services)
):
    """List the agent's campaigns, newest first"""
    return [_campaign_response(c) for c in services.campaigns.list_campaigns(agent_id, status_filter, limit)]


@router.get("/campaigns/{campaign_id}", response_model=CampaignResponse)
async def get_campaign(
    agent_id: str = Path(..., description="Agent ID"),
    campaign_id: str = Path(..., description="Campaign ID"),
    services: PartnerServices = Depends(get_partner_services)
):
    """Campaign status and progress"""
    return _campaign_response(services.campaigns.get_campaign(agent_id, campaign_id))


@router.post("/campaigns/{campaign_id}/pause", response_model=CampaignResponse)
async def pause_campaign(
    agent_id: str = Path(..., description="Agent ID"),
    campaign_id: str = Path(..., description="Campaign ID"),
    services: PartnerServices = Depends(get_partner_services)
):
    """Pause a running campaign before its next recipient"""
    return _campaign_response(services.campaigns.pause(agent_id, campaign_id))


@router.post("/campaigns/{campaign_id}/resume", response_model=CampaignResponse)
async def resume_campaign(
    agent_id: str = Path(..., description="Agent ID"),
    campaign_id: str = Path(..., description="Campaign ID"),
    services: PartnerServices = Depends(get_partner_services)
):
    """Resume a paused campaign"""
    return _campaign_response(services.campaigns.resume(agent_id, campaign_id))


@router.post("/campaigns/{campaign_id}/cancel", response_model=CampaignResponse)
async def cancel_campaign(
    agent_id: str = Path(..., description="Agent ID"),
    campaign_id: str = Path(..., description="Campaign ID"),
    services: PartnerServices = Depends(get_partner_services)
):
    """Cancel a queued, running or paused campaign; messages already sent stand"""
    return _campaign_response(services.campaigns.cancel(agent_id, campaign_id))
