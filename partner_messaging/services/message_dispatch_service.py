"""
Message Dispatch Service - single WhatsApp template sends

Sends one template message through the gateway's v3 (Cloud API format)
endpoint. Apps that have not enabled callback billing reject v3 sends; those
are retried once on the legacy v2 template endpoint with positional
parameters. Every attempt, successful or not, leaves exactly one message log
row.
"""
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from partner_messaging.core.config import Settings
from partner_messaging.core.exceptions import ExternalServiceError, NotFoundError, PartnerMessagingError, ValidationError
from partner_messaging.core.http_client import HTTPClient, parse_json, raise_for_gateway_status
from partner_messaging.db.models import Agent, Lead, MessageLog, WabaTemplate
from partner_messaging.services.app_provisioning_service import AppProvisioningService
from partner_messaging.services.template_service import lookup_template

logger = logging.getLogger(__name__)

CALLBACK_BILLING_MARKER = "callback billing"

# Declared template parameter name -> Lead attribute
LEAD_FIELD_ALIASES = {
    "name": "full_name",
    "full_name": "full_name",
    "lead_name": "full_name",
    "inquiry_type": "intent",
    "intent": "intent",
    "budget": "budget",
    "location": "location",
    "phone": "phone_number",
    "phone_number": "phone_number",
}
LEAD_FIELD_FALLBACKS = {
    "full_name": "there",
    "intent": "your enquiry",
}

TemplateParams = Union[List[Any], Dict[str, Any], None]


@dataclass
class DispatchResult:
    message_id: str
    status: str
    phone_number: str
    protocol_version: str
    log_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "status": self.status,
            "phone_number": self.phone_number,
            "protocol_version": self.protocol_version,
            "log_id": self.log_id
        }


def format_phone_number(phone: str, default_country_code: str = "65", local_length: int = 8) -> str:
    """
    Normalize a phone number to digits-only international form.

    A bare local number (exactly local_length digits, not already starting
    with the country code) gets the default country code prefixed. Applying
    the function twice gives the same result.

    Raises:
        ValidationError: If no digits remain
    """
    digits = re.sub(r"\D", "", phone or "")
    if not digits:
        raise ValidationError("Recipient phone number is required")
    if len(digits) == local_length and not digits.startswith(default_country_code):
        digits = default_country_code + digits
    return digits


def positional_params(params: TemplateParams) -> List[str]:
    """Order parameters as {{1}}, {{2}}, ... regardless of how they were supplied."""
    if not params:
        return []
    if isinstance(params, dict):
        keys = list(params.keys())
        if all(str(key).isdigit() for key in keys):
            keys.sort(key=lambda key: int(key))
        return [str(params[key]) for key in keys]
    return [str(value) for value in params]


def is_callback_billing_error(error: ExternalServiceError) -> bool:
    haystack = error.message
    if error.payload is not None:
        haystack += " " + json.dumps(error.payload, default=str)
    return CALLBACK_BILLING_MARKER in haystack.lower()


def lead_param_value(lead: Lead, param_name: str) -> str:
    attribute = LEAD_FIELD_ALIASES.get(str(param_name).lower())
    value = getattr(lead, attribute, None) if attribute else None
    if value:
        return str(value)
    return LEAD_FIELD_FALLBACKS.get(attribute, "")


def params_from_lead(lead: Lead, template: Optional[WabaTemplate]) -> List[str]:
    """Fill the template's declared params from lead fields; just the name when none are declared."""
    param_names = (template.params if template and template.params else None) or ["name"]
    return [lead_param_value(lead, name) for name in param_names]


class MessageDispatchService:
    """Sends template messages and records every attempt."""

    def __init__(
        self,
        db: Session,
        provisioner: AppProvisioningService,
        http_client: HTTPClient,
        settings: Settings
    ):
        self.db = db
        self.provisioner = provisioner
        self.http = http_client
        self.settings = settings
        self.base_url = settings.gupshup_partner_base_url.rstrip("/")

    async def send(
        self,
        agent_id: str,
        recipient_phone: str,
        template_id: Optional[str],
        template_name: Optional[str] = None,
        params: TemplateParams = None,
        lead_id: Optional[str] = None,
        campaign_id: Optional[str] = None
    ) -> DispatchResult:
        """
        Send one template message.

        Args:
            agent_id: Sending agent
            recipient_phone: Recipient number in any common format
            template_id: Local or gateway template id
            template_name: Template name (looked up when omitted)
            params: Positional list or {"1": ..., "2": ...}; filled from the lead when empty
            lead_id: Recipient lead, used for logging and parameter auto-fill
            campaign_id: Owning campaign, if any

        Returns:
            DispatchResult for the accepted message

        Raises:
            NotFoundError: If the agent or lead does not exist
            ValidationError: If the recipient or template cannot be resolved
            PartnerMessagingError: If the gateway send fails after retries
        """
        agent = self.provisioner.get_agent(agent_id)
        template = lookup_template(self.db, agent_id, template_id, template_name)
        name = template_name or (template.name if template else None)
        lead = self._find_lead(agent_id, lead_id)
        logged_lead_id = lead.id if lead else None
        values: List[str] = []
        phone = recipient_phone

        try:
            app_id = self.provisioner.resolve_agent_app_id(agent_id)
            if not name:
                raise ValidationError("Template name is required", context={"agent_id": agent_id})

            values = positional_params(params)
            if not values and lead_id:
                if not lead:
                    raise NotFoundError(f"Lead {lead_id} not found", context={"agent_id": agent_id})
                values = params_from_lead(lead, template)

            phone = format_phone_number(
                recipient_phone,
                self.settings.default_country_code,
                self.settings.local_number_length
            )
            language = template.language_code if template else self.settings.template_default_language
            app_token = await self.provisioner.get_app_access_token(app_id)

            try:
                message_id = await self._send_v3(app_id, app_token, phone, name, language, values)
                version = "v3"
            except ExternalServiceError as e:
                if not is_callback_billing_error(e):
                    raise
                logger.warning(
                    "Callback billing not enabled, falling back to v2 template send",
                    extra={"agent_id": agent_id, "app_id": app_id, "operation": "send_message"}
                )
                gateway_template_id = (template.gateway_template_id if template else None) or template_id
                message_id = await self._send_v2(app_id, app_token, agent, phone, gateway_template_id, values)
                version = "v2"

        except Exception as e:
            error_message = e.message if isinstance(e, PartnerMessagingError) else str(e)
            logger.error(
                f"Template send failed: {error_message}",
                extra={"agent_id": agent_id, "campaign_id": campaign_id, "operation": "send_message"}
            )
            try:
                self._record_attempt(
                    agent_id, logged_lead_id, campaign_id, template_id, name, values, phone,
                    status="failed", error_message=error_message
                )
            except SQLAlchemyError:
                # Logged by _record_attempt
                pass
            raise

        log = self._record_attempt(
            agent_id, logged_lead_id, campaign_id, template_id, name, values, phone,
            status="sent", message_id=message_id, protocol_version=version
        )
        logger.info(
            f"Template '{name}' sent via {version}",
            extra={"agent_id": agent_id, "app_id": app_id, "campaign_id": campaign_id, "operation": "send_message"}
        )
        return DispatchResult(
            message_id=message_id,
            status="sent",
            phone_number=phone,
            protocol_version=version,
            log_id=log.id
        )

    async def _send_v3(
        self,
        app_id: str,
        app_token: str,
        phone: str,
        template_name: str,
        language: str,
        values: List[str]
    ) -> str:
        template_body: Dict[str, Any] = {
            "name": template_name,
            "language": {"code": language}
        }
        if values:
            template_body["components"] = [{
                "type": "body",
                "parameters": [{"type": "text", "text": value} for value in values]
            }]

        response = await self.http.post(
            f"{self.base_url}/app/{app_id}/v3/message",
            json={
                "messaging_product": "whatsapp",
                "recipient_type": "individual",
                "to": phone,
                "type": "template",
                "template": template_body
            },
            headers={"Authorization": app_token},
            operation="send_message_v3"
        )
        raise_for_gateway_status(response, "send_message_v3", {"app_id": app_id})

        payload = parse_json(response) or {}
        messages = payload.get("messages") or []
        message_id = messages[0].get("id") if messages else None
        if not message_id:
            raise ExternalServiceError(
                "v3 send response did not include a message id",
                context={"app_id": app_id},
                payload=payload
            )
        return message_id

    async def _send_v2(
        self,
        app_id: str,
        app_token: str,
        agent: Agent,
        phone: str,
        gateway_template_id: Optional[str],
        values: List[str]
    ) -> str:
        if not gateway_template_id:
            raise ValidationError("Legacy send requires a gateway template id", context={"app_id": app_id})

        source = re.sub(r"\D", "", agent.waba_phone_number or "")
        response = await self.http.post(
            f"{self.base_url}/app/{app_id}/template/msg",
            data={
                "source": source,
                "destination": phone,
                "template": json.dumps({"id": gateway_template_id, "params": values})
            },
            headers={"Authorization": app_token, "Content-Type": "application/x-www-form-urlencoded"},
            operation="send_message_v2"
        )
        raise_for_gateway_status(response, "send_message_v2", {"app_id": app_id})

        payload = parse_json(response) or {}
        message_id = payload.get("messageId")
        if not message_id:
            raise ExternalServiceError(
                "v2 send response did not include a message id",
                context={"app_id": app_id},
                payload=payload
            )
        return message_id

    def _find_lead(self, agent_id: str, lead_id: Optional[str]) -> Optional[Lead]:
        if not lead_id:
            return None
        return self.db.query(Lead).filter(Lead.id == lead_id, Lead.agent_id == agent_id).first()

    def _record_attempt(
        self,
        agent_id: str,
        lead_id: Optional[str],
        campaign_id: Optional[str],
        template_id: Optional[str],
        template_name: Optional[str],
        values: List[str],
        phone: Optional[str],
        status: str,
        message_id: Optional[str] = None,
        protocol_version: Optional[str] = None,
        error_message: Optional[str] = None
    ) -> MessageLog:
        log = MessageLog(
            lead_id=lead_id,
            agent_id=agent_id,
            campaign_id=campaign_id,
            sender="agent",
            message=f"Template: {template_name}",
            message_type="template",
            template_id=template_id,
            template_name=template_name,
            template_params=values,
            phone_number=phone,
            external_message_id=message_id,
            protocol_version=protocol_version,
            delivery_status=status,
            error_message=error_message
        )
        try:
            self.db.add(log)
            self.db.commit()
            self.db.refresh(log)
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to record message attempt: {e}", extra={"agent_id": agent_id})
            raise
        return log
