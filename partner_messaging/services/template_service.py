"""
WhatsApp Template Service - submission and approval tracking

Templates are validated locally, stored as pending, submitted to the gateway
and then polled until WhatsApp approves or rejects them. Approval events are
not reliably pushed to webhooks, so status is pulled on a schedule.
"""
import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from partner_messaging.core.cache import utc_now
from partner_messaging.core.config import Settings
from partner_messaging.core.exceptions import ConflictError, ExternalServiceError, PartnerMessagingError, ValidationError
from partner_messaging.core.http_client import HTTPClient, parse_json, raise_for_gateway_status
from partner_messaging.db.models import WabaTemplate
from partner_messaging.services.app_provisioning_service import AppProvisioningService

logger = logging.getLogger(__name__)

TEMPLATE_NAME_PATTERN = re.compile(r"^[a-z0-9_]+$")
TEMPLATE_NAME_MAX_LENGTH = 512
TEMPLATE_CATEGORIES = ("MARKETING", "UTILITY", "AUTHENTICATION")
TEMPLATE_CONTENT_MAX_LENGTH = 1024
TEMPLATE_MAX_PARAMS = 10
PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*(\d+)\s*\}\}")
DEFAULT_REJECTION_REASON = "No reason provided"


@dataclass
class TemplateDefinition:
    name: str
    category: str
    content: str
    params: List[str] = field(default_factory=list)
    language_code: str = "en"


WELCOME_TEMPLATE = TemplateDefinition(
    name="welcome_message",
    category="UTILITY",
    content=(
        "Hi {{1}}, thank you for your enquiry about {{2}}. "
        "I'll be your agent and will get back to you shortly. Reply here if you have any questions."
    ),
    params=["name", "inquiry_type"]
)


@dataclass
class PollResult:
    checked: int = 0
    approved: int = 0
    rejected: int = 0
    unchanged: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "checked": self.checked,
            "approved": self.approved,
            "rejected": self.rejected,
            "unchanged": self.unchanged,
            "errors": self.errors
        }


def placeholder_indexes(content: str) -> List[int]:
    return sorted({int(match) for match in PLACEHOLDER_PATTERN.findall(content)})


def validate_template_definition(definition: TemplateDefinition) -> None:
    """
    Reject a template before it reaches the gateway.

    Raises:
        ValidationError: On a bad name, category, content length, parameter
            count or a placeholder without a declared parameter
    """
    if not definition.name or len(definition.name) > TEMPLATE_NAME_MAX_LENGTH or not TEMPLATE_NAME_PATTERN.match(definition.name):
        raise ValidationError("Template name must contain only lowercase letters, numbers and underscores")

    if definition.category not in TEMPLATE_CATEGORIES:
        raise ValidationError(f"Template category must be one of {', '.join(TEMPLATE_CATEGORIES)}")

    if not definition.content or not definition.content.strip():
        raise ValidationError("Template content is required")
    if len(definition.content) > TEMPLATE_CONTENT_MAX_LENGTH:
        raise ValidationError(f"Template content exceeds {TEMPLATE_CONTENT_MAX_LENGTH} characters")

    params = definition.params or []
    if len(params) > TEMPLATE_MAX_PARAMS:
        raise ValidationError(f"Templates may declare at most {TEMPLATE_MAX_PARAMS} parameters")

    for index in placeholder_indexes(definition.content):
        if index < 1 or index > len(params):
            raise ValidationError(
                f"Placeholder {{{{{index}}}}} has no declared parameter ({len(params)} declared)"
            )


def build_example(content: str, params: List[str]) -> str:
    """Sample text the gateway requires alongside a submission, e.g. 'Hi [name]'."""
    def substitute(match):
        index = int(match.group(1))
        return f"[{params[index - 1]}]" if 0 < index <= len(params) else match.group(0)
    return PLACEHOLDER_PATTERN.sub(substitute, content)


class TemplateService:
    """Template submission and approval tracking."""

    def __init__(
        self,
        db: Session,
        provisioner: AppProvisioningService,
        http_client: HTTPClient,
        settings: Settings,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now
    ):
        self.db = db
        self.provisioner = provisioner
        self.http = http_client
        self.settings = settings
        self.sleep = sleep
        self.clock = clock
        self.base_url = settings.gupshup_partner_base_url.rstrip("/")

    async def create(self, agent_id: str, definition: TemplateDefinition) -> WabaTemplate:
        """
        Validate, store and submit a template for approval.

        Args:
            agent_id: Owning agent
            definition: Template definition

        Returns:
            The template record, status 'submitted'

        Raises:
            ValidationError: If the definition is invalid (no network call is made)
            ConflictError: If the agent already has a template with this name
            PartnerMessagingError: If submission fails; the record stays 'pending'
        """
        validate_template_definition(definition)
        app_id = self.provisioner.resolve_agent_app_id(agent_id)

        existing = self.db.query(WabaTemplate).filter(
            WabaTemplate.agent_id == agent_id,
            WabaTemplate.name == definition.name
        ).first()
        if existing:
            raise ConflictError(
                f"Template '{definition.name}' already exists for this agent",
                context={"agent_id": agent_id, "template_id": existing.id}
            )

        template = WabaTemplate(
            agent_id=agent_id,
            name=definition.name,
            category=definition.category,
            content=definition.content,
            params=list(definition.params or []),
            language_code=definition.language_code or self.settings.template_default_language,
            status="pending"
        )
        try:
            self.db.add(template)
            self.db.commit()
            self.db.refresh(template)
        except IntegrityError:
            self.db.rollback()
            raise ConflictError(f"Template '{definition.name}' already exists for this agent", context={"agent_id": agent_id})

        try:
            gateway_id = await self._submit(app_id, template)
        except PartnerMessagingError as e:
            logger.error(
                f"Template '{template.name}' submission failed, left pending: {e.message}",
                extra={"agent_id": agent_id, "app_id": app_id, "template_id": template.id, "operation": "submit_template"}
            )
            raise

        try:
            template.status = "submitted"
            template.gateway_template_id = gateway_id
            template.submitted_at = self.clock()
            self.db.commit()
            self.db.refresh(template)
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to record template submission: {e}", extra={"template_id": template.id})
            raise

        logger.info(
            f"Template '{template.name}' submitted for approval",
            extra={"agent_id": agent_id, "app_id": app_id, "template_id": template.id}
        )
        return template

    async def _submit(self, app_id: str, template: WabaTemplate) -> str:
        app_token = await self.provisioner.get_app_access_token(app_id)
        response = await self.http.post(
            f"{self.base_url}/app/{app_id}/templates",
            data={
                "elementName": template.name,
                "languageCode": template.language_code,
                "category": template.category,
                "content": template.content,
                "vertical": self.settings.template_default_vertical,
                "templateType": "TEXT",
                "example": build_example(template.content, template.params or [])
            },
            headers={"Authorization": app_token, "Content-Type": "application/x-www-form-urlencoded"},
            operation="submit_template"
        )
        raise_for_gateway_status(response, "submit_template", {"app_id": app_id, "template_id": template.id})

        payload = parse_json(response) or {}
        gateway_id = (payload.get("template") or {}).get("id")
        if not gateway_id:
            raise ExternalServiceError(
                "Template submission response did not include a template id",
                context={"app_id": app_id, "template_id": template.id},
                payload=payload
            )
        return str(gateway_id)

    async def _fetch_gateway_templates(self, app_id: str) -> List[Dict[str, Any]]:
        app_token = await self.provisioner.get_app_access_token(app_id)
        response = await self.http.get(
            f"{self.base_url}/app/{app_id}/templates",
            headers={"Authorization": app_token},
            operation="list_gateway_templates"
        )
        raise_for_gateway_status(response, "list_gateway_templates", {"app_id": app_id})
        payload = parse_json(response) or {}
        return payload.get("templates", [])

    async def poll_pending(self) -> PollResult:
        """
        Pull gateway status for every submitted template.

        Each template is handled independently; a failure is logged and
        counted but never stops the batch. Gateway listings are fetched once
        per app per run.

        Returns:
            PollResult with per-outcome counts
        """
        pending = self.db.query(WabaTemplate).filter(
            WabaTemplate.status == "submitted",
            WabaTemplate.approved_at.is_(None),
            WabaTemplate.rejected_at.is_(None)
        ).order_by(WabaTemplate.submitted_at).all()

        result = PollResult()
        listings: Dict[str, Dict[str, Dict[str, Any]]] = {}
        logger.info(f"Checking approval status for {len(pending)} submitted template(s)")

        for position, template in enumerate(pending):
            result.checked += 1
            try:
                app_id = self.provisioner.resolve_agent_app_id(template.agent_id)
                if app_id not in listings:
                    listings[app_id] = {
                        str(item.get("id")): item for item in await self._fetch_gateway_templates(app_id)
                    }
                outcome = self._apply_gateway_status(template, listings[app_id].get(template.gateway_template_id))
                setattr(result, outcome, getattr(result, outcome) + 1)
            except Exception as e:
                self.db.rollback()
                result.errors += 1
                logger.error(
                    f"Status check failed for template '{template.name}': {e}",
                    extra={"agent_id": template.agent_id, "template_id": template.id, "operation": "poll_templates"}
                )

            if position < len(pending) - 1:
                await self.sleep(self.settings.template_poll_item_delay)

        logger.info(f"Template status poll finished: {result.to_dict()}")
        return result

    def _apply_gateway_status(self, template: WabaTemplate, entry: Optional[Dict[str, Any]]) -> str:
        if entry is None:
            logger.warning(
                f"Template '{template.name}' not found in gateway listing",
                extra={"template_id": template.id}
            )
            return "unchanged"

        gateway_status = str(entry.get("status", "")).upper()
        if gateway_status == "APPROVED":
            template.status = "approved"
            template.approved_at = self.clock()
        elif gateway_status == "REJECTED":
            template.status = "rejected"
            template.rejected_at = self.clock()
            template.rejection_reason = entry.get("reason") or DEFAULT_REJECTION_REASON
        else:
            return "unchanged"

        self.db.commit()
        logger.info(
            f"Template '{template.name}' is now {template.status}",
            extra={"agent_id": template.agent_id, "template_id": template.id}
        )
        return template.status

    def list_templates(self, agent_id: str, status: Optional[str] = None) -> List[WabaTemplate]:
        query = self.db.query(WabaTemplate).filter(WabaTemplate.agent_id == agent_id)
        if status:
            query = query.filter(WabaTemplate.status == status)
        return query.order_by(WabaTemplate.created_at.desc()).all()

    async def list_live_templates(self, agent_id: str) -> List[Dict[str, Any]]:
        """Templates as the gateway currently reports them for the agent's app."""
        app_id = self.provisioner.resolve_agent_app_id(agent_id)
        return await self._fetch_gateway_templates(app_id)


def lookup_template(db: Session, agent_id: str, template_ref: Optional[str], template_name: Optional[str] = None) -> Optional[WabaTemplate]:
    """Look up an agent's template by local id, gateway id or name."""
    conditions = []
    if template_ref:
        conditions.extend([WabaTemplate.id == template_ref, WabaTemplate.gateway_template_id == template_ref])
    if template_name:
        conditions.append(WabaTemplate.name == template_name)
    if not conditions:
        return None
    return db.query(WabaTemplate).filter(
        WabaTemplate.agent_id == agent_id,
        or_(*conditions)
    ).first()
