"""
Tenant App Provisioning - one Gupshup app per agent

Creates gateway apps under the partner account, attaches phone numbers and
exchanges the partner token for per-app access tokens.
"""
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from partner_messaging.core.exceptions import (
    AuthenticationError,
    ConfigurationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)
from partner_messaging.core.http_client import HTTPClient, parse_json, raise_for_gateway_status
from partner_messaging.db.models import Agent
from partner_messaging.services.partner_auth_service import PartnerAuthService

logger = logging.getLogger(__name__)

APP_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")
APP_NAME_MIN_LENGTH = 3
APP_NAME_MAX_LENGTH = 50


@dataclass
class TenantApp:
    app_id: str
    name: str
    tenant_id: Optional[str] = None
    phone_number: Optional[str] = None
    template_messaging_enabled: bool = True
    live_status: bool = False
    healthy_status: bool = False

    @classmethod
    def from_gateway(cls, data: Dict[str, Any]) -> "TenantApp":
        return cls(
            app_id=str(data.get("id") or data.get("appId")),
            name=data.get("name", ""),
            phone_number=data.get("phone") or data.get("phoneNumber"),
            template_messaging_enabled=bool(data.get("templateMessaging", True)),
            live_status=bool(data.get("live", False)),
            healthy_status=bool(data.get("healthy", False))
        )


def validate_app_name(name: str) -> None:
    """
    Raises:
        ValidationError: If the name is not 3-50 letters, digits, '_' or '-'
    """
    if not name or not isinstance(name, str):
        raise ValidationError("App name is required")
    if not APP_NAME_MIN_LENGTH <= len(name) <= APP_NAME_MAX_LENGTH:
        raise ValidationError(
            f"App name must be between {APP_NAME_MIN_LENGTH} and {APP_NAME_MAX_LENGTH} characters"
        )
    if not APP_NAME_PATTERN.match(name):
        raise ValidationError("App name may only contain letters, numbers, underscores and hyphens")


class AppProvisioningService:
    """Gateway app lifecycle for tenants."""

    def __init__(self, db: Session, auth_service: PartnerAuthService, http_client: HTTPClient):
        self.db = db
        self.auth = auth_service
        self.http = http_client
        self.base_url = auth_service.base_url

    async def create_app(self, name: str, template_messaging_enabled: bool = True) -> TenantApp:
        """
        Create a gateway app under the partner account.

        Args:
            name: App name, 3-50 chars of [a-zA-Z0-9_-]
            template_messaging_enabled: Whether the app may send template messages

        Returns:
            The created TenantApp

        Raises:
            ValidationError: If the name is invalid (locally or per the gateway)
            ConflictError: If an app with this name already exists
            ExternalServiceError: For any other gateway rejection
        """
        validate_app_name(name)
        token = await self.auth.get_token()

        logger.info(f"Creating gateway app '{name}'", extra={"operation": "create_app"})
        response = await self.http.post(
            f"{self.base_url}/app",
            data={"name": name, "templateMessaging": str(template_messaging_enabled).lower()},
            headers={"token": token, "Content-Type": "application/x-www-form-urlencoded"},
            operation="create_app"
        )

        try:
            self._check(response, "create_app", {"app_name": name})
        except ExternalServiceError as e:
            if e.http_status == 400:
                raise ValidationError(f"Gateway rejected app name '{name}': {e.message}", context=e.context)
            raise

        payload = parse_json(response) or {}
        app_id = payload.get("appId") or (payload.get("app") or {}).get("id")
        if not app_id:
            raise ExternalServiceError(
                "Gateway app creation response did not include an app id",
                context={"operation": "create_app", "app_name": name}
            )

        logger.info(f"Created gateway app '{name}'", extra={"app_id": app_id, "operation": "create_app"})
        return TenantApp(app_id=str(app_id), name=name, template_messaging_enabled=template_messaging_enabled)

    async def list_apps(self) -> List[TenantApp]:
        """
        List every app under the partner account.

        Raises:
            ExternalServiceError: If the gateway does not report success
        """
        token = await self.auth.get_token()
        response = await self.http.get(
            f"{self.base_url}/account/api/partnerApps",
            headers={"Authorization": token},
            operation="list_apps"
        )
        self._check(response, "list_apps")

        payload = parse_json(response) or {}
        if payload.get("status") != "success":
            raise ExternalServiceError(
                "Gateway did not return the partner app list",
                context={"operation": "list_apps"},
                payload=payload
            )
        return [TenantApp.from_gateway(item) for item in payload.get("partnerAppsList", [])]

    async def find_app_by_name(self, name: str) -> Optional[TenantApp]:
        for app in await self.list_apps():
            if app.name == name:
                return app
        return None

    async def register_phone(self, app_id: str, phone_number: str) -> Dict[str, Any]:
        """
        Attach a WhatsApp number to an app.

        Raises:
            ExternalServiceError: If the gateway rejects the number (including duplicates)
        """
        token = await self.auth.get_token()
        logger.info("Registering phone number", extra={"app_id": app_id, "operation": "register_phone"})
        response = await self.http.post(
            f"{self.base_url}/app/registerPhone",
            data={"appId": app_id, "phoneNumber": phone_number},
            headers={"token": token, "Content-Type": "application/x-www-form-urlencoded"},
            operation="register_phone"
        )
        try:
            self._check(response, "register_phone", {"app_id": app_id})
        except ConflictError as e:
            # Duplicate numbers are a gateway-side rejection, not a local conflict
            raise ExternalServiceError(e.message, context=e.context, http_status=409)
        return parse_json(response) or {}

    async def get_app_access_token(self, app_id: str) -> str:
        """
        Exchange the partner token for a per-app token. Not cached.

        Raises:
            AuthenticationError: If the gateway refuses or returns no token
        """
        token = await self.auth.get_token()
        response = await self.http.get(
            f"{self.base_url}/app/{app_id}/token",
            headers={"Authorization": token},
            operation="get_app_token"
        )
        self._check(response, "get_app_token", {"app_id": app_id})

        payload = parse_json(response) or {}
        app_token = payload.get("token")
        if isinstance(app_token, dict):
            app_token = app_token.get("token")
        if not app_token:
            raise AuthenticationError(
                "App token response did not include a token",
                context={"app_id": app_id, "operation": "get_app_token"}
            )
        return app_token

    def get_agent(self, agent_id: str) -> Agent:
        agent = self.db.query(Agent).filter(Agent.id == agent_id).first()
        if not agent:
            raise NotFoundError(f"Agent {agent_id} not found", context={"agent_id": agent_id})
        return agent

    def resolve_agent_app_id(self, agent_id: str) -> str:
        """
        Raises:
            NotFoundError: If the agent does not exist
            ConfigurationError: If the agent has no provisioned app
        """
        agent = self.get_agent(agent_id)
        if not agent.gupshup_app_id:
            raise ConfigurationError(
                f"Agent {agent_id} has no WhatsApp Business app configured",
                context={"agent_id": agent_id}
            )
        return agent.gupshup_app_id

    def attach_app_to_agent(self, agent_id: str, app: TenantApp, phone_number: Optional[str] = None) -> Agent:
        """Record a provisioned app on the agent row."""
        agent = self.get_agent(agent_id)
        try:
            agent.gupshup_app_id = app.app_id
            agent.gupshup_app_name = app.name
            agent.template_messaging_enabled = app.template_messaging_enabled
            agent.app_live = app.live_status
            agent.app_healthy = app.healthy_status
            agent.waba_status = "app_created"
            if phone_number:
                agent.waba_phone_number = phone_number
            self.db.commit()
            self.db.refresh(agent)
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to attach app to agent: {e}", extra={"agent_id": agent_id, "app_id": app.app_id})
            raise
        return agent

    def _check(self, response, operation: str, context: Optional[Dict[str, Any]] = None) -> None:
        try:
            raise_for_gateway_status(response, operation, context)
        except AuthenticationError:
            self.auth.invalidate()
            raise
