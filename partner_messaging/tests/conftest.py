"""
Shared fixtures: in-memory database, scripted gateway and service wiring
"""
from typing import Any, Callable, Dict, List, Tuple, Union

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from partner_messaging.core.cache import TTLCache
from partner_messaging.core.config import Settings
from partner_messaging.core.encryption import CredentialVault
from partner_messaging.core.http_client import HTTPClient, HTTPClientConfig
from partner_messaging.core.logging import setup_test_logging
from partner_messaging.db import models  # noqa: F401
from partner_messaging.db.database import Base
from partner_messaging.db.models import Agent, Lead
from partner_messaging.services.app_provisioning_service import AppProvisioningService
from partner_messaging.services.partner_auth_service import PartnerAuthService

TEST_ENCRYPTION_KEY = "0123456789abcdef" * 4
GATEWAY_BASE_URL = "https://partner.test/partner"
GATEWAY_PATH = "/partner"

Scripted = Union[Tuple[int, Any], Exception, Callable[[httpx.Request], httpx.Response]]


class GatewayStub:
    """
    Scripted partner gateway served through httpx.MockTransport.

    Each route holds a queue of responses; the last one repeats once the
    queue is drained. Unrouted requests get a 404.
    """

    def __init__(self):
        self.routes: Dict[Tuple[str, str], List[Scripted]] = {}
        self.requests: List[httpx.Request] = []

    def add(self, method: str, path: str, *responses: Scripted) -> None:
        self.routes.setdefault((method, GATEWAY_PATH + path), []).extend(responses)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self._handle)

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [
            r for r in self.requests
            if r.method == method and r.url.path == GATEWAY_PATH + path
        ]

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"message": f"No route for {request.method} {request.url.path}"})

        scripted = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(scripted, Exception):
            raise scripted
        if callable(scripted):
            return scripted(request)
        status, body = scripted
        return httpx.Response(status, json=body)


class SleepRecorder:
    """Stands in for asyncio.sleep; records delays and runs optional hooks."""

    def __init__(self):
        self.delays: List[float] = []
        self.hooks: List[Callable[[float], None]] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        for hook in list(self.hooks):
            hook(delay)


class RecordingNotifier:
    """Collects published events instead of sending them to Redis."""

    def __init__(self):
        self.events: List[Tuple[str, str, Dict[str, Any]]] = []

    async def publish(self, agent_id: str, event: str, data: Dict[str, Any]) -> bool:
        self.events.append((agent_id, event, data))
        return True

    def of_type(self, event: str) -> List[Dict[str, Any]]:
        return [data for _, name, data in self.events if name == event]

    async def close(self):
        return None


def form_fields(request: httpx.Request) -> Dict[str, str]:
    """Decode an x-www-form-urlencoded request body."""
    return dict(httpx.QueryParams(request.content.decode()))


def pytest_configure(config):
    setup_test_logging()


@pytest.fixture
def settings():
    """Settings isolated from the environment and .env files"""
    return Settings(
        _env_file=None,
        environment="test",
        database_url="sqlite://",
        redis_url="redis://localhost:6379/15",
        gupshup_partner_base_url=GATEWAY_BASE_URL,
        gupshup_partner_email="partner@example.com",
        gupshup_partner_password="partner-password",
        token_encryption_key=TEST_ENCRYPTION_KEY,
        webhook_base_url="https://hooks.example.com",
        campaign_message_delay=1.0,
        campaign_pause_poll_interval=5.0,
        campaign_pause_timeout=15.0,
        template_poll_item_delay=1.0
    )


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db_session(engine):
    """Database session for one test"""
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def gateway():
    return GatewayStub()


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def http_client(gateway, sleeper):
    """Gateway client with the production retry policy and no real waiting"""
    return HTTPClient(
        HTTPClientConfig(max_attempts=3, retry_base_delay=2.0),
        transport=gateway.transport(),
        sleep=sleeper
    )


@pytest.fixture
def vault():
    return CredentialVault(TEST_ENCRYPTION_KEY)


@pytest.fixture
def token_cache():
    return TTLCache()


@pytest.fixture
def stub_partner_login(gateway):
    """Partner login and per-app token exchange for app-1 and app-2"""
    gateway.add("POST", "/account/login", (200, {"token": "partner-token-1"}))
    gateway.add("GET", "/app/app-1/token", (200, {"token": {"token": "app-token-1"}}))
    gateway.add("GET", "/app/app-2/token", (200, {"token": "app-token-2"}))
    return gateway


@pytest.fixture
def auth_service(db_session, vault, http_client, settings, token_cache):
    return PartnerAuthService(db_session, vault, http_client, settings, cache=token_cache)


@pytest.fixture
def provisioner(db_session, auth_service, http_client):
    return AppProvisioningService(db_session, auth_service, http_client)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def agent(db_session):
    """Agent with a provisioned gateway app"""
    agent = Agent(
        id="agent-1",
        full_name="Sarah Tan",
        email="sarah@example.com",
        gupshup_app_id="app-1",
        gupshup_app_name="sarah_tan_agent",
        waba_phone_number="+65 6123 4567",
        waba_status="active"
    )
    db_session.add(agent)
    db_session.commit()
    return agent


@pytest.fixture
def agent_without_app(db_session):
    agent = Agent(id="agent-2", full_name="Wei Ming Lee", email="weiming@example.com")
    db_session.add(agent)
    db_session.commit()
    return agent


@pytest.fixture
def leads(db_session, agent):
    """Three leads owned by the provisioned agent"""
    leads = [
        Lead(id="lead-1", agent_id=agent.id, full_name="Alice Lim", phone_number="9123 4567", intent="buy"),
        Lead(id="lead-2", agent_id=agent.id, full_name="Ben Ong", phone_number="+65 9234 5678", intent="rent"),
        Lead(id="lead-3", agent_id=agent.id, full_name=None, phone_number="93456789", intent=None),
    ]
    db_session.add_all(leads)
    db_session.commit()
    return leads
