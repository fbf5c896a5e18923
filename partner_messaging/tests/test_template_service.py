"""
Tests for template validation, submission and approval polling
"""
from datetime import datetime, timezone

import pytest

from partner_messaging.core.exceptions import ConfigurationError, ConflictError, ExternalServiceError, ValidationError
from partner_messaging.db.models import Agent, WabaTemplate
from partner_messaging.services.template_service import (
    TemplateService,
    TemplateDefinition,
    build_example,
    lookup_template,
    placeholder_indexes,
    validate_template_definition,
)
from partner_messaging.tests.conftest import form_fields

TEMPLATES = "/app/app-1/templates"


@pytest.fixture
def templates(db_session, provisioner, http_client, settings, sleeper):
    return TemplateService(db_session, provisioner, http_client, settings, sleep=sleeper)


def welcome_definition(**overrides):
    values = dict(
        name="welcome_msg",
        category="UTILITY",
        content="Hi {{1}}, thanks for asking about {{2}}.",
        params=["name", "inquiry_type"]
    )
    values.update(overrides)
    return TemplateDefinition(**values)


def submitted_template(db_session, agent_id, name, gateway_id, minute):
    template = WabaTemplate(
        agent_id=agent_id,
        name=name,
        category="MARKETING",
        content="New listing in {{1}}",
        params=["location"],
        status="submitted",
        gateway_template_id=gateway_id,
        submitted_at=datetime(2026, 3, 1, 9, minute, tzinfo=timezone.utc)
    )
    db_session.add(template)
    db_session.commit()
    return template


class TestTemplateValidation:
    """Local checks run before anything reaches the gateway"""

    def test_valid_template(self):
        validate_template_definition(welcome_definition())

    def test_placeholder_without_parameter(self):
        with pytest.raises(ValidationError, match="Placeholder"):
            validate_template_definition(welcome_definition(content="Hi {{1}}, about {{2}} and {{3}}"))

    def test_zero_placeholder(self):
        with pytest.raises(ValidationError):
            validate_template_definition(welcome_definition(content="Hi {{0}}"))

    @pytest.mark.parametrize("name", ["Welcome", "welcome-msg", "welcome msg", "", "a" * 513])
    def test_invalid_name(self, name):
        with pytest.raises(ValidationError):
            validate_template_definition(welcome_definition(name=name))

    def test_invalid_category(self):
        with pytest.raises(ValidationError, match="category"):
            validate_template_definition(welcome_definition(category="PROMOTIONAL"))

    def test_content_too_long(self):
        with pytest.raises(ValidationError):
            validate_template_definition(welcome_definition(content="x" * 1025, params=[]))

    def test_too_many_parameters(self):
        with pytest.raises(ValidationError):
            validate_template_definition(welcome_definition(params=[f"p{n}" for n in range(11)]))

    def test_placeholder_indexes(self):
        assert placeholder_indexes("{{2}} then {{ 1 }} then {{2}}") == [1, 2]

    def test_build_example(self):
        assert build_example("Hi {{1}}, about {{2}}", ["name", "inquiry_type"]) == "Hi [name], about [inquiry_type]"


@pytest.mark.asyncio
class TestTemplateCreation:
    """Template submission"""

    async def test_invalid_template_makes_no_network_call(self, gateway, templates, agent, db_session):
        with pytest.raises(ValidationError):
            await templates.create(agent.id, welcome_definition(content="Hi {{1}} {{2}} {{3}}"))

        assert gateway.requests == []
        assert db_session.query(WabaTemplate).count() == 0

    async def test_submission_then_approval(self, stub_partner_login, templates, agent, db_session):
        stub_partner_login.add("POST", TEMPLATES, (200, {"status": "success", "template": {"id": "gw-tpl-1"}}))
        stub_partner_login.add("GET", TEMPLATES, (200, {"templates": [{"id": "gw-tpl-1", "status": "APPROVED"}]}))

        template = await templates.create(agent.id, welcome_definition())

        assert template.status == "submitted"
        assert template.gateway_template_id == "gw-tpl-1"
        assert template.submitted_at is not None
        fields = form_fields(stub_partner_login.calls("POST", TEMPLATES)[0])
        assert fields["elementName"] == "welcome_msg"
        assert fields["category"] == "UTILITY"
        assert fields["example"] == "Hi [name], thanks for asking about [inquiry_type]."

        result = await templates.poll_pending()

        db_session.refresh(template)
        assert result.approved == 1
        assert template.status == "approved"
        assert template.approved_at is not None

    async def test_duplicate_name(self, stub_partner_login, templates, agent):
        stub_partner_login.add("POST", TEMPLATES, (200, {"status": "success", "template": {"id": "gw-tpl-1"}}))
        await templates.create(agent.id, welcome_definition())

        with pytest.raises(ConflictError):
            await templates.create(agent.id, welcome_definition())

        assert len(stub_partner_login.calls("POST", TEMPLATES)) == 1

    async def test_failed_submission_stays_pending(self, stub_partner_login, templates, agent, db_session):
        stub_partner_login.add("POST", TEMPLATES, (400, {"message": "Template content invalid"}))

        with pytest.raises(ExternalServiceError):
            await templates.create(agent.id, welcome_definition())

        stored = db_session.query(WabaTemplate).one()
        assert stored.status == "pending"
        assert stored.gateway_template_id is None

    async def test_agent_without_app(self, gateway, templates, agent_without_app):
        with pytest.raises(ConfigurationError):
            await templates.create(agent_without_app.id, welcome_definition())

        assert gateway.requests == []


@pytest.mark.asyncio
class TestTemplatePolling:
    """Approval status polling"""

    async def test_rejection_without_reason(self, stub_partner_login, templates, agent, db_session):
        template = submitted_template(db_session, agent.id, "new_listing", "gw-tpl-2", 0)
        stub_partner_login.add("GET", TEMPLATES, (200, {"templates": [{"id": "gw-tpl-2", "status": "REJECTED"}]}))

        result = await templates.poll_pending()

        db_session.refresh(template)
        assert result.rejected == 1
        assert template.status == "rejected"
        assert template.rejection_reason == "No reason provided"
        assert template.rejected_at is not None

    async def test_rejection_reason_is_kept(self, stub_partner_login, templates, agent, db_session):
        template = submitted_template(db_session, agent.id, "new_listing", "gw-tpl-2", 0)
        stub_partner_login.add("GET", TEMPLATES, (200, {"templates": [
            {"id": "gw-tpl-2", "status": "REJECTED", "reason": "INVALID_FORMAT"}
        ]}))

        await templates.poll_pending()

        db_session.refresh(template)
        assert template.rejection_reason == "INVALID_FORMAT"

    async def test_pending_and_unlisted_are_unchanged(self, stub_partner_login, templates, agent, db_session):
        submitted_template(db_session, agent.id, "first", "gw-tpl-1", 0)
        submitted_template(db_session, agent.id, "second", "gw-tpl-missing", 1)
        stub_partner_login.add("GET", TEMPLATES, (200, {"templates": [{"id": "gw-tpl-1", "status": "PENDING"}]}))

        result = await templates.poll_pending()

        assert result.unchanged == 2
        assert result.checked == 2
        assert len(stub_partner_login.calls("GET", TEMPLATES)) == 1

    async def test_one_failure_does_not_stop_the_batch(self, stub_partner_login, templates, agent, db_session, sleeper):
        other = Agent(id="agent-3", full_name="Raj Kumar", gupshup_app_id="app-2")
        db_session.add(other)
        db_session.commit()
        broken = submitted_template(db_session, other.id, "broken", "gw-tpl-9", 0)
        healthy = submitted_template(db_session, agent.id, "healthy", "gw-tpl-1", 1)
        stub_partner_login.add("GET", "/app/app-2/templates", (400, {"message": "App suspended"}))
        stub_partner_login.add("GET", TEMPLATES, (200, {"templates": [{"id": "gw-tpl-1", "status": "APPROVED"}]}))

        result = await templates.poll_pending()

        db_session.refresh(broken)
        db_session.refresh(healthy)
        assert result.errors == 1
        assert result.approved == 1
        assert broken.status == "submitted"
        assert healthy.status == "approved"
        assert sleeper.delays == [1.0]

    async def test_terminal_templates_are_not_polled(self, gateway, templates, agent, db_session):
        template = submitted_template(db_session, agent.id, "done", "gw-tpl-1", 0)
        template.status = "approved"
        db_session.commit()

        result = await templates.poll_pending()

        assert result.checked == 0
        assert gateway.requests == []


class TestTemplateLookup:

    def test_lookup_by_local_gateway_id_or_name(self, db_session, agent):
        template = submitted_template(db_session, agent.id, "new_listing", "gw-tpl-2", 0)

        assert lookup_template(db_session, agent.id, template.id).id == template.id
        assert lookup_template(db_session, agent.id, "gw-tpl-2").id == template.id
        assert lookup_template(db_session, agent.id, None, "new_listing").id == template.id
        assert lookup_template(db_session, agent.id, None) is None
        assert lookup_template(db_session, "someone-else", template.id) is None

    def test_list_templates_by_status(self, db_session, agent, templates):
        submitted_template(db_session, agent.id, "one", "gw-1", 0)
        approved = submitted_template(db_session, agent.id, "two", "gw-2", 1)
        approved.status = "approved"
        db_session.commit()

        assert [t.name for t in templates.list_templates(agent.id, "approved")] == ["two"]
        assert len(templates.list_templates(agent.id)) == 2
