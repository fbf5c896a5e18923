from datetime import datetime, timezone
import uuid

from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text, JSON, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import relationship

from partner_messaging.db.database import Base


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from backends that drop tzinfo."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def new_id() -> str:
    return str(uuid.uuid4())


class PartnerApiToken(Base):
    """
    Encrypted history of partner account tokens.

    Rows are superseded by newer logins, never updated; only the newest few
    are retained.
    """
    __tablename__ = "partner_api_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    encrypted_token = Column(Text, nullable=False)
    iv = Column(String(64), nullable=False)
    auth_tag = Column(String(64), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)


class Agent(Base):
    """Tenant whose WhatsApp Business integration is one gateway app."""
    __tablename__ = "agents"

    id = Column(String, primary_key=True, default=new_id)
    full_name = Column(String, nullable=True)
    email = Column(String, nullable=True, index=True)

    # Gateway app
    gupshup_app_id = Column(String, nullable=True, index=True)
    gupshup_app_name = Column(String(50), nullable=True)
    waba_phone_number = Column(String(20), nullable=True)
    waba_status = Column(String(20), nullable=False, default="pending")  # pending, app_created, active, failed
    template_messaging_enabled = Column(Boolean, default=True)
    app_live = Column(Boolean, default=False)
    app_healthy = Column(Boolean, default=False)

    # Delivery callbacks
    webhook_subscription_id = Column(String, nullable=True)
    webhook_url = Column(String, nullable=True)
    webhook_configured_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), onupdate=utc_now)

    leads = relationship("Lead", back_populates="agent")
    templates = relationship("WabaTemplate", back_populates="agent")


class Lead(Base):
    """Message recipient owned by an agent."""
    __tablename__ = "leads"

    id = Column(String, primary_key=True, default=new_id)
    agent_id = Column(String, ForeignKey("agents.id", ondelete="CASCADE"), nullable=False, index=True)
    full_name = Column(String, nullable=True)
    phone_number = Column(String(32), nullable=True)
    intent = Column(String, nullable=True)  # buy, rent, sell, enquiry text
    budget = Column(String, nullable=True)
    location = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)

    agent = relationship("Agent", back_populates="leads")


class WabaTemplate(Base):
    """
    Message template submitted for WhatsApp approval.

    Status moves pending -> submitted -> approved | rejected. Terminal states
    are only ever set by the status poll; rows are kept for audit.
    """
    __tablename__ = "waba_templates"

    id = Column(String, primary_key=True, default=new_id)
    agent_id = Column(String, ForeignKey("agents.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(512), nullable=False)
    category = Column(String(20), nullable=False)  # MARKETING, UTILITY, AUTHENTICATION
    content = Column(Text, nullable=False)
    params = Column(JSON, nullable=False, default=list)
    language_code = Column(String(10), nullable=False, default="en")
    status = Column(String(20), nullable=False, default="pending", index=True)

    gateway_template_id = Column(String, nullable=True, index=True)
    submitted_at = Column(DateTime(timezone=True), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    rejected_at = Column(DateTime(timezone=True), nullable=True)
    rejection_reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), onupdate=utc_now)

    agent = relationship("Agent", back_populates="templates")

    __table_args__ = (
        UniqueConstraint("agent_id", "name", name="uq_waba_templates_agent_name"),
    )


class MessageCampaign(Base):
    """
    Bulk template send.

    Status: queued -> in_progress <-> paused -> completed | failed. Recipients
    and parameters are stored on the row so a worker can run the campaign from
    its id alone.
    """
    __tablename__ = "message_campaigns"

    id = Column(String, primary_key=True, default=new_id)
    agent_id = Column(String, ForeignKey("agents.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=True)
    template_id = Column(String, nullable=False)
    template_name = Column(String(512), nullable=False)
    status = Column(String(20), nullable=False, default="queued", index=True)

    total_recipients = Column(Integer, nullable=False, default=0)
    messages_sent = Column(Integer, nullable=False, default=0)
    messages_failed = Column(Integer, nullable=False, default=0)
    recipient_lead_ids = Column(JSON, nullable=False, default=list)
    template_params = Column(JSON, nullable=True)
    error_details = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    started_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), onupdate=utc_now)
    completed_at = Column(DateTime(timezone=True), nullable=True)


class MessageLog(Base):
    """Append-only record of one dispatch attempt."""
    __tablename__ = "message_logs"

    id = Column(String, primary_key=True, default=new_id)
    lead_id = Column(String, ForeignKey("leads.id", ondelete="SET NULL"), nullable=True, index=True)
    agent_id = Column(String, ForeignKey("agents.id", ondelete="CASCADE"), nullable=False, index=True)
    campaign_id = Column(String, ForeignKey("message_campaigns.id", ondelete="SET NULL"), nullable=True, index=True)

    sender = Column(String(20), nullable=False, default="agent")
    message = Column(Text, nullable=True)
    message_type = Column(String(20), nullable=False, default="template")
    template_id = Column(String, nullable=True)
    template_name = Column(String(512), nullable=True)
    template_params = Column(JSON, nullable=True)
    phone_number = Column(String(32), nullable=True)

    external_message_id = Column(String, nullable=True, index=True)
    protocol_version = Column(String(4), nullable=True)  # v3, v2
    delivery_status = Column(String(20), nullable=False)  # sent, failed
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now)

    __table_args__ = (
        Index("ix_message_logs_agent_created", "agent_id", "created_at"),
    )
