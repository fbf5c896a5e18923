"""Create partner messaging tables

Revision ID: 001_create_partner_messaging_tables
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_create_partner_messaging_tables'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Encrypted partner token history
    op.create_table(
        'partner_api_tokens',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('encrypted_token', sa.Text, nullable=False),
        sa.Column('iv', sa.String(64), nullable=False),
        sa.Column('auth_tag', sa.String(64), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_partner_api_tokens_expires_at', 'partner_api_tokens', ['expires_at'])

    op.create_table(
        'agents',
        sa.Column('id', sa.String, primary_key=True),
        sa.Column('full_name', sa.String),
        sa.Column('email', sa.String),

        # Gateway app
        sa.Column('gupshup_app_id', sa.String),
        sa.Column('gupshup_app_name', sa.String(50)),
        sa.Column('waba_phone_number', sa.String(20)),
        sa.Column('waba_status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('template_messaging_enabled', sa.Boolean, server_default=sa.true()),
        sa.Column('app_live', sa.Boolean, server_default=sa.false()),
        sa.Column('app_healthy', sa.Boolean, server_default=sa.false()),

        # Delivery callbacks
        sa.Column('webhook_subscription_id', sa.String),
        sa.Column('webhook_url', sa.String),
        sa.Column('webhook_configured_at', sa.DateTime(timezone=True)),

        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
    )
    op.create_index('ix_agents_email', 'agents', ['email'])
    op.create_index('ix_agents_gupshup_app_id', 'agents', ['gupshup_app_id'])

    op.create_table(
        'leads',
        sa.Column('id', sa.String, primary_key=True),
        sa.Column('agent_id', sa.String, sa.ForeignKey('agents.id', ondelete='CASCADE'), nullable=False),
        sa.Column('full_name', sa.String),
        sa.Column('phone_number', sa.String(32)),
        sa.Column('intent', sa.String),
        sa.Column('budget', sa.String),
        sa.Column('location', sa.String),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_leads_agent_id', 'leads', ['agent_id'])

    op.create_table(
        'waba_templates',
        sa.Column('id', sa.String, primary_key=True),
        sa.Column('agent_id', sa.String, sa.ForeignKey('agents.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(512), nullable=False),
        sa.Column('category', sa.String(20), nullable=False),
        sa.Column('content', sa.Text, nullable=False),
        sa.Column('params', sa.JSON, nullable=False),
        sa.Column('language_code', sa.String(10), nullable=False, server_default='en'),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('gateway_template_id', sa.String),
        sa.Column('submitted_at', sa.DateTime(timezone=True)),
        sa.Column('approved_at', sa.DateTime(timezone=True)),
        sa.Column('rejected_at', sa.DateTime(timezone=True)),
        sa.Column('rejection_reason', sa.Text),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
    )
    op.create_index('ix_waba_templates_agent_id', 'waba_templates', ['agent_id'])
    op.create_index('ix_waba_templates_status', 'waba_templates', ['status'])
    op.create_index('ix_waba_templates_gateway_template_id', 'waba_templates', ['gateway_template_id'])
    op.create_unique_constraint('uq_waba_templates_agent_name', 'waba_templates', ['agent_id', 'name'])

    op.create_table(
        'message_campaigns',
        sa.Column('id', sa.String, primary_key=True),
        sa.Column('agent_id', sa.String, sa.ForeignKey('agents.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String),
        sa.Column('template_id', sa.String, nullable=False),
        sa.Column('template_name', sa.String(512), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='queued'),
        sa.Column('total_recipients', sa.Integer, nullable=False, server_default='0'),
        sa.Column('messages_sent', sa.Integer, nullable=False, server_default='0'),
        sa.Column('messages_failed', sa.Integer, nullable=False, server_default='0'),
        sa.Column('recipient_lead_ids', sa.JSON, nullable=False),
        sa.Column('template_params', sa.JSON),
        sa.Column('error_details', sa.JSON),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('started_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.Column('completed_at', sa.DateTime(timezone=True)),
    )
    op.create_index('ix_message_campaigns_agent_id', 'message_campaigns', ['agent_id'])
    op.create_index('ix_message_campaigns_status', 'message_campaigns', ['status'])

    # Append-only dispatch log
    op.create_table(
        'message_logs',
        sa.Column('id', sa.String, primary_key=True),
        sa.Column('lead_id', sa.String, sa.ForeignKey('leads.id', ondelete='SET NULL')),
        sa.Column('agent_id', sa.String, sa.ForeignKey('agents.id', ondelete='CASCADE'), nullable=False),
        sa.Column('campaign_id', sa.String, sa.ForeignKey('message_campaigns.id', ondelete='SET NULL')),
        sa.Column('sender', sa.String(20), nullable=False, server_default='agent'),
        sa.Column('message', sa.Text),
        sa.Column('message_type', sa.String(20), nullable=False, server_default='template'),
        sa.Column('template_id', sa.String),
        sa.Column('template_name', sa.String(512)),
        sa.Column('template_params', sa.JSON),
        sa.Column('phone_number', sa.String(32)),
        sa.Column('external_message_id', sa.String),
        sa.Column('protocol_version', sa.String(4)),
        sa.Column('delivery_status', sa.String(20), nullable=False),
        sa.Column('error_message', sa.Text),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_message_logs_lead_id', 'message_logs', ['lead_id'])
    op.create_index('ix_message_logs_agent_id', 'message_logs', ['agent_id'])
    op.create_index('ix_message_logs_campaign_id', 'message_logs', ['campaign_id'])
    op.create_index('ix_message_logs_external_message_id', 'message_logs', ['external_message_id'])
    op.create_index('ix_message_logs_agent_created', 'message_logs', ['agent_id', 'created_at'])


def downgrade() -> None:
    op.drop_table('message_logs')
    op.drop_table('message_campaigns')
    op.drop_table('waba_templates')
    op.drop_table('leads')
    op.drop_table('agents')
    op.drop_table('partner_api_tokens')
