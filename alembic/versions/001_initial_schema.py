"""Initial schema - conversation engine tables.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Clients (tenants)
    op.create_table(
        "clients",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("business_name", sa.String(255), nullable=False),
        sa.Column("timezone", sa.String(64)),
        sa.Column("booking_url", sa.String(500)),
        sa.Column("is_active", sa.Boolean, default=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_clients_is_active", "clients", ["is_active"])

    # SMS settings
    op.create_table(
        "sms_settings",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("client_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("clients.id"), nullable=False, unique=True),
        sa.Column("twilio_phone_number", sa.String(20)),
        sa.Column("sender_name", sa.String(100)),
        sa.Column("business_hours_start", sa.String(5), server_default="09:00"),
        sa.Column("business_hours_end", sa.String(5), server_default="18:00"),
        sa.Column("auto_reply_enabled", sa.Boolean, server_default=sa.true()),
        sa.Column("out_of_hours_message", sa.Text),
        sa.Column("monthly_sms_limit", sa.Integer, server_default="1000"),
        sa.Column("sms_sent_this_month", sa.Integer, server_default="0"),
        sa.Column("quota_period", sa.String(7)),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Leads
    op.create_table(
        "leads",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("client_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("clients.id"), nullable=False),
        sa.Column("name", sa.String(200)),
        sa.Column("phone", sa.String(20), nullable=False),
        sa.Column("email", sa.String(255)),
        sa.Column("status", sa.String(30), nullable=False, server_default="new"),
        sa.Column("source", sa.String(50), nullable=False, server_default="manual"),
        sa.Column("whatsapp_available", sa.Boolean, server_default=sa.false()),
        sa.Column("preferred_channel", sa.String(20), server_default="auto"),
        sa.Column("last_message_sent", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_leads_client_id", "leads", ["client_id"])
    op.create_index("ix_leads_status", "leads", ["status"])
    op.create_index("ix_leads_phone", "leads", ["phone"])
    op.create_index("ix_leads_client_phone", "leads", ["client_id", "phone"])

    # Automations
    op.create_table(
        "automations",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("client_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("clients.id"), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("trigger_type", sa.String(30), nullable=False),
        sa.Column("trigger_keywords", postgresql.JSONB, server_default="[]"),
        sa.Column("schedule_idle_minutes", sa.Integer),
        sa.Column("message_sequence", postgresql.JSONB, server_default="[]"),
        sa.Column("is_active", sa.Boolean, server_default=sa.true()),
        sa.Column("business_hours_only", sa.Boolean, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_automations_client_trigger", "automations", ["client_id", "trigger_type", "is_active"])

    # Automation runs
    op.create_table(
        "automation_runs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("automation_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("automations.id"), nullable=False),
        sa.Column("lead_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("leads.id"), nullable=False),
        sa.Column("client_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("clients.id"), nullable=False),
        sa.Column("current_step_index", sa.Integer, server_default="0"),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("state", sa.String(20), server_default="pending"),
        sa.Column("trigger_event", sa.String(30)),
        sa.Column("last_fired_at", sa.DateTime(timezone=True)),
        sa.Column("deferral_count", sa.Integer, server_default="0"),
        sa.Column("cancel_reason", sa.Text),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_runs_automation_lead_state", "automation_runs", ["automation_id", "lead_id", "state"])
    op.create_index("ix_runs_lead_id", "automation_runs", ["lead_id"])
    op.create_index("ix_runs_pending", "automation_runs", ["state", "scheduled_at"])

    # Conversation ledger
    op.create_table(
        "conversation_messages",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("lead_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("leads.id"), nullable=False),
        sa.Column("client_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("clients.id"), nullable=False),
        sa.Column("sequence", sa.Integer, nullable=False),
        sa.Column("sender", sa.String(10), nullable=False),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("channel", sa.String(20), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("origin", sa.String(20), server_default="operator"),
        sa.Column("automation_id", postgresql.UUID(as_uuid=True)),
        sa.Column("run_id", postgresql.UUID(as_uuid=True)),
        sa.Column("step_index", sa.Integer),
        sa.Column("delivery_status", sa.String(20), server_default="pending"),
        sa.Column("message_id", sa.String(128)),
        sa.Column("provider", sa.String(20)),
        sa.Column("error_code", sa.String(50)),
        sa.Column("error_message", sa.Text),
        sa.Column("delivered_at", sa.DateTime(timezone=True)),
        sa.Column("read_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("lead_id", "sequence", name="uq_conversation_lead_sequence"),
    )
    op.create_index("ix_conversation_lead_id", "conversation_messages", ["lead_id"])
    op.create_index("ix_conversation_message_id", "conversation_messages", ["message_id"])
    op.create_index("ix_conversation_run_id", "conversation_messages", ["run_id"])

    # Event log
    op.create_table(
        "event_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("lead_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("leads.id")),
        sa.Column("client_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("clients.id")),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("status", sa.String(20), server_default="success"),
        sa.Column("message", sa.Text),
        sa.Column("error_code", sa.String(50)),
        sa.Column("data", postgresql.JSONB),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_events_lead_id", "event_logs", ["lead_id"])
    op.create_index("ix_events_action", "event_logs", ["action"])
    op.create_index("ix_events_created_at", "event_logs", ["created_at"])


def downgrade() -> None:
    op.drop_table("event_logs")
    op.drop_table("conversation_messages")
    op.drop_table("automation_runs")
    op.drop_table("automations")
    op.drop_table("leads")
    op.drop_table("sms_settings")
    op.drop_table("clients")
