"""Initial schema - webhook store, job queue, event outbox and practice payment tables.

Revision ID: 001
Revises:
Create Date: 2026-10-18
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
    # Verified provider deliveries, one row per provider event id
    op.create_table(
        "webhook_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("provider_event_id", sa.String(255), nullable=False, unique=True),
        sa.Column("source", sa.String(50), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("payload", postgresql.JSONB, nullable=False),
        sa.Column("headers", postgresql.JSONB, nullable=True),
        sa.Column("url", sa.Text, nullable=True),
        sa.Column("processed", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column("error_stack", sa.Text, nullable=True),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer, nullable=False, server_default="5"),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("correlation_id", sa.String(64), nullable=True),
    )
    op.create_index("ix_webhook_events_source", "webhook_events", ["source"])
    op.create_index("ix_webhook_events_event_type", "webhook_events", ["event_type"])
    op.create_index("ix_webhook_events_correlation_id", "webhook_events", ["correlation_id"])
    op.create_index(
        "ix_webhook_events_pending", "webhook_events", ["processed", "retry_count", "received_at"]
    )

    # Durable job queue
    op.create_table(
        "jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("task_identifier", sa.String(100), nullable=False),
        sa.Column("payload", postgresql.JSONB, nullable=True),
        sa.Column("job_key", sa.String(255), nullable=True, unique=True),
        sa.Column("priority", sa.Integer, nullable=False, server_default="0"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="25"),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_by", sa.String(100), nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_jobs_claim", "jobs", ["task_identifier", "run_at", "priority"])

    # Domain event outbox
    op.create_table(
        "events",
        sa.Column("event_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("event_version", sa.String(20), nullable=False, server_default="1.0.0"),
        sa.Column("actor_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("actor_type", sa.String(20), nullable=False),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("payload", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("metadata", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("processed", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_events_type", "events", ["event_type"])
    op.create_index("ix_events_organization_id", "events", ["organization_id"])
    op.create_index("ix_events_unprocessed", "events", ["processed", "created_at"])

    # Stripe Connect accounts
    op.create_table(
        "stripe_connected_accounts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("stripe_account_id", sa.String(255), nullable=False, unique=True),
        sa.Column("account_type", sa.String(20), server_default="custom"),
        sa.Column("country", sa.String(2), server_default="US"),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("charges_enabled", sa.Boolean, server_default="false"),
        sa.Column("payouts_enabled", sa.Boolean, server_default="false"),
        sa.Column("details_submitted", sa.Boolean, server_default="false"),
        sa.Column("business_type", sa.String(50)),
        sa.Column("company", postgresql.JSONB),
        sa.Column("individual", postgresql.JSONB),
        sa.Column("requirements", postgresql.JSONB),
        sa.Column("capabilities", postgresql.JSONB),
        sa.Column("external_accounts", postgresql.JSONB),
        sa.Column("future_requirements", postgresql.JSONB),
        sa.Column("tos_acceptance", postgresql.JSONB),
        sa.Column("metadata", postgresql.JSONB),
        sa.Column("onboarding_completed_at", sa.DateTime(timezone=True)),
        sa.Column("last_refreshed_at", sa.DateTime(timezone=True)),
        sa.Column("last_event_created", sa.Integer),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_connected_accounts_organization_id", "stripe_connected_accounts", ["organization_id"]
    )

    # Client intake payments
    op.create_table(
        "practice_client_intakes",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("connected_account_id", postgresql.UUID(as_uuid=True)),
        sa.Column("stripe_payment_link_id", sa.String(255), unique=True),
        sa.Column("stripe_payment_intent_id", sa.String(255)),
        sa.Column("stripe_charge_id", sa.String(255)),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("currency", sa.String(3), server_default="usd"),
        sa.Column("status", sa.String(20), server_default="pending"),
        sa.Column("metadata", postgresql.JSONB),
        sa.Column("client_ip", sa.String(64)),
        sa.Column("user_agent", sa.String(512)),
        sa.Column("succeeded_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_client_intakes_organization_id", "practice_client_intakes", ["organization_id"])
    op.create_index(
        "ix_client_intakes_payment_intent", "practice_client_intakes", ["stripe_payment_intent_id"]
    )

    # Subscription catalog
    op.create_table(
        "subscription_products",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("stripe_product_id", sa.String(255), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text),
        sa.Column("active", sa.Boolean, server_default="true"),
        sa.Column("deleted", sa.Boolean, server_default="false"),
        sa.Column("features", postgresql.JSONB),
        sa.Column("metadata", postgresql.JSONB),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_table(
        "subscription_prices",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("stripe_price_id", sa.String(255), nullable=False, unique=True),
        sa.Column("stripe_product_id", sa.String(255), nullable=False),
        sa.Column("unit_amount", sa.Integer),
        sa.Column("currency", sa.String(3), server_default="usd"),
        sa.Column("interval", sa.String(20)),
        sa.Column("interval_count", sa.Integer),
        sa.Column("usage_type", sa.String(20)),
        sa.Column("active", sa.Boolean, server_default="true"),
        sa.Column("deleted", sa.Boolean, server_default="false"),
        sa.Column("metadata", postgresql.JSONB),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_subscription_prices_stripe_product_id", "subscription_prices", ["stripe_product_id"])

    # Practice profile
    op.create_table(
        "practice_details",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=False, unique=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("business_phone", sa.String(32)),
        sa.Column("business_email", sa.String(255)),
        sa.Column("website", sa.String(512)),
        sa.Column("consultation_fee", sa.Integer),
        sa.Column("payment_url", sa.String(512)),
        sa.Column("calendly_url", sa.String(512)),
        sa.Column("intro_message", sa.Text),
        sa.Column("overview", sa.Text),
        sa.Column("is_public", sa.Boolean, server_default="false"),
        sa.Column("services", postgresql.JSONB),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("practice_details")
    op.drop_index("ix_subscription_prices_stripe_product_id", table_name="subscription_prices")
    op.drop_table("subscription_prices")
    op.drop_table("subscription_products")
    op.drop_index("ix_client_intakes_payment_intent", table_name="practice_client_intakes")
    op.drop_index("ix_client_intakes_organization_id", table_name="practice_client_intakes")
    op.drop_table("practice_client_intakes")
    op.drop_index("ix_connected_accounts_organization_id", table_name="stripe_connected_accounts")
    op.drop_table("stripe_connected_accounts")
    op.drop_index("ix_events_unprocessed", table_name="events")
    op.drop_index("ix_events_organization_id", table_name="events")
    op.drop_index("ix_events_type", table_name="events")
    op.drop_table("events")
    op.drop_index("ix_jobs_claim", table_name="jobs")
    op.drop_table("jobs")
    op.drop_index("ix_webhook_events_pending", table_name="webhook_events")
    op.drop_index("ix_webhook_events_correlation_id", table_name="webhook_events")
    op.drop_index("ix_webhook_events_event_type", table_name="webhook_events")
    op.drop_index("ix_webhook_events_source", table_name="webhook_events")
    op.drop_table("webhook_events")
