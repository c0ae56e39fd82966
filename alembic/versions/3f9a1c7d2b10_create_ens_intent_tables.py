"""create_ens_intent_tables

Revision ID: 3f9a1c7d2b10
Revises:
Create Date: 2026-10-18 09:12:44.301552

"""

from typing import Sequence, Union

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f9a1c7d2b10"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

intent_status = postgresql.ENUM(
    "prepared",
    "committed",
    "registerable",
    "registered",
    "expired",
    "failed",
    name="ens_intent_status",
    create_type=False,
)
webhook_event_status = postgresql.ENUM(
    "processing",
    "processed",
    "failed",
    "dead_letter",
    name="ens_webhook_event_status",
    create_type=False,
)


def upgrade() -> None:
    """Create purchase intent, domain and webhook ledger tables."""
    intent_status.create(op.get_bind(), checkfirst=True)
    webhook_event_status.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "ens_purchase_intents",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("wallet_address", sa.String(length=42), nullable=False),
        sa.Column("label", sa.String(length=255), nullable=False),
        sa.Column("tld", sa.String(length=64), nullable=False),
        sa.Column("domain_name", sa.String(length=320), nullable=False),
        sa.Column("duration_seconds", sa.Integer(), nullable=False),
        sa.Column("status", intent_status, nullable=False),
        sa.Column("commit_tx_hash", sa.String(length=66), nullable=True),
        sa.Column("register_tx_hash", sa.String(length=66), nullable=True),
        sa.Column("commit_by", sa.DateTime(timezone=True), nullable=True),
        sa.Column("committed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("registerable_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("register_by", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.String(length=1000), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("commit_tx_hash"),
        sa.UniqueConstraint("register_tx_hash"),
    )
    op.create_index("ix_ens_purchase_intents_user_id", "ens_purchase_intents", ["user_id"])
    op.create_index(
        "ix_ens_purchase_intents_domain_name", "ens_purchase_intents", ["domain_name"]
    )
    op.create_index("ix_ens_purchase_intents_status", "ens_purchase_intents", ["status"])
    op.create_index("ix_ens_purchase_intents_updated_at", "ens_purchase_intents", ["updated_at"])
    # Reconciliation candidate scan: open intents by deadline
    op.create_index(
        "ix_ens_purchase_intents_status_register_by",
        "ens_purchase_intents",
        ["status", "register_by"],
    )

    op.create_table(
        "ens_domains",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=320), nullable=False),
        sa.Column("label", sa.String(length=255), nullable=False),
        sa.Column("tld", sa.String(length=64), nullable=False),
        sa.Column("owner_address", sa.String(length=42), nullable=False),
        sa.Column("tx_hash", sa.String(length=66), nullable=False),
        sa.Column("intent_id", sa.Uuid(), nullable=False),
        sa.Column("is_primary", sa.Boolean(), nullable=False),
        sa.Column("registered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["intent_id"], ["ens_purchase_intents.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
        sa.UniqueConstraint("intent_id"),
    )
    op.create_index("ix_ens_domains_user_id", "ens_domains", ["user_id"])

    op.create_table(
        "ens_webhook_events",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("intent_id", sa.Uuid(), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("dedupe_key", sa.String(length=64), nullable=False),
        sa.Column("tx_hash", sa.String(length=66), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("result", sa.JSON(), nullable=True),
        sa.Column("status", webhook_event_status, nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False),
        sa.Column("last_error_code", sa.String(length=64), nullable=True),
        sa.Column("last_error_message", sa.String(length=1000), nullable=True),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dead_lettered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("dedupe_key"),
    )
    op.create_index("ix_ens_webhook_events_intent_id", "ens_webhook_events", ["intent_id"])
    op.create_index("ix_ens_webhook_events_status", "ens_webhook_events", ["status"])
    # Retry sweep: failed rows ordered by next_retry_at
    op.create_index(
        "ix_ens_webhook_events_status_next_retry_at",
        "ens_webhook_events",
        ["status", "next_retry_at"],
    )


def downgrade() -> None:
    """Drop purchase intent, domain and webhook ledger tables."""
    op.drop_table("ens_webhook_events")
    op.drop_table("ens_domains")
    op.drop_table("ens_purchase_intents")
    webhook_event_status.drop(op.get_bind(), checkfirst=True)
    intent_status.drop(op.get_bind(), checkfirst=True)
