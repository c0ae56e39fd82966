"""create_internal_ops_audit_events

Revision ID: 8c2e4b6d1a53
Revises: 3f9a1c7d2b10
Create Date: 2026-10-18 14:37:05.118204

"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "8c2e4b6d1a53"
down_revision: Union[str, Sequence[str], None] = "3f9a1c7d2b10"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the operator audit table and the retention indexes on the ledger."""
    op.create_table(
        "internal_ops_audit_events",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("operation", sa.String(length=120), nullable=False),
        sa.Column("outcome", sa.String(length=24), nullable=False),
        sa.Column("actor", sa.String(length=120), nullable=True),
        sa.Column("request_method", sa.String(length=16), nullable=True),
        sa.Column("request_path", sa.String(length=255), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("result", sa.JSON(), nullable=True),
        sa.Column("error_code", sa.String(length=64), nullable=True),
        sa.Column("error_message", sa.String(length=1000), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_internal_ops_audit_events_operation_created_at",
        "internal_ops_audit_events",
        ["operation", "created_at"],
    )
    op.create_index(
        "ix_internal_ops_audit_events_created_at", "internal_ops_audit_events", ["created_at"]
    )

    # Retention scans: finished rows by the time they finished
    op.create_index(
        "ix_ens_webhook_events_status_processed_at",
        "ens_webhook_events",
        ["status", "processed_at"],
    )
    op.create_index(
        "ix_ens_webhook_events_status_dead_lettered_at",
        "ens_webhook_events",
        ["status", "dead_lettered_at"],
    )


def downgrade() -> None:
    """Drop the operator audit table and the ledger retention indexes."""
    op.drop_index("ix_ens_webhook_events_status_dead_lettered_at", "ens_webhook_events")
    op.drop_index("ix_ens_webhook_events_status_processed_at", "ens_webhook_events")
    op.drop_table("internal_ops_audit_events")
