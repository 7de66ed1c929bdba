"""Add audit_events table

Revision ID: 0002_add_audit_events
Revises: 0001_create_contacts
Create Date: 2026-10-19

"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "0002_add_audit_events"
down_revision: str | None = "0001_create_contacts"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "audit_events",
        sa.Column("audit_event_id", sa.Uuid(), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("actor", sa.String(length=128), server_default=sa.text("'system'"), nullable=False),
        sa.Column("contact_id", sa.Integer(), nullable=True),
        sa.Column("related_contact_id", sa.Integer(), nullable=True),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("immutable", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.PrimaryKeyConstraint("audit_event_id"),
    )
    op.create_index("ix_audit_events_contact_id", "audit_events", ["contact_id"])


def downgrade() -> None:
    op.drop_index("ix_audit_events_contact_id", table_name="audit_events")
    op.drop_table("audit_events")
