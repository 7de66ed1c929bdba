"""Create contacts table

Revision ID: 0001_create_contacts
Revises:
Create Date: 2026-10-19

"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "0001_create_contacts"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_LIVE_ROWS = sa.text("deleted_at IS NULL")


def upgrade() -> None:
    op.create_table(
        "contacts",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("phone_number", sa.String(length=20), nullable=True),
        sa.Column("linked_id", sa.Integer(), nullable=True),
        sa.Column("link_precedence", sa.String(length=10), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["linked_id"], ["contacts.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "email IS NOT NULL OR phone_number IS NOT NULL",
            name="ck_contacts_contact_point_required",
        ),
        sa.CheckConstraint(
            "link_precedence IN ('primary', 'secondary')",
            name="ck_contacts_link_precedence",
        ),
        sa.CheckConstraint(
            "(link_precedence = 'primary' AND linked_id IS NULL) OR "
            "(link_precedence = 'secondary' AND linked_id IS NOT NULL)",
            name="ck_contacts_link_shape",
        ),
        sa.CheckConstraint("linked_id IS NULL OR linked_id <> id", name="ck_contacts_not_self_linked"),
    )
    op.create_index(
        "ix_contacts_email", "contacts", ["email"],
        postgresql_where=_LIVE_ROWS, sqlite_where=_LIVE_ROWS,
    )
    op.create_index(
        "ix_contacts_phone_number", "contacts", ["phone_number"],
        postgresql_where=_LIVE_ROWS, sqlite_where=_LIVE_ROWS,
    )
    op.create_index(
        "ix_contacts_linked_id", "contacts", ["linked_id"],
        postgresql_where=_LIVE_ROWS, sqlite_where=_LIVE_ROWS,
    )


def downgrade() -> None:
    op.drop_index("ix_contacts_linked_id", table_name="contacts")
    op.drop_index("ix_contacts_phone_number", table_name="contacts")
    op.drop_index("ix_contacts_email", table_name="contacts")
    op.drop_table("contacts")
