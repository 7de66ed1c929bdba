from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text as sql_text,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base

_LIVE_ROWS = sql_text("deleted_at IS NULL")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LinkPrecedence(StrEnum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


class Contact(Base):
    """One row of identity data.

    A cluster is a primary contact plus every contact whose ``linked_id``
    points at it.  Linkage is exactly one level deep.  ``created_at`` is
    assigned client-side with microsecond resolution so that ordering is
    stable on every backend.
    """

    __tablename__ = "contacts"
    __table_args__ = (
        CheckConstraint(
            "email IS NOT NULL OR phone_number IS NOT NULL",
            name="ck_contacts_contact_point_required",
        ),
        CheckConstraint(
            "link_precedence IN ('primary', 'secondary')",
            name="ck_contacts_link_precedence",
        ),
        CheckConstraint(
            "(link_precedence = 'primary' AND linked_id IS NULL) OR "
            "(link_precedence = 'secondary' AND linked_id IS NOT NULL)",
            name="ck_contacts_link_shape",
        ),
        CheckConstraint("linked_id IS NULL OR linked_id <> id", name="ck_contacts_not_self_linked"),
        Index("ix_contacts_email", "email", postgresql_where=_LIVE_ROWS, sqlite_where=_LIVE_ROWS),
        Index("ix_contacts_phone_number", "phone_number", postgresql_where=_LIVE_ROWS, sqlite_where=_LIVE_ROWS),
        Index("ix_contacts_linked_id", "linked_id", postgresql_where=_LIVE_ROWS, sqlite_where=_LIVE_ROWS),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone_number: Mapped[str | None] = mapped_column(String(20), nullable=True)
    linked_id: Mapped[int | None] = mapped_column(
        ForeignKey("contacts.id", ondelete="SET NULL"), nullable=True
    )
    link_precedence: Mapped[str] = mapped_column(
        String(10), nullable=False, default=LinkPrecedence.PRIMARY.value
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def is_primary(self) -> bool:
        return self.link_precedence == LinkPrecedence.PRIMARY

    @property
    def primary_id(self) -> int | None:
        """Id of the primary owning this contact (itself when primary)."""
        return self.id if self.is_primary else self.linked_id

    def __repr__(self) -> str:
        return (
            f"<Contact(id={self.id}, precedence={self.link_precedence}, "
            f"linked_id={self.linked_id})>"
        )


class AuditEvent(Base):
    """Append-only record of structural changes to contact clusters.

    Rows are written inside the resolving transaction and roll back with it.
    """

    __tablename__ = "audit_events"

    audit_event_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    actor: Mapped[str] = mapped_column(
        String(128), nullable=False, default="system", server_default=sql_text("'system'"),
    )
    contact_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    related_contact_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    immutable: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=sql_text("true"),
    )
