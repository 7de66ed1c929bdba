"""Append-only audit logger for contact linkage changes.

Provides ``record_event()`` to persist ``AuditEvent`` rows.
All writes are immutable (``immutable=True`` always).

Safety: contact points (emails, phone numbers) are never written to the
audit trail or to the log. Only ids, event_type and actor are kept.
"""
from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.audit.events import VALID_EVENT_TYPES
from app.db.models import AuditEvent

logger = logging.getLogger(__name__)


def record_event(
    db_session: Session,
    event_type: str,
    actor: str,
    contact_id: int | None = None,
    related_contact_id: int | None = None,
    detail: str | None = None,
) -> AuditEvent:
    """Create and persist an immutable ``AuditEvent``.

    Raises ``ValueError`` for invalid inputs.  Flushes but does **not**
    commit; the caller controls the transaction boundary.
    """
    if event_type not in VALID_EVENT_TYPES:
        raise ValueError(
            f"Invalid event_type {event_type!r}; "
            f"must be one of {sorted(VALID_EVENT_TYPES)}"
        )

    if not actor or not actor.strip():
        raise ValueError("actor must be a non-empty string")

    event = AuditEvent(
        event_type=event_type,
        actor=actor,
        contact_id=contact_id,
        related_contact_id=related_contact_id,
        detail=detail,
        immutable=True,
    )
    db_session.add(event)
    db_session.flush()

    logger.debug(
        "Audit event recorded: type=%s actor=%s contact=%s related=%s",
        event_type, actor, contact_id, related_contact_id,
    )
    return event


def get_contact_history(
    db_session: Session,
    contact_id: int,
) -> list[AuditEvent]:
    """Return all ``AuditEvent`` rows touching *contact_id*, oldest first."""
    stmt = (
        select(AuditEvent)
        .where(
            (AuditEvent.contact_id == contact_id)
            | (AuditEvent.related_contact_id == contact_id)
        )
        .order_by(AuditEvent.timestamp.asc())
    )
    return list(db_session.execute(stmt).scalars().all())


def get_events_by_type(
    db_session: Session,
    event_type: str,
) -> list[AuditEvent]:
    """Return all ``AuditEvent`` rows of *event_type*, ordered by timestamp."""
    if event_type not in VALID_EVENT_TYPES:
        raise ValueError(
            f"Invalid event_type {event_type!r}; "
            f"must be one of {sorted(VALID_EVENT_TYPES)}"
        )
    stmt = (
        select(AuditEvent)
        .where(AuditEvent.event_type == event_type)
        .order_by(AuditEvent.timestamp.asc())
    )
    return list(db_session.execute(stmt).scalars().all())
