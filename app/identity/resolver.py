"""Cluster resolver: create, attach or merge identity clusters.

Given an email and/or phone number, the resolver finds every live contact
matching either value, folds all clusters those contacts belong to into
the oldest primary, and records the fragment as a new secondary when it
carries a contact point the cluster does not know yet.

The resolver works on one ``ContactRepository`` bound to one transaction;
committing or rolling back is the caller's job.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum

from sqlalchemy.orm import Session

from app.audit.audit_log import record_event
from app.audit.events import (
    EVENT_PRIMARY_CREATED,
    EVENT_PRIMARY_DEMOTED,
    EVENT_SECONDARIES_REPOINTED,
    EVENT_SECONDARY_CREATED,
)
from app.db.models import Contact, LinkPrecedence
from app.db.repositories import ContactRepository
from app.identity.exceptions import ConcurrentModification, InvalidRequest, InvariantViolation

logger = logging.getLogger(__name__)

AUDIT_ACTOR = "identify"


class Outcome(StrEnum):
    CREATED = "created"
    ATTACHED = "attached"
    MERGED = "merged"
    UNCHANGED = "unchanged"


@dataclass
class Resolution:
    """Final cluster (oldest first) plus what the resolver did to reach it."""

    cluster: list[Contact]
    outcome: Outcome
    created_contact_id: int | None = None
    demoted_ids: tuple[int, ...] = ()


class ClusterResolver:
    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.contacts = ContactRepository(db_session)

    def resolve(self, email: str | None, phone_number: str | None) -> Resolution:
        if not email and not phone_number:
            raise InvalidRequest("Either email or phoneNumber is required")

        matches = self.contacts.find_by_email_or_phone(email, phone_number)
        if not matches:
            contact = self.contacts.create_contact(email, phone_number, None, LinkPrecedence.PRIMARY)
            record_event(self.db, EVENT_PRIMARY_CREATED, AUDIT_ACTOR, contact_id=contact.id)
            return Resolution(cluster=[contact], outcome=Outcome.CREATED, created_contact_id=contact.id)

        primaries = self._lock_owning_primaries(matches)
        cluster = self._load_clusters(primaries)

        survivor = primaries[0]
        demoted: list[int] = []
        if len(primaries) > 1:
            for primary in primaries[1:]:
                self._fold_into(primary, survivor)
                demoted.append(primary.id)
            cluster = self.contacts.find_cluster(survivor.id)

        created_id = None
        if self._is_novel(cluster, email, phone_number):
            contact = self.contacts.create_contact(
                email, phone_number, survivor.id, LinkPrecedence.SECONDARY
            )
            record_event(
                self.db, EVENT_SECONDARY_CREATED, AUDIT_ACTOR,
                contact_id=contact.id, related_contact_id=survivor.id,
            )
            created_id = contact.id
            cluster = self.contacts.find_cluster(survivor.id)

        if demoted:
            outcome = Outcome.MERGED
        elif created_id is not None:
            outcome = Outcome.ATTACHED
        else:
            outcome = Outcome.UNCHANGED

        return Resolution(
            cluster=cluster,
            outcome=outcome,
            created_contact_id=created_id,
            demoted_ids=tuple(demoted),
        )

    def _lock_owning_primaries(self, matches: list[Contact]) -> list[Contact]:
        """Row-lock the primaries owning *matches*, oldest first."""
        primary_ids: set[int] = set()
        for contact in matches:
            owner = contact.primary_id
            if owner is None:
                raise InvariantViolation(f"Secondary contact {contact.id} has no linked primary")
            primary_ids.add(owner)

        primaries = self.contacts.lock_primaries(primary_ids)
        missing = primary_ids - {p.id for p in primaries}
        if missing:
            raise InvariantViolation(f"Linked primaries {sorted(missing)} do not exist")
        if not all(p.is_primary for p in primaries):
            # Another transaction demoted one of these primaries between our
            # seed lookup and the row lock.
            raise ConcurrentModification("Cluster changed while resolving; retry")
        return primaries

    def _load_clusters(self, primaries: list[Contact]) -> list[Contact]:
        by_id: dict[int, Contact] = {}
        for primary in primaries:
            members = self.contacts.find_cluster(primary.id)
            if not any(c.id == primary.id for c in members):
                raise InvariantViolation(f"Cluster of primary {primary.id} is missing its primary")
            for contact in members:
                by_id.setdefault(contact.id, contact)
        return sorted(by_id.values(), key=lambda c: (c.created_at, c.id))

    def _fold_into(self, primary: Contact, survivor: Contact) -> None:
        # Re-point before demoting so no secondary ever references a secondary.
        moved = self.contacts.repoint(primary.id, survivor.id)
        if moved:
            record_event(
                self.db, EVENT_SECONDARIES_REPOINTED, AUDIT_ACTOR,
                contact_id=primary.id, related_contact_id=survivor.id, detail=f"moved={moved}",
            )
        self.contacts.demote(primary.id, survivor.id)
        record_event(
            self.db, EVENT_PRIMARY_DEMOTED, AUDIT_ACTOR,
            contact_id=primary.id, related_contact_id=survivor.id,
        )
        logger.debug("Demoted primary %s under %s (moved %d secondaries)", primary.id, survivor.id, moved)

    @staticmethod
    def _is_novel(cluster: list[Contact], email: str | None, phone_number: str | None) -> bool:
        email_known = not email or any(c.email == email for c in cluster)
        phone_known = not phone_number or any(c.phone_number == phone_number for c in cluster)
        return not (email_known and phone_known)
