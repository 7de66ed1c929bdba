"""Canonical response shape for a resolved cluster."""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from app.db.models import Contact
from app.identity.exceptions import InvariantViolation


@dataclass(frozen=True)
class IdentityView:
    primary_contact_id: int
    emails: list[str] = field(default_factory=list)
    phone_numbers: list[str] = field(default_factory=list)
    secondary_contact_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "primaryContactId": self.primary_contact_id,
            "emails": list(self.emails),
            "phoneNumbers": list(self.phone_numbers),
            "secondaryContactIds": list(self.secondary_contact_ids),
        }


def build_response(cluster: Sequence[Contact]) -> IdentityView:
    """Project *cluster* onto its canonical view.

    The primary's own email and phone come first, followed by the values
    of each secondary in ascending ``created_at`` order.  Every value
    appears once.  Raises ``InvariantViolation`` unless the cluster holds
    exactly one primary and every other member links to it.
    """
    if not cluster:
        raise InvariantViolation("Cannot build a view of an empty cluster")

    primaries = [c for c in cluster if c.is_primary]
    if len(primaries) != 1:
        raise InvariantViolation(f"Cluster has {len(primaries)} primary contacts, expected 1")
    primary = primaries[0]

    secondaries = sorted(
        (c for c in cluster if not c.is_primary),
        key=lambda c: (c.created_at, c.id),
    )
    for contact in secondaries:
        if contact.linked_id != primary.id:
            raise InvariantViolation(
                f"Contact {contact.id} links to {contact.linked_id}, not primary {primary.id}"
            )

    emails: list[str] = []
    phone_numbers: list[str] = []
    for contact in (primary, *secondaries):
        if contact.email and contact.email not in emails:
            emails.append(contact.email)
        if contact.phone_number and contact.phone_number not in phone_numbers:
            phone_numbers.append(contact.phone_number)

    return IdentityView(
        primary_contact_id=primary.id,
        emails=emails,
        phone_numbers=phone_numbers,
        secondary_contact_ids=[c.id for c in secondaries],
    )
