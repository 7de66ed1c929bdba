"""Event type constants for the contact audit trail."""
from __future__ import annotations

EVENT_PRIMARY_CREATED = "primary_created"
EVENT_SECONDARY_CREATED = "secondary_created"
EVENT_PRIMARY_DEMOTED = "primary_demoted"
EVENT_SECONDARIES_REPOINTED = "secondaries_repointed"

VALID_EVENT_TYPES: frozenset[str] = frozenset({
    EVENT_PRIMARY_CREATED,
    EVENT_SECONDARY_CREATED,
    EVENT_PRIMARY_DEMOTED,
    EVENT_SECONDARIES_REPOINTED,
})
