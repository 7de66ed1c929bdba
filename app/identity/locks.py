"""Keyed mutual exclusion for identity resolution.

Two requests that carry the same email or the same phone number must not
run their read-decide-write sequences at the same time, otherwise both can
observe "no match" and create two primaries for one identity.

Locks are keyed by contact point (``email:<value>``, ``phone:<value>``)
and always taken in sorted key order so that two requests sharing several
keys cannot deadlock.

* ``KeyedLock`` serializes requests inside one process.  It is held
  around the whole transaction, commit included.
* ``acquire_advisory_locks`` serializes requests across processes on
  PostgreSQL with transaction-scoped advisory locks, released by the
  database at commit or rollback.
"""
from __future__ import annotations

import hashlib
import logging
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

from sqlalchemy import text
from sqlalchemy.orm import Session

from app.identity.exceptions import LockTimeout

logger = logging.getLogger(__name__)


def identity_lock_keys(email: str | None, phone_number: str | None) -> list[str]:
    """Return the sorted lock keys for the given contact points."""
    keys = []
    if email:
        keys.append(f"email:{email}")
    if phone_number:
        keys.append(f"phone:{phone_number}")
    return sorted(keys)


def advisory_lock_id(key: str) -> int:
    """Map *key* onto the signed 64-bit id space of ``pg_advisory_xact_lock``."""
    digest = hashlib.blake2b(key.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


def acquire_advisory_locks(session: Session, keys: Iterable[str], timeout_seconds: float) -> None:
    """Take transaction-scoped advisory locks for *keys* (PostgreSQL only)."""
    if session.get_bind().dialect.name != "postgresql":
        return

    timeout_ms = max(1, int(timeout_seconds * 1000))
    # SET does not take bind parameters; timeout_ms is an int we computed.
    session.execute(text(f"SET LOCAL lock_timeout = '{timeout_ms}ms'"))
    for key in sorted(set(keys)):
        session.execute(text("SELECT pg_advisory_xact_lock(:lock_id)"), {"lock_id": advisory_lock_id(key)})


@dataclass
class _Entry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    holders: int = 0


class KeyedLock:
    """Process-local lock table keyed by string.

    Entries are reference counted and dropped once nobody holds or waits
    for them, so the table only grows with concurrent traffic.
    """

    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        self._guard = threading.Lock()
        self._entries: dict[str, _Entry] = {}

    def _checkout(self, key: str) -> _Entry:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.holders += 1
            return entry

    def _checkin(self, key: str, entry: _Entry) -> None:
        with self._guard:
            entry.holders -= 1
            if entry.holders == 0:
                del self._entries[key]

    @contextmanager
    def hold(self, keys: Iterable[str]) -> Iterator[None]:
        """Hold every key in *keys* for the duration of the block.

        Raises ``LockTimeout`` if any key cannot be acquired within
        ``timeout_seconds``; keys already taken are released first.
        """
        acquired: list[tuple[str, _Entry]] = []
        try:
            for key in sorted(set(keys)):
                entry = self._checkout(key)
                if not entry.lock.acquire(timeout=self.timeout_seconds):
                    self._checkin(key, entry)
                    logger.warning("Timed out waiting for identity lock (held=%d)", len(acquired))
                    raise LockTimeout("Timed out waiting for an identity lock")
                acquired.append((key, entry))
            yield
        finally:
            for key, entry in reversed(acquired):
                entry.lock.release()
                self._checkin(key, entry)

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)
