"""Identity resolution entry point.

``IdentityService.resolve`` validates the incoming fragment, serializes
it against concurrent requests touching the same contact points, runs the
``ClusterResolver`` inside a single transaction and projects the result
with ``build_response``.

Failure policy
--------------
* ``InvalidRequest`` is raised before any connection is checked out.
* ``ConcurrentModification`` and PostgreSQL serialization / deadlock
  failures restart the whole transaction, up to ``max_conflict_retries``.
* Every other database error rolls the transaction back and surfaces as
  ``StoreUnavailable`` with the original exception chained.
* ``ConstraintViolation`` and ``InvariantViolation`` roll back and
  propagate unchanged; neither is retried.
"""
from __future__ import annotations

import logging

from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from app.core.settings import Settings, get_settings
from app.db.session import Database
from app.identity.exceptions import (
    ConcurrentModification,
    InvalidRequest,
    LockTimeout,
    StoreUnavailable,
)
from app.identity.locks import KeyedLock, acquire_advisory_locks, identity_lock_keys
from app.identity.resolver import ClusterResolver
from app.identity.view import IdentityView, build_response

logger = logging.getLogger(__name__)

# serialization_failure, deadlock_detected
_RETRYABLE_SQLSTATES = frozenset({"40001", "40P01"})
# lock_not_available (lock_timeout expired)
_LOCK_TIMEOUT_SQLSTATES = frozenset({"55P03"})


def _sqlstate(exc: DBAPIError) -> str | None:
    orig = exc.orig
    # psycopg 3 exposes ``sqlstate``; psycopg2 exposes ``pgcode``
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def validate_fragment(email: object, phone_number: object) -> tuple[str | None, str | None]:
    """Return the usable ``(email, phone_number)`` pair or raise ``InvalidRequest``.

    Empty strings count as absent.  Values are matched exactly as given.
    """
    for name, value in (("email", email), ("phoneNumber", phone_number)):
        if value is not None and not isinstance(value, str):
            raise InvalidRequest(f"{name} must be a string")
    email = email or None
    phone_number = phone_number or None
    if email is None and phone_number is None:
        raise InvalidRequest("Either email or phoneNumber is required")
    return email, phone_number


class IdentityService:
    """Resolve identity fragments into canonical cluster views."""

    def __init__(
        self,
        database: Database,
        locks: KeyedLock,
        *,
        lock_timeout_seconds: float | None = None,
        max_conflict_retries: int = 3,
    ) -> None:
        self.database = database
        self.locks = locks
        self.lock_timeout_seconds = (
            lock_timeout_seconds if lock_timeout_seconds is not None else locks.timeout_seconds
        )
        self.max_conflict_retries = max_conflict_retries

    @classmethod
    def from_settings(cls, database: Database, settings: Settings | None = None) -> IdentityService:
        settings = settings or get_settings()
        return cls(
            database,
            KeyedLock(settings.lock_timeout_seconds),
            lock_timeout_seconds=settings.lock_timeout_seconds,
            max_conflict_retries=settings.max_conflict_retries,
        )

    def resolve(self, email: str | None = None, phone_number: str | None = None) -> IdentityView:
        email, phone_number = validate_fragment(email, phone_number)
        keys = identity_lock_keys(email, phone_number)

        with self.locks.hold(keys):
            attempt = 0
            while True:
                try:
                    return self._resolve_once(email, phone_number, keys)
                except ConcurrentModification:
                    reason = "cluster changed"
                except DBAPIError as exc:
                    state = _sqlstate(exc)
                    if state in _LOCK_TIMEOUT_SQLSTATES:
                        raise LockTimeout("Timed out waiting for a database lock") from exc
                    if state not in _RETRYABLE_SQLSTATES:
                        logger.error("Identity resolution failed in the store", exc_info=True)
                        raise StoreUnavailable("Identity store operation failed") from exc
                    reason = f"sqlstate {state}"
                except PoolTimeoutError as exc:
                    raise LockTimeout("Timed out waiting for a database connection") from exc
                except SQLAlchemyError as exc:
                    logger.error("Identity resolution failed in the store", exc_info=True)
                    raise StoreUnavailable("Identity store operation failed") from exc

                attempt += 1
                if attempt > self.max_conflict_retries:
                    logger.error("Giving up after %d conflicting attempts (%s)", attempt, reason)
                    raise StoreUnavailable("Identity resolution kept conflicting with concurrent writers")
                logger.warning("Retrying identity resolution (attempt=%d, reason=%s)", attempt, reason)

    def _resolve_once(self, email: str | None, phone_number: str | None, keys: list[str]) -> IdentityView:
        with self.database.transaction() as session:
            acquire_advisory_locks(session, keys, self.lock_timeout_seconds)
            resolution = ClusterResolver(session).resolve(email, phone_number)
            view = build_response(resolution.cluster)

        logger.info(
            "Resolved identity: outcome=%s primary=%s secondaries=%d demoted=%s",
            resolution.outcome,
            view.primary_contact_id,
            len(view.secondary_contact_ids),
            list(resolution.demoted_ids),
        )
        return view
