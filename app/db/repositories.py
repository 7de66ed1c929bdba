from __future__ import annotations

from collections.abc import Iterable
from typing import Generic, TypeVar

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from app.db import models
from app.db.models import LinkPrecedence, utcnow
from app.identity.exceptions import ConstraintViolation, InvariantViolation

ModelT = TypeVar("ModelT")


class BaseRepository(Generic[ModelT]):
    model: type[ModelT]

    def __init__(self, db: Session):
        self.db = db

    def create(self, **kwargs) -> ModelT:
        entity = self.model(**kwargs)
        self.db.add(entity)
        self.db.flush()
        return entity

    def get(self, entity_id) -> ModelT | None:
        return self.db.get(self.model, entity_id)

    def update(self, entity: ModelT, **kwargs) -> ModelT:
        for key, value in kwargs.items():
            setattr(entity, key, value)
        self.db.flush()
        return entity


class ContactRepository(BaseRepository[models.Contact]):
    """Contact store bound to the session of one transaction.

    Every read skips soft-deleted rows and returns contacts oldest first,
    with ``id`` breaking ties between identical ``created_at`` values.
    """

    model = models.Contact

    def _live(self):
        Contact = models.Contact
        return (
            select(Contact)
            .where(Contact.deleted_at.is_(None))
            .order_by(Contact.created_at.asc(), Contact.id.asc())
            .execution_options(populate_existing=True)
        )

    def find_by_email_or_phone(
        self,
        email: str | None,
        phone_number: str | None,
    ) -> list[models.Contact]:
        Contact = models.Contact
        conditions = []
        if email:
            conditions.append(Contact.email == email)
        if phone_number:
            conditions.append(Contact.phone_number == phone_number)
        if not conditions:
            return []
        stmt = self._live().where(or_(*conditions))
        return list(self.db.execute(stmt).scalars().all())

    def find_cluster(self, primary_id: int) -> list[models.Contact]:
        Contact = models.Contact
        stmt = self._live().where(or_(Contact.id == primary_id, Contact.linked_id == primary_id))
        return list(self.db.execute(stmt).scalars().all())

    def lock_primaries(self, primary_ids: Iterable[int]) -> list[models.Contact]:
        """Row-lock the given contacts and return them oldest first.

        ``FOR UPDATE`` is a no-op on SQLite, which serializes writers itself.
        """
        ids = sorted(set(primary_ids))
        if not ids:
            return []
        stmt = self._live().where(models.Contact.id.in_(ids)).with_for_update()
        return list(self.db.execute(stmt).scalars().all())

    def create_contact(
        self,
        email: str | None,
        phone_number: str | None,
        linked_id: int | None,
        precedence: LinkPrecedence,
    ) -> models.Contact:
        if not email and not phone_number:
            raise ConstraintViolation("A contact needs an email or a phone number")

        if precedence == LinkPrecedence.PRIMARY:
            if linked_id is not None:
                raise InvariantViolation("A primary contact cannot be linked")
        else:
            self._require_live_primary(linked_id)

        return self.create(
            email=email or None,
            phone_number=phone_number or None,
            linked_id=linked_id,
            link_precedence=precedence.value,
        )

    def demote(self, contact_id: int, new_primary_id: int) -> models.Contact:
        if contact_id == new_primary_id:
            raise InvariantViolation(f"Contact {contact_id} cannot be linked to itself")
        self._require_live_primary(new_primary_id)

        contact = self.get(contact_id)
        if contact is None or contact.deleted_at is not None:
            raise InvariantViolation(f"Contact {contact_id} does not exist")

        return self.update(
            contact,
            link_precedence=LinkPrecedence.SECONDARY.value,
            linked_id=new_primary_id,
            updated_at=utcnow(),
        )

    def repoint(self, old_primary_id: int, new_primary_id: int) -> int:
        """Move every live secondary of *old_primary_id* under *new_primary_id*."""
        if old_primary_id == new_primary_id:
            return 0
        self._require_live_primary(new_primary_id)

        Contact = models.Contact
        stmt = (
            update(Contact)
            .where(Contact.linked_id == old_primary_id, Contact.deleted_at.is_(None))
            .values(linked_id=new_primary_id, updated_at=utcnow())
            .execution_options(synchronize_session="fetch")
        )
        result = self.db.execute(stmt)
        self.db.flush()
        return result.rowcount or 0

    def _require_live_primary(self, contact_id: int | None) -> models.Contact:
        target = self.get(contact_id) if contact_id is not None else None
        if target is None or target.deleted_at is not None or not target.is_primary:
            raise InvariantViolation(
                f"Secondary contacts must link to a live primary (got {contact_id})"
            )
        return target
