import os
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.pool import StaticPool

from app.db.models import Contact, LinkPrecedence
from app.db.session import Database
from app.identity.locks import KeyedLock
from app.identity.service import IdentityService

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture()
def database():
    """In-memory SQLite database with all tables created."""
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    db = Database(engine)
    db.create_schema()
    yield db
    db.dispose()


@pytest.fixture()
def service(database: Database) -> IdentityService:
    return IdentityService(database, KeyedLock(timeout_seconds=2.0), max_conflict_retries=2)


@pytest.fixture()
def seed_contact(database: Database):
    """Insert a committed contact with an explicit ``created_at``.

    ``minutes`` is the offset from a fixed base time in the past, so seeded
    contacts are always older than anything the resolver creates.
    """

    def _seed(
        email: str | None = None,
        phone_number: str | None = None,
        *,
        linked_id: int | None = None,
        minutes: int = 0,
        deleted: bool = False,
    ) -> int:
        created_at = BASE_TIME + timedelta(minutes=minutes)
        with database.transaction() as session:
            contact = Contact(
                email=email,
                phone_number=phone_number,
                linked_id=linked_id,
                link_precedence=(
                    LinkPrecedence.SECONDARY.value if linked_id is not None else LinkPrecedence.PRIMARY.value
                ),
                created_at=created_at,
                updated_at=created_at,
                deleted_at=created_at if deleted else None,
            )
            session.add(contact)
            session.flush()
            return contact.id

    return _seed


@pytest.fixture()
def fetch_contacts(database: Database):
    """Return a snapshot of every contact row as plain dicts, ordered by id."""

    def _fetch() -> list[dict]:
        with database.transaction() as session:
            rows = session.execute(select(Contact).order_by(Contact.id)).scalars().all()
            return [
                {
                    "id": c.id,
                    "email": c.email,
                    "phone_number": c.phone_number,
                    "linked_id": c.linked_id,
                    "link_precedence": c.link_precedence,
                }
                for c in rows
            ]

    return _fetch


@pytest.fixture()
def count_contacts(database: Database):
    def _count() -> int:
        with database.transaction() as session:
            return session.execute(select(func.count()).select_from(Contact)).scalar_one()

    return _count


@pytest.fixture
def client(service: IdentityService, monkeypatch: pytest.MonkeyPatch) -> TestClient:
    """TestClient whose identity service runs on the in-memory database."""
    monkeypatch.setenv("DATABASE_URL", "sqlite+pysqlite:///:memory:")

    from app.core.settings import get_settings

    get_settings.cache_clear()

    from app.api.deps import get_identity_service
    from app.main import app

    app.dependency_overrides[get_identity_service] = lambda: service
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    get_settings.cache_clear()
    os.environ.pop("DATABASE_URL", None)
