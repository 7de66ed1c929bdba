"""Connection pool and transaction scope.

``Database`` owns the SQLAlchemy engine (and therefore the connection
pool).  It is created once at application start-up, handed to the
components that need it, and disposed on shutdown.  Nothing here is a
module-level global.
"""
from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import Engine, create_engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.settings import Settings, get_settings
from app.db.base import Base

logger = logging.getLogger(__name__)


def _engine_options(settings: Settings) -> dict[str, Any]:
    url = make_url(settings.database_url)
    if url.get_backend_name() == "sqlite":
        options: dict[str, Any] = {
            "connect_args": {"check_same_thread": False},
            "hide_parameters": True,
        }
        if url.database in (None, "", ":memory:"):
            # A single shared connection, otherwise every checkout sees an empty database
            options["poolclass"] = StaticPool
        return options
    return {
        "pool_size": settings.database_pool_size,
        "max_overflow": settings.database_max_overflow,
        "pool_timeout": settings.database_pool_timeout,
        "pool_pre_ping": True,
        "hide_parameters": True,
    }


class Database:
    """Engine, bounded connection pool and session factory."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._session_factory = sessionmaker(
            bind=engine,
            autocommit=False,
            autoflush=False,
            class_=Session,
        )

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> Database:
        settings = settings or get_settings()
        return cls(create_engine(settings.database_url, **_engine_options(settings)))

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Yield a session bound to one connection and one transaction.

        Commits when the block exits normally and rolls back on any
        exception.  The connection goes back to the pool either way.
        """
        with self._session_factory() as session:
            with session.begin():
                yield session

    def session(self) -> Session:
        return self._session_factory()

    def create_schema(self) -> None:
        from app.db import models  # noqa: F401

        Base.metadata.create_all(bind=self.engine)
        logger.info("Database schema ensured (dialect=%s)", self.dialect_name)

    def dispose(self) -> None:
        self.engine.dispose()
        logger.info("Database connection pool disposed")
