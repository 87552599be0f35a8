"""Database initialization and session management.

``Database`` owns the engine and hands out unit-of-work sessions that commit
on success and roll back on failure. SQLAlchemy errors surface as
``PersistenceFailure``.
"""

import logging
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, func, select

from .config import DatabaseSettings
from .exceptions import PersistenceFailure
from .schemas.database import (
    Agent,
    AgentAssignment,
    AgentPerformance,
    DistributionRecord,
    ExecutionLogEntry,
    Job,
)

logger = logging.getLogger(__name__)

TABLES = (Job, Agent, DistributionRecord, AgentAssignment, AgentPerformance,
          ExecutionLogEntry)


class Database:
    """Engine holder and unit-of-work factory."""

    def __init__(self, url: str, echo: bool = False, engine: Engine | None = None):
        self.url = url
        self.engine = engine or _build_engine(url, echo)

    @classmethod
    def from_settings(cls, settings: DatabaseSettings) -> "Database":
        """Create a database from settings."""
        return cls(settings.url, echo=settings.echo_sql)

    def create_all(self) -> None:
        """Create all tables. Safe to call multiple times."""
        SQLModel.metadata.create_all(self.engine)
        logger.info(f"Database schema ready at {self.engine.url}")

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """Unit of work: commit on success, roll back on error.

        Usage:
            with database.session() as session:
                session.add(entity)

        Raises:
            PersistenceFailure: If the data store rejects the work

        """
        session = Session(self.engine, expire_on_commit=False)
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceFailure(str(e)) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def table_counts(self) -> dict[str, int]:
        """Row counts per table, used to verify the schema."""
        counts = {}
        with self.session() as session:
            for table in TABLES:
                statement = select(func.count()).select_from(table)
                counts[table.__tablename__] = session.exec(statement).one()
        return counts

    def dispose(self) -> None:
        """Release pooled connections."""
        self.engine.dispose()


def _build_engine(url: str, echo: bool) -> Engine:
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(url, echo=echo, **kwargs)
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        return engine
    return create_engine(url, echo=echo, pool_pre_ping=True)


def _enable_sqlite_foreign_keys(
    dbapi_connection: sqlite3.Connection, _: object
) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


__all__ = ["Database"]
