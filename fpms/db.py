"""SQLAlchemy engine, session factory and transaction boundary.

The core targets PostgreSQL in production and SQLite for local development
and tests. Every public operation runs inside exactly one
``Database.transaction()``: it commits on success and rolls back on any
exception, so partial writes are never observable. Storage failures are
translated into the error taxonomy after the rollback.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from fpms.errors import ConflictError, FPMSError, PersistenceError
from fpms.events import AuditRecord, AuditTrail
from fpms.models import Base
from fpms.types import EventType

logger = logging.getLogger(__name__)


def build_engine(url: str) -> Engine:
    """Create an Engine for ``url``.

    For SQLite in-memory URLs, use a StaticPool to keep a single connection
    alive across sessions, and turn on foreign key enforcement for SQLite.
    """
    kwargs: dict = {"future": True, "pool_pre_ping": True}
    if url.startswith("sqlite") and ":memory:" in url:
        kwargs.update({
            "poolclass": StaticPool,
            "connect_args": {"check_same_thread": False},
        })
    engine = create_engine(url, **kwargs)
    if url.startswith("sqlite"):
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Database:
    """Connection lifecycle for one storage backend.

    Attributes:
        engine: The SQLAlchemy engine
    """

    def __init__(self, url: Optional[str] = None, engine: Optional[Engine] = None):
        if engine is None:
            if url is None:
                from fpms.config import load_settings

                url = load_settings().database_url
            engine = build_engine(url)
        self.engine = engine
        self._sessionmaker = sessionmaker(bind=engine, future=True, expire_on_commit=False)

    def create_schema(self) -> None:
        """Create all tables that do not exist yet."""
        Base.metadata.create_all(self.engine)

    def drop_schema(self) -> None:
        Base.metadata.drop_all(self.engine)

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Yield a session bound to one transaction.

        Raises:
            ConflictError: If the storage layer rejected the write on a
                uniqueness guard (the loser of a write race)
            PersistenceError: If the storage layer failed otherwise
        """
        session = self._sessionmaker()
        try:
            yield session
            session.commit()
        except FPMSError:
            session.rollback()
            raise
        except IntegrityError as e:
            session.rollback()
            logger.warning("Integrity violation; transaction rolled back: %s", e.orig)
            raise ConflictError(
                "The record was changed by another request. Please reload and try again.",
                retryable=True,
            ) from e
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("DB session error; transaction rolled back", exc_info=True)
            raise PersistenceError("The data store is unavailable. No changes were saved.") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def unit_of_work(self, trail: Optional[AuditTrail] = None) -> Iterator["UnitOfWork"]:
        """Run one transaction and publish its audit records after commit."""
        with self.transaction() as session:
            uow = UnitOfWork(session)
            yield uow
        if trail is not None:
            trail.emit_all(uow.records)


@dataclass
class UnitOfWork:
    """A transaction's session plus the audit records it produced."""
    session: Session
    records: List[AuditRecord] = field(default_factory=list)

    def record(
        self,
        actor_id: Optional[int],
        action: EventType,
        entity_table: str,
        entity_id: Optional[int],
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.records.append(AuditRecord(actor_id, action, entity_table, entity_id, old_value, new_value))

    def extend(self, records: List[AuditRecord]) -> None:
        self.records.extend(records)


__all__ = ["Database", "UnitOfWork", "build_engine"]
