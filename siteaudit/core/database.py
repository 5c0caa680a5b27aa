"""
SQLite engine and session management.

Each database file gets one engine and one write lock for the life of the
process. Connections are opened in WAL mode with foreign keys enforced so
child rows cascade with their parent audit or crawl.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

import structlog
from sqlalchemy import Engine, create_engine, event, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from siteaudit.core.exceptions import StorageError

logger = structlog.get_logger(__name__)


class AuditsBase(DeclarativeBase):
    """Base class for tables in the global audits database."""
    pass


class ProjectBase(DeclarativeBase):
    """Base class for tables in a per-domain project database."""
    pass


class LinkCacheBase(DeclarativeBase):
    """Base class for the link-status cache table."""
    pass


def utcnow() -> datetime:
    """Naive UTC timestamp; SQLite DATETIME columns drop tzinfo on read."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def create_sqlite_engine(path: Path, echo: bool = False) -> Engine:
    engine = create_engine(
        f"sqlite:///{path}",
        echo=echo,
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, connection_record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()

    return engine


class SQLiteStore:
    """
    Owns one SQLite file: engine, session factory and the writer lock.

    Reads go through session(); every write goes through transaction(),
    which commits all statements issued inside it atomically or none.
    """

    def __init__(self, path: Path, base: type[DeclarativeBase]):
        path.parent.mkdir(parents=True, exist_ok=True)
        self.path = path
        self.engine = create_sqlite_engine(path)
        self._session_factory = sessionmaker(self.engine, expire_on_commit=False, autoflush=False)
        self._write_lock = threading.RLock()
        try:
            base.metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            raise StorageError(f"Could not initialize database {path}: {exc}") from exc

    @contextmanager
    def session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
        except SQLAlchemyError as exc:
            raise StorageError(str(exc)) from exc
        finally:
            session.close()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        with self._write_lock:
            session = self._session_factory()
            try:
                yield session
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                logger.error("Database write failed", db=str(self.path), error=str(exc))
                raise StorageError(str(exc)) from exc
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    def ping(self) -> bool:
        with self.session() as session:
            session.execute(text("SELECT 1"))
        return True

    def close(self) -> None:
        self.engine.dispose()
