"""
Engine and session management for the sweeper's storage.

Uses SWEEPER_DB_URL / DATABASE_URL for PostgreSQL when set; otherwise SQLite
(SWEEPER_DB_PATH or sweeper.db). One Database per process is shared by the
registry, the ledger and the secret store.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from backend_sweeper.config.env import get_database_url
from backend_sweeper.core.exceptions import PersistenceError
from backend_sweeper.database.tables import Base
from backend_sweeper.sweeper_logging import get_logger

logger = get_logger(__name__)

# Seconds SQLite waits on a locked database file before raising.
SQLITE_BUSY_TIMEOUT_SEC = 30


def _safe_url(url: str) -> str:
    return url.split("?")[0].split("//")[-1].split("@")[-1]


class Database:
    """Engine plus session factory for one database URL."""

    def __init__(self, url: str | None = None) -> None:
        self.url = url or get_database_url()
        connect_args: dict = {}
        if self.url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = SQLITE_BUSY_TIMEOUT_SEC
        self.engine = create_engine(self.url, connect_args=connect_args, pool_pre_ping=True)
        if self.url.startswith("sqlite"):
            event.listen(self.engine, "connect", _sqlite_on_connect)
        self._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        logger.info("database_engine", url=_safe_url(self.url))

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """
        Context manager for a single session. Commits on success, rolls back on error.

        IntegrityError propagates unchanged so callers can map uniqueness
        conflicts; other SQLAlchemy failures surface as PersistenceError.
        """
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except IntegrityError:
            session.rollback()
            raise
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"database operation failed: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def init_db(self) -> None:
        """Create all tables if they do not exist. Safe to call on every startup."""
        try:
            Base.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as e:
            logger.exception("database_init_failed", error=str(e))
            raise PersistenceError(f"schema creation failed: {e}") from e
        logger.info("database_init_db", url=_safe_url(self.url))

    def dispose(self) -> None:
        self.engine.dispose()


def _sqlite_on_connect(dbapi_connection, connection_record) -> None:
    """WAL lets the API read while the worker writes."""
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
    finally:
        cursor.close()
