"""Database engine and transactional session management.

Provides:
- Database: engine + session factory bound to one URL
- Database.session(): one atomic unit of work (commit on success,
  rollback on error, SQLAlchemy failures raised as PersistenceError)
"""

import logging
from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import PersistenceError
from .schema import Base

logger = logging.getLogger(__name__)


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Database:
    """Owns the SQLAlchemy engine and hands out transactional sessions."""

    def __init__(self, url: str, echo: bool = False):
        """Create the engine.

        Args:
            url: SQLAlchemy database URL
            echo: Log every SQL statement
        """
        self.url = url
        kwargs: dict = {"echo": echo, "future": True}

        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in url or url in ("sqlite://", "sqlite+pysqlite://"):
                # One shared connection so every session sees the same in-memory DB
                kwargs["poolclass"] = StaticPool
        else:
            kwargs["pool_pre_ping"] = True

        self.engine: Engine = create_engine(url, **kwargs)
        if url.startswith("sqlite"):
            event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)

        self._session_factory = sessionmaker(
            bind=self.engine,
            expire_on_commit=False,
        )

        logger.info(
            "Database initialized",
            extra={"dialect": self.engine.dialect.name},
        )

    def create_all(self) -> None:
        """Create every arena table that does not exist yet."""
        Base.metadata.create_all(self.engine)
        logger.info("Database tables ensured")

    def drop_all(self) -> None:
        Base.metadata.drop_all(self.engine)

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """
        Transactional scope around a series of operations.

        Usage:
            with database.session() as session:
                agent = session.get(Agent, agent_id)
                agent.cash_balance -= 100

        Yields:
            Session: SQLAlchemy session, committed on clean exit

        Raises:
            PersistenceError: If any SQLAlchemy operation or the commit fails
        """
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Database transaction failed: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()
