"""Database connection manager for the durable credential store."""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

from sqlalchemy import Engine, create_engine, event, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from keypool.db.base import Base

logger = logging.getLogger(__name__)


class DatabaseManager:
    """
    Owns the engine and hands out short transactional sessions.

    Quota counters, exclusions and the active-credential flag are all
    written through ``get_session``; each block is one transaction.
    """

    def __init__(
        self,
        database_url: str = "sqlite:///data/keypool.db",
        echo: bool = False,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """
        Initialize the database manager.

        Args:
            database_url: SQLAlchemy database URL
            echo: Enable SQL echo logging
            busy_timeout_ms: How long a SQLite writer waits for a competing lock
        """
        self._database_url = database_url
        self._echo = echo
        self._busy_timeout_ms = busy_timeout_ms
        self._engine: Engine | None = None
        self._session_factory: sessionmaker[Session] | None = None

    @property
    def engine(self) -> Engine:
        """Get or create the database engine."""
        if self._engine is None:
            self._engine = self._create_engine()
        return self._engine

    @property
    def is_sqlite(self) -> bool:
        return self._database_url.startswith("sqlite")

    @property
    def is_in_memory(self) -> bool:
        return self.is_sqlite and ":memory:" in self._database_url

    def _create_engine(self) -> Engine:
        kwargs: dict[str, Any] = {"echo": self._echo, "pool_pre_ping": True}

        if self.is_in_memory:
            # One shared connection, otherwise every session sees an empty database
            kwargs["poolclass"] = StaticPool
            kwargs["connect_args"] = {"check_same_thread": False}
        elif self._database_url.startswith("sqlite:///"):
            Path(self._database_url.replace("sqlite:///", "")).parent.mkdir(parents=True, exist_ok=True)

        engine = create_engine(self._database_url, **kwargs)

        if self.is_sqlite:
            self._configure_sqlite_pragmas(engine)

        return engine

    def _configure_sqlite_pragmas(self, engine: Engine) -> None:
        busy_timeout = self._busy_timeout_ms

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record) -> None:  # type: ignore
            cursor = dbapi_connection.cursor()
            # WAL lets selection reads proceed while an activation swap is writing
            cursor.execute("PRAGMA journal_mode=WAL")
            # Models and rate windows cascade with their credential
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA synchronous=NORMAL")
            # Concurrent record_success calls queue instead of failing
            cursor.execute(f"PRAGMA busy_timeout={busy_timeout}")
            cursor.close()

        logger.debug(f"SQLite pragmas configured (busy_timeout={busy_timeout}ms)")

    @property
    def session_factory(self) -> sessionmaker[Session]:
        """Get or create the session factory."""
        if self._session_factory is None:
            # Loaded rows stay readable after commit; the selector works on them detached
            self._session_factory = sessionmaker(
                bind=self.engine,
                autoflush=False,
                expire_on_commit=False,
            )
        return self._session_factory

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        Open a session that commits on success and rolls back on error.

        Usage:
            with db_manager.get_session() as session:
                CredentialRepository(session).list_credentials(tenant_id)
        """
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def init_db(self) -> None:
        """Create missing tables."""
        Base.metadata.create_all(bind=self.engine)
        logger.info(f"Database ready: {', '.join(sorted(Base.metadata.tables))}")

    def health_check(self) -> bool:
        """True when a trivial query succeeds."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False

    def close(self) -> None:
        """Dispose of the engine; the next use reconnects."""
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("Database connection closed")
