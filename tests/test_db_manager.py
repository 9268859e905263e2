"""Tests for the DatabaseManager."""

import pytest
from sqlalchemy import text

from keypool.db.manager import DatabaseManager
from keypool.db.models import Credential


class TestDatabaseManager:
    """Tests for DatabaseManager."""

    def test_init_db(self, temp_db_path: str) -> None:
        """Test database initialization."""
        manager = DatabaseManager(database_url=f"sqlite:///{temp_db_path}")
        manager.init_db()

        assert manager.health_check()
        manager.close()

    def test_health_check(self, db_manager: DatabaseManager) -> None:
        """Test health check."""
        assert db_manager.health_check() is True

    def test_sqlite_pragmas(self, db_manager: DatabaseManager) -> None:
        """Test WAL and foreign keys are enabled on new connections."""
        with db_manager.engine.connect() as conn:
            assert conn.execute(text("PRAGMA journal_mode")).scalar() == "wal"
            assert conn.execute(text("PRAGMA foreign_keys")).scalar() == 1

    def test_session_context_manager(self, db_manager: DatabaseManager) -> None:
        """Test session context manager commits."""
        with db_manager.get_session() as session:
            session.add(Credential(tenant_id="t1", name="test-session", api_key="k"))

        with db_manager.get_session() as session:
            result = session.query(Credential).filter_by(name="test-session").first()
            assert result is not None

    def test_session_rollback_on_exception(self, db_manager: DatabaseManager) -> None:
        """Test that sessions rollback on exception."""
        with pytest.raises(ValueError):
            with db_manager.get_session() as session:
                session.add(Credential(tenant_id="t1", name="test-rollback", api_key="k"))
                raise ValueError("Simulated error")

        with db_manager.get_session() as session:
            result = session.query(Credential).filter_by(name="test-rollback").first()
            assert result is None

    def test_in_memory_database(self) -> None:
        """Test an in-memory URL needs no data directory."""
        manager = DatabaseManager(database_url="sqlite:///:memory:")
        assert manager.is_sqlite is True
        assert manager.health_check() is True
        manager.close()

    def test_in_memory_database_is_shared_across_sessions(self) -> None:
        """Test rows written in one session are visible to the next."""
        manager = DatabaseManager(database_url="sqlite:///:memory:")
        assert manager.is_in_memory is True
        manager.init_db()

        with manager.get_session() as session:
            session.add(Credential(tenant_id="t1", name="mem", api_key="k"))

        with manager.get_session() as session:
            assert session.query(Credential).filter_by(name="mem").count() == 1
        manager.close()

    def test_busy_timeout(self, temp_db_path: str) -> None:
        """Test the configured lock wait is applied to each connection."""
        manager = DatabaseManager(database_url=f"sqlite:///{temp_db_path}", busy_timeout_ms=1234)
        assert manager.is_in_memory is False

        with manager.engine.connect() as conn:
            assert conn.execute(text("PRAGMA busy_timeout")).scalar() == 1234
        manager.close()
