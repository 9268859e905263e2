"""Pytest configuration and fixtures."""

import asyncio
import os
import tempfile
from collections.abc import Callable, Generator
from datetime import datetime, timedelta

import pytest

from keypool.catalog import ModelCatalog, ModelSpec
from keypool.db.manager import DatabaseManager
from keypool.db.repository import CredentialRepository
from keypool.health import HealthChecker
from keypool.pool import PoolManager


class FakeHealthChecker(HealthChecker):
    """Health checker returning canned results and recording calls."""

    def __init__(self, healthy: bool = True, delay: float = 0.0) -> None:
        self.healthy = healthy
        self.delay = delay
        self.results: dict[str, bool] = {}
        self.calls: list[tuple[str, str]] = []

    @property
    def name(self) -> str:
        return "fake"

    async def check(self, api_key: str, model_name: str) -> bool:
        self.calls.append((api_key, model_name))
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.results.get(model_name, self.healthy)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 6, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def temp_db_path() -> Generator[str, None, None]:
    """Create a temporary database file."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name
    yield db_path
    # Cleanup
    for suffix in ("", "-wal", "-shm"):
        try:
            os.unlink(db_path + suffix)
        except OSError:
            pass


@pytest.fixture
def db_manager(temp_db_path: str) -> Generator[DatabaseManager, None, None]:
    """Create a DatabaseManager with a temporary database."""
    manager = DatabaseManager(database_url=f"sqlite:///{temp_db_path}")
    manager.init_db()
    yield manager
    manager.close()


@pytest.fixture
def catalog() -> ModelCatalog:
    """Small catalog: x and y are verified, z needs a probe."""
    return ModelCatalog((
        ModelSpec("x", True, default_limit=100),
        ModelSpec("y", True, default_limit=100),
        ModelSpec("z", False, default_limit=100),
    ))


@pytest.fixture
def health_checker() -> FakeHealthChecker:
    return FakeHealthChecker()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def pool(
    db_manager: DatabaseManager,
    catalog: ModelCatalog,
    health_checker: FakeHealthChecker,
    clock: FakeClock,
) -> PoolManager:
    """PoolManager on the temporary database; its in-memory caches share the fake clock."""
    return PoolManager(
        db_manager,
        health_checker=health_checker,
        catalog=catalog,
        probe_timeout=0.5,
        clock=clock,
    )


@pytest.fixture
def add_credential(db_manager: DatabaseManager, catalog: ModelCatalog) -> Callable[..., str]:
    """
    Provision a credential with models.

    Models are given as (name, priority, limit, used) tuples; rate_limits,
    when given, applies to each of them.
    """

    def _add(
        tenant_id: str,
        name: str,
        priority: int = 1,
        models: list[tuple[str, int, int, int]] | None = None,
        is_active: bool = False,
        rate_limits: dict[str, int] | None = None,
    ) -> str:
        with db_manager.get_session() as session:
            repo = CredentialRepository(session, catalog)
            credential = repo.add_credential(
                tenant_id, name, f"key-{name}", priority=priority, is_active=is_active
            )
            for model_name, model_priority, limit, used in models or []:
                repo.add_model(
                    credential.id,
                    model_name,
                    priority=model_priority,
                    limit=limit,
                    used=used,
                    rate_limits=rate_limits,
                )
            return credential.id

    return _add
