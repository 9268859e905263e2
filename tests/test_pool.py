"""Tests for the pool facade and quota snapshots."""

from unittest.mock import patch

import pytest
from sqlalchemy import select

from keypool.cache.memory import InMemoryCache
from keypool.config import Settings
from keypool.db.models import RateWindow
from keypool.exclusions import HEALTH_CHECK_FAILED
from keypool.health import GeminiHealthChecker
from keypool.pool import PoolManager
from keypool.selector import QuotaSnapshot, percentage


class TestQuotaSnapshot:
    """Tests for aggregated quota."""

    def test_percentage_zero_limit(self) -> None:
        """Test percentage is zero when there is no limit."""
        assert percentage(0, 0) == 0.0
        assert percentage(25, 100) == 25.0

    @pytest.mark.asyncio
    async def test_sums_across_credentials(self, pool, add_credential) -> None:
        """Test totals are the sum over every same-named model of the tenant."""
        add_credential("t1", "A", priority=1, models=[("x", 1, 100, 30)])
        add_credential("t1", "B", priority=2, models=[("x", 1, 200, 10), ("y", 2, 100, 99)])
        add_credential("t2", "C", models=[("x", 1, 1000, 1000)])

        snapshot = await pool.get_quota_snapshot("t1", "x")

        assert snapshot.total_used == 40
        assert snapshot.total_limit == 300
        assert snapshot.percentage_used == 13.33
        assert len(snapshot.available_candidates) == 2

    @pytest.mark.asyncio
    async def test_unknown_model_is_empty(self, pool) -> None:
        """Test a name with no models yields an empty snapshot."""
        snapshot = await pool.get_quota_snapshot("t1", "x")

        assert (snapshot.total_used, snapshot.total_limit, snapshot.percentage_used) == (0, 0, 0.0)
        assert snapshot.available_candidates == []

    @pytest.mark.asyncio
    async def test_exhaustion_shows_full_usage(self, pool, add_credential) -> None:
        """Test a snapshot right after exhaustion shows 100 percent."""
        add_credential("t1", "A", models=[("x", 1, 100, 3)])

        await pool.get_quota_snapshot("t1", "x")
        await pool.report_exhausted("x", "t1", observed_limit=50)
        snapshot = await pool.get_quota_snapshot("t1", "x")

        assert snapshot.percentage_used == 100
        assert snapshot.available_candidates == []

    @pytest.mark.asyncio
    async def test_lapsed_window_counts_as_reset(self, pool, clock, add_credential) -> None:
        """Test totals agree with availability once the usage window has lapsed."""
        a = add_credential("t1", "A", models=[("x", 1, 2, 0)])
        await pool.report_success(a, "x")
        await pool.report_success(a, "x")
        full = await pool.get_quota_snapshot("t1", "x")

        clock.advance(days=1, seconds=1)
        reset = await pool.get_quota_snapshot("t1", "x")

        assert (full.percentage_used, len(full.available_candidates)) == (100.0, 0)
        assert (reset.total_used, reset.total_limit, reset.percentage_used) == (0, 2, 0.0)
        assert [c.credential_id for c in reset.available_candidates] == [a]
        assert (await pool.select("t1")).model_name == "x"

    @pytest.mark.asyncio
    async def test_snapshot_is_cached(self, pool, add_credential) -> None:
        """Test repeated reads within the TTL are served from the cache."""
        a = add_credential("t1", "A", models=[("x", 1, 100, 0)])

        first = await pool.get_quota_snapshot("t1", "x")
        await pool.report_success(a, "x")
        second = await pool.get_quota_snapshot("t1", "x")

        assert first.total_used == second.total_used == 0
        assert isinstance(second, QuotaSnapshot)

    @pytest.mark.asyncio
    async def test_candidates_ordered_by_priority_then_least_recent(self, pool, add_credential) -> None:
        """Test candidate order: credential priority, then oldest use first."""
        a = add_credential("t1", "A", priority=1, models=[("x", 1, 100, 0)])
        b = add_credential("t1", "B", priority=1, models=[("x", 1, 100, 0)])
        c = add_credential("t1", "C", priority=0, models=[("x", 1, 100, 0)])
        await pool.report_success(a, "x")

        snapshot = await pool.get_quota_snapshot("t1", "x")

        assert [cand.credential_id for cand in snapshot.available_candidates] == [c, b, a]

    @pytest.mark.asyncio
    async def test_snapshot_never_exposes_keys(self, pool, add_credential) -> None:
        """Test serialized snapshots carry no API keys."""
        add_credential("t1", "A", models=[("x", 1, 100, 0)])

        snapshot = await pool.get_quota_snapshot("t1", "x")

        assert "key-A" not in str(snapshot.to_dict())


class TestPoolManager:
    """Tests for the facade operations."""

    def test_exclusion_round_trip(self, pool) -> None:
        """Test exclusions are visible immediately and lifted immediately."""
        entry = pool.exclude_model("x", "cred-1", "t1", HEALTH_CHECK_FAILED)
        assert pool.is_model_excluded("x", "cred-1", "t1") is True

        assert pool.remove_exclusion(entry.id) is True
        assert pool.is_model_excluded("x", "cred-1", "t1") is False

    @pytest.mark.asyncio
    async def test_default_caches_follow_clock(self, db_manager, clock) -> None:
        """Test caches the manager builds itself expire on the injected clock."""
        pool = PoolManager(db_manager, clock=clock)
        await pool.tracker.ephemeral.set("k", "v", ttl_seconds=60)

        clock.advance(seconds=61)

        assert await pool.tracker.ephemeral.get("k") is None

    def test_owns_credential(self, pool, add_credential) -> None:
        """Test ownership is checked against the credential's tenant."""
        cred = add_credential("t1", "A")

        assert pool.owns_credential("t1", cred) is True
        assert pool.owns_credential("t2", cred) is False
        assert pool.owns_credential("t1", "missing") is False

    @pytest.mark.asyncio
    async def test_report_success_with_tokens(self, pool, db_manager, add_credential) -> None:
        """Test token counts reach the model's token window."""
        cred = add_credential("t1", "A", models=[("x", 1, 100, 0)], rate_limits={"tpm": 1000})

        assert await pool.report_success(cred, "x", tokens=250) is True

        with db_manager.get_session() as session:
            window = session.scalars(select(RateWindow)).one()
            assert (window.kind, window.used) == ("tpm", 250)

    @pytest.mark.asyncio
    async def test_report_exhausted_returns_rows(self, pool, add_credential) -> None:
        """Test the facade passes through the tracker's row count."""
        add_credential("t1", "A", models=[("x", 1, 100, 0)])
        add_credential("t1", "B", models=[("x", 1, 100, 0)])

        assert await pool.report_exhausted("x", "t1", 10) == 2

    @pytest.mark.asyncio
    async def test_sweep_exclusions(self, pool, clock, add_credential) -> None:
        """Test the facade sweeps due exclusions."""
        cred = add_credential("t1", "A", models=[("x", 1, 100, 0)])
        pool.exclude_model("x", cred, "t1", HEALTH_CHECK_FAILED)

        clock.advance(hours=1)
        stats = await pool.sweep_exclusions()

        assert stats["removed"] == 1

    @pytest.mark.asyncio
    async def test_from_settings(self, temp_db_path: str) -> None:
        """Test wiring from configuration."""
        settings = Settings(
            database_url=f"sqlite:///{temp_db_path}",
            cache_backend="memory",
            exhaustion_cooldown_seconds=120,
        )

        pool = PoolManager.from_settings(settings)
        pool.init_db()

        assert isinstance(pool.tracker.ephemeral, InMemoryCache)
        assert isinstance(pool.selector._health_checker, GeminiHealthChecker)
        assert pool.tracker._cooldown.total_seconds() == 120
        assert pool.db.health_check() is True

        await pool.close()

    @pytest.mark.asyncio
    async def test_close_releases_resources(self, pool) -> None:
        """Test close shuts down the caches and the engine."""
        with patch.object(pool.db, "close") as mock_close:
            await pool.close()

        mock_close.assert_called_once()
        assert pool.tracker.ephemeral.is_connected is False
