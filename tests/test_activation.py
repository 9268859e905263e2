"""Tests for credential activation."""

import asyncio
from unittest.mock import patch

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from keypool.activation import ActivationManager
from keypool.db.models import Credential
from keypool.errors import ActivationError, CredentialNotFoundError


def active_ids(db_manager, tenant_id: str) -> list[str]:
    with db_manager.get_session() as session:
        return list(
            session.scalars(
                select(Credential.id).where(
                    Credential.tenant_id == tenant_id,
                    Credential.is_active.is_(True),
                )
            ).all()
        )


@pytest.fixture
def activation(db_manager) -> ActivationManager:
    return ActivationManager(db_manager)


class TestActivationManager:
    """Tests for ActivationManager."""

    @pytest.mark.asyncio
    async def test_activate_swaps_active(self, activation, db_manager, add_credential) -> None:
        """Test activating a credential deactivates the previous one."""
        a = add_credential("t1", "a", is_active=True)
        b = add_credential("t1", "b")

        credential = await activation.activate(b)

        assert credential.id == b
        assert credential.is_active is True
        assert active_ids(db_manager, "t1") == [b]
        assert a not in active_ids(db_manager, "t1")

    @pytest.mark.asyncio
    async def test_activate_already_active(self, activation, db_manager, add_credential) -> None:
        """Test re-activating the active credential keeps it active."""
        a = add_credential("t1", "a", is_active=True)

        await activation.activate(a)

        assert active_ids(db_manager, "t1") == [a]

    @pytest.mark.asyncio
    async def test_other_tenants_untouched(self, activation, db_manager, add_credential) -> None:
        """Test activation never deactivates another tenant's credential."""
        other = add_credential("t2", "other", is_active=True)
        b = add_credential("t1", "b")

        await activation.activate(b)

        assert active_ids(db_manager, "t2") == [other]

    @pytest.mark.asyncio
    async def test_concurrent_activations_leave_one_active(self, activation, db_manager, add_credential) -> None:
        """Test concurrent swaps for one tenant end with a single active credential."""
        ids = [add_credential("t1", f"c{i}") for i in range(6)]

        await asyncio.gather(*(activation.activate(cid) for cid in ids * 3))

        active = active_ids(db_manager, "t1")
        assert len(active) == 1
        assert active[0] in ids

    @pytest.mark.asyncio
    async def test_unknown_credential(self, activation) -> None:
        """Test activating an unknown id raises CredentialNotFoundError."""
        with pytest.raises(CredentialNotFoundError):
            await activation.activate("missing")

    @pytest.mark.asyncio
    async def test_failed_swap_keeps_previous_state(self, activation, db_manager, add_credential) -> None:
        """Test a failed commit raises ActivationError and leaves the old active credential."""
        a = add_credential("t1", "a", is_active=True)
        b = add_credential("t1", "b")

        commits = []
        real_commit = Session.commit

        def flaky_commit(session):
            # Let the tenant lookup through, fail the swap
            commits.append(session)
            if len(commits) > 1:
                raise OperationalError("COMMIT", {}, Exception("disk I/O error"))
            return real_commit(session)

        with patch.object(Session, "commit", flaky_commit):
            with pytest.raises(ActivationError) as exc_info:
                await activation.activate(b)

        assert exc_info.value.tenant_id == "t1"
        assert active_ids(db_manager, "t1") == [a]

    def test_active_credential(self, activation, add_credential) -> None:
        """Test looking up the active credential."""
        add_credential("t1", "a")
        b = add_credential("t1", "b", is_active=True)

        assert activation.active_credential("t1").id == b
        assert activation.active_credential("t2") is None
