"""Tests for database models and the credential repository."""

import pytest
from sqlalchemy.exc import IntegrityError

from keypool.catalog import DEFAULT_LIMIT
from keypool.db.manager import DatabaseManager
from keypool.db.models import Credential, CredentialModel, RateWindow
from keypool.db.repository import CredentialRepository


class TestCredential:
    """Tests for the Credential class."""

    def test_create_credential(self, db_manager: DatabaseManager) -> None:
        """Test creating a credential."""
        with db_manager.get_session() as session:
            credential = Credential(tenant_id="t1", name="primary", api_key="secret")
            session.add(credential)
            session.flush()

            assert len(credential.id) == 32
            assert credential.created_at is not None
            assert credential.is_active is False
            assert credential.priority == 1

    def test_models_cascade_delete(self, db_manager: DatabaseManager) -> None:
        """Test deleting a credential removes its models."""
        with db_manager.get_session() as session:
            repo = CredentialRepository(session)
            credential = repo.add_credential("t1", "primary", "secret")
            repo.add_model(credential.id, "gemini-2.5-flash")
            credential_id = credential.id

        with db_manager.get_session() as session:
            session.delete(session.get(Credential, credential_id))

        with db_manager.get_session() as session:
            assert session.query(CredentialModel).count() == 0


class TestCredentialModel:
    """Tests for the CredentialModel class."""

    def test_unique_name_per_credential(self, db_manager: DatabaseManager) -> None:
        """Test a credential cannot hold the same model twice."""
        with pytest.raises(IntegrityError):
            with db_manager.get_session() as session:
                repo = CredentialRepository(session)
                credential = repo.add_credential("t1", "primary", "secret")
                repo.add_model(credential.id, "gemini-2.5-flash")
                repo.add_model(credential.id, "gemini-2.5-flash")

    def test_models_ordered_by_priority(self, db_manager: DatabaseManager) -> None:
        """Test the relationship returns models in priority order."""
        with db_manager.get_session() as session:
            repo = CredentialRepository(session)
            credential = repo.add_credential("t1", "primary", "secret")
            repo.add_model(credential.id, "gemini-2.0-flash", priority=2)
            repo.add_model(credential.id, "gemini-2.5-flash", priority=1)
            credential_id = credential.id

        with db_manager.get_session() as session:
            credential = CredentialRepository(session).get_credential(credential_id)
            assert [m.name for m in credential.models] == ["gemini-2.5-flash", "gemini-2.0-flash"]


class TestCredentialRepository:
    """Tests for CredentialRepository."""

    def test_default_limit_from_catalog(self, db_manager: DatabaseManager) -> None:
        """Test limits default from the catalog, unknown names from the global default."""
        with db_manager.get_session() as session:
            repo = CredentialRepository(session)
            credential = repo.add_credential("t1", "primary", "secret")
            pro = repo.add_model(credential.id, "gemini-2.5-pro")
            unknown = repo.add_model(credential.id, "some-new-model")

            assert pro.limit == 125000
            assert unknown.limit == DEFAULT_LIMIT

    def test_rejects_non_positive_limit(self, db_manager: DatabaseManager) -> None:
        """Test a zero limit is refused."""
        with pytest.raises(ValueError):
            with db_manager.get_session() as session:
                repo = CredentialRepository(session)
                credential = repo.add_credential("t1", "primary", "secret")
                repo.add_model(credential.id, "gemini-2.5-pro", limit=0)

    def test_list_credentials_by_priority(self, db_manager: DatabaseManager, add_credential) -> None:
        """Test credentials are listed in ascending priority for one tenant."""
        low = add_credential("t1", "low", priority=3)
        high = add_credential("t1", "high", priority=1)
        add_credential("t2", "other", priority=0)

        with db_manager.get_session() as session:
            ids = [c.id for c in CredentialRepository(session).list_credentials("t1")]

        assert ids == [high, low]

    def test_models_named_is_tenant_scoped(self, db_manager: DatabaseManager, add_credential) -> None:
        """Test same-named models are only gathered for the requested tenant."""
        mine = add_credential("t1", "mine", models=[("x", 1, 100, 0)])
        add_credential("t2", "theirs", models=[("x", 1, 100, 0)])

        with db_manager.get_session() as session:
            models = CredentialRepository(session).models_named("t1", "x")
            assert [m.credential.id for m in models] == [mine]

    def test_active_credential(self, db_manager: DatabaseManager, add_credential) -> None:
        """Test the active credential lookup."""
        add_credential("t1", "a")
        active = add_credential("t1", "b", is_active=True)

        with db_manager.get_session() as session:
            assert CredentialRepository(session).active_credential("t1").id == active


class TestRateWindows:
    """Tests for rate windows attached to models."""

    def test_seeded_from_catalog(self, db_manager: DatabaseManager) -> None:
        """Test windows default from the catalog entry."""
        with db_manager.get_session() as session:
            repo = CredentialRepository(session)
            credential = repo.add_credential("t1", "primary", "secret")
            model = repo.add_model(credential.id, "gemini-2.5-pro")

            windows = {w.kind: (w.limit, w.used, w.started_at) for w in model.rate_windows}

        assert windows == {
            "rpd": (50, 0, None),
            "rph": (120, 0, None),
            "rpm": (2, 0, None),
            "tpm": (125000, 0, None),
        }

    def test_explicit_empty_limits(self, db_manager: DatabaseManager) -> None:
        """Test an empty mapping leaves the model without windows."""
        with db_manager.get_session() as session:
            repo = CredentialRepository(session)
            credential = repo.add_credential("t1", "primary", "secret")
            model = repo.add_model(credential.id, "gemini-2.5-pro", rate_limits={})

            assert model.rate_windows == []

    @pytest.mark.parametrize("rate_limits", [{"rps": 1}, {"rpm": 0}, {"tpm": -5}])
    def test_rejects_bad_limits(self, db_manager: DatabaseManager, rate_limits) -> None:
        """Test unknown kinds and non-positive limits are refused."""
        with pytest.raises(ValueError):
            with db_manager.get_session() as session:
                repo = CredentialRepository(session)
                credential = repo.add_credential("t1", "primary", "secret")
                repo.add_model(credential.id, "x", rate_limits=rate_limits)

    def test_cascade_with_credential(self, db_manager: DatabaseManager, add_credential) -> None:
        """Test deleting a credential removes its models' windows."""
        cred = add_credential("t1", "A", models=[("x", 1, 100, 0)], rate_limits={"rpm": 5, "rpd": 50})

        with db_manager.get_session() as session:
            assert session.query(RateWindow).count() == 2
            session.delete(session.get(Credential, cred))

        with db_manager.get_session() as session:
            assert session.query(RateWindow).count() == 0
