"""Database package for the credential pool."""

from keypool.db.base import Base
from keypool.db.manager import DatabaseManager
from keypool.db.models import Credential, CredentialModel, ExclusionEntry, RateWindow
from keypool.db.repository import CredentialRepository

__all__ = [
    "Base",
    "DatabaseManager",
    "Credential",
    "CredentialModel",
    "ExclusionEntry",
    "RateWindow",
    "CredentialRepository",
]
