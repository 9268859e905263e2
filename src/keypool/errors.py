"""Exceptions raised by the credential pool."""


class KeyPoolError(Exception):
    """Base class for credential pool errors."""


class CredentialNotFoundError(KeyPoolError):
    """Raised when a credential id does not resolve to a stored credential."""

    def __init__(self, credential_id: str) -> None:
        self.credential_id = credential_id
        super().__init__(f"Credential not found: {credential_id}")


class ActivationError(KeyPoolError):
    """Raised when the active-credential swap could not be committed."""

    def __init__(self, credential_id: str, tenant_id: str | None = None) -> None:
        self.credential_id = credential_id
        self.tenant_id = tenant_id
        super().__init__(
            f"Failed to activate credential {credential_id} for tenant {tenant_id}"
        )
