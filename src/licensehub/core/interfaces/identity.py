"""Identity and secret store interfaces."""

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass
class ScopedCredential:
    """Access key pair limited to one user's bucket."""

    access_key_id: str
    secret_access_key: str


@dataclass
class LicenseCredentials:
    """Secret payload mounted into the instance container."""

    username: str
    password: str
    admin_key: str


class IdentityManager(ABC):
    """Interface for per-user scoped credentials.

    Implementations: IamIdentityManager
    """

    @abstractmethod
    async def create_scoped_credential(self, user_id: str, bucket_name: str) -> ScopedCredential:
        ...

    @abstractmethod
    async def delete_scoped_credential(self, user_id: str) -> None:
        """Delete the user's identity and keys. Missing identities are not an error."""
        ...


class SecretStore(ABC):
    """Interface for per-user license credentials.

    Implementations: SecretsManagerStore
    """

    @abstractmethod
    async def put(self, user_id: str, payload: LicenseCredentials) -> str:
        """Create or overwrite the user's secret. Returns the secret reference."""
        ...

    @abstractmethod
    async def get(self, user_id: str) -> LicenseCredentials | None:
        """Read the user's secret, or None if it does not exist."""
        ...

    @abstractmethod
    async def delete(self, secret_ref: str) -> None:
        ...

    @abstractmethod
    def ref_for(self, user_id: str) -> str:
        """Secret reference (name) for a user, whether or not it exists."""
        ...
