"""Storage interfaces: shared network filesystem and object storage."""

from abc import ABC, abstractmethod


class NetworkStorage(ABC):
    """Interface for per-user access points on the shared filesystem.

    Implementations: EfsNetworkStorage
    """

    @abstractmethod
    async def create_access_point(self, user_id: str) -> str:
        """Create the user's access point. Returns its ID."""
        ...

    @abstractmethod
    async def reset_permissions(self, access_point_id: str, user_id: str, app_version: str) -> None:
        """Re-own the user's tree for the uid/gid the given version runs as."""
        ...

    @abstractmethod
    async def purge_and_delete(self, access_point_id: str, user_id: str) -> None:
        """Delete the user's content, then the access point itself."""
        ...


class ObjectStorage(ABC):
    """Interface for per-user buckets.

    Implementations: S3ObjectStorage
    """

    @abstractmethod
    async def create_bucket(self, user_id: str, username: str) -> str:
        """Create the user's bucket. Returns the bucket name."""
        ...

    @abstractmethod
    async def delete_bucket(self, bucket_name: str) -> None:
        """Empty and delete a bucket. Missing buckets are not an error."""
        ...

    @abstractmethod
    def public_url(self, bucket_name: str) -> str:
        ...
