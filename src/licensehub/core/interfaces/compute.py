"""Compute launcher interface for instance tasks."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from licensehub.core.domain import TaskStatus


@dataclass
class TaskProfile:
    """Everything needed to render a task template for one user."""

    user_id: str
    username: str
    app_version: str
    access_point_id: str | None
    secret_ref: str | None
    bucket_name: str | None
    bucket_access_key_id: str | None = None
    bucket_secret_access_key: str | None = None


@dataclass
class TaskNetwork:
    """Network placement for a task."""

    subnet_ids: list[str] = field(default_factory=list)
    security_group_ids: list[str] = field(default_factory=list)


class ComputeLauncher(ABC):
    """Interface for container task orchestration.

    Implementations: EcsComputeLauncher
    """

    @abstractmethod
    async def register_task_template(self, profile: TaskProfile) -> str:
        """Register a task template for the profile.

        Returns:
            Template reference (task definition ARN)
        """
        ...

    @abstractmethod
    async def run(self, template_ref: str, network: TaskNetwork) -> str:
        """Launch a task from a template.

        Returns:
            Task reference (task ARN)
        """
        ...

    @abstractmethod
    async def wait_until_running(self, task_ref: str, timeout: float) -> None:
        """Block until the task reports running.

        Raises:
            TimeoutError: If the task is not running within timeout
            UpstreamFailureError: If the task stopped while starting
        """
        ...

    @abstractmethod
    async def stop(self, task_ref: str) -> None:
        """Stop a task. Stopping an already-stopped task is a no-op."""
        ...

    @abstractmethod
    async def private_address(self, task_ref: str) -> str:
        """Private IP address of a running task."""
        ...

    @abstractmethod
    async def status(self, task_ref: str) -> TaskStatus:
        """Authoritative task status. A task that no longer exists is STOPPED."""
        ...
