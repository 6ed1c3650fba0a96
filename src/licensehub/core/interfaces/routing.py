"""Routing (load balancer) and DNS interfaces."""

from abc import ABC, abstractmethod


class RoutingManager(ABC):
    """Interface for per-instance load balancer routing.

    Implementations: ElbRoutingManager
    """

    @abstractmethod
    async def create_target(self, name: str) -> str:
        """Create a routing target (target group). Returns its reference."""
        ...

    @abstractmethod
    async def bind(self, target_ref: str, address: str) -> None:
        """Register a task address with a target."""
        ...

    @abstractmethod
    async def unbind(self, target_ref: str, address: str) -> None:
        """Deregister a task address from a target."""
        ...

    @abstractmethod
    async def next_priority(self) -> int:
        """Lowest free rule priority on the shared listener."""
        ...

    @abstractmethod
    async def create_rule(self, host: str, target_ref: str, priority: int) -> str:
        """Route a host header to a target. Returns the rule reference."""
        ...

    @abstractmethod
    async def delete_rule(self, rule_ref: str) -> None:
        ...

    @abstractmethod
    async def delete_target(self, target_ref: str) -> None:
        ...


class DnsManager(ABC):
    """Interface for public DNS records.

    Implementations: Route53DnsManager
    """

    @abstractmethod
    async def upsert(self, host: str, endpoint: str) -> None:
        """Point host at endpoint (idempotent)."""
        ...

    @abstractmethod
    async def delete(self, host: str) -> None:
        """Remove host's record. Missing records are not an error."""
        ...
