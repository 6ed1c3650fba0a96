"""Collaborator interfaces consumed by the orchestrator."""

from dataclasses import dataclass

from licensehub.core.interfaces.compute import ComputeLauncher, TaskNetwork, TaskProfile
from licensehub.core.interfaces.identity import (
    IdentityManager,
    LicenseCredentials,
    ScopedCredential,
    SecretStore,
)
from licensehub.core.interfaces.routing import DnsManager, RoutingManager
from licensehub.core.interfaces.storage import NetworkStorage, ObjectStorage


@dataclass
class Collaborators:
    """External collaborators, constructed once at process start."""

    compute: ComputeLauncher
    routing: RoutingManager
    dns: DnsManager
    network_storage: NetworkStorage
    object_storage: ObjectStorage
    identity: IdentityManager
    secrets: SecretStore


__all__ = [
    "Collaborators",
    # Compute
    "ComputeLauncher",
    "TaskNetwork",
    "TaskProfile",
    # Routing
    "RoutingManager",
    "DnsManager",
    # Storage
    "NetworkStorage",
    "ObjectStorage",
    # Identity
    "IdentityManager",
    "SecretStore",
    "ScopedCredential",
    "LicenseCredentials",
]
