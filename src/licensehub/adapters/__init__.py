"""Adapters module - infrastructure implementations."""

from licensehub.adapters.aws import (
    EcsComputeLauncher,
    EfsNetworkStorage,
    ElbRoutingManager,
    IamIdentityManager,
    Route53DnsManager,
    S3ObjectStorage,
    SecretsManagerStore,
)
from licensehub.app.config import Settings
from licensehub.core.interfaces import Collaborators


def build_aws_collaborators(settings: Settings | None = None) -> Collaborators:
    """Wire the AWS adapters. Call after ``init_aws()``."""
    compute = EcsComputeLauncher(settings)
    return Collaborators(
        compute=compute,
        routing=ElbRoutingManager(settings),
        dns=Route53DnsManager(settings),
        network_storage=EfsNetworkStorage(compute, settings),
        object_storage=S3ObjectStorage(settings),
        identity=IamIdentityManager(settings),
        secrets=SecretsManagerStore(settings),
    )


__all__ = [
    "EcsComputeLauncher",
    "EfsNetworkStorage",
    "ElbRoutingManager",
    "IamIdentityManager",
    "Route53DnsManager",
    "S3ObjectStorage",
    "SecretsManagerStore",
    "build_aws_collaborators",
]
