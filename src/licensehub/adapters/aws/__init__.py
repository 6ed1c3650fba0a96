"""AWS implementations of the collaborator interfaces."""

from licensehub.adapters.aws.ecs import EcsComputeLauncher
from licensehub.adapters.aws.efs import EfsNetworkStorage
from licensehub.adapters.aws.elbv2 import ElbRoutingManager
from licensehub.adapters.aws.iam import IamIdentityManager
from licensehub.adapters.aws.route53 import Route53DnsManager
from licensehub.adapters.aws.s3 import S3ObjectStorage
from licensehub.adapters.aws.secretsmanager import SecretsManagerStore

__all__ = [
    "EcsComputeLauncher",
    "EfsNetworkStorage",
    "ElbRoutingManager",
    "IamIdentityManager",
    "Route53DnsManager",
    "S3ObjectStorage",
    "SecretsManagerStore",
]
