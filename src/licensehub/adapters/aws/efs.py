"""EFS access points and one-off maintenance tasks on the shared filesystem."""

import asyncio
import logging
import time

from botocore.exceptions import ClientError

from licensehub.adapters.aws.base import AwsAdapter, is_missing
from licensehub.adapters.aws.ecs import EcsComputeLauncher
from licensehub.app.config import Settings
from licensehub.core.domain import PERMISSION_RESET_VERSIONS, TaskStatus
from licensehub.core.errors import UpstreamFailureError
from licensehub.core.interfaces import NetworkStorage, TaskNetwork
from licensehub.core.logging_schema import Component, LogEvent
from licensehub.infra.aws import get_aws_client

logger = logging.getLogger(__name__)

INSTANCES_ROOT = "/instances"
MAINTENANCE_CONTAINER = "maintenance"

# uid:gid the application image runs as
DEFAULT_OWNER = (1000, 1000)
LEGACY_OWNER = (421, 421)

PURGE_SCRIPT = 'if [ -d "/efs$ROOT/$USER_ID" ]; then rm -rf "/efs$ROOT/$USER_ID"; fi'
CHOWN_SCRIPT = 'if [ -d "/efs$ROOT/$USER_ID" ]; then chown -R "$OWNER" "/efs$ROOT/$USER_ID"; fi'


def owner_for_version(app_version: str) -> tuple[int, int]:
    return LEGACY_OWNER if app_version in PERMISSION_RESET_VERSIONS else DEFAULT_OWNER


class EfsNetworkStorage(AwsAdapter, NetworkStorage):
    """Per-user access points rooted at ``/instances/{user_id}``.

    Content operations (purge, chown) run as a short Fargate task that mounts
    the filesystem root.
    """

    SERVICE = "efs"

    def __init__(self, compute: EcsComputeLauncher, settings: Settings | None = None) -> None:
        super().__init__(settings)
        self._compute = compute
        self._maintenance_ref: str | None = self._settings.aws.cleanup_task_definition

    async def create_access_point(self, user_id: str) -> str:
        aws = self._settings.aws
        uid, gid = DEFAULT_OWNER
        async with get_aws_client("efs") as efs:
            response = await self._call(
                lambda: efs.create_access_point(
                    FileSystemId=aws.file_system_id,
                    PosixUser={"Uid": uid, "Gid": gid},
                    RootDirectory={
                        "Path": f"{INSTANCES_ROOT}/{user_id}",
                        "CreationInfo": {"OwnerUid": uid, "OwnerGid": gid, "Permissions": "755"},
                    },
                    Tags=[
                        {"Key": "Name", "Value": f"{aws.resource_prefix}-{user_id}"},
                        {"Key": "UserId", "Value": user_id},
                    ],
                )
            )
        access_point_id = response["AccessPointId"]
        await self._wait_available(access_point_id)
        return access_point_id

    async def _wait_available(self, access_point_id: str) -> None:
        timeout = self._settings.policy.operation_timeout_seconds
        deadline = time.monotonic() + timeout
        while True:
            async with get_aws_client("efs") as efs:
                response = await self._call(
                    lambda: efs.describe_access_points(AccessPointId=access_point_id)
                )
            points = response.get("AccessPoints") or []
            state = points[0].get("LifeCycleState") if points else None
            if state == "available":
                return
            if state == "error":
                raise UpstreamFailureError(f"Access point {access_point_id} creation failed")
            if time.monotonic() >= deadline:
                raise TimeoutError(f"Access point {access_point_id} not available within {timeout}s")
            await asyncio.sleep(self._settings.policy.task_poll_interval_seconds)

    async def reset_permissions(self, access_point_id: str, user_id: str, app_version: str) -> None:
        uid, gid = owner_for_version(app_version)
        await self._run_maintenance(user_id, CHOWN_SCRIPT, OWNER=f"{uid}:{gid}")

    async def purge_and_delete(self, access_point_id: str, user_id: str) -> None:
        try:
            await self._run_maintenance(user_id, PURGE_SCRIPT)
        except Exception as exc:
            # Content purge is best effort; the access point is still removed
            logger.warning(
                "Failed to purge instance data: %s",
                exc,
                extra={
                    "event": LogEvent.UPSTREAM_ERROR,
                    "component": Component.ADAPTER,
                    "user_id": user_id,
                    "step": "purge_data",
                },
            )

        async with get_aws_client("efs") as efs:
            try:
                await self._call(lambda: efs.delete_access_point(AccessPointId=access_point_id))
            except ClientError as exc:
                if not is_missing(exc, "AccessPointNotFound"):
                    raise

    async def _maintenance_template(self) -> str:
        if self._maintenance_ref:
            return self._maintenance_ref

        aws = self._settings.aws
        request = {
            "family": f"{aws.resource_prefix}-efs-maintenance",
            "networkMode": "awsvpc",
            "requiresCompatibilities": ["FARGATE"],
            "cpu": "256",
            "memory": "512",
            "executionRoleArn": aws.execution_role_arn,
            "taskRoleArn": aws.task_role_arn,
            "runtimePlatform": {"cpuArchitecture": "ARM64", "operatingSystemFamily": "LINUX"},
            "containerDefinitions": [
                {
                    "name": MAINTENANCE_CONTAINER,
                    "image": "alpine:latest",
                    "essential": True,
                    "mountPoints": [
                        {"sourceVolume": "efs-root", "containerPath": "/efs", "readOnly": False}
                    ],
                    "logConfiguration": self._compute.log_configuration(
                        f"{aws.log_group}/efs-maintenance", "maintenance"
                    ),
                }
            ],
            "volumes": [
                {
                    "name": "efs-root",
                    "efsVolumeConfiguration": {
                        "fileSystemId": aws.file_system_id,
                        "rootDirectory": "/",
                        "transitEncryption": "ENABLED",
                    },
                }
            ],
        }
        async with get_aws_client("ecs") as ecs:
            response = await self._call(lambda: ecs.register_task_definition(**request))
        self._maintenance_ref = response["taskDefinition"]["taskDefinitionArn"]
        return self._maintenance_ref

    async def _run_maintenance(self, user_id: str, script: str, **env: str) -> None:
        aws = self._settings.aws
        template_ref = await self._maintenance_template()
        environment = {"USER_ID": user_id, "ROOT": INSTANCES_ROOT, **env}
        overrides = {
            "containerOverrides": [
                {
                    "name": MAINTENANCE_CONTAINER,
                    "command": ["sh", "-c", script],
                    "environment": [{"name": k, "value": v} for k, v in environment.items()],
                }
            ]
        }
        network = TaskNetwork(
            subnet_ids=list(aws.subnet_ids),
            security_group_ids=[aws.security_group_id] if aws.security_group_id else [],
        )
        task_ref = await self._compute.run(template_ref, network, overrides=overrides)
        await self._compute.wait_for(
            task_ref, TaskStatus.STOPPED, self._settings.policy.operation_timeout_seconds
        )
        exit_code = await self._compute.exit_code(task_ref, MAINTENANCE_CONTAINER)
        if exit_code not in (0, None):
            raise UpstreamFailureError(f"Maintenance task exited with code {exit_code}")
