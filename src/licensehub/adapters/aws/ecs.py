"""ECS (Fargate) compute launcher."""

import asyncio
import json
import logging
import time
from typing import Any

from licensehub.adapters.aws.base import AwsAdapter
from licensehub.core.domain import TaskStatus
from licensehub.core.errors import UpstreamFailureError
from licensehub.core.interfaces import ComputeLauncher, TaskNetwork, TaskProfile
from licensehub.infra.aws import get_aws_client

logger = logging.getLogger(__name__)

DATA_VOLUME = "instance-data"
APP_CONTAINER = "app"
CONFIG_CONTAINER = "aws-config-creator"

# lastStatus -> TaskStatus
_STATUS_MAP = {
    "PROVISIONING": TaskStatus.STARTING,
    "PENDING": TaskStatus.STARTING,
    "ACTIVATING": TaskStatus.STARTING,
    "RUNNING": TaskStatus.RUNNING,
    "DEACTIVATING": TaskStatus.STOPPING,
    "STOPPING": TaskStatus.STOPPING,
    "DEPROVISIONING": TaskStatus.STOPPING,
    "STOPPED": TaskStatus.STOPPED,
}


def map_task_status(last_status: str | None) -> TaskStatus:
    if not last_status:
        return TaskStatus.STOPPED
    return _STATUS_MAP.get(last_status.upper(), TaskStatus.STARTING)


class EcsComputeLauncher(AwsAdapter, ComputeLauncher):
    """One Fargate task per running instance, on a shared cluster."""

    SERVICE = "ecs"

    def log_configuration(self, group: str, stream_prefix: str) -> dict[str, Any]:
        return {
            "logDriver": "awslogs",
            "options": {
                "awslogs-group": group,
                "awslogs-region": self._settings.aws.region,
                "awslogs-stream-prefix": stream_prefix,
                "awslogs-create-group": "true",
            },
        }

    def task_definition(self, profile: TaskProfile) -> dict[str, Any]:
        """Render the task definition request for a user's instance."""
        aws = self._settings.aws
        host = f"{profile.username}.{self._settings.domain.name}"
        log_group = f"{aws.log_group}/{aws.resource_prefix}-{profile.user_id}"

        has_bucket = bool(
            profile.bucket_name and profile.bucket_access_key_id and profile.bucket_secret_access_key
        )
        containers: list[dict[str, Any]] = []
        if has_bucket:
            bucket_config = json.dumps({
                "buckets": [profile.bucket_name],
                "region": aws.region,
                "credentials": {
                    "accessKeyId": profile.bucket_access_key_id,
                    "secretAccessKey": profile.bucket_secret_access_key,
                },
            })
            containers.append({
                "name": CONFIG_CONTAINER,
                "image": "alpine:latest",
                "essential": False,
                "command": ["sh", "-c", f"echo '{bucket_config}' > /data/awsConfig.json"],
                "mountPoints": [{"sourceVolume": DATA_VOLUME, "containerPath": "/data"}],
                "logConfiguration": self.log_configuration(log_group, "aws-config"),
            })

        environment = [
            {"name": "CONTAINER_PRESERVE_CONFIG", "value": "true"},
            {"name": "FOUNDRY_HOSTNAME", "value": host},
            {"name": "FOUNDRY_LOCAL_HOSTNAME", "value": f"{aws.resource_prefix}-{profile.username}"},
            {"name": "FOUNDRY_PROXY_SSL", "value": "true"},
            {"name": "FOUNDRY_IP_DISCOVERY", "value": "false"},
            {"name": "FOUNDRY_TELEMETRY", "value": "false"},
        ]
        if has_bucket:
            environment.append({"name": "FOUNDRY_AWS_CONFIG", "value": "/data/awsConfig.json"})

        app: dict[str, Any] = {
            "name": APP_CONTAINER,
            "image": f"{aws.container_image}:{profile.app_version}",
            "essential": True,
            "portMappings": [{"containerPort": aws.container_port, "protocol": "tcp"}],
            "environment": environment,
            "mountPoints": [
                {"sourceVolume": DATA_VOLUME, "containerPath": "/data", "readOnly": False}
            ],
            "logConfiguration": self.log_configuration(log_group, "app"),
        }
        if profile.secret_ref:
            app["secrets"] = [
                {"name": "FOUNDRY_USERNAME", "valueFrom": f"{profile.secret_ref}:username::"},
                {"name": "FOUNDRY_PASSWORD", "valueFrom": f"{profile.secret_ref}:password::"},
                {"name": "FOUNDRY_ADMIN_KEY", "valueFrom": f"{profile.secret_ref}:admin_key::"},
            ]
        if has_bucket:
            app["dependsOn"] = [{"containerName": CONFIG_CONTAINER, "condition": "SUCCESS"}]
        containers.append(app)

        volume: dict[str, Any] = {
            "fileSystemId": aws.file_system_id,
            "transitEncryption": "ENABLED",
        }
        if profile.access_point_id:
            volume["authorizationConfig"] = {"accessPointId": profile.access_point_id}

        return {
            "family": f"{aws.resource_prefix}-{profile.user_id}",
            "networkMode": "awsvpc",
            "requiresCompatibilities": ["FARGATE"],
            "cpu": aws.task_cpu,
            "memory": aws.task_memory,
            "executionRoleArn": aws.execution_role_arn,
            "taskRoleArn": aws.task_role_arn,
            "runtimePlatform": {"cpuArchitecture": "ARM64", "operatingSystemFamily": "LINUX"},
            "containerDefinitions": containers,
            "volumes": [{"name": DATA_VOLUME, "efsVolumeConfiguration": volume}],
        }

    async def register_task_template(self, profile: TaskProfile) -> str:
        request = self.task_definition(profile)
        async with get_aws_client("ecs") as ecs:
            response = await self._call(lambda: ecs.register_task_definition(**request))
        return response["taskDefinition"]["taskDefinitionArn"]

    async def run(
        self,
        template_ref: str,
        network: TaskNetwork,
        overrides: dict[str, Any] | None = None,
    ) -> str:
        request: dict[str, Any] = {
            "cluster": self._settings.aws.cluster_name,
            "taskDefinition": template_ref,
            "launchType": "FARGATE",
            "count": 1,
            "networkConfiguration": {
                "awsvpcConfiguration": {
                    "subnets": network.subnet_ids,
                    "securityGroups": network.security_group_ids,
                    "assignPublicIp": "DISABLED",
                }
            },
        }
        if overrides:
            request["overrides"] = overrides

        async with get_aws_client("ecs") as ecs:
            response = await self._call(lambda: ecs.run_task(**request))

        if response.get("failures"):
            reasons = ", ".join(f.get("reason", "unknown") for f in response["failures"])
            raise UpstreamFailureError(f"Failed to start task: {reasons}")
        return response["tasks"][0]["taskArn"]

    async def _describe(self, task_ref: str) -> dict[str, Any] | None:
        async with get_aws_client("ecs") as ecs:
            response = await self._call(
                lambda: ecs.describe_tasks(cluster=self._settings.aws.cluster_name, tasks=[task_ref])
            )
        tasks = response.get("tasks") or []
        return tasks[0] if tasks else None

    async def wait_for(
        self,
        task_ref: str,
        target: TaskStatus,
        timeout: float,
    ) -> dict[str, Any] | None:
        """Poll until the task reaches ``target``. Returns the last description."""
        interval = self._settings.policy.task_poll_interval_seconds
        deadline = time.monotonic() + timeout
        while True:
            task = await self._describe(task_ref)
            status = map_task_status(task.get("lastStatus") if task else None)
            if status == target:
                return task
            if status == TaskStatus.STOPPED:
                reason = (task or {}).get("stoppedReason", "task not found")
                raise UpstreamFailureError(f"Task stopped before reaching {target}: {reason}")
            if time.monotonic() >= deadline:
                raise TimeoutError(f"Task {task_ref} not {target} within {timeout:.0f}s")
            await asyncio.sleep(interval)

    async def wait_until_running(self, task_ref: str, timeout: float) -> None:
        await self.wait_for(task_ref, TaskStatus.RUNNING, timeout)

    async def stop(self, task_ref: str) -> None:
        task = await self._describe(task_ref)
        if task is None or map_task_status(task.get("lastStatus")) == TaskStatus.STOPPED:
            return
        async with get_aws_client("ecs") as ecs:
            await self._call(
                lambda: ecs.stop_task(
                    cluster=self._settings.aws.cluster_name,
                    task=task_ref,
                    reason="Stopped by licensehub",
                )
            )

    async def private_address(self, task_ref: str) -> str:
        task = await self._describe(task_ref)
        for attachment in (task or {}).get("attachments", []):
            for detail in attachment.get("details", []):
                if detail.get("name") == "privateIPv4Address":
                    return detail["value"]
        raise UpstreamFailureError(f"Task {task_ref} has no private address")

    async def status(self, task_ref: str) -> TaskStatus:
        task = await self._describe(task_ref)
        return map_task_status(task.get("lastStatus") if task else None)

    async def exit_code(self, task_ref: str, container: str) -> int | None:
        task = await self._describe(task_ref)
        for item in (task or {}).get("containers", []):
            if item.get("name") == container:
                return item.get("exitCode")
        return None
