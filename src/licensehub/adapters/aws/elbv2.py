"""Application load balancer routing: one target group and host rule per instance."""

from typing import Any

from botocore.exceptions import ClientError

from licensehub.adapters.aws.base import AwsAdapter, is_missing
from licensehub.core.interfaces import RoutingManager
from licensehub.core.retryable import error_code
from licensehub.infra.aws import get_aws_client

FIRST_PRIORITY = 100
PRIORITY_STEP = 10


class ElbRoutingManager(AwsAdapter, RoutingManager):
    SERVICE = "elbv2"

    async def create_target(self, name: str) -> str:
        aws = self._settings.aws
        async with get_aws_client("elbv2") as elb:
            try:
                response = await self._call(
                    lambda: elb.create_target_group(
                        Name=name,
                        Protocol="HTTP",
                        Port=aws.container_port,
                        VpcId=aws.vpc_id,
                        TargetType="ip",
                        HealthCheckPath="/",
                        HealthCheckProtocol="HTTP",
                        HealthCheckIntervalSeconds=30,
                        HealthCheckTimeoutSeconds=10,
                        HealthyThresholdCount=2,
                        UnhealthyThresholdCount=3,
                        # The app redirects on first access
                        Matcher={"HttpCode": "200,302"},
                        Tags=[{"Key": "Name", "Value": name}],
                    )
                )
            except ClientError as exc:
                if error_code(exc) != "DuplicateTargetGroupName":
                    raise
                response = await self._call(lambda: elb.describe_target_groups(Names=[name]))
        return response["TargetGroups"][0]["TargetGroupArn"]

    def _targets(self, address: str) -> list[dict[str, Any]]:
        return [{"Id": address, "Port": self._settings.aws.container_port}]

    async def bind(self, target_ref: str, address: str) -> None:
        async with get_aws_client("elbv2") as elb:
            await self._call(
                lambda: elb.register_targets(TargetGroupArn=target_ref, Targets=self._targets(address))
            )

    async def unbind(self, target_ref: str, address: str) -> None:
        async with get_aws_client("elbv2") as elb:
            try:
                await self._call(
                    lambda: elb.deregister_targets(
                        TargetGroupArn=target_ref, Targets=self._targets(address)
                    )
                )
            except ClientError as exc:
                if not is_missing(exc, "TargetGroupNotFound", "InvalidTarget"):
                    raise

    async def next_priority(self) -> int:
        listener_arn = self._settings.aws.listener_arn
        used: set[int] = set()
        marker: str | None = None
        async with get_aws_client("elbv2") as elb:
            while True:
                params: dict[str, Any] = {"ListenerArn": listener_arn}
                if marker:
                    params["Marker"] = marker
                response = await self._call(lambda: elb.describe_rules(**params))
                for rule in response.get("Rules", []):
                    priority = rule.get("Priority", "default")
                    if priority != "default":
                        used.add(int(priority))
                marker = response.get("NextMarker")
                if not marker:
                    break

        priority = FIRST_PRIORITY
        while priority in used:
            priority += PRIORITY_STEP
        return priority

    async def create_rule(self, host: str, target_ref: str, priority: int) -> str:
        async with get_aws_client("elbv2") as elb:
            response = await self._call(
                lambda: elb.create_rule(
                    ListenerArn=self._settings.aws.listener_arn,
                    Priority=priority,
                    Conditions=[{"Field": "host-header", "Values": [host]}],
                    Actions=[{"Type": "forward", "TargetGroupArn": target_ref}],
                )
            )
        return response["Rules"][0]["RuleArn"]

    async def delete_rule(self, rule_ref: str) -> None:
        async with get_aws_client("elbv2") as elb:
            try:
                await self._call(lambda: elb.delete_rule(RuleArn=rule_ref))
            except ClientError as exc:
                if not is_missing(exc, "RuleNotFound"):
                    raise

    async def delete_target(self, target_ref: str) -> None:
        async with get_aws_client("elbv2") as elb:
            try:
                await self._call(lambda: elb.delete_target_group(TargetGroupArn=target_ref))
            except ClientError as exc:
                if not is_missing(exc, "TargetGroupNotFound"):
                    raise
