"""Route 53 alias records pointing instance hosts at the shared load balancer."""

from botocore.exceptions import ClientError

from licensehub.adapters.aws.base import AwsAdapter
from licensehub.core.interfaces import DnsManager
from licensehub.core.retryable import error_code
from licensehub.infra.aws import get_aws_client


class Route53DnsManager(AwsAdapter, DnsManager):
    SERVICE = "route53"

    async def _change(self, action: str, host: str, endpoint: str) -> None:
        aws = self._settings.aws
        async with get_aws_client("route53") as route53:
            await self._call(
                lambda: route53.change_resource_record_sets(
                    HostedZoneId=aws.hosted_zone_id,
                    ChangeBatch={
                        "Comment": f"{action} {host}",
                        "Changes": [
                            {
                                "Action": action,
                                "ResourceRecordSet": {
                                    "Name": host,
                                    "Type": "A",
                                    "AliasTarget": {
                                        "DNSName": endpoint,
                                        "HostedZoneId": aws.alb_zone_id,
                                        "EvaluateTargetHealth": False,
                                    },
                                },
                            }
                        ],
                    },
                )
            )

    async def upsert(self, host: str, endpoint: str) -> None:
        await self._change("UPSERT", host, endpoint)

    async def delete(self, host: str) -> None:
        try:
            await self._change("DELETE", host, self._settings.aws.alb_dns_name)
        except ClientError as exc:
            # Deleting a record that does not exist is rejected as an invalid batch
            if error_code(exc) != "InvalidChangeBatch":
                raise
