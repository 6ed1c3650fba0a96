"""IAM users scoped to a single bucket."""

import json

from botocore.exceptions import ClientError

from licensehub.adapters.aws.base import AwsAdapter, is_missing
from licensehub.core.interfaces import IdentityManager, ScopedCredential
from licensehub.core.retryable import error_code
from licensehub.infra.aws import get_aws_client

POLICY_NAME = "BucketAccess"


class IamIdentityManager(AwsAdapter, IdentityManager):
    SERVICE = "iam"

    def user_name(self, user_id: str) -> str:
        return f"{self._settings.aws.resource_prefix}-{user_id}"

    async def create_scoped_credential(self, user_id: str, bucket_name: str) -> ScopedCredential:
        prefix = self._settings.aws.resource_prefix
        name = self.user_name(user_id)
        policy = {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Action": [
                        "s3:GetObject",
                        "s3:PutObject",
                        "s3:PutObjectAcl",
                        "s3:DeleteObject",
                        "s3:ListBucket",
                        "s3:GetBucketLocation",
                    ],
                    "Resource": [f"arn:aws:s3:::{bucket_name}", f"arn:aws:s3:::{bucket_name}/*"],
                }
            ],
        }

        async with get_aws_client("iam") as iam:
            try:
                await self._call(
                    lambda: iam.create_user(
                        UserName=name,
                        Path=f"/{prefix}/",
                        Tags=[{"Key": "UserId", "Value": user_id}],
                    )
                )
            except ClientError as exc:
                if error_code(exc) != "EntityAlreadyExists":
                    raise
            await self._call(
                lambda: iam.put_user_policy(
                    UserName=name, PolicyName=POLICY_NAME, PolicyDocument=json.dumps(policy)
                )
            )
            response = await self._call(lambda: iam.create_access_key(UserName=name))

        key = response["AccessKey"]
        return ScopedCredential(
            access_key_id=key["AccessKeyId"],
            secret_access_key=key["SecretAccessKey"],
        )

    async def delete_scoped_credential(self, user_id: str) -> None:
        name = self.user_name(user_id)
        async with get_aws_client("iam") as iam:
            try:
                keys = await self._call(lambda: iam.list_access_keys(UserName=name))
            except ClientError as exc:
                if is_missing(exc, "NoSuchEntity"):
                    return
                raise

            for metadata in keys.get("AccessKeyMetadata", []):
                await self._call(
                    lambda key_id=metadata["AccessKeyId"]: iam.delete_access_key(
                        UserName=name, AccessKeyId=key_id
                    )
                )
            try:
                await self._call(lambda: iam.delete_user_policy(UserName=name, PolicyName=POLICY_NAME))
            except ClientError as exc:
                if not is_missing(exc, "NoSuchEntity"):
                    raise
            await self._call(lambda: iam.delete_user(UserName=name))
