"""Per-user S3 buckets for uploaded assets."""

import json
import logging

from botocore.exceptions import ClientError

from licensehub.adapters.aws.base import AwsAdapter, is_missing
from licensehub.core.interfaces import ObjectStorage
from licensehub.core.retryable import error_code
from licensehub.infra.aws import get_aws_client

logger = logging.getLogger(__name__)

DELETE_BATCH = 1000


class S3ObjectStorage(AwsAdapter, ObjectStorage):
    """Public-read buckets named ``{prefix}-{username}-{last 8 of user id}``."""

    SERVICE = "s3"

    def bucket_name(self, user_id: str, username: str) -> str:
        return f"{self._settings.aws.resource_prefix}-{username}-{user_id[-8:]}".lower()

    def public_url(self, bucket_name: str) -> str:
        return f"https://{bucket_name}.s3.{self._settings.aws.region}.amazonaws.com"

    async def create_bucket(self, user_id: str, username: str) -> str:
        bucket = self.bucket_name(user_id, username)
        region = self._settings.aws.region

        async with get_aws_client("s3") as s3:
            params: dict = {"Bucket": bucket}
            if region != "us-east-1":
                params["CreateBucketConfiguration"] = {"LocationConstraint": region}
            try:
                await self._call(lambda: s3.create_bucket(**params))
            except ClientError as exc:
                if error_code(exc) != "BucketAlreadyOwnedByYou":
                    raise
                logger.info("Bucket already exists: %s", bucket)

            await self._call(
                lambda: s3.put_bucket_ownership_controls(
                    Bucket=bucket,
                    OwnershipControls={"Rules": [{"ObjectOwnership": "BucketOwnerPreferred"}]},
                )
            )
            await self._call(
                lambda: s3.put_public_access_block(
                    Bucket=bucket,
                    PublicAccessBlockConfiguration={
                        "BlockPublicAcls": False,
                        "IgnorePublicAcls": False,
                        "BlockPublicPolicy": False,
                        "RestrictPublicBuckets": False,
                    },
                )
            )
            policy = {
                "Version": "2012-10-17",
                "Statement": [
                    {
                        "Sid": "PublicReadGetObject",
                        "Effect": "Allow",
                        "Principal": "*",
                        "Action": "s3:GetObject",
                        "Resource": f"arn:aws:s3:::{bucket}/*",
                    }
                ],
            }
            await self._call(lambda: s3.put_bucket_policy(Bucket=bucket, Policy=json.dumps(policy)))
            await self._call(
                lambda: s3.put_bucket_cors(
                    Bucket=bucket,
                    CORSConfiguration={
                        "CORSRules": [
                            {
                                "AllowedHeaders": ["*"],
                                "AllowedMethods": ["GET", "POST", "HEAD"],
                                "AllowedOrigins": ["*"],
                                "ExposeHeaders": [],
                                "MaxAgeSeconds": 3000,
                            }
                        ]
                    },
                )
            )
            await self._call(
                lambda: s3.put_bucket_versioning(
                    Bucket=bucket, VersioningConfiguration={"Status": "Enabled"}
                )
            )
        return bucket

    async def delete_bucket(self, bucket_name: str) -> None:
        async with get_aws_client("s3") as s3:
            try:
                keys: list[dict[str, str]] = []
                paginator = s3.get_paginator("list_object_versions")
                async for page in paginator.paginate(Bucket=bucket_name):
                    for item in page.get("Versions", []) + page.get("DeleteMarkers", []):
                        keys.append({"Key": item["Key"], "VersionId": item["VersionId"]})

                for start in range(0, len(keys), DELETE_BATCH):
                    batch = keys[start : start + DELETE_BATCH]
                    await self._call(
                        lambda: s3.delete_objects(
                            Bucket=bucket_name, Delete={"Objects": batch, "Quiet": True}
                        )
                    )
                await self._call(lambda: s3.delete_bucket(Bucket=bucket_name))
            except ClientError as exc:
                if not is_missing(exc, "NoSuchBucket"):
                    raise
                logger.info("Bucket already deleted: %s", bucket_name)
