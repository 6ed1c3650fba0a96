"""License credentials in Secrets Manager, one JSON secret per user."""

import json

from botocore.exceptions import ClientError

from licensehub.adapters.aws.base import AwsAdapter, is_missing
from licensehub.core.interfaces import LicenseCredentials, SecretStore
from licensehub.core.retryable import error_code
from licensehub.infra.aws import get_aws_client


class SecretsManagerStore(AwsAdapter, SecretStore):
    SERVICE = "secretsmanager"

    def ref_for(self, user_id: str) -> str:
        return f"{self._settings.aws.secret_prefix}/{user_id}"

    async def put(self, user_id: str, payload: LicenseCredentials) -> str:
        name = self.ref_for(user_id)
        secret = json.dumps({
            "username": payload.username,
            "password": payload.password,
            "admin_key": payload.admin_key,
        })
        async with get_aws_client("secretsmanager") as sm:
            try:
                response = await self._call(
                    lambda: sm.create_secret(
                        Name=name,
                        SecretString=secret,
                        Tags=[{"Key": "UserId", "Value": user_id}],
                    )
                )
            except ClientError as exc:
                if error_code(exc) != "ResourceExistsException":
                    raise
                response = await self._call(
                    lambda: sm.put_secret_value(SecretId=name, SecretString=secret)
                )
        return response["ARN"]

    async def get(self, user_id: str) -> LicenseCredentials | None:
        async with get_aws_client("secretsmanager") as sm:
            try:
                response = await self._call(
                    lambda: sm.get_secret_value(SecretId=self.ref_for(user_id))
                )
            except ClientError as exc:
                if is_missing(exc, "ResourceNotFoundException"):
                    return None
                raise

        data = json.loads(response["SecretString"])
        return LicenseCredentials(
            username=data.get("username", ""),
            password=data.get("password", ""),
            admin_key=data.get("admin_key", ""),
        )

    async def delete(self, secret_ref: str) -> None:
        async with get_aws_client("secretsmanager") as sm:
            try:
                await self._call(
                    lambda: sm.delete_secret(SecretId=secret_ref, ForceDeleteWithoutRecovery=True)
                )
            except ClientError as exc:
                if not is_missing(exc, "ResourceNotFoundException"):
                    raise
