"""Unit tests for the AWS adapters (no AWS calls; clients are mocked)."""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest
from botocore.exceptions import ClientError

from licensehub.adapters.aws import ecs, elbv2, secretsmanager
from licensehub.adapters.aws.ecs import EcsComputeLauncher, map_task_status
from licensehub.adapters.aws.efs import DEFAULT_OWNER, LEGACY_OWNER, owner_for_version
from licensehub.adapters.aws.elbv2 import ElbRoutingManager
from licensehub.adapters.aws.iam import IamIdentityManager
from licensehub.adapters.aws.s3 import S3ObjectStorage
from licensehub.adapters.aws.secretsmanager import SecretsManagerStore
from licensehub.app.config import Settings
from licensehub.core.domain import TaskStatus
from licensehub.core.interfaces import LicenseCredentials, TaskProfile


def _client_error(code: str, status: int = 400) -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        "Operation",
    )


@pytest.fixture
def aws_client(monkeypatch: pytest.MonkeyPatch) -> MagicMock:
    """Replace get_aws_client in every adapter module with one mock client."""
    client = MagicMock()

    @asynccontextmanager
    async def fake_client(service: str):
        yield client

    for module in (ecs, elbv2, secretsmanager):
        monkeypatch.setattr(module, "get_aws_client", fake_client)
    return client


def _profile(**overrides) -> TaskProfile:
    values = dict(
        user_id="123456789012",
        username="alice",
        app_version="13",
        access_point_id="fsap-1",
        secret_ref="arn:secret",
        bucket_name="foundry-alice-89012",
        bucket_access_key_id="AKIA",
        bucket_secret_access_key="secret",
    )
    values.update(overrides)
    return TaskProfile(**values)


class TestNaming:
    """Deterministic resource names."""

    def test_bucket_name(self, settings: Settings) -> None:
        storage = S3ObjectStorage(settings)

        assert storage.bucket_name("123456789012", "Alice") == "foundry-alice-56789012"

    def test_iam_user_name(self, settings: Settings) -> None:
        assert IamIdentityManager(settings).user_name("u1") == "foundry-u1"

    def test_secret_ref(self, settings: Settings) -> None:
        assert SecretsManagerStore(settings).ref_for("u1") == "licensehub/instances/u1"

    @pytest.mark.parametrize(
        "version,expected",
        [("11", LEGACY_OWNER), ("12", LEGACY_OWNER), ("13", DEFAULT_OWNER), ("latest", DEFAULT_OWNER)],
    )
    def test_owner_for_version(self, version: str, expected: tuple[int, int]) -> None:
        assert owner_for_version(version) == expected


class TestEcsTaskDefinition:
    @pytest.mark.parametrize(
        "last_status,expected",
        [
            (None, TaskStatus.STOPPED),
            ("PROVISIONING", TaskStatus.STARTING),
            ("RUNNING", TaskStatus.RUNNING),
            ("deactivating", TaskStatus.STOPPING),
            ("STOPPED", TaskStatus.STOPPED),
            ("SOMETHING_NEW", TaskStatus.STARTING),
        ],
    )
    def test_map_task_status(self, last_status: str | None, expected: TaskStatus) -> None:
        assert map_task_status(last_status) == expected

    def test_with_bucket(self, settings: Settings) -> None:
        request = EcsComputeLauncher(settings).task_definition(_profile())

        names = [c["name"] for c in request["containerDefinitions"]]
        app = request["containerDefinitions"][-1]
        assert names == [ecs.CONFIG_CONTAINER, ecs.APP_CONTAINER]
        assert app["image"].endswith(":13")
        assert app["dependsOn"][0]["condition"] == "SUCCESS"
        assert {"name": "FOUNDRY_HOSTNAME", "value": "alice.example.com"} in app["environment"]
        assert [s["name"] for s in app["secrets"]] == [
            "FOUNDRY_USERNAME",
            "FOUNDRY_PASSWORD",
            "FOUNDRY_ADMIN_KEY",
        ]
        volume = request["volumes"][0]["efsVolumeConfiguration"]
        assert volume["authorizationConfig"] == {"accessPointId": "fsap-1"}

    def test_without_bucket_or_secret(self, settings: Settings) -> None:
        request = EcsComputeLauncher(settings).task_definition(
            _profile(bucket_name=None, secret_ref=None, access_point_id=None)
        )

        (app,) = request["containerDefinitions"]
        assert "secrets" not in app
        assert "dependsOn" not in app
        assert "authorizationConfig" not in request["volumes"][0]["efsVolumeConfiguration"]


class TestEcsCalls:
    async def test_stop_skips_stopped_task(self, settings: Settings, aws_client: MagicMock) -> None:
        aws_client.describe_tasks = AsyncMock(return_value={"tasks": [{"lastStatus": "STOPPED"}]})
        aws_client.stop_task = AsyncMock()

        await EcsComputeLauncher(settings).stop("task-arn")

        aws_client.stop_task.assert_not_awaited()

    async def test_stop_running_task(self, settings: Settings, aws_client: MagicMock) -> None:
        aws_client.describe_tasks = AsyncMock(return_value={"tasks": [{"lastStatus": "RUNNING"}]})
        aws_client.stop_task = AsyncMock()

        await EcsComputeLauncher(settings).stop("task-arn")

        aws_client.stop_task.assert_awaited_once()
        assert aws_client.stop_task.await_args.kwargs["task"] == "task-arn"

    async def test_private_address(self, settings: Settings, aws_client: MagicMock) -> None:
        aws_client.describe_tasks = AsyncMock(return_value={"tasks": [{
            "lastStatus": "RUNNING",
            "attachments": [{"details": [{"name": "privateIPv4Address", "value": "10.0.0.9"}]}],
        }]})

        assert await EcsComputeLauncher(settings).private_address("task-arn") == "10.0.0.9"


class TestElbRouting:
    async def test_next_priority_skips_used_across_pages(self, settings: Settings, aws_client: MagicMock) -> None:
        aws_client.describe_rules = AsyncMock(side_effect=[
            {"Rules": [{"Priority": "default"}, {"Priority": "100"}], "NextMarker": "m"},
            {"Rules": [{"Priority": "110"}]},
        ])

        assert await ElbRoutingManager(settings).next_priority() == 120

    async def test_delete_missing_rule_is_ignored(self, settings: Settings, aws_client: MagicMock) -> None:
        aws_client.delete_rule = AsyncMock(side_effect=_client_error("RuleNotFound"))

        await ElbRoutingManager(settings).delete_rule("rule-arn")


class TestSecretsManager:
    async def test_get_missing_secret(self, settings: Settings, aws_client: MagicMock) -> None:
        aws_client.get_secret_value = AsyncMock(side_effect=_client_error("ResourceNotFoundException"))

        assert await SecretsManagerStore(settings).get("u1") is None

    async def test_get_parses_payload(self, settings: Settings, aws_client: MagicMock) -> None:
        aws_client.get_secret_value = AsyncMock(return_value={
            "SecretString": '{"username": "lu", "password": "lp", "admin_key": "ak"}'
        })

        assert await SecretsManagerStore(settings).get("u1") == LicenseCredentials("lu", "lp", "ak")

    async def test_put_overwrites_existing(self, settings: Settings, aws_client: MagicMock) -> None:
        aws_client.create_secret = AsyncMock(side_effect=_client_error("ResourceExistsException"))
        aws_client.put_secret_value = AsyncMock(return_value={"ARN": "arn:secret"})

        ref = await SecretsManagerStore(settings).put("u1", LicenseCredentials("lu", "lp", "ak"))

        assert ref == "arn:secret"
        assert aws_client.put_secret_value.await_args.kwargs["SecretId"] == "licensehub/instances/u1"
