"""AWS client management (aioboto3)."""

import logging
from types import TracebackType
from typing import Any

import aioboto3

from licensehub.app.config import get_settings

logger = logging.getLogger(__name__)

_session: aioboto3.Session | None = None


def init_aws() -> aioboto3.Session:
    global _session

    settings = get_settings()
    _session = aioboto3.Session(region_name=settings.aws.region)
    return _session


def close_aws() -> None:
    global _session
    _session = None


class AwsClientContext:
    """Context manager for one aioboto3 service client."""

    def __init__(self, service: str) -> None:
        self._service = service
        self._context: Any = None

    async def __aenter__(self) -> Any:
        if _session is None:
            raise RuntimeError("AWS session not initialized")

        settings = get_settings()
        self._context = _session.client(
            self._service,
            region_name=settings.aws.region,
            endpoint_url=settings.aws.endpoint_url,
        )
        return await self._context.__aenter__()

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._context:
            await self._context.__aexit__(exc_type, exc_val, exc_tb)


def get_aws_client(service: str) -> AwsClientContext:
    return AwsClientContext(service)
