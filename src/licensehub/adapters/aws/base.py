"""Shared plumbing for AWS-backed collaborators."""

from collections.abc import Awaitable, Callable
from typing import ClassVar, TypeVar

from botocore.exceptions import ClientError

from licensehub.app.config import Settings, get_settings
from licensehub.core.retryable import error_code, with_retry

T = TypeVar("T")


class AwsAdapter:
    """Base for adapters that call one AWS service.

    Every call goes through ``with_retry`` and the service's circuit breaker.
    """

    SERVICE: ClassVar[str]

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    async def _call(self, coro_factory: Callable[[], Awaitable[T]]) -> T:
        aws = self._settings.aws
        return await with_retry(
            coro_factory,
            max_retries=aws.max_retries,
            base_delay=aws.retry_base_delay,
            circuit_breaker=self.SERVICE,
        )


def is_missing(exc: ClientError, *codes: str) -> bool:
    """True if the error says the resource does not exist."""
    status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    return error_code(exc) in codes or status == 404
