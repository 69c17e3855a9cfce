"""AWS client factories.

The orchestrator talks to EC2 through aioboto3 (async, one client per
launch). The image pipeline and the collectors run as short synchronous units
of work and use plain boto3 clients created lazily.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from functools import cached_property
from typing import TYPE_CHECKING, Any

import aioboto3
import boto3
from botocore.exceptions import ClientError
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from skyrunner.constants import THROTTLING_ERRORS

if TYPE_CHECKING:
    from mypy_boto3_ec2 import EC2Client
    from mypy_boto3_imagebuilder import ImagebuilderClient


class EC2ClientFactory:
    """Async EC2 client factory.

    Usage:
        async with ec2() as client:
            await client.run_instances(...)
    """

    def __init__(self, factory: Callable[[], AbstractAsyncContextManager[Any]]) -> None:
        self._factory = factory

    def __call__(self) -> AbstractAsyncContextManager[Any]:
        return self._factory()

    @classmethod
    def from_session(cls, session: aioboto3.Session, region: str) -> EC2ClientFactory:
        @asynccontextmanager
        async def factory() -> AsyncIterator[Any]:
            async with session.client("ec2", region_name=region) as client:
                yield client

        return cls(factory)


class AwsClients:
    """Lazily created synchronous boto3 clients for one region."""

    def __init__(self, session: boto3.Session, region: str) -> None:
        self.session = session
        self.region = region

    @cached_property
    def ec2(self) -> EC2Client:
        return self.session.client("ec2", region_name=self.region)

    @cached_property
    def imagebuilder(self) -> ImagebuilderClient:
        return self.session.client("imagebuilder", region_name=self.region)

    @cached_property
    def ssm(self) -> Any:
        return self.session.client("ssm", region_name=self.region)

    @cached_property
    def events(self) -> Any:
        return self.session.client("events", region_name=self.region)


# =============================================================================
# Error helpers
# =============================================================================


def error_code(exc: BaseException) -> str:
    """Provider error code of a botocore ClientError, or "" for anything else."""
    if isinstance(exc, ClientError):
        return str(exc.response.get("Error", {}).get("Code", ""))
    return ""


def is_throttling(exc: BaseException) -> bool:
    return error_code(exc) in THROTTLING_ERRORS


aws_retry = retry(
    retry=retry_if_exception(is_throttling),
    stop=stop_after_attempt(5),
    wait=wait_exponential(multiplier=0.5, max=20),
    reraise=True,
)
"""Retry a synchronous AWS call while the provider throttles it."""


def collect_pages(
    call: Callable[..., dict[str, Any]],
    items_key: str,
    token_key: str = "NextToken",
    **kwargs: Any,
) -> list[dict[str, Any]]:
    """Follow a token-paginated describe/list call to the end.

    Each page is fetched through ``aws_retry``, so a throttled page is retried
    without restarting the listing.
    """
    items: list[dict[str, Any]] = []
    fetch = aws_retry(call)
    while True:
        response = fetch(**kwargs)
        items.extend(response.get(items_key, []))
        token = response.get(token_key)
        if not token:
            return items
        kwargs[token_key] = token
