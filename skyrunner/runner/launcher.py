"""EC2 instance launch for one placement attempt.

RunInstances is used rather than fleets: it lets every attempt override user
data, network placement and disk size, and fails immediately when spot or
on-demand capacity is unavailable, which is what drives the placement chain.
"""

from __future__ import annotations

import asyncio
import base64
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from botocore.exceptions import (
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)
from loguru import logger

from skyrunner.clients import EC2ClientFactory, error_code
from skyrunner.constants import (
    DEFAULT_ROOT_DEVICE,
    DEFAULT_STORAGE_GIB,
    LAUNCH_REQUEST_TIMEOUT_SECONDS,
    RETRYABLE_EC2_ERRORS,
    ErrorKind,
    RunnerTag,
)
from skyrunner.exceptions import (
    NonRetryableProvisioningError,
    ProvisioningError,
    RetryableProvisioningError,
)
from skyrunner.runner.request import Placement
from skyrunner.types import LaunchTemplateRef

if TYPE_CHECKING:
    from types_aiobotocore_ec2 import EC2Client as AsyncEC2Client

_TIMEOUTS = (ConnectTimeoutError, ReadTimeoutError, asyncio.TimeoutError, TimeoutError)
_NETWORK = (EndpointConnectionError, ConnectionClosedError)
_GONE = frozenset({"shutting-down", "terminated"})


@dataclass(frozen=True, slots=True)
class LaunchSettings:
    """Static part of every RunInstances request a provider makes."""

    launch_template: LaunchTemplateRef
    instance_profile_arn: str
    security_group_ids: tuple[str, ...] = ()
    storage_gib: int = DEFAULT_STORAGE_GIB
    spot: bool = False
    spot_max_price: str | None = None


def run_instances_request(
    settings: LaunchSettings,
    placement: Placement,
    user_data: str,
    root_device: str,
    runner_name: str,
    client_token: str | None = None,
) -> dict[str, Any]:
    """Arguments for ``ec2.run_instances`` launching one runner into ``placement``."""
    interface: dict[str, Any] = {"DeviceIndex": 0, "SubnetId": placement.subnet_id}
    if settings.security_group_ids:
        interface["Groups"] = list(settings.security_group_ids)

    request: dict[str, Any] = {
        "LaunchTemplate": settings.launch_template.to_request(),
        "MinCount": 1,
        "MaxCount": 1,
        "UserData": base64.b64encode(user_data.encode()).decode(),
        "InstanceInitiatedShutdownBehavior": "terminate",
        "IamInstanceProfile": {"Arn": settings.instance_profile_arn},
        "MetadataOptions": {"HttpTokens": "required"},
        "BlockDeviceMappings": [
            {
                "DeviceName": root_device,
                "Ebs": {"DeleteOnTermination": True, "VolumeSize": settings.storage_gib},
            }
        ],
        "NetworkInterfaces": [interface],
        "TagSpecifications": [
            {"ResourceType": "instance", "Tags": [{"Key": RunnerTag.NAME.value, "Value": runner_name}]}
        ],
    }
    if client_token:
        request["ClientToken"] = client_token
    if settings.spot:
        spot_options: dict[str, Any] = {"SpotInstanceType": "one-time"}
        if settings.spot_max_price:
            spot_options["MaxPrice"] = settings.spot_max_price
        request["InstanceMarketOptions"] = {"MarketType": "spot", "SpotOptions": spot_options}
    return request


def classify_error(exc: BaseException, placement: Placement) -> ProvisioningError:
    """Map a launch exception to a retryable or non-retryable provisioning error."""
    code = error_code(exc)
    if code:
        message = exc.response["Error"].get("Message", str(exc))  # type: ignore[attr-defined]
        kind = RETRYABLE_EC2_ERRORS.get(code)
        if kind is not None:
            return RetryableProvisioningError(str(placement), code, message, kind)
        return NonRetryableProvisioningError(str(placement), code, message, ErrorKind.FATAL)

    if isinstance(exc, _TIMEOUTS):
        return RetryableProvisioningError(str(placement), type(exc).__name__, str(exc) or "timed out", ErrorKind.TIMEOUT)
    if isinstance(exc, _NETWORK):
        return RetryableProvisioningError(str(placement), type(exc).__name__, str(exc), ErrorKind.NETWORK)
    return NonRetryableProvisioningError(str(placement), type(exc).__name__, str(exc), ErrorKind.FATAL)


class InstanceLauncher:
    """Launches single runner instances from a launch template."""

    def __init__(
        self,
        ec2: EC2ClientFactory,
        settings: LaunchSettings,
        request_timeout: float = LAUNCH_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self._ec2 = ec2
        self.settings = settings
        self.request_timeout = request_timeout
        self._root_device: str | None = None

    async def root_device(self, client: AsyncEC2Client) -> str:
        """Root device name of the template's image, resolved once."""
        if self._root_device is not None:
            return self._root_device

        template = self.settings.launch_template
        versions = await client.describe_launch_template_versions(
            LaunchTemplateId=template.launch_template_id,
            Versions=[template.version],
        )
        data = versions["LaunchTemplateVersions"][0].get("LaunchTemplateData", {})
        image_id = data.get("ImageId")

        device = DEFAULT_ROOT_DEVICE
        if image_id:
            images = (await client.describe_images(ImageIds=[image_id])).get("Images", [])
            if images and images[0].get("RootDeviceName"):
                device = images[0]["RootDeviceName"]

        self._root_device = device
        logger.debug(f"Root device of {template.launch_template_id} is {device}")
        return device

    async def launch(
        self,
        placement: Placement,
        user_data: str,
        runner_name: str,
        client_token: str | None = None,
    ) -> str:
        """Start one instance in ``placement``. Returns its instance id.

        A request that times out or loses its connection may still have been
        accepted. Before such a failure is reported the instance is looked up
        by ``client_token``; when one exists it is returned as launched.

        Raises:
            RetryableProvisioningError: Capacity, spot or throttling, or a
                timeout that started no instance; the next placement may
                succeed.
            NonRetryableProvisioningError: Anything else, including a timeout
                whose outcome could not be looked up.
        """
        client_token = client_token or uuid.uuid4().hex
        try:
            async with self._ec2() as client:
                device = await self.root_device(client)
                request = run_instances_request(
                    self.settings, placement, user_data, device, runner_name, client_token
                )
                try:
                    response = await asyncio.wait_for(client.run_instances(**request), timeout=self.request_timeout)
                except (*_TIMEOUTS, *_NETWORK) as e:
                    found = await self.reconcile(client, placement, client_token, e)
                    logger.warning(f"Launch of {runner_name} in {placement} ended with {type(e).__name__}, found {found}")
                    return found
        except ProvisioningError:
            raise
        except Exception as e:
            raise classify_error(e, placement) from e

        instance_id: str = response["Instances"][0]["InstanceId"]
        logger.info(f"Launched {instance_id} for {runner_name} in {placement}")
        return instance_id

    async def reconcile(
        self,
        client: AsyncEC2Client,
        placement: Placement,
        client_token: str,
        error: BaseException,
    ) -> str:
        """Instance started by an unanswered request, looked up by client token."""
        failure = classify_error(error, placement)
        try:
            response = await asyncio.wait_for(
                client.describe_instances(Filters=[{"Name": "client-token", "Values": [client_token]}]),
                timeout=self.request_timeout,
            )
        except Exception as e:
            logger.error(f"Cannot tell whether {placement} started an instance: {e!r}")
            raise NonRetryableProvisioningError(
                failure.placement, failure.code, f"launch outcome unknown: {failure.message}", failure.kind
            ) from error

        live = [
            instance["InstanceId"]
            for reservation in response.get("Reservations", [])
            for instance in reservation.get("Instances", [])
            if instance.get("State", {}).get("Name") not in _GONE
        ]
        if not live:
            raise failure from error
        return live[0]
