"""In-memory AWS fakes shared by the unit tests.

Fakes keep just enough state to answer the calls skyrunner makes and raise
real botocore ``ClientError``s, so error classification is exercised as in
production.
"""

from __future__ import annotations

import asyncio
import copy
import itertools
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any

import pytest
from botocore.exceptions import ClientError

from skyrunner.clients import AwsClients, EC2ClientFactory
from skyrunner.constants import RunnerTag
from skyrunner.registry import FunctionRegistry
from skyrunner.runner.tokens import TaskTokenBroker
from skyrunner.types import StackContext

STACK = "runners"
REGION = "eu-central-1"
ACCOUNT = "123456789012"


def client_error(code: str, message: str = "", operation: str = "Operation") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message or code}}, operation)


class FakeClient:
    """Records calls and raises queued failures per operation."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.failures: dict[str, list[BaseException]] = {}

    def fail(self, operation: str, *errors: BaseException) -> None:
        self.failures.setdefault(operation, []).extend(errors)

    def _record(self, operation: str, **kwargs: Any) -> None:
        self.calls.append((operation, kwargs))
        queue = self.failures.get(operation)
        if queue:
            raise queue.pop(0)

    def called(self, operation: str) -> list[dict[str, Any]]:
        return [kwargs for op, kwargs in self.calls if op == operation]


# =============================================================================
# EC2
# =============================================================================


class FakeEc2(FakeClient):
    def __init__(self) -> None:
        super().__init__()
        self.images: dict[str, dict[str, Any]] = {}
        self.snapshots: set[str] = set()
        self.snapshot_tags: dict[str, dict[str, str]] = {}
        self.launch_templates: dict[str, dict[str, Any]] = {}
        self._ids = itertools.count(1)

    def add_image(
        self,
        image_id: str,
        stack: str | None = STACK,
        builder: str | None = None,
        snapshots: tuple[str, ...] = (),
    ) -> dict[str, Any]:
        tags = []
        if stack is not None:
            tags.append({"Key": RunnerTag.STACK.value, "Value": stack})
        if builder is not None:
            tags.append({"Key": RunnerTag.BUILDER.value, "Value": builder})
        image = {
            "ImageId": image_id,
            "RootDeviceName": "/dev/sda1",
            "Tags": tags,
            "BlockDeviceMappings": [
                {"DeviceName": f"/dev/sd{chr(ord('a') + i)}", "Ebs": {"SnapshotId": s}}
                for i, s in enumerate(snapshots)
            ],
        }
        self.images[image_id] = image
        self.snapshots.update(snapshots)
        return image

    def describe_images(
        self,
        Owners: list[str] | None = None,
        Filters: list[dict[str, Any]] | None = None,
        ImageIds: list[str] | None = None,
    ) -> dict[str, Any]:
        self._record("describe_images", Owners=Owners, Filters=Filters, ImageIds=ImageIds)
        images = list(self.images.values())
        for f in Filters or []:
            name, values = f["Name"], f["Values"]
            if name.startswith("tag:"):
                key = name.removeprefix("tag:")
                images = [i for i in images if _tag(i, key) in values]
            elif name == "image-id":
                images = [i for i in images if i["ImageId"] in values]
        if ImageIds is not None:
            images = [i for i in images if i["ImageId"] in ImageIds]
        return {"Images": copy.deepcopy(images)}

    def deregister_image(self, ImageId: str) -> dict[str, Any]:
        self._record("deregister_image", ImageId=ImageId)
        if ImageId not in self.images:
            raise client_error("InvalidAMIID.NotFound", operation="DeregisterImage")
        del self.images[ImageId]
        return {}

    def delete_snapshot(self, SnapshotId: str) -> dict[str, Any]:
        self._record("delete_snapshot", SnapshotId=SnapshotId)
        if SnapshotId not in self.snapshots:
            raise client_error("InvalidSnapshot.NotFound", operation="DeleteSnapshot")
        self.snapshots.remove(SnapshotId)
        self.snapshot_tags.pop(SnapshotId, None)
        return {}

    def describe_snapshots(self, OwnerIds: list[str], Filters: list[dict[str, Any]]) -> dict[str, Any]:
        self._record("describe_snapshots", OwnerIds=OwnerIds, Filters=Filters)
        snapshots = [
            {"SnapshotId": s, "Tags": [{"Key": k, "Value": v} for k, v in self.snapshot_tags.get(s, {}).items()]}
            for s in sorted(self.snapshots)
        ]
        for f in Filters:
            key = f["Name"].removeprefix("tag:")
            snapshots = [s for s in snapshots if _tag(s, key) in f["Values"]]
        return {"Snapshots": snapshots}

    def create_tags(self, Resources: list[str], Tags: list[dict[str, str]]) -> dict[str, Any]:
        self._record("create_tags", Resources=Resources, Tags=Tags)
        for resource in Resources:
            if resource.startswith("snap-"):
                if resource not in self.snapshots:
                    raise client_error("InvalidSnapshot.NotFound", operation="CreateTags")
                self.snapshot_tags.setdefault(resource, {}).update({t["Key"]: t["Value"] for t in Tags})
            if resource in self.images:
                existing = {t["Key"]: t["Value"] for t in self.images[resource]["Tags"]}
                existing.update({t["Key"]: t["Value"] for t in Tags})
                self.images[resource]["Tags"] = [{"Key": k, "Value": v} for k, v in existing.items()]
        return {}

    def create_launch_template(self, LaunchTemplateName: str, LaunchTemplateData: dict[str, Any]) -> dict[str, Any]:
        self._record("create_launch_template", LaunchTemplateName=LaunchTemplateName, LaunchTemplateData=LaunchTemplateData)
        if any(t["name"] == LaunchTemplateName for t in self.launch_templates.values()):
            raise client_error("InvalidLaunchTemplateName.AlreadyExistsException")
        template_id = f"lt-{next(self._ids):04d}"
        self.launch_templates[template_id] = {
            "name": LaunchTemplateName,
            "versions": [copy.deepcopy(LaunchTemplateData)],
            "default": 1,
        }
        return {"LaunchTemplate": {"LaunchTemplateId": template_id, "LaunchTemplateName": LaunchTemplateName}}

    def describe_launch_templates(self, LaunchTemplateNames: list[str]) -> dict[str, Any]:
        self._record("describe_launch_templates", LaunchTemplateNames=LaunchTemplateNames)
        return {
            "LaunchTemplates": [
                {"LaunchTemplateId": tid, "LaunchTemplateName": t["name"]}
                for tid, t in self.launch_templates.items()
                if t["name"] in LaunchTemplateNames
            ]
        }

    def create_launch_template_version(
        self,
        LaunchTemplateId: str,
        SourceVersion: str,
        VersionDescription: str,
        LaunchTemplateData: dict[str, Any],
    ) -> dict[str, Any]:
        self._record("create_launch_template_version", LaunchTemplateId=LaunchTemplateId, LaunchTemplateData=LaunchTemplateData)
        template = self.launch_templates[LaunchTemplateId]
        source = template["versions"][template["default"] - 1]
        template["versions"].append({**source, **LaunchTemplateData})
        return {"LaunchTemplateVersion": {"VersionNumber": len(template["versions"])}}

    def modify_launch_template(self, LaunchTemplateId: str, DefaultVersion: str) -> dict[str, Any]:
        self._record("modify_launch_template", LaunchTemplateId=LaunchTemplateId, DefaultVersion=DefaultVersion)
        self.launch_templates[LaunchTemplateId]["default"] = int(DefaultVersion)
        return {}

    def describe_launch_template_versions(self, LaunchTemplateId: str, Versions: list[str]) -> dict[str, Any]:
        self._record("describe_launch_template_versions", LaunchTemplateId=LaunchTemplateId, Versions=Versions)
        template = self.launch_templates.get(LaunchTemplateId)
        if template is None:
            raise client_error("InvalidLaunchTemplateId.NotFound")
        numbers = {
            {"$Default": template["default"], "$Latest": len(template["versions"])}.get(v, None) or int(v)
            for v in Versions
        }
        return {
            "LaunchTemplateVersions": [
                {"VersionNumber": n, "LaunchTemplateData": copy.deepcopy(template["versions"][n - 1])}
                for n in sorted(numbers)
            ]
        }


def _tag(resource: dict[str, Any], key: str) -> str | None:
    return next((t["Value"] for t in resource.get("Tags", []) if t["Key"] == key), None)


# =============================================================================
# Image Builder
# =============================================================================


class FakeImageBuilder(FakeClient):
    def __init__(self, ec2: FakeEc2 | None = None) -> None:
        super().__init__()
        self.ec2 = ec2
        self.build_states: list[str] = ["BUILDING", "AVAILABLE"]
        self.build_image_id = "ami-built"
        self.image_versions: dict[str, dict[str, Any]] = {}
        self.builds: dict[str, list[dict[str, Any]]] = {}

    def _arn(self, resource: str, name: str) -> str:
        return f"arn:aws:imagebuilder:{REGION}:{ACCOUNT}:{resource}/{name.lower()}"

    def create_component(self, **kwargs: Any) -> dict[str, Any]:
        self._record("create_component", **kwargs)
        return {"componentBuildVersionArn": self._arn("component", kwargs["name"]) + "/1.0.0/1"}

    def create_image_recipe(self, **kwargs: Any) -> dict[str, Any]:
        self._record("create_image_recipe", **kwargs)
        return {"imageRecipeArn": self._arn("image-recipe", kwargs["name"]) + "/1.0.0"}

    def create_infrastructure_configuration(self, **kwargs: Any) -> dict[str, Any]:
        self._record("create_infrastructure_configuration", **kwargs)
        return {"infrastructureConfigurationArn": self._arn("infrastructure-configuration", kwargs["name"])}

    def update_infrastructure_configuration(self, **kwargs: Any) -> dict[str, Any]:
        self._record("update_infrastructure_configuration", **kwargs)
        return {}

    def create_image(self, **kwargs: Any) -> dict[str, Any]:
        self._record("create_image", **kwargs)
        return {"imageBuildVersionArn": self._arn("image", "build") + "/1.0.0/1"}

    def get_image(self, imageBuildVersionArn: str) -> dict[str, Any]:
        self._record("get_image", imageBuildVersionArn=imageBuildVersionArn)
        status = self.build_states.pop(0) if len(self.build_states) > 1 else self.build_states[0]
        image: dict[str, Any] = {"arn": imageBuildVersionArn, "state": {"status": status}}
        if status == "AVAILABLE":
            image["outputResources"] = {"amis": [{"region": REGION, "image": self.build_image_id}]}
            if self.ec2 is not None and self.build_image_id not in self.ec2.images:
                self.ec2.add_image(self.build_image_id, stack=None, snapshots=(f"snap-{self.build_image_id}",))
        elif status == "FAILED":
            image["state"]["reason"] = "component failed"
        return {"image": image}

    def create_distribution_configuration(self, **kwargs: Any) -> dict[str, Any]:
        self._record("create_distribution_configuration", **kwargs)
        return {"distributionConfigurationArn": self._arn("distribution-configuration", kwargs["name"])}

    def update_distribution_configuration(self, **kwargs: Any) -> dict[str, Any]:
        self._record("update_distribution_configuration", **kwargs)
        return {}

    def create_image_pipeline(self, **kwargs: Any) -> dict[str, Any]:
        self._record("create_image_pipeline", **kwargs)
        return {"imagePipelineArn": self._arn("image-pipeline", kwargs["name"])}

    def update_image_pipeline(self, **kwargs: Any) -> dict[str, Any]:
        self._record("update_image_pipeline", **kwargs)
        return {}

    def start_image_pipeline_execution(self, **kwargs: Any) -> dict[str, Any]:
        self._record("start_image_pipeline_execution", **kwargs)
        return {"imageBuildVersionArn": self._arn("image", "pipeline-build") + "/1.0.0/2"}

    # Reaper side

    def add_build(self, recipe: str, arn: str, status: str = "AVAILABLE", amis: tuple[str, ...] = ()) -> None:
        version_arn = self._arn("image", recipe) + "/1.0.0"
        self.image_versions[version_arn] = {"arn": version_arn, "name": recipe}
        summary: dict[str, Any] = {"arn": arn, "name": recipe, "state": {"status": status}}
        if amis:
            summary["outputResources"] = {"amis": [{"region": REGION, "image": a} for a in amis]}
        self.builds.setdefault(version_arn, []).append(summary)

    def list_images(self, owner: str, filters: list[dict[str, Any]], nextToken: str | None = None) -> dict[str, Any]:
        self._record("list_images", owner=owner, filters=filters)
        names = next((f["values"] for f in filters if f["name"] == "name"), None)
        versions = [v for v in self.image_versions.values() if names is None or v["name"] in names]
        return {"imageVersionList": copy.deepcopy(versions)}

    def list_image_build_versions(self, imageVersionArn: str, nextToken: str | None = None) -> dict[str, Any]:
        self._record("list_image_build_versions", imageVersionArn=imageVersionArn)
        return {"imageSummaryList": copy.deepcopy(self.builds.get(imageVersionArn, []))}

    def delete_image(self, imageBuildVersionArn: str) -> dict[str, Any]:
        self._record("delete_image", imageBuildVersionArn=imageBuildVersionArn)
        for summaries in self.builds.values():
            for summary in summaries:
                if summary["arn"] == imageBuildVersionArn:
                    summaries.remove(summary)
                    return {"imageBuildVersionArn": imageBuildVersionArn}
        raise client_error("ResourceNotFoundException", operation="DeleteImage")


class FakeSsm(FakeClient):
    def __init__(self, value: str = "ami-base") -> None:
        super().__init__()
        self.value = value

    def get_parameter(self, Name: str) -> dict[str, Any]:
        self._record("get_parameter", Name=Name)
        return {"Parameter": {"Name": Name, "Value": self.value}}


class FakeEvents(FakeClient):
    def put_rule(self, **kwargs: Any) -> dict[str, Any]:
        self._record("put_rule", **kwargs)
        return {"RuleArn": f"arn:aws:events:{REGION}:{ACCOUNT}:rule/{kwargs['Name']}"}

    def put_targets(self, **kwargs: Any) -> dict[str, Any]:
        self._record("put_targets", **kwargs)
        return {"FailedEntryCount": 0}


# =============================================================================
# Async EC2 (launches)
# =============================================================================


type LaunchHook = Callable[[dict[str, Any]], None]


class FakeAsyncEc2:
    """Async EC2 for RunInstances.

    ``outcomes`` maps a subnet id to an exception raised when launching into
    it; subnets without an entry launch successfully. ``on_launch`` runs after
    every successful launch, e.g. to start a simulated instance.

    ``launch_delay`` stalls before the request is accepted; ``accept_delay``
    stalls after the instance exists, like a response lost on the way back.
    Requests repeating a client token return the instance already started for
    it.
    """

    def __init__(
        self,
        outcomes: dict[str, BaseException] | None = None,
        on_launch: LaunchHook | None = None,
        root_device: str = "/dev/sda1",
        launch_delay: float = 0.0,
        accept_delay: float = 0.0,
    ) -> None:
        self.outcomes = outcomes or {}
        self.on_launch = on_launch
        self.root_device = root_device
        self.launch_delay = launch_delay
        self.accept_delay = accept_delay
        self.requests: list[dict[str, Any]] = []
        self.instances: dict[str, str] = {}
        self.lookups: list[list[dict[str, Any]]] = []
        self.lookup_error: BaseException | None = None
        self.describe_calls = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self._ids = itertools.count(1)

    @property
    def subnets(self) -> list[str]:
        return [r["NetworkInterfaces"][0]["SubnetId"] for r in self.requests]

    async def describe_launch_template_versions(self, LaunchTemplateId: str, Versions: list[str]) -> dict[str, Any]:
        self.describe_calls += 1
        return {"LaunchTemplateVersions": [{"VersionNumber": 1, "LaunchTemplateData": {"ImageId": "ami-runner"}}]}

    async def describe_images(self, ImageIds: list[str]) -> dict[str, Any]:
        return {"Images": [{"ImageId": ImageIds[0], "RootDeviceName": self.root_device}]}

    async def describe_instances(self, Filters: list[dict[str, Any]]) -> dict[str, Any]:
        self.lookups.append(Filters)
        if self.lookup_error is not None:
            raise self.lookup_error
        tokens = next(f["Values"] for f in Filters if f["Name"] == "client-token")
        return {
            "Reservations": [
                {"Instances": [{"InstanceId": instance_id, "ClientToken": token, "State": {"Name": "pending"}}]}
                for token, instance_id in self.instances.items()
                if token in tokens
            ]
        }

    async def run_instances(self, **request: Any) -> dict[str, Any]:
        self.requests.append(request)
        token = request.get("ClientToken")
        if token is not None and token in self.instances:
            return {"Instances": [{"InstanceId": self.instances[token]}]}

        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.launch_delay:
                await asyncio.sleep(self.launch_delay)
            error = self.outcomes.get(request["NetworkInterfaces"][0]["SubnetId"])
            if error is not None:
                raise error

            instance_id = f"i-{next(self._ids):04d}"
            if token is not None:
                self.instances[token] = instance_id
            if self.on_launch is not None:
                self.on_launch(request)
            if self.accept_delay:
                await asyncio.sleep(self.accept_delay)
        finally:
            self.in_flight -= 1

        return {"Instances": [{"InstanceId": instance_id}]}

    def factory(self) -> EC2ClientFactory:
        @asynccontextmanager
        async def client() -> AsyncIterator[FakeAsyncEc2]:
            yield self

        return EC2ClientFactory(client)


async def simulate_instance(
    broker: TaskTokenBroker,
    token: str,
    *,
    beats: int = 3,
    interval: float = 0.01,
    outcome: str | None = "success",
) -> None:
    """Act like a booted runner: heartbeat, then report ``outcome`` (None: go silent)."""
    for _ in range(beats):
        await asyncio.sleep(interval)
        broker.heartbeat(token)
    await asyncio.sleep(interval)
    if outcome == "success":
        broker.succeed(token, '{"status": "Succeeded"}')
    elif outcome == "failure":
        broker.fail(token, error="exit 2", cause="job failed")


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def context() -> StackContext:
    return StackContext(stack_name=STACK, region=REGION, account=ACCOUNT)


@pytest.fixture
def ec2() -> FakeEc2:
    return FakeEc2()


@pytest.fixture
def imagebuilder(ec2: FakeEc2) -> FakeImageBuilder:
    return FakeImageBuilder(ec2)


@pytest.fixture
def ssm() -> FakeSsm:
    return FakeSsm()


@pytest.fixture
def events() -> FakeEvents:
    return FakeEvents()


@pytest.fixture
def clients(ec2: FakeEc2, imagebuilder: FakeImageBuilder, ssm: FakeSsm, events: FakeEvents) -> AwsClients:
    aws = AwsClients(None, REGION)  # type: ignore[arg-type]
    aws.ec2 = ec2  # type: ignore[assignment]
    aws.imagebuilder = imagebuilder  # type: ignore[assignment]
    aws.ssm = ssm
    aws.events = events
    return aws


@pytest.fixture
def registry() -> FunctionRegistry:
    return FunctionRegistry()


@pytest.fixture
def broker() -> TaskTokenBroker:
    return TaskTokenBroker()
