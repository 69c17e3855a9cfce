"""Image builders.

A builder exposes a fixed set of capabilities. Each variant implements the
ones it supports and raises ``UnsupportedCapabilityError`` for the rest; the
variant is picked from configuration by ``builder_for``.

Usage:
    builder = builder_for(config, context, clients, registry)
    ami = builder.bind_ami()
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from functools import cached_property
from typing import Any, Protocol, runtime_checkable
from uuid import uuid4

from botocore.exceptions import ClientError
from loguru import logger
from tenacity import RetryError, retry, retry_if_exception_type, stop_after_delay, wait_fixed

from skyrunner.clients import AwsClients, error_code
from skyrunner.collectors.cleaner import AmiCleaner
from skyrunner.collectors.custom_resource import RequestType
from skyrunner.collectors.reaper import ImageReaper
from skyrunner.constants import (
    CLEANER_FUNCTION,
    COLLECTOR_INTERVAL,
    IMAGEBUILDER_LOG_GROUP_PREFIX,
    PIPELINE_START_CONDITION,
    REAPER_FUNCTION,
)
from skyrunner.exceptions import ConfigurationError, ImageBuildError, UnsupportedCapabilityError
from skyrunner.images.config import ImageBuilderConfig
from skyrunner.images.distribution import distribution_request, publish_launch_template
from skyrunner.images.recipe import BuildStatus, ImageBuildVersion, ImageRecipe
from skyrunner.registry import FunctionRegistry
from skyrunner.schedules import ScheduledInvocation, rate_expression
from skyrunner.tagging import as_tag_list, ownership_tags
from skyrunner.types import Architecture, LaunchTemplateRef, Os, RunnerAmi, StackContext

# Latest public base images, per (os, architecture).
BASE_IMAGE_PARAMETERS: dict[tuple[Os, Architecture], str] = {
    (Os.WINDOWS, Architecture.X86_64): "/aws/service/ami-windows-latest/Windows_Server-2022-English-Full-Base",
    (Os.LINUX, Architecture.X86_64): (
        "/aws/service/canonical/ubuntu/server/22.04/stable/current/amd64/hvm/ebs-gp2/ami-id"
    ),
    (Os.LINUX, Architecture.ARM64): (
        "/aws/service/canonical/ubuntu/server/22.04/stable/current/arm64/hvm/ebs-gp2/ami-id"
    ),
}

_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9_-]+")


# =============================================================================
# Capability interface
# =============================================================================


@dataclass(frozen=True, slots=True)
class Infrastructure:
    """Compute shape, network placement and role used to run builds."""

    arn: str
    name: str
    instance_type: str
    subnet_id: str
    security_group_ids: tuple[str, ...]


@runtime_checkable
class ImageBuilder(Protocol):
    """Capabilities an image builder may offer."""

    @property
    def name(self) -> str: ...

    def bind_ami(self) -> RunnerAmi: ...

    def bind_docker_image(self) -> str: ...

    def create_infrastructure(self) -> Infrastructure: ...

    def create_image(self, infrastructure: Infrastructure, recipe_arn: str) -> ImageBuildVersion: ...

    def create_pipeline(self, infrastructure: Infrastructure, recipe_arn: str, distribution_arn: str) -> str: ...

    def schedules(self) -> list[ScheduledInvocation]: ...

    def teardown(self) -> None: ...


# =============================================================================
# Helpers
# =============================================================================


def unique_name(context: StackContext, builder_name: str, max_length: int = 90) -> str:
    """Resource-safe name, unique per stack and builder."""
    path = context.builder_path(builder_name)
    suffix = hashlib.sha256(path.encode()).hexdigest()[:8]
    base = _UNSAFE_NAME.sub("-", f"{context.stack_name}-{builder_name}").strip("-")
    return f"{base[: max_length - len(suffix) - 1]}-{suffix}"


def resolve_base_image(ssm: Any, os: Os, architecture: Architecture) -> str:
    """Resolve the latest public base AMI through SSM Parameter Store.

    Raises:
        ConfigurationError: If there is no base image for the combination, or
            the parameter does not exist in the region.
    """
    parameter = BASE_IMAGE_PARAMETERS.get((os, architecture))
    if parameter is None:
        raise ConfigurationError(
            f"No default base image for {os.value}/{architecture.value}; set base_image explicitly"
        )

    logger.info(f"Resolving base image for {os.value}/{architecture.value}...")
    try:
        response = ssm.get_parameter(Name=parameter)
    except ClientError as e:
        if error_code(e) == "ParameterNotFound":
            raise ConfigurationError(f"SSM parameter {parameter} not found; set base_image explicitly") from e
        raise
    image_id: str = response["Parameter"]["Value"]
    logger.info(f"Resolved base image: {image_id}")
    return image_id


def _imagebuilder_arn(context: StackContext, resource: str, name: str, *version: str) -> str:
    parts = "/".join((name.lower(), *version))
    return f"arn:aws:imagebuilder:{context.region}:{context.account}:{resource}/{parts}"


class _BuildPendingError(Exception):
    """Build still running - retry."""


# =============================================================================
# Variants
# =============================================================================


class AmiImageBuilder:
    """Builds AMIs through an Image Builder pipeline and publishes them for fast launch.

    Every resource is created on first use and memoized on the instance, so
    calling a capability twice returns the same object.
    """

    def __init__(
        self,
        config: ImageBuilderConfig,
        context: StackContext,
        clients: AwsClients,
        registry: FunctionRegistry,
        *,
        poll_interval: float = 30.0,
        build_timeout: float = 4 * 3600.0,
    ) -> None:
        config.architecture.ensure_match(config.instance_type, "Builder")
        config.architecture.ensure_match(config.template_instance_type, "Fast launch template")
        if not config.subnet_ids:
            raise ConfigurationError(f"Builder '{config.name}' needs at least one subnet")
        if not config.components:
            raise ConfigurationError(f"Builder '{config.name}' needs at least one component")
        if config.instance_profile_name is None:
            raise ConfigurationError(f"Builder '{config.name}' needs an instance profile")

        self.config = config
        self.context = context
        self.clients = clients
        self.registry = registry
        self.poll_interval = poll_interval
        self.build_timeout = build_timeout

        self._component_arns: list[str] | None = None
        self._recipe_arn: str | None = None
        self._infrastructure: Infrastructure | None = None
        self._pipeline_arn: str | None = None
        self._bound: RunnerAmi | None = None
        self._schedules: list[ScheduledInvocation] = []

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def builder_path(self) -> str:
        return self.context.builder_path(self.config.name)

    @cached_property
    def unique_name(self) -> str:
        return unique_name(self.context, self.config.name)

    @cached_property
    def recipe(self) -> ImageRecipe:
        base_image = self.config.base_image or resolve_base_image(
            self.clients.ssm, self.config.os, self.config.architecture
        )
        return ImageRecipe(
            base_image=base_image,
            architecture=self.config.architecture,
            platform=self.config.os,
            components=self.config.components,
            prefix=self.unique_name,
        )

    @property
    def log_group(self) -> str:
        return f"{IMAGEBUILDER_LOG_GROUP_PREFIX}{self.recipe.name}"

    @property
    def _tags(self) -> dict[str, str]:
        return ownership_tags(self.context.stack_name, self.builder_path)

    # -------------------------------------------------------------------------
    # Recipe
    # -------------------------------------------------------------------------

    def create_components(self) -> list[str]:
        if self._component_arns is not None:
            return self._component_arns

        arns: list[str] = []
        for component in self.recipe.components:
            if component.arn:
                arns.append(component.arn)
                continue
            document = component.document()
            name = f"{self.unique_name}-{component.name}-{hashlib.sha256(document.encode()).hexdigest()[:8]}"
            try:
                response = self.clients.imagebuilder.create_component(
                    name=name,
                    semanticVersion=component.version,
                    platform=self.config.os.platform,
                    data=document,
                    tags=self._tags,
                    clientToken=str(uuid4()),
                )
                arns.append(response["componentBuildVersionArn"])
                logger.info(f"Created component {name}")
            except ClientError as e:
                if error_code(e) != "ResourceAlreadyExistsException":
                    raise
                arns.append(_imagebuilder_arn(self.context, "component", name, component.version, "1"))

        self._component_arns = arns
        return arns

    def create_recipe(self) -> str:
        if self._recipe_arn is not None:
            return self._recipe_arn

        request = self.recipe.to_request(self.create_components(), self.config.storage_gib)
        try:
            response = self.clients.imagebuilder.create_image_recipe(
                **request, tags=self._tags, clientToken=str(uuid4())
            )
            self._recipe_arn = response["imageRecipeArn"]
            logger.info(f"Created recipe {self.recipe.name}")
        except ClientError as e:
            if error_code(e) != "ResourceAlreadyExistsException":
                raise
            self._recipe_arn = _imagebuilder_arn(self.context, "image-recipe", self.recipe.name, self.recipe.version)
            logger.debug(f"Recipe {self.recipe.name} already exists")
        return self._recipe_arn

    # -------------------------------------------------------------------------
    # Capabilities
    # -------------------------------------------------------------------------

    def create_infrastructure(self) -> Infrastructure:
        if self._infrastructure is not None:
            return self._infrastructure

        name = self.unique_name
        request: dict[str, Any] = {
            "name": name,
            "description": f"Build infrastructure for {self.builder_path}",
            "instanceTypes": [self.config.instance_type],
            "instanceProfileName": self.config.instance_profile_name,
            "subnetId": self.config.subnet_ids[0],
            "securityGroupIds": list(self.config.security_group_ids),
            "terminateInstanceOnFailure": True,
            "instanceMetadataOptions": {"httpTokens": "required", "httpPutResponseHopLimit": 2},
            "tags": self._tags,
        }
        try:
            arn = self.clients.imagebuilder.create_infrastructure_configuration(
                **request, clientToken=str(uuid4())
            )["infrastructureConfigurationArn"]
            logger.info(f"Created infrastructure configuration {name}")
        except ClientError as e:
            if error_code(e) != "ResourceAlreadyExistsException":
                raise
            arn = _imagebuilder_arn(self.context, "infrastructure-configuration", name)
            update = {k: v for k, v in request.items() if k not in ("name", "tags")}
            self.clients.imagebuilder.update_infrastructure_configuration(
                infrastructureConfigurationArn=arn, **update, clientToken=str(uuid4())
            )
            logger.info(f"Updated infrastructure configuration {name}")

        self._infrastructure = Infrastructure(
            arn=arn,
            name=name,
            instance_type=self.config.instance_type,
            subnet_id=self.config.subnet_ids[0],
            security_group_ids=tuple(self.config.security_group_ids),
        )
        return self._infrastructure

    def create_image(self, infrastructure: Infrastructure, recipe_arn: str) -> ImageBuildVersion:
        """Run one build outside the pipeline and wait for it.

        The resulting AMI is tagged with the ownership pair before returning.

        Raises:
            ImageBuildError: If the build fails or does not finish in time.
        """
        arn = self.clients.imagebuilder.create_image(
            imageRecipeArn=recipe_arn,
            infrastructureConfigurationArn=infrastructure.arn,
            imageTestsConfiguration={"imageTestsEnabled": False},
            tags=self._tags,
            clientToken=str(uuid4()),
        )["imageBuildVersionArn"]
        logger.info(f"Started image build {arn}")

        build = self.wait_for_build(arn)
        if build.status is not BuildStatus.AVAILABLE or build.image_id is None:
            raise ImageBuildError(arn, build.status.value, build.reason)

        tags = ownership_tags(self.context.stack_name, self.builder_path, name=self.config.name)
        self.clients.ec2.create_tags(Resources=list(build.image_ids), Tags=as_tag_list(tags))
        logger.info(f"Image build {arn} produced {build.image_id}")
        return build

    def wait_for_build(self, arn: str) -> ImageBuildVersion:
        @retry(
            stop=stop_after_delay(self.build_timeout),
            wait=wait_fixed(self.poll_interval),
            retry=retry_if_exception_type(_BuildPendingError),
        )
        def _poll() -> ImageBuildVersion:
            image = self.clients.imagebuilder.get_image(imageBuildVersionArn=arn)["image"]
            build = ImageBuildVersion.from_summary(image)
            if not build.status.terminal:
                logger.debug(f"Image build {arn} is {build.status.value}")
                raise _BuildPendingError()
            return build

        try:
            return _poll()
        except RetryError as e:
            raise ImageBuildError(arn, "TIMEOUT", f"not finished after {self.build_timeout:.0f}s") from e

    def create_distribution(self, template: LaunchTemplateRef) -> str:
        request = distribution_request(self.unique_name, self.context, self.config.name, template)
        try:
            arn = self.clients.imagebuilder.create_distribution_configuration(
                **request, tags=self._tags, clientToken=str(uuid4())
            )["distributionConfigurationArn"]
            logger.info(f"Created distribution configuration {self.unique_name}")
        except ClientError as e:
            if error_code(e) != "ResourceAlreadyExistsException":
                raise
            arn = _imagebuilder_arn(self.context, "distribution-configuration", self.unique_name)
            self.clients.imagebuilder.update_distribution_configuration(
                distributionConfigurationArn=arn,
                distributions=request["distributions"],
                clientToken=str(uuid4()),
            )
        return arn

    def create_pipeline(self, infrastructure: Infrastructure, recipe_arn: str, distribution_arn: str) -> str:
        if self._pipeline_arn is not None:
            return self._pipeline_arn

        request: dict[str, Any] = {
            "imageRecipeArn": recipe_arn,
            "infrastructureConfigurationArn": infrastructure.arn,
            "distributionConfigurationArn": distribution_arn,
            "imageTestsConfiguration": {"imageTestsEnabled": False},
            "status": "ENABLED",
        }
        if self.config.rebuild_interval.total_seconds() > 0:
            request["schedule"] = {
                "scheduleExpression": rate_expression(self.config.rebuild_interval),
                "pipelineExecutionStartCondition": PIPELINE_START_CONDITION,
            }

        try:
            arn = self.clients.imagebuilder.create_image_pipeline(
                name=self.unique_name, **request, tags=self._tags, clientToken=str(uuid4())
            )["imagePipelineArn"]
            logger.info(f"Created image pipeline {self.unique_name}")
        except ClientError as e:
            if error_code(e) != "ResourceAlreadyExistsException":
                raise
            arn = _imagebuilder_arn(self.context, "image-pipeline", self.unique_name)
            self.clients.imagebuilder.update_image_pipeline(imagePipelineArn=arn, **request, clientToken=str(uuid4()))
            logger.info(f"Updated image pipeline {self.unique_name}")

        self._pipeline_arn = arn
        return arn

    def bind_ami(self) -> RunnerAmi:
        """Build the first image, publish it, and set up scheduled rebuilds and collection."""
        if self._bound is not None:
            return self._bound

        infrastructure = self.create_infrastructure()
        recipe_arn = self.create_recipe()
        build = self.create_image(infrastructure, recipe_arn)
        assert build.image_id is not None

        template = publish_launch_template(
            self.clients.ec2,
            self.unique_name,
            build.image_id,
            self.config.template_instance_type,
            infrastructure.subnet_id,
            infrastructure.security_group_ids,
        )
        distribution_arn = self.create_distribution(template)
        self.create_pipeline(infrastructure, recipe_arn, distribution_arn)
        self._register_collectors(template)

        self._bound = RunnerAmi(
            launch_template=LaunchTemplateRef(template.launch_template_id),
            architecture=self.config.architecture,
            os=self.config.os,
            log_group=self.log_group,
        )
        return self._bound

    def bind_docker_image(self) -> str:
        raise UnsupportedCapabilityError(type(self).__name__, "bind_docker_image")

    def start_build(self) -> str:
        """Trigger an immediate pipeline run. Returns the build version ARN."""
        if self._pipeline_arn is None:
            raise ConfigurationError(f"Builder '{self.name}' has no pipeline yet; call bind_ami() first")
        arn: str = self.clients.imagebuilder.start_image_pipeline_execution(
            imagePipelineArn=self._pipeline_arn, clientToken=str(uuid4())
        )["imageBuildVersionArn"]
        logger.info(f"Started pipeline build {arn}")
        return arn

    # -------------------------------------------------------------------------
    # Collection
    # -------------------------------------------------------------------------

    def _register_collectors(self, template: LaunchTemplateRef) -> None:
        self._register_cleaner()
        self.registry.get_or_register(
            REAPER_FUNCTION, lambda: ImageReaper(self.clients.imagebuilder, self.clients.ec2)
        )
        self._schedules = [
            ScheduledInvocation(
                rule_name=f"{self.unique_name}-delete-ami",
                description=f"Delete old AMIs of {self.builder_path}",
                interval=COLLECTOR_INTERVAL,
                function=CLEANER_FUNCTION,
                payload={
                    "RequestType": RequestType.SCHEDULED.value,
                    "LaunchTemplateId": template.launch_template_id,
                    "StackName": self.context.stack_name,
                    "BuilderName": self.builder_path,
                },
            ),
            ScheduledInvocation(
                rule_name=f"{self.unique_name}-reaper",
                description=f"Delete orphaned build versions of {self.recipe.name}",
                interval=COLLECTOR_INTERVAL,
                function=REAPER_FUNCTION,
                payload={"RecipeName": self.recipe.name},
            ),
        ]

    def _register_cleaner(self) -> AmiCleaner:
        return self.registry.get_or_register(CLEANER_FUNCTION, lambda: AmiCleaner(self.clients.ec2))

    def schedules(self) -> list[ScheduledInvocation]:
        return list(self._schedules)

    def teardown(self) -> None:
        """Delete every AMI this builder ever produced, even if it was never bound here."""
        self._register_cleaner()
        self.registry.invoke(
            CLEANER_FUNCTION,
            {
                "RequestType": RequestType.DELETE.value,
                "ResourceProperties": {
                    "StackName": self.context.stack_name,
                    "BuilderName": self.builder_path,
                },
            },
        )


class PrebuiltAmiBuilder:
    """Binds an existing AMI. Builds nothing and owns no image artifacts."""

    def __init__(
        self,
        config: ImageBuilderConfig,
        context: StackContext,
        clients: AwsClients,
        registry: FunctionRegistry,
    ) -> None:
        if not config.image_id:
            raise ConfigurationError(f"Prebuilt builder '{config.name}' needs image_id")
        if not config.subnet_ids:
            raise ConfigurationError(f"Builder '{config.name}' needs at least one subnet")
        config.architecture.ensure_match(config.template_instance_type, "Launch template")

        self.config = config
        self.context = context
        self.clients = clients
        self.registry = registry
        self._bound: RunnerAmi | None = None

    @property
    def name(self) -> str:
        return self.config.name

    def bind_ami(self) -> RunnerAmi:
        if self._bound is not None:
            return self._bound

        assert self.config.image_id is not None
        template = publish_launch_template(
            self.clients.ec2,
            unique_name(self.context, self.config.name),
            self.config.image_id,
            self.config.template_instance_type,
            self.config.subnet_ids[0],
            self.config.security_group_ids,
        )
        self._bound = RunnerAmi(
            launch_template=LaunchTemplateRef(template.launch_template_id),
            architecture=self.config.architecture,
            os=self.config.os,
        )
        return self._bound

    def bind_docker_image(self) -> str:
        raise UnsupportedCapabilityError(type(self).__name__, "bind_docker_image")

    def create_infrastructure(self) -> Infrastructure:
        raise UnsupportedCapabilityError(type(self).__name__, "create_infrastructure")

    def create_image(self, infrastructure: Infrastructure, recipe_arn: str) -> ImageBuildVersion:
        raise UnsupportedCapabilityError(type(self).__name__, "create_image")

    def create_pipeline(self, infrastructure: Infrastructure, recipe_arn: str, distribution_arn: str) -> str:
        raise UnsupportedCapabilityError(type(self).__name__, "create_pipeline")

    def schedules(self) -> list[ScheduledInvocation]:
        return []

    def teardown(self) -> None:
        logger.debug(f"Builder '{self.name}' owns no images, nothing to clean")


def builder_for(
    config: ImageBuilderConfig,
    context: StackContext,
    clients: AwsClients,
    registry: FunctionRegistry,
) -> ImageBuilder:
    """Select the builder variant for a configuration."""
    match config.kind:
        case "ami":
            return AmiImageBuilder(config, context, clients, registry)
        case "prebuilt":
            return PrebuiltAmiBuilder(config, context, clients, registry)
        case _:
            raise ConfigurationError(f"Unknown builder kind '{config.kind}' for '{config.name}'")
