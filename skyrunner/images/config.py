"""Image builder configuration.

Immutable configuration dataclass selecting a builder variant and
describing what it builds.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Literal

from skyrunner.constants import (
    DEFAULT_BUILDER_INSTANCE_TYPE,
    DEFAULT_REBUILD_INTERVAL,
    DEFAULT_TEMPLATE_INSTANCE_TYPE,
)
from skyrunner.images.recipe import ImageComponent
from skyrunner.types import Architecture, Os

type BuilderKind = Literal["ami", "prebuilt"]


@dataclass(frozen=True, slots=True)
class ImageBuilderConfig:
    """Image builder configuration.

    Example:
        >>> ImageBuilderConfig(name="x64-windows-builder", subnet_ids=("subnet-1",))

    Args:
        name: Builder name, unique within the stack.
        kind: ``ami`` builds through an Image Builder pipeline; ``prebuilt``
            binds an existing AMI and builds nothing.
        os: Target OS family.
        architecture: Target CPU architecture.
        base_image: Parent AMI id. If None, resolved via SSM Parameter Store.
        image_id: Existing AMI for the ``prebuilt`` kind.
        components: Customization steps, in order.
        instance_type: Instance type used to run builds.
        template_instance_type: Instance type stored in the fast-launch template.
        rebuild_interval: Scheduled rebuild period. Zero disables scheduled rebuilds.
        subnet_ids: Build and fast-launch placement; the first subnet is used.
        security_group_ids: Security groups for build and fast-launch instances.
        instance_profile_name: Instance profile for build instances. Its role needs
            the AmazonSSMManagedInstanceCore and EC2InstanceProfileForImageBuilder
            managed policies.
        storage_gib: Root volume size of built images. None keeps the parent's.
    """

    name: str
    kind: BuilderKind = "ami"
    os: Os = Os.WINDOWS
    architecture: Architecture = Architecture.X86_64
    base_image: str | None = None
    image_id: str | None = None
    components: tuple[ImageComponent, ...] = ()
    instance_type: str = DEFAULT_BUILDER_INSTANCE_TYPE
    template_instance_type: str = DEFAULT_TEMPLATE_INSTANCE_TYPE
    rebuild_interval: timedelta = DEFAULT_REBUILD_INTERVAL
    subnet_ids: tuple[str, ...] = ()
    security_group_ids: tuple[str, ...] = ()
    instance_profile_name: str | None = None
    storage_gib: int | None = None
