"""Shared value types for the image pipeline and the runner provider."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum

from skyrunner.exceptions import ConfigurationError

# Graviton families: letter(s) + number + "g" (optionally d/n/e), e.g. m7g, c7gd, t4g.
# GPU families such as g4dn or g5 start with "g" and do not match.
_GRAVITON_FAMILY = re.compile(r"^[a-z]+\d+g[den]*$")


class Os(StrEnum):
    WINDOWS = "windows"
    LINUX = "linux"

    @property
    def platform(self) -> str:
        """Platform name as Image Builder spells it."""
        return "Windows" if self is Os.WINDOWS else "Linux"


class Architecture(StrEnum):
    X86_64 = "x86_64"
    ARM64 = "arm64"

    @classmethod
    def of_instance_type(cls, instance_type: str) -> Architecture:
        """Infer the CPU architecture of an EC2 instance type from its family."""
        family = instance_type.split(".")[0]
        if family == "a1" or _GRAVITON_FAMILY.match(family):
            return cls.ARM64
        return cls.X86_64

    def instance_type_match(self, instance_type: str) -> bool:
        return Architecture.of_instance_type(instance_type) is self

    def ensure_match(self, instance_type: str, what: str) -> None:
        """Fail fast when an instance type cannot boot images of this architecture."""
        if not self.instance_type_match(instance_type):
            actual = Architecture.of_instance_type(instance_type)
            raise ConfigurationError(
                f"{what} architecture ({self.value}) doesn't match instance type "
                f"({instance_type} / {actual.value})"
            )


@dataclass(frozen=True, slots=True)
class LaunchTemplateRef:
    """Reference to a launch template.

    Versions are immutable; a new image becomes active by publishing a new
    version and making it the default, never by editing an existing one.
    """

    launch_template_id: str
    version: str = "$Default"

    def to_request(self) -> dict[str, str]:
        return {"LaunchTemplateId": self.launch_template_id, "Version": self.version}


@dataclass(frozen=True, slots=True)
class RunnerAmi:
    """What a runner provider needs from an image builder."""

    launch_template: LaunchTemplateRef
    architecture: Architecture
    os: Os
    log_group: str | None = None


@dataclass(frozen=True, slots=True)
class StackContext:
    """Identity of the deployment that owns builders, providers and collectors."""

    stack_name: str
    region: str
    account: str

    def builder_path(self, builder_name: str) -> str:
        """Logical path of a builder; stored in the builder ownership tag."""
        return f"{self.stack_name}/{builder_name}"
