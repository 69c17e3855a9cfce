"""Declarative image recipes and their build versions.

A recipe's identity is derived from its content: changing the base image or
any component yields a new name, so Image Builder creates a new recipe (and
a rebuild) instead of mutating the old one.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field, model_validator

from skyrunner.constants import RECIPE_VERSION
from skyrunner.types import Architecture, Os


class ImageComponent(BaseModel):
    """One customization step applied on top of the base image.

    Either ``arn`` references an existing (e.g. AWS-managed) component, or
    ``commands`` are turned into an inline component document.

    Examples:
        ImageComponent(name="git", platform=Os.LINUX, commands=("apt-get install -y git",))
        ImageComponent(
            name="update-windows",
            platform=Os.WINDOWS,
            arn="arn:aws:imagebuilder:eu-central-1:aws:component/update-windows/x.x.x",
        )
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    platform: Os
    commands: tuple[str, ...] = ()
    arn: str | None = None
    version: str = Field(default="1.0.0", description="Semantic version for inline components")

    @model_validator(mode="after")
    def validate_source(self) -> Self:
        if bool(self.commands) == bool(self.arn):
            raise ValueError(f"Component '{self.name}' needs exactly one of 'commands' or 'arn'")
        return self

    def document(self) -> str:
        """AWSTOE component document (JSON is valid YAML)."""
        action = "ExecutePowerShell" if self.platform is Os.WINDOWS else "ExecuteBash"
        return json.dumps(
            {
                "name": self.name,
                "schemaVersion": 1.0,
                "phases": [
                    {
                        "name": "build",
                        "steps": [
                            {
                                "name": "Run",
                                "action": action,
                                "inputs": {"commands": list(self.commands)},
                            }
                        ],
                    }
                ],
            },
            indent=2,
        )


class ImageRecipe(BaseModel):
    """Immutable description of a buildable image."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    base_image: str
    architecture: Architecture
    platform: Os
    components: tuple[ImageComponent, ...]
    prefix: str = "skyrunner"

    @model_validator(mode="after")
    def validate_components(self) -> Self:
        if not self.components:
            raise ValueError("An image recipe needs at least one component")
        mismatched = [c.name for c in self.components if c.platform is not self.platform]
        if mismatched:
            raise ValueError(
                f"Components {', '.join(mismatched)} do not target {self.platform.value}"
            )
        return self

    def content_hash(self) -> str:
        """Hash of everything that affects the built image."""
        content = json.dumps(
            {
                "base_image": self.base_image,
                "architecture": self.architecture.value,
                "platform": self.platform.value,
                "components": [c.model_dump(mode="json") for c in self.components],
            },
            sort_keys=True,
        )
        return hashlib.sha256(content.encode()).hexdigest()[:16]

    @property
    def name(self) -> str:
        return f"{self.prefix}-{self.platform.value}-{self.architecture.value.replace('_', '')}-{self.content_hash()}"

    @property
    def version(self) -> str:
        return RECIPE_VERSION

    def to_request(self, component_arns: list[str], storage_gib: int | None = None) -> dict[str, Any]:
        """Arguments for ``imagebuilder.create_image_recipe``."""
        request: dict[str, Any] = {
            "name": self.name,
            "semanticVersion": self.version,
            "parentImage": self.base_image,
            "components": [{"componentArn": arn} for arn in component_arns],
        }
        if storage_gib is not None:
            request["blockDeviceMappings"] = [
                {"deviceName": "/dev/sda1", "ebs": {"volumeSize": storage_gib, "deleteOnTermination": True}}
            ]
        return request


class BuildStatus(StrEnum):
    PENDING = "PENDING"
    CREATING = "CREATING"
    BUILDING = "BUILDING"
    TESTING = "TESTING"
    DISTRIBUTING = "DISTRIBUTING"
    INTEGRATING = "INTEGRATING"
    AVAILABLE = "AVAILABLE"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"
    DEPRECATED = "DEPRECATED"
    DELETED = "DELETED"
    DISABLED = "DISABLED"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({
    BuildStatus.AVAILABLE,
    BuildStatus.CANCELLED,
    BuildStatus.FAILED,
    BuildStatus.DEPRECATED,
    BuildStatus.DELETED,
    BuildStatus.DISABLED,
})


@dataclass(frozen=True, slots=True)
class ImageBuildVersion:
    """One executed build of a recipe. Immutable once terminal."""

    arn: str
    status: BuildStatus
    image_ids: tuple[str, ...] = ()
    reason: str | None = None

    @property
    def image_id(self) -> str | None:
        return self.image_ids[0] if self.image_ids else None

    @classmethod
    def from_summary(cls, summary: dict[str, Any]) -> ImageBuildVersion:
        """Parse an Image Builder image (or image summary) description."""
        state = summary.get("state", {})
        amis = summary.get("outputResources", {}).get("amis", [])
        raw_status = state.get("status", BuildStatus.PENDING.value)
        try:
            status = BuildStatus(raw_status)
        except ValueError:
            status = BuildStatus.PENDING
        return cls(
            arn=summary["arn"],
            status=status,
            image_ids=tuple(a["image"] for a in amis if a.get("image")),
            reason=state.get("reason"),
        )
