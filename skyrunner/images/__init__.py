"""Image lifecycle: recipes, builders and fast-start distribution."""

from skyrunner.images.recipe import BuildStatus, ImageBuildVersion, ImageComponent, ImageRecipe
from skyrunner.images.config import ImageBuilderConfig
from skyrunner.images.distribution import FAST_LAUNCH_POLICY, FastLaunchPolicy, activate_image
from skyrunner.images.builder import (
    AmiImageBuilder,
    ImageBuilder,
    Infrastructure,
    PrebuiltAmiBuilder,
    builder_for,
)

__all__ = [
    "FAST_LAUNCH_POLICY",
    "AmiImageBuilder",
    "BuildStatus",
    "FastLaunchPolicy",
    "ImageBuildVersion",
    "ImageBuilder",
    "ImageBuilderConfig",
    "ImageComponent",
    "ImageRecipe",
    "Infrastructure",
    "PrebuiltAmiBuilder",
    "activate_image",
    "builder_for",
]
