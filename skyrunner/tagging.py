"""Ownership tags for image artifacts.

The (stack, builder) tag pair is the only record of which builder owns an
AMI or a snapshot; garbage collection filters on it and nothing else.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from skyrunner.constants import RunnerTag


def ownership_tags(stack_name: str, builder_path: str, name: str | None = None) -> dict[str, str]:
    tags = {
        RunnerTag.STACK.value: stack_name,
        RunnerTag.BUILDER.value: builder_path,
    }
    if name is not None:
        tags = {RunnerTag.NAME.value: name, **tags}
    return tags


def snapshot_tags(stack_name: str, builder_path: str, image_id: str) -> dict[str, str]:
    return {**ownership_tags(stack_name, builder_path), RunnerTag.IMAGE.value: image_id}


def ownership_filters(stack_name: str, builder_path: str) -> list[dict[str, Any]]:
    """EC2 describe filters matching exactly one (stack, builder) pair."""
    return [
        {"Name": f"tag:{RunnerTag.STACK}", "Values": [stack_name]},
        {"Name": f"tag:{RunnerTag.BUILDER}", "Values": [builder_path]},
    ]


def as_tag_list(tags: Mapping[str, str]) -> list[dict[str, str]]:
    return [{"Key": key, "Value": value} for key, value in tags.items()]


def owned_by(image: Mapping[str, Any], stack_name: str, builder_path: str) -> bool:
    """Check an EC2 image description against the ownership pair."""
    tags = {t.get("Key"): t.get("Value") for t in image.get("Tags", [])}
    return tags.get(RunnerTag.STACK) == stack_name and tags.get(RunnerTag.BUILDER) == builder_path
