"""Image reaper: deletes build versions whose AMIs no longer exist.

Works purely on metadata. The cleaner removes artifacts and snapshots; the
reaper removes the Image Builder records they leave behind when an AMI is
deleted outside the pipeline.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from botocore.exceptions import ClientError
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from skyrunner.clients import aws_retry, collect_pages, error_code
from skyrunner.images.recipe import ImageBuildVersion

_DESCRIBE_CHUNK = 200


class ReaperEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    recipe_name: str = Field(alias="RecipeName")


@dataclass(slots=True)
class ReapReport:
    examined: int = 0
    deleted: list[str] = field(default_factory=list)
    kept: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


class ImageReaper:
    def __init__(self, imagebuilder: Any, ec2: Any) -> None:
        self.imagebuilder = imagebuilder
        self.ec2 = ec2

    def build_versions(self, recipe_name: str) -> list[ImageBuildVersion]:
        """Every build version of every image version produced from ``recipe_name``."""
        image_versions = collect_pages(
            self.imagebuilder.list_images,
            "imageVersionList",
            token_key="nextToken",
            owner="Self",
            filters=[{"name": "name", "values": [recipe_name]}],
        )
        builds: list[ImageBuildVersion] = []
        for image_version in image_versions:
            summaries = collect_pages(
                self.imagebuilder.list_image_build_versions,
                "imageSummaryList",
                token_key="nextToken",
                imageVersionArn=image_version["arn"],
            )
            builds.extend(ImageBuildVersion.from_summary(s) for s in summaries)
        return builds

    def existing_images(self, image_ids: Iterable[str]) -> tuple[set[str], set[str]]:
        """Split ``image_ids`` into (existing, unknown).

        A filter is used instead of ``ImageIds`` because the latter fails the
        whole call when any id is missing. Ids whose lookup failed are unknown.
        """
        ids = sorted(set(image_ids))
        existing: set[str] = set()
        unknown: set[str] = set()
        for start in range(0, len(ids), _DESCRIBE_CHUNK):
            chunk = ids[start : start + _DESCRIBE_CHUNK]
            try:
                images = collect_pages(
                    self.ec2.describe_images,
                    "Images",
                    Owners=["self"],
                    Filters=[{"Name": "image-id", "Values": chunk}],
                )
            except ClientError as e:
                logger.warning(f"Image lookup failed for {len(chunk)} AMIs ({error_code(e)}), skipping them")
                unknown.update(chunk)
                continue
            existing.update(i["ImageId"] for i in images if i.get("ImageId"))
        return existing, unknown

    def reap(self, recipe_name: str) -> ReapReport:
        report = ReapReport()
        builds = self.build_versions(recipe_name)
        report.examined = len(builds)
        logger.info(f"Found {len(builds)} build versions of {recipe_name}")

        candidates: list[ImageBuildVersion] = []
        for build in builds:
            if not build.status.terminal or not build.image_ids:
                logger.debug(f"Leaving {build.arn} alone ({build.status.value}, {len(build.image_ids)} AMIs)")
                report.kept.append(build.arn)
                continue
            candidates.append(build)

        existing, unknown = self.existing_images(i for b in candidates for i in b.image_ids)

        for build in candidates:
            if unknown.intersection(build.image_ids):
                report.skipped.append(build.arn)
                continue
            if existing.intersection(build.image_ids):
                report.kept.append(build.arn)
                continue

            try:
                self._delete_build(build.arn)
            except ClientError as e:
                logger.warning(f"Failed to delete {build.arn} ({error_code(e)})")
                report.skipped.append(build.arn)
                continue
            report.deleted.append(build.arn)

        return report

    @aws_retry
    def _delete_build(self, arn: str) -> None:
        logger.info(f"Deleting orphaned build version {arn}")
        try:
            self.imagebuilder.delete_image(imageBuildVersionArn=arn)
        except ClientError as e:
            if error_code(e) != "ResourceNotFoundException":
                raise
            logger.debug(f"{arn} already deleted")

    def __call__(self, event: dict[str, Any], context: Any = None) -> ReapReport:
        logger.info(f"Reaper invoked: {json.dumps(event, default=str)}")
        request = ReaperEvent.model_validate(event)
        return self.reap(request.recipe_name)
