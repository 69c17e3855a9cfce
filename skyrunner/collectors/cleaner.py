"""AMI cleaner: deletes every image artifact owned by one (stack, builder) pair.

Ownership is read from the artifact's tags and nothing else. Each artifact is
deregistered before its backing snapshots are deleted; when deregistration
fails, the snapshots are left alone so no active image loses its storage.
Snapshots are tagged with their owner and image before the image goes, and
every sweep first deletes owned snapshots whose image no longer exists, so a
snapshot that could not be deleted last time is picked up again. Deleting
something that is already gone is a no-op, so the sweep can be run again at
any time.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Collection
from dataclasses import dataclass, field
from typing import Any

from botocore.exceptions import ClientError
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, model_validator
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from skyrunner.clients import aws_retry, collect_pages, error_code, is_throttling
from skyrunner.collectors import custom_resource
from skyrunner.collectors.custom_resource import RequestType, ResponseStatus, redact
from skyrunner.constants import CLEANER_PHYSICAL_ID, RunnerTag
from skyrunner.tagging import as_tag_list, owned_by, ownership_filters, snapshot_tags

_IMAGE_GONE = frozenset({"InvalidAMIID.NotFound", "InvalidAMIID.Unavailable"})
_SNAPSHOT_GONE = frozenset({"InvalidSnapshot.NotFound"})
_SNAPSHOT_BUSY = frozenset({"InvalidSnapshot.InUse"})
_TEMPLATE_GONE = frozenset({"InvalidLaunchTemplateId.NotFound", "InvalidLaunchTemplateId.Malformed"})

type Responder = Callable[..., None]


def _snapshot_busy(exc: BaseException) -> bool:
    return is_throttling(exc) or error_code(exc) in _SNAPSHOT_BUSY


# A snapshot stays in use for a while after its image is deregistered.
snapshot_retry = retry(
    retry=retry_if_exception(_snapshot_busy),
    stop=stop_after_attempt(5),
    wait=wait_exponential(multiplier=0.5, max=20),
    reraise=True,
)


class CleanerEvent(BaseModel):
    """Cleaner invocation payload.

    Teardown events nest the owner under ``ResourceProperties``; scheduled
    events carry it at the top level.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    request_type: RequestType = Field(alias="RequestType")
    stack_name: str | None = Field(default=None, alias="StackName")
    builder_name: str | None = Field(default=None, alias="BuilderName")
    launch_template_id: str | None = Field(default=None, alias="LaunchTemplateId")
    response_url: str | None = Field(default=None, alias="ResponseURL")
    physical_resource_id: str | None = Field(default=None, alias="PhysicalResourceId")

    @model_validator(mode="before")
    @classmethod
    def merge_resource_properties(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("ResourceProperties"), dict):
            top = {k: v for k, v in data.items() if k != "ResourceProperties"}
            return {**data["ResourceProperties"], **top}
        return data

    def owner(self) -> tuple[str, str]:
        if not self.stack_name or not self.builder_name:
            raise ValueError(f"{self.request_type.value} request needs both StackName and BuilderName")
        return self.stack_name, self.builder_name


@dataclass(slots=True)
class CleanupReport:
    found: int = 0
    deregistered: list[str] = field(default_factory=list)
    snapshots_deleted: list[str] = field(default_factory=list)
    kept: list[str] = field(default_factory=list)
    skipped: int = 0
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def clean(self) -> bool:
        return not self.failed


def snapshot_ids(image: dict[str, Any]) -> list[str]:
    """Snapshots backing one image, in block-device order."""
    return [
        mapping["Ebs"]["SnapshotId"]
        for mapping in image.get("BlockDeviceMappings", [])
        if mapping.get("Ebs", {}).get("SnapshotId")
    ]


class AmiCleaner:
    """Deletes owned AMIs and their snapshots; also the cleaner's invocation handler."""

    def __init__(self, ec2: Any, respond: Responder = custom_resource.respond) -> None:
        self.ec2 = ec2
        self._respond = respond

    def owned_images(self, stack_name: str, builder_name: str) -> list[dict[str, Any]]:
        return collect_pages(
            self.ec2.describe_images,
            "Images",
            Owners=["self"],
            Filters=ownership_filters(stack_name, builder_name),
        )

    def referenced_images(self, launch_template_id: str) -> frozenset[str]:
        """Images the launch template's default and latest versions point at."""
        try:
            versions = collect_pages(
                self.ec2.describe_launch_template_versions,
                "LaunchTemplateVersions",
                LaunchTemplateId=launch_template_id,
                Versions=["$Default", "$Latest"],
            )
        except ClientError as e:
            if error_code(e) not in _TEMPLATE_GONE:
                raise
            logger.info(f"Launch template {launch_template_id} is gone, nothing to keep")
            return frozenset()

        return frozenset(
            v["LaunchTemplateData"]["ImageId"]
            for v in versions
            if v.get("LaunchTemplateData", {}).get("ImageId")
        )

    def owned_snapshots(self, stack_name: str, builder_name: str) -> list[dict[str, Any]]:
        return collect_pages(
            self.ec2.describe_snapshots,
            "Snapshots",
            OwnerIds=["self"],
            Filters=ownership_filters(stack_name, builder_name),
        )

    def delete_orphaned_snapshots(
        self,
        stack_name: str,
        builder_name: str,
        live_images: Collection[str],
        report: CleanupReport,
    ) -> None:
        """Delete owned snapshots left behind by an image that is already gone.

        Only snapshots tagged with their image by an earlier sweep are
        considered; a snapshot whose image is still in ``live_images`` is kept.
        """
        for snapshot in self.owned_snapshots(stack_name, builder_name):
            snapshot_id = snapshot.get("SnapshotId")
            tags = {t.get("Key"): t.get("Value") for t in snapshot.get("Tags", [])}
            image_id = tags.get(RunnerTag.IMAGE.value)
            if not snapshot_id or not image_id or image_id in live_images:
                continue

            logger.info(f"Snapshot {snapshot_id} outlived {image_id}, deleting it")
            try:
                self._delete_snapshot(snapshot_id)
            except ClientError as e:
                logger.warning(f"Failed to delete orphaned snapshot {snapshot_id} ({error_code(e)})")
                report.failed[snapshot_id] = error_code(e) or str(e)
                continue
            report.snapshots_deleted.append(snapshot_id)

    def delete_amis(
        self,
        stack_name: str,
        builder_name: str,
        keep: Collection[str] = (),
    ) -> CleanupReport:
        with logger.contextualize(builder=builder_name):
            return self._sweep(stack_name, builder_name, keep)

    def _sweep(self, stack_name: str, builder_name: str, keep: Collection[str]) -> CleanupReport:
        report = CleanupReport()
        images = self.owned_images(stack_name, builder_name)
        report.found = len(images)
        logger.info(f"Found {len(images)} AMIs for {builder_name}: {[i.get('ImageId') for i in images]}")

        live = {image["ImageId"] for image in images if image.get("ImageId")}
        self.delete_orphaned_snapshots(stack_name, builder_name, live, report)

        for image in images:
            image_id = image.get("ImageId")
            if not image_id:
                logger.warning(f"No image id? {json.dumps(image, default=str)}")
                report.skipped += 1
                continue
            if not owned_by(image, stack_name, builder_name):
                logger.warning(f"Skipping {image_id}: tags do not match {stack_name} / {builder_name}")
                report.skipped += 1
                continue
            if image_id in keep:
                logger.info(f"Keeping {image_id}, still referenced by the launch template")
                report.kept.append(image_id)
                continue

            snapshots = snapshot_ids(image)
            try:
                for snapshot_id in snapshots:
                    self._tag_snapshot(snapshot_id, snapshot_tags(stack_name, builder_name, image_id))
                self._deregister(image_id)
            except ClientError as e:
                logger.warning(f"Failed to release {image_id} ({error_code(e)}), keeping it and its snapshots")
                report.failed[image_id] = error_code(e) or str(e)
                continue
            report.deregistered.append(image_id)

            for snapshot_id in snapshots:
                try:
                    self._delete_snapshot(snapshot_id)
                except ClientError as e:
                    logger.warning(
                        f"Failed to delete snapshot {snapshot_id} of {image_id} ({error_code(e)}), "
                        f"the next sweep retries it"
                    )
                    report.failed[snapshot_id] = error_code(e) or str(e)
                    continue
                report.snapshots_deleted.append(snapshot_id)

        return report

    @aws_retry
    def _tag_snapshot(self, snapshot_id: str, tags: dict[str, str]) -> None:
        try:
            self.ec2.create_tags(Resources=[snapshot_id], Tags=as_tag_list(tags))
        except ClientError as e:
            if error_code(e) not in _SNAPSHOT_GONE:
                raise
            logger.debug(f"{snapshot_id} already deleted")

    @aws_retry
    def _deregister(self, image_id: str) -> None:
        logger.info(f"Deregistering {image_id}")
        try:
            self.ec2.deregister_image(ImageId=image_id)
        except ClientError as e:
            if error_code(e) not in _IMAGE_GONE:
                raise
            logger.debug(f"{image_id} already deregistered")

    @snapshot_retry
    def _delete_snapshot(self, snapshot_id: str) -> None:
        logger.info(f"Deleting {snapshot_id}")
        try:
            self.ec2.delete_snapshot(SnapshotId=snapshot_id)
        except ClientError as e:
            if error_code(e) not in _SNAPSHOT_GONE:
                raise
            logger.debug(f"{snapshot_id} already deleted")

    def __call__(self, event: dict[str, Any], context: Any = None) -> CleanupReport | None:
        logger.info(f"Cleaner invoked: {json.dumps(redact(event), default=str)}")
        try:
            request = CleanerEvent.model_validate(event)
            match request.request_type:
                case RequestType.CREATE | RequestType.UPDATE:
                    if request.response_url:
                        self._respond(event, ResponseStatus.SUCCESS, "OK", CLEANER_PHYSICAL_ID)
                    return None
                case RequestType.DELETE:
                    report = self.delete_amis(*request.owner())
                    if request.response_url:
                        reason = "OK" if report.clean else f"OK with {len(report.failed)} undeleted items"
                        self._respond(
                            event,
                            ResponseStatus.SUCCESS,
                            reason,
                            request.physical_resource_id or CLEANER_PHYSICAL_ID,
                        )
                    return report
                case RequestType.SCHEDULED:
                    keep = (
                        self.referenced_images(request.launch_template_id)
                        if request.launch_template_id
                        else frozenset()
                    )
                    return self.delete_amis(*request.owner(), keep=keep)
        except Exception as e:
            logger.exception(f"Cleaner failed: {e}")
            if "ResponseURL" not in event:
                raise
            self._respond(
                event,
                ResponseStatus.FAILED,
                str(e) or "Internal Error",
                getattr(context, "log_stream_name", None) or CLEANER_PHYSICAL_ID,
            )
            return None
