"""Fast-start distribution of freshly built AMIs.

Publishes each AMI produced by the pipeline into the builder's launch
template and keeps a pool of pre-warmed snapshots so Windows instances boot
quickly. Pre-warming is fixed policy, not user-tunable.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from botocore.exceptions import ClientError
from loguru import logger

from skyrunner.clients import error_code
from skyrunner.constants import FAST_LAUNCH_MAX_PARALLEL_LAUNCHES, FAST_LAUNCH_TARGET_SNAPSHOTS
from skyrunner.tagging import ownership_tags
from skyrunner.types import LaunchTemplateRef, StackContext


@dataclass(frozen=True, slots=True)
class FastLaunchPolicy:
    max_parallel_launches: int = FAST_LAUNCH_MAX_PARALLEL_LAUNCHES
    target_resource_count: int = FAST_LAUNCH_TARGET_SNAPSHOTS


FAST_LAUNCH_POLICY = FastLaunchPolicy()


def ami_name(unique_name: str) -> str:
    """AMI name template; Image Builder fills in the build date."""
    return f"{unique_name}-{{{{ imagebuilder:buildDate }}}}"


def launch_template_data(
    image_id: str,
    instance_type: str,
    subnet_id: str,
    security_group_ids: Sequence[str],
) -> dict[str, Any]:
    """Launch template data for the fast-launch template bound to one AMI."""
    return {
        "ImageId": image_id,
        "InstanceType": instance_type,
        "NetworkInterfaces": [
            {
                "SubnetId": subnet_id,
                "DeviceIndex": 0,
                "Groups": list(security_group_ids),
            }
        ],
    }


def distribution_request(
    name: str,
    context: StackContext,
    builder_name: str,
    launch_template: LaunchTemplateRef,
    policy: FastLaunchPolicy = FAST_LAUNCH_POLICY,
) -> dict[str, Any]:
    """Arguments for ``imagebuilder.create_distribution_configuration``.

    Distribution targets only the deploying region. Every produced AMI carries
    the ownership tags; ``setDefaultVersion`` publishes it as a new launch
    template version so in-flight launches keep the version they resolved.
    """
    return {
        "name": name,
        "distributions": [
            {
                "region": context.region,
                "amiDistributionConfiguration": {
                    "name": ami_name(name),
                    "amiTags": ownership_tags(
                        context.stack_name,
                        context.builder_path(builder_name),
                        name=builder_name,
                    ),
                },
                "launchTemplateConfigurations": [
                    {
                        "launchTemplateId": launch_template.launch_template_id,
                        "setDefaultVersion": True,
                    }
                ],
                "fastLaunchConfigurations": [
                    {
                        "accountId": context.account,
                        "enabled": True,
                        "launchTemplate": {"launchTemplateId": launch_template.launch_template_id},
                        "maxParallelLaunches": policy.max_parallel_launches,
                        "snapshotConfiguration": {"targetResourceCount": policy.target_resource_count},
                    }
                ],
            }
        ],
    }


def activate_image(ec2: Any, template: LaunchTemplateRef, image_id: str) -> LaunchTemplateRef:
    """Swap the active image by publishing a new default launch template version.

    Existing versions are never edited; the returned reference pins the new
    version number.
    """
    response = ec2.create_launch_template_version(
        LaunchTemplateId=template.launch_template_id,
        SourceVersion="$Default",
        VersionDescription=f"image {image_id}",
        LaunchTemplateData={"ImageId": image_id},
    )
    version = str(response["LaunchTemplateVersion"]["VersionNumber"])
    ec2.modify_launch_template(
        LaunchTemplateId=template.launch_template_id,
        DefaultVersion=version,
    )
    logger.info(f"Launch template {template.launch_template_id} now defaults to version {version} ({image_id})")
    return LaunchTemplateRef(template.launch_template_id, version)


def publish_launch_template(
    ec2: Any,
    name: str,
    image_id: str,
    instance_type: str,
    subnet_id: str,
    security_group_ids: Sequence[str],
) -> LaunchTemplateRef:
    """Create the builder's launch template, or activate ``image_id`` on the existing one."""
    data = launch_template_data(image_id, instance_type, subnet_id, security_group_ids)
    try:
        response = ec2.create_launch_template(LaunchTemplateName=name, LaunchTemplateData=data)
    except ClientError as e:
        if error_code(e) != "InvalidLaunchTemplateName.AlreadyExistsException":
            raise
        existing = ec2.describe_launch_templates(LaunchTemplateNames=[name])["LaunchTemplates"][0]
        return activate_image(ec2, LaunchTemplateRef(existing["LaunchTemplateId"]), image_id)

    template_id = response["LaunchTemplate"]["LaunchTemplateId"]
    logger.info(f"Created launch template {name} ({template_id}) for {image_id}")
    return LaunchTemplateRef(template_id)
