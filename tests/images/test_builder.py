from dataclasses import replace
from datetime import timedelta

import pytest

from skyrunner.constants import RunnerTag
from skyrunner.exceptions import ConfigurationError, ImageBuildError, UnsupportedCapabilityError
from skyrunner.images.builder import (
    AmiImageBuilder,
    ImageBuilder,
    PrebuiltAmiBuilder,
    builder_for,
    resolve_base_image,
    unique_name,
)
from skyrunner.images.config import ImageBuilderConfig
from skyrunner.images.recipe import ImageComponent
from skyrunner.types import Architecture, LaunchTemplateRef, Os, StackContext
from tests.conftest import STACK, FakeSsm, client_error

pytestmark = [pytest.mark.unit]

CONFIG = ImageBuilderConfig(
    name="windows",
    subnet_ids=("subnet-1", "subnet-2"),
    security_group_ids=("sg-1",),
    instance_profile_name="image-builder",
    components=(ImageComponent(name="git", platform=Os.WINDOWS, commands=("choco install -y git",)),),
)


@pytest.fixture
def make_builder(context, clients, registry):
    def make(config: ImageBuilderConfig = CONFIG, **kwargs) -> AmiImageBuilder:
        return AmiImageBuilder(config, context, clients, registry, poll_interval=0, **kwargs)

    return make


def tags_of(image):
    return {t["Key"]: t["Value"] for t in image["Tags"]}


class TestValidation:
    def test_builder_instance_type_must_match(self, make_builder):
        with pytest.raises(ConfigurationError, match="m5.large"):
            make_builder(replace(CONFIG, architecture=Architecture.ARM64, template_instance_type="t4g.large"))

    def test_template_instance_type_must_match(self, make_builder):
        with pytest.raises(ConfigurationError, match="t4g.large"):
            make_builder(replace(CONFIG, template_instance_type="t4g.large"))

    @pytest.mark.parametrize(
        "overrides",
        [{"subnet_ids": ()}, {"components": ()}, {"instance_profile_name": None}],
    )
    def test_required_settings(self, make_builder, overrides):
        with pytest.raises(ConfigurationError):
            make_builder(replace(CONFIG, **overrides))


class TestBindAmi:
    def test_builds_publishes_and_tags(self, make_builder, ec2, imagebuilder):
        ami = make_builder().bind_ami()

        assert ami.launch_template == LaunchTemplateRef("lt-0001")
        assert (ami.os, ami.architecture) == (Os.WINDOWS, Architecture.X86_64)
        assert ami.log_group.startswith("/aws/imagebuilder/runners-windows-")
        assert ec2.launch_templates["lt-0001"]["versions"][0]["ImageId"] == "ami-built"
        assert tags_of(ec2.images["ami-built"]) == {
            RunnerTag.NAME.value: "windows",
            RunnerTag.STACK.value: STACK,
            RunnerTag.BUILDER.value: f"{STACK}/windows",
        }
        assert len(imagebuilder.called("get_image")) == 2

    def test_is_memoized(self, make_builder, imagebuilder):
        builder = make_builder()
        assert builder.bind_ami() is builder.bind_ami()
        assert len(imagebuilder.called("create_image")) == 1
        assert len(imagebuilder.called("create_image_pipeline")) == 1

    def test_base_image_resolved_through_ssm(self, make_builder, imagebuilder, ssm):
        make_builder().bind_ami()

        [call] = ssm.called("get_parameter")
        assert "Windows_Server-2022" in call["Name"]
        [recipe] = imagebuilder.called("create_image_recipe")
        assert recipe["parentImage"] == "ami-base"

    def test_explicit_base_image(self, make_builder, imagebuilder, ssm):
        make_builder(replace(CONFIG, base_image="ami-custom")).bind_ami()
        assert ssm.called("get_parameter") == []
        assert imagebuilder.called("create_image_recipe")[0]["parentImage"] == "ami-custom"

    def test_infrastructure(self, make_builder, imagebuilder):
        make_builder().bind_ami()

        [infra] = imagebuilder.called("create_infrastructure_configuration")
        assert infra["subnetId"] == "subnet-1"
        assert infra["instanceTypes"] == ["m5.large"]
        assert infra["instanceProfileName"] == "image-builder"
        assert infra["instanceMetadataOptions"] == {"httpTokens": "required", "httpPutResponseHopLimit": 2}
        assert infra["terminateInstanceOnFailure"] is True

    def test_pipeline_schedule(self, make_builder, imagebuilder):
        make_builder().bind_ami()

        [pipeline] = imagebuilder.called("create_image_pipeline")
        assert pipeline["schedule"] == {
            "scheduleExpression": "rate(7 days)",
            "pipelineExecutionStartCondition": "EXPRESSION_MATCH_ONLY",
        }
        assert pipeline["imageTestsConfiguration"] == {"imageTestsEnabled": False}

    def test_zero_interval_disables_scheduled_rebuilds(self, make_builder, imagebuilder):
        make_builder(replace(CONFIG, rebuild_interval=timedelta(0))).bind_ami()
        assert "schedule" not in imagebuilder.called("create_image_pipeline")[0]

    def test_distribution_publishes_to_the_template(self, make_builder, imagebuilder):
        make_builder().bind_ami()

        [distribution] = imagebuilder.called("create_distribution_configuration")
        [target] = distribution["distributions"]
        assert target["launchTemplateConfigurations"][0]["launchTemplateId"] == "lt-0001"
        assert target["amiDistributionConfiguration"]["amiTags"][RunnerTag.BUILDER.value] == f"{STACK}/windows"

    def test_rebinding_reuses_the_launch_template(self, context, clients, registry, ec2):
        AmiImageBuilder(CONFIG, context, clients, registry, poll_interval=0).bind_ami()

        ami = AmiImageBuilder(CONFIG, context, clients, registry, poll_interval=0).bind_ami()

        assert ami.launch_template == LaunchTemplateRef("lt-0001")
        assert list(ec2.launch_templates) == ["lt-0001"]
        assert ec2.launch_templates["lt-0001"]["default"] == 2

    def test_existing_resources_are_updated(self, make_builder, imagebuilder):
        for operation in (
            "create_image_recipe",
            "create_infrastructure_configuration",
            "create_distribution_configuration",
            "create_image_pipeline",
        ):
            imagebuilder.fail(operation, client_error("ResourceAlreadyExistsException"))

        builder = make_builder()
        builder.bind_ami()

        assert builder.create_recipe().endswith(f"image-recipe/{builder.recipe.name}/1.0.0")
        assert len(imagebuilder.called("update_infrastructure_configuration")) == 1
        assert len(imagebuilder.called("update_distribution_configuration")) == 1
        assert len(imagebuilder.called("update_image_pipeline")) == 1

    def test_managed_components_are_not_created(self, make_builder, imagebuilder):
        managed = ImageComponent(
            name="update-windows",
            platform=Os.WINDOWS,
            arn="arn:aws:imagebuilder:eu-central-1:aws:component/update-windows/x.x.x",
        )
        builder = make_builder(replace(CONFIG, components=(managed, *CONFIG.components)))

        arns = builder.create_components()

        assert arns[0] == managed.arn
        assert len(imagebuilder.called("create_component")) == 1

    def test_inline_component_named_after_its_document(self, make_builder, imagebuilder):
        make_builder().create_components()
        [component] = imagebuilder.called("create_component")
        assert component["name"].startswith(f"{unique_name(StackContext(STACK, 'eu-central-1', '1'), 'windows')}-git-")
        assert component["platform"] == "Windows"


class TestBuildFailures:
    def test_failed_build(self, make_builder, imagebuilder, ec2):
        imagebuilder.build_states = ["FAILED"]

        with pytest.raises(ImageBuildError) as exc:
            make_builder().bind_ami()

        assert exc.value.status == "FAILED"
        assert exc.value.reason == "component failed"
        assert ec2.launch_templates == {}

    def test_build_timeout(self, make_builder, imagebuilder):
        imagebuilder.build_states = ["BUILDING"]

        with pytest.raises(ImageBuildError) as exc:
            make_builder(build_timeout=0).bind_ami()

        assert exc.value.status == "TIMEOUT"


class TestCollection:
    def test_schedules(self, make_builder, registry):
        builder = make_builder()
        assert builder.schedules() == []

        builder.bind_ami()

        cleaner, reaper = builder.schedules()
        assert cleaner.function == "delete-ami"
        assert cleaner.interval == timedelta(days=1)
        assert cleaner.payload == {
            "RequestType": "Scheduled",
            "LaunchTemplateId": "lt-0001",
            "StackName": STACK,
            "BuilderName": f"{STACK}/windows",
        }
        assert reaper.function == "reaper"
        assert reaper.payload == {"RecipeName": builder.recipe.name}
        assert set(registry) == {"delete-ami", "reaper"}

    def test_builders_share_one_cleaner(self, make_builder, registry):
        make_builder().bind_ami()
        first = registry.get("delete-ami")

        make_builder(replace(CONFIG, name="linux-ish")).bind_ami()

        assert registry.get("delete-ami") is first
        assert len(registry) == 2

    def test_teardown_deletes_only_own_images(self, make_builder, ec2):
        builder = make_builder()
        builder.bind_ami()
        ec2.add_image("ami-other", builder=f"{STACK}/linux", snapshots=("snap-other",))

        builder.teardown()

        assert set(ec2.images) == {"ami-other"}
        assert ec2.snapshots == {"snap-other"}

    def test_teardown_without_bind(self, make_builder, ec2):
        ec2.add_image("ami-old", builder=f"{STACK}/windows", snapshots=("snap-old",))

        make_builder().teardown()

        assert ec2.images == {}


class TestCapabilities:
    def test_docker_image_unsupported(self, make_builder):
        with pytest.raises(UnsupportedCapabilityError):
            make_builder().bind_docker_image()

    def test_start_build_needs_pipeline(self, make_builder, imagebuilder):
        builder = make_builder()
        with pytest.raises(ConfigurationError):
            builder.start_build()

        builder.bind_ami()

        assert builder.start_build().endswith("/1.0.0/2")
        assert len(imagebuilder.called("start_image_pipeline_execution")) == 1

    def test_protocol(self, make_builder, context, clients, registry):
        prebuilt = PrebuiltAmiBuilder(replace(CONFIG, kind="prebuilt", image_id="ami-1"), context, clients, registry)
        assert isinstance(make_builder(), ImageBuilder)
        assert isinstance(prebuilt, ImageBuilder)


class TestPrebuiltAmiBuilder:
    CONFIG = replace(CONFIG, kind="prebuilt", image_id="ami-golden", os=Os.LINUX)

    def test_binds_existing_image(self, context, clients, registry, ec2, imagebuilder):
        ami = PrebuiltAmiBuilder(self.CONFIG, context, clients, registry).bind_ami()

        assert ami.launch_template == LaunchTemplateRef("lt-0001")
        assert ami.os is Os.LINUX
        assert ec2.launch_templates["lt-0001"]["versions"][0]["ImageId"] == "ami-golden"
        assert imagebuilder.calls == []

    def test_needs_image_id(self, context, clients, registry):
        with pytest.raises(ConfigurationError, match="image_id"):
            PrebuiltAmiBuilder(replace(self.CONFIG, image_id=None), context, clients, registry)

    @pytest.mark.parametrize("capability", ["create_infrastructure", "bind_docker_image"])
    def test_unsupported(self, context, clients, registry, capability):
        builder = PrebuiltAmiBuilder(self.CONFIG, context, clients, registry)
        with pytest.raises(UnsupportedCapabilityError) as exc:
            getattr(builder, capability)()
        assert exc.value.capability == capability

    def test_owns_nothing(self, context, clients, registry, ec2):
        ec2.add_image("ami-golden", builder=f"{STACK}/windows")
        builder = PrebuiltAmiBuilder(self.CONFIG, context, clients, registry)

        builder.teardown()

        assert builder.schedules() == []
        assert "ami-golden" in ec2.images


class TestHelpers:
    def test_builder_for(self, context, clients, registry):
        assert isinstance(builder_for(CONFIG, context, clients, registry), AmiImageBuilder)
        prebuilt = replace(CONFIG, kind="prebuilt", image_id="ami-1")
        assert isinstance(builder_for(prebuilt, context, clients, registry), PrebuiltAmiBuilder)

    def test_builder_for_unknown_kind(self, context, clients, registry):
        with pytest.raises(ConfigurationError, match="docker"):
            builder_for(replace(CONFIG, kind="docker"), context, clients, registry)  # type: ignore[arg-type]

    def test_unique_name(self, context):
        name = unique_name(context, "windows")
        assert name == unique_name(context, "windows")
        assert name != unique_name(context, "linux")
        assert name.startswith("runners-windows-")

    def test_unique_name_is_resource_safe(self):
        context = StackContext("my stack", "eu-central-1", "1")
        name = unique_name(context, "x" * 200, max_length=40)
        assert len(name) == 40
        assert " " not in name

    def test_no_default_base_image(self):
        with pytest.raises(ConfigurationError, match="windows/arm64"):
            resolve_base_image(FakeSsm(), Os.WINDOWS, Architecture.ARM64)

    def test_missing_parameter(self):
        ssm = FakeSsm()
        ssm.fail("get_parameter", client_error("ParameterNotFound"))
        with pytest.raises(ConfigurationError, match="not found"):
            resolve_base_image(ssm, Os.LINUX, Architecture.ARM64)
