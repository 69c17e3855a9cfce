import pytest

from skyrunner.constants import RunnerTag
from skyrunner.tagging import as_tag_list, owned_by, ownership_filters, ownership_tags, snapshot_tags

pytestmark = [pytest.mark.unit]


class TestOwnershipTags:
    def test_stack_and_builder(self):
        assert ownership_tags("runners", "runners/windows") == {
            "GitHubRunners:Stack": "runners",
            "GitHubRunners:Builder": "runners/windows",
        }

    def test_name_is_optional(self):
        tags = ownership_tags("runners", "runners/windows", name="windows")
        assert tags[RunnerTag.NAME] == "windows"
        assert len(tags) == 3

    def test_snapshot_tags_name_the_image(self):
        tags = snapshot_tags("runners", "runners/windows", "ami-1")
        assert tags == {
            "GitHubRunners:Stack": "runners",
            "GitHubRunners:Builder": "runners/windows",
            "GitHubRunners:Image": "ami-1",
        }


class TestOwnershipFilters:
    def test_filters_on_both_tags(self):
        filters = ownership_filters("runners", "runners/windows")
        assert filters == [
            {"Name": "tag:GitHubRunners:Stack", "Values": ["runners"]},
            {"Name": "tag:GitHubRunners:Builder", "Values": ["runners/windows"]},
        ]


class TestOwnedBy:
    def _image(self, tags):
        return {"ImageId": "ami-1", "Tags": as_tag_list(tags)}

    def test_matching_pair(self):
        image = self._image(ownership_tags("runners", "runners/windows"))
        assert owned_by(image, "runners", "runners/windows")

    def test_other_builder(self):
        image = self._image(ownership_tags("runners", "runners/linux"))
        assert not owned_by(image, "runners", "runners/windows")

    def test_missing_stack_tag(self):
        image = self._image({RunnerTag.BUILDER.value: "runners/windows"})
        assert not owned_by(image, "runners", "runners/windows")

    def test_untagged(self):
        assert not owned_by({"ImageId": "ami-1"}, "runners", "runners/windows")
