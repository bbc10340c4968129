"""Unit tests for patch.py - Merge patch computation and PatchHelper."""

import pytest
from unittest.mock import AsyncMock

from conftest import machine_set_resource
from errors import ConflictError
from patch import PatchHelper, apply_merge_patch, create_merge_patch


class TestCreateMergePatch:
    """Tests for the pure diff function."""

    def test_equal_documents(self):
        doc = {"a": 1, "b": {"c": [1, 2]}}

        assert create_merge_patch(doc, dict(doc)) == {}

    def test_changed_and_added_keys(self):
        original = {"a": 1, "b": {"c": 1, "d": 2}}
        modified = {"a": 2, "b": {"c": 1, "d": 3, "e": 4}}

        assert create_merge_patch(original, modified) == {
            "a": 2,
            "b": {"d": 3, "e": 4},
        }

    def test_removed_key_maps_to_none(self):
        assert create_merge_patch({"a": 1, "b": 2}, {"a": 1}) == {"b": None}

    def test_lists_are_replaced_whole(self):
        patch = create_merge_patch({"l": [1, 2, 3]}, {"l": [1, 2]})

        assert patch == {"l": [1, 2]}

    def test_patch_does_not_alias_modified(self):
        modified = {"a": {"b": [1]}}
        patch = create_merge_patch({}, modified)

        modified["a"]["b"].append(2)

        assert patch == {"a": {"b": [1]}}


class TestApplyMergePatch:
    """Tests for RFC 7386 application."""

    def test_apply_inverts_create(self):
        original = {"a": 1, "b": {"c": 1, "d": 2}, "x": "gone"}
        modified = {"a": 2, "b": {"c": 1, "e": 4}, "y": [1]}

        patch = create_merge_patch(original, modified)

        assert apply_merge_patch(original, patch) == modified

    def test_target_not_modified(self):
        target = {"a": {"b": 1}}

        apply_merge_patch(target, {"a": {"b": 2}})

        assert target == {"a": {"b": 1}}

    def test_non_mapping_patch_replaces(self):
        assert apply_merge_patch({"a": 1}, [1, 2]) == [1, 2]

    def test_patch_into_missing_mapping(self):
        assert apply_merge_patch({}, {"a": {"b": 1, "c": None}}) == {"a": {"b": 1}}


@pytest.mark.asyncio
class TestPatchHelper:
    """Tests for PatchHelper."""

    async def test_annotation_change_only_touches_annotations(self):
        resource = machine_set_resource()
        resource.metadata.resource_version = "7"
        store = AsyncMock()
        store.patch = AsyncMock(return_value=resource)
        helper = PatchHelper(resource, store)

        resource.metadata.annotations = {"example.com/key": "v"}
        await helper.patch(resource)

        store.patch.assert_called_once_with(
            resource.ref,
            {"metadata": {"annotations": {"example.com/key": "v"}}},
            precondition="7",
        )

    async def test_no_change_skips_store(self):
        resource = machine_set_resource()
        store = AsyncMock()
        helper = PatchHelper(resource, store)

        result = await helper.patch(resource)

        assert result is None
        store.patch.assert_not_called()

    async def test_snapshot_is_independent(self):
        resource = machine_set_resource(annotations={"a": "1"})
        helper = PatchHelper(resource, AsyncMock())

        resource.metadata.annotations["a"] = "2"

        assert helper.base.metadata.annotations == {"a": "1"}
        assert helper.delta(resource) == {"metadata": {"annotations": {"a": "2"}}}

    async def test_snapshot_consumed_once(self):
        resource = machine_set_resource()
        helper = PatchHelper(resource, AsyncMock())

        await helper.patch(resource)

        assert helper.consumed
        with pytest.raises(RuntimeError, match="already consumed"):
            await helper.patch(resource)

    async def test_conflict_propagates(self):
        resource = machine_set_resource()
        store = AsyncMock()
        store.patch = AsyncMock(side_effect=ConflictError("modified"))
        helper = PatchHelper(resource, store)

        resource.status["ready"] = True
        with pytest.raises(ConflictError):
            await helper.patch(resource)
