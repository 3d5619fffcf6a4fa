# ABOUTME: Unit tests for JSON merge patch and path-addressed values documents
# ABOUTME: Tests RFC 7396 semantics, dotted path get/set and number parsing

import json

import pytest

from gitops_manifest.errors import MergeError, PathNotFoundError
from gitops_manifest.utils.jsonpatch import ValuesDocument, merge_patch, parse_number


def patched(target: str, patch: str) -> dict:
    return json.loads(merge_patch(target, patch))


@pytest.mark.unit
class TestMergePatch:
    """Tests for RFC 7396 merge patch."""

    def test_objects_merge_recursively(self):
        """Test that nested objects merge key by key."""
        result = patched('{"a": {"b": 1, "c": 2}}', '{"a": {"c": 3, "d": 4}}')
        assert result == {"a": {"b": 1, "c": 3, "d": 4}}

    def test_null_deletes_key(self):
        """Test that null in the patch removes the key."""
        assert patched('{"a": 1, "b": 2}', '{"a": null}') == {"b": 2}

    def test_arrays_replace(self):
        """Test that arrays are replaced, not concatenated."""
        assert patched('{"a": [1, 2]}', '{"a": [3]}') == {"a": [3]}

    def test_object_replaces_scalar(self):
        """Test that an object patch replaces a scalar target value."""
        assert patched('{"a": 1}', '{"a": {"b": 2}}') == {"a": {"b": 2}}

    def test_accepts_bytes(self):
        """Test that bytes documents are accepted."""
        assert json.loads(merge_patch(b"{}", b'{"a": 1}')) == {"a": 1}

    def test_invalid_patch(self):
        """Test that an invalid patch document raises MergeError."""
        with pytest.raises(MergeError, match="patch"):
            merge_patch("{}", "{not json")

    def test_invalid_target(self):
        """Test that an invalid target document raises MergeError."""
        with pytest.raises(MergeError, match="target"):
            merge_patch("", "{}")


@pytest.mark.unit
class TestValuesDocument:
    """Tests for dotted path access."""

    def test_get_nested(self):
        """Test reading a nested value."""
        values = ValuesDocument.loads('{"autoscaling": {"MinReplicas": 2}}')
        assert values.get("autoscaling.MinReplicas") == 2

    def test_get_missing_raises(self):
        """Test that a missing path raises PathNotFoundError."""
        values = ValuesDocument.loads("{}")
        with pytest.raises(PathNotFoundError) as exc_info:
            values.get("autoscaling.enabled")
        assert exc_info.value.path == "autoscaling.enabled"

    def test_get_or_default(self):
        """Test get_or falls back to the default."""
        assert ValuesDocument.loads("{}").get_or("replicaCount", 0) == 0

    def test_has(self):
        """Test path existence checks."""
        values = ValuesDocument.loads('{"autoscalingEnabledPath": "hpa.on"}')
        assert values.has("autoscalingEnabledPath")
        assert not values.has("replicaCountPath")

    def test_set_creates_intermediate_objects(self):
        """Test that set creates missing parent objects."""
        values = ValuesDocument.loads('{"devtronInternal": {}}')
        values.set("devtronInternal.containerSpecs.ConfigHash", "abc")
        assert values.data == {"devtronInternal": {"containerSpecs": {"ConfigHash": "abc"}}}

    def test_set_replaces_existing(self):
        """Test that set overwrites an existing value."""
        values = ValuesDocument.loads('{"replicaCount": 2}')
        values.set("replicaCount", 7)
        assert json.loads(values.dumps()) == {"replicaCount": 7}

    def test_dashed_keys(self):
        """Test keys containing dashes."""
        values = ValuesDocument.loads('{"keda-config": {"max-replicas": 4}}')
        assert values.get("keda-config.max-replicas") == 4

    def test_get_number_accepts_strings(self):
        """Test that numeric strings are read as numbers."""
        values = ValuesDocument.loads('{"replicaCount": "3"}')
        assert values.get_number("replicaCount") == 3.0

    def test_get_number_null_is_missing(self):
        """Test that a null value counts as missing."""
        values = ValuesDocument.loads('{"replicaCount": null}')
        with pytest.raises(PathNotFoundError):
            values.get_number("replicaCount")

    def test_loads_rejects_non_object(self):
        """Test that a JSON array is not a values document."""
        with pytest.raises(MergeError):
            ValuesDocument.loads("[1, 2]")


@pytest.mark.unit
class TestParseNumber:
    """Tests for parse_number."""

    def test_int_and_float(self):
        assert parse_number(2) == 2.0
        assert parse_number(2.5) == 2.5

    def test_rejects_boolean(self):
        """Test that booleans are not numbers."""
        with pytest.raises(ValueError, match="boolean"):
            parse_number(True)

    def test_rejects_non_numeric_string(self):
        with pytest.raises(ValueError):
            parse_number("many")
