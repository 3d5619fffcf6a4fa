# ABOUTME: JSON merge patch and path-addressed get/set for values documents
# ABOUTME: RFC 7396 merging plus typed dotted-path access via jsonpath-ng

"""
JSON helpers for values documents.

Two tools live here:

``merge_patch(target, patch)``
    RFC 7396 JSON Merge Patch. Objects merge key by key, ``null`` deletes a
    key, anything else (arrays included) replaces the target value.

``ValuesDocument``
    A parsed values document with ``get(path)`` / ``set(path, value)`` for
    dotted paths such as ``autoscaling.MinReplicas``. Missing keys raise
    ``PathNotFoundError`` instead of ``KeyError`` or a silent ``None``.
"""

from __future__ import annotations

import copy
import json
from typing import Any

from jsonpath_ng.exceptions import JSONPathError
from jsonpath_ng.ext import parse as jsonpath_parse

from gitops_manifest.errors import MergeError, PathNotFoundError

EMPTY_JSON = b"{}"


def _apply_patch(target: Any, patch: Any) -> Any:
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = _apply_patch(result.get(key), value)
    return result


def _load(document: bytes | str, role: str) -> Any:
    try:
        return json.loads(document)
    except (TypeError, ValueError) as e:
        raise MergeError(f"invalid JSON in {role} document: {e}") from e


def merge_patch(target: bytes | str, patch: bytes | str) -> bytes:
    """Apply ``patch`` onto ``target`` and return the serialized result."""
    merged = _apply_patch(_load(target, "target"), _load(patch, "patch"))
    return json.dumps(merged).encode()


def _expression(path: str) -> Any:
    # Keys may contain dashes or start with digits; quote every segment.
    quoted = ".".join(f"'{segment}'" for segment in path.split("."))
    try:
        return jsonpath_parse(quoted)
    except JSONPathError as e:
        raise PathNotFoundError(path) from e


class ValuesDocument:
    """Mutable, path-addressable view over a JSON object."""

    def __init__(self, data: dict[str, Any]) -> None:
        self.data = data

    @classmethod
    def loads(cls, raw: bytes | str) -> ValuesDocument:
        data = _load(raw, "values")
        if not isinstance(data, dict):
            raise MergeError("values document must be a JSON object")
        return cls(data)

    def dumps(self) -> bytes:
        return json.dumps(self.data).encode()

    def has(self, path: str) -> bool:
        return bool(_expression(path).find(self.data))

    def get(self, path: str) -> Any:
        matches = _expression(path).find(self.data)
        if not matches:
            raise PathNotFoundError(path)
        return matches[0].value

    def get_or(self, path: str, default: Any = None) -> Any:
        try:
            return self.get(path)
        except PathNotFoundError:
            return default

    def get_number(self, path: str) -> float:
        value = self.get(path)
        if value is None:
            raise PathNotFoundError(path)
        return parse_number(value)

    def set(self, path: str, value: Any) -> None:
        """Set ``value`` at ``path``, creating intermediate objects."""
        _expression(path).update_or_create(self.data, value)


def parse_number(value: Any) -> float:
    """Accept JSON numbers and numeric strings; reject booleans."""
    if isinstance(value, bool):
        raise ValueError(f"expected a number, got boolean {value}")
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, str):
        return float(value)
    raise ValueError(f"expected a number, got {type(value).__name__}")
