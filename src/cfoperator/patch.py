"""JSON merge patch (RFC 7386) helpers used for split spec/status writes.

A merge patch describes the difference between two JSON documents:
- objects are diffed key by key, recursively
- a key removed from the target is expressed as ``null``
- any other value (scalars, lists) is replaced wholesale

The engine computes two patches per reconcile: one for everything except
``status`` and one for the ``status`` subtree alone. An empty patch means
"nothing to write" and is skipped by the caller.
"""

from __future__ import annotations

import copy
from typing import Any

from .models import Resource

STATUS_KEY = "status"

# Fields owned by the store; never sent in a client patch.
SERVER_MANAGED_METADATA = (
    "uid",
    "resourceVersion",
    "generation",
    "creationTimestamp",
    "deletionTimestamp",
)


def create_merge_patch(original: Any, modified: Any) -> Any:
    """Compute the merge patch that turns ``original`` into ``modified``.

    Returns:
        A dict patch (possibly empty) when both sides are objects,
        otherwise ``modified`` itself.
    """
    if not isinstance(original, dict) or not isinstance(modified, dict):
        return copy.deepcopy(modified)

    patch: dict[str, Any] = {}
    for key in original:
        if key not in modified:
            patch[key] = None

    for key, value in modified.items():
        if key not in original:
            patch[key] = copy.deepcopy(value)
            continue

        old = original[key]
        if isinstance(old, dict) and isinstance(value, dict):
            sub = create_merge_patch(old, value)
            if sub:
                patch[key] = sub
        elif old != value:
            patch[key] = copy.deepcopy(value)

    return patch


def apply_merge_patch(target: Any, patch: Any) -> Any:
    """Apply a merge patch, returning a new document."""
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)

    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = apply_merge_patch(result.get(key), value)
    return result


def _split(obj: Resource) -> tuple[dict[str, Any], dict[str, Any]]:
    data = obj.to_dict()
    status = data.pop(STATUS_KEY, {}) or {}
    metadata = data.get("metadata", {})
    for field_name in SERVER_MANAGED_METADATA:
        metadata.pop(field_name, None)
    return data, status


def object_merge_patch(base: Resource, obj: Resource) -> dict[str, Any]:
    """Merge patch of every non-status field from ``base`` to ``obj``."""
    base_data, _ = _split(base)
    obj_data, _ = _split(obj)
    return create_merge_patch(base_data, obj_data)


def status_merge_patch(base: Resource, obj: Resource) -> dict[str, Any]:
    """Merge patch of the status subtree, wrapped as ``{"status": ...}``.

    Returns an empty dict for kinds without a status subtree.
    """
    if not obj.HAS_STATUS:
        return {}
    _, base_status = _split(base)
    _, obj_status = _split(obj)
    diff = create_merge_patch(base_status, obj_status)
    if not diff:
        return {}
    return {STATUS_KEY: diff}
