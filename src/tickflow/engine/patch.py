"""State patch application.

A node result may carry a ``patch`` describing changes to the run's state.
Fresh results are applied with a deep merge: nested mappings merge key by
key, while lists and scalars in the patch replace the existing value.
Results replayed from the idempotency store are applied with a shallow
merge, so only top-level keys are overwritten.

Neither function mutates its arguments.
"""

from __future__ import annotations

import copy
from collections.abc import Mapping
from typing import Any


def deep_merge(base: Mapping[str, Any], patch: Mapping[str, Any]) -> dict[str, Any]:
    """Recursively merge ``patch`` into a copy of ``base``."""
    merged = dict(base)
    for key, value in patch.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def shallow_merge(base: Mapping[str, Any], patch: Mapping[str, Any] | None) -> dict[str, Any]:
    merged = dict(base)
    if patch:
        merged.update(copy.deepcopy(dict(patch)))
    return merged


def apply_patch(state: Mapping[str, Any], patch: Mapping[str, Any] | None) -> dict[str, Any]:
    """
    Apply a fresh node patch to ``state``.

    An empty or missing patch returns the state unchanged (as a new dict).

    Example:
        >>> apply_patch({"a": {"x": 1}, "tags": [1]}, {"a": {"y": 2}, "tags": [2]})
        {'a': {'x': 1, 'y': 2}, 'tags': [2]}
    """
    if not patch:
        return dict(state)
    return deep_merge(state, patch)
