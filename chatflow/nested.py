"""Nested-variable steps: ids such as ``parent.field`` write into the parent's value."""

from __future__ import annotations

import copy
import logging
from typing import Any, List, Optional, Sequence, Tuple

from .steps import Step

logger = logging.getLogger("chatflow.nested")

SEPARATOR = "."


def is_nested(step_id: Optional[str]) -> bool:
    return bool(step_id) and SEPARATOR in step_id


def split(step_id: str) -> Tuple[str, str]:
    """Split at the first separator only: ``a.b.c`` -> ``("a", "b.c")``."""
    parent, _, remainder = step_id.partition(SEPARATOR)
    return parent, remainder


def resolve(transcript: Sequence[Step], parent_id: str) -> Optional[Step]:
    """Return the last transcript entry carrying ``parent_id``."""
    for step in reversed(transcript):
        if step.id == parent_id:
            return step
    return None


def insert_into_object_by_path(target: dict, path: str, value: Any) -> dict:
    keys = path.split(SEPARATOR)
    node = target
    for key in keys[:-1]:
        child = node.get(key)
        if not isinstance(child, dict):
            child = {}
            node[key] = child
        node = child
    node[keys[-1]] = value
    return target


def merge(parent_value: Any, path: str, new_value: Any) -> dict:
    """Deep-copy ``parent_value`` and write ``new_value`` at the dotted ``path``."""
    merged = copy.deepcopy(parent_value) if isinstance(parent_value, dict) else {}
    return insert_into_object_by_path(merged, path, new_value)


def save_value_as_step(
    transcript: Sequence[Step],
    step_id: str,
    value: Any,
    *,
    before_last: bool,
) -> List[Step]:
    """Record ``value`` for a nested id as a value-only copy of its parent.

    With ``before_last`` the new entry goes just before the last transcript
    entry (the step being answered). A missing parent drops the value.
    """

    entries = list(transcript)
    parent_id, remainder = split(step_id)
    parent = resolve(entries, parent_id)
    if parent is None:
        logger.warning("Could not find parent step %r of the nested variable %r", parent_id, step_id)
        return entries

    merged = Step(id=parent.id, value=merge(parent.value, remainder, value), value_only=True)
    if before_last and entries:
        entries.insert(len(entries) - 1, merged)
    else:
        entries.append(merged)
    return entries


__all__ = [
    "insert_into_object_by_path",
    "is_nested",
    "merge",
    "resolve",
    "save_value_as_step",
    "split",
]
