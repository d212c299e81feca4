"""
Workflow context — the key/value bag shared by all steps of an instance.

Stored in ``WorkflowInstance.context_data``.  Every write assigns a fresh
dict so SQLAlchemy detects the JSON change.  Last write wins.  Functions
flush only; the calling service owns the commit.
"""

from __future__ import annotations

import copy
from typing import Any

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.models.workflow import WorkflowInstance


def _instance(instance_id: int) -> WorkflowInstance:
    instance = db.session.get(WorkflowInstance, instance_id)
    if instance is None:
        raise NotFoundError(resource="WorkflowInstance", resource_id=instance_id)
    return instance


def _write(instance: WorkflowInstance, context: dict) -> dict:
    instance.context_data = context
    db.session.flush()
    return context


# ── Whole-context operations ─────────────────────────────────────────────────


def get_context(instance_id: int) -> dict:
    return copy.deepcopy(_instance(instance_id).context_data or {})


def set_context(instance_id: int, context: dict) -> dict:
    """Replace the entire context."""
    if not isinstance(context, dict):
        raise ValidationError("Context must be an object")
    return _write(_instance(instance_id), dict(context))


def update_context(instance_id: int, updates: dict) -> dict:
    """Shallow-merge *updates* into the context; returns the merged context."""
    if not isinstance(updates, dict):
        raise ValidationError("Context updates must be an object")
    instance = _instance(instance_id)
    return _write(instance, {**(instance.context_data or {}), **updates})


def clear_context(instance_id: int) -> dict:
    return _write(_instance(instance_id), {})


# ── Key helpers ──────────────────────────────────────────────────────────────


def get_value(instance_id: int, key: str, default: Any = None) -> Any:
    return (_instance(instance_id).context_data or {}).get(key, default)


def set_value(instance_id: int, key: str, value: Any) -> None:
    update_context(instance_id, {key: value})


def delete_value(instance_id: int, key: str) -> None:
    instance = _instance(instance_id)
    context = dict(instance.context_data or {})
    context.pop(key, None)
    _write(instance, context)


def has_value(instance_id: int, key: str) -> bool:
    return key in (_instance(instance_id).context_data or {})


def get_values(instance_id: int, keys: list[str]) -> dict:
    """Subset of the context; absent keys are left out."""
    context = _instance(instance_id).context_data or {}
    return {key: copy.deepcopy(context[key]) for key in keys if key in context}


def increment(instance_id: int, key: str, amount: int | float = 1) -> int | float:
    """Add *amount* to a numeric key (non-numeric or absent counts as 0)."""
    current = (_instance(instance_id).context_data or {}).get(key)
    if not isinstance(current, (int, float)) or isinstance(current, bool):
        current = 0
    value = current + amount
    set_value(instance_id, key, value)
    return value


def append_to_list(instance_id: int, key: str, value: Any) -> list:
    """Append to a list key (a non-list value is replaced by a new list)."""
    current = (_instance(instance_id).context_data or {}).get(key)
    items = [*(current if isinstance(current, list) else []), value]
    set_value(instance_id, key, items)
    return items


def merge_object(instance_id: int, key: str, updates: dict) -> dict:
    """Shallow-merge *updates* into an object key."""
    if not isinstance(updates, dict):
        raise ValidationError("Object updates must be an object")
    current = (_instance(instance_id).context_data or {}).get(key)
    merged = {**(current if isinstance(current, dict) else {}), **updates}
    set_value(instance_id, key, merged)
    return merged
