"""
Workflow Condition Evaluator.

Pure evaluation of declarative condition trees against a read-only
runtime context.  Used when authoring (validate-condition endpoint) and
by the dependency resolver to decide whether a conditional edge fires.

Condition node kinds:
    simple    {"type": "simple", "field": "workflow.context.amount", "operator": ">", "value": 1000}
    compound  {"type": "compound", "logic": "AND", "conditions": [...]}
    switch    {"type": "switch", "field": "workflow.context.tier",
               "cases": [{"value": "gold", "result": true},
                         {"value": "silver", "condition": {...}}],
               "default": false}

Field paths are dotted and must start at a known root:
    workflow.context.*, workflow.instance.{id,status,created_at},
    step.data.*, step.order, step.action_type, matter.id, contact.id,
    actor.{id,role}

Evaluation never raises: malformed trees, unknown roots and type
mismatches come back as ``EvaluationResult(success=False, error=...)``.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any

# ── Constants ────────────────────────────────────────────────────────────────

COMPARISON_OPERATORS = {"==", "!=", ">", "<", ">=", "<="}
NUMERIC_OPERATORS = {">", "<", ">=", "<="}
STRING_OPERATORS = {"contains", "startsWith", "endsWith"}
LIST_OPERATORS = {"in", "notIn"}
UNARY_OPERATORS = {"exists", "notExists", "isEmpty", "isNotEmpty"}
OPERATORS = COMPARISON_OPERATORS | STRING_OPERATORS | LIST_OPERATORS | UNARY_OPERATORS

CONDITION_KINDS = {"simple", "compound", "switch"}
COMPOUND_LOGICS = {"AND", "OR"}
FIELD_ROOTS = {"workflow", "step", "matter", "contact", "actor"}

MAX_DEPTH = 10


class _Missing:
    """Sentinel for a path that does not resolve."""

    def __repr__(self):
        return "<missing>"


MISSING = _Missing()


class ConditionError(Exception):
    """Internal signal; converted to a failed EvaluationResult at the boundary."""


@dataclass(frozen=True)
class EvaluationResult:
    success: bool
    value: bool | None = None
    error: str | None = None

    @classmethod
    def ok(cls, value: bool) -> "EvaluationResult":
        return cls(success=True, value=bool(value))

    @classmethod
    def failure(cls, error: str) -> "EvaluationResult":
        return cls(success=False, error=error)

    def to_dict(self) -> dict:
        if self.success:
            return {"success": True, "value": self.value}
        return {"success": False, "error": self.error}


# ═══════════════════════════════════════════════════════════════════════════
#  Runtime context
# ═══════════════════════════════════════════════════════════════════════════


def build_runtime_context(instance=None, step=None, actor=None, context_data=None) -> dict:
    """
    Build the evaluation context for an instance (and optionally a step / actor).

    ``context_data`` overrides the instance's stored context, e.g. for the
    authoring endpoint's sample context.  The returned structure is a deep
    copy, so evaluation can never leak writes back into model JSON.
    """
    if context_data is None:
        context_data = (instance.context_data if instance is not None else None) or {}

    runtime = {
        "workflow": {
            "context": context_data,
            "instance": {
                "id": getattr(instance, "id", None),
                "status": getattr(instance, "status", None),
                "created_at": (
                    instance.created_at.isoformat()
                    if instance is not None and instance.created_at else None
                ),
            },
        },
        "step": {
            "data": (step.action_data or {}) if step is not None else {},
            "order": step.order if step is not None else None,
            "action_type": step.action_type if step is not None else None,
        },
        "matter": {"id": getattr(instance, "matter_id", None)},
        "contact": {"id": getattr(instance, "contact_id", None)},
        "actor": {
            "id": getattr(actor, "id", None),
            "role": getattr(actor, "role", None),
        },
    }
    return copy.deepcopy(runtime)


def resolve_field(path: str, runtime_context: dict) -> Any:
    """Resolve a dotted path; returns MISSING for absent keys, raises on unknown roots."""
    if not isinstance(path, str) or not path.strip():
        raise ConditionError("Condition field must be a non-empty string")

    parts = path.strip().split(".")
    if parts[0] not in FIELD_ROOTS:
        raise ConditionError(
            f"Unknown field path '{path}': must start with one of {sorted(FIELD_ROOTS)}"
        )

    current: Any = runtime_context
    for part in parts:
        if isinstance(current, dict):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current


# ═══════════════════════════════════════════════════════════════════════════
#  Evaluation
# ═══════════════════════════════════════════════════════════════════════════


def evaluate_condition(condition: Any, runtime_context: dict) -> EvaluationResult:
    """
    Evaluate a condition tree.

    Args:
        condition: The condition tree (dict).
        runtime_context: Output of ``build_runtime_context`` (or an equivalent dict).

    Returns:
        EvaluationResult — never raises.
    """
    try:
        return EvaluationResult.ok(_evaluate_node(condition, runtime_context or {}, depth=0))
    except ConditionError as exc:
        return EvaluationResult.failure(str(exc))
    except (TypeError, ValueError) as exc:
        return EvaluationResult.failure(f"Condition evaluation failed: {exc}")


def _evaluate_node(node: Any, ctx: dict, depth: int) -> bool:
    if depth > MAX_DEPTH:
        raise ConditionError(f"Condition nesting exceeds {MAX_DEPTH} levels")
    if not isinstance(node, dict):
        raise ConditionError("Condition must be an object")

    kind = node.get("type")
    if kind == "simple":
        return _evaluate_simple(node, ctx)
    if kind == "compound":
        return _evaluate_compound(node, ctx, depth)
    if kind == "switch":
        return _evaluate_switch(node, ctx, depth)
    raise ConditionError(f"Unknown condition type: {kind!r}")


def _evaluate_compound(node: dict, ctx: dict, depth: int) -> bool:
    logic = node.get("logic")
    if logic not in COMPOUND_LOGICS:
        raise ConditionError(f"Compound logic must be AND or OR, got {logic!r}")
    children = node.get("conditions")
    if not isinstance(children, list) or not children:
        raise ConditionError("Compound condition requires at least one sub-condition")

    for child in children:
        result = _evaluate_node(child, ctx, depth + 1)
        if logic == "AND" and not result:
            return False
        if logic == "OR" and result:
            return True
    return logic == "AND"


def _evaluate_switch(node: dict, ctx: dict, depth: int) -> bool:
    subject = resolve_field(node.get("field"), ctx)
    cases = node.get("cases")
    if not isinstance(cases, list) or not cases:
        raise ConditionError("Switch condition requires at least one case")

    for case in cases:
        if not isinstance(case, dict) or "value" not in case:
            raise ConditionError("Each switch case needs a 'value'")
        if subject is not MISSING and subject == case["value"]:
            return _evaluate_branch(case, ctx, depth)

    if "default" not in node:
        return False
    default = node["default"]
    if isinstance(default, bool):
        return default
    return _evaluate_node(default, ctx, depth + 1)


def _evaluate_branch(case: dict, ctx: dict, depth: int) -> bool:
    if "condition" in case:
        return _evaluate_node(case["condition"], ctx, depth + 1)
    result = case.get("result", True)
    if not isinstance(result, bool):
        raise ConditionError("Switch case 'result' must be a boolean")
    return result


def _evaluate_simple(node: dict, ctx: dict) -> bool:
    operator = node.get("operator")
    if operator not in OPERATORS:
        raise ConditionError(f"Unknown operator: {operator!r}")
    if operator not in UNARY_OPERATORS and "value" not in node:
        raise ConditionError(f"Operator '{operator}' requires a value")

    actual = resolve_field(node.get("field"), ctx)
    expected = node.get("value")

    if operator == "exists":
        return actual is not MISSING and actual is not None
    if operator == "notExists":
        return actual is MISSING or actual is None
    if operator == "isEmpty":
        return _is_empty(actual)
    if operator == "isNotEmpty":
        return not _is_empty(actual)

    if operator == "==":
        return actual is not MISSING and actual == expected
    if operator == "!=":
        return actual is MISSING or actual != expected

    if operator in NUMERIC_OPERATORS:
        if not _is_number(actual) or not _is_number(expected):
            raise ConditionError(
                f"Operator '{operator}' requires numeric operands "
                f"(field {node.get('field')!r} is {_type_name(actual)})"
            )
        return {
            ">": actual > expected,
            "<": actual < expected,
            ">=": actual >= expected,
            "<=": actual <= expected,
        }[operator]

    if operator in LIST_OPERATORS:
        if not isinstance(expected, list):
            raise ConditionError(f"Operator '{operator}' requires a list value")
        found = actual is not MISSING and actual in expected
        return found if operator == "in" else not found

    # contains / startsWith / endsWith
    if actual is MISSING or actual is None:
        return False
    if operator == "contains":
        if isinstance(actual, (list, tuple)):
            return expected in actual
        if isinstance(actual, str) and isinstance(expected, str):
            return expected in actual
        raise ConditionError("Operator 'contains' requires a string or list field")
    if not isinstance(actual, str) or not isinstance(expected, str):
        raise ConditionError(f"Operator '{operator}' requires string operands")
    if operator == "startsWith":
        return actual.startswith(expected)
    return actual.endswith(expected)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_empty(value: Any) -> bool:
    if value is MISSING or value is None:
        return True
    if isinstance(value, (str, list, dict, tuple)):
        return len(value) == 0
    return False


def _type_name(value: Any) -> str:
    if value is MISSING:
        return "missing"
    return type(value).__name__


# ═══════════════════════════════════════════════════════════════════════════
#  Structural validation (authoring)
# ═══════════════════════════════════════════════════════════════════════════


def validate_condition(condition: Any) -> list[str]:
    """Return a list of structural problems (empty when the tree is well-formed)."""
    errors: list[str] = []
    _validate_node(condition, "condition", 0, errors)
    return errors


def _validate_node(node: Any, where: str, depth: int, errors: list[str]) -> None:
    if depth > MAX_DEPTH:
        errors.append(f"{where}: nesting exceeds {MAX_DEPTH} levels")
        return
    if not isinstance(node, dict):
        errors.append(f"{where}: must be an object")
        return

    kind = node.get("type")
    if kind not in CONDITION_KINDS:
        errors.append(f"{where}.type: must be one of {sorted(CONDITION_KINDS)}")
        return

    if kind == "simple":
        _validate_field(node.get("field"), f"{where}.field", errors)
        operator = node.get("operator")
        if operator not in OPERATORS:
            errors.append(f"{where}.operator: unknown operator {operator!r}")
        elif operator not in UNARY_OPERATORS and "value" not in node:
            errors.append(f"{where}.value: required for operator '{operator}'")
        elif operator in LIST_OPERATORS and not isinstance(node.get("value"), list):
            errors.append(f"{where}.value: operator '{operator}' requires a list")
        return

    if kind == "compound":
        if node.get("logic") not in COMPOUND_LOGICS:
            errors.append(f"{where}.logic: must be AND or OR")
        children = node.get("conditions")
        if not isinstance(children, list) or not children:
            errors.append(f"{where}.conditions: at least one sub-condition required")
            return
        for i, child in enumerate(children):
            _validate_node(child, f"{where}.conditions[{i}]", depth + 1, errors)
        return

    _validate_field(node.get("field"), f"{where}.field", errors)
    cases = node.get("cases")
    if not isinstance(cases, list) or not cases:
        errors.append(f"{where}.cases: at least one case required")
    else:
        for i, case in enumerate(cases):
            case_where = f"{where}.cases[{i}]"
            if not isinstance(case, dict) or "value" not in case:
                errors.append(f"{case_where}: needs a 'value'")
                continue
            if "condition" in case:
                _validate_node(case["condition"], f"{case_where}.condition", depth + 1, errors)
            elif not isinstance(case.get("result", True), bool):
                errors.append(f"{case_where}.result: must be a boolean")
    if "default" in node and not isinstance(node["default"], bool):
        _validate_node(node["default"], f"{where}.default", depth + 1, errors)


def _validate_field(field: Any, where: str, errors: list[str]) -> None:
    if not isinstance(field, str) or not field.strip():
        errors.append(f"{where}: required")
        return
    root = field.strip().split(".")[0]
    if root not in FIELD_ROOTS:
        errors.append(f"{where}: unknown root '{root}'")
