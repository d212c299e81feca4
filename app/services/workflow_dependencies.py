"""
Workflow Dependency Graph Resolver.

Decides which PENDING instance steps may become READY (or are bypassed
because the branch that leads to them was not taken).

Edge statuses:
    pending     source not yet COMPLETED / SKIPPED
    satisfied   source done and the edge (condition / branch) fires
    not_taken   source bypassed, or the edge condition does not fire

Target combination:
    ALL / CUSTOM  every edge satisfied       (any not_taken → bypass)
    ANY           at least one satisfied     (all not_taken → bypass)

Steps with no gating edge run in template order.

Also hosts the authoring-time graph checks (``detect_cycles``,
``validate_dependencies``) used by the template service.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timezone

from app.core.exceptions import NotFoundError
from app.models import db
from app.models.workflow import (
    CONDITION_TYPES,
    DEPENDENCY_LOGICS,
    DEPENDENCY_TYPES,
    SATISFYING_STATES,
    WorkflowInstance,
)
from app.services.workflow_conditions import build_runtime_context, evaluate_condition
from app.services.workflow_metrics import WorkflowMetrics

logger = logging.getLogger(__name__)

PENDING = "pending"
SATISFIED = "satisfied"
NOT_TAKEN = "not_taken"

NON_GATING_TYPES = {"TRIGGERS"}
BRANCH_TYPES = {"IF_TRUE_BRANCH", "IF_FALSE_BRANCH"}


# ═══════════════════════════════════════════════════════════════════════════
#  Edge evaluation
# ═══════════════════════════════════════════════════════════════════════════


def build_incoming_edges(instance) -> dict[int, list]:
    """Gating edges keyed by target step id."""
    incoming: dict[int, list] = defaultdict(list)
    for dep in instance.dependencies:
        if dep.dependency_type in NON_GATING_TYPES:
            continue
        incoming[dep.target_step_id].append(dep)
    return incoming


def _condition_fires(dep, instance, source) -> bool | None:
    """True / False for a configured condition, None when evaluation failed."""
    ctx = build_runtime_context(instance=instance, step=source)
    result = evaluate_condition(dep.condition_config, ctx)
    if not result.success:
        logger.warning(
            "Dependency condition failed to evaluate: %s",
            result.error,
            extra={"instance_id": instance.id, "step_id": dep.target_step_id},
        )
        return None
    return result.value


def _branch_decision(dep, instance, source) -> bool | None:
    if dep.condition_config:
        return _condition_fires(dep, instance, source)
    decision = (source.action_data or {}).get("decision")
    if isinstance(decision, dict) and isinstance(decision.get("approved"), bool):
        return decision["approved"]
    return True


def edge_status(dep, instance, steps_by_id: dict) -> str:
    """Classify one gating edge as pending / satisfied / not_taken."""
    source = steps_by_id.get(dep.source_step_id)
    if source is None or source.action_state not in SATISFYING_STATES:
        return PENDING
    if source.is_bypassed:
        return NOT_TAKEN

    if dep.dependency_type in BRANCH_TYPES:
        decision = _branch_decision(dep, instance, source)
        if decision is None:
            return NOT_TAKEN
        wanted = dep.dependency_type == "IF_TRUE_BRANCH"
        return SATISFIED if decision is wanted else NOT_TAKEN

    if dep.condition_type == "ALWAYS" or not dep.condition_config:
        return SATISFIED

    fired = _condition_fires(dep, instance, source)
    if fired is None:
        return NOT_TAKEN
    if dep.condition_type == "IF_FALSE":
        return SATISFIED if fired is False else NOT_TAKEN
    return SATISFIED if fired else NOT_TAKEN


def evaluate_target(edges: list, instance, steps_by_id: dict) -> str:
    """Combine a target's incoming edges: 'ready', 'bypass' or 'wait'."""
    all_group = [d for d in edges if d.dependency_logic != "ANY"]
    any_group = [d for d in edges if d.dependency_logic == "ANY"]

    all_statuses = [edge_status(d, instance, steps_by_id) for d in all_group]
    any_statuses = [edge_status(d, instance, steps_by_id) for d in any_group]

    if NOT_TAKEN in all_statuses:
        return "bypass"
    if any_statuses and all(s == NOT_TAKEN for s in any_statuses):
        return "bypass"

    all_ok = all(s == SATISFIED for s in all_statuses)
    any_ok = not any_statuses or SATISFIED in any_statuses
    return "ready" if all_ok and any_ok else "wait"


# ═══════════════════════════════════════════════════════════════════════════
#  Advancement
# ═══════════════════════════════════════════════════════════════════════════


def _implicit_order_ready(step, free_steps: list) -> bool:
    return all(
        other.action_state in SATISFYING_STATES
        for other in free_steps
        if other.order < step.order
    )


def advance_instance(instance, now: datetime | None = None) -> list:
    """
    Promote / bypass PENDING steps of *instance* until nothing changes.

    Returns the steps that became READY during this call (for notification).
    Flushes only; the calling service commits.
    """
    if instance.status == "CANCELED":
        return []

    now = now or datetime.now(timezone.utc)
    incoming = build_incoming_edges(instance)
    steps_by_id = {s.id: s for s in instance.steps}
    free_steps = sorted(
        (s for s in instance.steps if s.id not in incoming),
        key=lambda s: s.order,
    )

    readied = []
    changed = True
    while changed:
        changed = False
        for step in sorted(instance.steps, key=lambda s: s.order):
            if step.action_state != "PENDING":
                continue

            if step.id in incoming:
                verdict = evaluate_target(incoming[step.id], instance, steps_by_id)
            else:
                verdict = "ready" if _implicit_order_ready(step, free_steps) else "wait"

            if verdict == "ready":
                step.record_transition("READY", event="ready", at=now)
                WorkflowMetrics.record_transition(step.action_type, "PENDING", "READY")
                WorkflowMetrics.record_step_advanced(step.action_type)
                readied.append(step)
                changed = True
            elif verdict == "bypass":
                data = dict(step.action_data or {})
                data.update({"bypassed": True, "skip_reason": "branch_not_taken"})
                step.record_transition("SKIPPED", event="bypassed", at=now, data=data)
                WorkflowMetrics.record_transition(step.action_type, "PENDING", "SKIPPED")
                step.completed_at = now
                changed = True
                logger.info(
                    "Workflow step bypassed",
                    extra={"instance_id": instance.id, "step_id": step.id},
                )

    if readied:
        logger.info(
            "Workflow steps ready: %s",
            [s.id for s in readied],
            extra={"instance_id": instance.id},
        )
    db.session.flush()
    return readied


def seed_initial_steps(instance, now: datetime | None = None) -> list:
    """Initial READY set of a freshly copied instance."""
    return advance_instance(instance, now=now)


def advance_instance_ready_steps(instance_id: int, now: datetime | None = None) -> list:
    instance = db.session.get(WorkflowInstance, instance_id)
    if instance is None:
        raise NotFoundError(resource="WorkflowInstance", resource_id=instance_id)
    return advance_instance(instance, now=now)


# ═══════════════════════════════════════════════════════════════════════════
#  Authoring-time graph checks
# ═══════════════════════════════════════════════════════════════════════════


def detect_cycles(step_keys, edges) -> list[str]:
    """
    Find dependency cycles.

    Args:
        step_keys: iterable of step identifiers.
        edges: iterable of (source, target) pairs.

    Returns:
        One path per cycle found, e.g. ``"A → B → A"``.  Empty when acyclic.
    """
    keys = list(step_keys)
    adjacency: dict = {key: [] for key in keys}
    for source, target in edges:
        if source in adjacency and target in adjacency:
            adjacency[source].append(target)

    # 0 = unvisited, 1 = on the current path, 2 = done
    state = {key: 0 for key in keys}
    cycles: list[str] = []

    for root in keys:
        if state[root]:
            continue
        path = [root]
        stack = [(root, iter(adjacency[root]))]
        state[root] = 1
        while stack:
            node, children = stack[-1]
            child = next(children, None)
            if child is None:
                state[node] = 2
                stack.pop()
                path.pop()
                continue
            if state[child] == 1:
                loop = path[path.index(child):] + [child]
                cycles.append(" → ".join(str(k) for k in loop))
            elif state[child] == 0:
                state[child] = 1
                path.append(child)
                stack.append((child, iter(adjacency[child])))
    return cycles


def validate_dependencies(step_keys, dependencies) -> list[str]:
    """
    Validate draft dependency edges.

    ``dependencies`` are dicts with ``source`` / ``target`` step keys and
    optional ``dependency_type`` / ``dependency_logic`` / ``condition_type``.
    Returns a list of error strings (empty when valid).
    """
    keys = set(step_keys)
    errors: list[str] = []
    seen: set = set()
    pairs = []

    for index, dep in enumerate(dependencies):
        where = f"dependencies[{index}]"
        source, target = dep.get("source"), dep.get("target")
        if source not in keys:
            errors.append(f"{where}: unknown source step '{source}'")
        if target not in keys:
            errors.append(f"{where}: unknown target step '{target}'")
        if source is not None and source == target:
            errors.append(f"{where}: step '{source}' cannot depend on itself")
        if (source, target) in seen:
            errors.append(f"{where}: duplicate dependency '{source}' → '{target}'")
        seen.add((source, target))

        if dep.get("dependency_type", "DEPENDS_ON") not in DEPENDENCY_TYPES:
            errors.append(f"{where}: invalid dependency_type '{dep.get('dependency_type')}'")
        if dep.get("dependency_logic", "ALL") not in DEPENDENCY_LOGICS:
            errors.append(f"{where}: invalid dependency_logic '{dep.get('dependency_logic')}'")
        condition_type = dep.get("condition_type")
        if condition_type is not None and condition_type not in CONDITION_TYPES:
            errors.append(f"{where}: invalid condition_type '{condition_type}'")

        if source in keys and target in keys and source != target:
            pairs.append((source, target))

    for cycle in detect_cycles(sorted(keys, key=str), pairs):
        errors.append(f"Circular dependency detected: {cycle}")
    return errors
