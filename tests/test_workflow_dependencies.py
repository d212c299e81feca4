"""
Dependency graph resolver tests.

Covers: authoring-time cycle / edge validation, initial READY seeding,
ALL / ANY combination, conditional edges, approval branches with cascading
bypass, failed sources and fixed-point convergence.
"""

import pytest

from app.services import workflow_runtime as runtime
from app.services import workflow_service
from app.services.workflow_dependencies import (
    advance_instance_ready_steps,
    detect_cycles,
    validate_dependencies,
)

BIG_AMOUNT = {"type": "simple", "field": "workflow.context.amount", "operator": ">", "value": 1000}


def _steps(instance):
    return {s.order: s for s in instance.steps}


def _states(instance):
    return [s.action_state for s in instance.steps]


def _finish(step, actor, payload=None):
    runtime.start_step(step.id, actor)
    return runtime.complete_step(step.id, actor, payload or {})


# ═════════════════════════════════════════════════════════════════════════
# Authoring-time checks
# ═════════════════════════════════════════════════════════════════════════


class TestGraphValidation:
    def test_detect_cycle_path(self):
        cycles = detect_cycles(["a", "b", "c"], [("a", "b"), ("b", "c"), ("c", "a")])
        assert cycles == ["a → b → c → a"]

    def test_acyclic_graph(self):
        assert detect_cycles(["a", "b", "c"], [("a", "b"), ("a", "c"), ("b", "c")]) == []

    def test_validate_dependencies_reports_edge_problems(self):
        errors = validate_dependencies(["a", "b"], [
            {"source": "a", "target": "a"},
            {"source": "a", "target": "zzz"},
            {"source": "a", "target": "b", "dependency_type": "BLOCKS"},
            {"source": "a", "target": "b"},
            {"source": "b", "target": "a", "dependency_logic": "MOST"},
        ])
        assert any("cannot depend on itself" in e for e in errors)
        assert any("unknown target step 'zzz'" in e for e in errors)
        assert any("invalid dependency_type 'BLOCKS'" in e for e in errors)
        assert any("duplicate dependency" in e for e in errors)
        assert any("invalid dependency_logic 'MOST'" in e for e in errors)
        assert any(e.startswith("Circular dependency detected") for e in errors)

    def test_valid_edges(self):
        assert validate_dependencies(["a", "b"], [{"source": "a", "target": "b"}]) == []


# ═════════════════════════════════════════════════════════════════════════
# Runtime advancement
# ═════════════════════════════════════════════════════════════════════════


class TestAdvancement:
    @pytest.fixture()
    def run(self, admin, matter, publish_template):
        def _run(steps, dependencies=None):
            template = publish_template(steps, dependencies)
            return workflow_service.instantiate(template.id, actor=admin, matter_id=matter.id)
        return _run

    def test_linear_chain_completes(self, run, admin, draft_step):
        instance = run(
            [draft_step("a", 0), draft_step("b", 1)],
            [{"source": "a", "target": "b", "dependency_logic": "ALL"}],
        )
        assert _states(instance) == ["READY", "PENDING"]

        _finish(_steps(instance)[0], admin)
        assert _states(instance) == ["COMPLETED", "READY"]
        assert instance.status == "ACTIVE"

        _finish(_steps(instance)[1], admin)
        assert instance.status == "COMPLETED"

    def test_free_steps_seed_lowest_order_only(self, run, admin, draft_step):
        instance = run([draft_step("c", 5), draft_step("a", 1), draft_step("b", 3)])
        assert _states(instance) == ["READY", "PENDING", "PENDING"]

        _finish(_steps(instance)[1], admin)
        assert _states(instance) == ["COMPLETED", "READY", "PENDING"]

    def test_all_logic_waits_for_every_source(self, run, admin, draft_step):
        instance = run(
            [draft_step("a", 0), draft_step("b", 1), draft_step("c", 2)],
            [{"source": "a", "target": "c"}, {"source": "b", "target": "c"}],
        )
        _finish(_steps(instance)[0], admin)
        assert _states(instance) == ["COMPLETED", "READY", "PENDING"]

        _finish(_steps(instance)[1], admin)
        assert _steps(instance)[2].action_state == "READY"

    def test_any_logic_fires_on_first_source(self, run, admin, draft_step):
        instance = run(
            [draft_step("a", 0), draft_step("b", 1), draft_step("c", 2)],
            [
                {"source": "a", "target": "c", "dependency_logic": "ANY"},
                {"source": "b", "target": "c", "dependency_logic": "ANY"},
            ],
        )
        _finish(_steps(instance)[0], admin)
        assert _states(instance) == ["COMPLETED", "READY", "READY"]

    def test_conditional_edges_pick_one_side(self, run, admin, draft_step):
        instance = run(
            [draft_step("a", 0), draft_step("big", 1), draft_step("small", 2)],
            [
                {"source": "a", "target": "big", "condition_type": "IF_TRUE", "condition_config": BIG_AMOUNT},
                {"source": "a", "target": "small", "condition_type": "IF_FALSE", "condition_config": BIG_AMOUNT},
            ],
        )
        workflow_service.patch_context(instance.id, admin, {"updates": {"amount": 1500}})
        _finish(_steps(instance)[0], admin)

        steps = _steps(instance)
        assert steps[1].action_state == "READY"
        assert steps[2].action_state == "SKIPPED"
        assert steps[2].is_bypassed
        assert steps[2].action_data["skip_reason"] == "branch_not_taken"

        _finish(steps[1], admin)
        assert instance.status == "COMPLETED"

    def test_condition_failure_bypasses_target(self, run, admin, draft_step):
        instance = run(
            [draft_step("a", 0), draft_step("b", 1)],
            [{"source": "a", "target": "b", "condition_type": "IF_TRUE", "condition_config": BIG_AMOUNT}],
        )
        workflow_service.patch_context(instance.id, admin, {"updates": {"amount": "lots"}})
        _finish(_steps(instance)[0], admin)

        assert _steps(instance)[1].action_state == "SKIPPED"
        assert instance.status == "COMPLETED"

    def test_rejected_approval_routes_false_branch(self, run, admin, draft_step):
        instance = run(
            [
                draft_step("review", 0, "APPROVAL", action_config={"on_reject": "COMPLETE"}),
                draft_step("yes", 1),
                draft_step("no", 2),
                draft_step("after_yes", 3),
            ],
            [
                {"source": "review", "target": "yes", "dependency_type": "IF_TRUE_BRANCH"},
                {"source": "review", "target": "no", "dependency_type": "IF_FALSE_BRANCH"},
                {"source": "yes", "target": "after_yes"},
            ],
        )
        _finish(_steps(instance)[0], admin, {"approved": False, "comment": "Conflict of interest"})

        steps = _steps(instance)
        assert steps[0].action_state == "COMPLETED"
        assert steps[0].action_data["decision"]["approved"] is False
        assert steps[1].action_state == "SKIPPED" and steps[1].is_bypassed
        assert steps[2].action_state == "READY"
        assert steps[3].action_state == "SKIPPED" and steps[3].is_bypassed

        _finish(steps[2], admin)
        assert instance.status == "COMPLETED"

    def test_failed_source_keeps_target_pending(self, run, admin, draft_step):
        instance = run(
            [draft_step("a", 0), draft_step("b", 1)],
            [{"source": "a", "target": "b"}],
        )
        a = _steps(instance)[0]
        runtime.start_step(a.id, admin)
        runtime.fail_step(a.id, admin, "Client unreachable")

        assert _states(instance) == ["FAILED", "PENDING"]
        assert a.action_data["failure_reason"] == "Client unreachable"
        assert instance.status == "ACTIVE"

    def test_advancement_reaches_fixed_point(self, run, admin, draft_step):
        instance = run(
            [draft_step("a", 0), draft_step("b", 1), draft_step("c", 2)],
            [{"source": "a", "target": "b"}, {"source": "b", "target": "c"}],
        )
        _finish(_steps(instance)[0], admin)
        before = _states(instance)

        assert advance_instance_ready_steps(instance.id) == []
        assert advance_instance_ready_steps(instance.id) == []
        assert _states(instance) == before
