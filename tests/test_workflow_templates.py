"""
Template authoring, versioning and publishing tests.

Covers: draft validation, version numbering, edit = new version, the
one-active-version-per-name invariant, listing, soft delete and
instantiation guards (including version pinning).
"""

from unittest.mock import patch

import pytest
from sqlalchemy.orm import Query

from app.core.exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from app.models import db
from app.models.workflow import WorkflowTemplate
from app.services import workflow_service
from app.services import workflow_template_service as templates
from app.services.workflow_template_service import validate_draft


def _draft(draft_step, name="Onboarding", **kw):
    return {
        "name": name,
        "steps": [draft_step("intake", 0), draft_step("review", 1, "APPROVAL")],
        "dependencies": [{"source": "intake", "target": "review"}],
        **kw,
    }


def _active_per_name():
    rows = WorkflowTemplate.query.filter(WorkflowTemplate.is_active.is_(True)).all()
    counts = {}
    for row in rows:
        counts[row.name] = counts.get(row.name, 0) + 1
    return counts


# ═════════════════════════════════════════════════════════════════════════
# Draft validation
# ═════════════════════════════════════════════════════════════════════════


class TestDraftValidation:
    def test_valid_draft(self, draft_step):
        assert validate_draft(_draft(draft_step)) == []

    def test_name_and_steps_required(self):
        errors = validate_draft({"name": " ", "steps": []})
        assert "name is required" in errors
        assert "At least one step is required" in errors

    def test_step_problems(self, draft_step):
        errors = validate_draft({
            "name": "Broken",
            "steps": [
                draft_step("a", 0, role_scope="INTERN"),
                draft_step("b", 0, "FAX"),
                draft_step("c", 2, "WRITE_TEXT"),
                draft_step("a", 3),
            ],
        })
        assert any("role_scope must be one of" in e for e in errors)
        assert any("duplicate order 0" in e for e in errors)
        assert any("unknown action_type 'FAX'" in e for e in errors)
        assert any(e.startswith("steps[2].action_config:") for e in errors)
        assert any("duplicate key 'a'" in e for e in errors)

    def test_dependency_problems(self, draft_step):
        errors = validate_draft({
            "name": "Loop",
            "steps": [draft_step("a", 0), draft_step("b", 1)],
            "dependencies": [
                {"source": "a", "target": "b"},
                {"source": "b", "target": "a"},
                {"source": "a", "target": "ghost"},
            ],
        })
        assert any("Circular dependency" in e for e in errors)
        assert any("unknown target step 'ghost'" in e for e in errors)

    def test_conditional_edge_needs_condition(self, draft_step):
        errors = validate_draft({
            "name": "Cond",
            "steps": [draft_step("a", 0), draft_step("b", 1)],
            "dependencies": [{"source": "a", "target": "b", "condition_type": "IF_TRUE"}],
        })
        assert errors == ["dependencies[0]: condition_config is required for condition_type IF_TRUE"]

    def test_notification_policy_problems(self, draft_step):
        errors = validate_draft({
            "name": "Notify",
            "steps": [draft_step("a", 0, notification_policies=[
                {"channel": "PIGEON", "triggers": ["ON_READY"]},
                {"triggers": [], "send_strategy": "DELAYED"},
            ])],
        })
        assert any("invalid channel 'PIGEON'" in e for e in errors)
        assert any("triggers must be a non-empty subset" in e for e in errors)
        assert any("delay_minutes is required" in e for e in errors)

    def test_context_schema_problems(self, draft_step):
        errors = validate_draft(_draft(draft_step, context_schema={"fields": {
            "tier": {"type": "enum"},
            "amount": {"type": "number", "min": "0", "default": 10},
            "code": {"type": "string", "pattern": "(", "default": "x"},
            "approved": {"type": "boolean", "default": "yes"},
        }}))
        assert "context_schema.fields.tier: type must be one of string, number, boolean, array, object" in errors
        assert "context_schema.fields.amount: min must be a number" in errors
        assert "context_schema.fields.code: pattern is not a valid regular expression" in errors
        assert any(e.startswith("context_schema.fields.approved: default is invalid") for e in errors)

    def test_context_schema_needs_fields(self, draft_step):
        assert validate_draft(_draft(draft_step, context_schema={"version": 1})) == [
            "context_schema.fields must be an object",
        ]
        assert validate_draft(_draft(draft_step, context_schema={"fields": {}})) == []


# ═════════════════════════════════════════════════════════════════════════
# Create / version / publish
# ═════════════════════════════════════════════════════════════════════════


class TestVersioning:
    def test_create_starts_inactive_at_version_one(self, admin, draft_step):
        template = templates.create_template(_draft(draft_step), admin)
        assert template.version == 1
        assert template.is_active is False
        assert [s.title for s in template.steps] == ["Intake", "Review"]
        assert len(template.dependencies) == 1

    def test_same_name_gets_next_version(self, admin, lawyer, draft_step):
        templates.create_template(_draft(draft_step), admin)
        second = templates.create_template(_draft(draft_step), lawyer)
        assert second.version == 2

    def test_only_admins_and_lawyers_author(self, paralegal, draft_step):
        with pytest.raises(ForbiddenError):
            templates.create_template(_draft(draft_step), paralegal)

    def test_invalid_draft_raises_with_details(self, admin):
        with pytest.raises(ValidationError) as exc:
            templates.create_template({"name": "Empty", "steps": []}, admin)
        assert exc.value.details["errors"] == ["At least one step is required"]

    def test_edit_creates_new_version(self, admin, draft_step):
        v1 = templates.create_template(_draft(draft_step), admin)
        v2 = templates.create_template_version(v1.id, {"description": "Adds conflict check"}, admin)

        assert v2.id != v1.id
        assert v2.version == 2
        assert v2.name == "Onboarding"
        assert v2.description == "Adds conflict check"
        assert len(v2.steps) == 2
        assert len(v2.dependencies) == 1
        assert db.session.get(WorkflowTemplate, v1.id).description == ""

    def test_publish_swaps_active_version(self, admin, draft_step):
        v1 = templates.create_template(_draft(draft_step), admin)
        templates.publish(v1.id, admin)
        v2 = templates.create_template_version(v1.id, {}, admin)
        assert v2.is_active is False

        templates.publish(v2.id, admin)
        assert db.session.get(WorkflowTemplate, v1.id).is_active is False
        assert db.session.get(WorkflowTemplate, v2.id).is_active is True
        assert _active_per_name() == {"Onboarding": 1}

    def test_publish_guards(self, admin, lawyer, draft_step):
        template = templates.create_template(_draft(draft_step), admin)
        with pytest.raises(ForbiddenError):
            templates.publish(template.id, lawyer)
        templates.publish(template.id, admin)
        with pytest.raises(ConflictError):
            templates.publish(template.id, admin)

    def test_publish_sequence_keeps_single_active(self, admin, draft_step):
        ids = [templates.create_template(_draft(draft_step), admin).id for _ in range(3)]
        for template_id in (ids[0], ids[2], ids[1]):
            templates.publish(template_id, admin)
            assert _active_per_name() == {"Onboarding": 1}
        assert db.session.get(WorkflowTemplate, ids[1]).is_active is True

    def test_publish_locks_active_rows(self, admin, draft_step):
        template = templates.create_template(_draft(draft_step), admin)
        with patch.object(Query, "with_for_update", autospec=True, side_effect=lambda query, **kw: query) as lock:
            templates.publish(template.id, admin)
        lock.assert_called_once()
        assert db.session.get(WorkflowTemplate, template.id).is_active is True


# ═════════════════════════════════════════════════════════════════════════
# Listing / delete
# ═════════════════════════════════════════════════════════════════════════


class TestListingAndDelete:
    @pytest.fixture()
    def catalog(self, admin, draft_step):
        v1 = templates.create_template(_draft(draft_step), admin)
        templates.publish(v1.id, admin)
        v2 = templates.create_template_version(v1.id, {}, admin)
        other = templates.create_template(_draft(draft_step, name="Closing"), admin)
        return v1, v2, other

    def test_default_lists_latest_versions(self, catalog):
        v1, v2, other = catalog
        assert {t.id for t in templates.list_templates()} == {v2.id, other.id}

    def test_all_versions(self, catalog):
        assert len(templates.list_templates(all_versions=True)) == 3

    def test_active_filter(self, catalog):
        v1, _, _ = catalog
        assert [t.id for t in templates.list_templates(active=True)] == [v1.id]

    def test_soft_delete(self, catalog, admin, lawyer):
        v1, v2, _ = catalog
        with pytest.raises(ForbiddenError):
            templates.delete_template(v1.id, lawyer)

        templates.delete_template(v1.id, admin)
        row = db.session.get(WorkflowTemplate, v1.id)
        assert row.deleted_at is not None
        assert row.is_active is False
        with pytest.raises(NotFoundError):
            templates.get_template(v1.id)
        assert v1.id not in {t.id for t in templates.list_templates(all_versions=True)}

    def test_deleted_versions_keep_their_number(self, catalog, admin, draft_step):
        _, v2, _ = catalog
        templates.delete_template(v2.id, admin)
        v3 = templates.create_template(_draft(draft_step), admin)
        assert v3.version == 3


# ═════════════════════════════════════════════════════════════════════════
# Instantiation guards
# ═════════════════════════════════════════════════════════════════════════


class TestInstantiate:
    def test_unpublished_template(self, admin, matter, draft_step):
        template = templates.create_template(_draft(draft_step), admin)
        with pytest.raises(ConflictError):
            workflow_service.instantiate(template.id, actor=admin, matter_id=matter.id)

    def test_exactly_one_subject(self, admin, matter, contact, publish_template, draft_step):
        template = publish_template(_draft(draft_step)["steps"])
        with pytest.raises(ValidationError):
            workflow_service.instantiate(template.id, actor=admin)
        with pytest.raises(ValidationError):
            workflow_service.instantiate(template.id, actor=admin, matter_id=matter.id, contact_id=contact.id)

    def test_requires_matter_access(self, make_user, matter, publish_template, draft_step):
        template = publish_template(_draft(draft_step)["steps"])
        with pytest.raises(NotFoundError):
            workflow_service.instantiate(template.id, actor=make_user("LAWYER"), matter_id=matter.id)

    def test_context_starts_with_schema_defaults(self, admin, matter, publish_template, draft_step):
        template = publish_template(_draft(draft_step)["steps"], context_schema={"fields": {
            "client_approved": {"type": "boolean", "required": True, "default": False},
            "document_count": {"type": "number", "default": 0},
            "approver_name": {"type": "string"},
        }})
        instance = workflow_service.instantiate(template.id, actor=admin, matter_id=matter.id)
        assert instance.context_data == {"client_approved": False, "document_count": 0}

    def test_instance_pins_template_version(self, admin, matter, draft_step):
        v1 = templates.create_template(_draft(draft_step), admin)
        templates.publish(v1.id, admin)
        instance = workflow_service.instantiate(v1.id, actor=admin, matter_id=matter.id)

        v2 = templates.create_template_version(v1.id, {
            "steps": [draft_step("only", 0)],
            "dependencies": [],
        }, admin)
        templates.publish(v2.id, admin)

        assert instance.template_version == 1
        assert len(instance.steps) == 2
        assert len(instance.dependencies) == 1

    def test_instance_copies_steps_and_edges(self, admin, matter, publish_template, draft_step):
        draft = _draft(draft_step)
        template = publish_template(draft["steps"], draft["dependencies"])
        instance = workflow_service.instantiate(template.id, actor=admin, matter_id=matter.id)

        steps = {s.template_step_id: s for s in instance.steps}
        assert set(steps) == {s.id for s in template.steps}
        edge = instance.dependencies[0]
        assert {edge.source_step_id, edge.target_step_id} <= {s.id for s in instance.steps}
        for tstep in template.steps:
            assert steps[tstep.id].action_data["config"] == tstep.action_config

    def test_cannot_publish_without_steps(self, admin):
        template = WorkflowTemplate(name="Hollow", version=1, is_active=False)
        db.session.add(template)
        db.session.commit()
        with pytest.raises(InvalidStateError):
            templates.publish(template.id, admin)
