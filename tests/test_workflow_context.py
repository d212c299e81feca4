"""
Workflow context tests: key helpers, the audited ``patch_context``
entry point and template context schemas.
"""

import pytest

from app.core.exceptions import ForbiddenError, NotFoundError, ValidationError
from app.models.audit import AuditLog
from app.services import workflow_context as wc
from app.services import workflow_service
from app.services.workflow_context_schema import apply_schema_defaults, validate_context, validate_context_field


@pytest.fixture()
def instance(admin, matter, publish_template, draft_step):
    template = publish_template([draft_step("intake", 0)])
    return workflow_service.instantiate(template.id, actor=admin, matter_id=matter.id)


class TestHelpers:
    def test_starts_empty(self, instance):
        assert wc.get_context(instance.id) == {}

    def test_set_update_clear(self, instance):
        wc.set_context(instance.id, {"amount": 100, "state": "CA"})
        assert wc.update_context(instance.id, {"amount": 250}) == {"amount": 250, "state": "CA"}
        assert wc.clear_context(instance.id) == {}
        assert instance.context_data == {}

    def test_key_helpers(self, instance):
        wc.set_value(instance.id, "tier", "gold")
        assert wc.get_value(instance.id, "tier") == "gold"
        assert wc.get_value(instance.id, "missing", "n/a") == "n/a"
        assert wc.has_value(instance.id, "tier")

        wc.delete_value(instance.id, "tier")
        assert not wc.has_value(instance.id, "tier")
        wc.delete_value(instance.id, "tier")

    def test_get_values_skips_absent_keys(self, instance):
        wc.set_context(instance.id, {"a": 1, "b": 2})
        assert wc.get_values(instance.id, ["a", "z"]) == {"a": 1}

    def test_increment(self, instance):
        assert wc.increment(instance.id, "approvals") == 1
        assert wc.increment(instance.id, "approvals", 2.5) == 3.5
        wc.set_value(instance.id, "flag", True)
        assert wc.increment(instance.id, "flag") == 1

    def test_append_and_merge(self, instance):
        wc.append_to_list(instance.id, "docs", "lease.pdf")
        assert wc.append_to_list(instance.id, "docs", "id.png") == ["lease.pdf", "id.png"]
        wc.set_value(instance.id, "scalar", 3)
        assert wc.append_to_list(instance.id, "scalar", "x") == ["x"]

        wc.merge_object(instance.id, "client", {"name": "Doe"})
        assert wc.merge_object(instance.id, "client", {"state": "CA"}) == {"name": "Doe", "state": "CA"}
        with pytest.raises(ValidationError):
            wc.merge_object(instance.id, "client", ["nope"])

    def test_reads_are_copies(self, instance):
        wc.set_context(instance.id, {"client": {"name": "Doe"}})
        snapshot = wc.get_context(instance.id)
        snapshot["client"]["name"] = "Changed"
        assert wc.get_value(instance.id, "client") == {"name": "Doe"}

    def test_non_object_rejected(self, instance):
        with pytest.raises(ValidationError):
            wc.set_context(instance.id, ["a"])
        with pytest.raises(ValidationError):
            wc.update_context(instance.id, "a=1")

    def test_unknown_instance(self):
        with pytest.raises(NotFoundError):
            wc.get_context(999)


class TestPatchContext:
    def test_merge_is_audited(self, instance, lawyer):
        result = workflow_service.patch_context(instance.id, lawyer, {"updates": {"amount": 1500}})
        assert result == {"amount": 1500}

        row = AuditLog.query.filter_by(action="workflow.context.update").one()
        assert row.entity_type == "workflow"
        assert row.entity_id == str(instance.id)
        assert row.actor_user_id == lawyer.id
        assert row.metadata_dict == {"mode": "merge", "keys": ["amount"]}

    def test_replace_and_clear(self, instance, admin):
        workflow_service.patch_context(instance.id, admin, {"updates": {"a": 1}})
        assert workflow_service.patch_context(instance.id, admin, {"context": {"b": 2}}) == {"b": 2}
        assert workflow_service.patch_context(instance.id, admin, {"clear": True}) == {}
        assert workflow_service.read_context(instance.id, admin) == {}

    def test_client_cannot_edit(self, instance, portal_user):
        assert workflow_service.read_context(instance.id, portal_user) == {}
        with pytest.raises(ForbiddenError):
            workflow_service.patch_context(instance.id, portal_user, {"updates": {"a": 1}})

    def test_empty_body(self, instance, admin):
        with pytest.raises(ValidationError):
            workflow_service.patch_context(instance.id, admin, {})

    def test_outsider_cannot_read(self, instance, make_user):
        with pytest.raises(NotFoundError):
            workflow_service.read_context(instance.id, make_user("LAWYER"))


# ═════════════════════════════════════════════════════════════════════════
# Template context schema
# ═════════════════════════════════════════════════════════════════════════

SCHEMA = {
    "version": 1,
    "fields": {
        "client_approved": {"type": "boolean", "label": "Client approved", "required": True, "default": False},
        "document_count": {"type": "number", "min": 0, "max": 100, "default": 0},
        "approver_name": {"type": "string", "min_length": 2, "pattern": "^[A-Z]"},
        "documents": {"type": "array", "item_type": "string", "max_items": 2},
        "payment": {"type": "object", "properties": {"amount": {"type": "number", "required": True}}},
    },
}


def _codes(errors):
    return {(e["field"], e["code"]) for e in errors}


class TestContextSchema:
    def test_field_rules(self):
        errors = validate_context({
            "client_approved": None,
            "document_count": 101,
            "approver_name": "a",
            "documents": ["a", "b", 3],
            "payment": {},
        }, SCHEMA)
        assert _codes(errors) == {
            ("client_approved", "REQUIRED"),
            ("document_count", "MAX_VALUE"),
            ("approver_name", "MIN_LENGTH"),
            ("approver_name", "INVALID_PATTERN"),
            ("documents", "MAX_ITEMS"),
            ("documents", "INVALID_ITEM_TYPE"),
            ("payment.amount", "REQUIRED"),
        }

    def test_booleans_are_not_numbers(self):
        errors = validate_context_field("document_count", True, SCHEMA["fields"]["document_count"])
        assert errors == [{"field": "document_count", "message": "document_count must be a number",
                           "code": "INVALID_TYPE"}]

    def test_partial_check_only_touches_written_keys(self):
        assert validate_context({"document_count": 3}, SCHEMA, written=["document_count"]) == []
        errors = validate_context({"tier": "gold"}, SCHEMA, written=["tier"])
        assert _codes(errors) == {("tier", "UNDEFINED_FIELD")}

    def test_defaults_fill_absent_keys_only(self):
        assert apply_schema_defaults({"document_count": 4}, SCHEMA) == {
            "document_count": 4,
            "client_approved": False,
        }
        assert apply_schema_defaults({"x": 1}, None) == {"x": 1}


class TestPatchWithSchema:
    @pytest.fixture()
    def schema_instance(self, admin, matter, publish_template, draft_step):
        template = publish_template([draft_step("intake", 0)], name="Typed intake", context_schema=SCHEMA)
        return workflow_service.instantiate(template.id, actor=admin, matter_id=matter.id)

    def test_merge_validates_written_keys(self, schema_instance, lawyer):
        with pytest.raises(ValidationError) as exc:
            workflow_service.patch_context(schema_instance.id, lawyer, {"updates": {
                "document_count": -1,
                "tier": "gold",
            }})
        assert exc.value.details["errors"] == [
            {"field": "document_count", "message": "document_count must be at least 0", "code": "MIN_VALUE"},
            {"field": "tier", "message": 'Field "tier" is not defined in schema', "code": "UNDEFINED_FIELD"},
        ]

        result = workflow_service.patch_context(schema_instance.id, lawyer, {"updates": {"document_count": 2}})
        assert result == {"client_approved": False, "document_count": 2}

    def test_required_field_cannot_be_blanked(self, schema_instance, lawyer):
        with pytest.raises(ValidationError) as exc:
            workflow_service.patch_context(schema_instance.id, lawyer, {"updates": {"client_approved": None}})
        assert _codes(exc.value.details["errors"]) == {("client_approved", "REQUIRED")}

    def test_replace_applies_defaults_then_validates(self, schema_instance, admin):
        result = workflow_service.patch_context(schema_instance.id, admin, {"context": {"approver_name": "Ada"}})
        assert result == {"approver_name": "Ada", "client_approved": False, "document_count": 0}

        with pytest.raises(ValidationError):
            workflow_service.patch_context(schema_instance.id, admin, {"context": {"approver_name": 7}})

    def test_clear_resets_to_defaults(self, schema_instance, admin):
        workflow_service.patch_context(schema_instance.id, admin, {"updates": {"document_count": 9}})
        assert workflow_service.patch_context(schema_instance.id, admin, {"clear": True}) == {
            "client_approved": False,
            "document_count": 0,
        }

    def test_rejected_patch_over_http(self, client, auth_headers, lawyer, schema_instance):
        res = client.patch(f"/api/v1/workflows/instances/{schema_instance.id}/context",
                           json={"updates": {"document_count": "three"}}, headers=auth_headers(lawyer))
        assert res.status_code == 422
        assert res.get_json()["details"]["errors"][0]["code"] == "INVALID_TYPE"
