"""
Workflow template authoring and versioning.

A template is never edited in place: every edit creates a new row with the
same name and ``version + 1``.  Publishing flips ``is_active`` so that at
most one row per name is active.

Draft format (POST body):
    {
      "name": "Client Intake",
      "description": "...",
      "context_schema": {...},                # optional
      "steps": [
        {"key": "intake", "order": 0, "title": "Collect documents",
         "action_type": "REQUEST_DOC", "role_scope": "CLIENT",
         "required": true, "action_config": {...},
         "notification_policies": [...], "position_x": 0, "position_y": 0}
      ],
      "dependencies": [
        {"source": "intake", "target": "review",
         "dependency_type": "DEPENDS_ON", "dependency_logic": "ALL",
         "condition_type": null, "condition_config": null}
      ]
    }

Steps are referenced by ``key`` (default ``step_<order>``).
"""

from __future__ import annotations

import logging

from sqlalchemy import func

from app.core.exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from app.models import db
from app.models.workflow import (
    ACTION_TYPES,
    ROLE_SCOPES,
    WorkflowTemplate,
    WorkflowTemplateDependency,
    WorkflowTemplateStep,
)
from app.services.workflow_conditions import validate_condition
from app.services.workflow_context_schema import validate_context_schema
from app.services.workflow_dependencies import validate_dependencies
from app.services.workflow_handlers import ActionHandlerError, validate_action_config
from app.services.workflow_notifications import validate_notification_policies
from app.services.workflow_service import record_audit_log

logger = logging.getLogger(__name__)

AUTHOR_ROLES = ("ADMIN", "LAWYER")


def _step_key(step: dict) -> str:
    return str(step.get("key") or f"step_{step.get('order')}")


# ═══════════════════════════════════════════════════════════════════════════
#  Draft validation
# ═══════════════════════════════════════════════════════════════════════════


def validate_draft(draft: dict) -> list[str]:
    """Return every problem found in *draft* (empty list when valid)."""
    if not isinstance(draft, dict):
        return ["Template draft must be an object"]

    errors: list[str] = []
    name = draft.get("name")
    if not isinstance(name, str) or not name.strip():
        errors.append("name is required")
    elif len(name) > 200:
        errors.append("name must be at most 200 characters")
    errors.extend(validate_context_schema(draft.get("context_schema")))

    steps = draft.get("steps")
    if not isinstance(steps, list) or not steps:
        errors.append("At least one step is required")
        return errors

    orders, keys = set(), []
    for index, step in enumerate(steps):
        where = f"steps[{index}]"
        if not isinstance(step, dict):
            errors.append(f"{where}: must be an object")
            continue
        order = step.get("order")
        if not isinstance(order, int) or isinstance(order, bool) or order < 0:
            errors.append(f"{where}: order must be a non-negative integer")
        elif order in orders:
            errors.append(f"{where}: duplicate order {order}")
        orders.add(order)

        key = _step_key(step)
        if key in keys:
            errors.append(f"{where}: duplicate key '{key}'")
        keys.append(key)

        title = step.get("title")
        if not isinstance(title, str) or not title.strip():
            errors.append(f"{where}: title is required")
        if step.get("role_scope") not in ROLE_SCOPES:
            errors.append(f"{where}: role_scope must be one of {', '.join(ROLE_SCOPES)}")

        action_type = step.get("action_type")
        if action_type not in ACTION_TYPES:
            errors.append(f"{where}: unknown action_type '{action_type}'")
        else:
            try:
                validate_action_config(action_type, step.get("action_config") or {})
            except ActionHandlerError as exc:
                errors.append(f"{where}.action_config: {exc}")

        errors.extend(f"{where}.{e}" for e in validate_notification_policies(step.get("notification_policies")))

    dependencies = draft.get("dependencies") or []
    if not isinstance(dependencies, list):
        errors.append("dependencies must be a list")
        return errors

    if not all(isinstance(dep, dict) for dep in dependencies):
        errors.append("dependencies must be objects")
        return errors
    errors.extend(validate_dependencies(keys, dependencies))
    for index, dep in enumerate(dependencies):
        condition = dep.get("condition_config")
        condition_type = dep.get("condition_type")
        if condition:
            errors.extend(f"dependencies[{index}].condition_config: {e}" for e in validate_condition(condition))
        elif condition_type in ("IF_TRUE", "IF_FALSE", "SWITCH"):
            errors.append(f"dependencies[{index}]: condition_config is required for condition_type {condition_type}")
    return errors


def template_to_draft(template: WorkflowTemplate) -> dict:
    """Inverse of ``_build_template``: a draft that recreates *template*."""
    keys = {s.id: f"step_{s.order}" for s in template.steps}
    return {
        "name": template.name,
        "description": template.description,
        "context_schema": template.context_schema,
        "steps": [
            {
                "key": keys[s.id],
                "order": s.order,
                "title": s.title,
                "action_type": s.action_type,
                "role_scope": s.role_scope,
                "required": s.required,
                "action_config": s.action_config or {},
                "notification_policies": s.notification_policies or [],
                "position_x": s.position_x,
                "position_y": s.position_y,
            }
            for s in template.steps
        ],
        "dependencies": [
            {
                "source": keys[d.source_step_id],
                "target": keys[d.target_step_id],
                "dependency_type": d.dependency_type,
                "dependency_logic": d.dependency_logic,
                "condition_type": d.condition_type,
                "condition_config": d.condition_config,
            }
            for d in template.dependencies
        ],
    }


# ═══════════════════════════════════════════════════════════════════════════
#  Create / version
# ═══════════════════════════════════════════════════════════════════════════


def _assert_author(actor) -> None:
    if actor.role not in AUTHOR_ROLES:
        raise ForbiddenError("Only admins and lawyers can author workflow templates")


def _next_version(name: str) -> int:
    # deleted rows keep their version numbers
    current = db.session.query(func.max(WorkflowTemplate.version)).filter(WorkflowTemplate.name == name).scalar()
    return (current or 0) + 1


def _build_template(draft: dict, actor) -> WorkflowTemplate:
    errors = validate_draft(draft)
    if errors:
        raise ValidationError("Invalid workflow template", details={"errors": errors})

    name = draft["name"].strip()
    template = WorkflowTemplate(
        name=name,
        description=draft.get("description") or "",
        version=_next_version(name),
        is_active=False,
        context_schema=draft.get("context_schema"),
        created_by_id=actor.id,
    )
    db.session.add(template)

    by_key: dict[str, WorkflowTemplateStep] = {}
    for step in draft["steps"]:
        row = WorkflowTemplateStep(
            template=template,
            order=step["order"],
            title=step["title"].strip(),
            action_type=step["action_type"],
            role_scope=step["role_scope"],
            required=bool(step.get("required", True)),
            action_config=step.get("action_config") or {},
            notification_policies=step.get("notification_policies") or [],
            position_x=step.get("position_x"),
            position_y=step.get("position_y"),
        )
        db.session.add(row)
        by_key[_step_key(step)] = row
    db.session.flush()

    for dep in draft.get("dependencies") or []:
        db.session.add(WorkflowTemplateDependency(
            template=template,
            source_step_id=by_key[dep["source"]].id,
            target_step_id=by_key[dep["target"]].id,
            dependency_type=dep.get("dependency_type") or "DEPENDS_ON",
            dependency_logic=dep.get("dependency_logic") or "ALL",
            condition_type=dep.get("condition_type"),
            condition_config=dep.get("condition_config"),
        ))
    db.session.flush()
    db.session.refresh(template)
    return template


def create_template(draft: dict, actor) -> WorkflowTemplate:
    """Create a new (inactive) version; version = highest existing for the name + 1."""
    _assert_author(actor)
    template = _build_template(draft, actor)
    record_audit_log(actor.id, "workflow.template.create", "workflow_template", template.id, {
        "name": template.name,
        "version": template.version,
        "step_count": len(template.steps),
    })
    db.session.commit()
    logger.info("Workflow template created: %s v%s", template.name, template.version,
                extra={"template_id": template.id, "actor_id": actor.id})
    return template


def create_template_version(template_id: int, draft: dict | None, actor) -> WorkflowTemplate:
    """
    Edit = new version under the source template's name.

    Keys missing from *draft* are taken from the source version.
    """
    _assert_author(actor)
    source = get_template(template_id)
    merged = {**template_to_draft(source), **(draft or {})}
    merged["name"] = source.name
    template = _build_template(merged, actor)
    record_audit_log(actor.id, "workflow.template.create", "workflow_template", template.id, {
        "name": template.name,
        "version": template.version,
        "source_template_id": source.id,
    })
    db.session.commit()
    return template


# ═══════════════════════════════════════════════════════════════════════════
#  Publish / query / delete
# ═══════════════════════════════════════════════════════════════════════════


def publish(template_id: int, actor) -> WorkflowTemplate:
    """Make *template_id* the single active version of its name."""
    if not actor.is_admin:
        raise ForbiddenError("Only admins can publish workflow templates")
    template = get_template(template_id)
    if template.is_active:
        raise ConflictError("WorkflowTemplate", "is_active", True,
                            message="Template version is already published")
    if not template.steps:
        raise InvalidStateError("Cannot publish a template without steps", code="EMPTY_TEMPLATE")

    previous = (
        WorkflowTemplate.query
        .filter(WorkflowTemplate.name == template.name,
                WorkflowTemplate.is_active.is_(True),
                WorkflowTemplate.id != template.id)
        .with_for_update()
        .all()
    )
    for other in previous:
        other.is_active = False
    db.session.flush()
    template.is_active = True

    record_audit_log(actor.id, "workflow.template.publish", "workflow_template", template.id, {
        "name": template.name,
        "version": template.version,
        "deactivated_ids": [t.id for t in previous],
    })
    db.session.commit()
    logger.info("Workflow template published: %s v%s", template.name, template.version,
                extra={"template_id": template.id, "actor_id": actor.id})
    return template


def get_template(template_id: int) -> WorkflowTemplate:
    template = db.session.get(WorkflowTemplate, template_id)
    if template is None or template.is_deleted:
        raise NotFoundError(resource="WorkflowTemplate", resource_id=template_id)
    return template


def list_templates(*, all_versions: bool = False, active: bool | None = None,
                   name: str | None = None) -> list[WorkflowTemplate]:
    """Non-deleted templates; by default only the latest version of each name.

    An ``active`` filter looks across all versions (one active row per name).
    """
    q = WorkflowTemplate.query_active()
    if name:
        q = q.filter(WorkflowTemplate.name == name)
    if active is not None:
        q = q.filter(WorkflowTemplate.is_active.is_(active))
    if not all_versions and active is None:
        latest = (
            db.session.query(
                WorkflowTemplate.name.label("name"),
                func.max(WorkflowTemplate.version).label("version"),
            )
            .filter(WorkflowTemplate.deleted_at.is_(None))
            .group_by(WorkflowTemplate.name)
            .subquery()
        )
        q = q.join(
            latest,
            (WorkflowTemplate.name == latest.c.name) & (WorkflowTemplate.version == latest.c.version),
        )
    return q.order_by(WorkflowTemplate.name, WorkflowTemplate.version.desc()).all()


def delete_template(template_id: int, actor) -> None:
    if not actor.is_admin:
        raise ForbiddenError("Only admins can delete workflow templates")
    template = get_template(template_id)
    template.soft_delete()
    record_audit_log(actor.id, "workflow.template.delete", "workflow_template", template.id, {
        "name": template.name,
        "version": template.version,
    })
    db.session.commit()
    logger.info("Workflow template deleted", extra={"template_id": template.id, "actor_id": actor.id})
