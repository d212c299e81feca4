"""
Workflow Instance Orchestrator.

Owns instance-level status, instantiation from a published template,
cancellation, the context API and the audit trail.  Every public mutating
function here commits exactly once; helpers it calls only flush.

Usage (from blueprints):
    from app.services import workflow_service

    instance = workflow_service.instantiate(template_id, matter_id=7, actor=g.current_user)
"""

from __future__ import annotations

import copy
import logging
from datetime import datetime, timezone

from sqlalchemy import or_

from app.core.exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from app.models import db
from app.models.audit import write_audit
from app.models.workflow import (
    INSTANCE_STATUSES,
    SATISFYING_STATES,
    WorkflowInstance,
    WorkflowInstanceDependency,
    WorkflowInstanceStep,
    WorkflowTemplate,
)
from app.services import workflow_context
from app.services.workflow_context_schema import apply_schema_defaults, validate_context
from app.services.access_service import (
    accessible_contact_ids,
    accessible_matter_ids,
    assert_contact_access,
    assert_matter_access,
)
from app.services.workflow_dependencies import seed_initial_steps, validate_dependencies
from app.services.workflow_metrics import WorkflowMetrics
from app.services.workflow_notifications import notify_step_ready

logger = logging.getLogger(__name__)

OPEN_STATES = {"PENDING", "READY", "IN_PROGRESS"}


# ═══════════════════════════════════════════════════════════════════════════
#  Shared helpers
# ═══════════════════════════════════════════════════════════════════════════


def record_audit_log(actor_id, action, entity_type, entity_id, metadata=None) -> None:
    """Best-effort audit write; failures are logged and never propagate."""
    try:
        with db.session.begin_nested():
            write_audit(
                entity_type=entity_type,
                entity_id=entity_id,
                action=action,
                actor_user_id=actor_id,
                metadata=metadata,
            )
    except Exception:
        logger.exception(
            "Audit log write failed: %s",
            action,
            extra={"actor_id": actor_id, "entity_type": entity_type, "entity_id": entity_id},
        )


def assert_instance_access(actor, instance) -> None:
    """NotFound unless *actor* may see the instance's matter / contact."""
    try:
        if instance.matter_id is not None:
            assert_matter_access(actor, instance.matter_id)
        elif instance.contact_id is not None:
            assert_contact_access(actor, instance.contact_id)
    except NotFoundError:
        raise NotFoundError(resource="WorkflowInstance", resource_id=instance.id) from None


def load_instance(instance_id: int, actor) -> WorkflowInstance:
    instance = db.session.get(WorkflowInstance, instance_id)
    if instance is None:
        raise NotFoundError(resource="WorkflowInstance", resource_id=instance_id)
    assert_instance_access(actor, instance)
    return instance


def refresh_instance(instance) -> str:
    """
    Recompute instance status in place.

    COMPLETED iff every required, non-bypassed step is COMPLETED or SKIPPED.
    A COMPLETED instance with open required steps returns to ACTIVE.
    CANCELED is left alone.
    """
    if instance.status == "CANCELED" or not instance.steps:
        return instance.status

    done = all(
        step.action_state in SATISFYING_STATES
        for step in instance.steps
        if step.required and not step.is_bypassed
    )
    if done and instance.status == "ACTIVE":
        instance.status = "COMPLETED"
        WorkflowMetrics.record_instance_completed(
            instance.template_id, instance.created_at, datetime.now(timezone.utc),
        )
        logger.info("Workflow instance completed", extra={"instance_id": instance.id})
    elif not done and instance.status == "COMPLETED":
        instance.status = "ACTIVE"
        logger.info("Workflow instance reopened", extra={"instance_id": instance.id})
    db.session.flush()
    return instance.status


def refresh_instance_status(instance_id: int) -> str:
    instance = db.session.get(WorkflowInstance, instance_id)
    if instance is None:
        raise NotFoundError(resource="WorkflowInstance", resource_id=instance_id)
    return refresh_instance(instance)


# ═══════════════════════════════════════════════════════════════════════════
#  Instantiation
# ═══════════════════════════════════════════════════════════════════════════


def instantiate(template_id: int, *, actor, matter_id: int | None = None,
                contact_id: int | None = None) -> WorkflowInstance:
    """
    Start a run of a published template against a matter or a contact.

    Raises:
        ValidationError: neither or both of matter_id / contact_id given.
        NotFoundError: template missing / deleted, or subject not accessible.
        ConflictError: template is not the active version.
        InvalidStateError: template has no steps or broken dependencies.
    """
    if (matter_id is None) == (contact_id is None):
        raise ValidationError("Exactly one of matter_id or contact_id is required")

    template = db.session.get(WorkflowTemplate, template_id)
    if template is None or template.is_deleted:
        raise NotFoundError(resource="WorkflowTemplate", resource_id=template_id)
    if not template.is_active:
        raise ConflictError("WorkflowTemplate", "is_active", template.is_active,
                            message="Only published templates can be instantiated")
    if not template.steps:
        raise InvalidStateError("Template has no steps", code="EMPTY_TEMPLATE")

    if matter_id is not None:
        assert_matter_access(actor, matter_id)
    else:
        assert_contact_access(actor, contact_id)

    errors = validate_dependencies(
        [s.id for s in template.steps],
        [
            {
                "source": d.source_step_id,
                "target": d.target_step_id,
                "dependency_type": d.dependency_type,
                "dependency_logic": d.dependency_logic,
                "condition_type": d.condition_type,
            }
            for d in template.dependencies
        ],
    )
    if errors:
        raise InvalidStateError(
            f"Template dependencies are invalid: {'; '.join(errors)}",
            code="INVALID_DEPENDENCIES",
        )

    instance = WorkflowInstance(
        template_id=template.id,
        template_version=template.version,
        matter_id=matter_id,
        contact_id=contact_id,
        status="ACTIVE",
        context_data=apply_schema_defaults({}, template.context_schema),
        created_by_id=actor.id,
    )
    db.session.add(instance)

    step_map: dict[int, WorkflowInstanceStep] = {}
    for tstep in template.steps:
        step = WorkflowInstanceStep(
            instance=instance,
            template_step_id=tstep.id,
            order=tstep.order,
            title=tstep.title,
            action_type=tstep.action_type,
            role_scope=tstep.role_scope,
            required=tstep.required,
            action_state="PENDING",
            action_data={"config": copy.deepcopy(tstep.action_config or {}), "history": []},
            notification_policies=copy.deepcopy(tstep.notification_policies or []),
        )
        db.session.add(step)
        step_map[tstep.id] = step
    db.session.flush()

    for dep in template.dependencies:
        db.session.add(WorkflowInstanceDependency(
            instance=instance,
            source_step_id=step_map[dep.source_step_id].id,
            target_step_id=step_map[dep.target_step_id].id,
            dependency_type=dep.dependency_type,
            dependency_logic=dep.dependency_logic,
            condition_type=dep.condition_type,
            condition_config=copy.deepcopy(dep.condition_config),
        ))
    db.session.flush()
    db.session.refresh(instance)

    readied = seed_initial_steps(instance)
    refresh_instance(instance)

    record_audit_log(actor.id, "workflow.instance.create", "workflow", instance.id, {
        "template_id": template.id,
        "template_version": template.version,
        "matter_id": matter_id,
        "contact_id": contact_id,
        "step_count": len(step_map),
    })
    for step in readied:
        notify_step_ready(step)

    WorkflowMetrics.record_instance_created(template.id)
    db.session.commit()
    logger.info(
        "Workflow instance created",
        extra={"instance_id": instance.id, "template_id": template.id, "actor_id": actor.id},
    )
    return instance


# ═══════════════════════════════════════════════════════════════════════════
#  Queries
# ═══════════════════════════════════════════════════════════════════════════


def get_instance(instance_id: int, actor) -> WorkflowInstance:
    return load_instance(instance_id, actor)


def list_instances(actor, *, matter_id=None, contact_id=None, status=None) -> list[WorkflowInstance]:
    """Instances visible to *actor*, newest first."""
    if status is not None and status not in INSTANCE_STATUSES:
        raise ValidationError(f"Invalid status: {status}", details={"status": status})

    q = WorkflowInstance.query
    if matter_id is not None:
        assert_matter_access(actor, matter_id)
        q = q.filter(WorkflowInstance.matter_id == matter_id)
    if contact_id is not None:
        assert_contact_access(actor, contact_id)
        q = q.filter(WorkflowInstance.contact_id == contact_id)
    if status is not None:
        q = q.filter(WorkflowInstance.status == status)

    matter_ids = accessible_matter_ids(actor)
    if matter_ids is not None:
        contact_ids = accessible_contact_ids(actor) or set()
        q = q.filter(or_(
            WorkflowInstance.matter_id.in_(matter_ids or {-1}),
            WorkflowInstance.contact_id.in_(contact_ids or {-1}),
        ))
    return q.order_by(WorkflowInstance.created_at.desc(), WorkflowInstance.id.desc()).all()


# ═══════════════════════════════════════════════════════════════════════════
#  Cancellation
# ═══════════════════════════════════════════════════════════════════════════


def cancel_instance(instance_id: int, actor, reason: str | None = None) -> WorkflowInstance | None:
    """
    Cancel an instance (ADMIN or LAWYER).

    Nothing started yet → the instance is deleted and None is returned.
    Otherwise the instance becomes CANCELED and its open steps SKIPPED with
    ``cancellation_reason`` so they can be restarted later.
    """
    instance = load_instance(instance_id, actor)
    if actor.role not in ("ADMIN", "LAWYER"):
        raise ForbiddenError("Only admins and lawyers can cancel workflows")
    if instance.status == "CANCELED":
        raise ConflictError.from_message("Workflow is already canceled", resource="WorkflowInstance")
    if instance.status == "COMPLETED":
        raise InvalidStateError("Completed workflows cannot be canceled", code="INSTANCE_COMPLETED")

    reason = (reason or "").strip() or "Canceled by user"
    started = any(
        step.started_at is not None or step.action_state in ("IN_PROGRESS", "COMPLETED", "FAILED")
        for step in instance.steps
    )

    if not started:
        record_audit_log(actor.id, "workflow.instance.delete", "workflow", instance.id, {
            "template_id": instance.template_id,
            "reason": reason,
        })
        # edges reference steps without an ORM relationship, so they go first
        for dep in list(instance.dependencies):
            db.session.delete(dep)
        db.session.flush()
        db.session.delete(instance)
        db.session.commit()
        logger.info("Unstarted workflow instance deleted",
                    extra={"instance_id": instance_id, "actor_id": actor.id})
        return None

    now = datetime.now(timezone.utc)
    instance.status = "CANCELED"
    instance.cancellation_reason = reason[:500]
    skipped = []
    for step in instance.steps:
        if step.action_state not in OPEN_STATES:
            continue
        data = dict(step.action_data or {})
        data.update({"cancellation_reason": reason, "reason": reason})
        previous_state = step.action_state
        step.record_transition("SKIPPED", event="canceled", actor_id=actor.id,
                               payload={"reason": reason}, at=now, data=data)
        WorkflowMetrics.record_transition(step.action_type, previous_state, "SKIPPED")
        step.completed_at = now
        skipped.append(step.id)

    record_audit_log(actor.id, "workflow.instance.cancel", "workflow", instance.id, {
        "reason": reason,
        "skipped_step_ids": skipped,
    })
    db.session.commit()
    logger.info("Workflow instance canceled",
                extra={"instance_id": instance.id, "actor_id": actor.id})
    return instance


# ═══════════════════════════════════════════════════════════════════════════
#  Context API
# ═══════════════════════════════════════════════════════════════════════════


def read_context(instance_id: int, actor) -> dict:
    load_instance(instance_id, actor)
    return workflow_context.get_context(instance_id)


def _check_context(context: dict, schema, *, written=None) -> None:
    errors = validate_context(context, schema, written=written)
    if errors:
        raise ValidationError("Context does not match the template schema", details={"errors": errors})


def patch_context(instance_id: int, actor, body: dict) -> dict:
    """
    Apply one context mutation from a request body:

        {"clear": true}          reset to the schema defaults ({} without a schema)
        {"context": {...}}       replace; defaults fill absent keys
        {"updates": {...}}       shallow merge

    When the template declares a ``context_schema`` the written keys are
    checked against it first (ValidationError with ``details.errors``).
    """
    instance = load_instance(instance_id, actor)
    if actor.role == "CLIENT":
        raise ForbiddenError("Clients cannot edit workflow context")
    schema = instance.template.context_schema if instance.template else None

    if body.get("clear") is True:
        mode = "clear"
        context = workflow_context.set_context(instance_id, apply_schema_defaults({}, schema))
    elif "context" in body:
        mode = "replace"
        replacement = body["context"]
        if isinstance(replacement, dict):
            replacement = apply_schema_defaults(replacement, schema)
            _check_context(replacement, schema)
        context = workflow_context.set_context(instance_id, replacement)
    elif "updates" in body:
        mode = "merge"
        updates = body["updates"]
        if isinstance(updates, dict):
            _check_context(updates, schema, written=list(updates))
        context = workflow_context.update_context(instance_id, updates)
    else:
        raise ValidationError("Provide one of 'clear', 'context' or 'updates'")

    record_audit_log(actor.id, "workflow.context.update", "workflow", instance_id, {
        "mode": mode,
        "keys": sorted(context),
    })
    db.session.commit()
    return context
