"""
Workflow step runtime — start / complete / fail / skip / external events.

Each public function is one transaction:

    1. load the step (NotFound), check matter/contact access and role
       (Forbidden) and the claim (Conflict; admins take the step over)
    2. validate the state transition and let the action handler act
    3. persist action_data + context updates, append a history entry
    4. re-run dependency advancement and instance status refresh
    5. audit + notifications (savepoints), then commit
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from app.core.exceptions import ForbiddenError, InvalidStateError, NotFoundError, ValidationError
from app.models import db
from app.models.workflow import WorkflowInstanceStep
from app.services.workflow_dependencies import advance_instance
from app.services.workflow_handlers import (
    ActionHandlerError,
    ActionRegistryError,
    HandlerContext,
    action_registry,
)
from app.services.workflow_metrics import WorkflowMetrics, handler_span
from app.services.workflow_notifications import notify_step_event, notify_step_ready
from app.services.workflow_roles import assert_actor_can_perform, assert_claimable
from app.services.workflow_service import assert_instance_access, record_audit_log, refresh_instance

logger = logging.getLogger(__name__)

STEP_EVENTS = {
    "SIGNATURE_COMPLETED",
    "SIGNATURE_FAILED",
    "SIGNATURE_DECLINED",
    "PAYMENT_SUCCEEDED",
    "PAYMENT_FAILED",
    "DOCUMENT_UPLOADED",
    "AUTOMATION_SUCCEEDED",
    "AUTOMATION_FAILED",
}


# ── Loading / handler plumbing ───────────────────────────────────────────────


def _load_step(step_id: int, actor) -> WorkflowInstanceStep:
    step = db.session.get(WorkflowInstanceStep, step_id, with_for_update=True)
    if step is None:
        raise NotFoundError(resource="WorkflowInstanceStep", resource_id=step_id)
    try:
        assert_instance_access(actor, step.instance)
    except NotFoundError:
        raise ForbiddenError("Not authorized to act on this workflow") from None
    return step


def _handler_context(step, actor, now):
    try:
        handler = action_registry.get(step.action_type)
        config = handler.parse_config(step.config)
    except ActionRegistryError as exc:
        raise InvalidStateError(str(exc), code="UNKNOWN_ACTION_TYPE") from exc
    except ActionHandlerError as exc:
        raise InvalidStateError(f"Invalid step configuration: {exc}", code=exc.code) from exc

    ctx = HandlerContext(
        instance=step.instance,
        step=step,
        actor=actor,
        config=config,
        data=dict(step.action_data or {}),
        context=dict(step.instance.context_data or {}),
        now=now,
    )
    return handler, ctx


def _transition(step, new_state: str, **kwargs) -> None:
    previous = step.action_state
    step.record_transition(new_state, **kwargs)
    WorkflowMetrics.record_transition(step.action_type, previous, new_state)


def _apply_context_updates(instance, ctx) -> None:
    if ctx.context_updates:
        instance.context_data = {**(instance.context_data or {}), **ctx.context_updates}


def _after_transition(step, actor, action: str, metadata: dict, snapshot=None):
    """Advance + refresh, then audit + notify. Caller commits."""
    instance = step.instance
    readied = advance_instance(instance)
    refresh_instance(instance)

    record_audit_log(actor.id, action, "workflow_step", step.id, {
        "instance_id": instance.id,
        "action_type": step.action_type,
        "action_state": step.action_state,
        "matter_id": instance.matter_id,
        "contact_id": instance.contact_id,
        **metadata,
    })
    if step.action_state == "COMPLETED":
        notify_step_event(step, "ON_COMPLETED", snapshot)
    elif step.action_state == "FAILED":
        notify_step_event(step, "ON_FAILED", snapshot)
    for ready in readied:
        notify_step_ready(ready)


def _take_over(step, actor, now, ctx=None) -> int | None:
    """
    Make *actor* the assignee of an in-progress step held by someone else.

    ``assert_claimable`` has already limited this to admins.  Returns the
    previous assignee, or None when nothing changed hands.
    """
    previous = step.assigned_to_id
    if previous is None or previous == actor.id:
        return None
    step.append_history("reassigned", actor_id=actor.id, at=now,
                        payload={"previous_assignee_id": previous})
    if ctx is not None:
        ctx.data["history"] = list(step.action_data["history"])
    step.assigned_to_id = actor.id
    WorkflowMetrics.record_step_claim(step.action_type)
    logger.info("Workflow step reassigned",
                extra={"step_id": step.id, "instance_id": step.instance_id, "actor_id": actor.id})
    return previous


def _assert_in_progress(step, verb: str) -> None:
    if step.action_state != "IN_PROGRESS":
        raise InvalidStateError(
            f"Only in-progress steps can be {verb} (state: {step.action_state})",
            code="STEP_NOT_IN_PROGRESS",
        )


# ═══════════════════════════════════════════════════════════════════════════
#  Start
# ═══════════════════════════════════════════════════════════════════════════


def _restart_skipped(step, actor, now) -> None:
    data = dict(step.action_data or {})
    if not data.get("cancellation_reason"):
        raise InvalidStateError("Skipped steps cannot be restarted", code="SKIPPED_NOT_RESTARTABLE")
    data.pop("cancellation_reason", None)
    data["restarted_at"] = now.isoformat()
    _transition(step, "READY", event="restarted", actor_id=actor.id, at=now, data=data)
    step.started_at = None
    step.completed_at = None
    step.assigned_to_id = None


def _reassign(step, actor, now) -> WorkflowInstanceStep:
    """Admin takes over an in-progress step held by someone else."""
    previous = _take_over(step, actor, now)
    record_audit_log(actor.id, "workflow.step.start", "workflow_step", step.id, {
        "instance_id": step.instance_id,
        "reassigned_from": previous,
    })
    db.session.commit()
    return step


def start_step(step_id: int, actor) -> WorkflowInstanceStep:
    """
    Claim a READY step and move it to IN_PROGRESS.

    A SKIPPED step whose skip came from a cancellation is restarted first.
    Starting a step of a CANCELED instance reactivates the instance.
    """
    step = _load_step(step_id, actor)
    snapshot = assert_actor_can_perform(step, actor)
    assert_claimable(step, actor)
    now = datetime.now(timezone.utc)

    if step.action_state == "SKIPPED":
        _restart_skipped(step, actor, now)
    if step.action_state == "IN_PROGRESS" and step.assigned_to_id != actor.id and actor.is_admin:
        return _reassign(step, actor, now)
    if step.action_state != "READY":
        raise InvalidStateError(
            f"Step cannot be started from state {step.action_state}",
            code="STEP_NOT_READY",
        )

    handler, ctx = _handler_context(step, actor, now)
    if not handler.can_start(ctx):
        raise InvalidStateError("Step cannot be started yet", code="CANNOT_START")
    try:
        with handler_span(step.action_type, "start", step_id=step.id, actor_id=actor.id):
            next_state = handler.start(ctx) or "IN_PROGRESS"
    except ActionHandlerError as exc:
        raise InvalidStateError(str(exc), code=exc.code) from exc

    previous_assignee = step.assigned_to_id
    _transition(step, next_state, event="started", actor_id=actor.id, at=now, data=ctx.data,
                payload={"previous_assignee_id": previous_assignee} if previous_assignee else None)
    step.assigned_to_id = actor.id
    step.started_at = now
    WorkflowMetrics.record_step_start(step.action_type)
    WorkflowMetrics.record_step_claim(step.action_type)

    instance = step.instance
    _apply_context_updates(instance, ctx)
    if instance.status == "CANCELED":
        instance.status = "ACTIVE"
        instance.cancellation_reason = None
        logger.info("Canceled workflow reactivated by step start",
                    extra={"instance_id": instance.id, "step_id": step.id, "actor_id": actor.id})

    _after_transition(step, actor, "workflow.step.start", {}, snapshot)
    db.session.commit()
    logger.info("Workflow step started",
                extra={"step_id": step.id, "instance_id": instance.id, "actor_id": actor.id})
    return step


# ═══════════════════════════════════════════════════════════════════════════
#  Complete / Fail
# ═══════════════════════════════════════════════════════════════════════════


def _finish(step, actor, ctx, outcome: str, normalized: dict, now, event: str) -> str:
    if outcome not in ("COMPLETED", "FAILED"):
        raise InvalidStateError(f"Handler returned invalid outcome {outcome}", code="INVALID_OUTCOME")
    _transition(step, outcome, event=event, actor_id=actor.id, at=now,
                data=ctx.data, payload=normalized)
    step.completed_at = now
    WorkflowMetrics.record_cycle_time(step.action_type, step.started_at, now)
    _apply_context_updates(step.instance, ctx)
    return outcome


def _fail(step, actor, handler, ctx, reason: str, now, event: str, payload: dict) -> str:
    with handler_span(step.action_type, "fail", step_id=step.id, actor_id=actor.id):
        outcome = handler.fail(ctx, reason)
    _transition(step, outcome, event=event, actor_id=actor.id, at=now,
                data=ctx.data, payload=payload)
    step.completed_at = now
    WorkflowMetrics.record_cycle_time(step.action_type, step.started_at, now)
    _apply_context_updates(step.instance, ctx)
    return outcome


def complete_step(step_id: int, actor, payload: dict | None = None) -> WorkflowInstanceStep:
    """Complete an IN_PROGRESS step; the handler may resolve it to FAILED instead."""
    step = _load_step(step_id, actor)
    snapshot = assert_actor_can_perform(step, actor)
    _assert_in_progress(step, "completed")
    assert_claimable(step, actor)
    now = datetime.now(timezone.utc)
    handler, ctx = _handler_context(step, actor, now)
    try:
        with handler_span(step.action_type, "complete", step_id=step.id, actor_id=actor.id):
            normalized = handler.validate_completion(ctx, payload or {})
            outcome = handler.on_complete(ctx, normalized)
    except ActionHandlerError as exc:
        raise InvalidStateError(str(exc), code=exc.code) from exc

    previous = _take_over(step, actor, now, ctx)
    outcome = _finish(step, actor, ctx, outcome, normalized, now, "completed")

    _after_transition(step, actor, "workflow.step.complete",
                      {"outcome": outcome, "reassigned_from": previous}, snapshot)
    db.session.commit()
    logger.info("Workflow step %s", outcome.lower(),
                extra={"step_id": step.id, "instance_id": step.instance_id, "actor_id": actor.id})
    return step


def fail_step(step_id: int, actor, reason: str | None = None) -> WorkflowInstanceStep:
    step = _load_step(step_id, actor)
    snapshot = assert_actor_can_perform(step, actor)
    _assert_in_progress(step, "failed")
    assert_claimable(step, actor)
    reason = (reason or "").strip() or "Marked as failed"
    now = datetime.now(timezone.utc)
    handler, ctx = _handler_context(step, actor, now)

    previous = _take_over(step, actor, now, ctx)
    _fail(step, actor, handler, ctx, reason, now, "failed", {"reason": reason})

    _after_transition(step, actor, "workflow.step.fail",
                      {"reason": reason, "reassigned_from": previous}, snapshot)
    db.session.commit()
    return step


# ═══════════════════════════════════════════════════════════════════════════
#  Skip (admin)
# ═══════════════════════════════════════════════════════════════════════════


def skip_step(step_id: int, actor, reason: str | None = None) -> WorkflowInstanceStep:
    step = _load_step(step_id, actor)
    if not actor.is_admin:
        raise ForbiddenError("Only admins can skip steps")
    if step.required:
        raise InvalidStateError("Required steps cannot be skipped", code="STEP_REQUIRED")
    if step.action_state not in ("READY", "IN_PROGRESS"):
        raise InvalidStateError(
            f"Step cannot be skipped from state {step.action_state}",
            code="STEP_NOT_SKIPPABLE",
        )

    reason = (reason or "").strip() or "Skipped by admin"
    now = datetime.now(timezone.utc)
    data = dict(step.action_data or {})
    data["skip_reason"] = reason
    _transition(step, "SKIPPED", event="skipped", actor_id=actor.id, at=now,
                data=data, payload={"reason": reason})
    step.completed_at = now

    _after_transition(step, actor, "workflow.step.skip", {"reason": reason})
    db.session.commit()
    return step


# ═══════════════════════════════════════════════════════════════════════════
#  External events
# ═══════════════════════════════════════════════════════════════════════════


def apply_event(step_id: int, actor, event_type: str, payload: dict | None = None) -> WorkflowInstanceStep:
    """
    Route a provider event (signature, payment, upload, automation) to the
    step's handler.  The event type decides COMPLETED or FAILED; the payload
    only supplies outputs (document id, reference, message).  Events the
    handler does not map are rejected.
    """
    if event_type not in STEP_EVENTS:
        raise ValidationError(f"Unknown event type: {event_type}", details={"event_type": event_type})
    payload = payload or {}
    if not isinstance(payload, dict):
        raise ValidationError("Event payload must be an object")

    step = _load_step(step_id, actor)
    snapshot = assert_actor_can_perform(step, actor)
    if step.action_state != "IN_PROGRESS":
        raise InvalidStateError(
            f"Events apply only to in-progress steps (state: {step.action_state})",
            code="STEP_NOT_IN_PROGRESS",
        )
    assert_claimable(step, actor)

    now = datetime.now(timezone.utc)
    handler, ctx = _handler_context(step, actor, now)
    next_state = handler.next_state_on_event(ctx, event_type, payload)
    if next_state is None:
        raise InvalidStateError(
            f"Event {event_type} does not apply to {step.action_type} steps",
            code="EVENT_NOT_APPLICABLE",
        )

    event = f"event:{event_type}"
    if next_state == "COMPLETED":
        try:
            with handler_span(step.action_type, "complete", step_id=step.id, event_type=event_type):
                normalized = handler.event_completion(ctx, event_type, payload)
                handler.on_complete(ctx, normalized)
        except ActionHandlerError as exc:
            raise InvalidStateError(str(exc), code=exc.code) from exc
        previous = _take_over(step, actor, now, ctx)
        outcome = _finish(step, actor, ctx, "COMPLETED", payload, now, event)
    else:
        reason = str(payload.get("reason") or payload.get("message") or event_type)
        previous = _take_over(step, actor, now, ctx)
        outcome = _fail(step, actor, handler, ctx, reason, now, event, payload)

    _after_transition(step, actor, "workflow.step.event", {
        "event_type": event_type,
        "outcome": outcome,
        "reassigned_from": previous,
    }, snapshot)
    db.session.commit()
    logger.info("Workflow step event applied",
                extra={"step_id": step.id, "event_type": event_type, "actor_id": actor.id})
    return step
