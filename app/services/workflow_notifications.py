"""
Workflow notifications — fire-and-forget side effects of step transitions.

    notify_step_ready   in-app + email to the users eligible for a READY step,
                        then the step's ON_READY policies
    notify_step_event   ON_COMPLETED / ON_FAILED policies

Every dispatch runs inside a SAVEPOINT; failures are logged and rolled back
to the savepoint, never propagated to the transition that caused them.
Disabled entirely when ``WORKFLOW_NOTIFICATIONS_ENABLED`` is false.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from flask import current_app

from app.models import db
from app.models.auth import User
from app.models.workflow import (
    NOTIFICATION_CHANNELS,
    NOTIFICATION_SEND_STRATEGIES,
    NOTIFICATION_TRIGGERS,
    ROLE_SCOPES,
)
from app.services.email_service import EmailService
from app.services.notification import NotificationService
from app.services.workflow_metrics import WorkflowMetrics
from app.services.workflow_roles import load_snapshot_for_instance, resolve_eligible_actor_ids

logger = logging.getLogger(__name__)

MAX_DELAY_MINUTES = 10080


def _enabled() -> bool:
    return bool(current_app.config.get("WORKFLOW_NOTIFICATIONS_ENABLED", True))


def _guarded(label: str, step, fn, *args) -> None:
    try:
        with db.session.begin_nested():
            fn(*args)
    except Exception:
        WorkflowMetrics.record_notification(step.action_type, False)
        logger.exception(
            "Workflow notification failed: %s",
            label,
            extra={"step_id": step.id, "instance_id": step.instance_id},
        )
    else:
        WorkflowMetrics.record_notification(step.action_type, True)


def _render_context(step, event: str | None = None) -> dict:
    instance = step.instance
    scalars = {
        k: v for k, v in (instance.context_data or {}).items()
        if isinstance(v, (str, int, float, bool))
    }
    return {
        **scalars,
        "step_title": step.title,
        "action_type": step.action_type,
        "role_scope": step.role_scope,
        "workflow_name": instance.template.name if instance.template else "",
        "instance_id": instance.id,
        "matter_id": instance.matter_id or "",
        "contact_id": instance.contact_id or "",
        "event": event or "",
    }


def _step_recipients(step, snapshot) -> list[User]:
    ids = resolve_eligible_actor_ids(step.role_scope, snapshot, include_admins=False)
    if not ids:
        ids = list(snapshot.admins)
    if not ids:
        return []
    return User.query.filter(User.id.in_(ids), User.is_active.is_(True)).order_by(User.id).all()


# ═══════════════════════════════════════════════════════════════════════════
#  Public API
# ═══════════════════════════════════════════════════════════════════════════


def notify_step_ready(step, snapshot=None) -> None:
    if not _enabled():
        return
    _guarded("step_ready", step, _send_step_ready, step, snapshot)
    _guarded("policies:ON_READY", step, _dispatch_policies, step, "ON_READY", snapshot)


def notify_step_event(step, trigger: str, snapshot=None) -> None:
    if not _enabled() or trigger not in NOTIFICATION_TRIGGERS:
        return
    _guarded(f"policies:{trigger}", step, _dispatch_policies, step, trigger, snapshot)


# ═══════════════════════════════════════════════════════════════════════════
#  Dispatch
# ═══════════════════════════════════════════════════════════════════════════


def _send_step_ready(step, snapshot) -> None:
    snapshot = snapshot or load_snapshot_for_instance(step.instance)
    users = _step_recipients(step, snapshot)
    if not users:
        logger.info("No recipients for ready step", extra={"step_id": step.id})
        return

    context = _render_context(step, "ready")
    NotificationService.broadcast(
        recipient_ids=[u.id for u in users],
        title=f"Step ready: {step.title}",
        message=f"{context['workflow_name']}: {step.action_type.replace('_', ' ').title()}",
        category="workflow",
        entity_type="workflow_step",
        entity_id=step.id,
    )
    for user in users:
        EmailService.send_from_template(
            to_email=user.email,
            to_name=user.name,
            template_name="workflow_step_ready",
            context=context,
            category="workflow",
            entity_type="workflow_step",
            entity_id=step.id,
        )


def _resolve_policy_recipients(entries, snapshot) -> tuple[list[User], list[str]]:
    """Role scopes resolve to users; anything with an '@' is a literal address."""
    user_ids: list[int] = []
    emails: list[str] = []
    for entry in entries or []:
        if entry in ROLE_SCOPES:
            user_ids.extend(resolve_eligible_actor_ids(entry, snapshot, include_admins=False))
        elif isinstance(entry, str) and "@" in entry:
            emails.append(entry)
    users = []
    if user_ids:
        users = (
            User.query
            .filter(User.id.in_(set(user_ids)), User.is_active.is_(True))
            .order_by(User.id)
            .all()
        )
    return users, emails


def _dispatch_policies(step, trigger: str, snapshot) -> None:
    policies = [p for p in (step.notification_policies or []) if trigger in (p.get("triggers") or [])]
    if not policies:
        return
    snapshot = snapshot or load_snapshot_for_instance(step.instance)
    now = datetime.now(timezone.utc)
    context = _render_context(step, trigger.removeprefix("ON_").lower())

    for policy in policies:
        users, emails = _resolve_policy_recipients(policy.get("recipients"), snapshot)
        if not users and not emails:
            users = _step_recipients(step, snapshot)

        channel = policy.get("channel", "EMAIL")
        if channel == "EMAIL":
            _send_policy_email(step, policy, users, emails, context, now)
        elif channel == "PUSH":
            NotificationService.broadcast(
                recipient_ids=[u.id for u in users],
                title=EmailService.render(policy.get("subject_template") or "{step_title}: {event}", context),
                message=EmailService.render(policy.get("body_template") or "", context),
                category="workflow",
                entity_type="workflow_step",
                entity_id=step.id,
            )
        else:
            logger.info(
                "No gateway configured for channel %s; notification dropped",
                channel,
                extra={"step_id": step.id},
            )


def _send_policy_email(step, policy, users, emails, context, now) -> None:
    send_after = None
    if policy.get("send_strategy") == "DELAYED" and policy.get("delay_minutes"):
        send_after = now + timedelta(minutes=int(policy["delay_minutes"]))

    addresses = [(u.email, u.name) for u in users] + [(e, None) for e in emails]
    cc = [(e, None) for e in policy.get("cc") or []]
    seen = set()
    for address, name in addresses + cc:
        if address in seen:
            continue
        seen.add(address)
        if policy.get("subject_template") or policy.get("body_template"):
            EmailService.send(
                to_email=address,
                to_name=name,
                subject=EmailService.render(policy.get("subject_template") or "{step_title}: {event}", context),
                html_body=EmailService.render(policy.get("body_template") or "", context),
                template_name=None,
                category="workflow",
                entity_type="workflow_step",
                entity_id=step.id,
                send_after=send_after,
            )
        else:
            template = EmailService.get_template("workflow_step_update")
            EmailService.send(
                to_email=address,
                to_name=name,
                subject=EmailService.render(template["subject"], context),
                html_body=EmailService.render(template["html"], context),
                template_name="workflow_step_update",
                category="workflow",
                entity_type="workflow_step",
                entity_id=step.id,
                send_after=send_after,
            )


# ═══════════════════════════════════════════════════════════════════════════
#  Authoring validation
# ═══════════════════════════════════════════════════════════════════════════


def validate_notification_policies(policies) -> list[str]:
    """Return error strings for a step's ``notification_policies`` list."""
    if policies is None:
        return []
    if not isinstance(policies, list):
        return ["notification_policies must be a list"]

    errors = []
    for index, policy in enumerate(policies):
        where = f"notification_policies[{index}]"
        if not isinstance(policy, dict):
            errors.append(f"{where}: must be an object")
            continue
        if policy.get("channel", "EMAIL") not in NOTIFICATION_CHANNELS:
            errors.append(f"{where}: invalid channel '{policy.get('channel')}'")
        triggers = policy.get("triggers") or []
        if not isinstance(triggers, list) or not triggers or any(t not in NOTIFICATION_TRIGGERS for t in triggers):
            errors.append(f"{where}: triggers must be a non-empty subset of {', '.join(NOTIFICATION_TRIGGERS)}")
        recipients = policy.get("recipients") or []
        if not isinstance(recipients, list) or not all(isinstance(r, str) for r in recipients):
            errors.append(f"{where}: recipients must be a list of role scopes or email addresses")
        strategy = policy.get("send_strategy", "IMMEDIATE")
        if strategy not in NOTIFICATION_SEND_STRATEGIES:
            errors.append(f"{where}: invalid send_strategy '{strategy}'")
        delay = policy.get("delay_minutes")
        if delay is not None and (
            not isinstance(delay, int) or isinstance(delay, bool) or not 0 < delay <= MAX_DELAY_MINUTES
        ):
            errors.append(f"{where}: delay_minutes must be between 1 and {MAX_DELAY_MINUTES}")
        if strategy == "DELAYED" and delay is None:
            errors.append(f"{where}: delay_minutes is required for DELAYED policies")
    return errors
