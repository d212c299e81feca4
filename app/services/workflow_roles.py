"""
Workflow Role / Actor Resolver.

Computes, per matter (or contact), which users may act on a step of a
given role scope.  Snapshots are rebuilt on every authorization check
because the team around a matter changes while workflows run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy import select

from app.core.exceptions import ConflictError, ForbiddenError, NotFoundError
from app.models import db
from app.models.auth import User
from app.models.crm import Contact, Matter, MatterTask

logger = logging.getLogger(__name__)


@dataclass
class ActorSnapshot:
    admins: list[int] = field(default_factory=list)
    lawyers: list[int] = field(default_factory=list)
    paralegals: list[int] = field(default_factory=list)
    clients: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "admins": list(self.admins),
            "lawyers": list(self.lawyers),
            "paralegals": list(self.paralegals),
            "clients": list(self.clients),
        }


def _dedupe(ids) -> list[int]:
    seen: dict[int, None] = {}
    for value in ids:
        if value is not None:
            seen.setdefault(value, None)
    return list(seen)


def _active_admin_ids() -> list[int]:
    return list(db.session.execute(
        select(User.id).where(User.role == "ADMIN", User.is_active.is_(True)).order_by(User.id)
    ).scalars())


def load_actor_snapshot(matter_id: int) -> ActorSnapshot:
    """
    Actor snapshot for a matter.

    admins      every active ADMIN user
    lawyers     the matter owner + active LAWYER task assignees on the matter
    paralegals  active PARALEGAL task assignees on the matter
    clients     portal user of the matter's client contact
    """
    matter = db.session.get(Matter, matter_id)
    if matter is None:
        raise NotFoundError(resource="Matter", resource_id=matter_id)

    lawyers: list[int] = []
    paralegals: list[int] = []
    if matter.owner is not None and matter.owner.is_active:
        lawyers.append(matter.owner.id)

    assignees = db.session.execute(
        select(User.id, User.role)
        .join(MatterTask, MatterTask.assignee_id == User.id)
        .where(MatterTask.matter_id == matter.id, User.is_active.is_(True))
        .order_by(MatterTask.id)
    ).all()
    for user_id, role in assignees:
        if role == "LAWYER":
            lawyers.append(user_id)
        elif role == "PARALEGAL":
            paralegals.append(user_id)

    clients = [matter.client.user_id] if matter.client is not None else []

    return ActorSnapshot(
        admins=_active_admin_ids(),
        lawyers=_dedupe(lawyers),
        paralegals=_dedupe(paralegals),
        clients=_dedupe(clients),
    )


def load_contact_actor_snapshot(contact_id: int) -> ActorSnapshot:
    """Actor snapshot for a contact workflow: admins, lawyer owner, portal user."""
    contact = db.session.get(Contact, contact_id)
    if contact is None:
        raise NotFoundError(resource="Contact", resource_id=contact_id)

    lawyers = []
    if contact.owner is not None and contact.owner.is_active and contact.owner.role == "LAWYER":
        lawyers.append(contact.owner.id)

    return ActorSnapshot(
        admins=_active_admin_ids(),
        lawyers=_dedupe(lawyers),
        paralegals=[],
        clients=_dedupe([contact.user_id]),
    )


def load_snapshot_for_instance(instance) -> ActorSnapshot:
    if instance.matter_id is not None:
        return load_actor_snapshot(instance.matter_id)
    if instance.contact_id is not None:
        return load_contact_actor_snapshot(instance.contact_id)
    raise ForbiddenError("Workflow instance must be associated with either a matter or contact")


def resolve_eligible_actor_ids(role_scope: str, snapshot: ActorSnapshot, include_admins: bool = True) -> list[int]:
    """
    User ids eligible for a role scope.

    ADMIN → admins.  LAWYER / PARALEGAL / CLIENT → the matching list, plus
    the admins (admin override) unless ``include_admins`` is False.
    """
    if role_scope == "ADMIN":
        return list(snapshot.admins)
    functional = {
        "LAWYER": snapshot.lawyers,
        "PARALEGAL": snapshot.paralegals,
        "CLIENT": snapshot.clients,
    }.get(role_scope, [])
    if not include_admins:
        return list(functional)
    return _dedupe([*functional, *snapshot.admins])


def can_perform_action(actor, step, snapshot: ActorSnapshot) -> tuple[bool, str | None]:
    """Return (allowed, reason) for *actor* acting on *step*."""
    if actor is None or not actor.is_active:
        return False, "Inactive or unknown actor"
    if actor.role == "ADMIN" and actor.id in snapshot.admins:
        return True, None
    eligible = resolve_eligible_actor_ids(step.role_scope, snapshot)
    if actor.id not in eligible:
        return False, f"Actor is not eligible for {step.role_scope} steps on this workflow"
    return True, None


def assert_actor_can_perform(step, actor) -> ActorSnapshot:
    """
    Raise ForbiddenError unless *actor* is eligible for *step*'s role scope.

    Returns the freshly loaded snapshot for further use (e.g. notifications).
    """
    snapshot = load_snapshot_for_instance(step.instance)
    allowed, reason = can_perform_action(actor, step, snapshot)
    if not allowed:
        logger.info(
            "Workflow permission denied: %s",
            reason,
            extra={"actor_id": getattr(actor, "id", None), "step_id": step.id},
        )
        raise ForbiddenError(reason or "Actor cannot perform this action")
    return snapshot


def assert_claimable(step, actor) -> None:
    """A step held by another user may only be taken over by an admin."""
    if step.assigned_to_id is not None and step.assigned_to_id != actor.id and not actor.is_admin:
        raise ConflictError(
            "WorkflowInstanceStep", "assigned_to_id", step.assigned_to_id,
            message="Step already claimed by another user",
        )
