"""
Record-level access checks for matters and contacts.

The workflow engine calls these before every state-mutating operation;
the policy itself lives here, not in the engine:

    ADMIN      sees everything
    others     matter owner, task assignee on the matter, or the client's
               portal user; contact owner or the contact's portal user

Inaccessible records raise ``NotFoundError`` so reads do not reveal whether
they exist.  Step operations turn this into 403 in the runtime.
"""

from __future__ import annotations

import logging

from sqlalchemy import or_, select

from app.core.exceptions import NotFoundError
from app.models import db
from app.models.crm import Contact, Matter, MatterTask

logger = logging.getLogger(__name__)


def assert_matter_access(user, matter_id: int) -> Matter:
    """Return the matter if *user* may see it; raise NotFoundError otherwise."""
    matter = db.session.get(Matter, matter_id) if matter_id is not None else None
    if matter is None:
        raise NotFoundError(resource="Matter", resource_id=matter_id)
    if user is None:
        raise NotFoundError(resource="Matter", resource_id=matter_id)
    if user.is_admin or matter.owner_id == user.id:
        return matter
    if matter.client is not None and matter.client.user_id == user.id:
        return matter

    assigned = db.session.execute(
        select(MatterTask.id)
        .where(MatterTask.matter_id == matter.id, MatterTask.assignee_id == user.id)
        .limit(1)
    ).scalar_one_or_none()
    if assigned is not None:
        return matter

    logger.info(
        "Matter access denied",
        extra={"actor_id": user.id, "matter_id": matter_id},
    )
    raise NotFoundError(resource="Matter", resource_id=matter_id)


def assert_contact_access(user, contact_id: int) -> Contact:
    """Return the contact if *user* may see it; raise NotFoundError otherwise."""
    contact = db.session.get(Contact, contact_id) if contact_id is not None else None
    if contact is None or user is None:
        raise NotFoundError(resource="Contact", resource_id=contact_id)
    if user.is_admin or contact.owner_id == user.id or contact.user_id == user.id:
        return contact

    logger.info(
        "Contact access denied",
        extra={"actor_id": user.id, "contact_id": contact_id},
    )
    raise NotFoundError(resource="Contact", resource_id=contact_id)


def accessible_matter_ids(user) -> set[int] | None:
    """Matter ids visible to *user*; None means unrestricted (admin)."""
    if user.is_admin:
        return None
    rows = db.session.execute(
        select(Matter.id)
        .outerjoin(Contact, Matter.client_id == Contact.id)
        .outerjoin(MatterTask, MatterTask.matter_id == Matter.id)
        .where(or_(
            Matter.owner_id == user.id,
            Contact.user_id == user.id,
            MatterTask.assignee_id == user.id,
        ))
    ).scalars().all()
    return set(rows)


def accessible_contact_ids(user) -> set[int] | None:
    """Contact ids visible to *user*; None means unrestricted (admin)."""
    if user.is_admin:
        return None
    rows = db.session.execute(
        select(Contact.id).where(or_(Contact.owner_id == user.id, Contact.user_id == user.id))
    ).scalars().all()
    return set(rows)
