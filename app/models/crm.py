"""
Legal Workflow Engine
CRM domain model — the practice entities the workflow engine hangs off.

Models:
    - Contact: person or company, optionally linked to a client portal user
    - Matter: a legal case owned by a lawyer, optionally linked to a client contact
    - MatterTask: unit of work on a matter (assignees feed the actor snapshot)
    - CalendarEvent: hearing / meeting with an optional e-mail reminder
"""

from datetime import datetime, timezone

from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

MATTER_STATUSES = {"OPEN", "ON_HOLD", "CLOSED"}
TASK_STATUSES = {"OPEN", "IN_PROGRESS", "COMPLETED", "CANCELED"}
TASK_PRIORITIES = {"LOW", "MEDIUM", "HIGH"}


def _iso(value):
    return value.isoformat() if value else None


# ═════════════════════════════════════════════════════════════════════════════
# 1. Contact
# ═════════════════════════════════════════════════════════════════════════════


class Contact(db.Model):
    """Client or counterparty. ``user_id`` is the client's portal login, if any."""

    __tablename__ = "contacts"

    id = db.Column(db.Integer, primary_key=True)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), default="")
    email = db.Column(db.String(200), nullable=True)
    owner_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True, index=True, comment="Client portal user",
    )

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    owner = db.relationship("User", foreign_keys=[owner_id])
    user = db.relationship("User", foreign_keys=[user_id])

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name or ''}".strip()

    def to_dict(self):
        return {
            "id": self.id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "owner_id": self.owner_id,
            "user_id": self.user_id,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<Contact {self.id}: {self.full_name}>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. Matter
# ═════════════════════════════════════════════════════════════════════════════


class Matter(db.Model):
    """A legal case. Owner is the responsible lawyer."""

    __tablename__ = "matters"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(300), nullable=False)
    status = db.Column(db.String(20), default="OPEN")
    owner_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    client_id = db.Column(
        db.Integer, db.ForeignKey("contacts.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    owner = db.relationship("User", foreign_keys=[owner_id])
    client = db.relationship("Contact", foreign_keys=[client_id])
    tasks = db.relationship(
        "MatterTask", back_populates="matter", lazy="dynamic",
        cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "status": self.status,
            "owner_id": self.owner_id,
            "client_id": self.client_id,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<Matter {self.id}: {self.title[:40]}>"


# ═════════════════════════════════════════════════════════════════════════════
# 3. MatterTask
# ═════════════════════════════════════════════════════════════════════════════


class MatterTask(db.Model):
    """
    Work item on a matter.

    Assignees with LAWYER / PARALEGAL role join the matter's workflow
    actor snapshot. ``reminder_notified`` is flipped by the task reminder job.
    """

    __tablename__ = "matter_tasks"

    id = db.Column(db.Integer, primary_key=True)
    matter_id = db.Column(
        db.Integer, db.ForeignKey("matters.id", ondelete="CASCADE"),
        nullable=True, index=True,
    )
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    assignee_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    priority = db.Column(db.String(10), default="MEDIUM")
    status = db.Column(db.String(20), default="OPEN")
    due_at = db.Column(db.DateTime(timezone=True), nullable=True)

    reminder_notified = db.Column(db.Boolean, default=False, nullable=False)
    reminder_notified_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.CheckConstraint(
            "status IN ('OPEN','IN_PROGRESS','COMPLETED','CANCELED')",
            name="ck_matter_task_status",
        ),
        db.Index("ix_matter_tasks_reminder", "reminder_notified", "due_at"),
    )

    matter = db.relationship("Matter", back_populates="tasks")
    assignee = db.relationship("User", foreign_keys=[assignee_id])

    def to_dict(self):
        return {
            "id": self.id,
            "matter_id": self.matter_id,
            "title": self.title,
            "description": self.description,
            "assignee_id": self.assignee_id,
            "priority": self.priority,
            "status": self.status,
            "due_at": _iso(self.due_at),
            "reminder_notified": self.reminder_notified,
            "reminder_notified_at": _iso(self.reminder_notified_at),
        }

    def __repr__(self):
        return f"<MatterTask {self.id}: {self.title[:40]} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 4. CalendarEvent
# ═════════════════════════════════════════════════════════════════════════════


class CalendarEvent(db.Model):
    """Calendar entry. A reminder e-mail goes out ``reminder_minutes`` before start."""

    __tablename__ = "calendar_events"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(300), nullable=False)
    location = db.Column(db.String(300), nullable=True)
    start_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    end_at = db.Column(db.DateTime(timezone=True), nullable=False)
    organizer_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    matter_id = db.Column(
        db.Integer, db.ForeignKey("matters.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    attendees = db.Column(db.JSON, default=list, comment="[{email, name}]")
    reminder_minutes = db.Column(db.Integer, default=30, nullable=False)
    reminder_sent_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    organizer = db.relationship("User", foreign_keys=[organizer_id])
    matter = db.relationship("Matter", foreign_keys=[matter_id])

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "location": self.location,
            "start_at": _iso(self.start_at),
            "end_at": _iso(self.end_at),
            "organizer_id": self.organizer_id,
            "matter_id": self.matter_id,
            "attendees": self.attendees or [],
            "reminder_minutes": self.reminder_minutes,
            "reminder_sent_at": _iso(self.reminder_sent_at),
        }

    def __repr__(self):
        return f"<CalendarEvent {self.id}: {self.title[:40]}>"
