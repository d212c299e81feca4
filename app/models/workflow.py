"""
Legal Workflow Engine
Workflow domain model.

Models:
    - WorkflowTemplate: named, versioned process definition (one active version per name)
    - WorkflowTemplateStep: ordered step definition with action type + role scope
    - WorkflowTemplateDependency: directed edge between two template steps
    - WorkflowInstance: one run of a pinned template version against a matter or contact
    - WorkflowInstanceStep: frozen copy of a template step plus its runtime state
    - WorkflowInstanceDependency: frozen copy of a template edge (instance step ids)

State machine (WorkflowInstanceStep.action_state):
    PENDING → READY → IN_PROGRESS → COMPLETED | FAILED
    PENDING | READY | IN_PROGRESS → SKIPPED
    SKIPPED → READY (restart of a cancelled step only)
"""

from datetime import datetime, timezone

from app.core.exceptions import InvalidStateError
from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

ACTION_TYPES = (
    "APPROVAL",
    "SIGNATURE",
    "REQUEST_DOC",
    "PAYMENT",
    "TASK",
    "CHECKLIST",
    "WRITE_TEXT",
    "POPULATE_QUESTIONNAIRE",
    "AUTOMATION_EMAIL",
    "AUTOMATION_WEBHOOK",
)

ROLE_SCOPES = ("ADMIN", "LAWYER", "PARALEGAL", "CLIENT")

ACTION_STATES = ("PENDING", "READY", "IN_PROGRESS", "COMPLETED", "SKIPPED", "FAILED")
TERMINAL_STATES = {"COMPLETED", "SKIPPED", "FAILED"}
SATISFYING_STATES = {"COMPLETED", "SKIPPED"}

INSTANCE_STATUSES = ("ACTIVE", "COMPLETED", "CANCELED")

DEPENDENCY_TYPES = ("DEPENDS_ON", "TRIGGERS", "IF_TRUE_BRANCH", "IF_FALSE_BRANCH")
DEPENDENCY_LOGICS = ("ALL", "ANY", "CUSTOM")
CONDITION_TYPES = ("ALWAYS", "IF_TRUE", "IF_FALSE", "SWITCH")

NOTIFICATION_CHANNELS = ("EMAIL", "SMS", "PUSH")
NOTIFICATION_TRIGGERS = ("ON_READY", "ON_COMPLETED", "ON_FAILED")
NOTIFICATION_SEND_STRATEGIES = ("IMMEDIATE", "DELAYED")


def _in_clause(column, values):
    quoted = ",".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


def _iso(value):
    return value.isoformat() if value else None


# ── Lifecycle Transition Guards ──────────────────────────────────────────────

STEP_TRANSITIONS = {
    "PENDING": ["READY", "SKIPPED"],
    "READY": ["IN_PROGRESS", "SKIPPED"],
    "IN_PROGRESS": ["COMPLETED", "FAILED", "SKIPPED"],
    "SKIPPED": ["READY"],
    "COMPLETED": [],
    "FAILED": [],
}


def validate_step_transition(old_state, new_state):
    """Return True if old_state → new_state is a legal step transition."""
    return new_state in STEP_TRANSITIONS.get(old_state, [])


# ═════════════════════════════════════════════════════════════════════════════
# 1. WorkflowTemplate
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowTemplate(db.Model):
    """
    Versioned workflow definition.

    Every edit produces a new row (same name, version + 1).  Only the
    ``is_active`` flag and ``deleted_at`` change after creation.
    """

    __tablename__ = "workflow_templates"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False, index=True)
    description = db.Column(db.Text, default="")
    version = db.Column(db.Integer, nullable=False, default=1)
    is_active = db.Column(db.Boolean, nullable=False, default=False)
    context_schema = db.Column(
        db.JSON, nullable=True,
        comment="Optional description of the context keys the template expects",
    )
    created_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True, default=None, index=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # ── Constraints ──────────────────────────────────────────────────────
    __table_args__ = (
        db.UniqueConstraint("name", "version", name="uq_workflow_template_name_version"),
        db.Index("ix_workflow_templates_name_active", "name", "is_active"),
    )

    # ── Relationships ────────────────────────────────────────────────────
    steps = db.relationship(
        "WorkflowTemplateStep",
        back_populates="template",
        order_by="WorkflowTemplateStep.order",
        cascade="all, delete-orphan",
    )
    dependencies = db.relationship(
        "WorkflowTemplateDependency",
        back_populates="template",
        cascade="all, delete-orphan",
    )

    @property
    def is_deleted(self):
        return self.deleted_at is not None

    def soft_delete(self):
        """Mark deleted; a deleted template can never stay active."""
        self.deleted_at = datetime.now(timezone.utc)
        self.is_active = False

    @classmethod
    def query_active(cls):
        """Query excluding soft-deleted templates."""
        return cls.query.filter(cls.deleted_at.is_(None))

    def to_dict(self, include_steps=False):
        result = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "version": self.version,
            "is_active": self.is_active,
            "context_schema": self.context_schema,
            "created_by_id": self.created_by_id,
            "step_count": len(self.steps),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_steps:
            result["steps"] = [s.to_dict() for s in self.steps]
            result["dependencies"] = [d.to_dict() for d in self.dependencies]
        return result

    def __repr__(self):
        return f"<WorkflowTemplate {self.id}: {self.name} v{self.version}{' *' if self.is_active else ''}>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. WorkflowTemplateStep
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowTemplateStep(db.Model):
    """Step definition. ``action_config`` is interpreted by the action handler."""

    __tablename__ = "workflow_template_steps"

    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(
        db.Integer, db.ForeignKey("workflow_templates.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    order = db.Column(db.Integer, nullable=False, default=0)
    title = db.Column(db.String(300), nullable=False)
    action_type = db.Column(db.String(40), nullable=False)
    role_scope = db.Column(db.String(20), nullable=False)
    required = db.Column(db.Boolean, nullable=False, default=True)
    action_config = db.Column(db.JSON, nullable=False, default=dict)
    notification_policies = db.Column(db.JSON, nullable=False, default=list)

    # Canvas placement, presentation only
    position_x = db.Column(db.Float, nullable=True)
    position_y = db.Column(db.Float, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    # ── Constraints ──────────────────────────────────────────────────────
    __table_args__ = (
        db.UniqueConstraint("template_id", "order", name="uq_workflow_template_step_order"),
        db.CheckConstraint(_in_clause("action_type", ACTION_TYPES), name="ck_wts_action_type"),
        db.CheckConstraint(_in_clause("role_scope", ROLE_SCOPES), name="ck_wts_role_scope"),
    )

    template = db.relationship("WorkflowTemplate", back_populates="steps")

    def to_dict(self):
        return {
            "id": self.id,
            "template_id": self.template_id,
            "order": self.order,
            "title": self.title,
            "action_type": self.action_type,
            "role_scope": self.role_scope,
            "required": self.required,
            "action_config": self.action_config or {},
            "notification_policies": self.notification_policies or [],
            "position_x": self.position_x,
            "position_y": self.position_y,
        }

    def __repr__(self):
        return f"<WorkflowTemplateStep {self.id}: #{self.order} {self.title[:40]}>"


# ═════════════════════════════════════════════════════════════════════════════
# 3. WorkflowTemplateDependency
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowTemplateDependency(db.Model):
    """
    Source → target edge between template steps.

    ``dependency_logic`` says how the target combines its incoming edges;
    ``condition_type`` / ``condition_config`` decide whether this edge fires.
    """

    __tablename__ = "workflow_template_dependencies"

    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(
        db.Integer, db.ForeignKey("workflow_templates.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    source_step_id = db.Column(
        db.Integer, db.ForeignKey("workflow_template_steps.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    target_step_id = db.Column(
        db.Integer, db.ForeignKey("workflow_template_steps.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    dependency_type = db.Column(db.String(20), nullable=False, default="DEPENDS_ON")
    dependency_logic = db.Column(db.String(10), nullable=False, default="ALL")
    condition_type = db.Column(db.String(10), nullable=True)
    condition_config = db.Column(db.JSON, nullable=True)

    # ── Constraints ──────────────────────────────────────────────────────
    __table_args__ = (
        db.UniqueConstraint(
            "template_id", "source_step_id", "target_step_id",
            name="uq_workflow_template_dep",
        ),
        db.CheckConstraint(
            "source_step_id != target_step_id",
            name="ck_wtd_no_self_loop",
        ),
    )

    template = db.relationship("WorkflowTemplate", back_populates="dependencies")

    def to_dict(self):
        return {
            "id": self.id,
            "source_step_id": self.source_step_id,
            "target_step_id": self.target_step_id,
            "dependency_type": self.dependency_type,
            "dependency_logic": self.dependency_logic,
            "condition_type": self.condition_type,
            "condition_config": self.condition_config,
        }

    def __repr__(self):
        return f"<WorkflowTemplateDependency {self.source_step_id} → {self.target_step_id}>"


# ═════════════════════════════════════════════════════════════════════════════
# 4. WorkflowInstance
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowInstance(db.Model):
    """
    One execution of a template version.

    Bound to exactly one of matter / contact.  ``context_data`` is the
    key/value bag accumulated while steps complete.
    """

    __tablename__ = "workflow_instances"

    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(
        db.Integer, db.ForeignKey("workflow_templates.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    template_version = db.Column(db.Integer, nullable=False)
    matter_id = db.Column(
        db.Integer, db.ForeignKey("matters.id", ondelete="CASCADE"),
        nullable=True, index=True,
    )
    contact_id = db.Column(
        db.Integer, db.ForeignKey("contacts.id", ondelete="CASCADE"),
        nullable=True, index=True,
    )
    status = db.Column(db.String(20), nullable=False, default="ACTIVE")
    context_data = db.Column(db.JSON, nullable=False, default=dict)
    cancellation_reason = db.Column(db.String(500), nullable=True)
    created_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # ── Constraints ──────────────────────────────────────────────────────
    __table_args__ = (
        db.CheckConstraint(_in_clause("status", INSTANCE_STATUSES), name="ck_wi_status"),
        db.CheckConstraint(
            "(matter_id IS NOT NULL AND contact_id IS NULL) OR "
            "(matter_id IS NULL AND contact_id IS NOT NULL)",
            name="ck_wi_single_subject",
        ),
        db.Index("ix_workflow_instances_matter_status", "matter_id", "status"),
    )

    # ── Relationships ────────────────────────────────────────────────────
    template = db.relationship("WorkflowTemplate")
    steps = db.relationship(
        "WorkflowInstanceStep",
        back_populates="instance",
        order_by="WorkflowInstanceStep.order",
        cascade="all, delete-orphan",
    )
    dependencies = db.relationship(
        "WorkflowInstanceDependency",
        back_populates="instance",
        cascade="all, delete-orphan",
    )

    def to_dict(self, include_steps=False):
        result = {
            "id": self.id,
            "template_id": self.template_id,
            "template_name": self.template.name if self.template else None,
            "template_version": self.template_version,
            "matter_id": self.matter_id,
            "contact_id": self.contact_id,
            "status": self.status,
            "context": self.context_data or {},
            "cancellation_reason": self.cancellation_reason,
            "created_by_id": self.created_by_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_steps:
            result["steps"] = [s.to_dict() for s in self.steps]
            result["dependencies"] = [d.to_dict() for d in self.dependencies]
        return result

    def __repr__(self):
        return f"<WorkflowInstance {self.id}: template={self.template_id} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 5. WorkflowInstanceStep
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowInstanceStep(db.Model):
    """
    Runtime copy of a template step.

    ``action_data`` = {"config": <frozen action_config>, "history": [...], ...handler fields}.
    """

    __tablename__ = "workflow_instance_steps"

    id = db.Column(db.Integer, primary_key=True)
    instance_id = db.Column(
        db.Integer, db.ForeignKey("workflow_instances.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    template_step_id = db.Column(
        db.Integer, db.ForeignKey("workflow_template_steps.id", ondelete="SET NULL"),
        nullable=True,
    )
    order = db.Column(db.Integer, nullable=False, default=0)
    title = db.Column(db.String(300), nullable=False)
    action_type = db.Column(db.String(40), nullable=False)
    role_scope = db.Column(db.String(20), nullable=False)
    required = db.Column(db.Boolean, nullable=False, default=True)
    action_state = db.Column(db.String(20), nullable=False, default="PENDING")
    action_data = db.Column(db.JSON, nullable=False, default=dict)
    notification_policies = db.Column(db.JSON, nullable=False, default=list)
    assigned_to_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # ── Constraints ──────────────────────────────────────────────────────
    __table_args__ = (
        db.UniqueConstraint("instance_id", "order", name="uq_workflow_instance_step_order"),
        db.CheckConstraint(_in_clause("action_state", ACTION_STATES), name="ck_wis_action_state"),
        db.Index("ix_workflow_instance_steps_state", "instance_id", "action_state"),
    )

    instance = db.relationship("WorkflowInstance", back_populates="steps")

    @property
    def config(self) -> dict:
        return (self.action_data or {}).get("config") or {}

    @property
    def is_bypassed(self) -> bool:
        return bool((self.action_data or {}).get("bypassed"))

    def record_transition(self, new_state, *, event, actor_id=None, payload=None, at=None, data=None):
        """
        Move to *new_state* and append a history entry.

        ``data`` replaces ``action_data`` (before the history append) when
        handlers produced a new working copy.  Always assigns a fresh dict so
        the JSON column is flagged dirty.
        """
        if not validate_step_transition(self.action_state, new_state):
            raise InvalidStateError(
                f"Cannot move step from {self.action_state} to {new_state}",
                code="INVALID_TRANSITION",
            )
        self.append_history(event, actor_id=actor_id, payload=payload, at=at, data=data)
        self.action_state = new_state

    def append_history(self, event, *, actor_id=None, payload=None, at=None, data=None):
        at = at or datetime.now(timezone.utc)
        action_data = dict(data if data is not None else (self.action_data or {}))
        history = list(action_data.get("history") or [])
        history.append({
            "at": at.isoformat(),
            "by": actor_id,
            "event": event,
            "payload": payload or {},
        })
        action_data["history"] = history
        self.action_data = action_data

    def to_dict(self):
        return {
            "id": self.id,
            "instance_id": self.instance_id,
            "template_step_id": self.template_step_id,
            "order": self.order,
            "title": self.title,
            "action_type": self.action_type,
            "role_scope": self.role_scope,
            "required": self.required,
            "action_state": self.action_state,
            "action_data": self.action_data or {},
            "notification_policies": self.notification_policies or [],
            "assigned_to_id": self.assigned_to_id,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<WorkflowInstanceStep {self.id}: #{self.order} {self.title[:40]} [{self.action_state}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 6. WorkflowInstanceDependency
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowInstanceDependency(db.Model):
    """Frozen copy of a template edge, rewritten to instance step ids."""

    __tablename__ = "workflow_instance_dependencies"

    id = db.Column(db.Integer, primary_key=True)
    instance_id = db.Column(
        db.Integer, db.ForeignKey("workflow_instances.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    source_step_id = db.Column(
        db.Integer, db.ForeignKey("workflow_instance_steps.id", ondelete="CASCADE"),
        nullable=False,
    )
    target_step_id = db.Column(
        db.Integer, db.ForeignKey("workflow_instance_steps.id", ondelete="CASCADE"),
        nullable=False,
    )
    dependency_type = db.Column(db.String(20), nullable=False, default="DEPENDS_ON")
    dependency_logic = db.Column(db.String(10), nullable=False, default="ALL")
    condition_type = db.Column(db.String(10), nullable=True)
    condition_config = db.Column(db.JSON, nullable=True)

    # ── Constraints ──────────────────────────────────────────────────────
    __table_args__ = (
        db.UniqueConstraint(
            "instance_id", "source_step_id", "target_step_id",
            name="uq_workflow_instance_dep",
        ),
        db.CheckConstraint(
            "source_step_id != target_step_id",
            name="ck_wid_no_self_loop",
        ),
    )

    instance = db.relationship("WorkflowInstance", back_populates="dependencies")

    def to_dict(self):
        return {
            "id": self.id,
            "source_step_id": self.source_step_id,
            "target_step_id": self.target_step_id,
            "dependency_type": self.dependency_type,
            "dependency_logic": self.dependency_logic,
            "condition_type": self.condition_type,
            "condition_config": self.condition_config,
        }

    def __repr__(self):
        return f"<WorkflowInstanceDependency {self.source_step_id} → {self.target_step_id}>"
