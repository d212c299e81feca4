"""
Legal Workflow Engine
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for workflow lifecycle events.
"""

import json
from datetime import UTC, datetime

from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {"workflow", "workflow_template", "workflow_step"}

AUDIT_ACTIONS = {
    # Template versioning
    "workflow.template.create",
    "workflow.template.publish",
    "workflow.template.delete",
    # Instance lifecycle
    "workflow.instance.create",
    "workflow.instance.cancel",
    "workflow.instance.delete",
    "workflow.context.update",
    # Step lifecycle
    "workflow.step.start",
    "workflow.step.complete",
    "workflow.step.fail",
    "workflow.step.skip",
    "workflow.step.event",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for every workflow lifecycle event.

    One row per action.  ``diff_json`` carries the event metadata
    (step id, action type, matter id, ...).
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="workflow | workflow_template | workflow_step",
    )
    entity_id = db.Column(
        db.String(36), nullable=False,
        comment="PK of the referenced entity as string",
    )

    # What happened
    action = db.Column(
        db.String(60), nullable=False,
        comment="workflow.step.start | workflow.template.publish | …",
    )
    actor_user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
        comment="Acting user (NULL for system jobs)",
    )

    diff_json = db.Column(db.Text, default="{}", comment="JSON metadata for the event")

    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def metadata_dict(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor_user_id": self.actor_user_id,
            "metadata": self.metadata_dict,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id,
    action: str,
    actor_user_id: int | None = None,
    metadata: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) AuditLog instance.
    """
    log = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor_user_id=actor_user_id,
        diff_json=json.dumps(metadata or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
