"""
Auth Models — platform users and their practice role.

The workflow engine only needs identity and role:
    - ADMIN      firm administrators (global override on every workflow step)
    - LAWYER     matter owners and lawyer task assignees
    - PARALEGAL  paralegal task assignees
    - CLIENT     portal users linked to a contact
"""

from datetime import datetime, timezone

from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

USER_ROLES = {"ADMIN", "LAWYER", "PARALEGAL", "CLIENT"}


# ═══════════════════════════════════════════════════════════════
# 1. USERS
# ═══════════════════════════════════════════════════════════════
class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(200), nullable=False, unique=True)
    name = db.Column(db.String(200))
    role = db.Column(db.String(20), nullable=False, default="LAWYER")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.CheckConstraint(
            "role IN ('ADMIN','LAWYER','PARALEGAL','CLIENT')",
            name="ck_users_role",
        ),
        db.Index("ix_users_role_active", "role", "is_active"),
    )

    @property
    def is_admin(self):
        return self.role == "ADMIN"

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.email} [{self.role}]>"
