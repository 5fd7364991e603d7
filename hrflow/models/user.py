"""
HR Process Engine
Identity domain models.

Models:
    - User: person moving through programs; carries the system role and an
      HR profile document (status, positions, custom fields).
    - Department: organisational unit referenced by positions and processes.
    - ManagerAssignment: reporting line between two users in a context.
"""

from datetime import datetime, timezone

from hrflow.core.constants import DEFAULT_HR_STATUS, SystemRole
from hrflow.models import db
from hrflow.models.soft_delete import SoftDeleteMixin


def default_profile() -> dict:
    return {"positions": [], "status": DEFAULT_HR_STATUS}


class User(SoftDeleteMixin, db.Model):
    """
    A person known to the engine.

    ``profile`` is stored as a JSON document and always replaced wholesale
    so that SQLAlchemy detects the change:

        {
            "status": "candidate",
            "positions": [{"departmentId", "title", "isPrimary", "startDate"}],
            "joinDate": ..., "exitDate": ..., "privacyLevel": ...,
            "customFields": {...},
        }
    """

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False, unique=True, index=True)
    name = db.Column(db.String(150), nullable=True)
    system_role = db.Column(
        db.String(20), nullable=False, default=SystemRole.GUEST.value,
        comment="guest | member | manager | lead | admin",
    )
    profile = db.Column(db.JSON, nullable=False, default=default_profile)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    @property
    def hr_status(self) -> str:
        return (self.profile or {}).get("status", DEFAULT_HR_STATUS)

    @property
    def department_ids(self) -> list[str]:
        """Department ids attached to the user's profile positions, as strings."""
        positions = (self.profile or {}).get("positions") or []
        return [str(p["departmentId"]) for p in positions if p.get("departmentId") is not None]

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "system_role": self.system_role,
            "profile": self.profile or default_profile(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.email} ({self.system_role})>"


class Department(db.Model):
    __tablename__ = "departments"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {"id": self.id, "name": self.name}

    def __repr__(self):
        return f"<Department {self.id}: {self.name}>"


class ManagerAssignment(SoftDeleteMixin, db.Model):
    """Reporting line: ``manager_id`` manages ``user_id`` within ``context``."""

    __tablename__ = "manager_assignments"
    __table_args__ = (
        db.Index("idx_manager_assignment_lookup", "user_id", "manager_id", "context"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    manager_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    context = db.Column(db.String(50), nullable=False, default="direct")
    is_primary = db.Column(db.Boolean, nullable=False, default=True)
    start_date = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "manager_id": self.manager_id,
            "context": self.context,
            "is_primary": self.is_primary,
            "start_date": self.start_date.isoformat() if self.start_date else None,
        }

    def __repr__(self):
        return f"<ManagerAssignment {self.manager_id} -> {self.user_id} [{self.context}]>"
