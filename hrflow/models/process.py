"""
HR Process Engine
Process model: one user's live traversal of a program.

``version`` is mapped as SQLAlchemy's ``version_id_col``: every UPDATE is
guarded by the version read, so two racing submissions cannot both win.
"""

from uuid import uuid4
from datetime import datetime, timezone

from hrflow.core.constants import ProcessStatus
from hrflow.models import db
from hrflow.models.soft_delete import SoftDeleteMixin


class Process(SoftDeleteMixin, db.Model):
    """
    Live instance of a program for one user.

    ``data`` accumulates submissions keyed by stage id; it is replaced
    wholesale on every write. ``required_role_level`` and
    ``stage_flow_snapshot`` are frozen at creation.
    """

    __tablename__ = "processes"
    __table_args__ = (
        db.Index("idx_process_user_program", "user_id", "program_id"),
        db.Index("idx_process_role_level", "required_role_level"),
    )

    id = db.Column(db.Integer, primary_key=True)
    uuid = db.Column(db.String(36), nullable=False, unique=True, default=lambda: str(uuid4()))
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    program_id = db.Column(db.Integer, db.ForeignKey("programs.id", ondelete="CASCADE"), nullable=False, index=True)
    process_type = db.Column(db.String(40), nullable=False, default="generic")
    status = db.Column(db.String(30), nullable=False, default=ProcessStatus.IN_PROGRESS.value)
    current_stage_id = db.Column(db.String(64), nullable=True)
    data = db.Column(db.JSON, nullable=False, default=dict)

    required_role_level = db.Column(db.Integer, nullable=False, default=0)
    stage_flow_snapshot = db.Column(db.JSON, nullable=True)

    department_id = db.Column(
        db.Integer, db.ForeignKey("departments.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    created_for = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
        comment="Set when a manager created the process on behalf of a report",
    )

    version = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        index=True,
    )

    __mapper_args__ = {"version_id_col": version}

    def to_dict(self):
        return {
            "id": self.id,
            "uuid": self.uuid,
            "user_id": self.user_id,
            "program_id": self.program_id,
            "process_type": self.process_type,
            "status": self.status,
            "current_stage_id": self.current_stage_id,
            "data": dict(self.data or {}),
            "required_role_level": self.required_role_level,
            "stage_flow_snapshot": self.stage_flow_snapshot,
            "department_id": self.department_id,
            "created_for": self.created_for,
            "version": self.version,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Process {self.id}: user={self.user_id} program={self.program_id} [{self.status}]>"
