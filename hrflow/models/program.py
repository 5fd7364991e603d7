"""
HR Process Engine
Pipeline definition models.

Models:
    - Program: a named pipeline (ordered stages + automation rules + access config).
    - Stage: one step of a program's pipeline.
    - StageTemplate: reusable stage definition that stages are copied from.
    - BlockInstance: a content/input block owned by a stage or template.
"""

from datetime import datetime, timezone

from hrflow.models import db
from hrflow.models.soft_delete import SoftDeleteMixin


class Program(SoftDeleteMixin, db.Model):
    """
    Reusable pipeline definition.

    JSON columns:
        stage_ids:      ordered list of Stage ids (as strings); defines the pipeline order
        automations:    [{"trigger", "conditions", "actions": [{"type", "payload"}]}]
        access_control: [{"roleSlug", "actions", "departmentScope"?, "stageVisibility"?}]
        view_config:    {roleSlug: {"visible": bool, "actions"?: [...]}}
    """

    __tablename__ = "programs"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(120), nullable=False, unique=True, index=True)
    description = db.Column(db.Text, nullable=True)
    program_type = db.Column(
        db.String(40), nullable=False, default="generic",
        comment="recruitment_cycle | training_program | survey_campaign | performance_cycle | generic",
    )
    is_active = db.Column(db.Boolean, nullable=False, default=False)

    stage_ids = db.Column(db.JSON, nullable=False, default=list)
    automations = db.Column(db.JSON, nullable=False, default=list)
    access_control = db.Column(db.JSON, nullable=True)
    view_config = db.Column(db.JSON, nullable=True)
    config = db.Column(db.JSON, nullable=True)

    start_date = db.Column(db.DateTime(timezone=True), nullable=True)
    end_date = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "description": self.description,
            "program_type": self.program_type,
            "is_active": self.is_active,
            "stage_ids": list(self.stage_ids or []),
            "automations": list(self.automations or []),
            "access_control": self.access_control,
            "view_config": self.view_config,
            "config": self.config,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Program {self.id}: {self.slug}>"


class Stage(SoftDeleteMixin, db.Model):
    """
    One step of a program's pipeline.

    ``original_stage_id`` is a stable external id kept for processes created
    before stages were re-instantiated; routing accepts either id.
    ``config`` may carry ``formConfig``, ``requiredFields`` and ``routingRules``.
    """

    __tablename__ = "stages"

    id = db.Column(db.Integer, primary_key=True)
    program_id = db.Column(db.Integer, db.ForeignKey("programs.id", ondelete="CASCADE"), nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    stage_type = db.Column(
        db.String(30), nullable=False, default="form",
        comment="form | static | interview | agreement | completed",
    )
    description = db.Column(db.Text, nullable=True)
    config = db.Column(db.JSON, nullable=False, default=dict)
    block_ids = db.Column(db.JSON, nullable=False, default=list)
    role_access = db.Column(db.JSON, nullable=False, default=list)
    assignee_ids = db.Column(db.JSON, nullable=True)
    original_stage_id = db.Column(db.String(64), nullable=True, index=True)
    source_template_id = db.Column(
        db.Integer, db.ForeignKey("stage_templates.id", ondelete="SET NULL"), nullable=True,
    )

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    @property
    def stage_key(self) -> str:
        """Live id as the string form stored on processes and snapshots."""
        return str(self.id)

    def matches(self, stage_id) -> bool:
        """True if ``stage_id`` names this stage by live or original id."""
        if stage_id is None:
            return False
        stage_id = str(stage_id)
        return stage_id == self.stage_key or (
            self.original_stage_id is not None and stage_id == self.original_stage_id
        )

    def to_dict(self):
        return {
            "id": self.id,
            "program_id": self.program_id,
            "name": self.name,
            "stage_type": self.stage_type,
            "description": self.description,
            "config": self.config or {},
            "block_ids": list(self.block_ids or []),
            "role_access": list(self.role_access or []),
            "assignee_ids": self.assignee_ids,
            "original_stage_id": self.original_stage_id,
            "source_template_id": self.source_template_id,
        }

    def __repr__(self):
        return f"<Stage {self.id}: {self.name} ({self.stage_type})>"


class StageTemplate(db.Model):
    __tablename__ = "stage_templates"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    stage_type = db.Column(db.String(30), nullable=False, default="form")
    description = db.Column(db.Text, nullable=True)
    config = db.Column(db.JSON, nullable=False, default=dict)
    block_ids = db.Column(db.JSON, nullable=False, default=list)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "stage_type": self.stage_type,
            "description": self.description,
            "config": self.config or {},
            "block_ids": list(self.block_ids or []),
        }

    def __repr__(self):
        return f"<StageTemplate {self.id}: {self.name}>"


class BlockInstance(db.Model):
    """A content or input block. ``parent_id`` points at the block it was copied from."""

    __tablename__ = "block_instances"

    id = db.Column(db.Integer, primary_key=True)
    block_type = db.Column(db.String(60), nullable=False)
    name = db.Column(db.String(200), nullable=True)
    config = db.Column(db.JSON, nullable=False, default=dict)
    version = db.Column(db.Integer, nullable=False, default=1)
    parent_id = db.Column(db.Integer, db.ForeignKey("block_instances.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "block_type": self.block_type,
            "name": self.name,
            "config": self.config or {},
            "version": self.version,
            "parent_id": self.parent_id,
        }

    def __repr__(self):
        return f"<BlockInstance {self.id}: {self.block_type}>"
