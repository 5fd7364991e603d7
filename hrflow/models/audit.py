"""
HR Process Engine
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for engine mutations.
"""

import json
from datetime import datetime, timezone

from hrflow.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {"process", "program", "stage", "stage_template", "event", "automation", "user"}

AUDIT_ACTIONS = {
    # Process lifecycle
    "process.create",
    "process.advance",
    "process.update",
    "process.status_change",
    "process.delete",
    "offer.accept",
    # Program administration
    "program.create",
    "program.update",
    "program.view_config_update",
    "program.access_control_update",
    "program.role_levels_recomputed",
    # Stages
    "stage.create",
    "stage.update",
    "stage.reorder",
    "stage.role_access_update",
    "stage.delete",
    "stage_template.create",
    # Events
    "event.book",
    # Automation engine
    "automation.halted",
    "automation.user_update",
}

SEVERITIES = {"info", "critical"}


class AuditLog(db.Model):
    """
    Immutable audit trail.

    One row per action. ``changes_json`` carries a ``{before, after}``
    snapshot; ``metadata_json`` carries free-form context (trigger, depth, ...).
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)

    entity_type = db.Column(db.String(30), nullable=False, comment="process | program | stage | …")
    entity_id = db.Column(db.String(64), nullable=False, comment="PK of the referenced entity as string")

    action = db.Column(db.String(60), nullable=False, comment="process.create | process.advance | …")
    actor_user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
        comment="Null for system-originated entries (automations, maintenance)",
    )
    severity = db.Column(db.String(10), nullable=False, default="info")

    changes_json = db.Column(db.Text, default="{}", comment="JSON: {before, after}")
    metadata_json = db.Column(db.Text, default="{}")

    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def changes(self) -> dict:
        try:
            return json.loads(self.changes_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    @property
    def meta(self) -> dict:
        try:
            return json.loads(self.metadata_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor_user_id": self.actor_user_id,
            "severity": self.severity,
            "changes": self.changes,
            "metadata": self.meta,
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
    changes: dict | None = None,
    metadata: dict | None = None,
    severity: str = "info",
) -> AuditLog:
    """
    Append a single audit row. Uses ``flush`` so callers keep
    transaction control: the row commits or rolls back with the mutation.

    Returns the (flushed) AuditLog instance.
    """
    log = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor_user_id=actor_user_id,
        severity=severity if severity in SEVERITIES else "info",
        changes_json=json.dumps(changes or {}, default=str),
        metadata_json=json.dumps(metadata or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
