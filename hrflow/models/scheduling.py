"""
HR Process Engine
Scheduling and notification models.

Models:
    - ScheduledTask: run history of deferred tasks (automation cascades,
      emails, bookings).
    - EmailLog: outbound email audit log.
    - RateLimitRecord: per-user, per-action quota window.
"""

from datetime import datetime, timezone

from hrflow.models import db


class ScheduledTask(db.Model):
    """
    One deferred unit of work.

    Written by the scheduler once the task has run so operators can see
    failures that never reach the caller who scheduled them.
    """

    __tablename__ = "scheduled_tasks"

    id = db.Column(db.Integer, primary_key=True)
    task_name = db.Column(db.String(100), nullable=False, index=True)
    args = db.Column(db.JSON, nullable=False, default=dict)
    status = db.Column(db.String(20), nullable=False, default="pending",
                       comment="pending, success, failed")
    attempts = db.Column(db.Integer, nullable=False, default=0)
    error_message = db.Column(db.Text, nullable=True)
    duration_ms = db.Column(db.Integer, nullable=True)
    due_at = db.Column(db.DateTime(timezone=True), nullable=True)
    finished_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    def record_run(self, status: str, duration_ms: int, error: str | None = None):
        self.status = status
        self.attempts = (self.attempts or 0) + 1
        self.duration_ms = duration_ms
        self.error_message = error
        self.finished_at = datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "task_name": self.task_name,
            "args": self.args,
            "status": self.status,
            "attempts": self.attempts,
            "error_message": self.error_message,
            "duration_ms": self.duration_ms,
            "due_at": self.due_at.isoformat() if self.due_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }

    def __repr__(self):
        return f"<ScheduledTask {self.id}: {self.task_name} [{self.status}]>"


class EmailLog(db.Model):
    """
    Outbound email audit log.

    Every email sent through the engine is logged here for audit/debug.
    """

    __tablename__ = "email_logs"

    id = db.Column(db.Integer, primary_key=True)
    recipient_email = db.Column(db.String(255), nullable=False, index=True)
    recipient_name = db.Column(db.String(150), nullable=True)
    subject = db.Column(db.String(500), nullable=False)
    template_name = db.Column(db.String(100), nullable=True,
                              comment="Email template used")
    payload = db.Column(db.JSON, nullable=True)
    status = db.Column(db.String(20), default="queued",
                       comment="queued, sent, failed")
    error_message = db.Column(db.Text, nullable=True)

    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "recipient_email": self.recipient_email,
            "recipient_name": self.recipient_name,
            "subject": self.subject,
            "template_name": self.template_name,
            "status": self.status,
            "error_message": self.error_message,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<EmailLog {self.id}: {self.template_name} [{self.status}]>"


class RateLimitRecord(db.Model):
    __tablename__ = "rate_limits"
    __table_args__ = (
        db.UniqueConstraint("user_id", "action", name="uq_rate_limit_user_action"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    action = db.Column(db.String(60), nullable=False)
    count = db.Column(db.Integer, nullable=False, default=0)
    window_start = db.Column(db.DateTime(timezone=True), nullable=False,
                             default=lambda: datetime.now(timezone.utc))

    def __repr__(self):
        return f"<RateLimitRecord user={self.user_id} {self.action}: {self.count}>"
