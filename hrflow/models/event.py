"""
HR Process Engine
Bookable events, goals and peer reviews referenced by automation actions.

Models:
    - Event: a bookable slot (interview, onboarding session, shift).
    - Goal: a personal goal created for a user, e.g. by a performance cycle.
    - PeerReviewAssignment: reviewer → reviewee pairing within a review cycle.
"""

from datetime import datetime, timezone
from uuid import uuid4

from hrflow.models import db
from hrflow.models.soft_delete import SoftDeleteMixin


class Event(SoftDeleteMixin, db.Model):
    __tablename__ = "events"

    id = db.Column(db.Integer, primary_key=True)
    uuid = db.Column(db.String(36), nullable=False, unique=True, default=lambda: str(uuid4()))
    program_id = db.Column(db.Integer, db.ForeignKey("programs.id", ondelete="SET NULL"), nullable=True, index=True)
    title = db.Column(db.String(200), nullable=False, default="Available Slot")
    event_type = db.Column(db.String(40), nullable=False, default="generic")
    start_time = db.Column(db.DateTime(timezone=True), nullable=True)
    end_time = db.Column(db.DateTime(timezone=True), nullable=True)
    max_attendees = db.Column(db.Integer, nullable=False, default=1)
    attendees = db.Column(db.JSON, nullable=False, default=list)
    status = db.Column(db.String(20), nullable=False, default="open", comment="open | full | cancelled")
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "uuid": self.uuid,
            "program_id": self.program_id,
            "title": self.title,
            "event_type": self.event_type,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "max_attendees": self.max_attendees,
            "attendees": list(self.attendees or []),
            "status": self.status,
        }

    def __repr__(self):
        return f"<Event {self.id}: {self.title} [{self.status}]>"


class Goal(SoftDeleteMixin, db.Model):
    __tablename__ = "goals"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, nullable=True)
    cycle_id = db.Column(db.String(64), nullable=True)
    status = db.Column(db.String(20), nullable=False, default="draft")
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "description": self.description,
            "cycle_id": self.cycle_id,
            "status": self.status,
        }

    def __repr__(self):
        return f"<Goal {self.id}: {self.title}>"


class PeerReviewAssignment(db.Model):
    """One reviewer assigned to review one reviewee within a review cycle."""

    __tablename__ = "peer_review_assignments"
    __table_args__ = (
        db.UniqueConstraint("cycle_id", "reviewer_id", "reviewee_id", name="uq_peer_review_pair"),
    )

    id = db.Column(db.Integer, primary_key=True)
    cycle_id = db.Column(db.String(64), nullable=False, index=True)
    reviewer_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    reviewee_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    is_anonymous = db.Column(db.Boolean, nullable=False, default=True)
    status = db.Column(db.String(20), nullable=False, default="pending", comment="pending | submitted")
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "cycle_id": self.cycle_id,
            "reviewer_id": self.reviewer_id,
            "reviewee_id": self.reviewee_id,
            "is_anonymous": self.is_anonymous,
            "status": self.status,
        }

    def __repr__(self):
        return f"<PeerReviewAssignment {self.reviewer_id}→{self.reviewee_id} cycle={self.cycle_id}>"
