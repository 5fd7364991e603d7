"""
Soft delete mixin.

Adds a `deleted_at` timestamp column. Programs, stages, processes and
manager assignments are never physically removed while other rows still
reference them; lookups filter on ``deleted_at IS NULL`` (see
``services/helpers/scoped_queries.py``).

Usage:
    class MyModel(SoftDeleteMixin, db.Model):
        ...

    obj.soft_delete()
    db.session.commit()
"""

from datetime import datetime, timezone

from hrflow.models import db


class SoftDeleteMixin:
    """Mixin that adds soft delete support to any SQLAlchemy model."""

    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True, default=None, index=True)

    def soft_delete(self):
        """Mark this record as deleted."""
        self.deleted_at = datetime.now(timezone.utc)

    @property
    def is_deleted(self):
        return self.deleted_at is not None
