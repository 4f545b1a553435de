"""
Soft delete mixin.

Adds an ``is_active`` flag plus a ``deleted_at`` timestamp. Governed rows
(stock units, purchase requests, lines, quotes) are never physically
removed once other records reference them; deleting flips the flag.

Usage:
    class Profile(SoftDeleteMixin, TenantModel):
        ...

    obj.soft_delete()
"""

from datetime import datetime, timezone

from fabstock.models import db


class SoftDeleteMixin:
    """Mixin that adds soft delete support to any SQLAlchemy model."""

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True, default=None)

    def soft_delete(self):
        """Mark this record as deleted."""
        self.is_active = False
        self.deleted_at = datetime.now(timezone.utc)
