"""
TenantModel: abstract base class for tenant-scoped models.

Tenancy is an explicit parameter on every service call; there is no ambient
filter. Models that hold tenant data inherit from TenantModel instead of
db.Model directly. This adds:
  - tenant_id string column with index
  - created_at / updated_at timestamps
"""

from datetime import datetime, timezone

from fabstock.models import db


def _utcnow():
    return datetime.now(timezone.utc)


class TenantModel(db.Model):
    """Abstract base for tenant-scoped tables."""
    __abstract__ = True

    tenant_id = db.Column(db.String(64), nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )
