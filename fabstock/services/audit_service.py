"""
Audit trail: read side.

Entries are written by ``fabstock.models.audit.write_audit`` inside each
service's unit of work; this module only queries them. There is no update
or delete API.
"""

from datetime import datetime

from sqlalchemy import select

from fabstock.core.exceptions import ValidationError
from fabstock.models import db
from fabstock.models.audit import AUDIT_ENTITY_TYPES, AuditEntry


def get_entity_trail(tenant_id, entity_type, entity_id, *, action=None) -> list[AuditEntry]:
    """All entries for one entity, newest first."""
    if entity_type not in AUDIT_ENTITY_TYPES:
        raise ValidationError(f"Unknown audit entity type: {entity_type}",
                              details={"entity_type": entity_type})
    stmt = select(AuditEntry).where(
        AuditEntry.tenant_id == tenant_id,
        AuditEntry.entity_type == entity_type,
        AuditEntry.entity_id == str(entity_id),
    )
    if action:
        stmt = stmt.where(AuditEntry.action == action)
    stmt = stmt.order_by(AuditEntry.timestamp.desc(), AuditEntry.id.desc())
    return list(db.session.execute(stmt).scalars())


def get_actor_trail(tenant_id, user_id, start: datetime | None = None,
                    end: datetime | None = None) -> list[AuditEntry]:
    """Entries recorded for one actor in ``[start, end)``, newest first."""
    if start is not None and end is not None and end < start:
        raise ValidationError("end must not be before start",
                              details={"start": start.isoformat(), "end": end.isoformat()})
    stmt = select(AuditEntry).where(
        AuditEntry.tenant_id == tenant_id,
        AuditEntry.user_id == user_id,
    )
    if start is not None:
        stmt = stmt.where(AuditEntry.timestamp >= start)
    if end is not None:
        stmt = stmt.where(AuditEntry.timestamp < end)
    stmt = stmt.order_by(AuditEntry.timestamp.desc(), AuditEntry.id.desc())
    return list(db.session.execute(stmt).scalars())
