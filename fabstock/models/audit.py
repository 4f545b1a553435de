"""
fabstock: shop-floor material management backend.
Audit domain model.

Models:
    - AuditEntry: immutable, append-only audit trail for every mutating
      operation on governed entities (purchase requests and their lines
      and quotes, stock units, remnants).
"""

import json
from datetime import datetime, timezone

from fabstock.core.exceptions import ValidationError
from fabstock.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {
    "purchase_request", "purchase_request_line", "purchase_request_quote",
    "profile", "sheet", "profile_remnant",
}

AUDIT_ACTIONS = {
    # Purchase request lifecycle
    "purchase_request.send",
    "purchase_request.start_collecting",
    "purchase_request.complete",
    "purchase_request.cancel",
    "purchase_request.select_winner",
    # Purchase request children
    "purchase_request.add_line",
    "purchase_request.update_line",
    "purchase_request.remove_line",
    "purchase_request.add_quote",
    "purchase_request.update_quote",
    "purchase_request.remove_quote",
    # Stock
    "stock.consume",
    "stock.reserve",
    "stock.unreserve",
    # Generic
    "create",
    "update",
    "delete",
}


class AuditEntry(db.Model):
    """
    Immutable audit trail row.

    One row per mutating operation. ``field_name``/``old_value``/``new_value``
    carry the changed field (status, winner_supplier_id, ...); multi-field
    updates store JSON snapshots in old/new value instead.
    """

    __tablename__ = "audit_entries"
    __table_args__ = (
        db.Index("idx_audit_entity", "tenant_id", "entity_type", "entity_id"),
        db.Index("idx_audit_actor", "tenant_id", "user_id"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.String(64), nullable=False, index=True)

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(40), nullable=False,
        comment="purchase_request | purchase_request_line | profile | …",
    )
    entity_id = db.Column(
        db.String(64), nullable=False,
        comment="PK of the referenced entity as string",
    )

    # What happened
    action = db.Column(db.String(60), nullable=False)
    field_name = db.Column(db.String(60), nullable=True)
    old_value = db.Column(db.Text, nullable=True)
    new_value = db.Column(db.Text, nullable=True)
    reason = db.Column(db.Text, nullable=True)

    # Who
    user_id = db.Column(db.String(64), nullable=False)
    user_name = db.Column(db.String(150), nullable=False)
    user_role = db.Column(db.String(50), nullable=True)
    correlation_id = db.Column(db.String(64), nullable=True, index=True)

    additional_context = db.Column(db.Text, default="{}")

    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def context(self) -> dict:
        """Deserialise *additional_context* to a Python dict."""
        try:
            return json.loads(self.additional_context or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "field_name": self.field_name,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "reason": self.reason,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "user_role": self.user_role,
            "correlation_id": self.correlation_id,
            "context": self.context,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditEntry {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def _as_text(value):
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str, sort_keys=True)
    return str(value)


def write_audit(
    *,
    tenant_id: str,
    entity_type: str,
    entity_id,
    action: str,
    actor,
    field_name: str | None = None,
    old_value=None,
    new_value=None,
    reason: str | None = None,
    additional_context: dict | None = None,
) -> AuditEntry:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    ``actor`` is a :class:`fabstock.core.actor.Actor`. Dict and list values
    are stored as JSON text.

    Returns the (flushed) AuditEntry instance.
    """
    if entity_type not in AUDIT_ENTITY_TYPES:
        raise ValidationError(f"Unknown audit entity type: {entity_type}",
                              details={"entity_type": entity_type})
    if action not in AUDIT_ACTIONS:
        raise ValidationError(f"Unknown audit action: {action}",
                              details={"action": action})

    entry = AuditEntry(
        tenant_id=tenant_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        field_name=field_name,
        old_value=_as_text(old_value),
        new_value=_as_text(new_value),
        reason=reason,
        user_id=actor.user_id,
        user_name=actor.user_name,
        user_role=actor.role or None,
        correlation_id=actor.correlation_id,
        additional_context=json.dumps(additional_context or {}, default=str),
    )
    db.session.add(entry)
    db.session.flush()
    return entry
