"""
fabstock: shop-floor material management backend.
Usage ledger models.

Models:
    - StockUsage:   append-only record of one consumption event (single-table base)
    - ProfileUsage: length consumed from a profile lot or one of its remnants
    - SheetUsage:   area consumed from a sheet, with nest id and remnant dimensions

Rows are written once, in the same transaction as the quantity decrement
they describe. ORM listeners in models/immutability.py reject any later
update or delete.
"""

import json
from datetime import datetime, timezone

from fabstock.models import db


class StockUsage(db.Model):
    """One consumption event against a stock unit (or a profile remnant)."""

    __tablename__ = "stock_usages"
    __table_args__ = (
        db.Index("ix_stock_usages_tenant_unit", "tenant_id", "stock_unit_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.String(64), nullable=False, index=True)
    kind = db.Column(db.String(20), nullable=False, comment="profile | sheet")

    stock_unit_id = db.Column(
        db.Integer, db.ForeignKey("stock_units.id", ondelete="RESTRICT"),
        nullable=False,
    )

    # Consumer (external directories)
    project_id = db.Column(db.Integer, nullable=True, index=True)
    manufacturing_order_id = db.Column(db.Integer, nullable=True, index=True)

    used_by = db.Column(db.String(150), nullable=False)
    used_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    used_length_mm = db.Column(db.Integer, nullable=False)
    pieces_used = db.Column(db.Integer, nullable=False, default=1)
    quantity_used = db.Column(
        db.BigInteger, nullable=False,
        comment="Total decrement: mm for profiles, mm² for sheets",
    )
    notes = db.Column(db.Text, default="")

    stock_unit = db.relationship("StockUnit")

    __mapper_args__ = {"polymorphic_on": kind}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "kind": self.kind,
            "stock_unit_id": self.stock_unit_id,
            "project_id": self.project_id,
            "manufacturing_order_id": self.manufacturing_order_id,
            "used_by": self.used_by,
            "used_at": self.used_at.isoformat() if self.used_at else None,
            "used_length_mm": self.used_length_mm,
            "pieces_used": self.pieces_used,
            "quantity_used": self.quantity_used,
            "notes": self.notes,
        }

    def __repr__(self):
        return f"<{type(self).__name__} {self.id}: unit={self.stock_unit_id} qty={self.quantity_used}>"


class ProfileUsage(StockUsage):
    """Length taken from a profile lot, or from one of its remnants."""

    remnant_id = db.Column(
        db.Integer, db.ForeignKey("profile_remnants.id", ondelete="RESTRICT"),
        nullable=True, index=True,
        comment="Source remnant when the cut was taken from an offcut",
    )
    remnant_created = db.Column(db.Boolean, nullable=True, default=False)
    remnant_length_mm = db.Column(db.Integer, nullable=True)
    produced_remnant_id = db.Column(
        db.Integer, db.ForeignKey("profile_remnants.id", ondelete="RESTRICT"),
        nullable=True,
    )

    source_remnant = db.relationship("ProfileRemnant", foreign_keys=[remnant_id])
    produced_remnant = db.relationship("ProfileRemnant", foreign_keys=[produced_remnant_id])

    __mapper_args__ = {"polymorphic_identity": "profile"}

    def to_dict(self) -> dict:
        d = super().to_dict()
        d.update({
            "remnant_id": self.remnant_id,
            "remnant_created": bool(self.remnant_created),
            "remnant_length_mm": self.remnant_length_mm,
            "produced_remnant": self.produced_remnant.to_dict() if self.produced_remnant else None,
        })
        return d


class SheetUsage(StockUsage):
    """Area taken from a sheet by one nest."""

    used_width_mm = db.Column(db.Integer, nullable=True)
    nest_id = db.Column(db.String(50), nullable=True)
    generated_remnants = db.Column(db.Boolean, nullable=True, default=False)
    remnant_details = db.Column(db.Text, nullable=True, comment="JSON list of {length_mm, width_mm}")

    __mapper_args__ = {"polymorphic_identity": "sheet"}

    @property
    def area_used(self):
        return self.quantity_used

    @property
    def remnants(self) -> list:
        try:
            return json.loads(self.remnant_details or "[]")
        except (json.JSONDecodeError, TypeError):
            return []

    def to_dict(self) -> dict:
        d = super().to_dict()
        d.update({
            "used_width_mm": self.used_width_mm,
            "area_used": self.quantity_used,
            "nest_id": self.nest_id,
            "generated_remnants": bool(self.generated_remnants),
            "remnant_details": self.remnants,
        })
        return d
