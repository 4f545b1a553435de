"""
fabstock: shop-floor material management backend.
Reservation ledger model.

A MaterialReservation is a soft hold of quantity against one stock unit for
a project or work order. The lot's ``is_reserved`` flag is derived from the
sum of its reservations by services/reservation_service.py.
"""

from datetime import datetime, timezone

from fabstock.models import db


class MaterialReservation(db.Model):
    __tablename__ = "material_reservations"
    __table_args__ = (
        db.Index("ix_material_reservations_tenant_unit", "tenant_id", "stock_unit_id"),
        db.CheckConstraint("quantity > 0", name="ck_material_reservations_quantity_positive"),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.String(64), nullable=False, index=True)
    stock_unit_id = db.Column(
        db.Integer, db.ForeignKey("stock_units.id", ondelete="CASCADE"),
        nullable=False,
    )
    project_id = db.Column(db.Integer, nullable=True)
    work_order_id = db.Column(db.Integer, nullable=True)
    quantity = db.Column(db.BigInteger, nullable=False, comment="Same unit as the lot quantity")
    reserved_by = db.Column(db.String(150), nullable=False)
    reserved_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    notes = db.Column(db.Text, default="")

    stock_unit = db.relationship("StockUnit")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "stock_unit_id": self.stock_unit_id,
            "project_id": self.project_id,
            "work_order_id": self.work_order_id,
            "quantity": self.quantity,
            "reserved_by": self.reserved_by,
            "reserved_at": self.reserved_at.isoformat() if self.reserved_at else None,
            "notes": self.notes,
        }

    def __repr__(self):
        return f"<MaterialReservation {self.id}: unit={self.stock_unit_id} qty={self.quantity}>"
