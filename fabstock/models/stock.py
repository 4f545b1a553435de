"""
fabstock: shop-floor material management backend.
Stock unit domain models.

Models:
    - StockUnit:      one received lot of raw material (single-table base)
    - Profile:        bar/profile lot, quantity tracked as length in mm
    - Sheet:          plate lot, quantity tracked as area in mm²
    - ProfileRemnant: usable offcut produced when a profile lot is cut

Architecture:
    StockUnit ──1:N──▶ ProfileRemnant
    StockUnit ──1:N──▶ StockUsage          (see models/usage.py)
    StockUnit ──1:N──▶ MaterialReservation (see models/reservation.py)

Quantities:
    original_quantity is fixed at receipt; available_quantity is only ever
    decremented by the consumption engine. The table carries a check
    constraint keeping 0 <= available_quantity <= original_quantity.
"""

import re
from decimal import Decimal

from fabstock.models import db
from fabstock.models.base import TenantModel
from fabstock.models.soft_delete import SoftDeleteMixin

# ── Constants ────────────────────────────────────────────────────────────────

# One uppercase letter followed by one or more digits, e.g. A15
LOT_ID_PATTERN = re.compile(r"^[A-Z]\d+$")

WEIGHT_QUANT = Decimal("0.001")


def is_valid_lot_id(lot_id) -> bool:
    """Return True if *lot_id* matches the profile lot id format."""
    return isinstance(lot_id, str) and LOT_ID_PATTERN.fullmatch(lot_id) is not None


def proportional_weight(parent_weight, part_length, parent_length) -> Decimal:
    """Weight of a piece cut from a lot, proportional to its length."""
    if not parent_length:
        return Decimal("0").quantize(WEIGHT_QUANT)
    weight = Decimal(str(parent_weight or 0)) * Decimal(part_length) / Decimal(parent_length)
    return weight.quantize(WEIGHT_QUANT)


def is_fully_reserved(reserved_total, available_quantity) -> bool:
    """A lot counts as reserved once open reservations cover what is left of it."""
    return reserved_total > 0 and reserved_total >= available_quantity


# ═════════════════════════════════════════════════════════════════════════════
# 1. StockUnit (Profile | Sheet)
# ═════════════════════════════════════════════════════════════════════════════


class StockUnit(SoftDeleteMixin, TenantModel):
    """
    One received lot of raw material.

    ``code`` is the human-readable, tenant-unique identity. Profiles expose
    it as ``lot_id`` and sheets as ``sheet_id``.
    """

    __tablename__ = "stock_units"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "kind", "code", name="uq_stock_units_tenant_kind_code"),
        db.CheckConstraint(
            "available_quantity >= 0 AND available_quantity <= original_quantity",
            name="ck_stock_units_available_bounds",
        ),
        db.Index("ix_stock_units_tenant_grade", "tenant_id", "grade"),
    )

    id = db.Column(db.Integer, primary_key=True)
    kind = db.Column(db.String(20), nullable=False, comment="profile | sheet")
    code = db.Column(db.String(50), nullable=False)

    grade = db.Column(db.String(50), nullable=False, default="")
    length_mm = db.Column(db.Integer, nullable=False)
    weight_kg = db.Column(db.Numeric(12, 3), nullable=False, default=0)
    heat_number = db.Column(db.String(50), default="")
    certificate_ref = db.Column(db.String(100), nullable=True)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    arrival_date = db.Column(db.Date, nullable=True)
    supplier_name = db.Column(db.String(200), default="")
    invoice_number = db.Column(db.String(50), default="")
    project_id = db.Column(db.Integer, nullable=True, index=True,
                           comment="External project directory id")
    notes = db.Column(db.Text, default="")

    original_quantity = db.Column(
        db.BigInteger, nullable=False,
        comment="Length in mm for profiles, area in mm² for sheets",
    )
    available_quantity = db.Column(db.BigInteger, nullable=False)
    is_reserved = db.Column(db.Boolean, nullable=False, default=False)

    version = db.Column(db.Integer, nullable=False, default=1)

    remnants = db.relationship(
        "ProfileRemnant", back_populates="parent",
        order_by="ProfileRemnant.id", lazy="select",
    )

    __mapper_args__ = {
        "polymorphic_on": kind,
        "version_id_col": version,
    }

    @property
    def available_quantity_unit(self) -> str:
        return "mm"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "kind": self.kind,
            "code": self.code,
            "grade": self.grade,
            "length_mm": self.length_mm,
            "weight_kg": str(self.weight_kg) if self.weight_kg is not None else None,
            "heat_number": self.heat_number,
            "certificate_ref": self.certificate_ref,
            "unit_price": str(self.unit_price) if self.unit_price is not None else None,
            "arrival_date": self.arrival_date.isoformat() if self.arrival_date else None,
            "supplier_name": self.supplier_name,
            "invoice_number": self.invoice_number,
            "project_id": self.project_id,
            "original_quantity": self.original_quantity,
            "available_quantity": self.available_quantity,
            "is_reserved": self.is_reserved,
            "is_active": self.is_active,
            "version": self.version,
            "notes": self.notes,
        }

    def __repr__(self):
        return f"<{type(self).__name__} {self.id}: {self.code} avail={self.available_quantity}>"


class Profile(StockUnit):
    """Bar/profile lot. ``available_quantity`` is the remaining length in mm."""

    profile_type = db.Column(db.String(50), nullable=True, comment="HEA, IPE, RHS, …")
    dimension = db.Column(db.String(50), nullable=True, comment="e.g. 200x100x8")

    lot_id = db.synonym("code")

    __mapper_args__ = {"polymorphic_identity": "profile"}

    @property
    def available_length_mm(self):
        return self.available_quantity

    def to_dict(self) -> dict:
        d = super().to_dict()
        d.update({
            "lot_id": self.code,
            "profile_type": self.profile_type,
            "dimension": self.dimension,
        })
        return d


class Sheet(StockUnit):
    """Plate lot. ``available_quantity`` is the remaining area in mm²."""

    width_mm = db.Column(db.Integer, nullable=True)
    thickness_mm = db.Column(db.Integer, nullable=True)
    is_used = db.Column(db.Boolean, nullable=True, default=False)

    sheet_id = db.synonym("code")

    __mapper_args__ = {"polymorphic_identity": "sheet"}

    @property
    def available_quantity_unit(self) -> str:
        return "mm2"

    @property
    def size_label(self) -> str:
        return f"{self.length_mm}x{self.width_mm}"

    def to_dict(self) -> dict:
        d = super().to_dict()
        d.update({
            "sheet_id": self.code,
            "width_mm": self.width_mm,
            "thickness_mm": self.thickness_mm,
            "is_used": bool(self.is_used),
        })
        return d


# ═════════════════════════════════════════════════════════════════════════════
# 2. ProfileRemnant
# ═════════════════════════════════════════════════════════════════════════════


class ProfileRemnant(TenantModel):
    """
    Usable offcut of a profile lot.

    Created only as a side effect of a consumption that names a remnant
    length. A remnant may be consumed in turn; it is marked ``is_used``
    once its available length reaches zero.
    """

    __tablename__ = "profile_remnants"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "remnant_id", name="uq_profile_remnants_tenant_code"),
        db.CheckConstraint(
            "available_length_mm >= 0 AND available_length_mm <= length_mm",
            name="ck_profile_remnants_available_bounds",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    stock_unit_id = db.Column(
        db.Integer, db.ForeignKey("stock_units.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    remnant_id = db.Column(db.String(60), nullable=False, comment="<lot_id>-R<n>")
    length_mm = db.Column(db.Integer, nullable=False)
    available_length_mm = db.Column(db.Integer, nullable=False)
    weight_kg = db.Column(db.Numeric(12, 3), nullable=False, default=0)
    is_usable = db.Column(db.Boolean, nullable=False, default=True)
    is_used = db.Column(db.Boolean, nullable=False, default=False)
    created_by = db.Column(db.String(150), nullable=True)
    notes = db.Column(db.Text, default="")

    version = db.Column(db.Integer, nullable=False, default=1)

    parent = db.relationship("StockUnit", back_populates="remnants")

    __mapper_args__ = {"version_id_col": version}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "stock_unit_id": self.stock_unit_id,
            "remnant_id": self.remnant_id,
            "length_mm": self.length_mm,
            "available_length_mm": self.available_length_mm,
            "weight_kg": str(self.weight_kg) if self.weight_kg is not None else None,
            "is_usable": self.is_usable,
            "is_used": self.is_used,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "version": self.version,
            "notes": self.notes,
        }

    def __repr__(self):
        return f"<ProfileRemnant {self.id}: {self.remnant_id} len={self.available_length_mm}>"
