"""
fabstock: shop-floor material management backend.
Purchase-request domain models.

Models:
    - PurchaseRequest:          internal request for supplier quotes
    - PurchaseRequestLine:      one requested material (type + grade + dimensions)
    - PurchaseRequestQuote:     one supplier's offer on the request
    - PurchaseRequestQuoteItem: quote price for one request line

Architecture:
    PurchaseRequest ──1:N──▶ PurchaseRequestLine
    PurchaseRequest ──1:N──▶ PurchaseRequestQuote ──1:N──▶ PurchaseRequestQuoteItem
    PurchaseRequestQuoteItem ──N:1──▶ PurchaseRequestLine

Lifecycle states:
    draft → sent → collecting → completed
    draft | sent | collecting → canceled
    completed and canceled are terminal.

Lines use the material-type + dimensions shape. The older PriceRequest
shape (material id + free-text description, Draft/Sent/Responded/Closed)
is superseded and not modelled.
"""

from datetime import datetime, timezone
from decimal import Decimal

from fabstock.models import db
from fabstock.models.base import TenantModel
from fabstock.models.soft_delete import SoftDeleteMixin


# ── Constants ────────────────────────────────────────────────────────────────

PR_STATUSES = {"draft", "sent", "collecting", "completed", "canceled"}

PR_TERMINAL_STATUSES = {"completed", "canceled"}

LINE_MUTABLE_STATUSES = {"draft"}
QUOTE_MUTABLE_STATUSES = {"sent", "collecting"}
WINNER_STATUSES = {"collecting"}
DELETABLE_STATUSES = {"draft", "canceled"}

MATERIAL_TYPES = {"profile", "sheet", "other"}

UNITS_OF_MEASURE = {"m", "pcs", "kg"}

CURRENCIES = {
    "EUR", "USD", "GBP", "AUD", "CAD", "CHF", "CNY", "DKK",
    "HKD", "JPY", "NOK", "NZD", "PLN", "SEK", "SGD", "ZAR",
}

MONEY_QUANT = Decimal("0.01")


# ── Lifecycle Transition Guards ──────────────────────────────────────────────

PR_TRANSITIONS = {
    "draft":      ["sent", "canceled"],
    "sent":       ["collecting", "canceled"],
    "collecting": ["completed", "canceled"],
    "completed":  [],
    "canceled":   [],
}


def validate_pr_transition(old_status, new_status):
    """Return True if PurchaseRequest status transition is valid."""
    return new_status in PR_TRANSITIONS.get(old_status, [])


def allowed_pr_transitions(status):
    """Return the statuses reachable from *status* in one step."""
    return list(PR_TRANSITIONS.get(status, []))


# ═════════════════════════════════════════════════════════════════════════════
# 1. PurchaseRequest
# ═════════════════════════════════════════════════════════════════════════════


class PurchaseRequest(SoftDeleteMixin, TenantModel):
    """
    Internal request to solicit supplier quotes and pick a winner.

    ``number`` (PR-0001, ...) is tenant-unique. Status moves only through
    PR_TRANSITIONS; every move is audited by the service layer.
    """

    __tablename__ = "purchase_requests"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "number", name="uq_purchase_requests_tenant_number"),
        db.Index("ix_purchase_requests_tenant_status", "tenant_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    number = db.Column(db.String(30), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    project_id = db.Column(db.Integer, nullable=True, index=True)

    requested_by = db.Column(db.String(150), nullable=False)
    requested_date = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    required_date = db.Column(db.Date, nullable=True)

    status = db.Column(
        db.String(20), nullable=False, default="draft",
        comment="draft | sent | collecting | completed | canceled",
    )

    sent_by = db.Column(db.String(150), nullable=True)
    sent_date = db.Column(db.DateTime(timezone=True), nullable=True)
    collecting_started_by = db.Column(db.String(150), nullable=True)
    collecting_started_date = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_by = db.Column(db.String(150), nullable=True)
    completed_date = db.Column(db.DateTime(timezone=True), nullable=True)
    canceled_by = db.Column(db.String(150), nullable=True)
    canceled_date = db.Column(db.DateTime(timezone=True), nullable=True)
    cancellation_reason = db.Column(db.Text, nullable=True)

    # Winner (supplier directory is external; quote id is not a FK to avoid
    # a circular dependency with purchase_request_quotes)
    winner_supplier_id = db.Column(db.Integer, nullable=True)
    winner_quote_id = db.Column(db.Integer, nullable=True)
    winner_selected_by = db.Column(db.String(150), nullable=True)
    winner_selected_date = db.Column(db.DateTime(timezone=True), nullable=True)
    winner_selection_reason = db.Column(db.Text, nullable=True)

    notes = db.Column(db.Text, default="")

    version = db.Column(db.Integer, nullable=False, default=1)

    lines = db.relationship(
        "PurchaseRequestLine", back_populates="purchase_request",
        order_by="PurchaseRequestLine.line_number", lazy="select",
    )
    quotes = db.relationship(
        "PurchaseRequestQuote", back_populates="purchase_request",
        order_by="PurchaseRequestQuote.id", lazy="select",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def active_lines(self):
        return [ln for ln in self.lines if ln.is_active]

    @property
    def active_quotes(self):
        return [q for q in self.quotes if q.is_active]

    @property
    def is_terminal(self):
        return self.status in PR_TERMINAL_STATUSES

    def to_dict(self, include_children=False):
        d = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "number": self.number,
            "title": self.title,
            "description": self.description,
            "project_id": self.project_id,
            "requested_by": self.requested_by,
            "requested_date": self.requested_date.isoformat() if self.requested_date else None,
            "required_date": self.required_date.isoformat() if self.required_date else None,
            "status": self.status,
            "allowed_transitions": allowed_pr_transitions(self.status),
            "sent_by": self.sent_by,
            "sent_date": self.sent_date.isoformat() if self.sent_date else None,
            "completed_by": self.completed_by,
            "completed_date": self.completed_date.isoformat() if self.completed_date else None,
            "canceled_by": self.canceled_by,
            "canceled_date": self.canceled_date.isoformat() if self.canceled_date else None,
            "cancellation_reason": self.cancellation_reason,
            "winner_supplier_id": self.winner_supplier_id,
            "winner_quote_id": self.winner_quote_id,
            "winner_selected_by": self.winner_selected_by,
            "winner_selection_reason": self.winner_selection_reason,
            "notes": self.notes,
            "is_active": self.is_active,
            "version": self.version,
        }
        if include_children:
            d["lines"] = [ln.to_dict() for ln in self.active_lines]
            d["quotes"] = [q.to_dict(include_items=True) for q in self.active_quotes]
        return d

    def __repr__(self):
        return f"<PurchaseRequest {self.id}: {self.number} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. PurchaseRequestLine
# ═════════════════════════════════════════════════════════════════════════════


class PurchaseRequestLine(SoftDeleteMixin, TenantModel):
    """One requested material: type, grade and dimensions plus a quantity."""

    __tablename__ = "purchase_request_lines"

    id = db.Column(db.Integer, primary_key=True)
    purchase_request_id = db.Column(
        db.Integer, db.ForeignKey("purchase_requests.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    line_number = db.Column(db.Integer, nullable=False)
    material_type = db.Column(db.String(20), nullable=False, comment="profile | sheet | other")
    grade = db.Column(db.String(50), default="")
    profile_type = db.Column(db.String(50), nullable=True)
    thickness_mm = db.Column(db.Integer, nullable=True)
    width_mm = db.Column(db.Integer, nullable=True)
    length_mm = db.Column(db.Integer, nullable=True)
    quantity = db.Column(db.Numeric(12, 3), nullable=False)
    unit_of_measure = db.Column(db.String(10), nullable=False, default="kg")
    specifications = db.Column(db.Text, default="")
    required_date = db.Column(db.Date, nullable=True)
    notes = db.Column(db.Text, default="")

    version = db.Column(db.Integer, nullable=False, default=1)

    purchase_request = db.relationship("PurchaseRequest", back_populates="lines")

    __mapper_args__ = {"version_id_col": version}

    @property
    def dimensions(self):
        parts = [str(v) for v in (self.thickness_mm, self.width_mm, self.length_mm) if v]
        return "x".join(parts)

    def to_dict(self):
        return {
            "id": self.id,
            "purchase_request_id": self.purchase_request_id,
            "line_number": self.line_number,
            "material_type": self.material_type,
            "grade": self.grade,
            "profile_type": self.profile_type,
            "thickness_mm": self.thickness_mm,
            "width_mm": self.width_mm,
            "length_mm": self.length_mm,
            "dimensions": self.dimensions,
            "quantity": str(self.quantity) if self.quantity is not None else None,
            "unit_of_measure": self.unit_of_measure,
            "specifications": self.specifications,
            "required_date": self.required_date.isoformat() if self.required_date else None,
            "notes": self.notes,
            "version": self.version,
        }

    def __repr__(self):
        return f"<PurchaseRequestLine {self.id}: #{self.line_number} {self.material_type}>"


# ═════════════════════════════════════════════════════════════════════════════
# 3. PurchaseRequestQuote / PurchaseRequestQuoteItem
# ═════════════════════════════════════════════════════════════════════════════


class PurchaseRequestQuote(SoftDeleteMixin, TenantModel):
    """One supplier's offer. ``total_amount`` is the sum of its item totals."""

    __tablename__ = "purchase_request_quotes"
    __table_args__ = (
        db.Index("ix_pr_quotes_request_supplier", "purchase_request_id", "supplier_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    purchase_request_id = db.Column(
        db.Integer, db.ForeignKey("purchase_requests.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    supplier_id = db.Column(db.Integer, nullable=False, comment="External supplier directory id")
    supplier_name = db.Column(db.String(200), default="")
    quote_reference = db.Column(db.String(100), default="")
    submitted_date = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    valid_until = db.Column(db.Date, nullable=True)
    currency = db.Column(db.String(3), nullable=False, default="EUR")
    payment_terms = db.Column(db.String(200), default="")
    delivery_terms = db.Column(db.String(200), default="")
    delivery_days = db.Column(db.Integer, nullable=True)
    total_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    notes = db.Column(db.Text, default="")

    is_selected = db.Column(db.Boolean, nullable=False, default=False)
    selected_by = db.Column(db.String(150), nullable=True)
    selected_date = db.Column(db.DateTime(timezone=True), nullable=True)
    selection_reason = db.Column(db.Text, nullable=True)

    version = db.Column(db.Integer, nullable=False, default=1)

    purchase_request = db.relationship("PurchaseRequest", back_populates="quotes")
    items = db.relationship(
        "PurchaseRequestQuoteItem", back_populates="quote",
        cascade="all, delete-orphan", order_by="PurchaseRequestQuoteItem.id",
    )

    __mapper_args__ = {"version_id_col": version}

    def recompute_total(self):
        total = sum((item.line_total for item in self.items), Decimal("0"))
        self.total_amount = total.quantize(MONEY_QUANT)
        return self.total_amount

    def to_dict(self, include_items=False):
        d = {
            "id": self.id,
            "purchase_request_id": self.purchase_request_id,
            "supplier_id": self.supplier_id,
            "supplier_name": self.supplier_name,
            "quote_reference": self.quote_reference,
            "submitted_date": self.submitted_date.isoformat() if self.submitted_date else None,
            "valid_until": self.valid_until.isoformat() if self.valid_until else None,
            "currency": self.currency,
            "payment_terms": self.payment_terms,
            "delivery_terms": self.delivery_terms,
            "delivery_days": self.delivery_days,
            "total_amount": str(self.total_amount) if self.total_amount is not None else None,
            "is_selected": self.is_selected,
            "selected_by": self.selected_by,
            "notes": self.notes,
            "version": self.version,
        }
        if include_items:
            d["items"] = [i.to_dict() for i in self.items]
        return d

    def __repr__(self):
        return f"<PurchaseRequestQuote {self.id}: supplier={self.supplier_id} total={self.total_amount}>"


class PurchaseRequestQuoteItem(TenantModel):
    """Price quoted for one request line."""

    __tablename__ = "purchase_request_quote_items"

    id = db.Column(db.Integer, primary_key=True)
    quote_id = db.Column(
        db.Integer, db.ForeignKey("purchase_request_quotes.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    line_id = db.Column(
        db.Integer, db.ForeignKey("purchase_request_lines.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    quantity = db.Column(db.Numeric(12, 3), nullable=False)
    unit_price = db.Column(db.Numeric(12, 4), nullable=False)
    discount_percent = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    tax_code = db.Column(db.String(20), default="")
    notes = db.Column(db.Text, default="")

    quote = db.relationship("PurchaseRequestQuote", back_populates="items")
    line = db.relationship("PurchaseRequestLine")

    @property
    def line_total(self) -> Decimal:
        qty = Decimal(str(self.quantity or 0))
        price = Decimal(str(self.unit_price or 0))
        discount = Decimal(str(self.discount_percent or 0))
        return (qty * price * (1 - discount / 100)).quantize(MONEY_QUANT)

    def to_dict(self):
        return {
            "id": self.id,
            "quote_id": self.quote_id,
            "line_id": self.line_id,
            "quantity": str(self.quantity) if self.quantity is not None else None,
            "unit_price": str(self.unit_price) if self.unit_price is not None else None,
            "discount_percent": str(self.discount_percent) if self.discount_percent is not None else None,
            "tax_code": self.tax_code,
            "line_total": str(self.line_total),
            "notes": self.notes,
        }
