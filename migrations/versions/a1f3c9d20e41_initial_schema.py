"""initial_schema

Stock units (profiles and sheets), profile remnants, the append-only usage
ledger, reservations, purchase requests with lines/quotes/items and the
audit trail.

Revision ID: a1f3c9d20e41
Revises:
Create Date: 2026-10-17 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "a1f3c9d20e41"
down_revision = None
branch_labels = None
depends_on = None


def _tenant_columns():
    return [
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def _soft_delete_columns():
    return [
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade():
    bind = op.get_bind()
    existing_tables = set(sa_inspect(bind).get_table_names())

    if "stock_units" not in existing_tables:
        op.create_table(
            "stock_units",
            sa.Column("id", sa.Integer(), nullable=False),
            *_tenant_columns(),
            *_soft_delete_columns(),
            sa.Column("kind", sa.String(length=20), nullable=False),
            sa.Column("code", sa.String(length=50), nullable=False),
            sa.Column("grade", sa.String(length=50), nullable=False, server_default=""),
            sa.Column("length_mm", sa.Integer(), nullable=False),
            sa.Column("weight_kg", sa.Numeric(12, 3), nullable=False, server_default="0"),
            sa.Column("heat_number", sa.String(length=50), nullable=True),
            sa.Column("certificate_ref", sa.String(length=100), nullable=True),
            sa.Column("unit_price", sa.Numeric(12, 2), nullable=False, server_default="0"),
            sa.Column("arrival_date", sa.Date(), nullable=True),
            sa.Column("supplier_name", sa.String(length=200), nullable=True),
            sa.Column("invoice_number", sa.String(length=50), nullable=True),
            sa.Column("project_id", sa.Integer(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("original_quantity", sa.BigInteger(), nullable=False),
            sa.Column("available_quantity", sa.BigInteger(), nullable=False),
            sa.Column("is_reserved", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            # profile
            sa.Column("profile_type", sa.String(length=50), nullable=True),
            sa.Column("dimension", sa.String(length=50), nullable=True),
            # sheet
            sa.Column("width_mm", sa.Integer(), nullable=True),
            sa.Column("thickness_mm", sa.Integer(), nullable=True),
            sa.Column("is_used", sa.Boolean(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("tenant_id", "kind", "code", name="uq_stock_units_tenant_kind_code"),
            sa.CheckConstraint(
                "available_quantity >= 0 AND available_quantity <= original_quantity",
                name="ck_stock_units_available_bounds",
            ),
        )
        op.create_index("ix_stock_units_tenant_id", "stock_units", ["tenant_id"])
        op.create_index("ix_stock_units_is_active", "stock_units", ["is_active"])
        op.create_index("ix_stock_units_project_id", "stock_units", ["project_id"])
        op.create_index("ix_stock_units_tenant_grade", "stock_units", ["tenant_id", "grade"])

    if "profile_remnants" not in existing_tables:
        op.create_table(
            "profile_remnants",
            sa.Column("id", sa.Integer(), nullable=False),
            *_tenant_columns(),
            sa.Column("stock_unit_id", sa.Integer(), nullable=False),
            sa.Column("remnant_id", sa.String(length=60), nullable=False),
            sa.Column("length_mm", sa.Integer(), nullable=False),
            sa.Column("available_length_mm", sa.Integer(), nullable=False),
            sa.Column("weight_kg", sa.Numeric(12, 3), nullable=False, server_default="0"),
            sa.Column("is_usable", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("is_used", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_by", sa.String(length=150), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.ForeignKeyConstraint(["stock_unit_id"], ["stock_units.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("tenant_id", "remnant_id", name="uq_profile_remnants_tenant_code"),
            sa.CheckConstraint(
                "available_length_mm >= 0 AND available_length_mm <= length_mm",
                name="ck_profile_remnants_available_bounds",
            ),
        )
        op.create_index("ix_profile_remnants_tenant_id", "profile_remnants", ["tenant_id"])
        op.create_index("ix_profile_remnants_stock_unit_id", "profile_remnants", ["stock_unit_id"])

    if "stock_usages" not in existing_tables:
        op.create_table(
            "stock_usages",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.String(length=64), nullable=False),
            sa.Column("kind", sa.String(length=20), nullable=False),
            sa.Column("stock_unit_id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=True),
            sa.Column("manufacturing_order_id", sa.Integer(), nullable=True),
            sa.Column("used_by", sa.String(length=150), nullable=False),
            sa.Column("used_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("used_length_mm", sa.Integer(), nullable=False),
            sa.Column("pieces_used", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("quantity_used", sa.BigInteger(), nullable=False),
            sa.Column("notes", sa.Text(), nullable=True),
            # profile
            sa.Column("remnant_id", sa.Integer(), nullable=True),
            sa.Column("remnant_created", sa.Boolean(), nullable=True),
            sa.Column("remnant_length_mm", sa.Integer(), nullable=True),
            sa.Column("produced_remnant_id", sa.Integer(), nullable=True),
            # sheet
            sa.Column("used_width_mm", sa.Integer(), nullable=True),
            sa.Column("nest_id", sa.String(length=50), nullable=True),
            sa.Column("generated_remnants", sa.Boolean(), nullable=True),
            sa.Column("remnant_details", sa.Text(), nullable=True),
            sa.ForeignKeyConstraint(["stock_unit_id"], ["stock_units.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["remnant_id"], ["profile_remnants.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["produced_remnant_id"], ["profile_remnants.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_stock_usages_tenant_id", "stock_usages", ["tenant_id"])
        op.create_index("ix_stock_usages_project_id", "stock_usages", ["project_id"])
        op.create_index("ix_stock_usages_manufacturing_order_id", "stock_usages",
                        ["manufacturing_order_id"])
        op.create_index("ix_stock_usages_remnant_id", "stock_usages", ["remnant_id"])
        op.create_index("ix_stock_usages_tenant_unit", "stock_usages", ["tenant_id", "stock_unit_id"])

    if "material_reservations" not in existing_tables:
        op.create_table(
            "material_reservations",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.String(length=64), nullable=False),
            sa.Column("stock_unit_id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=True),
            sa.Column("work_order_id", sa.Integer(), nullable=True),
            sa.Column("quantity", sa.BigInteger(), nullable=False),
            sa.Column("reserved_by", sa.String(length=150), nullable=False),
            sa.Column("reserved_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.ForeignKeyConstraint(["stock_unit_id"], ["stock_units.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.CheckConstraint("quantity > 0", name="ck_material_reservations_quantity_positive"),
        )
        op.create_index("ix_material_reservations_tenant_id", "material_reservations", ["tenant_id"])
        op.create_index("ix_material_reservations_tenant_unit", "material_reservations",
                        ["tenant_id", "stock_unit_id"])

    if "purchase_requests" not in existing_tables:
        op.create_table(
            "purchase_requests",
            sa.Column("id", sa.Integer(), nullable=False),
            *_tenant_columns(),
            *_soft_delete_columns(),
            sa.Column("number", sa.String(length=30), nullable=False),
            sa.Column("title", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("project_id", sa.Integer(), nullable=True),
            sa.Column("requested_by", sa.String(length=150), nullable=False),
            sa.Column("requested_date", sa.DateTime(timezone=True), nullable=False),
            sa.Column("required_date", sa.Date(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="draft"),
            sa.Column("sent_by", sa.String(length=150), nullable=True),
            sa.Column("sent_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("collecting_started_by", sa.String(length=150), nullable=True),
            sa.Column("collecting_started_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_by", sa.String(length=150), nullable=True),
            sa.Column("completed_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("canceled_by", sa.String(length=150), nullable=True),
            sa.Column("canceled_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("cancellation_reason", sa.Text(), nullable=True),
            sa.Column("winner_supplier_id", sa.Integer(), nullable=True),
            sa.Column("winner_quote_id", sa.Integer(), nullable=True),
            sa.Column("winner_selected_by", sa.String(length=150), nullable=True),
            sa.Column("winner_selected_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("winner_selection_reason", sa.Text(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("tenant_id", "number", name="uq_purchase_requests_tenant_number"),
        )
        op.create_index("ix_purchase_requests_tenant_id", "purchase_requests", ["tenant_id"])
        op.create_index("ix_purchase_requests_is_active", "purchase_requests", ["is_active"])
        op.create_index("ix_purchase_requests_project_id", "purchase_requests", ["project_id"])
        op.create_index("ix_purchase_requests_tenant_status", "purchase_requests",
                        ["tenant_id", "status"])

    if "purchase_request_lines" not in existing_tables:
        op.create_table(
            "purchase_request_lines",
            sa.Column("id", sa.Integer(), nullable=False),
            *_tenant_columns(),
            *_soft_delete_columns(),
            sa.Column("purchase_request_id", sa.Integer(), nullable=False),
            sa.Column("line_number", sa.Integer(), nullable=False),
            sa.Column("material_type", sa.String(length=20), nullable=False),
            sa.Column("grade", sa.String(length=50), nullable=True),
            sa.Column("profile_type", sa.String(length=50), nullable=True),
            sa.Column("thickness_mm", sa.Integer(), nullable=True),
            sa.Column("width_mm", sa.Integer(), nullable=True),
            sa.Column("length_mm", sa.Integer(), nullable=True),
            sa.Column("quantity", sa.Numeric(12, 3), nullable=False),
            sa.Column("unit_of_measure", sa.String(length=10), nullable=False, server_default="kg"),
            sa.Column("specifications", sa.Text(), nullable=True),
            sa.Column("required_date", sa.Date(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.ForeignKeyConstraint(["purchase_request_id"], ["purchase_requests.id"],
                                    ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_purchase_request_lines_tenant_id", "purchase_request_lines", ["tenant_id"])
        op.create_index("ix_purchase_request_lines_is_active", "purchase_request_lines", ["is_active"])
        op.create_index("ix_purchase_request_lines_purchase_request_id", "purchase_request_lines",
                        ["purchase_request_id"])

    if "purchase_request_quotes" not in existing_tables:
        op.create_table(
            "purchase_request_quotes",
            sa.Column("id", sa.Integer(), nullable=False),
            *_tenant_columns(),
            *_soft_delete_columns(),
            sa.Column("purchase_request_id", sa.Integer(), nullable=False),
            sa.Column("supplier_id", sa.Integer(), nullable=False),
            sa.Column("supplier_name", sa.String(length=200), nullable=True),
            sa.Column("quote_reference", sa.String(length=100), nullable=True),
            sa.Column("submitted_date", sa.DateTime(timezone=True), nullable=False),
            sa.Column("valid_until", sa.Date(), nullable=True),
            sa.Column("currency", sa.String(length=3), nullable=False, server_default="EUR"),
            sa.Column("payment_terms", sa.String(length=200), nullable=True),
            sa.Column("delivery_terms", sa.String(length=200), nullable=True),
            sa.Column("delivery_days", sa.Integer(), nullable=True),
            sa.Column("total_amount", sa.Numeric(14, 2), nullable=False, server_default="0"),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("is_selected", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("selected_by", sa.String(length=150), nullable=True),
            sa.Column("selected_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("selection_reason", sa.Text(), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.ForeignKeyConstraint(["purchase_request_id"], ["purchase_requests.id"],
                                    ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_purchase_request_quotes_tenant_id", "purchase_request_quotes", ["tenant_id"])
        op.create_index("ix_purchase_request_quotes_is_active", "purchase_request_quotes", ["is_active"])
        op.create_index("ix_purchase_request_quotes_purchase_request_id", "purchase_request_quotes",
                        ["purchase_request_id"])
        op.create_index("ix_pr_quotes_request_supplier", "purchase_request_quotes",
                        ["purchase_request_id", "supplier_id"])

    if "purchase_request_quote_items" not in existing_tables:
        op.create_table(
            "purchase_request_quote_items",
            sa.Column("id", sa.Integer(), nullable=False),
            *_tenant_columns(),
            sa.Column("quote_id", sa.Integer(), nullable=False),
            sa.Column("line_id", sa.Integer(), nullable=False),
            sa.Column("quantity", sa.Numeric(12, 3), nullable=False),
            sa.Column("unit_price", sa.Numeric(12, 4), nullable=False),
            sa.Column("discount_percent", sa.Numeric(5, 2), nullable=False, server_default="0"),
            sa.Column("tax_code", sa.String(length=20), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.ForeignKeyConstraint(["quote_id"], ["purchase_request_quotes.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["line_id"], ["purchase_request_lines.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_purchase_request_quote_items_tenant_id", "purchase_request_quote_items",
                        ["tenant_id"])
        op.create_index("ix_purchase_request_quote_items_quote_id", "purchase_request_quote_items",
                        ["quote_id"])
        op.create_index("ix_purchase_request_quote_items_line_id", "purchase_request_quote_items",
                        ["line_id"])

    if "audit_entries" not in existing_tables:
        op.create_table(
            "audit_entries",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.String(length=64), nullable=False),
            sa.Column("entity_type", sa.String(length=40), nullable=False),
            sa.Column("entity_id", sa.String(length=64), nullable=False),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("field_name", sa.String(length=60), nullable=True),
            sa.Column("old_value", sa.Text(), nullable=True),
            sa.Column("new_value", sa.Text(), nullable=True),
            sa.Column("reason", sa.Text(), nullable=True),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("user_name", sa.String(length=150), nullable=False),
            sa.Column("user_role", sa.String(length=50), nullable=True),
            sa.Column("correlation_id", sa.String(length=64), nullable=True),
            sa.Column("additional_context", sa.Text(), nullable=True),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_audit_entries_tenant_id", "audit_entries", ["tenant_id"])
        op.create_index("ix_audit_entries_correlation_id", "audit_entries", ["correlation_id"])
        op.create_index("idx_audit_entity", "audit_entries", ["tenant_id", "entity_type", "entity_id"])
        op.create_index("idx_audit_actor", "audit_entries", ["tenant_id", "user_id"])
        op.create_index("idx_audit_ts", "audit_entries", ["timestamp"])


def downgrade():
    existing_tables = set(sa_inspect(op.get_bind()).get_table_names())
    for table in (
        "audit_entries",
        "purchase_request_quote_items",
        "purchase_request_quotes",
        "purchase_request_lines",
        "purchase_requests",
        "material_reservations",
        "stock_usages",
        "profile_remnants",
        "stock_units",
    ):
        if table in existing_tables:
            op.drop_table(table)
