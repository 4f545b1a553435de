"""
Stock unit store tests.

Covers:
  - Lot id format (accept/reject table)
  - Profile and sheet receipt: quantities, uniqueness per tenant, validation
  - Tenant isolation on reads
  - Updates: audit snapshot, expected_version conflicts
  - Deletion guard and soft delete
  - Availability bounds enforced by the table check constraint
  - Remnant queries and sheet size filter
"""

import json
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from fabstock.core.exceptions import (
    ConflictError,
    DeletionNotAllowedError,
    DuplicateIdentityError,
    NotFoundError,
    ValidationError,
)
from fabstock.models import db
from fabstock.models.audit import AuditEntry
from fabstock.models.stock import is_valid_lot_id, proportional_weight
from fabstock.services import consumption_service, reservation_service, stock_service
from fabstock.services.consumption_service import ProfileUsageRequest


# ── Lot id format ────────────────────────────────────────────────────────────


@pytest.mark.parametrize("lot_id", ["A15", "Z1", "B0001", "Q123456"])
def test_lot_id_accepted(lot_id):
    assert is_valid_lot_id(lot_id)
    assert stock_service.validate_lot_id(lot_id) == lot_id


@pytest.mark.parametrize("lot_id", ["a15", "AA15", "A", "15", "A-15", "A15 ", " A15", "A15\n", "A1.5"])
def test_lot_id_rejected(lot_id):
    assert not is_valid_lot_id(lot_id)
    with pytest.raises(ValidationError, match="LotId must follow the pattern"):
        stock_service.validate_lot_id(lot_id)


@pytest.mark.parametrize("lot_id", ["", None])
def test_lot_id_required(lot_id):
    with pytest.raises(ValidationError, match="LotId is required"):
        stock_service.validate_lot_id(lot_id)


def test_get_by_lot_id_checks_format_before_lookup(tenant_id):
    with pytest.raises(ValidationError):
        stock_service.get_profile_by_lot_id(tenant_id, "bad")


# ── Receipt ──────────────────────────────────────────────────────────────────


def test_create_profile_starts_fully_available(make_profile):
    p = make_profile("A15", length_mm=12000, weight_kg="1000")
    assert p.lot_id == "A15"
    assert p.kind == "profile"
    assert p.original_quantity == 12000
    assert p.available_quantity == 12000
    assert p.is_reserved is False
    assert p.version == 1


def test_create_profile_writes_create_audit(make_profile, tenant_id):
    p = make_profile("A15")
    entries = AuditEntry.query.filter_by(tenant_id=tenant_id, entity_type="profile").all()
    assert len(entries) == 1
    assert entries[0].action == "create"
    assert entries[0].entity_id == str(p.id)
    assert entries[0].new_value == "A15"
    assert entries[0].user_name == "Ada Operator"


def test_duplicate_lot_id_in_same_tenant_rejected(make_profile):
    make_profile("A15")
    with pytest.raises(DuplicateIdentityError):
        make_profile("A15")


def test_same_lot_id_allowed_in_other_tenant(make_profile, other_tenant_id):
    make_profile("A15")
    other = make_profile("A15", tenant=other_tenant_id)
    assert other.tenant_id == other_tenant_id


@pytest.mark.parametrize("field,value,message", [
    ("length_mm", 0, "Length must be greater than 0."),
    ("weight_kg", "0", "Weight must be greater than 0."),
    ("weight_kg", "-3", "Weight must be greater than 0."),
])
def test_create_profile_validation(make_profile, field, value, message):
    with pytest.raises(ValidationError, match=message):
        make_profile("A15", **{field: value})


def test_create_profile_without_actor_rejected(tenant_id):
    with pytest.raises(ValidationError):
        stock_service.create_profile(
            tenant_id, {"lot_id": "A15", "length_mm": 100, "weight_kg": "1"}, actor=None,
        )


def test_create_sheet_quantity_is_area(make_sheet):
    s = make_sheet("SH-1", length_mm=3000, width_mm=1500)
    assert s.sheet_id == "SH-1"
    assert s.original_quantity == 4_500_000
    assert s.available_quantity == 4_500_000
    assert s.available_quantity_unit == "mm2"
    assert s.size_label == "3000x1500"
    assert s.is_used is False


def test_create_sheet_requires_grade(make_sheet):
    with pytest.raises(ValidationError, match="Grade is required"):
        make_sheet("SH-1", grade="")


def test_create_sheet_requires_positive_dimensions(make_sheet):
    with pytest.raises(ValidationError, match="Length, Width, and Thickness"):
        make_sheet("SH-1", thickness_mm=0)


# ── Reads & tenant isolation ─────────────────────────────────────────────────


def test_cross_tenant_read_is_not_found(make_profile, other_tenant_id):
    p = make_profile("A15")
    with pytest.raises(NotFoundError):
        stock_service.get_profile(other_tenant_id, p.id)
    with pytest.raises(NotFoundError):
        stock_service.get_profile_by_lot_id(other_tenant_id, "A15")


def test_unscoped_lookup_rejected(make_profile):
    p = make_profile("A15")
    with pytest.raises(ValueError):
        stock_service.get_profile("", p.id)


def test_list_profiles_search_and_filters(make_profile, tenant_id):
    make_profile("A1", grade="S355", profile_type="HEA", dimension="200x200")
    make_profile("B2", grade="S235", profile_type="IPE", dimension="300x150")
    assert [p.lot_id for p in stock_service.list_profiles(tenant_id)] == ["A1", "B2"]
    assert [p.lot_id for p in stock_service.list_profiles(tenant_id, grade="S235")] == ["B2"]
    assert [p.lot_id for p in stock_service.list_profiles(tenant_id, search="ipe")] == ["B2"]
    assert [p.lot_id for p in stock_service.list_profiles(tenant_id, search="200x")] == ["A1"]


def test_list_sheets_size_filter_matches_both_orientations(make_sheet, tenant_id):
    make_sheet("SH-1", length_mm=3000, width_mm=1500)
    make_sheet("SH-2", length_mm=2000, width_mm=1000)
    assert [s.sheet_id for s in stock_service.list_sheets(tenant_id, size_filter="3000x1500")] == ["SH-1"]
    assert [s.sheet_id for s in stock_service.list_sheets(tenant_id, size_filter="1500x3000")] == ["SH-1"]
    assert len(stock_service.list_sheets(tenant_id, thickness_mm=10)) == 2


# ── Updates ──────────────────────────────────────────────────────────────────


def test_update_profile_audits_changed_fields(make_profile, tenant_id, actor):
    p = make_profile("A15", grade="S355")
    stock_service.update_profile(tenant_id, p.id, {"grade": "S460", "notes": ""}, actor=actor)

    entry = (
        AuditEntry.query.filter_by(tenant_id=tenant_id, action="update")
        .order_by(AuditEntry.id.desc()).first()
    )
    assert json.loads(entry.old_value) == {"grade": "S355"}
    assert json.loads(entry.new_value) == {"grade": "S460"}
    assert stock_service.get_profile(tenant_id, p.id).version == 2


def test_update_profile_rejects_stale_expected_version(make_profile, tenant_id, actor):
    p = make_profile("A15")
    with pytest.raises(ConflictError) as exc_info:
        stock_service.update_profile(tenant_id, p.id, {"grade": "S460"}, actor=actor,
                                     expected_version=7)
    assert exc_info.value.expected_version == 7
    assert exc_info.value.actual_version == 1
    assert stock_service.get_profile(tenant_id, p.id).grade == "S355"


def test_rename_lot_id_rechecks_format_and_uniqueness(make_profile, tenant_id, actor):
    make_profile("A1")
    p = make_profile("A2")
    with pytest.raises(ValidationError):
        stock_service.update_profile(tenant_id, p.id, {"lot_id": "x2"}, actor=actor)
    with pytest.raises(DuplicateIdentityError):
        stock_service.update_profile(tenant_id, p.id, {"lot_id": "A1"}, actor=actor)
    renamed = stock_service.update_profile(tenant_id, p.id, {"lot_id": "C9"}, actor=actor)
    assert renamed.lot_id == "C9"


def test_rename_with_field_changes_is_one_version_bump(make_profile, tenant_id, actor):
    p = make_profile("A15")
    updated = stock_service.update_profile(tenant_id, p.id, {"notes": "x", "lot_id": "A16"},
                                           actor=actor, expected_version=1)
    assert (updated.lot_id, updated.notes, updated.version) == ("A16", "x", 2)

    again = stock_service.update_profile(tenant_id, p.id, {"grade": "S460"}, actor=actor,
                                         expected_version=2)
    assert again.version == 3

    entry = (
        AuditEntry.query.filter_by(tenant_id=tenant_id, action="update")
        .order_by(AuditEntry.id).first()
    )
    assert json.loads(entry.new_value) == {"notes": "x", "lot_id": "A16"}


def test_rejected_rename_leaves_other_fields_unchanged(make_profile, tenant_id, actor):
    make_profile("A1")
    p = make_profile("A2", grade="S355")
    with pytest.raises(DuplicateIdentityError):
        stock_service.update_profile(tenant_id, p.id, {"grade": "S460", "lot_id": "A1"},
                                     actor=actor)
    current = stock_service.get_profile(tenant_id, p.id)
    assert (current.grade, current.version) == ("S355", 1)


# ── Deletion ─────────────────────────────────────────────────────────────────


def test_delete_unused_profile_is_soft(make_profile, tenant_id, actor):
    p = make_profile("A15")
    assert stock_service.can_delete_profile(tenant_id, p.id)
    stock_service.delete_profile(tenant_id, p.id, actor=actor)

    assert stock_service.list_profiles(tenant_id) == []
    with pytest.raises(NotFoundError):
        stock_service.get_profile(tenant_id, p.id)
    assert AuditEntry.query.filter_by(action="delete", entity_id=str(p.id)).count() == 1


def test_delete_used_profile_blocked(make_profile, tenant_id, actor):
    p = make_profile("A15")
    consumption_service.consume_stock(
        tenant_id, p.id, ProfileUsageRequest(used_length_mm=100, used_by="Ada"), actor=actor,
    )
    assert not stock_service.can_delete_profile(tenant_id, p.id)
    with pytest.raises(DeletionNotAllowedError, match="has been used"):
        stock_service.delete_profile(tenant_id, p.id, actor=actor)
    assert stock_service.get_profile(tenant_id, p.id).is_active


# ── Availability bounds ──────────────────────────────────────────────────────


def test_available_above_original_rejected_by_store(make_profile, tenant_id):
    p = make_profile("A15", length_mm=5000)
    p.available_quantity = 5001
    with pytest.raises(IntegrityError):
        db.session.commit()
    db.session.rollback()


def test_negative_available_rejected_by_store(make_profile, tenant_id):
    p = make_profile("A15", length_mm=5000)
    p.available_quantity = -1
    with pytest.raises(IntegrityError):
        db.session.commit()
    db.session.rollback()


# ── Remnants ─────────────────────────────────────────────────────────────────


def test_proportional_weight():
    assert proportional_weight(Decimal("1000"), 2000, 12000) == Decimal("166.667")
    assert proportional_weight(Decimal("1000"), 2000, 0) == Decimal("0.000")
    assert proportional_weight(None, 2000, 12000) == Decimal("0.000")


def test_usable_remnants_filter_by_length_and_grade(make_profile, tenant_id, actor):
    a = make_profile("A1", grade="S355")
    b = make_profile("B1", grade="S235")
    consumption_service.consume_stock(
        tenant_id, a.id,
        ProfileUsageRequest(used_length_mm=1000, used_by="Ada", remnant_length_mm=2500),
        actor=actor,
    )
    consumption_service.consume_stock(
        tenant_id, b.id,
        ProfileUsageRequest(used_length_mm=1000, used_by="Ada", remnant_length_mm=800),
        actor=actor,
    )

    all_usable = stock_service.list_usable_remnants(tenant_id)
    assert [r.remnant_id for r in all_usable] == ["A1-R1", "B1-R1"]
    assert [r.remnant_id for r in stock_service.list_usable_remnants(tenant_id, min_length_mm=1000)] == ["A1-R1"]
    assert [r.remnant_id for r in stock_service.list_usable_remnants(tenant_id, grade="S235")] == ["B1-R1"]
    assert [r.remnant_id for r in stock_service.list_remnants(tenant_id, a.id)] == ["A1-R1"]


def test_list_available_profiles_excludes_reserved_and_empty(make_profile, tenant_id, actor):
    free = make_profile("A1", length_mm=1000)
    held = make_profile("B2", length_mm=1000)
    empty = make_profile("C3", length_mm=1000)
    reservation_service.reserve(tenant_id, held.id, 1000, actor=actor)
    consumption_service.consume_stock(
        tenant_id, empty.id, ProfileUsageRequest(used_length_mm=1000, used_by="Ada"), actor=actor,
    )
    assert [p.lot_id for p in stock_service.list_available_profiles(tenant_id)] == [free.lot_id]


# ── Sheet update / delete ────────────────────────────────────────────────────


def test_update_sheet_and_delete_unused(make_sheet, tenant_id, actor):
    s = make_sheet("SH-1", thickness_mm=10)
    updated = stock_service.update_sheet(tenant_id, s.id, {"thickness_mm": "12", "sheet_id": "SH-9"},
                                         actor=actor, expected_version=1)
    assert (updated.thickness_mm, updated.sheet_id, updated.version) == (12, "SH-9", 2)

    with pytest.raises(ValidationError):
        stock_service.update_sheet(tenant_id, s.id, {"grade": " "}, actor=actor)

    assert stock_service.can_delete_sheet(tenant_id, s.id)
    stock_service.delete_sheet(tenant_id, s.id, actor=actor)
    assert stock_service.list_sheets(tenant_id) == []
