"""
Stock unit store: service layer.

Business logic for:
    - Profile CRUD:     lot id format (A15), positive length/weight, tenant-unique lot id
    - Sheet CRUD:       grade + positive length/width/thickness, tenant-unique sheet id
    - Deletion guard:   soft delete only while not reserved, never used, no remnants
    - Remnant queries:  remnants of one lot, usable remnants across the tenant

Quantities (``original_quantity``/``available_quantity``) are set at receipt
and afterwards only move through services/consumption_service.py.
"""

import logging

from sqlalchemy import String, cast, func, or_, select

from fabstock.core.actor import require_actor
from fabstock.core.exceptions import (
    DeletionNotAllowedError,
    DuplicateIdentityError,
    NotFoundError,
    ValidationError,
)
from fabstock.models import db
from fabstock.models.audit import write_audit
from fabstock.models.reservation import MaterialReservation
from fabstock.models.stock import Profile, ProfileRemnant, Sheet, StockUnit, is_valid_lot_id
from fabstock.models.usage import SheetUsage, StockUsage
from fabstock.services.helpers.fields import apply_changes, parse_date, to_decimal, to_int
from fabstock.services.helpers.scoped_queries import get_scoped, scoped_select
from fabstock.services.helpers.unit_of_work import check_expected_version, run_with_retry

logger = logging.getLogger(__name__)

_COMMON_FIELDS = (
    "grade", "heat_number", "certificate_ref", "unit_price", "arrival_date",
    "supplier_name", "invoice_number", "project_id", "notes", "weight_kg",
)
_PROFILE_FIELDS = _COMMON_FIELDS + ("profile_type", "dimension")
_SHEET_FIELDS = _COMMON_FIELDS + ("thickness_mm",)

_CONVERTERS = {
    "unit_price": lambda v: to_decimal(v, "unit_price"),
    "weight_kg": lambda v: to_decimal(v, "weight_kg"),
    "arrival_date": lambda v: parse_date(v, "arrival_date"),
    "thickness_mm": lambda v: to_int(v, "thickness_mm"),
}


# ── Validation ───────────────────────────────────────────────────────────────


def validate_lot_id(lot_id) -> str:
    """Return *lot_id* if it is one uppercase letter followed by digits."""
    if not lot_id:
        raise ValidationError("LotId is required.", details={"lot_id": "required"})
    if not is_valid_lot_id(lot_id):
        raise ValidationError(
            "LotId must follow the pattern: one uppercase letter followed by "
            "numbers (e.g., A15).",
            details={"lot_id": lot_id},
        )
    return lot_id


def _validate_profile_data(data: dict, *, creating: bool):
    if creating or "lot_id" in data:
        validate_lot_id(data.get("lot_id"))
    if creating:
        if to_int(data.get("length_mm", 0), "length_mm") <= 0:
            raise ValidationError("Length must be greater than 0.", details={"length_mm": data.get("length_mm")})
    if creating or "weight_kg" in data:
        if to_decimal(data.get("weight_kg", 0), "weight_kg") <= 0:
            raise ValidationError("Weight must be greater than 0.", details={"weight_kg": data.get("weight_kg")})


def _validate_sheet_data(data: dict, *, creating: bool):
    if creating or "sheet_id" in data:
        if not (data.get("sheet_id") or "").strip():
            raise ValidationError("SheetId is required.", details={"sheet_id": "required"})
    if creating or "grade" in data:
        if not (data.get("grade") or "").strip():
            raise ValidationError("Grade is required.", details={"grade": "required"})
    dims = ("length_mm", "width_mm", "thickness_mm") if creating else ("thickness_mm",)
    for f in dims:
        if (creating or f in data) and to_int(data.get(f, 0), f) <= 0:
            raise ValidationError(
                "Length, Width, and Thickness must be greater than 0.",
                details={f: data.get(f)},
            )
    if "weight_kg" in data and to_decimal(data["weight_kg"], "weight_kg") < 0:
        raise ValidationError("Weight cannot be negative.", details={"weight_kg": data["weight_kg"]})


def _ensure_unique_code(model, tenant_id, code, *, field, exclude_id=None):
    # Soft-deleted rows still hold their code (unique constraint spans them)
    stmt = scoped_select(model, tenant_id, include_inactive=True).where(model.code == code)
    if exclude_id is not None:
        stmt = stmt.where(model.id != exclude_id)
    if db.session.execute(stmt).first() is not None:
        raise DuplicateIdentityError(model.__name__, field, code)


# ── Profile CRUD ─────────────────────────────────────────────────────────────


def list_profiles(tenant_id, *, grade=None, profile_type=None, search=None) -> list[Profile]:
    """Active profiles ordered by lot id.

    ``search`` matches lot id, dimension, heat number, grade and profile
    type (case-insensitive substring).
    """
    stmt = scoped_select(Profile, tenant_id)
    if grade:
        stmt = stmt.where(Profile.grade == grade)
    if profile_type:
        stmt = stmt.where(Profile.profile_type == profile_type)
    if search:
        like = f"%{search}%"
        stmt = stmt.where(or_(
            Profile.code.ilike(like),
            Profile.dimension.ilike(like),
            Profile.heat_number.ilike(like),
            Profile.grade.ilike(like),
            Profile.profile_type.ilike(like),
        ))
    return list(db.session.execute(stmt.order_by(Profile.code)).scalars())


def list_available_profiles(tenant_id, *, grade=None, profile_type=None) -> list[Profile]:
    """Profiles that are not reserved and still have length left."""
    stmt = scoped_select(Profile, tenant_id).where(
        Profile.is_reserved.is_(False),
        Profile.available_quantity > 0,
    )
    if grade:
        stmt = stmt.where(Profile.grade == grade)
    if profile_type:
        stmt = stmt.where(Profile.profile_type == profile_type)
    return list(db.session.execute(stmt.order_by(Profile.code)).scalars())


def get_profile(tenant_id, profile_id) -> Profile:
    return get_scoped(Profile, profile_id, tenant_id=tenant_id)


def get_profile_by_lot_id(tenant_id, lot_id) -> Profile:
    """Look a profile up by its lot id; the format is checked first."""
    validate_lot_id(lot_id)
    stmt = scoped_select(Profile, tenant_id).where(Profile.code == lot_id)
    profile = db.session.execute(stmt).scalar_one_or_none()
    if profile is None:
        raise NotFoundError(resource="Profile", resource_id=lot_id, tenant_id=tenant_id)
    return profile


def create_profile(tenant_id, data: dict, *, actor) -> Profile:
    """Receive a new profile lot.

    ``available_quantity`` starts equal to ``length_mm``.

    Raises:
        ValidationError: bad lot id format, non-positive length or weight.
        DuplicateIdentityError: lot id already used in this tenant.
    """
    require_actor(actor)
    _validate_profile_data(data, creating=True)
    length = to_int(data["length_mm"], "length_mm")

    def _apply():
        _ensure_unique_code(Profile, tenant_id, data["lot_id"], field="lot_id")
        profile = Profile(
            tenant_id=tenant_id,
            code=data["lot_id"],
            length_mm=length,
            original_quantity=length,
            available_quantity=length,
            grade=data.get("grade", ""),
            profile_type=data.get("profile_type"),
            dimension=data.get("dimension"),
            weight_kg=to_decimal(data["weight_kg"], "weight_kg"),
            heat_number=data.get("heat_number", ""),
            certificate_ref=data.get("certificate_ref"),
            unit_price=to_decimal(data.get("unit_price", 0), "unit_price"),
            arrival_date=parse_date(data.get("arrival_date"), "arrival_date"),
            supplier_name=data.get("supplier_name", ""),
            invoice_number=data.get("invoice_number", ""),
            project_id=data.get("project_id"),
            notes=data.get("notes", ""),
        )
        db.session.add(profile)
        db.session.flush()
        write_audit(
            tenant_id=tenant_id, entity_type="profile", entity_id=profile.id,
            action="create", actor=actor, new_value=profile.code,
        )
        return profile

    profile = run_with_retry(_apply, resource="Profile", resource_id=data["lot_id"])

    logger.info("Profile created id=%s lot_id=%s", profile.id, profile.code,
                extra={"tenant_id": tenant_id, "lot_id": profile.code})
    return profile


def update_profile(tenant_id, profile_id, data: dict, *, actor, expected_version=None) -> Profile:
    """Update descriptive fields of a profile.

    Length and quantities are not updatable here. Renaming the lot id
    re-runs the format and uniqueness checks.
    """
    require_actor(actor)
    _validate_profile_data(data, creating=False)
    return _update_stock_unit(Profile, "profile", "lot_id", _PROFILE_FIELDS,
                              tenant_id, profile_id, data, actor, expected_version)


def _update_stock_unit(model, entity_type, code_field, fields, tenant_id, unit_id, data,
                       actor, expected_version):
    def _apply():
        unit = get_scoped(model, unit_id, tenant_id=tenant_id, lock=True)
        check_expected_version(unit, expected_version, model.__name__)
        # Uniqueness SELECT runs before any attribute changes so it cannot
        # autoflush a partial UPDATE (one write, one version bump)
        new_code = data.get(code_field, unit.code)
        if new_code != unit.code:
            _ensure_unique_code(model, tenant_id, new_code, field=code_field,
                                exclude_id=unit.id)
        changes = apply_changes(unit, data, fields, _CONVERTERS)
        if new_code != unit.code:
            changes[code_field] = {"old": unit.code, "new": new_code}
            unit.code = new_code
        if changes:
            write_audit(
                tenant_id=tenant_id, entity_type=entity_type, entity_id=unit.id,
                action="update", actor=actor,
                old_value={k: v["old"] for k, v in changes.items()},
                new_value={k: v["new"] for k, v in changes.items()},
            )
        return unit, changes

    unit, changes = run_with_retry(_apply, resource=model.__name__, resource_id=unit_id)
    logger.info("%s updated id=%s fields=%s", model.__name__, unit.id, sorted(changes),
                extra={"tenant_id": tenant_id})
    return unit


def _usage_count(stock_unit_id) -> int:
    return db.session.execute(
        select(func.count(StockUsage.id)).where(StockUsage.stock_unit_id == stock_unit_id)
    ).scalar_one()


def _remnant_count(stock_unit_id) -> int:
    return db.session.execute(
        select(func.count(ProfileRemnant.id)).where(ProfileRemnant.stock_unit_id == stock_unit_id)
    ).scalar_one()


def _reservation_count(stock_unit_id) -> int:
    return db.session.execute(
        select(func.count(MaterialReservation.id))
        .where(MaterialReservation.stock_unit_id == stock_unit_id)
    ).scalar_one()


def _delete_block_reason(unit: StockUnit) -> str | None:
    if unit.is_reserved or _reservation_count(unit.id):
        return "stock unit is reserved"
    if _usage_count(unit.id):
        return "stock unit has been used"
    if _remnant_count(unit.id):
        return "stock unit has remnants"
    if isinstance(unit, Sheet) and unit.is_used:
        return "sheet has been used"
    return None


def can_delete_profile(tenant_id, profile_id) -> bool:
    return _delete_block_reason(get_profile(tenant_id, profile_id)) is None


def delete_profile(tenant_id, profile_id, *, actor) -> None:
    """Soft-delete a profile that was never reserved, used, or cut."""
    _delete_stock_unit(Profile, "profile", tenant_id, profile_id, actor)


def _delete_stock_unit(model, entity_type, tenant_id, unit_id, actor):
    require_actor(actor)

    def _apply():
        unit = get_scoped(model, unit_id, tenant_id=tenant_id, lock=True)
        reason = _delete_block_reason(unit)
        if reason:
            logger.warning("%s delete blocked id=%s: %s", model.__name__, unit_id, reason,
                           extra={"tenant_id": tenant_id})
            raise DeletionNotAllowedError(model.__name__, unit_id, reason)
        unit.soft_delete()
        write_audit(
            tenant_id=tenant_id, entity_type=entity_type, entity_id=unit.id,
            action="delete", actor=actor, field_name="is_active",
            old_value=True, new_value=False,
        )

    run_with_retry(_apply, resource=model.__name__, resource_id=unit_id)
    logger.info("%s deleted id=%s", model.__name__, unit_id, extra={"tenant_id": tenant_id})


# ── Sheet CRUD ───────────────────────────────────────────────────────────────


def _sheet_filters(stmt, thickness_mm, size_filter):
    if thickness_mm:
        stmt = stmt.where(Sheet.thickness_mm == thickness_mm)
    if size_filter:
        like = f"%{size_filter}%"
        as_text = cast(Sheet.length_mm, String) + "x" + cast(Sheet.width_mm, String)
        swapped = cast(Sheet.width_mm, String) + "x" + cast(Sheet.length_mm, String)
        stmt = stmt.where(or_(as_text.like(like), swapped.like(like)))
    return stmt.order_by(Sheet.grade, Sheet.thickness_mm, Sheet.length_mm)


def list_sheets(tenant_id, *, thickness_mm=None, size_filter=None) -> list[Sheet]:
    """Active sheets; ``size_filter`` matches "LxW" in either orientation."""
    stmt = _sheet_filters(scoped_select(Sheet, tenant_id), thickness_mm, size_filter)
    return list(db.session.execute(stmt).scalars())


def list_remnant_sheets(tenant_id, *, thickness_mm=None, size_filter=None) -> list[Sheet]:
    """Sheets whose nests produced reusable offcuts."""
    with_remnants = select(SheetUsage.stock_unit_id).where(
        SheetUsage.tenant_id == tenant_id,
        SheetUsage.generated_remnants.is_(True),
    )
    stmt = scoped_select(Sheet, tenant_id).where(Sheet.id.in_(with_remnants))
    stmt = _sheet_filters(stmt, thickness_mm, size_filter)
    return list(db.session.execute(stmt).scalars())


def get_sheet(tenant_id, sheet_pk) -> Sheet:
    return get_scoped(Sheet, sheet_pk, tenant_id=tenant_id)


def create_sheet(tenant_id, data: dict, *, actor) -> Sheet:
    """Receive a new sheet; its quantity is the plate area in mm²."""
    require_actor(actor)
    _validate_sheet_data(data, creating=True)
    length = to_int(data["length_mm"], "length_mm")
    width = to_int(data["width_mm"], "width_mm")
    area = length * width

    def _apply():
        _ensure_unique_code(Sheet, tenant_id, data["sheet_id"], field="sheet_id")
        sheet = Sheet(
            tenant_id=tenant_id,
            code=data["sheet_id"],
            grade=data["grade"],
            length_mm=length,
            width_mm=width,
            thickness_mm=to_int(data["thickness_mm"], "thickness_mm"),
            original_quantity=area,
            available_quantity=area,
            is_used=False,
            weight_kg=to_decimal(data.get("weight_kg", 0), "weight_kg"),
            heat_number=data.get("heat_number", ""),
            certificate_ref=data.get("certificate_ref"),
            unit_price=to_decimal(data.get("unit_price", 0), "unit_price"),
            arrival_date=parse_date(data.get("arrival_date"), "arrival_date"),
            supplier_name=data.get("supplier_name", ""),
            invoice_number=data.get("invoice_number", ""),
            project_id=data.get("project_id"),
            notes=data.get("notes", ""),
        )
        db.session.add(sheet)
        db.session.flush()
        write_audit(
            tenant_id=tenant_id, entity_type="sheet", entity_id=sheet.id,
            action="create", actor=actor, new_value=sheet.code,
        )
        return sheet

    sheet = run_with_retry(_apply, resource="Sheet", resource_id=data["sheet_id"])

    logger.info("Sheet created id=%s sheet_id=%s", sheet.id, sheet.code,
                extra={"tenant_id": tenant_id})
    return sheet


def update_sheet(tenant_id, sheet_pk, data: dict, *, actor, expected_version=None) -> Sheet:
    require_actor(actor)
    _validate_sheet_data(data, creating=False)

    return _update_stock_unit(Sheet, "sheet", "sheet_id", _SHEET_FIELDS,
                              tenant_id, sheet_pk, data, actor, expected_version)


def can_delete_sheet(tenant_id, sheet_pk) -> bool:
    return _delete_block_reason(get_sheet(tenant_id, sheet_pk)) is None


def delete_sheet(tenant_id, sheet_pk, *, actor) -> None:
    _delete_stock_unit(Sheet, "sheet", tenant_id, sheet_pk, actor)


# ── Remnant queries ──────────────────────────────────────────────────────────


def list_remnants(tenant_id, stock_unit_id) -> list[ProfileRemnant]:
    """All remnants cut from one lot, oldest first."""
    get_scoped(StockUnit, stock_unit_id, tenant_id=tenant_id, include_inactive=True)
    stmt = (
        scoped_select(ProfileRemnant, tenant_id)
        .where(ProfileRemnant.stock_unit_id == stock_unit_id)
        .order_by(ProfileRemnant.created_at, ProfileRemnant.id)
    )
    return list(db.session.execute(stmt).scalars())


def list_usable_remnants(tenant_id, *, grade=None, min_length_mm=None) -> list[ProfileRemnant]:
    """Remnants still available for cutting, longest first."""
    stmt = (
        scoped_select(ProfileRemnant, tenant_id)
        .join(StockUnit, ProfileRemnant.stock_unit_id == StockUnit.id)
        .where(
            ProfileRemnant.is_usable.is_(True),
            ProfileRemnant.is_used.is_(False),
            ProfileRemnant.available_length_mm > 0,
        )
    )
    if grade:
        stmt = stmt.where(StockUnit.grade == grade)
    if min_length_mm is not None:
        stmt = stmt.where(ProfileRemnant.available_length_mm >= min_length_mm)
    stmt = stmt.order_by(ProfileRemnant.available_length_mm.desc(), ProfileRemnant.id)
    return list(db.session.execute(stmt).scalars())
