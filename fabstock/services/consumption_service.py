"""
Consumption engine: service layer.

Applies one usage request against a profile lot, a sheet, or a profile
remnant. Each call is one unit of work that

    1. re-reads the source row under a row lock,
    2. checks the requested quantity against what is left,
    3. decrements the available quantity and re-derives ``is_reserved``,
    4. creates the remnant the cut produced (profiles only, optional),
    5. appends the usage record and an audit entry.

Either all of that commits or none of it does. Stale versions (a
concurrent consumer committed first) are retried from step 1 up to
CONSUMPTION_MAX_RETRIES times, then surface as ConflictError.

Quantities: profiles and remnants in mm of length, sheets in mm² of area.
"""

import json
import logging
from dataclasses import dataclass, field

from sqlalchemy import func, select

from fabstock.core.actor import require_actor
from fabstock.core.exceptions import InsufficientStockError, NotFoundError, ValidationError
from fabstock.models import db
from fabstock.models.audit import write_audit
from fabstock.models.stock import (
    Profile,
    ProfileRemnant,
    Sheet,
    StockUnit,
    is_fully_reserved,
    proportional_weight,
)
from fabstock.models.usage import ProfileUsage, SheetUsage, StockUsage
from fabstock.services.helpers.scoped_queries import get_scoped, scoped_select
from fabstock.services.helpers.unit_of_work import run_with_retry
from fabstock.services.reservation_service import reserved_total
from fabstock.services.stock_service import validate_lot_id

logger = logging.getLogger(__name__)


# ── Requests ─────────────────────────────────────────────────────────────────


def _positive_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


@dataclass
class ProfileUsageRequest:
    """Cut ``pieces_used`` pieces of ``used_length_mm`` from a profile or remnant."""

    used_length_mm: int
    used_by: str
    pieces_used: int = 1
    remnant_length_mm: int | None = None
    project_id: int | None = None
    manufacturing_order_id: int | None = None
    notes: str = ""

    @property
    def total_needed(self) -> int:
        return self.used_length_mm * self.pieces_used

    def validate(self):
        errors = {}
        if not _positive_int(self.used_length_mm):
            errors["used_length_mm"] = "must be a positive integer"
        if not _positive_int(self.pieces_used):
            errors["pieces_used"] = "must be a positive integer"
        if not (self.used_by or "").strip():
            errors["used_by"] = "required"
        if self.remnant_length_mm is not None and (
            isinstance(self.remnant_length_mm, bool)
            or not isinstance(self.remnant_length_mm, int)
            or self.remnant_length_mm < 0
        ):
            errors["remnant_length_mm"] = "must be zero or a positive integer"
        if errors:
            raise ValidationError("Invalid profile usage request", details=errors)
        return self


@dataclass
class SheetUsageRequest:
    """Nest ``pieces_used`` parts of ``used_length_mm`` x ``used_width_mm`` on a sheet.

    ``remnants`` lists the reusable offcuts as ``{"length_mm", "width_mm"}``
    dicts; they are recorded on the usage, not tracked as separate stock.
    """

    used_length_mm: int
    used_width_mm: int
    used_by: str
    pieces_used: int = 1
    nest_id: str = ""
    remnants: list = field(default_factory=list)
    project_id: int | None = None
    manufacturing_order_id: int | None = None
    notes: str = ""

    @property
    def total_needed(self) -> int:
        return self.used_length_mm * self.used_width_mm * self.pieces_used

    def validate(self):
        errors = {}
        for name in ("used_length_mm", "used_width_mm", "pieces_used"):
            if not _positive_int(getattr(self, name)):
                errors[name] = "must be a positive integer"
        if not (self.used_by or "").strip():
            errors["used_by"] = "required"
        for i, rem in enumerate(self.remnants or []):
            if not isinstance(rem, dict) or not all(
                _positive_int(rem.get(k)) for k in ("length_mm", "width_mm")
            ):
                errors[f"remnants[{i}]"] = "needs positive length_mm and width_mm"
        if errors:
            raise ValidationError("Invalid sheet usage request", details=errors)
        return self


# ── Internals ────────────────────────────────────────────────────────────────


def _load_stock_unit(model, tenant_id, stock_unit_id):
    return get_scoped(model, stock_unit_id, tenant_id=tenant_id, lock=True)


def _load_profile_by_lot(tenant_id, lot_id):
    stmt = scoped_select(Profile, tenant_id, lock=True).where(Profile.code == lot_id)
    profile = db.session.execute(stmt).scalar_one_or_none()
    if profile is None:
        raise NotFoundError(resource="Profile", resource_id=lot_id, tenant_id=tenant_id)
    return profile


def _check_available(required, available, resource_id, tenant_id):
    if required > available:
        logger.warning(
            "Insufficient stock on %s: required=%s available=%s",
            resource_id, required, available,
            extra={"tenant_id": tenant_id, "entity_id": resource_id,
                   "required": required, "available": available},
        )
        raise InsufficientStockError(required=required, available=available,
                                     resource_id=resource_id)


def _next_remnant_code(parent: StockUnit) -> str:
    count = db.session.execute(
        select(func.count(ProfileRemnant.id)).where(ProfileRemnant.stock_unit_id == parent.id)
    ).scalar_one()
    return f"{parent.code}-R{count + 1}"


def _create_remnant(parent: StockUnit, length_mm: int, actor) -> ProfileRemnant:
    remnant = ProfileRemnant(
        tenant_id=parent.tenant_id,
        stock_unit_id=parent.id,
        remnant_id=_next_remnant_code(parent),
        length_mm=length_mm,
        available_length_mm=length_mm,
        weight_kg=proportional_weight(parent.weight_kg, length_mm, parent.original_quantity),
        is_usable=True,
        is_used=False,
        created_by=actor.user_name,
    )
    db.session.add(remnant)
    db.session.flush()
    return remnant


def _lower_available(unit: StockUnit, quantity) -> dict:
    """Decrement *unit* and re-derive its reserved flag in the same write.

    Returns ``{"is_reserved": new}`` when the flag flipped, else ``{}``.
    """
    # Read before mutating: the SUM query would otherwise autoflush the
    # decrement as a separate UPDATE
    reserved = reserved_total(unit.id)
    was_reserved = unit.is_reserved
    unit.available_quantity -= quantity
    unit.is_reserved = is_fully_reserved(reserved, unit.available_quantity)
    return {"is_reserved": unit.is_reserved} if unit.is_reserved != was_reserved else {}


def _append_usage(usage: StockUsage) -> StockUsage:
    db.session.add(usage)
    db.session.flush()
    return usage


def _profile_usage(unit, request, *, source_remnant=None, produced=None) -> ProfileUsage:
    return ProfileUsage(
        tenant_id=unit.tenant_id,
        stock_unit_id=unit.id,
        remnant_id=source_remnant.id if source_remnant is not None else None,
        project_id=request.project_id,
        manufacturing_order_id=request.manufacturing_order_id,
        used_by=request.used_by,
        used_length_mm=request.used_length_mm,
        pieces_used=request.pieces_used,
        quantity_used=request.total_needed,
        remnant_created=produced is not None,
        remnant_length_mm=produced.length_mm if produced is not None else None,
        produced_remnant_id=produced.id if produced is not None else None,
        notes=request.notes or "",
    )


def _apply_profile_usage(unit: Profile, request: ProfileUsageRequest, actor) -> ProfileUsage:
    before = unit.available_quantity
    _check_available(request.total_needed, before, unit.code, unit.tenant_id)

    reserved_flag = _lower_available(unit, request.total_needed)
    produced = None
    if request.remnant_length_mm:
        produced = _create_remnant(unit, request.remnant_length_mm, actor)
    usage = _append_usage(_profile_usage(unit, request, produced=produced))

    write_audit(
        tenant_id=unit.tenant_id, entity_type="profile", entity_id=unit.id,
        action="stock.consume", actor=actor, field_name="available_quantity",
        old_value=before, new_value=unit.available_quantity,
        additional_context={
            "usage_id": usage.id,
            "produced_remnant": produced.remnant_id if produced is not None else None,
            **reserved_flag,
        },
    )
    return usage


def _log_consumed(usage, code, tenant_id):
    logger.info(
        "Consumed %s from %s usage_id=%s", usage.quantity_used, code, usage.id,
        extra={"tenant_id": tenant_id, "stock_unit_id": usage.stock_unit_id,
               "entity_id": usage.id},
    )


# ── Public API ───────────────────────────────────────────────────────────────


def consume_stock(tenant_id, stock_unit_id, request, *, actor, timeout=None) -> StockUsage:
    """Consume from a profile lot or sheet by primary key.

    A ProfileUsageRequest targets a profile, a SheetUsageRequest a sheet;
    a request for the wrong kind of unit finds nothing (NotFoundError).

    Raises:
        ValidationError: malformed request (before any store access).
        NotFoundError: no such unit in this tenant.
        InsufficientStockError: total needed exceeds what is available.
        ConflictError: retries exhausted under concurrent consumption.
        OperationTimeoutError: the unit of work outlived ``timeout``.
    """
    if isinstance(request, SheetUsageRequest):
        return consume_sheet(tenant_id, stock_unit_id, request, actor=actor, timeout=timeout)
    if not isinstance(request, ProfileUsageRequest):
        raise ValidationError("Unsupported usage request type",
                              details={"request": type(request).__name__})
    require_actor(actor)
    request.validate()

    def _apply():
        unit = _load_stock_unit(Profile, tenant_id, stock_unit_id)
        return _apply_profile_usage(unit, request, actor)

    usage = run_with_retry(_apply, resource="Profile", resource_id=stock_unit_id, timeout=timeout)
    _log_consumed(usage, stock_unit_id, tenant_id)
    return usage


def consume_profile_lot(tenant_id, lot_id, request: ProfileUsageRequest, *, actor,
                        timeout=None) -> ProfileUsage:
    """Consume from a profile identified by its lot id (e.g. ``A15``)."""
    validate_lot_id(lot_id)
    require_actor(actor)
    request.validate()

    def _apply():
        unit = _load_profile_by_lot(tenant_id, lot_id)
        return _apply_profile_usage(unit, request, actor)

    usage = run_with_retry(_apply, resource="Profile", resource_id=lot_id, timeout=timeout)
    _log_consumed(usage, lot_id, tenant_id)
    return usage


def consume_sheet(tenant_id, sheet_pk, request: SheetUsageRequest, *, actor,
                  timeout=None) -> SheetUsage:
    """Consume area from a sheet; marks the sheet as used."""
    require_actor(actor)
    request.validate()

    def _apply():
        sheet = _load_stock_unit(Sheet, tenant_id, sheet_pk)
        before = sheet.available_quantity
        _check_available(request.total_needed, before, sheet.code, tenant_id)

        reserved_flag = _lower_available(sheet, request.total_needed)
        sheet.is_used = True
        usage = _append_usage(SheetUsage(
            tenant_id=tenant_id,
            stock_unit_id=sheet.id,
            project_id=request.project_id,
            manufacturing_order_id=request.manufacturing_order_id,
            used_by=request.used_by,
            used_length_mm=request.used_length_mm,
            used_width_mm=request.used_width_mm,
            pieces_used=request.pieces_used,
            quantity_used=request.total_needed,
            nest_id=request.nest_id or "",
            generated_remnants=bool(request.remnants),
            remnant_details=json.dumps(request.remnants or []),
            notes=request.notes or "",
        ))
        write_audit(
            tenant_id=tenant_id, entity_type="sheet", entity_id=sheet.id,
            action="stock.consume", actor=actor, field_name="available_quantity",
            old_value=before, new_value=sheet.available_quantity,
            additional_context={"usage_id": usage.id, "nest_id": usage.nest_id, **reserved_flag},
        )
        return usage

    usage = run_with_retry(_apply, resource="Sheet", resource_id=sheet_pk, timeout=timeout)
    _log_consumed(usage, sheet_pk, tenant_id)
    return usage


def consume_remnant(tenant_id, remnant_pk, request: ProfileUsageRequest, *, actor,
                    timeout=None) -> ProfileUsage:
    """Cut from a remnant instead of its parent lot.

    The remnant's own length is decremented; the parent lot is locked for
    remnant numbering but its quantities are untouched.
    A cut may leave a further remnant, numbered under the same parent.
    """
    require_actor(actor)
    request.validate()

    def _apply():
        remnant = get_scoped(ProfileRemnant, remnant_pk, tenant_id=tenant_id, lock=True)
        if not remnant.is_usable or remnant.is_used:
            raise ValidationError(f"Remnant {remnant.remnant_id} is not usable",
                                  details={"remnant_id": remnant.remnant_id})
        # Remnant codes are numbered per parent; the parent lock serializes
        # this cut with consume_stock on the same lot
        parent = _load_stock_unit(Profile, tenant_id, remnant.stock_unit_id)
        before = remnant.available_length_mm
        _check_available(request.total_needed, before, remnant.remnant_id, tenant_id)

        remnant.available_length_mm = before - request.total_needed
        if remnant.available_length_mm == 0:
            remnant.is_used = True
        produced = None
        if request.remnant_length_mm:
            produced = _create_remnant(parent, request.remnant_length_mm, actor)
        usage = _append_usage(
            _profile_usage(parent, request, source_remnant=remnant, produced=produced)
        )
        write_audit(
            tenant_id=tenant_id, entity_type="profile_remnant", entity_id=remnant.id,
            action="stock.consume", actor=actor, field_name="available_length_mm",
            old_value=before, new_value=remnant.available_length_mm,
            additional_context={
                "usage_id": usage.id,
                "stock_unit_id": parent.id,
                "produced_remnant": produced.remnant_id if produced is not None else None,
            },
        )
        return usage

    usage = run_with_retry(_apply, resource="ProfileRemnant", resource_id=remnant_pk,
                           timeout=timeout)
    _log_consumed(usage, remnant_pk, tenant_id)
    return usage


def list_usages(tenant_id, stock_unit_id) -> list[StockUsage]:
    """Usage history of one stock unit, oldest first."""
    get_scoped(StockUnit, stock_unit_id, tenant_id=tenant_id, include_inactive=True)
    stmt = (
        select(StockUsage)
        .where(StockUsage.tenant_id == tenant_id, StockUsage.stock_unit_id == stock_unit_id)
        .order_by(StockUsage.used_at, StockUsage.id)
    )
    return list(db.session.execute(stmt).scalars())
