"""
Reservation ledger: service layer.

A reservation holds part of a lot for a project or work order without
consuming it. The lot's ``is_reserved`` flag is derived, never set by
callers:

    is_reserved = 0 < sum(reservation.quantity for the lot) >= lot quantity

where the lot quantity is the lot's current ``available_quantity``. The
consumption engine recomputes the flag whenever it lowers that quantity.
``unreserve`` releases the whole lot at once; partial release is not
supported, so it needs no reason.

Every reserve/unreserve touches the lot row, so two concurrent reservations
on one lot serialize through its version column.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import delete, func, select

from fabstock.core.actor import require_actor
from fabstock.core.exceptions import InsufficientQuantityError, ValidationError
from fabstock.models import db
from fabstock.models.audit import write_audit
from fabstock.models.reservation import MaterialReservation
from fabstock.models.stock import StockUnit, is_fully_reserved
from fabstock.services.helpers.scoped_queries import get_scoped, scoped_select
from fabstock.services.helpers.unit_of_work import run_with_retry

logger = logging.getLogger(__name__)


def reserved_total(stock_unit_id) -> int:
    return db.session.execute(
        select(func.coalesce(func.sum(MaterialReservation.quantity), 0))
        .where(MaterialReservation.stock_unit_id == stock_unit_id)
    ).scalar_one()


def _touch(lot: StockUnit):
    # Forces an UPDATE so the version check runs even when the flag is unchanged
    lot.updated_at = datetime.now(timezone.utc)


def reserve(tenant_id, stock_unit_id, quantity, project_id=None, work_order_id=None, *,
            actor, notes="", timeout=None) -> MaterialReservation:
    """Reserve *quantity* (mm or mm²) of a lot.

    Raises:
        ValidationError: non-positive quantity.
        NotFoundError: no such lot in this tenant.
        InsufficientQuantityError: quantity exceeds the lot quantity.
    """
    require_actor(actor)
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError("Reservation quantity must be a positive integer",
                              details={"quantity": quantity})

    def _apply():
        lot = get_scoped(StockUnit, stock_unit_id, tenant_id=tenant_id, lock=True)
        if quantity > lot.available_quantity:
            logger.warning(
                "Reservation rejected on %s: required=%s available=%s",
                lot.code, quantity, lot.available_quantity,
                extra={"tenant_id": tenant_id, "entity_id": lot.id,
                       "required": quantity, "available": lot.available_quantity},
            )
            raise InsufficientQuantityError(required=quantity,
                                            available=lot.available_quantity,
                                            resource_id=lot.code)

        reservation = MaterialReservation(
            tenant_id=tenant_id,
            stock_unit_id=lot.id,
            project_id=project_id,
            work_order_id=work_order_id,
            quantity=quantity,
            reserved_by=actor.user_name,
            notes=notes or "",
        )
        db.session.add(reservation)
        db.session.flush()

        was_reserved = lot.is_reserved
        lot.is_reserved = is_fully_reserved(reserved_total(lot.id), lot.available_quantity)
        _touch(lot)
        write_audit(
            tenant_id=tenant_id, entity_type=lot.kind, entity_id=lot.id,
            action="stock.reserve", actor=actor, field_name="is_reserved",
            old_value=was_reserved, new_value=lot.is_reserved,
            additional_context={
                "reservation_id": reservation.id,
                "quantity": quantity,
                "project_id": project_id,
                "work_order_id": work_order_id,
            },
        )
        return reservation

    reservation = run_with_retry(_apply, resource="StockUnit", resource_id=stock_unit_id,
                                 timeout=timeout)
    logger.info("Reserved %s on stock unit %s reservation_id=%s",
                quantity, stock_unit_id, reservation.id,
                extra={"tenant_id": tenant_id, "stock_unit_id": stock_unit_id})
    return reservation


def unreserve(tenant_id, stock_unit_id, *, actor, timeout=None) -> int:
    """Remove every reservation on a lot and clear its flag.

    Returns the number of reservations released (0 is not an error).
    """
    require_actor(actor)

    def _apply():
        lot = get_scoped(StockUnit, stock_unit_id, tenant_id=tenant_id, lock=True)
        released_qty = reserved_total(lot.id)
        released = db.session.execute(
            delete(MaterialReservation).where(
                MaterialReservation.tenant_id == tenant_id,
                MaterialReservation.stock_unit_id == lot.id,
            )
        ).rowcount
        was_reserved = lot.is_reserved
        lot.is_reserved = False
        _touch(lot)
        write_audit(
            tenant_id=tenant_id, entity_type=lot.kind, entity_id=lot.id,
            action="stock.unreserve", actor=actor, field_name="is_reserved",
            old_value=was_reserved, new_value=False,
            additional_context={"released": released, "quantity": released_qty},
        )
        return released

    released = run_with_retry(_apply, resource="StockUnit", resource_id=stock_unit_id,
                              timeout=timeout)
    logger.info("Unreserved stock unit %s released=%s", stock_unit_id, released,
                extra={"tenant_id": tenant_id, "stock_unit_id": stock_unit_id})
    return released


# ── Queries ──────────────────────────────────────────────────────────────────


def list_reservations(tenant_id, stock_unit_id) -> list[MaterialReservation]:
    stmt = (
        select(MaterialReservation)
        .where(MaterialReservation.tenant_id == tenant_id,
               MaterialReservation.stock_unit_id == stock_unit_id)
        .order_by(MaterialReservation.reserved_at, MaterialReservation.id)
    )
    return list(db.session.execute(stmt).scalars())


def list_reserved_lots(tenant_id, *, kind=None) -> list[StockUnit]:
    stmt = scoped_select(StockUnit, tenant_id).where(StockUnit.is_reserved.is_(True))
    if kind:
        stmt = stmt.where(StockUnit.kind == kind)
    return list(db.session.execute(stmt.order_by(StockUnit.code)).scalars())


def list_available_lots(tenant_id, *, kind=None) -> list[StockUnit]:
    """Lots that are not reserved and still have quantity left."""
    stmt = scoped_select(StockUnit, tenant_id).where(
        StockUnit.is_reserved.is_(False),
        StockUnit.available_quantity > 0,
    )
    if kind:
        stmt = stmt.where(StockUnit.kind == kind)
    return list(db.session.execute(stmt.order_by(StockUnit.code)).scalars())
