"""
Purchase requests: service layer.

Business logic for:
    - Number generation:    PR-0001, PR-0002 (tenant-scoped)
    - Lifecycle transitions: send, start collecting, complete, cancel
                             (table-driven, see PR_TRANSITIONS)
    - Winner selection:     collecting only, supplier must hold an active quote
    - Lines:                add/update/remove while draft
    - Quotes:               add/update/remove while sent or collecting;
                            priced per line, total recomputed on every change
    - CRUD:                 create/read/update/soft-delete of the request header

Every mutating call is one unit of work: it re-reads the request under a
row lock, validates, applies the change and writes exactly one AuditEntry.
Child mutations also bump the request's version, so a line added while
someone else sends the request surfaces as ConflictError instead of
slipping past the status gate.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import func, select

from fabstock.core.actor import require_actor
from fabstock.core.exceptions import (
    DeletionNotAllowedError,
    DuplicateIdentityError,
    InvalidTransitionError,
    MissingReasonError,
    MissingWinnerError,
    NoQuoteFromSupplierError,
    NotCollectingError,
    StatusLockedError,
    ValidationError,
)
from fabstock.models import db
from fabstock.models.audit import write_audit
from fabstock.models.purchase_request import (
    CURRENCIES,
    DELETABLE_STATUSES,
    LINE_MUTABLE_STATUSES,
    MATERIAL_TYPES,
    PR_STATUSES,
    QUOTE_MUTABLE_STATUSES,
    UNITS_OF_MEASURE,
    WINNER_STATUSES,
    PurchaseRequest,
    PurchaseRequestLine,
    PurchaseRequestQuote,
    PurchaseRequestQuoteItem,
    allowed_pr_transitions,
    validate_pr_transition,
)
from fabstock.services.helpers.fields import apply_changes, parse_date, to_decimal, to_int
from fabstock.services.helpers.scoped_queries import get_scoped, scoped_select
from fabstock.services.helpers.unit_of_work import check_expected_version, run_with_retry

logger = logging.getLogger(__name__)

_TRANSITION_ACTIONS = {
    "sent":       "purchase_request.send",
    "collecting": "purchase_request.start_collecting",
    "completed":  "purchase_request.complete",
    "canceled":   "purchase_request.cancel",
}

_HEADER_FIELDS = ("title", "description", "project_id", "required_date", "notes")
_LINE_FIELDS = (
    "material_type", "grade", "profile_type", "thickness_mm", "width_mm", "length_mm",
    "quantity", "unit_of_measure", "specifications", "required_date", "notes",
)
_QUOTE_FIELDS = (
    "supplier_name", "quote_reference", "valid_until", "currency",
    "payment_terms", "delivery_terms", "delivery_days", "notes",
)

_CONVERTERS = {
    "required_date": lambda v: parse_date(v, "required_date"),
    "valid_until": lambda v: parse_date(v, "valid_until"),
    "quantity": lambda v: to_decimal(v, "quantity"),
    "thickness_mm": lambda v: None if v is None else to_int(v, "thickness_mm"),
    "width_mm": lambda v: None if v is None else to_int(v, "width_mm"),
    "length_mm": lambda v: None if v is None else to_int(v, "length_mm"),
    "delivery_days": lambda v: None if v is None else to_int(v, "delivery_days"),
}


def _now():
    return datetime.now(timezone.utc)


def _diff(changes: dict):
    return ({k: v["old"] for k, v in changes.items()},
            {k: v["new"] for k, v in changes.items()})


# ── Number Generation ────────────────────────────────────────────────────────


def generate_pr_number(tenant_id) -> str:
    """
    Generate the next request number for a tenant.
    Format: PR-0001, PR-0002, ...
    """
    count = db.session.execute(
        select(func.count(PurchaseRequest.id)).where(PurchaseRequest.tenant_id == tenant_id)
    ).scalar_one()
    n = count + 1
    while _number_taken(tenant_id, f"PR-{n:04d}"):
        n += 1
    return f"PR-{n:04d}"


def _number_taken(tenant_id, number) -> bool:
    stmt = scoped_select(PurchaseRequest, tenant_id, include_inactive=True).where(
        PurchaseRequest.number == number
    )
    return db.session.execute(stmt).first() is not None


# ── Loading & guards ─────────────────────────────────────────────────────────


def _load_pr(tenant_id, pr_id) -> PurchaseRequest:
    return get_scoped(PurchaseRequest, pr_id, tenant_id=tenant_id, lock=True)


def _touch(pr: PurchaseRequest):
    # Child mutations still UPDATE the parent so its version check runs
    pr.updated_at = _now()


def _require_status(pr: PurchaseRequest, allowed, operation):
    if pr.status not in allowed:
        logger.warning(
            "%s rejected on %s: status %s", operation, pr.number, pr.status,
            extra={"tenant_id": pr.tenant_id, "purchase_request_id": pr.id},
        )
        raise StatusLockedError(operation, pr.status, allowed)


def _require_transition(pr: PurchaseRequest, target):
    if not validate_pr_transition(pr.status, target):
        logger.warning(
            "Invalid transition on %s: %s → %s", pr.number, pr.status, target,
            extra={"tenant_id": pr.tenant_id, "purchase_request_id": pr.id,
                   "old_status": pr.status, "new_status": target},
        )
        raise InvalidTransitionError(pr.status, target, allowed_pr_transitions(pr.status))


def _apply_transition(pr: PurchaseRequest, target, actor, reason=None):
    old = pr.status
    pr.status = target
    write_audit(
        tenant_id=pr.tenant_id, entity_type="purchase_request", entity_id=pr.id,
        action=_TRANSITION_ACTIONS[target], actor=actor, field_name="status",
        old_value=old, new_value=target, reason=reason,
        additional_context={"number": pr.number},
    )
    return old


def _log_transition(pr, old, new):
    logger.info(
        "PurchaseRequest transitioned id=%s %s → %s", pr.id, old, new,
        extra={"tenant_id": pr.tenant_id, "purchase_request_id": pr.id,
               "old_status": old, "new_status": new},
    )


def available_transitions(pr: PurchaseRequest) -> list[str]:
    """Statuses the request can move to next."""
    return allowed_pr_transitions(pr.status)


# ── PurchaseRequest CRUD ─────────────────────────────────────────────────────


def list_purchase_requests(tenant_id, *, status=None, project_id=None) -> list[PurchaseRequest]:
    """Active requests with optional status/project filters, ordered by number."""
    if status and status not in PR_STATUSES:
        raise ValidationError(f"Unknown status: {status}", details={"status": status})
    stmt = scoped_select(PurchaseRequest, tenant_id)
    if status:
        stmt = stmt.where(PurchaseRequest.status == status)
    if project_id:
        stmt = stmt.where(PurchaseRequest.project_id == project_id)
    return list(db.session.execute(stmt.order_by(PurchaseRequest.number)).scalars())


def get_purchase_request(tenant_id, pr_id) -> PurchaseRequest:
    return get_scoped(PurchaseRequest, pr_id, tenant_id=tenant_id)


def create_purchase_request(tenant_id, data: dict, *, actor) -> PurchaseRequest:
    """Create a draft request.

    ``number`` is generated (PR-0001 …) unless the caller supplies one.

    Raises:
        ValidationError: missing title.
        DuplicateIdentityError: supplied number already exists in the tenant.
    """
    require_actor(actor)
    if not (data.get("title") or "").strip():
        raise ValidationError("Title is required.", details={"title": "required"})

    def _apply():
        number = (data.get("number") or "").strip()
        if number:
            if _number_taken(tenant_id, number):
                raise DuplicateIdentityError("PurchaseRequest", "number", number)
        else:
            number = generate_pr_number(tenant_id)
        pr = PurchaseRequest(
            tenant_id=tenant_id,
            number=number,
            title=data["title"].strip(),
            description=data.get("description", ""),
            project_id=data.get("project_id"),
            requested_by=data.get("requested_by") or actor.user_name,
            required_date=parse_date(data.get("required_date"), "required_date"),
            notes=data.get("notes", ""),
            status="draft",
        )
        db.session.add(pr)
        db.session.flush()
        write_audit(
            tenant_id=tenant_id, entity_type="purchase_request", entity_id=pr.id,
            action="create", actor=actor, field_name="status", new_value="draft",
            additional_context={"number": number},
        )
        return pr

    pr = run_with_retry(_apply, resource="PurchaseRequest", max_attempts=1)
    logger.info("PurchaseRequest created id=%s number=%s", pr.id, pr.number,
                extra={"tenant_id": tenant_id, "purchase_request_id": pr.id})
    return pr


def update_purchase_request(tenant_id, pr_id, data: dict, *, actor,
                            expected_version=None) -> PurchaseRequest:
    """Update header fields. Only allowed while the request is a draft."""
    require_actor(actor)
    if "title" in data and not (data["title"] or "").strip():
        raise ValidationError("Title is required.", details={"title": "required"})

    def _apply():
        pr = _load_pr(tenant_id, pr_id)
        check_expected_version(pr, expected_version, "PurchaseRequest")
        _require_status(pr, LINE_MUTABLE_STATUSES, "update purchase request")
        changes = apply_changes(pr, data, _HEADER_FIELDS, _CONVERTERS)
        if changes:
            old, new = _diff(changes)
            write_audit(
                tenant_id=tenant_id, entity_type="purchase_request", entity_id=pr.id,
                action="update", actor=actor, old_value=old, new_value=new,
            )
        return pr

    pr = run_with_retry(_apply, resource="PurchaseRequest", resource_id=pr_id)
    logger.info("PurchaseRequest updated id=%s", pr.id, extra={"tenant_id": tenant_id})
    return pr


def delete_purchase_request(tenant_id, pr_id, *, actor) -> None:
    """Soft-delete a request that is still a draft or was canceled."""
    require_actor(actor)

    def _apply():
        pr = _load_pr(tenant_id, pr_id)
        if pr.status not in DELETABLE_STATUSES:
            raise DeletionNotAllowedError("PurchaseRequest", pr.id,
                                          f"status is '{pr.status}'")
        pr.soft_delete()
        write_audit(
            tenant_id=tenant_id, entity_type="purchase_request", entity_id=pr.id,
            action="delete", actor=actor, field_name="is_active",
            old_value=True, new_value=False,
        )

    run_with_retry(_apply, resource="PurchaseRequest", resource_id=pr_id)
    logger.info("PurchaseRequest deleted id=%s", pr_id, extra={"tenant_id": tenant_id})


# ── Lifecycle Transitions ────────────────────────────────────────────────────


def send_for_quotes(tenant_id, pr_id, *, actor, expected_version=None) -> PurchaseRequest:
    """draft → sent. Requires at least one active line."""
    require_actor(actor)

    def _apply():
        pr = _load_pr(tenant_id, pr_id)
        check_expected_version(pr, expected_version, "PurchaseRequest")
        _require_transition(pr, "sent")
        if not pr.active_lines:
            raise ValidationError(
                "Purchase request must have at least one line before it is sent",
                details={"lines": 0},
            )
        pr.sent_by = actor.user_name
        pr.sent_date = _now()
        return pr, _apply_transition(pr, "sent", actor)

    pr, old = run_with_retry(_apply, resource="PurchaseRequest", resource_id=pr_id)
    _log_transition(pr, old, "sent")
    return pr


def start_collecting(tenant_id, pr_id, *, actor, expected_version=None) -> PurchaseRequest:
    """sent → collecting."""
    require_actor(actor)

    def _apply():
        pr = _load_pr(tenant_id, pr_id)
        check_expected_version(pr, expected_version, "PurchaseRequest")
        _require_transition(pr, "collecting")
        pr.collecting_started_by = actor.user_name
        pr.collecting_started_date = _now()
        return pr, _apply_transition(pr, "collecting", actor)

    pr, old = run_with_retry(_apply, resource="PurchaseRequest", resource_id=pr_id)
    _log_transition(pr, old, "collecting")
    return pr


def complete(tenant_id, pr_id, *, actor, expected_version=None) -> PurchaseRequest:
    """collecting → completed. Requires a selected winner."""
    require_actor(actor)

    def _apply():
        pr = _load_pr(tenant_id, pr_id)
        check_expected_version(pr, expected_version, "PurchaseRequest")
        _require_transition(pr, "completed")
        if pr.winner_supplier_id is None:
            logger.warning("Complete rejected on %s: no winner", pr.number,
                           extra={"tenant_id": tenant_id, "purchase_request_id": pr.id})
            raise MissingWinnerError(pr.id)
        pr.completed_by = actor.user_name
        pr.completed_date = _now()
        return pr, _apply_transition(pr, "completed", actor)

    pr, old = run_with_retry(_apply, resource="PurchaseRequest", resource_id=pr_id)
    _log_transition(pr, old, "completed")
    return pr


def cancel(tenant_id, pr_id, reason, *, actor, expected_version=None) -> PurchaseRequest:
    """Any non-terminal status → canceled. ``reason`` must not be blank."""
    require_actor(actor)
    if not (reason or "").strip():
        raise MissingReasonError("cancel a purchase request")
    reason = reason.strip()

    def _apply():
        pr = _load_pr(tenant_id, pr_id)
        check_expected_version(pr, expected_version, "PurchaseRequest")
        _require_transition(pr, "canceled")
        pr.canceled_by = actor.user_name
        pr.canceled_date = _now()
        pr.cancellation_reason = reason
        return pr, _apply_transition(pr, "canceled", actor, reason=reason)

    pr, old = run_with_retry(_apply, resource="PurchaseRequest", resource_id=pr_id)
    _log_transition(pr, old, "canceled")
    return pr


def transition_purchase_request(tenant_id, pr_id, target_status, *, actor, reason=None,
                                expected_version=None) -> PurchaseRequest:
    """Move a request to *target_status* through the matching lifecycle call.

    Raises:
        ValidationError: unknown target status.
        InvalidTransitionError: edge not in PR_TRANSITIONS.
        MissingWinnerError: completing without a winner.
        MissingReasonError: canceling without a reason.
    """
    if target_status not in PR_STATUSES:
        raise ValidationError(f"Unknown status: {target_status}",
                              details={"status": target_status})
    if target_status == "canceled":
        return cancel(tenant_id, pr_id, reason, actor=actor, expected_version=expected_version)
    handlers = {
        "sent": send_for_quotes,
        "collecting": start_collecting,
        "completed": complete,
    }
    handler = handlers.get(target_status)
    if handler is None:
        # draft is never a target
        pr = get_purchase_request(tenant_id, pr_id)
        raise InvalidTransitionError(pr.status, target_status, allowed_pr_transitions(pr.status))
    return handler(tenant_id, pr_id, actor=actor, expected_version=expected_version)


def select_winner(tenant_id, pr_id, supplier_id, *, actor, reason=None,
                  expected_version=None) -> PurchaseRequest:
    """Mark *supplier_id* as the winner of a collecting request.

    The supplier's lowest-priced active quote becomes the selected quote;
    any previous selection is cleared first.

    Raises:
        NotCollectingError: request is not collecting quotes.
        NoQuoteFromSupplierError: supplier has no active quote on it.
    """
    require_actor(actor)

    def _apply():
        pr = _load_pr(tenant_id, pr_id)
        check_expected_version(pr, expected_version, "PurchaseRequest")
        if pr.status not in WINNER_STATUSES:
            logger.warning("Winner selection rejected on %s: status %s", pr.number, pr.status,
                           extra={"tenant_id": tenant_id, "purchase_request_id": pr.id})
            raise NotCollectingError(pr.status)

        candidates = [q for q in pr.active_quotes if q.supplier_id == supplier_id]
        if not candidates:
            raise NoQuoteFromSupplierError(pr.id, supplier_id)
        chosen = min(candidates, key=lambda q: (q.total_amount, q.id))

        for q in pr.quotes:
            if q.is_selected and q is not chosen:
                q.is_selected = False
                q.selected_by = None
                q.selected_date = None
                q.selection_reason = None

        now = _now()
        chosen.is_selected = True
        chosen.selected_by = actor.user_name
        chosen.selected_date = now
        chosen.selection_reason = reason

        old_winner = pr.winner_supplier_id
        pr.winner_supplier_id = supplier_id
        pr.winner_quote_id = chosen.id
        pr.winner_selected_by = actor.user_name
        pr.winner_selected_date = now
        pr.winner_selection_reason = reason
        write_audit(
            tenant_id=tenant_id, entity_type="purchase_request", entity_id=pr.id,
            action="purchase_request.select_winner", actor=actor,
            field_name="winner_supplier_id", old_value=old_winner, new_value=supplier_id,
            reason=reason, additional_context={"quote_id": chosen.id},
        )
        return pr, old_winner

    pr, old_winner = run_with_retry(_apply, resource="PurchaseRequest", resource_id=pr_id)
    logger.info("PurchaseRequest winner selected id=%s supplier %s → %s",
                pr.id, old_winner, supplier_id,
                extra={"tenant_id": tenant_id, "purchase_request_id": pr.id})
    return pr


# ── Lines ────────────────────────────────────────────────────────────────────


def _validate_line(data: dict, *, creating: bool):
    errors = {}
    if creating or "material_type" in data:
        if data.get("material_type") not in MATERIAL_TYPES:
            errors["material_type"] = f"must be one of {sorted(MATERIAL_TYPES)}"
    if creating or "quantity" in data:
        if to_decimal(data.get("quantity", 0), "quantity") <= 0:
            errors["quantity"] = "must be greater than 0"
    if "unit_of_measure" in data and data["unit_of_measure"] not in UNITS_OF_MEASURE:
        errors["unit_of_measure"] = f"must be one of {sorted(UNITS_OF_MEASURE)}"
    for f in ("thickness_mm", "width_mm", "length_mm"):
        if data.get(f) is not None and to_int(data[f], f) <= 0:
            errors[f] = "must be greater than 0"
    if errors:
        raise ValidationError("Invalid purchase request line", details=errors)


def _load_line(tenant_id, line_id):
    line = get_scoped(PurchaseRequestLine, line_id, tenant_id=tenant_id, lock=True)
    return line, _load_pr(tenant_id, line.purchase_request_id)


def add_line(tenant_id, pr_id, data: dict, *, actor) -> PurchaseRequestLine:
    """Append a line to a draft request; line numbers continue from the highest."""
    require_actor(actor)
    _validate_line(data, creating=True)

    def _apply():
        pr = _load_pr(tenant_id, pr_id)
        _require_status(pr, LINE_MUTABLE_STATUSES, "add line")
        next_number = max((ln.line_number for ln in pr.lines), default=0) + 1
        line = PurchaseRequestLine(
            tenant_id=tenant_id,
            purchase_request_id=pr.id,
            line_number=next_number,
            material_type=data["material_type"],
            grade=data.get("grade", ""),
            profile_type=data.get("profile_type"),
            thickness_mm=_CONVERTERS["thickness_mm"](data.get("thickness_mm")),
            width_mm=_CONVERTERS["width_mm"](data.get("width_mm")),
            length_mm=_CONVERTERS["length_mm"](data.get("length_mm")),
            quantity=to_decimal(data["quantity"], "quantity"),
            unit_of_measure=data.get("unit_of_measure", "kg"),
            specifications=data.get("specifications", ""),
            required_date=parse_date(data.get("required_date"), "required_date"),
            notes=data.get("notes", ""),
        )
        db.session.add(line)
        _touch(pr)
        db.session.flush()
        write_audit(
            tenant_id=tenant_id, entity_type="purchase_request_line", entity_id=line.id,
            action="purchase_request.add_line", actor=actor,
            new_value=line.to_dict(),
            additional_context={"purchase_request_id": pr.id},
        )
        return line

    line = run_with_retry(_apply, resource="PurchaseRequest", resource_id=pr_id)
    logger.info("PurchaseRequestLine created id=%s pr_id=%s", line.id, pr_id,
                extra={"tenant_id": tenant_id, "purchase_request_id": pr_id})
    return line


def update_line(tenant_id, line_id, data: dict, *, actor,
                expected_version=None) -> PurchaseRequestLine:
    require_actor(actor)
    _validate_line(data, creating=False)

    def _apply():
        line, pr = _load_line(tenant_id, line_id)
        check_expected_version(line, expected_version, "PurchaseRequestLine")
        _require_status(pr, LINE_MUTABLE_STATUSES, "update line")
        changes = apply_changes(line, data, _LINE_FIELDS, _CONVERTERS)
        if changes:
            _touch(pr)
            old, new = _diff(changes)
            write_audit(
                tenant_id=tenant_id, entity_type="purchase_request_line", entity_id=line.id,
                action="purchase_request.update_line", actor=actor,
                old_value=old, new_value=new,
                additional_context={"purchase_request_id": pr.id},
            )
        return line

    line = run_with_retry(_apply, resource="PurchaseRequestLine", resource_id=line_id)
    logger.info("PurchaseRequestLine updated id=%s", line.id, extra={"tenant_id": tenant_id})
    return line


def remove_line(tenant_id, line_id, *, actor) -> None:
    require_actor(actor)

    def _apply():
        line, pr = _load_line(tenant_id, line_id)
        _require_status(pr, LINE_MUTABLE_STATUSES, "remove line")
        line.soft_delete()
        _touch(pr)
        write_audit(
            tenant_id=tenant_id, entity_type="purchase_request_line", entity_id=line.id,
            action="purchase_request.remove_line", actor=actor,
            field_name="is_active", old_value=True, new_value=False,
            additional_context={"purchase_request_id": pr.id,
                                "line_number": line.line_number},
        )

    run_with_retry(_apply, resource="PurchaseRequestLine", resource_id=line_id)
    logger.info("PurchaseRequestLine removed id=%s", line_id, extra={"tenant_id": tenant_id})


# ── Quotes ───────────────────────────────────────────────────────────────────


def _validate_quote(data: dict, *, creating: bool):
    errors = {}
    if creating:
        supplier_id = data.get("supplier_id")
        if isinstance(supplier_id, bool) or not isinstance(supplier_id, int) or supplier_id <= 0:
            errors["supplier_id"] = "required"
    if (creating or "currency" in data) and data.get("currency", "EUR") not in CURRENCIES:
        errors["currency"] = f"unsupported currency {data.get('currency')!r}"
    if data.get("delivery_days") is not None and to_int(data["delivery_days"], "delivery_days") < 0:
        errors["delivery_days"] = "cannot be negative"
    if errors:
        raise ValidationError("Invalid quote", details=errors)


def _build_items(pr: PurchaseRequest, raw_items) -> list[PurchaseRequestQuoteItem]:
    lines = {ln.id: ln for ln in pr.active_lines}
    items = []
    for i, raw in enumerate(raw_items or []):
        line = lines.get(raw.get("line_id"))
        if line is None:
            raise ValidationError("Quote item must reference an active line of this request",
                                  details={f"items[{i}].line_id": raw.get("line_id")})
        unit_price = to_decimal(raw.get("unit_price", 0), "unit_price")
        discount = to_decimal(raw.get("discount_percent", 0), "discount_percent")
        quantity = to_decimal(raw["quantity"], "quantity") if "quantity" in raw else line.quantity
        if unit_price < 0 or quantity <= 0 or not (Decimal("0") <= discount <= Decimal("100")):
            raise ValidationError(
                "Quote item needs quantity > 0, unit_price >= 0 and discount between 0 and 100",
                details={f"items[{i}]": raw},
            )
        items.append(PurchaseRequestQuoteItem(
            tenant_id=pr.tenant_id,
            line_id=line.id,
            quantity=quantity,
            unit_price=unit_price,
            discount_percent=discount,
            tax_code=raw.get("tax_code", ""),
            notes=raw.get("notes", ""),
        ))
    return items


def _load_quote(tenant_id, quote_id):
    quote = get_scoped(PurchaseRequestQuote, quote_id, tenant_id=tenant_id, lock=True)
    return quote, _load_pr(tenant_id, quote.purchase_request_id)


def add_quote(tenant_id, pr_id, data: dict, *, actor) -> PurchaseRequestQuote:
    """Record a supplier's quote while the request is sent or collecting."""
    require_actor(actor)
    _validate_quote(data, creating=True)

    def _apply():
        pr = _load_pr(tenant_id, pr_id)
        _require_status(pr, QUOTE_MUTABLE_STATUSES, "add quote")
        quote = PurchaseRequestQuote(
            tenant_id=tenant_id,
            purchase_request_id=pr.id,
            supplier_id=data["supplier_id"],
            supplier_name=data.get("supplier_name", ""),
            quote_reference=data.get("quote_reference", ""),
            valid_until=parse_date(data.get("valid_until"), "valid_until"),
            currency=data.get("currency", "EUR"),
            payment_terms=data.get("payment_terms", ""),
            delivery_terms=data.get("delivery_terms", ""),
            delivery_days=_CONVERTERS["delivery_days"](data.get("delivery_days")),
            notes=data.get("notes", ""),
        )
        quote.items = _build_items(pr, data.get("items"))
        quote.recompute_total()
        db.session.add(quote)
        _touch(pr)
        db.session.flush()
        write_audit(
            tenant_id=tenant_id, entity_type="purchase_request_quote", entity_id=quote.id,
            action="purchase_request.add_quote", actor=actor, field_name="total_amount",
            new_value=quote.total_amount,
            additional_context={"purchase_request_id": pr.id,
                                "supplier_id": quote.supplier_id},
        )
        return quote

    quote = run_with_retry(_apply, resource="PurchaseRequest", resource_id=pr_id)
    logger.info("PurchaseRequestQuote created id=%s pr_id=%s supplier=%s",
                quote.id, pr_id, quote.supplier_id,
                extra={"tenant_id": tenant_id, "purchase_request_id": pr_id})
    return quote


def update_quote(tenant_id, quote_id, data: dict, *, actor,
                 expected_version=None) -> PurchaseRequestQuote:
    """Update quote header fields; ``items`` (if given) replaces all items."""
    require_actor(actor)
    _validate_quote(data, creating=False)

    def _apply():
        quote, pr = _load_quote(tenant_id, quote_id)
        check_expected_version(quote, expected_version, "PurchaseRequestQuote")
        _require_status(pr, QUOTE_MUTABLE_STATUSES, "update quote")
        changes = apply_changes(quote, data, _QUOTE_FIELDS, _CONVERTERS)
        if "items" in data:
            old_total = quote.total_amount
            quote.items = _build_items(pr, data["items"])
            new_total = quote.recompute_total()
            if new_total != old_total:
                changes["total_amount"] = {"old": old_total, "new": new_total}
        if changes:
            _touch(pr)
            old, new = _diff(changes)
            write_audit(
                tenant_id=tenant_id, entity_type="purchase_request_quote", entity_id=quote.id,
                action="purchase_request.update_quote", actor=actor,
                old_value=old, new_value=new,
                additional_context={"purchase_request_id": pr.id},
            )
        return quote

    quote = run_with_retry(_apply, resource="PurchaseRequestQuote", resource_id=quote_id)
    logger.info("PurchaseRequestQuote updated id=%s", quote.id, extra={"tenant_id": tenant_id})
    return quote


def remove_quote(tenant_id, quote_id, *, actor) -> None:
    """Withdraw a quote. The selected (winning) quote cannot be removed."""
    require_actor(actor)

    def _apply():
        quote, pr = _load_quote(tenant_id, quote_id)
        _require_status(pr, QUOTE_MUTABLE_STATUSES, "remove quote")
        if quote.is_selected:
            raise DeletionNotAllowedError("PurchaseRequestQuote", quote.id,
                                          "quote is selected as winner")
        quote.soft_delete()
        _touch(pr)
        write_audit(
            tenant_id=tenant_id, entity_type="purchase_request_quote", entity_id=quote.id,
            action="purchase_request.remove_quote", actor=actor,
            field_name="is_active", old_value=True, new_value=False,
            additional_context={"purchase_request_id": pr.id,
                                "supplier_id": quote.supplier_id},
        )

    run_with_retry(_apply, resource="PurchaseRequestQuote", resource_id=quote_id)
    logger.info("PurchaseRequestQuote removed id=%s", quote_id, extra={"tenant_id": tenant_id})


def totals_by_supplier(tenant_id, pr_id) -> dict[int, Decimal]:
    """Lowest active quote total per supplier on one request."""
    pr = get_purchase_request(tenant_id, pr_id)
    totals: dict[int, Decimal] = {}
    for q in pr.active_quotes:
        current = totals.get(q.supplier_id)
        if current is None or q.total_amount < current:
            totals[q.supplier_id] = q.total_amount
    return totals
