"""
Input coercion and change tracking shared by the service layer.

Services accept plain dicts from their callers; these helpers keep date and
decimal parsing out of the individual CRUD functions and collect the
old/new pairs that end up in audit entries.
"""

from datetime import date, datetime
from decimal import Decimal, InvalidOperation

from fabstock.core.exceptions import ValidationError


def parse_date(val, field: str = "date") -> date | None:
    """Convert an ISO-format string (or datetime) to a date."""
    if val is None or val == "":
        return None
    if isinstance(val, datetime):
        return val.date()
    if isinstance(val, date):
        return val
    if isinstance(val, str):
        try:
            return date.fromisoformat(val.strip()[:10])
        except ValueError as exc:
            raise ValidationError(f"Invalid {field}: {val!r}", details={field: "invalid date"}) from exc
    raise ValidationError(f"Invalid {field}: {val!r}", details={field: "invalid date"})


def to_decimal(val, field: str) -> Decimal:
    """Coerce *val* to Decimal, raising ValidationError on garbage."""
    if isinstance(val, Decimal):
        return val
    if isinstance(val, float):
        val = str(val)
    try:
        return Decimal(val)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValidationError(f"{field} must be a number", details={field: "not a number"}) from exc


def to_int(val, field: str) -> int:
    if isinstance(val, bool):
        raise ValidationError(f"{field} must be an integer", details={field: "not an integer"})
    try:
        return int(val)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field} must be an integer", details={field: "not an integer"}) from exc


def apply_changes(obj, data: dict, updatable, converters: dict | None = None) -> dict:
    """Set whitelisted fields on *obj* and return ``{field: {old, new}}``.

    Only fields whose value actually changes are reported. ``converters``
    maps field names to callables applied to the incoming value.
    """
    converters = converters or {}
    changes = {}
    for f in updatable:
        if f not in data:
            continue
        new = data[f]
        if f in converters:
            new = converters[f](new)
        old = getattr(obj, f)
        if old != new:
            setattr(obj, f, new)
            changes[f] = {"old": old, "new": new}
    return changes
