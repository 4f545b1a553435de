"""
ORM-level immutability for append-only records.

Protected entities:

    Entity        | When immutable      | Rejected operations
    --------------|---------------------|--------------------
    AuditEntry    | always              | UPDATE, DELETE
    StockUsage    | always              | UPDATE, DELETE

SQLAlchemy fires ``before_update``/``before_delete`` mapper events during
flush, before SQL reaches the database. The listeners raise
ImmutabilityViolationError, which aborts the flush; ``unit_of_work`` then
rolls the transaction back.

Registered once from ``create_app``; ``unregister_immutability_listeners``
exists for tests that need to prove the listeners are what blocks a write.
"""

import logging

from sqlalchemy import event

from fabstock.core.exceptions import ImmutabilityViolationError
from fabstock.models.audit import AuditEntry
from fabstock.models.usage import StockUsage

logger = logging.getLogger(__name__)


def _reject(target, entity_type, operation):
    logger.error(
        "Immutability violation blocked: %s %s id=%s",
        operation, entity_type, target.id,
        extra={
            "tenant_id": getattr(target, "tenant_id", None),
            "entity_type": entity_type,
            "entity_id": target.id,
        },
    )
    raise ImmutabilityViolationError(entity_type=entity_type, entity_id=target.id,
                                     operation=operation)


def _check_audit_entry_update(mapper, connection, target):
    _reject(target, "AuditEntry", "UPDATE")


def _check_audit_entry_delete(mapper, connection, target):
    _reject(target, "AuditEntry", "DELETE")


def _check_usage_update(mapper, connection, target):
    _reject(target, type(target).__name__, "UPDATE")


def _check_usage_delete(mapper, connection, target):
    _reject(target, type(target).__name__, "DELETE")


_LISTENERS = (
    (AuditEntry, "before_update", _check_audit_entry_update),
    (AuditEntry, "before_delete", _check_audit_entry_delete),
    (StockUsage, "before_update", _check_usage_update),
    (StockUsage, "before_delete", _check_usage_delete),
)


def register_immutability_listeners():
    """Register all immutability listeners. Safe to call repeatedly."""
    for target, event_name, fn in _LISTENERS:
        if not event.contains(target, event_name, fn):
            # propagate so ProfileUsage / SheetUsage are covered too
            event.listen(target, event_name, fn, propagate=True)


def unregister_immutability_listeners():
    """Remove the listeners (tests only)."""
    for target, event_name, fn in _LISTENERS:
        if event.contains(target, event_name, fn):
            event.remove(target, event_name, fn)
