"""
Tenant-scoped query helpers.

Every get-by-id in fabstock goes through these helpers instead of
``db.session.get(Model, pk)``. A direct ``.get()`` would bypass the explicit
tenant parameter every service receives.

Usage:
    profile = get_scoped(Profile, profile_id, tenant_id=tenant_id)
    pr = get_scoped(PurchaseRequest, pr_id, tenant_id=tenant_id, lock=True)

Cross-tenant access is indistinguishable from a missing record: both raise
NotFoundError. Soft-deleted rows (``is_active`` False) are treated as
missing unless ``include_inactive=True``.
"""

import logging

from sqlalchemy import select

from fabstock.core.exceptions import NotFoundError
from fabstock.models import db

logger = logging.getLogger(__name__)


def scoped_select(model, tenant_id, *, include_inactive=False, lock=False):
    """Build a SELECT for *model* restricted to *tenant_id*.

    With ``lock=True`` the statement takes a row lock (``FOR UPDATE``; a
    no-op on SQLite) and overwrites any stale identity-map state, so the
    caller always decides on the committed values.
    """
    if not tenant_id:
        raise ValueError(
            f"{model.__name__}: tenant_id is required. "
            "Unscoped lookups are forbidden."
        )
    stmt = select(model).where(model.tenant_id == tenant_id)
    if not include_inactive and hasattr(model, "is_active"):
        stmt = stmt.where(model.is_active.is_(True))
    if lock:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    return stmt


def get_scoped(model, pk, *, tenant_id, include_inactive=False, lock=False):
    """Fetch a single entity by PK within a tenant.

    Raises:
        ValueError: If tenant_id is empty.
        NotFoundError: If the entity does not exist, belongs to another
                       tenant, or is soft-deleted.
    """
    stmt = scoped_select(model, tenant_id, include_inactive=include_inactive, lock=lock)
    stmt = stmt.where(model.id == pk)
    result = db.session.execute(stmt).scalar_one_or_none()
    if result is None:
        logger.debug("get_scoped: %s id=%s not found in tenant %s",
                     model.__name__, pk, tenant_id)
        raise NotFoundError(resource=model.__name__, resource_id=pk, tenant_id=tenant_id)
    return result
