"""
Transaction scope for service operations.

Every public mutating service call runs inside exactly one ``unit_of_work``:
commit on normal exit, rollback on any exception, exception re-raised. A
raised error therefore always means zero persisted effects.

Timeouts:
    ``timeout`` (seconds) comes from the caller or UNIT_OF_WORK_TIMEOUT.
    On PostgreSQL it is pushed down as ``SET LOCAL statement_timeout``;
    on every backend the elapsed time is checked before commit and an
    overrun rolls back with OperationTimeoutError.

Optimistic concurrency:
    Governed rows carry a ``version`` column mapped as SQLAlchemy's
    ``version_id_col``. A concurrent writer makes our UPDATE match zero
    rows and flush raises StaleDataError. ``run_with_retry`` reruns the
    whole unit of work and gives up with ConflictError.

Usage:
    with unit_of_work() as session:
        session.add(obj)

    usage = run_with_retry(_apply, resource="Profile", resource_id=pid)
"""

import logging
import time
from contextlib import contextmanager

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from fabstock.core.exceptions import ConflictError, OperationTimeoutError
from fabstock.models import db

logger = logging.getLogger(__name__)

# Monotonic clock; tests replace it to simulate slow operations
_clock = time.monotonic

# PostgreSQL SQLSTATE for statement_timeout cancellations
_PG_QUERY_CANCELED = "57014"


def _resolve_timeout(timeout):
    if timeout is not None:
        return timeout
    return current_app.config.get("UNIT_OF_WORK_TIMEOUT")


@contextmanager
def unit_of_work(timeout=None):
    """Run the enclosed block as one transaction on ``db.session``."""
    session = db.session
    timeout = _resolve_timeout(timeout)
    started = _clock()
    try:
        if timeout is not None and session.get_bind().dialect.name == "postgresql":
            session.execute(text(f"SET LOCAL statement_timeout = {int(timeout * 1000)}"))
        yield session
        session.flush()
        if timeout is not None:
            elapsed = _clock() - started
            if elapsed > timeout:
                raise OperationTimeoutError(timeout=timeout, elapsed=elapsed)
        session.commit()
    except OperationalError as exc:
        session.rollback()
        if timeout is not None and getattr(exc.orig, "pgcode", None) == _PG_QUERY_CANCELED:
            raise OperationTimeoutError(timeout=timeout, elapsed=_clock() - started) from exc
        raise
    except Exception:
        session.rollback()
        logger.debug("Unit of work rolled back", exc_info=True)
        raise


def run_with_retry(fn, *, resource, resource_id=None, max_attempts=None, timeout=None):
    """Call *fn* inside a fresh unit of work, retrying on stale versions.

    *fn* must be re-runnable: it reloads everything it touches.

    Raises:
        ConflictError: when every attempt hit a concurrent modification.
    """
    if max_attempts is None:
        max_attempts = current_app.config.get("CONSUMPTION_MAX_RETRIES", 3)

    last_exc = None
    for attempt in range(1, max_attempts + 1):
        try:
            with unit_of_work(timeout=timeout):
                return fn()
        except StaleDataError as exc:
            last_exc = exc
            logger.warning(
                "Concurrent modification of %s id=%s (attempt %d/%d)",
                resource, resource_id, attempt, max_attempts,
                extra={"entity_id": resource_id, "attempt": attempt},
            )

    raise ConflictError(resource, resource_id, attempts=max_attempts) from last_exc


def check_expected_version(obj, expected_version, resource):
    """Reject a write based on a stale read of *obj*."""
    if expected_version is not None and obj.version != expected_version:
        raise ConflictError(resource, obj.id, expected_version=expected_version,
                            actual_version=obj.version)
