"""
Platform-wide exception hierarchy.

Every service in fabstock raises one of these types; none of them return
error tuples. A raised error always means the unit of work that raised it
has been rolled back, so callers may retry or report without cleanup.

Each class carries a machine-readable ``code`` plus the structured values
an operator needs (required vs. available quantity, current vs. attempted
status, ...). Callers catch by type and read attributes, never parse
messages.

Usage:
    from fabstock.core.exceptions import InsufficientStockError, NotFoundError

    raise NotFoundError(resource="Profile", resource_id="A15", tenant_id="t1")
    raise InsufficientStockError(required=6000, available=5000, resource_id="A15")
"""


class FabstockError(Exception):
    """Base class for every domain error raised by fabstock services."""

    code = "ERR_INTERNAL"

    def to_dict(self) -> dict:
        body = {"code": self.code, "error": str(self)}
        details = {
            k: v for k, v in vars(self).items()
            if not k.startswith("_") and v is not None
        }
        if details:
            body["details"] = details
        return body


class ValidationError(FabstockError):
    """Raised when input is malformed, before any store access happens.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown. Keys are field names;
                 values are error descriptions.
    """

    code = "ERR_VALIDATION"

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class MissingReasonError(ValidationError):
    """Raised when an operation that must be justified gets an empty reason."""

    code = "ERR_MISSING_REASON"

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(
            f"A non-empty reason is required to {operation}",
            details={"reason": "required"},
        )


class NotFoundError(FabstockError):
    """Raised when a requested resource does not exist within the given scope.

    Used for BOTH genuinely missing records AND cross-tenant lookups; the
    two cases are indistinguishable to the caller.

    Args:
        resource: Human-readable model/entity name (e.g. "Profile").
        resource_id: The key that was looked up (pk or lot id).
        tenant_id: Optional scope that was enforced. For logging only.
    """

    code = "ERR_NOT_FOUND"

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        tenant_id: str | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.tenant_id = tenant_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if tenant_id is not None:
            msg += f" (tenant={tenant_id})"
        super().__init__(msg)


class InsufficientStockError(FabstockError):
    """Raised when a consumption needs more material than a lot has left.

    Both numbers are reported verbatim so the operator can see how far off
    the request was.
    """

    code = "ERR_INSUFFICIENT_STOCK"

    def __init__(self, required, available, resource_id: int | str | None = None) -> None:
        self.required = required
        self.available = available
        self.resource_id = resource_id
        target = f" on {resource_id}" if resource_id is not None else ""
        super().__init__(
            f"Insufficient stock{target}: required={required}, available={available}"
        )


class InsufficientQuantityError(FabstockError):
    """Raised when a reservation asks for more than the lot holds."""

    code = "ERR_INSUFFICIENT_QUANTITY"

    def __init__(self, required, available, resource_id: int | str | None = None) -> None:
        self.required = required
        self.available = available
        self.resource_id = resource_id
        target = f" on {resource_id}" if resource_id is not None else ""
        super().__init__(
            f"Insufficient quantity{target}: required={required}, available={available}"
        )


class InvalidTransitionError(FabstockError):
    """Raised when a state machine is asked for an edge it does not have."""

    code = "ERR_INVALID_TRANSITION"

    def __init__(self, current: str, attempted: str, allowed: list[str] | tuple[str, ...]) -> None:
        self.current = current
        self.attempted = attempted
        self.allowed = list(allowed)
        allowed_str = ", ".join(self.allowed) if self.allowed else "none (terminal)"
        super().__init__(
            f"Invalid transition: {current} → {attempted} (allowed: {allowed_str})"
        )


class NotCollectingError(InvalidTransitionError):
    """Raised when a winner is selected on a request that is not collecting quotes."""

    code = "ERR_NOT_COLLECTING"

    def __init__(self, current: str) -> None:
        super().__init__(current, "select_winner", ["collecting"])


class StatusLockedError(FabstockError):
    """Raised when a child collection is mutated outside its editable statuses."""

    code = "ERR_STATUS_LOCKED"

    def __init__(self, operation: str, status: str, allowed_statuses) -> None:
        self.operation = operation
        self.status = status
        self.allowed_statuses = sorted(allowed_statuses)
        super().__init__(
            f"Cannot {operation} while status is '{status}' "
            f"(allowed in: {', '.join(self.allowed_statuses)})"
        )


class MissingWinnerError(FabstockError):
    """Raised when a purchase request is completed without a winning supplier."""

    code = "ERR_MISSING_WINNER"

    def __init__(self, purchase_request_id: int | None = None) -> None:
        self.purchase_request_id = purchase_request_id
        super().__init__(
            f"Purchase request {purchase_request_id} has no winner selected"
        )


class NoQuoteFromSupplierError(FabstockError):
    """Raised when the chosen winner has no active quote on the request."""

    code = "ERR_NO_QUOTE_FROM_SUPPLIER"

    def __init__(self, purchase_request_id: int, supplier_id: int) -> None:
        self.purchase_request_id = purchase_request_id
        self.supplier_id = supplier_id
        super().__init__(
            f"Supplier {supplier_id} has no active quote on purchase request {purchase_request_id}"
        )


class DuplicateIdentityError(FabstockError):
    """Raised when an operation would create a duplicate human-readable id.

    Args:
        resource: Model name.
        field: The unique field that would be duplicated.
        value: The conflicting value.
    """

    code = "ERR_DUPLICATE_IDENTITY"

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} already exists")


class ConflictError(FabstockError):
    """Raised when optimistic-concurrency checks keep failing.

    Either the caller's ``expected_version`` is stale, or the retry budget
    for a contended row ran out.
    """

    code = "ERR_CONFLICT"

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        *,
        attempts: int | None = None,
        expected_version: int | None = None,
        actual_version: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.attempts = attempts
        self.expected_version = expected_version
        self.actual_version = actual_version
        msg = f"Concurrent modification of {resource} id={resource_id}"
        if attempts is not None:
            msg += f" (gave up after {attempts} attempts)"
        if expected_version is not None:
            msg += f" (expected version {expected_version}, found {actual_version})"
        super().__init__(msg)


class OperationTimeoutError(FabstockError):
    """Raised when a unit of work outlives its caller-supplied timeout."""

    code = "ERR_TIMEOUT"

    def __init__(self, timeout: float, elapsed: float) -> None:
        self.timeout = timeout
        self.elapsed = round(elapsed, 3)
        super().__init__(
            f"Operation exceeded timeout of {timeout}s (elapsed {self.elapsed}s); rolled back"
        )


class DeletionNotAllowedError(FabstockError):
    """Raised when a delete would orphan history (usages, remnants, reservations)."""

    code = "ERR_DELETE_BLOCKED"

    def __init__(self, resource: str, resource_id: int | str, reason: str) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.reason = reason
        super().__init__(f"Cannot delete {resource} id={resource_id}: {reason}")


class ImmutabilityViolationError(FabstockError):
    """Raised when code tries to update or delete an append-only record."""

    code = "ERR_IMMUTABLE"

    def __init__(self, entity_type: str, entity_id: int | str | None, operation: str) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.operation = operation
        super().__init__(
            f"{entity_type} id={entity_id} is append-only; {operation} rejected"
        )
