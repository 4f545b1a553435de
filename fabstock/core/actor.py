"""
Actor: who is performing a mutating operation.

Identity itself is issued elsewhere (session/auth layer); services only
need the id, display name and role to stamp audit entries and the
``*_by`` columns on governed rows.
"""

from dataclasses import dataclass

from fabstock.core.exceptions import ValidationError


@dataclass(frozen=True)
class Actor:
    user_id: str
    user_name: str
    role: str = ""
    correlation_id: str | None = None

    @classmethod
    def system(cls, correlation_id: str | None = None) -> "Actor":
        return cls(user_id="system", user_name="System", role="system",
                   correlation_id=correlation_id)


def require_actor(actor: Actor | None) -> Actor:
    """Reject anonymous or blank actors before any store access."""
    if actor is None:
        raise ValidationError("An actor is required", details={"actor": "required"})
    if not (actor.user_id or "").strip() or not (actor.user_name or "").strip():
        raise ValidationError(
            "Actor user_id and user_name are required",
            details={"user_id": actor.user_id, "user_name": actor.user_name},
        )
    return actor
