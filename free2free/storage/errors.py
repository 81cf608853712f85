from __future__ import annotations

from typing import Any, Dict, Iterable, Optional


class ConstraintViolation(Exception):
    """A uniqueness or foreign key rule rejected a write.

    ``constraint`` names the violated rule (``user_identity``,
    ``refresh_token_hash``, ``session_user``...) so callers can tell a
    duplicate first login apart from a dangling user reference.
    """

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        constraint: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}
        self.constraint = constraint


class DisallowedFieldError(ValueError):
    """An update named a column outside the entity's writable set."""

    def __init__(self, entity: str, fields: Iterable[str]):
        self.entity = entity
        self.fields = sorted(fields)
        super().__init__(f"{entity} fields not writable: {', '.join(self.fields)}")


__all__ = ["ConstraintViolation", "DisallowedFieldError"]
