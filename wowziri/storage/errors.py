from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Base class for failures surfaced by a user/chat store."""


class ConstraintViolation(StoreError):
    """A write would break a uniqueness or ownership rule.

    ``detail["field"]`` names the offending column for duplicate email/phone.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = dict(detail or {})

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


__all__ = ["StoreError", "ConstraintViolation"]
