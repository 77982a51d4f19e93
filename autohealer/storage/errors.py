from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a uniqueness or foreign-key constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StaleRecordError(Exception):
    """Raised when a compare-and-swap write finds the row changed underneath it."""

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} {entity_id} was modified concurrently")
        self.entity = entity
        self.entity_id = entity_id


__all__ = ["ConstraintViolation", "StaleRecordError"]
