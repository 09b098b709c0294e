"""Exceptions raised by the creative engine services.

Only the classes below are ever raised to callers.  Thin data and
inconclusive statistics are *not* errors: they surface as neutral
results or as decisions such as ``DECLARE_INCONCLUSIVE``.
"""

from __future__ import annotations

from typing import Any


class CreativeEngineError(Exception):
    """Base exception for all engine errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = details or {}


class NotFoundError(CreativeEngineError):
    """Raised when a creative, ad group, experiment or selection id is unknown."""

    def __init__(self, entity: str, entity_id: Any) -> None:
        super().__init__(
            f"{entity} not found", {"entity": entity, "entity_id": str(entity_id)}
        )
        self.entity = entity
        self.entity_id = entity_id


class InvalidConfigurationError(CreativeEngineError):
    """Raised before any write when a configuration fails validation."""

    def __init__(self, errors: list[str], details: dict[str, Any] | None = None) -> None:
        super().__init__("; ".join(errors) or "Invalid configuration", details)
        self.errors = list(errors)


class InvalidTransitionError(CreativeEngineError):
    """Raised when a lifecycle operation is not allowed from the current status."""

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(
            f"Cannot move from {current} to {requested}",
            {"current": current, "requested": requested},
        )
        self.current = current
        self.requested = requested


class StoreError(CreativeEngineError):
    """Raised when a read or write against the store fails."""
