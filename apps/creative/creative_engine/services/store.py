"""Session helpers shared by the services.

``store_guard`` turns SQLAlchemy failures into ``StoreError`` after rolling
the session back; ``require`` loads a row by primary key or raises
``NotFoundError``.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from creative_engine.exceptions import NotFoundError, StoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def as_uuid(value: Any) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


@contextmanager
def store_guard(db: Session, operation: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Store failure during %s: %s", operation, exc)
        raise StoreError(f"Store failure during {operation}", {"error": str(exc)}) from exc


def require(db: Session, model: type[T], entity_id: Any, entity: str) -> T:
    try:
        key = as_uuid(entity_id)
    except (TypeError, ValueError) as exc:
        raise NotFoundError(entity, entity_id) from exc
    with store_guard(db, f"load {entity}"):
        row = db.get(model, key)
    if row is None:
        raise NotFoundError(entity, entity_id)
    return row
