"""Outbound event queue.

Every notification and every platform intent is written as an
``OutboundEvent`` row inside the caller's transaction.  External
consumers poll ``pending`` and acknowledge with ``mark_delivered``;
nothing here talks to a network API.
"""

from __future__ import annotations

import enum
import logging
import uuid
from collections.abc import Sequence
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from creative_engine.models import OutboundEvent
from creative_engine.services.store import store_guard

logger = logging.getLogger(__name__)

NOTIFICATION = "notification"
PLATFORM = "platform"
CHANNELS = (NOTIFICATION, PLATFORM)

# Event types
FATIGUE_SEVERE = "fatigue.severe"
FATIGUE_MODERATE = "fatigue.moderate"
ROTATION_WEIGHTS_UPDATED = "rotation.weights_updated"
CREATIVE_PAUSE_REQUESTED = "creative.pause_requested"
EXPERIMENT_STARTED = "experiment.started"
EXPERIMENT_STOPPED = "experiment.stopped"
EXPERIMENT_VARIANTS_ACTIVATED = "experiment.variants_activated"
WINNER_SELECTED = "winner.selected"
WINNER_IMPLEMENTATION_STARTED = "winner.implementation_started"
ROLLOUT_ROLLBACK_REQUIRED = "rollout.rollback_required"


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, enum.Enum):
        return value.value
    return value


class EventOutbox:
    """Writes and reads ``OutboundEvent`` rows."""

    def emit(
        self,
        db: Session,
        event_type: str,
        *,
        channel: str,
        entity_type: str,
        entity_id: Any,
        payload: dict[str, Any],
    ) -> OutboundEvent:
        if channel not in CHANNELS:
            raise ValueError(f"Unknown event channel: {channel}")
        event = OutboundEvent(
            event_type=event_type,
            channel=channel,
            entity_type=entity_type,
            entity_id=str(entity_id),
            payload_json=_jsonable(payload),
        )
        db.add(event)
        logger.info("Queued %s event %s for %s %s", channel, event_type, entity_type, entity_id)
        return event

    def pending(
        self, db: Session, channel: str | None = None, *, limit: int = 100
    ) -> list[OutboundEvent]:
        query = select(OutboundEvent).where(OutboundEvent.delivered_at.is_(None))
        if channel is not None:
            query = query.where(OutboundEvent.channel == channel)
        query = query.order_by(OutboundEvent.created_at.asc()).limit(limit)
        with store_guard(db, "list pending events"):
            return list(db.execute(query).scalars().all())

    def mark_delivered(self, db: Session, event_ids: Sequence[uuid.UUID]) -> int:
        if not event_ids:
            return 0
        now = datetime.now(timezone.utc)
        with store_guard(db, "mark events delivered"):
            events = (
                db.execute(
                    select(OutboundEvent)
                    .where(OutboundEvent.id.in_(list(event_ids)))
                    .where(OutboundEvent.delivered_at.is_(None))
                )
                .scalars()
                .all()
            )
            for event in events:
                event.delivered_at = now
            db.commit()
        return len(events)
