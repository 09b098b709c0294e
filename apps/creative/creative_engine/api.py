"""FastAPI routers for creative performance, fatigue, rotation and the outbox.

Sync endpoints with ``get_db``; service errors are mapped onto HTTP status
codes by ``http_errors``.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from creative_engine.db import get_db
from creative_engine.exceptions import (
    InvalidConfigurationError,
    InvalidTransitionError,
    NotFoundError,
    StoreError,
)
from creative_engine.schemas import (
    AdGroupPerformanceOut,
    CampaignFatigueOut,
    EventsDeliveredOut,
    EventsDeliveredRequest,
    FatigueBatchOut,
    FatigueBatchRequest,
    FatigueRequest,
    FatigueVerdictOut,
    FatigueVerdictRecordOut,
    OutboundEventOut,
    PerformanceProfileOut,
    ReviewCycleOut,
    ReviewRequest,
    RotationChangeSetOut,
    RotationConfigIn,
    RotationRecommendationOut,
)
from creative_engine.services.cycle import CreativeReviewCycle
from creative_engine.services.fatigue import FatigueDetector
from creative_engine.services.fatigue.detector import BatchFatigueResult
from creative_engine.services.outbox import EventOutbox
from creative_engine.services.performance import PerformanceAnalyzer
from creative_engine.services.rotation import RotationOptimizer, RotationStrategy

router = APIRouter(prefix="/api", tags=["creatives"])


@contextmanager
def http_errors() -> Iterator[None]:
    """Translate engine exceptions raised inside the block into HTTP errors."""
    try:
        yield
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=exc.message) from exc
    except InvalidConfigurationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors) from exc
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=exc.message) from exc
    except StoreError as exc:
        raise HTTPException(status_code=503, detail=exc.message) from exc


def _batch_out(batch: BatchFatigueResult) -> FatigueBatchOut:
    return FatigueBatchOut(
        verdicts=[FatigueVerdictOut(**v.as_dict()) for v in batch.verdicts],
        failures=batch.failures,
        summary=batch.summary,
    )


# ---------------------------------------------------------------------------
# Performance
# ---------------------------------------------------------------------------


@router.get("/creatives/{creative_id}/performance", response_model=PerformanceProfileOut)
def creative_performance(
    creative_id: uuid.UUID,
    lookback_days: int | None = None,
    as_of: date | None = None,
    db: Session = Depends(get_db),
):
    """Performance profile of a single creative."""
    with http_errors():
        profile = PerformanceAnalyzer().analyze_creative(db, creative_id, lookback_days, today=as_of)
    return PerformanceProfileOut(**profile.as_dict())


@router.get("/ad-groups/{ad_group_id}/performance", response_model=AdGroupPerformanceOut)
def ad_group_performance(
    ad_group_id: uuid.UUID,
    lookback_days: int | None = None,
    as_of: date | None = None,
    db: Session = Depends(get_db),
):
    """Ranked performance, health and rotation effectiveness of an ad group."""
    with http_errors():
        result = PerformanceAnalyzer().analyze_ad_group(db, ad_group_id, lookback_days, today=as_of)
    return AdGroupPerformanceOut(**result.as_dict())


# ---------------------------------------------------------------------------
# Rotation
# ---------------------------------------------------------------------------


@router.get("/ad-groups/{ad_group_id}/rotation", response_model=RotationRecommendationOut)
def rotation_recommendation(
    ad_group_id: uuid.UUID,
    strategy: RotationStrategy = RotationStrategy.OPTIMIZE,
    as_of: date | None = None,
    db: Session = Depends(get_db),
):
    """Recommend a rotation strategy and weights without changing anything."""
    config = RotationConfigIn(strategy=strategy).to_config()
    with http_errors():
        recommendation = RotationOptimizer(outbox=EventOutbox()).recommend(
            db, ad_group_id, config, today=as_of
        )
    return RotationRecommendationOut(**recommendation.as_dict())


@router.post("/ad-groups/{ad_group_id}/rotation/apply", response_model=RotationChangeSetOut)
def apply_rotation(
    ad_group_id: uuid.UUID,
    payload: RotationConfigIn | None = None,
    as_of: date | None = None,
    db: Session = Depends(get_db),
):
    """Persist the recommended weights and request pauses for fatigued creatives."""
    config = (payload or RotationConfigIn()).to_config()
    with http_errors():
        changes = RotationOptimizer(outbox=EventOutbox()).apply_recommendation(
            db, ad_group_id, config, today=as_of
        )
    return RotationChangeSetOut(
        ad_group_id=changes.ad_group_id,
        implemented=changes.implemented,
        strategy=changes.strategy.value,
        changes=changes.changes,
        pause_requests=changes.pause_requests,
        next_review_date=changes.next_review_date,
    )


@router.post("/ad-groups/{ad_group_id}/review", response_model=ReviewCycleOut)
def review_ad_group(
    ad_group_id: uuid.UUID,
    payload: ReviewRequest | None = None,
    as_of: date | None = None,
    db: Session = Depends(get_db),
):
    """Run performance, fatigue and rotation analysis over one ad group."""
    payload = payload or ReviewRequest()
    outbox = EventOutbox()
    analyzer = PerformanceAnalyzer()
    cycle = CreativeReviewCycle(
        analyzer,
        FatigueDetector(outbox=outbox),
        RotationOptimizer(analyzer, outbox=outbox),
    )
    with http_errors():
        result = cycle.run(
            db, ad_group_id, payload.config.to_config(), apply=payload.apply, today=as_of
        )
    return ReviewCycleOut(
        ad_group_id=result.ad_group_id,
        analysis_date=result.analysis_date,
        health=result.performance.health.as_dict() if result.performance else None,
        fatigue_summary=result.fatigue.summary if result.fatigue else None,
        rotation=(
            RotationRecommendationOut(**result.rotation.as_dict()) if result.rotation else None
        ),
        applied=bool(result.applied and result.applied.implemented),
        experiment_candidates=result.experiment_candidates,
        errors=result.errors,
    )


# ---------------------------------------------------------------------------
# Fatigue
# ---------------------------------------------------------------------------


@router.post(
    "/creatives/{creative_id}/fatigue",
    response_model=FatigueVerdictOut,
    tags=["fatigue"],
)
def detect_fatigue(
    creative_id: uuid.UUID,
    payload: FatigueRequest | None = None,
    db: Session = Depends(get_db),
):
    """Evaluate fatigue signals for one creative and store the verdict."""
    analysis_date = payload.analysis_date if payload else None
    with http_errors():
        verdict = FatigueDetector(outbox=EventOutbox()).detect(db, creative_id, analysis_date)
    return FatigueVerdictOut(**verdict.as_dict())


@router.get(
    "/creatives/{creative_id}/fatigue/history",
    response_model=list[FatigueVerdictRecordOut],
    tags=["fatigue"],
)
def fatigue_history(
    creative_id: uuid.UUID,
    limit: int = 30,
    db: Session = Depends(get_db),
):
    """Stored verdicts for a creative, newest first."""
    with http_errors():
        return FatigueDetector().history(db, creative_id, limit)


@router.post("/fatigue/batch", response_model=FatigueBatchOut, tags=["fatigue"])
def detect_fatigue_batch(payload: FatigueBatchRequest, db: Session = Depends(get_db)):
    """Evaluate many creatives; one failure does not stop the rest."""
    with http_errors():
        batch = FatigueDetector(outbox=EventOutbox()).detect_batch(
            db, payload.creative_ids, payload.analysis_date
        )
    return _batch_out(batch)


@router.post(
    "/campaigns/{campaign_id}/fatigue",
    response_model=CampaignFatigueOut,
    tags=["fatigue"],
)
def detect_campaign_fatigue(
    campaign_id: uuid.UUID,
    payload: FatigueRequest | None = None,
    db: Session = Depends(get_db),
):
    """Evaluate every creative of a campaign and roll the verdicts up."""
    analysis_date = payload.analysis_date if payload else None
    with http_errors():
        result = FatigueDetector(outbox=EventOutbox()).detect_campaign(db, campaign_id, analysis_date)
    return CampaignFatigueOut(
        campaign_id=result.campaign_id,
        level=result.level.value,
        batch=_batch_out(result.batch),
        recommendations=result.recommendations,
    )


# ---------------------------------------------------------------------------
# Outbox
# ---------------------------------------------------------------------------


@router.get("/events", response_model=list[OutboundEventOut], tags=["events"])
def pending_events(
    channel: str | None = None,
    limit: int = 100,
    db: Session = Depends(get_db),
):
    """Undelivered outbound events, oldest first."""
    with http_errors():
        return EventOutbox().pending(db, channel, limit=limit)


@router.post("/events/delivered", response_model=EventsDeliveredOut, tags=["events"])
def mark_events_delivered(payload: EventsDeliveredRequest, db: Session = Depends(get_db)):
    """Acknowledge delivery of outbound events."""
    with http_errors():
        delivered = EventOutbox().mark_delivered(db, payload.event_ids)
    return EventsDeliveredOut(delivered=delivered)
