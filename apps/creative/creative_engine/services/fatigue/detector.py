"""Fatigue detection orchestrator.

Loads a creative's daily series, runs every registered detector, folds
the signals into one verdict, stores it (one row per creative and
analysis date) and queues notifications for moderate or worse fatigue.
"""

from __future__ import annotations

import logging
import uuid
from collections import Counter
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from creative_engine.exceptions import NotFoundError
from creative_engine.models import Creative, FatigueVerdictRecord
from creative_engine.services.fatigue.base import (
    BaseFatigueDetector,
    FatigueContext,
    FatigueSignal,
    FatigueSignalType,
    Severity,
)
from creative_engine.services.fatigue.detectors import build_default_detectors
from creative_engine.services.metrics import (
    DailyMetrics,
    load_daily_metrics,
    mean,
    summarize,
)
from creative_engine.services.outbox import (
    FATIGUE_MODERATE,
    FATIGUE_SEVERE,
    NOTIFICATION,
    EventOutbox,
)
from creative_engine.services.performance import percent_change
from creative_engine.services.store import as_uuid, require, store_guard
from creative_engine.settings import settings

logger = logging.getLogger(__name__)

DEFAULT_RECENT_DAYS = settings.FATIGUE_RECENT_WINDOW_DAYS
DEFAULT_BASELINE_DAYS = settings.FATIGUE_BASELINE_WINDOW_DAYS
HISTORY_DAYS = 37
DEFAULT_LIFESPAN_DAYS = 30


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OverallFatigue:
    level: Severity
    score: float
    confidence: float


@dataclass
class FatigueVerdict:
    creative_id: str
    ad_group_id: str | None
    campaign_id: str | None
    analysis_date: date
    overall: OverallFatigue
    signals: list[FatigueSignal] = field(default_factory=list)
    performance: dict[str, Any] = field(default_factory=dict)
    historical: dict[str, Any] = field(default_factory=dict)
    predictions: dict[str, Any] = field(default_factory=dict)
    actions: list[dict[str, Any]] = field(default_factory=list)

    @property
    def level(self) -> Severity:
        return self.overall.level

    def as_dict(self) -> dict[str, Any]:
        return {
            "creative_id": self.creative_id,
            "ad_group_id": self.ad_group_id,
            "campaign_id": self.campaign_id,
            "analysis_date": self.analysis_date.isoformat(),
            "level": self.overall.level.value,
            "score": round(self.overall.score, 2),
            "confidence": round(self.overall.confidence, 4),
            "signals": [s.as_dict() for s in self.signals],
            "performance": dict(self.performance),
            "historical": dict(self.historical),
            "predictions": dict(self.predictions),
            "actions": [dict(a) for a in self.actions],
        }


@dataclass
class BatchFatigueResult:
    verdicts: list[FatigueVerdict] = field(default_factory=list)
    failures: list[dict[str, str]] = field(default_factory=list)
    summary: dict[str, Any] = field(default_factory=dict)


@dataclass
class CampaignFatigueResult:
    campaign_id: str
    level: Severity
    batch: BatchFatigueResult
    recommendations: list[dict[str, Any]] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Pure aggregation functions
# ---------------------------------------------------------------------------


def aggregate_signals(signals: Sequence[FatigueSignal]) -> OverallFatigue:
    """Confidence-weighted severity score mapped onto a fatigue level."""
    if not signals:
        return OverallFatigue(level=Severity.NONE, score=0.0, confidence=1.0)

    total_confidence = sum(s.confidence for s in signals)
    weighted = sum(s.severity.points * s.confidence for s in signals)
    score = weighted / total_confidence if total_confidence > 0 else 0.0

    if score >= 80:
        level = Severity.CRITICAL
    elif score >= 60:
        level = Severity.SEVERE
    elif score >= 40:
        level = Severity.MODERATE
    elif score >= 20:
        level = Severity.MILD
    else:
        level = Severity.NONE
    return OverallFatigue(level=level, score=score, confidence=total_confidence / len(signals))


def project_lifespan(signals: Sequence[FatigueSignal], analysis_date: date) -> dict[str, Any]:
    severe = sum(1 for s in signals if s.severity in (Severity.SEVERE, Severity.CRITICAL))
    if severe > 2:
        lifespan = 7
    elif severe > 0:
        lifespan = 14
    else:
        lifespan = DEFAULT_LIFESPAN_DAYS
    return {
        "expected_lifespan_days": lifespan,
        "optimal_refresh_date": (analysis_date + timedelta(days=lifespan)).isoformat(),
    }


_SIGNAL_ACTIONS: dict[FatigueSignalType, dict[str, Any]] = {
    FatigueSignalType.CTR_DECLINE: {
        "action": "REFRESH_CREATIVE",
        "description": "Create new ad variations with fresh creative elements",
        "expected_impact": {"metric": "CTR", "improvement": 0.25},
    },
    FatigueSignalType.FREQUENCY_INCREASE: {
        "action": "FREQUENCY_CAPPING",
        "description": "Cap frequency to reduce audience saturation",
        "expected_impact": {"metric": "CTR", "improvement": 0.15},
    },
    FatigueSignalType.CVR_DECLINE: {
        "action": "AUDIENCE_EXPANSION",
        "description": "Broaden or refresh audience targeting",
        "expected_impact": {"metric": "CVR", "improvement": 0.10},
    },
    FatigueSignalType.CPC_INCREASE: {
        "action": "BID_ADJUSTMENT",
        "description": "Revisit bids and ad relevance to bring CPC back down",
        "expected_impact": {"metric": "CPC", "improvement": 0.10},
    },
}


def remediation_actions(
    signals: Sequence[FatigueSignal], overall: OverallFatigue
) -> list[dict[str, Any]]:
    actions: list[dict[str, Any]] = []
    if overall.level in (Severity.SEVERE, Severity.CRITICAL):
        actions.append(
            {
                "action": "PAUSE_AD",
                "priority": "IMMEDIATE",
                "description": "Pause the creative to stop further degradation",
                "expected_impact": {"metric": "CPA", "improvement": 0.3},
            }
        )
    for signal in signals:
        template = _SIGNAL_ACTIONS.get(signal.signal_type)
        if template is None:
            continue
        if signal.signal_type == FatigueSignalType.FREQUENCY_INCREASE:
            priority = "HIGH"
        elif signal.severity.rank >= Severity.SEVERE.rank:
            priority = "HIGH"
        else:
            priority = "MEDIUM"
        actions.append({**template, "priority": priority})
    return actions


def summarize_batch(verdicts: Sequence[FatigueVerdict]) -> dict[str, Any]:
    total = len(verdicts)
    distribution = {level.value: 0 for level in Severity}
    for verdict in verdicts:
        distribution[verdict.level.value] += 1
    severe = distribution[Severity.SEVERE.value] + distribution[Severity.CRITICAL.value]

    counts: Counter[str] = Counter()
    for verdict in verdicts:
        for action in {a["action"] for a in verdict.actions}:
            counts[action] += 1
    action_counts = [
        {
            "action": action,
            "affected": affected,
            "priority": "HIGH" if total and affected / total > 0.5 else "MEDIUM",
        }
        for action, affected in counts.most_common()
    ]

    return {
        "total": total,
        "distribution": distribution,
        "avg_score": round(mean([v.overall.score for v in verdicts]), 2),
        "fatigue_rate": round(severe / total, 4) if total else 0.0,
        "action_counts": action_counts,
    }


def campaign_level(fatigue_rate: float) -> Severity:
    if fatigue_rate > 0.5:
        return Severity.SEVERE
    if fatigue_rate > 0.3:
        return Severity.MODERATE
    if fatigue_rate > 0.1:
        return Severity.MILD
    return Severity.NONE


def _compare(recent: Sequence[DailyMetrics], reference: Sequence[DailyMetrics]) -> dict[str, float] | None:
    if not recent or not reference:
        return None
    now, then = summarize(recent), summarize(reference)
    return {
        "ctr_change": round(percent_change(then.ctr, now.ctr), 4),
        "cvr_change": round(percent_change(then.cvr, now.cvr), 4),
        "cpc_change": round(percent_change(then.cpc, now.cpc), 4),
    }


# ---------------------------------------------------------------------------
# FatigueDetector
# ---------------------------------------------------------------------------


class FatigueDetector:
    """Runs registered detectors for a creative and stores the verdict."""

    def __init__(
        self,
        detectors: Mapping[FatigueSignalType, BaseFatigueDetector] | None = None,
        *,
        outbox: EventOutbox | None = None,
        recent_days: int = DEFAULT_RECENT_DAYS,
        baseline_days: int = DEFAULT_BASELINE_DAYS,
    ) -> None:
        if detectors is None:
            detectors = build_default_detectors()
        for signal_type, detector in detectors.items():
            if detector.signal_type != signal_type:
                raise ValueError(
                    f"Detector {type(detector).__name__} registered under {signal_type.value}"
                )
        self.detectors: dict[FatigueSignalType, BaseFatigueDetector] = dict(detectors)
        self.outbox = outbox or EventOutbox()
        self.recent_days = recent_days
        self.baseline_days = baseline_days

    # ---- context --------------------------------------------------------

    def build_context(
        self, creative: Creative, daily: Sequence[DailyMetrics], analysis_date: date
    ) -> FatigueContext:
        """*daily* is oldest first; the context holds it newest first."""
        newest_first = tuple(reversed(daily))
        window = newest_first[: self.recent_days + self.baseline_days]
        frequencies = [d.frequency for d in window if d.frequency is not None]
        created = creative.created_at.date() if creative.created_at else analysis_date
        return FatigueContext(
            creative_id=str(creative.id),
            analysis_date=analysis_date,
            daily=newest_first,
            avg_frequency=mean(frequencies) if frequencies else None,
            days_active=max((analysis_date - created).days, 0),
            recent_days=self.recent_days,
            baseline_days=self.baseline_days,
        )

    def evaluate(self, ctx: FatigueContext) -> list[FatigueSignal]:
        signals: list[FatigueSignal] = []
        for detector in self.detectors.values():
            ok, _reason = detector.check_preconditions(ctx)
            if not ok:
                continue
            signal = detector.detect(ctx)
            if signal is not None and signal.severity != Severity.NONE:
                signals.append(signal)
        return signals

    # ---- single creative ------------------------------------------------

    def detect(
        self, db: Session, creative_id: Any, analysis_date: date | None = None
    ) -> FatigueVerdict:
        creative = require(db, Creative, creative_id, "Creative")
        analysis_date = analysis_date or date.today()
        daily = load_daily_metrics(
            db,
            creative.id,
            start=analysis_date - timedelta(days=HISTORY_DAYS - 1),
            end=analysis_date,
        )
        ctx = self.build_context(creative, daily, analysis_date)
        signals = self.evaluate(ctx)
        overall = aggregate_signals(signals)

        verdict = FatigueVerdict(
            creative_id=str(creative.id),
            ad_group_id=str(creative.ad_group_id),
            campaign_id=str(creative.campaign_id) if creative.campaign_id else None,
            analysis_date=analysis_date,
            overall=overall,
            signals=signals,
            performance=self._performance(ctx),
            historical=self._historical(db, creative.id, ctx),
            predictions=project_lifespan(signals, analysis_date),
            actions=remediation_actions(signals, overall),
        )

        previous_level = self._persist(db, verdict)
        if previous_level != verdict.level.value:
            self._emit(db, verdict)
        with store_guard(db, "commit fatigue verdict"):
            db.commit()

        if verdict.level.rank >= Severity.MODERATE.rank:
            logger.warning(
                "Creative %s fatigue %s (score %.1f, %d signals)",
                verdict.creative_id,
                verdict.level.value,
                overall.score,
                len(signals),
            )
        return verdict

    def _performance(self, ctx: FatigueContext) -> dict[str, Any]:
        window = ctx.daily[: ctx.recent_days + ctx.baseline_days]
        totals = summarize(window).as_dict()
        totals["avg_frequency"] = ctx.avg_frequency
        totals["days_active"] = ctx.days_active
        return totals

    def _historical(
        self, db: Session, creative_id: uuid.UUID, ctx: FatigueContext
    ) -> dict[str, Any]:
        daily = ctx.daily
        recent = daily[: self.recent_days]
        historical: dict[str, Any] = {
            "vs_previous_week": _compare(recent, daily[self.recent_days : self.recent_days * 2]),
            "vs_30_days_ago": _compare(recent, daily[30 : 30 + self.recent_days]),
            "peak_performance": None,
            "previous_verdict": None,
        }
        with_traffic = [d for d in daily if d.impressions > 0]
        if with_traffic:
            peak = max(with_traffic, key=lambda d: d.ctr)
            current_ctr = summarize(recent).ctr
            historical["peak_performance"] = {
                "date": peak.day.isoformat(),
                "ctr": round(peak.ctr, 6),
                "cvr": round(peak.cvr, 6),
                "decline_from_peak": round(-percent_change(peak.ctr, current_ctr), 4),
            }

        with store_guard(db, "load previous fatigue verdict"):
            previous = (
                db.execute(
                    select(FatigueVerdictRecord)
                    .where(FatigueVerdictRecord.creative_id == creative_id)
                    .where(FatigueVerdictRecord.analysis_date < ctx.analysis_date)
                    .order_by(FatigueVerdictRecord.analysis_date.desc())
                )
                .scalars()
                .first()
            )
        if previous is not None:
            historical["previous_verdict"] = {
                "analysis_date": previous.analysis_date.isoformat(),
                "level": previous.level,
                "score": previous.score,
            }
        return historical

    def _persist(self, db: Session, verdict: FatigueVerdict) -> str | None:
        """Upsert on (creative, analysis date).  Returns the level previously stored, if any."""
        creative_id = as_uuid(verdict.creative_id)
        values = {
            "level": verdict.level.value,
            "score": round(verdict.overall.score, 4),
            "confidence": round(verdict.overall.confidence, 4),
            "signal_count": len(verdict.signals),
            "verdict_json": verdict.as_dict(),
        }

        with store_guard(db, "store fatigue verdict"):
            record = self._stored_verdict(db, creative_id, verdict.analysis_date)
            if record is None:
                try:
                    # the savepoint limits a failed insert to this row
                    with db.begin_nested():
                        db.add(
                            FatigueVerdictRecord(
                                creative_id=creative_id,
                                analysis_date=verdict.analysis_date,
                                **values,
                            )
                        )
                    return None
                except IntegrityError:
                    # Another writer stored the same day first; overwrite it.
                    record = self._stored_verdict(db, creative_id, verdict.analysis_date)
                    if record is None:
                        raise

            previous_level = record.level
            for key, value in values.items():
                setattr(record, key, value)
            db.flush()
            return previous_level

    def _stored_verdict(
        self, db: Session, creative_id: uuid.UUID, analysis_date: date
    ) -> FatigueVerdictRecord | None:
        return (
            db.execute(
                select(FatigueVerdictRecord)
                .where(FatigueVerdictRecord.creative_id == creative_id)
                .where(FatigueVerdictRecord.analysis_date == analysis_date)
            )
            .scalars()
            .first()
        )

    def _emit(self, db: Session, verdict: FatigueVerdict) -> None:
        if verdict.level in (Severity.SEVERE, Severity.CRITICAL):
            event_type = FATIGUE_SEVERE
        elif verdict.level == Severity.MODERATE:
            event_type = FATIGUE_MODERATE
        else:
            return
        self.outbox.emit(
            db,
            event_type,
            channel=NOTIFICATION,
            entity_type="creative",
            entity_id=verdict.creative_id,
            payload=verdict.as_dict(),
        )

    # ---- batch ----------------------------------------------------------

    def detect_batch(
        self,
        db: Session,
        creative_ids: Sequence[Any],
        analysis_date: date | None = None,
    ) -> BatchFatigueResult:
        result = BatchFatigueResult()
        for creative_id in creative_ids:
            try:
                result.verdicts.append(self.detect(db, creative_id, analysis_date))
            except Exception as exc:
                db.rollback()
                logger.exception("Fatigue detection failed for creative %s", creative_id)
                result.failures.append({"creative_id": str(creative_id), "error": str(exc)})
        result.summary = summarize_batch(result.verdicts)
        return result

    def detect_campaign(
        self, db: Session, campaign_id: Any, analysis_date: date | None = None
    ) -> CampaignFatigueResult:
        cid = as_uuid(campaign_id)
        with store_guard(db, "load campaign creatives"):
            creative_ids = list(
                db.execute(
                    select(Creative.id)
                    .where(Creative.campaign_id == cid)
                    .where(Creative.status == "ENABLED")
                )
                .scalars()
                .all()
            )
        if not creative_ids:
            raise NotFoundError("Creatives for campaign", campaign_id)

        batch = self.detect_batch(db, creative_ids, analysis_date)
        level = campaign_level(batch.summary["fatigue_rate"])
        recommendations = [
            {
                "action": entry["action"],
                "affected_creatives": entry["affected"],
                "priority": entry["priority"],
                "description": f"{entry['action']} recommended for {entry['affected']} creative(s)",
            }
            for entry in batch.summary["action_counts"]
        ]
        logger.info(
            "Campaign %s fatigue %s across %d creatives",
            cid,
            level.value,
            batch.summary["total"],
        )
        return CampaignFatigueResult(
            campaign_id=str(cid), level=level, batch=batch, recommendations=recommendations
        )

    # ---- history --------------------------------------------------------

    def history(self, db: Session, creative_id: Any, limit: int = 30) -> list[FatigueVerdictRecord]:
        creative = require(db, Creative, creative_id, "Creative")
        with store_guard(db, "load fatigue history"):
            return list(
                db.execute(
                    select(FatigueVerdictRecord)
                    .where(FatigueVerdictRecord.creative_id == creative.id)
                    .order_by(FatigueVerdictRecord.analysis_date.desc())
                    .limit(limit)
                )
                .scalars()
                .all()
            )
