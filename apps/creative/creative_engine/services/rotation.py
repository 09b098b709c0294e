"""Creative rotation optimizer.

Turns an ad group's performance and fatigue picture into a rotation
strategy, a weighted schedule and concrete pause/variant actions.
Applying a recommendation upserts the group's ``RotationSchedule``,
writes weights back to the creatives and queues platform intents.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from creative_engine.exceptions import InvalidConfigurationError
from creative_engine.models import AdGroup, Creative, FatigueVerdictRecord, RotationSchedule
from creative_engine.services.metrics import MetricTotals, safe_div
from creative_engine.services.outbox import (
    CREATIVE_PAUSE_REQUESTED,
    PLATFORM,
    ROTATION_WEIGHTS_UPDATED,
    EventOutbox,
)
from creative_engine.services.performance import (
    DECLINING,
    IMPROVING,
    AdGroupPerformance,
    PerformanceAnalyzer,
    PerformanceProfile,
    stability_index,
)
from creative_engine.services.store import as_uuid, store_guard

logger = logging.getLogger(__name__)

DEFAULT_EFFECTIVENESS = 50.0
BASELINE_IMPACT = {"ctr": 0.02, "cvr": 0.05, "roas": 3.0, "impressions": 10_000}
_FATIGUED_LEVELS = ("SEVERE", "CRITICAL")


class RotationStrategy(str, enum.Enum):
    OPTIMIZE = "OPTIMIZE"
    EVEN = "EVEN"
    DO_NOT_OPTIMIZE = "DO_NOT_OPTIMIZE"
    ADAPTIVE = "ADAPTIVE"


def _strategy(value: Any) -> RotationStrategy:
    try:
        return RotationStrategy(value)
    except ValueError:
        return RotationStrategy.EVEN


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RotationConfig:
    strategy: RotationStrategy = RotationStrategy.OPTIMIZE
    min_impressions: int = 1000
    max_active_creatives: int = 5
    rotation_interval_days: int = 7
    performance_threshold: float = 40.0
    learning_period_days: int = 14
    confidence_level: float = 0.95

    def errors(self) -> list[str]:
        errors: list[str] = []
        if self.min_impressions < 100:
            errors.append("min_impressions must be at least 100")
        if not 2 <= self.max_active_creatives <= 20:
            errors.append("max_active_creatives must be between 2 and 20")
        if not 1 <= self.rotation_interval_days <= 30:
            errors.append("rotation_interval_days must be between 1 and 30")
        if not 0 <= self.performance_threshold <= 100:
            errors.append("performance_threshold must be between 0 and 100")
        if not 7 <= self.learning_period_days <= 30:
            errors.append("learning_period_days must be between 7 and 30")
        if not 0.8 <= self.confidence_level <= 0.99:
            errors.append("confidence_level must be between 0.8 and 0.99")
        return errors

    def validate(self) -> RotationConfig:
        errors = self.errors()
        if errors:
            raise InvalidConfigurationError(errors, {"config": "rotation"})
        return self


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


@dataclass
class RotationAnalysis:
    ad_group_id: str
    current_strategy: RotationStrategy
    active_creatives: int
    effectiveness_score: float
    top_creative_id: str | None
    bottom_creative_id: str | None
    performance_gap: float
    stability_index: float
    can_optimize: bool
    estimated_lift: float
    risk_level: str
    time_to_result_days: int
    fatigued_creative_ids: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "ad_group_id": self.ad_group_id,
            "current_rotation": {
                "strategy": self.current_strategy.value,
                "active_creatives": self.active_creatives,
                "effectiveness_score": round(self.effectiveness_score, 2),
            },
            "performance": {
                "top_creative_id": self.top_creative_id,
                "bottom_creative_id": self.bottom_creative_id,
                "performance_gap": round(self.performance_gap, 2),
                "stability_index": round(self.stability_index, 2),
            },
            "opportunities": {
                "can_optimize": self.can_optimize,
                "estimated_lift": round(self.estimated_lift, 2),
                "risk_level": self.risk_level,
                "time_to_result_days": self.time_to_result_days,
            },
            "fatigued_creative_ids": list(self.fatigued_creative_ids),
        }


@dataclass
class RotationRecommendation:
    ad_group_id: str
    current_strategy: RotationStrategy
    recommended_strategy: RotationStrategy
    confidence: float
    reasoning: list[str]
    expected_impact: dict[str, float]
    action_items: list[dict[str, Any]]
    schedule: list[dict[str, Any]]
    analysis: RotationAnalysis

    @property
    def weights(self) -> dict[str, float]:
        return {entry["creative_id"]: entry["weight"] for entry in self.schedule}

    def as_dict(self) -> dict[str, Any]:
        return {
            "ad_group_id": self.ad_group_id,
            "current_strategy": self.current_strategy.value,
            "recommended_strategy": self.recommended_strategy.value,
            "confidence": round(self.confidence, 4),
            "reasoning": list(self.reasoning),
            "expected_impact": dict(self.expected_impact),
            "action_items": [dict(a) for a in self.action_items],
            "schedule": [dict(s) for s in self.schedule],
            "analysis": self.analysis.as_dict(),
        }


@dataclass
class RotationChangeSet:
    ad_group_id: str
    implemented: bool
    strategy: RotationStrategy
    changes: list[dict[str, Any]]
    pause_requests: list[str]
    next_review_date: date
    recommendation: RotationRecommendation


# ---------------------------------------------------------------------------
# Pure policy functions
# ---------------------------------------------------------------------------


def assess_opportunity(
    scores: Sequence[float], learning_period_days: int
) -> tuple[float, bool, float, str, int]:
    """Return ``(gap, can_optimize, estimated_lift, risk_level, time_to_result)``."""
    gap = (max(scores) - min(scores)) if scores else 0.0
    can_optimize = gap > 20 and len(scores) >= 2
    lift = min(gap * 0.3, 25.0) if can_optimize else 0.0
    risk = "HIGH" if len(scores) < 3 or gap > 50 else "LOW"
    return gap, can_optimize, lift, risk, max(learning_period_days, 14)


def determine_strategy(analysis: RotationAnalysis) -> RotationStrategy:
    if analysis.can_optimize and analysis.risk_level == "LOW" and analysis.performance_gap > 30:
        return RotationStrategy.OPTIMIZE
    if analysis.stability_index < 60:
        return RotationStrategy.ADAPTIVE
    if analysis.effectiveness_score > 70:
        return analysis.current_strategy
    return RotationStrategy.EVEN


def rotation_confidence(analysis: RotationAnalysis) -> float:
    confidence = 0.5
    if analysis.active_creatives >= 3:
        confidence += 0.2
    if analysis.stability_index > 70:
        confidence += 0.15
    if analysis.risk_level == "LOW":
        confidence += 0.15
    if analysis.risk_level == "HIGH":
        confidence -= 0.2
    if analysis.active_creatives < 2:
        confidence -= 0.3
    return round(max(0.1, min(1.0, confidence)), 4)


def _normalize(raw: Sequence[float]) -> list[float]:
    total = sum(raw)
    if total <= 0:
        return [1 / len(raw)] * len(raw) if raw else []
    return [w / total for w in raw]


def adaptive_weights(
    profiles: Sequence[PerformanceProfile], *, today: date
) -> list[float]:
    """Score-based probability plus trend and freshness bonuses, renormalized."""
    raw: list[float] = []
    for profile in profiles:
        weight = profile.score / 100
        if profile.trends.ctr_trend == IMPROVING:
            weight += 0.1
        elif profile.trends.ctr_trend == DECLINING:
            weight -= 0.1
        if profile.last_modified is not None and (today - profile.last_modified).days < 7:
            weight += 0.05
        raw.append(max(0.05, weight))
    return _normalize(raw)


def schedule_weights(
    strategy: RotationStrategy,
    profiles: Sequence[PerformanceProfile],
    *,
    current_weights: dict[str, float] | None = None,
    today: date,
) -> list[float]:
    if not profiles:
        return []
    if strategy == RotationStrategy.OPTIMIZE:
        return _normalize([p.score for p in profiles])
    if strategy == RotationStrategy.ADAPTIVE:
        return adaptive_weights(profiles, today=today)
    if strategy == RotationStrategy.DO_NOT_OPTIMIZE and current_weights:
        return _normalize([current_weights.get(p.creative_id) or 0.0 for p in profiles])
    return [1 / len(profiles)] * len(profiles)


def expected_impact(
    analysis: RotationAnalysis, strategy: RotationStrategy, baseline: dict[str, float]
) -> dict[str, float]:
    multiplier = 1.0
    if strategy == RotationStrategy.OPTIMIZE and analysis.can_optimize:
        multiplier = 1 + analysis.estimated_lift / 100
    elif strategy == RotationStrategy.ADAPTIVE:
        multiplier = 1.05
    return {
        "ctr": round(baseline["ctr"] * multiplier, 6),
        "cvr": round(baseline["cvr"] * multiplier, 6),
        "roas": round(baseline["roas"] * multiplier, 4),
        "impressions": baseline["impressions"],
    }


def _reasoning(analysis: RotationAnalysis, strategy: RotationStrategy) -> list[str]:
    reasoning: list[str] = []
    if strategy == RotationStrategy.OPTIMIZE:
        reasoning.append(
            f"Performance gap of {analysis.performance_gap:.1f} points indicates an optimization opportunity"
        )
        reasoning.append(f"Estimated lift potential: {analysis.estimated_lift:.1f}%")
    elif strategy == RotationStrategy.ADAPTIVE:
        reasoning.append(
            f"Stability index of {analysis.stability_index:.1f} calls for adaptive weighting"
        )
    elif strategy == RotationStrategy.EVEN:
        reasoning.append("Even rotation keeps testing fair across creatives")
        if analysis.risk_level == "HIGH":
            reasoning.append("High risk scenario, even rotation limits exposure")
    elif strategy == RotationStrategy.DO_NOT_OPTIMIZE:
        reasoning.append("Manual rotation requested, weights are left as configured")
    else:
        reasoning.append(f"Current {strategy.value} rotation is performing well")
    reasoning.append(f"Current rotation effectiveness: {analysis.effectiveness_score:.1f}/100")
    return reasoning


# ---------------------------------------------------------------------------
# RotationOptimizer
# ---------------------------------------------------------------------------


class RotationOptimizer:
    """Recommends and applies rotation strategies for an ad group."""

    def __init__(
        self,
        analyzer: PerformanceAnalyzer | None = None,
        *,
        outbox: EventOutbox | None = None,
    ) -> None:
        self.analyzer = analyzer
        self.outbox = outbox or EventOutbox()

    def _analyzer(self) -> PerformanceAnalyzer:
        return self.analyzer or PerformanceAnalyzer()

    def _fatigued(self, db: Session, creative_ids: Sequence[str]) -> list[str]:
        if not creative_ids:
            return []
        fatigued: list[str] = []
        with store_guard(db, "load fatigue verdicts"):
            rows = (
                db.execute(
                    select(FatigueVerdictRecord)
                    .where(FatigueVerdictRecord.creative_id.in_([as_uuid(c) for c in creative_ids]))
                    .order_by(FatigueVerdictRecord.analysis_date.desc())
                )
                .scalars()
                .all()
            )
        seen: set[str] = set()
        for row in rows:
            key = str(row.creative_id)
            if key in seen:
                continue
            seen.add(key)
            if row.level in _FATIGUED_LEVELS:
                fatigued.append(key)
        return fatigued

    # ------------------------------------------------------------------

    def analyze(
        self,
        db: Session,
        ad_group_id: Any,
        config: RotationConfig | None = None,
        *,
        today: date | None = None,
        performance: AdGroupPerformance | None = None,
    ) -> tuple[RotationAnalysis, AdGroupPerformance]:
        config = (config or RotationConfig()).validate()
        if performance is None:
            performance = self._analyzer().analyze_ad_group(
                db, ad_group_id, today=today, min_impressions=config.min_impressions
            )
        with store_guard(db, "load ad group"):
            ad_group = db.get(AdGroup, as_uuid(performance.ad_group_id))

        ranked = performance.ranked
        scores = [p.score for p in ranked]
        gap, can_optimize, lift, risk, time_to_result = assess_opportunity(
            scores, config.learning_period_days
        )
        effectiveness = (
            ad_group.rotation_effectiveness
            if ad_group is not None and ad_group.rotation_effectiveness is not None
            else DEFAULT_EFFECTIVENESS
        )
        analysis = RotationAnalysis(
            ad_group_id=performance.ad_group_id,
            current_strategy=_strategy(ad_group.rotation_strategy if ad_group else None),
            active_creatives=performance.active_creatives,
            effectiveness_score=float(effectiveness),
            top_creative_id=ranked[0].creative_id if ranked else None,
            bottom_creative_id=ranked[-1].creative_id if ranked else None,
            performance_gap=gap,
            stability_index=stability_index(scores),
            can_optimize=can_optimize,
            estimated_lift=lift,
            risk_level=risk,
            time_to_result_days=time_to_result,
            fatigued_creative_ids=self._fatigued(db, [p.creative_id for p in performance.profiles]),
        )
        return analysis, performance

    def recommend(
        self,
        db: Session,
        ad_group_id: Any,
        config: RotationConfig | None = None,
        *,
        today: date | None = None,
        performance: AdGroupPerformance | None = None,
    ) -> RotationRecommendation:
        config = (config or RotationConfig()).validate()
        today = today or date.today()
        analysis, performance = self.analyze(
            db, ad_group_id, config, today=today, performance=performance
        )
        if config.strategy == RotationStrategy.DO_NOT_OPTIMIZE:
            strategy = RotationStrategy.DO_NOT_OPTIMIZE
        else:
            strategy = determine_strategy(analysis)
        ranked = performance.ranked

        actions: list[dict[str, Any]] = []
        to_pause: set[str] = set()
        for profile in ranked:
            if (
                profile.score < config.performance_threshold
                and profile.totals.impressions > config.min_impressions
            ):
                to_pause.add(profile.creative_id)
                actions.append(
                    {
                        "type": "PAUSE_AD",
                        "creative_id": profile.creative_id,
                        "details": (
                            f"Performance score {profile.score:.1f} below threshold "
                            f"{config.performance_threshold:.0f}"
                        ),
                        "priority": "HIGH" if profile.score < 30 else "MEDIUM",
                    }
                )
        for creative_id in analysis.fatigued_creative_ids:
            if creative_id in to_pause:
                continue
            to_pause.add(creative_id)
            actions.append(
                {
                    "type": "PAUSE_AD",
                    "creative_id": creative_id,
                    "details": "Latest fatigue verdict is severe or critical",
                    "priority": "HIGH",
                }
            )
        for profile in [p for p in ranked if p.score > 80][:2]:
            actions.append(
                {
                    "type": "CREATE_VARIANT",
                    "creative_id": profile.creative_id,
                    "details": f"Create a variant of high-performing creative (score {profile.score:.1f})",
                    "priority": "MEDIUM",
                }
            )
        if analysis.can_optimize:
            actions.append(
                {
                    "type": "ADJUST_WEIGHTS",
                    "creative_id": None,
                    "details": "Shift rotation weights toward top performers",
                    "priority": "HIGH",
                }
            )

        active = [p for p in ranked if p.status == "ENABLED"]
        keep = [p for p in active if p.creative_id not in to_pause]
        if len(keep) >= 2:
            active = keep
        if len(active) > config.max_active_creatives:
            for profile in active[config.max_active_creatives :]:
                actions.append(
                    {
                        "type": "PAUSE_AD",
                        "creative_id": profile.creative_id,
                        "details": f"Exceeds {config.max_active_creatives} active creatives",
                        "priority": "LOW",
                    }
                )
            active = active[: config.max_active_creatives]

        current_weights = self._current_weights(db, [p.creative_id for p in active])
        weights = schedule_weights(
            strategy, active, current_weights=current_weights, today=today
        )
        end_date = today + timedelta(days=config.rotation_interval_days)
        schedule = [
            {
                "creative_id": profile.creative_id,
                "weight": round(weight, 6),
                "start_date": today.isoformat(),
                "end_date": end_date.isoformat(),
            }
            for profile, weight in zip(active, weights)
        ]

        totals = MetricTotals()
        if ranked:
            totals = MetricTotals(
                impressions=sum(p.totals.impressions for p in ranked),
                clicks=sum(p.totals.clicks for p in ranked),
                conversions=sum(p.totals.conversions for p in ranked),
                cost=sum(p.totals.cost for p in ranked),
                revenue=sum(p.totals.revenue for p in ranked),
                days=max(p.totals.days for p in ranked),
            )
        baseline = dict(BASELINE_IMPACT)
        if totals.impressions > 0:
            baseline = {
                "ctr": totals.ctr or BASELINE_IMPACT["ctr"],
                "cvr": totals.cvr or BASELINE_IMPACT["cvr"],
                "roas": totals.roas or BASELINE_IMPACT["roas"],
                "impressions": round(safe_div(totals.impressions, max(totals.days, 1))),
            }

        return RotationRecommendation(
            ad_group_id=analysis.ad_group_id,
            current_strategy=analysis.current_strategy,
            recommended_strategy=strategy,
            confidence=rotation_confidence(analysis),
            reasoning=_reasoning(analysis, strategy),
            expected_impact=expected_impact(analysis, strategy, baseline),
            action_items=actions,
            schedule=schedule,
            analysis=analysis,
        )

    @staticmethod
    def _current_weights(db: Session, creative_ids: Sequence[str]) -> dict[str, float]:
        if not creative_ids:
            return {}
        with store_guard(db, "load rotation weights"):
            rows = db.execute(
                select(Creative.id, Creative.rotation_weight).where(
                    Creative.id.in_([as_uuid(c) for c in creative_ids])
                )
            ).all()
        return {str(row[0]): row[1] for row in rows if row[1] is not None}

    # ------------------------------------------------------------------

    def apply_recommendation(
        self,
        db: Session,
        ad_group_id: Any,
        config: RotationConfig | None = None,
        *,
        today: date | None = None,
    ) -> RotationChangeSet:
        """Persist the recommended schedule and queue the platform intents."""
        config = (config or RotationConfig()).validate()
        today = today or date.today()
        recommendation = self.recommend(db, ad_group_id, config, today=today)
        next_review = today + timedelta(days=config.rotation_interval_days)
        group_id = as_uuid(recommendation.ad_group_id)

        changes: list[dict[str, Any]] = []
        with store_guard(db, "apply rotation recommendation"):
            weights = recommendation.weights
            creatives = (
                db.execute(select(Creative).where(Creative.id.in_([as_uuid(c) for c in weights])))
                .scalars()
                .all()
            )
            for creative in creatives:
                new_weight = weights[str(creative.id)]
                changes.append(
                    {
                        "creative_id": str(creative.id),
                        "action": "WEIGHT_ADJUSTED",
                        "previous_weight": creative.rotation_weight,
                        "new_weight": new_weight,
                    }
                )
                creative.rotation_weight = new_weight

            schedule = (
                db.execute(select(RotationSchedule).where(RotationSchedule.ad_group_id == group_id))
                .scalars()
                .first()
            )
            if schedule is None:
                schedule = RotationSchedule(ad_group_id=group_id)
                db.add(schedule)
            schedule.strategy = recommendation.recommended_strategy.value
            schedule.weights_json = dict(weights)
            schedule.confidence = recommendation.confidence
            schedule.next_review_date = next_review
            schedule.recommendation_json = recommendation.as_dict()

            ad_group = db.get(AdGroup, group_id)
            if ad_group is not None:
                ad_group.rotation_strategy = recommendation.recommended_strategy.value
                ad_group.rotation_effectiveness = round(recommendation.confidence * 100, 2)
                ad_group.last_rotation_update = datetime.now(timezone.utc)

            self.outbox.emit(
                db,
                ROTATION_WEIGHTS_UPDATED,
                channel=PLATFORM,
                entity_type="ad_group",
                entity_id=group_id,
                payload={
                    "strategy": recommendation.recommended_strategy.value,
                    "weights": weights,
                    "next_review_date": next_review,
                },
            )
            pause_requests: list[str] = []
            for action in recommendation.action_items:
                if action["type"] != "PAUSE_AD" or action["creative_id"] in pause_requests:
                    continue
                pause_requests.append(action["creative_id"])
                self.outbox.emit(
                    db,
                    CREATIVE_PAUSE_REQUESTED,
                    channel=PLATFORM,
                    entity_type="creative",
                    entity_id=action["creative_id"],
                    payload={"reason": action["details"], "priority": action["priority"]},
                )
            db.commit()

        logger.info(
            "Applied %s rotation to ad group %s (%d weights, %d pause requests)",
            recommendation.recommended_strategy.value,
            group_id,
            len(changes),
            len(pause_requests),
        )
        return RotationChangeSet(
            ad_group_id=str(group_id),
            implemented=True,
            strategy=recommendation.recommended_strategy,
            changes=changes,
            pause_requests=pause_requests,
            next_review_date=next_review,
            recommendation=recommendation,
        )
