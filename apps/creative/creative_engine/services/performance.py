"""Creative performance analysis.

Aggregates daily snapshots per creative into rates and trends, scores
each creative on a 0-100 scale, ranks creatives inside an ad group and
summarises the group's health with tiered recommendations.
"""

from __future__ import annotations

import logging
import math
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from creative_engine.exceptions import NotFoundError
from creative_engine.models import AdGroup, Creative
from creative_engine.services.metrics import (
    DailyMetrics,
    MetricTotals,
    load_daily_metrics,
    load_daily_metrics_many,
    lookback_window,
    mean,
    population_std,
    population_variance,
    safe_div,
    summarize,
)
from creative_engine.services.store import as_uuid, require, store_guard
from creative_engine.settings import settings

logger = logging.getLogger(__name__)

# Defaults
DEFAULT_MIN_IMPRESSIONS = settings.PERFORMANCE_MIN_IMPRESSIONS
DEFAULT_TREND_SATURATION = settings.PERFORMANCE_TREND_SATURATION_IMPRESSIONS
DEFAULT_LOOKBACK_DAYS = settings.PERFORMANCE_DEFAULT_LOOKBACK_DAYS
RATE_TREND_THRESHOLD = 0.10
VOLUME_TREND_THRESHOLD = 0.15
VOLATILITY_CV_THRESHOLD = 0.5
MIN_TREND_SNAPSHOTS = 3
TIER_FRACTION = 0.3
POOR_SCORE = 30.0

IMPROVING = "improving"
STABLE = "stable"
DECLINING = "declining"
VOLATILE = "volatile"
GROWING = "growing"
SHRINKING = "shrinking"

_ANALYZED_STATUSES = ("ENABLED", "PAUSED")


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TrendSummary:
    ctr_trend: str = STABLE
    cvr_trend: str = STABLE
    volume_trend: str = STABLE
    confidence: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "ctr_trend": self.ctr_trend,
            "cvr_trend": self.cvr_trend,
            "volume_trend": self.volume_trend,
            "confidence": round(self.confidence, 4),
        }


@dataclass
class PerformanceProfile:
    """One creative's aggregated performance over a lookback window."""

    creative_id: str
    ad_group_id: str
    name: str
    status: str
    creative_type: str
    window_start: date
    window_end: date
    totals: MetricTotals
    trends: TrendSummary
    score: float
    rank: int | None = None
    insights: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    last_modified: date | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "creative_id": self.creative_id,
            "ad_group_id": self.ad_group_id,
            "name": self.name,
            "status": self.status,
            "creative_type": self.creative_type,
            "window_start": self.window_start.isoformat(),
            "window_end": self.window_end.isoformat(),
            "metrics": self.totals.as_dict(),
            "trends": self.trends.as_dict(),
            "score": self.score,
            "rank": self.rank,
            "insights": list(self.insights),
            "recommendations": list(self.recommendations),
        }


@dataclass(frozen=True)
class HealthSummary:
    score: float
    status: str
    issues: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {"score": self.score, "status": self.status, "issues": list(self.issues)}


@dataclass(frozen=True)
class RotationStrategyAnalysis:
    current_strategy: str
    effectiveness: float
    score_variance: float
    recommended_strategy: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "current_strategy": self.current_strategy,
            "effectiveness": self.effectiveness,
            "score_variance": round(self.score_variance, 4),
            "recommended_strategy": self.recommended_strategy,
        }


@dataclass
class AdGroupPerformance:
    ad_group_id: str
    campaign_id: str | None
    total_creatives: int
    active_creatives: int
    profiles: list[PerformanceProfile]
    top_performers: list[PerformanceProfile]
    poor_performers: list[PerformanceProfile]
    health: HealthSummary
    recommendations: dict[str, list[str]]
    rotation: RotationStrategyAnalysis

    @property
    def ranked(self) -> list[PerformanceProfile]:
        return [p for p in self.profiles if p.rank is not None]

    def as_dict(self) -> dict[str, Any]:
        return {
            "ad_group_id": self.ad_group_id,
            "campaign_id": self.campaign_id,
            "total_creatives": self.total_creatives,
            "active_creatives": self.active_creatives,
            "profiles": [p.as_dict() for p in self.profiles],
            "top_performers": [p.creative_id for p in self.top_performers],
            "poor_performers": [p.creative_id for p in self.poor_performers],
            "health": self.health.as_dict(),
            "recommendations": {k: list(v) for k, v in self.recommendations.items()},
            "rotation": self.rotation.as_dict(),
        }


@dataclass(frozen=True)
class PeriodComparison:
    creative_id: str
    previous: MetricTotals
    current: MetricTotals
    changes: dict[str, float]
    significance: float

    def as_dict(self) -> dict[str, Any]:
        return {
            "creative_id": self.creative_id,
            "previous": self.previous.as_dict(),
            "current": self.current.as_dict(),
            "changes": {k: round(v, 4) for k, v in self.changes.items()},
            "significance": round(self.significance, 4),
        }


# ---------------------------------------------------------------------------
# Pure scoring functions
# ---------------------------------------------------------------------------


def percent_change(previous: float, current: float) -> float:
    if previous == 0:
        return 0.0
    return (current - previous) / previous


def _direction(values: Sequence[float], threshold: float) -> str:
    mid = len(values) // 2
    early = mean(values[:mid])
    recent = mean(values[mid:])
    if early == 0:
        return STABLE
    change = (recent - early) / early
    if change > threshold:
        return IMPROVING
    if change < -threshold:
        return DECLINING
    return STABLE


def _rate_direction(values: Sequence[float], threshold: float) -> str:
    direction = _direction(values, threshold)
    avg = mean(values)
    if direction == STABLE and avg > 0:
        if population_std(values) / avg > VOLATILITY_CV_THRESHOLD:
            return VOLATILE
    return direction


def compute_trends(
    days: Sequence[DailyMetrics],
    *,
    saturation_impressions: int = DEFAULT_TREND_SATURATION,
) -> TrendSummary:
    """Classify CTR, CVR and volume direction from an oldest-first daily series.

    Fewer than three days yields a neutral summary with zero confidence.
    """
    if len(days) < MIN_TREND_SNAPSHOTS:
        return TrendSummary()

    volume = _direction([float(d.impressions) for d in days], VOLUME_TREND_THRESHOLD)
    volume_trend = {IMPROVING: GROWING, DECLINING: SHRINKING}.get(volume, STABLE)
    total_impressions = sum(d.impressions for d in days)
    return TrendSummary(
        ctr_trend=_rate_direction([d.ctr for d in days], RATE_TREND_THRESHOLD),
        cvr_trend=_rate_direction([d.cvr for d in days], RATE_TREND_THRESHOLD),
        volume_trend=volume_trend,
        confidence=min(safe_div(total_impressions, saturation_impressions), 1.0),
    )


def _band(value: float, bands: Sequence[tuple[float, float]], *, inclusive: bool = False) -> float:
    for threshold, points in bands:
        if value > threshold or (inclusive and value >= threshold):
            return points
    return 0.0


def trend_bonus(trends: TrendSummary) -> float:
    bonus = 0.0
    if trends.ctr_trend == IMPROVING:
        bonus += 3
    elif trends.ctr_trend == DECLINING:
        bonus -= 3
    if trends.cvr_trend == IMPROVING:
        bonus += 3
    elif trends.cvr_trend == DECLINING:
        bonus -= 3
    if trends.volume_trend == GROWING:
        bonus += 2
    elif trends.volume_trend == SHRINKING:
        bonus -= 4
    return bonus * trends.confidence


def performance_score(totals: MetricTotals, trends: TrendSummary) -> float:
    """Additive 0-100 score from banded CTR, CVR, ROAS, volume and quality."""
    score = 20.0
    score += _band(totals.ctr, [(0.05, 25), (0.03, 18), (0.01, 10)])
    score += _band(totals.cvr, [(0.05, 20), (0.02, 12), (0.01, 6)], inclusive=True)
    score += _band(totals.roas, [(4, 20), (2, 12), (1, 6)])
    score += _band(totals.impressions, [(10_000, 5), (5_000, 3), (1_000, 1)])
    if totals.avg_quality_score is not None:
        score += _band(totals.avg_quality_score, [(8, 5), (6, 2)], inclusive=True)
    score += trend_bonus(trends)
    if math.isnan(score):
        return 0.0
    return round(max(0.0, min(100.0, score)), 2)


def rank_profiles(
    profiles: Sequence[PerformanceProfile],
    *,
    min_impressions: int = DEFAULT_MIN_IMPRESSIONS,
) -> list[PerformanceProfile]:
    """Rank eligible profiles by score, best first.  Ineligible profiles keep ``rank=None``."""
    eligible = [p for p in profiles if p.totals.impressions >= min_impressions]
    eligible.sort(key=lambda p: p.score, reverse=True)
    for index, profile in enumerate(eligible):
        profile.rank = index + 1
    return eligible


def split_tiers(
    ranked: Sequence[PerformanceProfile],
) -> tuple[list[PerformanceProfile], list[PerformanceProfile]]:
    if not ranked:
        return [], []
    size = math.ceil(len(ranked) * TIER_FRACTION)
    return list(ranked[:size]), list(ranked[-size:])


def assess_health(
    ranked: Sequence[PerformanceProfile], active_creatives: int
) -> HealthSummary:
    scores = [p.score for p in ranked]
    avg = round(mean(scores), 2)
    issues: list[str] = []

    if active_creatives < 2:
        issues.append("Insufficient creative diversity (need at least 2 active creatives)")
    elif active_creatives > 5:
        issues.append("Too many active creatives may dilute performance")

    if ranked:
        poor = sum(1 for s in scores if s < POOR_SCORE)
        if poor / len(ranked) > 0.3:
            issues.append("High share of poor-performing creatives")
        declining = sum(1 for p in ranked if p.trends.ctr_trend == DECLINING)
        if declining / len(ranked) > 0.5:
            issues.append("Most creatives show declining CTR trends")

    if avg >= 80 and not issues:
        status = "excellent"
    elif avg >= 65 and len(issues) <= 1:
        status = "good"
    elif avg >= 45 and len(issues) <= 2:
        status = "fair"
    else:
        status = "poor"
    return HealthSummary(score=avg, status=status, issues=issues)


def stability_index(scores: Sequence[float]) -> float:
    """100 minus twice the score standard deviation, floored at 0."""
    if len(scores) < 2:
        return 100.0
    return round(max(0.0, 100.0 - 2 * population_std(scores)), 2)


# ---------------------------------------------------------------------------
# Insights and recommendations
# ---------------------------------------------------------------------------


def creative_insights(profile: PerformanceProfile, *, today: date | None = None) -> list[str]:
    totals, trends = profile.totals, profile.trends
    insights: list[str] = []
    if totals.ctr > 0.05:
        insights.append(f"Excellent CTR of {totals.ctr:.2%}")
    elif totals.impressions and totals.ctr < 0.01:
        insights.append(f"Low CTR of {totals.ctr:.2%} needs attention")
    if totals.cvr > 0.03:
        insights.append(f"Strong conversion rate of {totals.cvr:.2%}")
    elif totals.clicks and totals.cvr < 0.005:
        insights.append(f"Low conversion rate of {totals.cvr:.2%} may indicate relevance issues")
    if totals.roas > 3:
        insights.append(f"ROAS of {totals.roas:.1f}x generating strong returns")
    elif totals.cost and totals.roas < 1:
        insights.append(f"ROAS of {totals.roas:.1f}x is not profitable")
    if trends.ctr_trend == DECLINING and trends.confidence > 0.5:
        insights.append("CTR declining over time, possible creative fatigue")
    if trends.volume_trend == SHRINKING and trends.confidence > 0.5:
        insights.append("Impression volume decreasing, losing auction competitiveness")
    if totals.avg_quality_score is not None and totals.avg_quality_score < 5:
        insights.append(f"Low quality score of {totals.avg_quality_score:.1f} limiting delivery")
    if profile.last_modified is not None:
        age = ((today or date.today()) - profile.last_modified).days
        if age > 90 and trends.ctr_trend == DECLINING:
            insights.append(f"Creative is {age} days old and showing fatigue signs")
    return insights


def creative_recommendations(profile: PerformanceProfile, content: dict[str, Any]) -> list[str]:
    totals, trends = profile.totals, profile.trends
    recs: list[str] = []
    if totals.impressions and totals.ctr < 0.01:
        recs.append("Revise ad copy to improve relevance and appeal")
        if profile.creative_type == "RESPONSIVE":
            recs.append("Test new headline and description combinations")
    if totals.clicks and totals.cvr < 0.005:
        recs.append("Review landing page alignment with ad messaging")
    if totals.cost and totals.roas < 1:
        recs.append("Consider pausing this creative, it is not generating positive returns")
    if trends.ctr_trend == DECLINING and trends.confidence > 0.6:
        recs.append("Refresh creative assets to combat fatigue")
    if trends.volume_trend == SHRINKING:
        recs.append("Increase bids or improve ad rank factors")
    if totals.avg_quality_score is not None and totals.avg_quality_score < 6:
        recs.append("Improve ad relevance to keywords and landing page")
    if profile.creative_type == "RESPONSIVE":
        if len(content.get("headlines") or []) < 10:
            recs.append("Add more headline variations to maximize reach")
        if len(content.get("descriptions") or []) < 3:
            recs.append("Add more description variations for better testing")
    return recs


def group_recommendations(
    ranked: Sequence[PerformanceProfile], health: HealthSummary, active_creatives: int
) -> dict[str, list[str]]:
    immediate: list[str] = []
    short_term: list[str] = []
    strategic: list[str] = []

    poor = [p for p in ranked if p.score < POOR_SCORE]
    if poor:
        immediate.append(f"Pause {len(poor)} poor-performing creative(s) scoring below {POOR_SCORE:.0f}")
    unprofitable = [p for p in ranked if p.totals.cost > 0 and p.totals.roas < 0.5]
    if unprofitable:
        immediate.append(f"Review {len(unprofitable)} unprofitable creative(s) with ROAS below 0.5")

    declining = [
        p for p in ranked if p.trends.ctr_trend == DECLINING and p.trends.confidence > 0.5
    ]
    if declining:
        short_term.append(f"Refresh {len(declining)} creative(s) showing fatigue signs")
    if health.status in ("poor", "fair"):
        short_term.append("Develop new creative concepts to improve overall performance")
    if active_creatives < 2:
        short_term.append("Create additional creatives for better testing coverage")

    if health.score < 60:
        strategic.append("Run a full creative audit and refresh strategy")
    if ranked and ranked[0].score > 80:
        strategic.append("Scale top-performing creative elements across campaigns")
    strategic.append("Schedule systematic creative testing and rotation reviews")

    return {"immediate": immediate, "short_term": short_term, "strategic": strategic}


# ---------------------------------------------------------------------------
# PerformanceAnalyzer
# ---------------------------------------------------------------------------


class PerformanceAnalyzer:
    """Builds ``PerformanceProfile`` objects from stored snapshots."""

    def __init__(
        self,
        *,
        min_impressions: int = DEFAULT_MIN_IMPRESSIONS,
        trend_saturation: int = DEFAULT_TREND_SATURATION,
        lookback_days: int = DEFAULT_LOOKBACK_DAYS,
    ) -> None:
        self.min_impressions = min_impressions
        self.trend_saturation = trend_saturation
        self.lookback_days = lookback_days

    # ------------------------------------------------------------------

    def build_profile(
        self,
        creative: Creative,
        days: Sequence[DailyMetrics],
        window: tuple[date, date],
        *,
        today: date | None = None,
    ) -> PerformanceProfile:
        totals = summarize(days)
        trends = compute_trends(days, saturation_impressions=self.trend_saturation)
        last_modified = creative.updated_at.date() if creative.updated_at else None
        profile = PerformanceProfile(
            creative_id=str(creative.id),
            ad_group_id=str(creative.ad_group_id),
            name=creative.name,
            status=creative.status,
            creative_type=creative.creative_type,
            window_start=window[0],
            window_end=window[1],
            totals=totals,
            trends=trends,
            score=performance_score(totals, trends),
            last_modified=last_modified,
        )
        profile.insights = creative_insights(profile, today=today)
        profile.recommendations = creative_recommendations(profile, creative.content_json or {})
        return profile

    def analyze_creative(
        self,
        db: Session,
        creative_id: Any,
        lookback_days: int | None = None,
        *,
        today: date | None = None,
    ) -> PerformanceProfile:
        creative = require(db, Creative, creative_id, "Creative")
        window = lookback_window(lookback_days or self.lookback_days, today=today)
        days = load_daily_metrics(db, creative.id, start=window[0], end=window[1])
        return self.build_profile(creative, days, window, today=today)

    def load_group(self, db: Session, ad_group_id: Any) -> tuple[AdGroup, list[Creative]]:
        ad_group = require(db, AdGroup, ad_group_id, "Ad group")
        with store_guard(db, "load ad group creatives"):
            creatives = list(
                db.execute(
                    select(Creative)
                    .where(Creative.ad_group_id == ad_group.id)
                    .where(Creative.status.in_(_ANALYZED_STATUSES))
                    .order_by(Creative.created_at.desc())
                )
                .scalars()
                .all()
            )
        if not creatives:
            raise NotFoundError("Creatives for ad group", ad_group_id)
        return ad_group, creatives

    def analyze_ad_group(
        self,
        db: Session,
        ad_group_id: Any,
        lookback_days: int | None = None,
        *,
        today: date | None = None,
        min_impressions: int | None = None,
    ) -> AdGroupPerformance:
        """Profiles, tiers and health for every creative in the group.

        ``min_impressions`` overrides the analyzer's ranking floor for this call.
        """
        ad_group, creatives = self.load_group(db, ad_group_id)
        window = lookback_window(lookback_days or self.lookback_days, today=today)
        series = load_daily_metrics_many(
            db, [c.id for c in creatives], start=window[0], end=window[1]
        )

        profiles = [
            self.build_profile(c, series.get(c.id, []), window, today=today) for c in creatives
        ]
        floor = self.min_impressions if min_impressions is None else min_impressions
        ranked = rank_profiles(profiles, min_impressions=floor)
        active = sum(1 for c in creatives if c.status == "ENABLED")
        top, poor = split_tiers(ranked)
        health = assess_health(ranked, active)

        logger.info(
            "Analyzed ad group %s: %d creatives, %d ranked, health=%s (%.1f)",
            ad_group.id,
            len(profiles),
            len(ranked),
            health.status,
            health.score,
        )

        ordered = ranked + [p for p in profiles if p.rank is None]
        return AdGroupPerformance(
            ad_group_id=str(ad_group.id),
            campaign_id=str(ad_group.campaign_id) if ad_group.campaign_id else None,
            total_creatives=len(creatives),
            active_creatives=active,
            profiles=ordered,
            top_performers=top,
            poor_performers=poor,
            health=health,
            recommendations=group_recommendations(ranked, health, active),
            rotation=self._rotation_strategy(ad_group, ranked),
        )

    def analyze_rotation_strategy(
        self, db: Session, ad_group_id: Any, *, today: date | None = None
    ) -> RotationStrategyAnalysis:
        return self.analyze_ad_group(db, ad_group_id, today=today).rotation

    @staticmethod
    def _rotation_strategy(
        ad_group: AdGroup, ranked: Sequence[PerformanceProfile]
    ) -> RotationStrategyAnalysis:
        scores = [p.score for p in ranked]
        variance = population_variance(scores)
        if len(ranked) < 2:
            recommended = "NEED_MORE_CREATIVES"
        elif variance < 100:
            recommended = "EVEN"
        else:
            recommended = "OPTIMIZE"
        return RotationStrategyAnalysis(
            current_strategy=ad_group.rotation_strategy,
            effectiveness=stability_index(scores),
            score_variance=variance,
            recommended_strategy=recommended,
        )

    def compare_periods(
        self,
        db: Session,
        creative_id: Any,
        previous_days: int,
        current_days: int,
        *,
        today: date | None = None,
    ) -> PeriodComparison:
        """Compare the last *current_days* days against the *previous_days* before them."""
        creative = require(db, Creative, creative_id, "Creative")
        end = today or date.today()
        current_start = end - timedelta(days=current_days - 1)
        previous_end = current_start - timedelta(days=1)
        previous_start = previous_end - timedelta(days=previous_days - 1)

        days = load_daily_metrics(db, creative.id, start=previous_start, end=end)
        previous = summarize(d for d in days if d.day <= previous_end)
        current = summarize(d for d in days if d.day >= current_start)

        return PeriodComparison(
            creative_id=str(as_uuid(creative.id)),
            previous=previous,
            current=current,
            changes={
                "ctr": percent_change(previous.ctr, current.ctr),
                "cvr": percent_change(previous.cvr, current.cvr),
                "roas": percent_change(previous.roas, current.roas),
                "impressions": percent_change(previous.impressions, current.impressions),
            },
            significance=min(
                safe_div(previous.impressions + current.impressions, self.trend_saturation), 1.0
            ),
        )
