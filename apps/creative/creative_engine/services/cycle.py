"""One review pass over an ad group: performance, fatigue, then rotation.

Each phase runs in isolation; a failing phase is logged and recorded in
``errors`` and later phases still run.  Scheduling is the caller's job.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from sqlalchemy.orm import Session

from creative_engine.models import AdGroup
from creative_engine.services.fatigue import FatigueDetector, Severity
from creative_engine.services.fatigue.detector import BatchFatigueResult
from creative_engine.services.performance import AdGroupPerformance, PerformanceAnalyzer
from creative_engine.services.rotation import (
    RotationChangeSet,
    RotationConfig,
    RotationOptimizer,
    RotationRecommendation,
)
from creative_engine.services.store import require

logger = logging.getLogger(__name__)


@dataclass
class ReviewCycleResult:
    ad_group_id: str
    analysis_date: date
    performance: AdGroupPerformance | None = None
    fatigue: BatchFatigueResult | None = None
    rotation: RotationRecommendation | None = None
    applied: RotationChangeSet | None = None
    experiment_candidates: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def experiment_candidates(
    performance: AdGroupPerformance, fatigue: BatchFatigueResult
) -> list[dict[str, Any]]:
    """Pair each moderately fatigued creative with the group's top performer."""
    ranked = performance.ranked
    if not ranked:
        return []
    top = ranked[0]
    candidates = []
    for verdict in fatigue.verdicts:
        if verdict.level.rank < Severity.MODERATE.rank or verdict.creative_id == top.creative_id:
            continue
        candidates.append(
            {
                "control_creative_id": verdict.creative_id,
                "test_creative_id": top.creative_id,
                "fatigue_level": verdict.level.value,
                "test_type": "CREATIVE_SPLIT",
                "hypothesis": (
                    f"Replacing fatigued creative {verdict.creative_id} with a variant of "
                    f"top performer {top.creative_id} (score {top.score:.0f}) recovers performance"
                ),
            }
        )
    return candidates


class CreativeReviewCycle:
    def __init__(
        self,
        analyzer: PerformanceAnalyzer | None = None,
        fatigue: FatigueDetector | None = None,
        optimizer: RotationOptimizer | None = None,
    ) -> None:
        self.analyzer = analyzer or PerformanceAnalyzer()
        self.fatigue = fatigue or FatigueDetector()
        self.optimizer = optimizer or RotationOptimizer(self.analyzer)

    def run(
        self,
        db: Session,
        ad_group_id: Any,
        config: RotationConfig | None = None,
        *,
        apply: bool = False,
        today: date | None = None,
    ) -> ReviewCycleResult:
        ad_group = require(db, AdGroup, ad_group_id, "Ad group")
        today = today or date.today()
        config = config or RotationConfig()
        result = ReviewCycleResult(ad_group_id=str(ad_group.id), analysis_date=today)

        def _failed(phase: str, exc: Exception) -> None:
            db.rollback()
            logger.exception("Review of ad group %s failed in %s phase", ad_group.id, phase)
            result.errors.append({"phase": phase, "error": str(exc)})

        try:
            result.performance = self.analyzer.analyze_ad_group(
                db, ad_group.id, today=today, min_impressions=config.min_impressions
            )
        except Exception as exc:
            _failed("performance", exc)
            return result

        enabled = [p.creative_id for p in result.performance.profiles if p.status == "ENABLED"]
        try:
            result.fatigue = self.fatigue.detect_batch(db, enabled, today)
        except Exception as exc:
            _failed("fatigue", exc)

        try:
            if apply:
                result.applied = self.optimizer.apply_recommendation(db, ad_group.id, config, today=today)
                result.rotation = result.applied.recommendation
            else:
                result.rotation = self.optimizer.recommend(
                    db, ad_group.id, config, today=today, performance=result.performance
                )
        except Exception as exc:
            _failed("rotation", exc)

        if result.fatigue is not None:
            result.experiment_candidates = experiment_candidates(result.performance, result.fatigue)

        logger.info(
            "Reviewed ad group %s: %d candidates, %d errors",
            ad_group.id,
            len(result.experiment_candidates),
            len(result.errors),
        )
        return result
