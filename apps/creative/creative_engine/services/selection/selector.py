"""Winner selection for experiments and monitoring of the resulting rollout.

A selection runs four blocks over the latest ``ExperimentAnalysis``:
statistical validation, business validation, risk assessment and a
performance projection.  ``SELECT_WINNER`` is only returned when every
statistical and business gate passes.
"""

from __future__ import annotations

import logging
import uuid
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from creative_engine.exceptions import InvalidTransitionError
from creative_engine.models import Experiment, FatigueVerdictRecord, SelectionResultRecord
from creative_engine.services.experimentation.manager import ExperimentManager
from creative_engine.services.experimentation.schemas_internal import (
    ExperimentAnalysis,
    ExperimentConfig,
    ExperimentStatus,
    Metric,
    VariantRole,
)
from creative_engine.services.fatigue.base import Severity
from creative_engine.services.metrics import load_daily_metrics, mean, safe_div
from creative_engine.services.outbox import (
    NOTIFICATION,
    PLATFORM,
    ROLLOUT_ROLLBACK_REQUIRED,
    WINNER_IMPLEMENTATION_STARTED,
    WINNER_SELECTED,
    EventOutbox,
)
from creative_engine.services.selection.rollout import (
    DEFAULT_VARIANCE_THRESHOLD,
    MONITORING_DAYS,
    TRAFFIC_ALLOCATION,
    compare_live_metrics,
    monitoring_advice,
    monitoring_schedule,
    monitoring_status,
    rollback_triggers,
    rollout_plan,
)
from creative_engine.services.selection.schemas_internal import (
    BusinessValidation,
    Decision,
    DecisionContext,
    ImplementationAction,
    ImplementationRecommendation,
    ImplementationStatus,
    MonitoringAdvice,
    MonitoringAlert,
    MonitoringCheck,
    PerformanceProjection,
    QualitySnapshot,
    RiskAssessment,
    RiskLevel,
    RiskTolerance,
    RolloutPhase,
    RolloutStrategy,
    SelectionAnalysis,
    SelectionCriteria,
    SelectionDecision,
    StatisticalValidation,
    Winner,
)
from creative_engine.services.store import require, store_guard

logger = logging.getLogger(__name__)

STRONG_P_VALUE = 0.01
LARGE_CHANGE = 0.3
TIME_TO_FULL_IMPACT_DAYS = 14
COST_ELASTICITY = 0.5
ROLLBACK_PLAN = "Revert to the control variant if the primary metric declines by more than 10% within 48 hours"

# risk count above which the level is MEDIUM / HIGH, per tolerance
RISK_THRESHOLDS = {
    RiskTolerance.CONSERVATIVE: (0, 1),
    RiskTolerance.MODERATE: (1, 2),
    RiskTolerance.AGGRESSIVE: (1, 3),
}


# ---------------------------------------------------------------------------
# Pure decision logic
# ---------------------------------------------------------------------------


def _candidate(analysis: ExperimentAnalysis) -> VariantRole:
    return VariantRole.TEST if analysis.primary.lift > 0 else VariantRole.CONTROL


def validate_statistical(analysis: ExperimentAnalysis, criteria: SelectionCriteria) -> StatisticalValidation:
    primary = analysis.primary
    alpha = 1 - criteria.min_confidence_level
    if criteria.require_unanimous_significance:
        secondary_valid = all(m.statistically_significant for m in analysis.secondary)
    else:
        secondary_valid = True
    return StatisticalValidation(
        primary_metric_valid=primary.statistically_significant and primary.p_value < alpha,
        secondary_metrics_valid=secondary_valid,
        sample_size_adequate=analysis.total_sample_size >= criteria.min_sample_size,
        test_duration_adequate=analysis.duration_days >= criteria.min_test_duration_days,
        confidence_threshold_met=(1 - primary.p_value) >= criteria.min_confidence_level,
    )


def budget_increase(analysis: ExperimentAnalysis) -> float:
    """Relative change in cost per impression of the test arm over control."""
    control = safe_div(analysis.control.spend, analysis.control.sample_size)
    test = safe_div(analysis.test.spend, analysis.test.sample_size)
    return safe_div(test - control, control)


def validate_business(
    analysis: ExperimentAnalysis,
    criteria: SelectionCriteria,
    quality: QualitySnapshot | None = None,
) -> BusinessValidation:
    quality = quality or QualitySnapshot()
    winner_arm = analysis.test if _candidate(analysis) == VariantRole.TEST else analysis.control
    roi = safe_div(winner_arm.revenue, winner_arm.spend)

    quality_ok = quality.quality_score is None or quality.quality_score >= criteria.min_quality_score
    if quality.fatigue_level is not None:
        quality_ok = quality_ok and (
            Severity(quality.fatigue_level).rank <= Severity(criteria.max_fatigue_level).rank
        )
    return BusinessValidation(
        practical_significance_met=abs(analysis.primary.relative_change) >= criteria.min_practical_significance,
        secondary_metrics_acceptable=all(
            m.lift >= -criteria.max_tolerable_decline for m in analysis.secondary
        ),
        budget_constraints_met=budget_increase(analysis) <= criteria.max_budget_increase,
        roi_requirement_met=roi >= criteria.min_roi,
        quality_gates_passed=quality_ok,
    )


def risk_level(risk_count: int, tolerance: RiskTolerance) -> RiskLevel:
    medium_above, high_above = RISK_THRESHOLDS[tolerance]
    if risk_count > high_above:
        return RiskLevel.HIGH
    if risk_count > medium_above:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def assess_risk(
    analysis: ExperimentAnalysis,
    criteria: SelectionCriteria,
    context: DecisionContext | None = None,
) -> RiskAssessment:
    risks: list[str] = []
    mitigations: list[str] = []
    primary = analysis.primary
    if primary.p_value > STRONG_P_VALUE:
        risks.append("Moderate statistical significance, risk of a false positive")
        mitigations.append("Implement with enhanced monitoring")
    if abs(primary.relative_change) > LARGE_CHANGE:
        risks.append("Large performance change detected")
        mitigations.append("Prefer a gradual rollout")
    if any(m.lift < 0 for m in analysis.secondary):
        risks.append("At least one secondary metric moved the wrong way")
        mitigations.append("Track secondary metrics during rollout")
    if context is not None and context.competitive_pressure == RiskLevel.HIGH:
        risks.append("High competitive pressure may affect results")
        mitigations.append("Monitor competitor responses closely")
    return RiskAssessment(
        level=risk_level(len(risks), criteria.risk_tolerance),
        risks=tuple(risks),
        mitigations=tuple(mitigations),
        rollback_plan=ROLLBACK_PLAN,
    )


def project_performance(analysis: ExperimentAnalysis) -> PerformanceProjection:
    lift = analysis.primary.lift
    revenue = analysis.control.revenue + analysis.test.revenue
    cost = analysis.control.spend + analysis.test.spend
    conversions = analysis.control.conversions + analysis.test.conversions
    return PerformanceProjection(
        expected_lift=round(lift, 6),
        revenue=round(revenue * lift, 2),
        cost=round(cost * (1 + lift * COST_ELASTICITY), 2),
        conversions=round(conversions * lift, 2),
        confidence_interval=analysis.primary.confidence_interval,
        time_to_full_impact_days=TIME_TO_FULL_IMPACT_DAYS,
    )


def selection_confidence(selection: SelectionAnalysis) -> float:
    confidence = 0.3
    if selection.statistical.primary_metric_valid:
        confidence += 0.2
    if selection.statistical.confidence_threshold_met:
        confidence += 0.1
    if selection.statistical.sample_size_adequate:
        confidence += 0.05
    if selection.business.practical_significance_met:
        confidence += 0.15
    if selection.business.roi_requirement_met:
        confidence += 0.1
    if selection.business.quality_gates_passed:
        confidence += 0.05
    if selection.risk.level == RiskLevel.LOW:
        confidence += 0.05
    elif selection.risk.level == RiskLevel.HIGH:
        confidence -= 0.2
    return round(max(0.1, min(1.0, confidence)), 4)


def decide(
    selection: SelectionAnalysis,
    criteria: SelectionCriteria,
    *,
    aborted: bool = False,
) -> SelectionDecision:
    if aborted:
        return SelectionDecision(Decision.ABORT_TEST, Winner.NEITHER, 0.1)
    if not (selection.statistical.passed and selection.business.passed):
        if not (selection.statistical.sample_size_adequate and selection.statistical.test_duration_adequate):
            return SelectionDecision(Decision.CONTINUE_TEST, Winner.NEITHER, 0.5)
        return SelectionDecision(Decision.DECLARE_INCONCLUSIVE, Winner.NEITHER, 0.3)
    if selection.risk.level == RiskLevel.HIGH and criteria.risk_tolerance == RiskTolerance.CONSERVATIVE:
        return SelectionDecision(Decision.CONTINUE_TEST, Winner.NEITHER, 0.6)

    winner = Winner.TEST if selection.projection.expected_lift > 0 else Winner.CONTROL
    return SelectionDecision(Decision.SELECT_WINNER, winner, selection_confidence(selection))


def recommend_implementation(
    decision: SelectionDecision,
    selection: SelectionAnalysis,
    criteria: SelectionCriteria,
    *,
    primary: Metric,
    secondary: Sequence[Metric] = (),
    today: date,
) -> ImplementationRecommendation:
    if decision.decision != Decision.SELECT_WINNER:
        action = {
            Decision.CONTINUE_TEST: ImplementationAction.CONTINUE_TESTING,
            Decision.DECLARE_INCONCLUSIVE: ImplementationAction.MODIFY_TEST,
            Decision.ABORT_TEST: ImplementationAction.ABORT_AND_RESTART,
        }[decision.decision]
        return ImplementationRecommendation(
            action=action,
            rollout_strategy=None,
            traffic_allocation=0.0,
            reasoning=("Statistical or business requirements not met",),
            next_steps=("Continue the test until the requirements are met",),
            follow_up_date=today + timedelta(days=7),
        )

    if decision.confidence > 0.95 and selection.risk.level == RiskLevel.LOW:
        action, strategy = ImplementationAction.IMPLEMENT_IMMEDIATELY, RolloutStrategy.IMMEDIATE
    elif selection.risk.level == RiskLevel.HIGH:
        action, strategy = ImplementationAction.IMPLEMENT_GRADUALLY, RolloutStrategy.SEGMENTED
    else:
        action, strategy = ImplementationAction.IMPLEMENT_WITH_MONITORING, RolloutStrategy.GRADUAL

    lift = selection.projection.expected_lift
    return ImplementationRecommendation(
        action=action,
        rollout_strategy=strategy,
        traffic_allocation=TRAFFIC_ALLOCATION[strategy],
        reasoning=(
            f"Winner {decision.winner.value} selected with {decision.confidence:.1%} confidence",
            f"Expected lift: {lift:+.1%}",
            f"Risk level: {selection.risk.level.value}",
        ),
        rollout=rollout_plan(strategy, today, primary, secondary),
        monitoring_plan=monitoring_schedule(today, primary, secondary, lift),
        rollback_triggers=rollback_triggers(primary, criteria),
        next_steps=(
            "Implement the winner according to the rollout strategy",
            "Monitor performance against the projection",
            "Document learnings for future tests",
        ),
        follow_up_date=today + timedelta(days=TIME_TO_FULL_IMPACT_DAYS),
    )


def expected_metrics(analysis: ExperimentAnalysis, winner: Winner) -> dict[str, float]:
    """Projected live value of each analysed metric once the winner is rolled out."""
    results = (analysis.primary, *analysis.secondary)
    if winner == Winner.CONTROL:
        return {r.metric.value: r.control_value for r in results}
    return {r.metric.value: r.test_value for r in results}


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SelectionBatchResult:
    results: list[SelectionResultRecord]
    failures: list[dict[str, str]] = field(default_factory=list)
    summary: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ImplementationPlan:
    selection: SelectionResultRecord
    strategy: RolloutStrategy
    rollout: tuple[RolloutPhase, ...]
    monitoring_schedule: tuple[MonitoringCheck, ...]


@dataclass(frozen=True)
class MonitoringReport:
    selection_id: str
    status: str
    recommendation: MonitoringAdvice
    implementation_status: ImplementationStatus
    metrics: dict[str, dict[str, Any]]
    alerts: list[MonitoringAlert]

    def as_dict(self) -> dict[str, Any]:
        return {
            "selection_id": self.selection_id,
            "status": self.status,
            "recommendation": self.recommendation.value,
            "implementation_status": self.implementation_status.value,
            "metrics": self.metrics,
            "alerts": [a.as_dict() for a in self.alerts],
        }


def summarize_selections(records: Sequence[SelectionResultRecord]) -> dict[str, Any]:
    total = len(records)
    decisions = Counter(r.decision for r in records)
    return {
        "total_tests": total,
        "decisions": {d.value: decisions.get(d.value, 0) for d in Decision},
        "avg_confidence": round(safe_div(sum(r.confidence for r in records), total), 4),
        "success_rate": round(safe_div(decisions.get(Decision.SELECT_WINNER.value, 0), total), 4),
    }


# ---------------------------------------------------------------------------
# WinnerSelector
# ---------------------------------------------------------------------------


class WinnerSelector:
    """Turns experiment analyses into persisted, implementable decisions."""

    def __init__(
        self,
        manager: ExperimentManager | None = None,
        *,
        outbox: EventOutbox | None = None,
        variance_threshold: float = DEFAULT_VARIANCE_THRESHOLD,
    ) -> None:
        self.outbox = outbox or EventOutbox()
        self.manager = manager or ExperimentManager(outbox=self.outbox)
        self.variance_threshold = variance_threshold

    def get(self, db: Session, selection_id: Any) -> SelectionResultRecord:
        return require(db, SelectionResultRecord, selection_id, "Selection")

    def _variant_creative(self, experiment: Experiment, role: VariantRole) -> uuid.UUID:
        return {v.role: v.creative_id for v in experiment.variants}[role.value]

    def _quality(
        self, db: Session, experiment: Experiment, role: VariantRole, today: date
    ) -> QualitySnapshot:
        creative_id = self._variant_creative(experiment, role)
        start = experiment.started_at.date() if experiment.started_at else today
        end = experiment.ended_at.date() if experiment.ended_at else today
        daily = load_daily_metrics(db, creative_id, start=start, end=end)
        scores = [d.quality_score for d in daily if d.quality_score is not None]
        with store_guard(db, "load latest fatigue verdict"):
            latest = db.execute(
                select(FatigueVerdictRecord.level)
                .where(FatigueVerdictRecord.creative_id == creative_id)
                .order_by(FatigueVerdictRecord.analysis_date.desc())
                .limit(1)
            ).scalar_one_or_none()
        return QualitySnapshot(
            quality_score=mean(scores) if scores else None,
            fatigue_level=latest,
        )

    # ---- evaluation -----------------------------------------------------

    def evaluate(
        self,
        db: Session,
        experiment_id: Any,
        criteria: SelectionCriteria | None = None,
        context: DecisionContext | None = None,
        today: date | None = None,
    ) -> SelectionResultRecord:
        criteria = (criteria or SelectionCriteria()).validate()
        today = today or date.today()
        experiment = self.manager.get(db, experiment_id)
        config = ExperimentConfig.from_dict(experiment.config_json)
        analysis = self.manager.analyze(db, experiment.id, today)

        quality = self._quality(db, experiment, _candidate(analysis), today)
        selection = SelectionAnalysis(
            statistical=validate_statistical(analysis, criteria),
            business=validate_business(analysis, criteria, quality),
            risk=assess_risk(analysis, criteria, context),
            projection=project_performance(analysis),
        )
        decision = decide(
            selection,
            criteria,
            aborted=experiment.status == ExperimentStatus.CANCELLED.value,
        )
        recommendation = recommend_implementation(
            decision,
            selection,
            criteria,
            primary=config.primary_metric,
            secondary=config.secondary_metrics,
            today=today,
        )

        record = SelectionResultRecord(
            experiment_id=experiment.id,
            decision=decision.decision.value,
            winner=decision.winner.value,
            confidence=decision.confidence,
            risk_level=selection.risk.level.value,
            criteria_json=criteria.to_dict(),
            analysis_json=selection.as_dict(),
            result_json={
                "experiment_analysis": analysis.as_dict(),
                "expected_metrics": expected_metrics(analysis, decision.winner),
                "quality": {
                    "quality_score": quality.quality_score,
                    "fatigue_level": quality.fatigue_level,
                },
            },
            recommendation_json=recommendation.as_dict(),
            implementation_status=ImplementationStatus.PENDING.value,
        )
        with store_guard(db, "store selection result"):
            db.add(record)
            db.flush()
        if decision.decision == Decision.SELECT_WINNER:
            self.outbox.emit(
                db,
                WINNER_SELECTED,
                channel=NOTIFICATION,
                entity_type="selection",
                entity_id=record.id,
                payload={
                    "experiment_id": experiment.id,
                    "winner": decision.winner,
                    "confidence": decision.confidence,
                    "expected_lift": selection.projection.expected_lift,
                    "action": recommendation.action,
                },
            )
        with store_guard(db, "commit selection result"):
            db.commit()
            db.refresh(record)
        logger.info(
            "Selection %s for experiment %s: %s (%s, confidence %.2f)",
            record.id,
            experiment.id,
            decision.decision.value,
            decision.winner.value,
            decision.confidence,
        )
        return record

    def evaluate_batch(
        self,
        db: Session,
        experiment_ids: Sequence[Any],
        criteria: SelectionCriteria | None = None,
        context: DecisionContext | None = None,
        today: date | None = None,
    ) -> SelectionBatchResult:
        results: list[SelectionResultRecord] = []
        failures: list[dict[str, str]] = []
        for experiment_id in experiment_ids:
            try:
                results.append(self.evaluate(db, experiment_id, criteria, context, today))
            except Exception as exc:
                db.rollback()
                logger.exception("Winner evaluation failed for experiment %s", experiment_id)
                failures.append({"experiment_id": str(experiment_id), "error": str(exc)})
        return SelectionBatchResult(
            results=results,
            failures=failures,
            summary=summarize_selections(results),
        )

    # ---- implementation -------------------------------------------------

    def implement(
        self,
        db: Session,
        selection_id: Any,
        strategy: RolloutStrategy | str | None = None,
        today: date | None = None,
    ) -> ImplementationPlan:
        record = self.get(db, selection_id)
        if record.decision != Decision.SELECT_WINNER.value:
            raise InvalidTransitionError(record.decision, ImplementationStatus.IMPLEMENTING.value)
        if record.implementation_status != ImplementationStatus.PENDING.value:
            raise InvalidTransitionError(
                record.implementation_status, ImplementationStatus.IMPLEMENTING.value
            )

        today = today or date.today()
        experiment = require(db, Experiment, record.experiment_id, "Experiment")
        config = ExperimentConfig.from_dict(experiment.config_json)
        rollout_strategy = RolloutStrategy(
            strategy or record.recommendation_json.get("rollout_strategy") or RolloutStrategy.GRADUAL
        )
        winner = Winner(record.winner)
        loser = Winner.CONTROL if winner == Winner.TEST else Winner.TEST
        phases = rollout_plan(rollout_strategy, today, config.primary_metric, config.secondary_metrics)
        schedule = monitoring_schedule(
            today,
            config.primary_metric,
            config.secondary_metrics,
            float(record.analysis_json["performance_projection"]["expected_lift"]),
        )

        record.implementation_status = ImplementationStatus.IMPLEMENTING.value
        record.implementation_started_at = datetime.now(timezone.utc)
        payload = {
            "experiment_id": experiment.id,
            "winner": winner,
            "winner_creative_id": self._variant_creative(experiment, VariantRole(winner.value)),
            "loser_creative_id": self._variant_creative(experiment, VariantRole(loser.value)),
            "strategy": rollout_strategy,
            "phases": [p.as_dict() for p in phases],
        }
        self.outbox.emit(
            db,
            WINNER_IMPLEMENTATION_STARTED,
            channel=PLATFORM,
            entity_type="selection",
            entity_id=record.id,
            payload=payload,
        )
        self.outbox.emit(
            db,
            WINNER_IMPLEMENTATION_STARTED,
            channel=NOTIFICATION,
            entity_type="selection",
            entity_id=record.id,
            payload={"experiment_id": experiment.id, "winner": winner, "strategy": rollout_strategy},
        )
        with store_guard(db, "start winner implementation"):
            db.commit()
            db.refresh(record)
        logger.info(
            "Implementing %s for experiment %s with %s rollout",
            winner.value,
            experiment.id,
            rollout_strategy.value,
        )
        return ImplementationPlan(
            selection=record,
            strategy=rollout_strategy,
            rollout=phases,
            monitoring_schedule=schedule,
        )

    def auto_implement(self, db: Session, experiment_id: uuid.UUID) -> SelectionResultRecord:
        """Evaluate with default criteria and start the rollout when a winner is selected."""
        record = self.evaluate(db, experiment_id)
        if record.decision == Decision.SELECT_WINNER.value:
            self.implement(db, record.id)
            db.refresh(record)
        return record

    def monitor_implementation(
        self,
        db: Session,
        selection_id: Any,
        live_metrics: dict[str, float],
        today: date | None = None,
    ) -> MonitoringReport:
        record = self.get(db, selection_id)
        if record.implementation_status != ImplementationStatus.IMPLEMENTING.value:
            raise InvalidTransitionError(record.implementation_status, "MONITORING")

        today = today or date.today()
        expected = record.result_json.get("expected_metrics", {})
        metrics, alerts = compare_live_metrics(
            expected, live_metrics, threshold=self.variance_threshold
        )
        advice = monitoring_advice(alerts)
        status = monitoring_status(alerts)

        if advice == MonitoringAdvice.ROLLBACK:
            record.implementation_status = ImplementationStatus.ROLLED_BACK.value
            experiment = require(db, Experiment, record.experiment_id, "Experiment")
            self.outbox.emit(
                db,
                ROLLOUT_ROLLBACK_REQUIRED,
                channel=NOTIFICATION,
                entity_type="selection",
                entity_id=record.id,
                payload={
                    "experiment_id": record.experiment_id,
                    "alerts": [a.as_dict() for a in alerts],
                },
            )
            self.outbox.emit(
                db,
                ROLLOUT_ROLLBACK_REQUIRED,
                channel=PLATFORM,
                entity_type="selection",
                entity_id=record.id,
                payload={
                    "restore_creative_id": self._variant_creative(experiment, VariantRole.CONTROL),
                    "winner": record.winner,
                },
            )
            logger.warning("Rolling back selection %s: %d critical alert(s)", record.id, len(alerts))
        elif advice == MonitoringAdvice.CONTINUE and record.implementation_started_at is not None:
            started = record.implementation_started_at.date()
            if today >= started + timedelta(days=MONITORING_DAYS):
                record.implementation_status = ImplementationStatus.COMPLETED.value

        report = MonitoringReport(
            selection_id=str(record.id),
            status=status,
            recommendation=advice,
            implementation_status=ImplementationStatus(record.implementation_status),
            metrics=metrics,
            alerts=alerts,
        )
        record.last_monitoring_json = report.as_dict()
        with store_guard(db, "store monitoring result"):
            db.commit()
        return report


def build_experiment_services(
    outbox: EventOutbox | None = None,
) -> tuple[ExperimentManager, WinnerSelector]:
    """Manager and selector wired so a successful stop starts the winner rollout."""
    outbox = outbox or EventOutbox()
    manager = ExperimentManager(outbox=outbox)
    selector = WinnerSelector(manager, outbox=outbox)
    manager.on_success = selector.auto_implement
    return manager, selector

