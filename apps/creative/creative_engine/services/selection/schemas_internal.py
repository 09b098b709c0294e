from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from creative_engine.exceptions import InvalidConfigurationError
from creative_engine.services.experimentation.schemas_internal import Metric


class Decision(str, enum.Enum):
    SELECT_WINNER = "SELECT_WINNER"
    CONTINUE_TEST = "CONTINUE_TEST"
    DECLARE_INCONCLUSIVE = "DECLARE_INCONCLUSIVE"
    ABORT_TEST = "ABORT_TEST"


class Winner(str, enum.Enum):
    CONTROL = "CONTROL"
    TEST = "TEST"
    NEITHER = "NEITHER"


class RiskLevel(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class RiskTolerance(str, enum.Enum):
    CONSERVATIVE = "CONSERVATIVE"
    MODERATE = "MODERATE"
    AGGRESSIVE = "AGGRESSIVE"


class ImplementationAction(str, enum.Enum):
    IMPLEMENT_IMMEDIATELY = "IMPLEMENT_IMMEDIATELY"
    IMPLEMENT_WITH_MONITORING = "IMPLEMENT_WITH_MONITORING"
    IMPLEMENT_GRADUALLY = "IMPLEMENT_GRADUALLY"
    CONTINUE_TESTING = "CONTINUE_TESTING"
    MODIFY_TEST = "MODIFY_TEST"
    ABORT_AND_RESTART = "ABORT_AND_RESTART"


class RolloutStrategy(str, enum.Enum):
    IMMEDIATE = "IMMEDIATE"
    GRADUAL = "GRADUAL"
    SEGMENTED = "SEGMENTED"


class ImplementationStatus(str, enum.Enum):
    PENDING = "PENDING"
    IMPLEMENTING = "IMPLEMENTING"
    COMPLETED = "COMPLETED"
    ROLLED_BACK = "ROLLED_BACK"


class MonitoringAdvice(str, enum.Enum):
    CONTINUE = "CONTINUE"
    ADJUST = "ADJUST"
    ROLLBACK = "ROLLBACK"


FATIGUE_GATE_LEVELS = ("NONE", "MILD", "MODERATE")


@dataclass(frozen=True)
class SelectionCriteria:
    """Statistical and business gates a winner must clear."""

    min_confidence_level: float = 0.95
    min_sample_size: int = 1000
    min_test_duration_days: int = 14
    min_practical_significance: float = 0.05
    max_tolerable_decline: float = 0.1
    max_budget_increase: float = 0.5
    min_roi: float = 2.0
    risk_tolerance: RiskTolerance = RiskTolerance.MODERATE
    require_unanimous_significance: bool = False
    min_quality_score: float = 7.0
    max_fatigue_level: str = "MILD"

    def errors(self) -> list[str]:
        errors: list[str] = []
        if not 0.8 <= self.min_confidence_level <= 0.99:
            errors.append("min_confidence_level must be between 0.8 and 0.99")
        if self.min_sample_size < 100:
            errors.append("min_sample_size must be at least 100")
        if self.min_test_duration_days < 7:
            errors.append("min_test_duration_days must be at least 7")
        if not 0.01 <= self.min_practical_significance <= 0.5:
            errors.append("min_practical_significance must be between 0.01 and 0.5")
        if not 0.01 <= self.max_tolerable_decline <= 0.3:
            errors.append("max_tolerable_decline must be between 0.01 and 0.3")
        if not 0 <= self.max_budget_increase <= 2:
            errors.append("max_budget_increase must be between 0 and 2")
        if self.min_roi < 1:
            errors.append("min_roi must be at least 1")
        if not 1 <= self.min_quality_score <= 10:
            errors.append("min_quality_score must be between 1 and 10")
        if self.max_fatigue_level not in FATIGUE_GATE_LEVELS:
            errors.append(f"max_fatigue_level must be one of {', '.join(FATIGUE_GATE_LEVELS)}")
        return errors

    def validate(self) -> SelectionCriteria:
        errors = self.errors()
        if errors:
            raise InvalidConfigurationError(errors, {"config": "selection"})
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "min_confidence_level": self.min_confidence_level,
            "min_sample_size": self.min_sample_size,
            "min_test_duration_days": self.min_test_duration_days,
            "min_practical_significance": self.min_practical_significance,
            "max_tolerable_decline": self.max_tolerable_decline,
            "max_budget_increase": self.max_budget_increase,
            "min_roi": self.min_roi,
            "risk_tolerance": self.risk_tolerance.value,
            "require_unanimous_significance": self.require_unanimous_significance,
            "min_quality_score": self.min_quality_score,
            "max_fatigue_level": self.max_fatigue_level,
        }


@dataclass(frozen=True)
class DecisionContext:
    """Business context supplied by the caller; every field is optional."""

    competitive_pressure: RiskLevel | None = None
    market_conditions: str | None = None
    business_objectives: tuple[str, ...] = ()


@dataclass(frozen=True)
class QualitySnapshot:
    """Quality and fatigue state of the candidate winner's creative."""

    quality_score: float | None = None
    fatigue_level: str | None = None


# ---------------------------------------------------------------------------
# Analysis blocks
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StatisticalValidation:
    primary_metric_valid: bool
    secondary_metrics_valid: bool
    sample_size_adequate: bool
    test_duration_adequate: bool
    confidence_threshold_met: bool

    @property
    def passed(self) -> bool:
        return all(
            (
                self.primary_metric_valid,
                self.secondary_metrics_valid,
                self.sample_size_adequate,
                self.test_duration_adequate,
                self.confidence_threshold_met,
            )
        )


@dataclass(frozen=True)
class BusinessValidation:
    practical_significance_met: bool
    secondary_metrics_acceptable: bool
    budget_constraints_met: bool
    roi_requirement_met: bool
    quality_gates_passed: bool

    @property
    def passed(self) -> bool:
        return all(
            (
                self.practical_significance_met,
                self.secondary_metrics_acceptable,
                self.budget_constraints_met,
                self.roi_requirement_met,
                self.quality_gates_passed,
            )
        )


@dataclass(frozen=True)
class RiskAssessment:
    level: RiskLevel
    risks: tuple[str, ...] = ()
    mitigations: tuple[str, ...] = ()
    rollback_plan: str = ""


@dataclass(frozen=True)
class PerformanceProjection:
    expected_lift: float
    revenue: float
    cost: float
    conversions: float
    confidence_interval: tuple[float, float]
    time_to_full_impact_days: int = 14


@dataclass(frozen=True)
class SelectionAnalysis:
    statistical: StatisticalValidation
    business: BusinessValidation
    risk: RiskAssessment
    projection: PerformanceProjection

    def as_dict(self) -> dict[str, Any]:
        return {
            "statistical_validation": {
                "primary_metric_valid": self.statistical.primary_metric_valid,
                "secondary_metrics_valid": self.statistical.secondary_metrics_valid,
                "sample_size_adequate": self.statistical.sample_size_adequate,
                "test_duration_adequate": self.statistical.test_duration_adequate,
                "confidence_threshold_met": self.statistical.confidence_threshold_met,
            },
            "business_validation": {
                "practical_significance_met": self.business.practical_significance_met,
                "secondary_metrics_acceptable": self.business.secondary_metrics_acceptable,
                "budget_constraints_met": self.business.budget_constraints_met,
                "roi_requirement_met": self.business.roi_requirement_met,
                "quality_gates_passed": self.business.quality_gates_passed,
            },
            "risk_assessment": {
                "level": self.risk.level.value,
                "risks": list(self.risk.risks),
                "mitigations": list(self.risk.mitigations),
                "rollback_plan": self.risk.rollback_plan,
            },
            "performance_projection": {
                "expected_lift": self.projection.expected_lift,
                "revenue": self.projection.revenue,
                "cost": self.projection.cost,
                "conversions": self.projection.conversions,
                "confidence_interval": list(self.projection.confidence_interval),
                "time_to_full_impact_days": self.projection.time_to_full_impact_days,
            },
        }


@dataclass(frozen=True)
class SelectionDecision:
    decision: Decision
    winner: Winner
    confidence: float


@dataclass(frozen=True)
class RolloutPhase:
    phase: int
    traffic_percent: int
    start_date: date
    metrics: tuple[Metric, ...]

    def as_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "traffic_percent": self.traffic_percent,
            "start_date": self.start_date.isoformat(),
            "metrics": [m.value for m in self.metrics],
        }


@dataclass(frozen=True)
class MonitoringCheck:
    check_date: date
    metrics: tuple[Metric, ...]
    thresholds: dict[str, float] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "check_date": self.check_date.isoformat(),
            "metrics": [m.value for m in self.metrics],
            "thresholds": dict(self.thresholds),
        }


@dataclass(frozen=True)
class ImplementationRecommendation:
    action: ImplementationAction
    rollout_strategy: RolloutStrategy | None
    traffic_allocation: float
    reasoning: tuple[str, ...]
    rollout: tuple[RolloutPhase, ...] = ()
    monitoring_plan: tuple[MonitoringCheck, ...] = ()
    rollback_triggers: tuple[str, ...] = ()
    next_steps: tuple[str, ...] = ()
    follow_up_date: date | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "rollout_strategy": self.rollout_strategy.value if self.rollout_strategy else None,
            "traffic_allocation": self.traffic_allocation,
            "reasoning": list(self.reasoning),
            "rollout": [p.as_dict() for p in self.rollout],
            "monitoring_plan": [c.as_dict() for c in self.monitoring_plan],
            "rollback_triggers": list(self.rollback_triggers),
            "next_steps": list(self.next_steps),
            "follow_up_date": self.follow_up_date.isoformat() if self.follow_up_date else None,
        }


@dataclass(frozen=True)
class MonitoringAlert:
    severity: str
    metric: str
    variance: float
    message: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity,
            "metric": self.metric,
            "variance": self.variance,
            "message": self.message,
        }
