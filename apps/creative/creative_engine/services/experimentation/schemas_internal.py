from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypedDict

from creative_engine.exceptions import InvalidConfigurationError


class TestType(str, enum.Enum):
    CREATIVE_SPLIT = "CREATIVE_SPLIT"
    LANDING_PAGE = "LANDING_PAGE"
    BID_STRATEGY = "BID_STRATEGY"
    AUDIENCE = "AUDIENCE"
    ROTATION_STRATEGY = "ROTATION_STRATEGY"


class StatisticalMethod(str, enum.Enum):
    FREQUENTIST = "FREQUENTIST"
    BAYESIAN = "BAYESIAN"
    SEQUENTIAL = "SEQUENTIAL"


class Metric(str, enum.Enum):
    CTR = "CTR"
    CVR = "CVR"
    CPA = "CPA"
    ROAS = "ROAS"
    REVENUE = "REVENUE"
    IMPRESSIONS = "IMPRESSIONS"
    CLICKS = "CLICKS"

    @property
    def is_rate(self) -> bool:
        return self in (Metric.CTR, Metric.CVR)

    @property
    def lower_is_better(self) -> bool:
        return self == Metric.CPA


PRIMARY_METRICS = (Metric.CTR, Metric.CVR, Metric.CPA, Metric.ROAS, Metric.REVENUE)


class ExperimentStatus(str, enum.Enum):
    PLANNING = "PLANNING"
    READY = "READY"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class StopReason(str, enum.Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    INCONCLUSIVE = "INCONCLUSIVE"
    MANUAL = "MANUAL"


class VariantRole(str, enum.Enum):
    CONTROL = "CONTROL"
    TEST = "TEST"


class RecommendedAction(str, enum.Enum):
    STOP_SUCCESS = "STOP_SUCCESS"
    CONTINUE = "CONTINUE"


class EarlyStopReason(str, enum.Enum):
    EARLY_SUCCESS = "EARLY_SUCCESS"
    FUTILITY = "FUTILITY"
    GUARDRAIL_VIOLATION = "GUARDRAIL_VIOLATION"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExperimentConfig:
    """Validated parameters of a two-arm experiment."""

    test_type: TestType = TestType.CREATIVE_SPLIT
    control_percent: float = 50.0
    test_percent: float = 50.0
    statistical_method: StatisticalMethod = StatisticalMethod.FREQUENTIST
    primary_metric: Metric = Metric.CTR
    secondary_metrics: tuple[Metric, ...] = ()
    min_duration_days: int = 7
    max_duration_days: int = 28
    min_sample_size: int = 1000
    power: float = 0.8
    significance_level: float = 0.05
    min_detectable_effect: float = 0.1
    practical_significance_threshold: float = 0.05
    early_stopping_enabled: bool = True
    futility_stopping_enabled: bool = True
    max_negative_impact: float = 0.2
    max_spend_increase: float = 0.5

    def errors(self) -> list[str]:
        errors: list[str] = []
        for label, value in (("control", self.control_percent), ("test", self.test_percent)):
            if not 10 <= value <= 90:
                errors.append(f"{label} traffic percent must be between 10 and 90")
        if abs(self.control_percent + self.test_percent - 100) > 1e-9:
            errors.append("Traffic split must sum to 100")
        if not 7 <= self.min_duration_days <= 90:
            errors.append("min_duration_days must be between 7 and 90")
        if not 14 <= self.max_duration_days <= 180:
            errors.append("max_duration_days must be between 14 and 180")
        if self.max_duration_days <= self.min_duration_days:
            errors.append("max_duration_days must be greater than min_duration_days")
        if self.min_sample_size < 100:
            errors.append("min_sample_size must be at least 100")
        if not 0.8 <= self.power <= 0.99:
            errors.append("power must be between 0.8 and 0.99")
        if not 0.01 <= self.significance_level <= 0.1:
            errors.append("significance_level must be between 0.01 and 0.1")
        if self.primary_metric not in PRIMARY_METRICS:
            errors.append(f"primary_metric {self.primary_metric.value} is not supported")
        if not 0.01 <= self.min_detectable_effect <= 1:
            errors.append("min_detectable_effect must be between 0.01 and 1")
        if not 0.01 <= self.practical_significance_threshold <= 0.5:
            errors.append("practical_significance_threshold must be between 0.01 and 0.5")
        if not 0.05 <= self.max_negative_impact <= 0.5:
            errors.append("max_negative_impact must be between 0.05 and 0.5")
        if not 0.1 <= self.max_spend_increase <= 2.0:
            errors.append("max_spend_increase must be between 0.1 and 2.0")
        return errors

    def validate(self) -> ExperimentConfig:
        errors = self.errors()
        if errors:
            raise InvalidConfigurationError(errors, {"config": "experiment"})
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "test_type": self.test_type.value,
            "control_percent": self.control_percent,
            "test_percent": self.test_percent,
            "statistical_method": self.statistical_method.value,
            "primary_metric": self.primary_metric.value,
            "secondary_metrics": [m.value for m in self.secondary_metrics],
            "min_duration_days": self.min_duration_days,
            "max_duration_days": self.max_duration_days,
            "min_sample_size": self.min_sample_size,
            "power": self.power,
            "significance_level": self.significance_level,
            "min_detectable_effect": self.min_detectable_effect,
            "practical_significance_threshold": self.practical_significance_threshold,
            "early_stopping_enabled": self.early_stopping_enabled,
            "futility_stopping_enabled": self.futility_stopping_enabled,
            "max_negative_impact": self.max_negative_impact,
            "max_spend_increase": self.max_spend_increase,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ExperimentConfig:
        data = dict(payload)
        try:
            data["test_type"] = TestType(data.get("test_type", TestType.CREATIVE_SPLIT))
            data["statistical_method"] = StatisticalMethod(
                data.get("statistical_method", StatisticalMethod.FREQUENTIST)
            )
            data["primary_metric"] = Metric(data.get("primary_metric", Metric.CTR))
            data["secondary_metrics"] = tuple(Metric(m) for m in data.get("secondary_metrics", ()))
        except ValueError as exc:
            raise InvalidConfigurationError([str(exc)], {"config": "experiment"}) from exc
        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass(frozen=True)
class VariantSpec:
    name: str
    creative_id: uuid.UUID
    content: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Analysis payloads
# ---------------------------------------------------------------------------


class ArmTotals(TypedDict):
    sample_size: int
    clicks: int
    conversions: int
    spend: float
    revenue: float


@dataclass(frozen=True)
class ArmStats:
    """Summed traffic for one arm plus per-day values used by the t-test."""

    role: VariantRole
    creative_id: str
    sample_size: int = 0
    clicks: int = 0
    conversions: int = 0
    spend: float = 0.0
    revenue: float = 0.0
    days: int = 0
    daily: dict[str, list[float]] = field(default_factory=dict)

    def totals(self) -> ArmTotals:
        return ArmTotals(
            sample_size=self.sample_size,
            clicks=self.clicks,
            conversions=self.conversions,
            spend=round(self.spend, 2),
            revenue=round(self.revenue, 2),
        )


@dataclass(frozen=True)
class MetricResult:
    metric: Metric
    control_value: float
    test_value: float
    relative_change: float
    absolute_change: float
    p_value: float
    confidence_interval: tuple[float, float]
    statistically_significant: bool
    practically_significant: bool

    @property
    def lift(self) -> float:
        """Relative change oriented so that positive always means the test arm is better."""
        return -self.relative_change if self.metric.lower_is_better else self.relative_change

    def as_dict(self) -> dict[str, Any]:
        return {
            "metric": self.metric.value,
            "control_value": self.control_value,
            "test_value": self.test_value,
            "relative_change": self.relative_change,
            "absolute_change": self.absolute_change,
            "lift": self.lift,
            "p_value": self.p_value,
            "confidence_interval": list(self.confidence_interval),
            "statistically_significant": self.statistically_significant,
            "practically_significant": self.practically_significant,
        }


@dataclass(frozen=True)
class BayesianResult:
    probability_test_better: float
    expected_loss_control: float
    expected_loss_test: float
    credible_interval: tuple[float, float]

    def as_dict(self) -> dict[str, Any]:
        return {
            "probability_test_better": self.probability_test_better,
            "expected_loss_control": self.expected_loss_control,
            "expected_loss_test": self.expected_loss_test,
            "credible_interval": list(self.credible_interval),
        }


@dataclass(frozen=True)
class PowerAnalysis:
    required_sample_size: int
    current_sample_size: int
    achieved_power: float
    additional_sample_needed: int
    estimated_days_remaining: int | None

    def as_dict(self) -> dict[str, Any]:
        return {
            "required_sample_size": self.required_sample_size,
            "current_sample_size": self.current_sample_size,
            "achieved_power": self.achieved_power,
            "additional_sample_needed": self.additional_sample_needed,
            "estimated_days_remaining": self.estimated_days_remaining,
        }


@dataclass(frozen=True)
class ExperimentAnalysis:
    experiment_id: str
    analyzed_at: datetime
    method: StatisticalMethod
    control: ArmStats
    test: ArmStats
    primary: MetricResult
    secondary: tuple[MetricResult, ...] = ()
    bayesian: BayesianResult | None = None
    sequential: dict[str, float] | None = None
    power: PowerAnalysis | None = None
    duration_days: int = 0

    @property
    def total_sample_size(self) -> int:
        return self.control.sample_size + self.test.sample_size

    def as_dict(self) -> dict[str, Any]:
        return {
            "experiment_id": self.experiment_id,
            "analyzed_at": self.analyzed_at.isoformat(),
            "method": self.method.value,
            "duration_days": self.duration_days,
            "arms": {
                VariantRole.CONTROL.value: self.control.totals(),
                VariantRole.TEST.value: self.test.totals(),
            },
            "primary": self.primary.as_dict(),
            "secondary": [m.as_dict() for m in self.secondary],
            "bayesian": self.bayesian.as_dict() if self.bayesian else None,
            "sequential": dict(self.sequential) if self.sequential else None,
            "power": self.power.as_dict() if self.power else None,
        }


@dataclass(frozen=True)
class Recommendation:
    action: RecommendedAction
    winner: VariantRole | None
    confidence: float
    reasoning: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "winner": self.winner.value if self.winner else None,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
        }
