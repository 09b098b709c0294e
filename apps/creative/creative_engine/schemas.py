"""Pydantic request and response schemas for the HTTP API."""

from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from creative_engine.services.experimentation import (
    ExperimentConfig,
    Metric,
    StatisticalMethod,
    StopReason,
    TestType,
    VariantSpec,
)
from creative_engine.services.rotation import RotationConfig, RotationStrategy
from creative_engine.services.selection import (
    DecisionContext,
    RiskLevel,
    RiskTolerance,
    RolloutStrategy,
    SelectionCriteria,
)


# ---------------------------------------------------------------------------
# Performance and rotation
# ---------------------------------------------------------------------------


class PerformanceProfileOut(BaseModel):
    creative_id: str
    ad_group_id: str
    name: str
    status: str
    creative_type: str
    window_start: date
    window_end: date
    metrics: dict[str, Any]
    trends: dict[str, Any]
    score: float
    rank: int | None = None
    insights: list[str] = []
    recommendations: list[str] = []


class AdGroupPerformanceOut(BaseModel):
    ad_group_id: str
    campaign_id: str | None = None
    total_creatives: int
    active_creatives: int
    profiles: list[PerformanceProfileOut]
    top_performers: list[str]
    poor_performers: list[str]
    health: dict[str, Any]
    recommendations: dict[str, list[str]]
    rotation: dict[str, Any]


class RotationConfigIn(BaseModel):
    strategy: RotationStrategy = RotationStrategy.OPTIMIZE
    min_impressions: int = 1000
    max_active_creatives: int = 5
    rotation_interval_days: int = 7
    performance_threshold: float = 40.0
    learning_period_days: int = 14
    confidence_level: float = 0.95

    def to_config(self) -> RotationConfig:
        return RotationConfig(**self.model_dump())


class RotationRecommendationOut(BaseModel):
    ad_group_id: str
    current_strategy: str
    recommended_strategy: str
    confidence: float
    reasoning: list[str]
    expected_impact: dict[str, float]
    action_items: list[dict[str, Any]]
    schedule: list[dict[str, Any]]
    analysis: dict[str, Any]


class RotationChangeSetOut(BaseModel):
    ad_group_id: str
    implemented: bool
    strategy: str
    changes: list[dict[str, Any]]
    pause_requests: list[str]
    next_review_date: date


class ReviewRequest(BaseModel):
    apply: bool = False
    config: RotationConfigIn = Field(default_factory=RotationConfigIn)


class ReviewCycleOut(BaseModel):
    ad_group_id: str
    analysis_date: date
    health: dict[str, Any] | None = None
    fatigue_summary: dict[str, Any] | None = None
    rotation: RotationRecommendationOut | None = None
    applied: bool = False
    experiment_candidates: list[dict[str, Any]] = []
    errors: list[dict[str, str]] = []


# ---------------------------------------------------------------------------
# Fatigue
# ---------------------------------------------------------------------------


class FatigueRequest(BaseModel):
    analysis_date: date | None = None


class FatigueBatchRequest(BaseModel):
    creative_ids: list[uuid.UUID]
    analysis_date: date | None = None


class FatigueVerdictOut(BaseModel):
    creative_id: str
    ad_group_id: str | None = None
    campaign_id: str | None = None
    analysis_date: date
    level: str
    score: float
    confidence: float
    signals: list[dict[str, Any]]
    performance: dict[str, Any]
    historical: dict[str, Any]
    predictions: dict[str, Any]
    actions: list[dict[str, Any]]


class FatigueBatchOut(BaseModel):
    verdicts: list[FatigueVerdictOut]
    failures: list[dict[str, str]]
    summary: dict[str, Any]


class CampaignFatigueOut(BaseModel):
    campaign_id: str
    level: str
    batch: FatigueBatchOut
    recommendations: list[dict[str, Any]]


class FatigueVerdictRecordOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    creative_id: uuid.UUID
    analysis_date: date
    level: str
    score: float
    confidence: float
    signal_count: int
    verdict_json: dict[str, Any] = {}


# ---------------------------------------------------------------------------
# Experiments
# ---------------------------------------------------------------------------


class VariantIn(BaseModel):
    name: str
    creative_id: uuid.UUID
    content: dict[str, Any] = {}

    def to_spec(self) -> VariantSpec:
        return VariantSpec(name=self.name, creative_id=self.creative_id, content=dict(self.content))


class ExperimentConfigIn(BaseModel):
    test_type: TestType = TestType.CREATIVE_SPLIT
    control_percent: float = 50.0
    test_percent: float = 50.0
    statistical_method: StatisticalMethod = StatisticalMethod.FREQUENTIST
    primary_metric: Metric = Metric.CTR
    secondary_metrics: list[Metric] = []
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

    def to_config(self) -> ExperimentConfig:
        data = self.model_dump()
        data["secondary_metrics"] = tuple(self.secondary_metrics)
        return ExperimentConfig(**data)


class ExperimentCreate(BaseModel):
    name: str
    ad_group_id: uuid.UUID | None = None
    hypothesis: str | None = None
    control: VariantIn
    test: VariantIn
    config: ExperimentConfigIn = Field(default_factory=ExperimentConfigIn)


class ExperimentVariantOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    role: str
    name: str
    creative_id: uuid.UUID
    traffic_percent: float
    content_json: dict[str, Any] = {}
    active: bool
    activated_at: datetime | None = None


class ExperimentTransitionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    from_status: str | None = None
    to_status: str
    reason: str | None = None
    created_at: datetime


class ExperimentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    ad_group_id: uuid.UUID | None = None
    test_type: str
    statistical_method: str
    primary_metric: str
    status: str
    stop_reason: str | None = None
    hypothesis: str | None = None
    config_json: dict[str, Any]
    required_sample_size: int
    estimated_duration_days: int
    analysis_json: dict[str, Any] | None = None
    recommendation_json: dict[str, Any] | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    variants: list[ExperimentVariantOut] = []
    transitions: list[ExperimentTransitionOut] = []


class ExperimentListItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    status: str
    primary_metric: str
    stop_reason: str | None = None
    started_at: datetime | None = None


class TransitionRequest(BaseModel):
    reason: str | None = None


class StopRequest(BaseModel):
    reason: StopReason | None = None


class ExperimentAnalysisOut(BaseModel):
    experiment_id: str
    analyzed_at: datetime
    method: str
    duration_days: int
    arms: dict[str, dict[str, Any]]
    primary: dict[str, Any]
    secondary: list[dict[str, Any]]
    bayesian: dict[str, Any] | None = None
    sequential: dict[str, Any] | None = None
    power: dict[str, Any] | None = None


class EarlyStoppingOut(BaseModel):
    should_stop: bool
    reason: str | None = None
    message: str
    checks: list[dict[str, Any]]


class StopOut(BaseModel):
    experiment: ExperimentOut
    analysis: ExperimentAnalysisOut
    recommendation: dict[str, Any]
    selection_id: uuid.UUID | None = None


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


class SelectionCriteriaIn(BaseModel):
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

    def to_criteria(self) -> SelectionCriteria:
        return SelectionCriteria(**self.model_dump())


class DecisionContextIn(BaseModel):
    competitive_pressure: RiskLevel | None = None
    market_conditions: str | None = None
    business_objectives: list[str] = []

    def to_context(self) -> DecisionContext:
        return DecisionContext(
            competitive_pressure=self.competitive_pressure,
            market_conditions=self.market_conditions,
            business_objectives=tuple(self.business_objectives),
        )


class SelectionRequest(BaseModel):
    criteria: SelectionCriteriaIn = Field(default_factory=SelectionCriteriaIn)
    context: DecisionContextIn | None = None


class SelectionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    experiment_id: uuid.UUID
    decision: str
    winner: str | None = None
    confidence: float
    risk_level: str
    criteria_json: dict[str, Any]
    analysis_json: dict[str, Any]
    recommendation_json: dict[str, Any]
    implementation_status: str
    implementation_started_at: datetime | None = None
    last_monitoring_json: dict[str, Any] | None = None
    created_at: datetime


class ImplementRequest(BaseModel):
    strategy: RolloutStrategy | None = None


class ImplementationPlanOut(BaseModel):
    selection: SelectionOut
    strategy: str
    rollout: list[dict[str, Any]]
    monitoring_schedule: list[dict[str, Any]]


class MonitorRequest(BaseModel):
    live_metrics: dict[str, float]


class MonitoringReportOut(BaseModel):
    selection_id: str
    status: str
    recommendation: str
    implementation_status: str
    metrics: dict[str, dict[str, Any]]
    alerts: list[dict[str, Any]]


# ---------------------------------------------------------------------------
# Outbox
# ---------------------------------------------------------------------------


class OutboundEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    event_type: str
    channel: str
    entity_type: str
    entity_id: str
    payload_json: dict[str, Any]
    created_at: datetime
    delivered_at: datetime | None = None


class EventsDeliveredRequest(BaseModel):
    event_ids: list[uuid.UUID]


class EventsDeliveredOut(BaseModel):
    delivered: int
