"""Lifecycle of two-arm creative experiments.

``PLANNING -> READY -> RUNNING -> {PAUSED, COMPLETED, CANCELLED}`` with
``RUNNING <-> PAUSED`` the only reversible edge.  Every status change is
written to ``experiment_status_transitions``.
"""

from __future__ import annotations

import logging
import math
import re
import uuid
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from creative_engine.exceptions import InvalidConfigurationError, InvalidTransitionError
from creative_engine.models import (
    AdGroup,
    Creative,
    Experiment,
    ExperimentStatusTransition,
    ExperimentVariant,
)
from creative_engine.services.experimentation.guardrails import (
    EarlyStoppingDecision,
    evaluate_stopping_rules,
)
from creative_engine.services.experimentation.schemas_internal import (
    ArmStats,
    ExperimentAnalysis,
    ExperimentConfig,
    ExperimentStatus,
    Metric,
    MetricResult,
    PowerAnalysis,
    Recommendation,
    RecommendedAction,
    StopReason,
    VariantRole,
    VariantSpec,
)
from creative_engine.services.experimentation.statistics import (
    StatisticalAnalyzer,
    achieved_power,
    build_default_analyzers,
    metric_value,
    rate_counts,
    required_sample_size,
)
from creative_engine.services.metrics import DailyMetrics, load_daily_metrics_many
from creative_engine.services.outbox import (
    EXPERIMENT_STARTED,
    EXPERIMENT_STOPPED,
    EXPERIMENT_VARIANTS_ACTIVATED,
    NOTIFICATION,
    PLATFORM,
    EventOutbox,
)
from creative_engine.services.store import as_uuid, require, store_guard
from creative_engine.settings import settings

logger = logging.getLogger(__name__)

DEFAULT_SIMILARITY_THRESHOLD = settings.EXPERIMENT_SIMILARITY_THRESHOLD
DEFAULT_BASELINE_RATE = settings.EXPERIMENT_BASELINE_RATE
DEFAULT_DAILY_TRAFFIC = settings.EXPERIMENT_DAILY_TRAFFIC

TRANSITIONS: dict[ExperimentStatus, frozenset[ExperimentStatus]] = {
    ExperimentStatus.PLANNING: frozenset({ExperimentStatus.READY, ExperimentStatus.CANCELLED}),
    ExperimentStatus.READY: frozenset({ExperimentStatus.RUNNING, ExperimentStatus.CANCELLED}),
    ExperimentStatus.RUNNING: frozenset(
        {ExperimentStatus.PAUSED, ExperimentStatus.COMPLETED, ExperimentStatus.CANCELLED}
    ),
    ExperimentStatus.PAUSED: frozenset({ExperimentStatus.RUNNING, ExperimentStatus.CANCELLED}),
    ExperimentStatus.COMPLETED: frozenset(),
    ExperimentStatus.CANCELLED: frozenset(),
}

_TOKEN = re.compile(r"\w+")


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def _strings(value: Any) -> Iterable[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from _strings(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _strings(item)


def variant_tokens(content: Mapping[str, Any] | None) -> set[str]:
    """Lower-cased word tokens of every text field in a content payload."""
    tokens: set[str] = set()
    for text in _strings(content or {}):
        tokens.update(t.lower() for t in _TOKEN.findall(text))
    return tokens


def jaccard_similarity(a: set[str], b: set[str]) -> float:
    if not a and not b:
        return 0.0
    return len(a & b) / len(a | b)


def planned_sample(config: ExperimentConfig, baseline_rate: float, daily_traffic: int) -> tuple[int, int]:
    """Total required sample across both arms and the estimated duration in days."""
    per_arm = required_sample_size(
        baseline_rate,
        config.min_detectable_effect,
        config.significance_level,
        config.power,
    )
    total = max(per_arm * 2, config.min_sample_size)
    duration = max(math.ceil(total / max(daily_traffic, 1)), config.min_duration_days)
    return total, duration


def generate_recommendation(primary: MetricResult) -> Recommendation:
    if primary.statistically_significant and primary.practically_significant:
        winner = VariantRole.TEST if primary.lift > 0 else VariantRole.CONTROL
        return Recommendation(
            action=RecommendedAction.STOP_SUCCESS,
            winner=winner,
            confidence=round(1 - primary.p_value, 4),
            reasoning=(
                f"{primary.metric.value} differs by {primary.relative_change:+.1%} "
                f"(p={primary.p_value:.4f}); {winner.value.lower()} wins"
            ),
        )
    if primary.statistically_significant:
        return Recommendation(
            action=RecommendedAction.CONTINUE,
            winner=None,
            confidence=round(1 - primary.p_value, 4),
            reasoning=(
                f"Significant but small effect ({primary.relative_change:+.1%}); "
                "weigh the cost of switching against the expected benefit"
            ),
        )
    return Recommendation(
        action=RecommendedAction.CONTINUE,
        winner=None,
        confidence=round(1 - primary.p_value, 4),
        reasoning="Not significant yet; continue the test or increase the sample size",
    )


def _arm_stats(role: VariantRole, creative_id: uuid.UUID, days: Sequence[DailyMetrics]) -> ArmStats:
    daily: dict[str, list[float]] = {m.value: [] for m in Metric}
    for d in days:
        daily[Metric.IMPRESSIONS.value].append(float(d.impressions))
        daily[Metric.CLICKS.value].append(float(d.clicks))
        if d.impressions:
            daily[Metric.CTR.value].append(d.ctr)
            daily[Metric.REVENUE.value].append(d.revenue * 1000 / d.impressions)
        if d.clicks:
            daily[Metric.CVR.value].append(d.cvr)
        if d.conversions:
            daily[Metric.CPA.value].append(d.cost / d.conversions)
        if d.cost:
            daily[Metric.ROAS.value].append(d.revenue / d.cost)
    return ArmStats(
        role=role,
        creative_id=str(creative_id),
        sample_size=sum(d.impressions for d in days),
        clicks=sum(d.clicks for d in days),
        conversions=sum(d.conversions for d in days),
        spend=sum(d.cost for d in days),
        revenue=sum(d.revenue for d in days),
        days=len(days),
        daily=daily,
    )


@dataclass(frozen=True)
class StopResult:
    experiment: Experiment
    analysis: ExperimentAnalysis
    recommendation: Recommendation
    selection: Any = None


# ---------------------------------------------------------------------------
# ExperimentManager
# ---------------------------------------------------------------------------


class ExperimentManager:
    """Creates, advances and analyzes experiments."""

    def __init__(
        self,
        analyzers: Mapping[Any, StatisticalAnalyzer] | None = None,
        *,
        outbox: EventOutbox | None = None,
        similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        baseline_rate: float = DEFAULT_BASELINE_RATE,
        daily_traffic: int = DEFAULT_DAILY_TRAFFIC,
        on_success: Callable[[Session, uuid.UUID], Any] | None = None,
    ) -> None:
        if analyzers is None:
            analyzers = build_default_analyzers()
        for method, analyzer in analyzers.items():
            if analyzer.method != method:
                raise ValueError(f"Analyzer {type(analyzer).__name__} registered under {method.value}")
        self.analyzers = dict(analyzers)
        self.outbox = outbox or EventOutbox()
        self.similarity_threshold = similarity_threshold
        self.baseline_rate = baseline_rate
        self.daily_traffic = daily_traffic
        self.on_success = on_success

    # ---- creation -------------------------------------------------------

    def create(
        self,
        db: Session,
        *,
        name: str,
        control: VariantSpec,
        test: VariantSpec,
        config: ExperimentConfig | None = None,
        ad_group_id: Any = None,
        hypothesis: str | None = None,
    ) -> Experiment:
        config = (config or ExperimentConfig()).validate()
        if config.statistical_method not in self.analyzers:
            raise InvalidConfigurationError(
                [f"No analyzer registered for {config.statistical_method.value}"]
            )
        control_creative = require(db, Creative, control.creative_id, "Creative")
        test_creative = require(db, Creative, test.creative_id, "Creative")
        group_id = require(db, AdGroup, ad_group_id, "Ad group").id if ad_group_id else None

        control_content = control.content or control_creative.content_json
        test_content = test.content or test_creative.content_json
        similarity = jaccard_similarity(variant_tokens(control_content), variant_tokens(test_content))
        errors: list[str] = []
        if control_creative.id == test_creative.id:
            errors.append("Control and test variants must use different creatives")
        if similarity >= self.similarity_threshold:
            errors.append(
                f"Variants are too similar ({similarity:.2f} >= {self.similarity_threshold:.2f})"
            )
        if errors:
            raise InvalidConfigurationError(errors, {"similarity": round(similarity, 4)})

        total, duration = planned_sample(config, self.baseline_rate, self.daily_traffic)
        if duration > config.max_duration_days:
            logger.warning(
                "Experiment %r needs ~%d days, beyond its %d day maximum",
                name,
                duration,
                config.max_duration_days,
            )

        experiment = Experiment(
            name=name,
            ad_group_id=group_id,
            test_type=config.test_type.value,
            statistical_method=config.statistical_method.value,
            primary_metric=config.primary_metric.value,
            status=ExperimentStatus.PLANNING.value,
            hypothesis=hypothesis,
            config_json=config.to_dict(),
            required_sample_size=total,
            estimated_duration_days=duration,
        )
        experiment.variants = [
            ExperimentVariant(
                role=VariantRole.CONTROL.value,
                name=control.name,
                creative_id=control_creative.id,
                traffic_percent=config.control_percent,
                content_json=dict(control_content or {}),
            ),
            ExperimentVariant(
                role=VariantRole.TEST.value,
                name=test.name,
                creative_id=test_creative.id,
                traffic_percent=config.test_percent,
                content_json=dict(test_content or {}),
            ),
        ]
        experiment.transitions.append(
            ExperimentStatusTransition(to_status=ExperimentStatus.PLANNING.value, reason="created")
        )
        with store_guard(db, "create experiment"):
            db.add(experiment)
            db.commit()
            db.refresh(experiment)
        logger.info(
            "Created experiment %s (%s, %d samples over ~%d days)",
            experiment.id,
            config.primary_metric.value,
            total,
            duration,
        )
        return experiment

    # ---- lifecycle ------------------------------------------------------

    def get(self, db: Session, experiment_id: Any) -> Experiment:
        return require(db, Experiment, experiment_id, "Experiment")

    def list_experiments(self, db: Session, status: ExperimentStatus | str | None = None) -> list[Experiment]:
        query = select(Experiment).order_by(Experiment.created_at.desc())
        if status is not None:
            query = query.where(Experiment.status == ExperimentStatus(status).value)
        with store_guard(db, "list experiments"):
            return list(db.execute(query).scalars().all())

    def _transition(
        self,
        experiment: Experiment,
        target: ExperimentStatus,
        reason: str | None = None,
    ) -> None:
        current = ExperimentStatus(experiment.status)
        if target not in TRANSITIONS[current]:
            raise InvalidTransitionError(current.value, target.value)
        experiment.status = target.value
        experiment.transitions.append(
            ExperimentStatusTransition(
                from_status=current.value,
                to_status=target.value,
                reason=reason,
            )
        )

    def _commit(self, db: Session, experiment: Experiment, operation: str) -> Experiment:
        with store_guard(db, operation):
            db.commit()
            db.refresh(experiment)
        logger.info("Experiment %s is now %s", experiment.id, experiment.status)
        return experiment

    def mark_ready(self, db: Session, experiment_id: Any) -> Experiment:
        experiment = self.get(db, experiment_id)
        ExperimentConfig.from_dict(experiment.config_json).validate()
        self._transition(experiment, ExperimentStatus.READY, "configuration validated")
        return self._commit(db, experiment, "mark experiment ready")

    def start(self, db: Session, experiment_id: Any) -> Experiment:
        experiment = self.get(db, experiment_id)
        if experiment.status != ExperimentStatus.READY.value:
            # paused experiments come back through resume, keeping started_at
            raise InvalidTransitionError(experiment.status, ExperimentStatus.RUNNING.value)
        self._transition(experiment, ExperimentStatus.RUNNING, "started")
        now = datetime.now(timezone.utc)
        experiment.started_at = now
        for variant in experiment.variants:
            variant.active = True
            variant.activated_at = now

        self.outbox.emit(
            db,
            EXPERIMENT_VARIANTS_ACTIVATED,
            channel=PLATFORM,
            entity_type="experiment",
            entity_id=experiment.id,
            payload={
                "variants": [
                    {
                        "role": v.role,
                        "creative_id": v.creative_id,
                        "traffic_percent": v.traffic_percent,
                    }
                    for v in experiment.variants
                ],
            },
        )
        self.outbox.emit(
            db,
            EXPERIMENT_STARTED,
            channel=NOTIFICATION,
            entity_type="experiment",
            entity_id=experiment.id,
            payload={
                "name": experiment.name,
                "primary_metric": experiment.primary_metric,
                "required_sample_size": experiment.required_sample_size,
                "estimated_duration_days": experiment.estimated_duration_days,
            },
        )
        return self._commit(db, experiment, "start experiment")

    def pause(self, db: Session, experiment_id: Any, reason: str | None = None) -> Experiment:
        experiment = self.get(db, experiment_id)
        self._transition(experiment, ExperimentStatus.PAUSED, reason or "paused")
        return self._commit(db, experiment, "pause experiment")

    def resume(self, db: Session, experiment_id: Any) -> Experiment:
        experiment = self.get(db, experiment_id)
        if experiment.status != ExperimentStatus.PAUSED.value:
            raise InvalidTransitionError(experiment.status, ExperimentStatus.RUNNING.value)
        self._transition(experiment, ExperimentStatus.RUNNING, "resumed")
        return self._commit(db, experiment, "resume experiment")

    def cancel(self, db: Session, experiment_id: Any, reason: str | None = None) -> Experiment:
        experiment = self.get(db, experiment_id)
        self._transition(experiment, ExperimentStatus.CANCELLED, reason or "cancelled")
        experiment.ended_at = datetime.now(timezone.utc)
        for variant in experiment.variants:
            variant.active = False
        return self._commit(db, experiment, "cancel experiment")

    # ---- analysis -------------------------------------------------------

    def _arms(
        self, db: Session, experiment: Experiment, today: date
    ) -> tuple[ArmStats, ArmStats, int]:
        by_role = {VariantRole(v.role): v for v in experiment.variants}
        control = by_role[VariantRole.CONTROL]
        test = by_role[VariantRole.TEST]
        if experiment.started_at is None:
            return (
                _arm_stats(VariantRole.CONTROL, control.creative_id, []),
                _arm_stats(VariantRole.TEST, test.creative_id, []),
                0,
            )

        start = experiment.started_at.date()
        end = experiment.ended_at.date() if experiment.ended_at else today
        daily = load_daily_metrics_many(
            db, [control.creative_id, test.creative_id], start=start, end=end
        )
        duration = max((end - start).days + 1, 0)
        return (
            _arm_stats(VariantRole.CONTROL, control.creative_id, daily.get(control.creative_id, [])),
            _arm_stats(VariantRole.TEST, test.creative_id, daily.get(test.creative_id, [])),
            duration,
        )

    def compute_analysis(
        self, db: Session, experiment: Experiment, today: date | None = None
    ) -> ExperimentAnalysis:
        """Statistical read of the experiment; does not write anything."""
        config = ExperimentConfig.from_dict(experiment.config_json)
        analyzer = self.analyzers.get(config.statistical_method)
        if analyzer is None:
            raise InvalidConfigurationError(
                [f"No analyzer registered for {config.statistical_method.value}"]
            )
        today = today or date.today()
        control, test, duration = self._arms(db, experiment, today)

        total = control.sample_size + test.sample_size
        required = max(experiment.required_sample_size, 1)
        fraction = min(total / required, 1.0)
        primary = analyzer.compare(
            config.primary_metric, control, test, config, information_fraction=fraction
        )
        secondary = tuple(
            analyzer.compare(metric, control, test, config, information_fraction=fraction)
            for metric in config.secondary_metrics
            if metric != config.primary_metric
        )
        return ExperimentAnalysis(
            experiment_id=str(experiment.id),
            analyzed_at=datetime.now(timezone.utc),
            method=config.statistical_method,
            control=control,
            test=test,
            primary=primary,
            secondary=secondary,
            bayesian=analyzer.posterior(config.primary_metric, control, test, config),
            sequential=analyzer.boundary(config, fraction),
            power=self._power(experiment, config, control, test, duration),
            duration_days=duration,
        )

    def _power(
        self,
        experiment: Experiment,
        config: ExperimentConfig,
        control: ArmStats,
        test: ArmStats,
        duration: int,
    ) -> PowerAnalysis:
        metric = config.primary_metric
        baseline = self.baseline_rate
        per_arm = min(control.sample_size, test.sample_size)
        if metric.is_rate:
            observed = metric_value(metric, control)
            baseline = observed if observed > 0 else baseline
            per_arm = min(rate_counts(metric, control)[1], rate_counts(metric, test)[1])

        total = control.sample_size + test.sample_size
        additional = max(experiment.required_sample_size - total, 0)
        days_remaining: int | None = None
        if additional == 0:
            days_remaining = 0
        elif duration > 0 and total > 0:
            days_remaining = math.ceil(additional / (total / duration))
        return PowerAnalysis(
            required_sample_size=experiment.required_sample_size,
            current_sample_size=total,
            achieved_power=achieved_power(
                baseline, config.min_detectable_effect, per_arm, config.significance_level
            ),
            additional_sample_needed=additional,
            estimated_days_remaining=days_remaining,
        )

    def _record_analysis(
        self, experiment: Experiment, analysis: ExperimentAnalysis
    ) -> Recommendation:
        recommendation = generate_recommendation(analysis.primary)
        experiment.analysis_json = analysis.as_dict()
        experiment.recommendation_json = recommendation.as_dict()
        experiment.last_analyzed_at = analysis.analyzed_at
        return recommendation

    def analyze(self, db: Session, experiment_id: Any, today: date | None = None) -> ExperimentAnalysis:
        experiment = self.get(db, experiment_id)
        analysis = self.compute_analysis(db, experiment, today)
        self._record_analysis(experiment, analysis)
        with store_guard(db, "store experiment analysis"):
            db.commit()
        logger.info(
            "Analyzed experiment %s: %s %+.2f%% (p=%.4f)",
            experiment.id,
            analysis.primary.metric.value,
            analysis.primary.relative_change * 100,
            analysis.primary.p_value,
        )
        return analysis

    def check_early_stopping(
        self, db: Session, experiment_id: Any, today: date | None = None
    ) -> EarlyStoppingDecision:
        experiment = self.get(db, experiment_id)
        config = ExperimentConfig.from_dict(experiment.config_json)
        analysis = self.analyze(db, experiment.id, today)
        decision = evaluate_stopping_rules(analysis, config)
        if decision.should_stop:
            logger.warning(
                "Experiment %s should stop early: %s (%s)",
                experiment.id,
                decision.reason.value if decision.reason else None,
                decision.message,
            )
        return decision

    # ---- completion -----------------------------------------------------

    def stop(
        self,
        db: Session,
        experiment_id: Any,
        reason: StopReason | str | None = None,
        today: date | None = None,
    ) -> StopResult:
        experiment = self.get(db, experiment_id)
        current = ExperimentStatus(experiment.status)
        if ExperimentStatus.COMPLETED not in TRANSITIONS[current]:
            raise InvalidTransitionError(current.value, ExperimentStatus.COMPLETED.value)

        analysis = self.compute_analysis(db, experiment, today)
        recommendation = self._record_analysis(experiment, analysis)
        if reason is None:
            stop_reason = (
                StopReason.SUCCESS
                if recommendation.action == RecommendedAction.STOP_SUCCESS
                else StopReason.INCONCLUSIVE
            )
        else:
            stop_reason = StopReason(reason)

        self._transition(experiment, ExperimentStatus.COMPLETED, stop_reason.value)
        experiment.stop_reason = stop_reason.value
        experiment.ended_at = datetime.now(timezone.utc)
        for variant in experiment.variants:
            variant.active = False
        self.outbox.emit(
            db,
            EXPERIMENT_STOPPED,
            channel=NOTIFICATION,
            entity_type="experiment",
            entity_id=experiment.id,
            payload={
                "stop_reason": stop_reason,
                "recommendation": recommendation.as_dict(),
                "primary": analysis.primary.as_dict(),
            },
        )
        self._commit(db, experiment, "stop experiment")

        selection = None
        if stop_reason == StopReason.SUCCESS and self.on_success is not None:
            selection = self.on_success(db, as_uuid(experiment.id))
        return StopResult(
            experiment=experiment,
            analysis=analysis,
            recommendation=recommendation,
            selection=selection,
        )
