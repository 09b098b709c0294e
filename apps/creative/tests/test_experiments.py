"""Tests for experiment configuration, statistics, stopping rules and the ExperimentManager."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from creative_engine.exceptions import InvalidConfigurationError, InvalidTransitionError, NotFoundError
from creative_engine.models import Experiment
from creative_engine.services.experimentation import (
    TRANSITIONS,
    ArmStats,
    BayesianAnalyzer,
    EarlyStopReason,
    ExperimentAnalysis,
    ExperimentConfig,
    ExperimentManager,
    ExperimentStatus,
    FrequentistAnalyzer,
    Metric,
    MetricResult,
    RecommendedAction,
    SequentialAnalyzer,
    StatisticalMethod,
    StopReason,
    VariantRole,
    VariantSpec,
    evaluate_stopping_rules,
    generate_recommendation,
    jaccard_similarity,
    required_sample_size,
    variant_tokens,
)
from creative_engine.services.experimentation.statistics import obrien_fleming_alpha
from creative_engine.services.outbox import NOTIFICATION, PLATFORM, EventOutbox
from tests.conftest import (
    add_arm_snapshots,
    backdate_start,
    make_ad_group,
    make_creative,
    make_variant_creatives,
    setup_test_db,
)


def _arm(role: VariantRole, clicks: int, *, spend: float = 500.0, conversions: int = 30) -> ArmStats:
    return ArmStats(
        role=role,
        creative_id=role.value.lower(),
        sample_size=20_000,
        clicks=clicks,
        conversions=conversions,
        spend=spend,
        revenue=2_000.0,
        days=10,
    )


def _result(
    relative_change: float,
    *,
    p_value: float = 0.02,
    significant: bool = True,
    practical: bool = True,
    metric: Metric = Metric.CTR,
) -> MetricResult:
    return MetricResult(
        metric=metric,
        control_value=0.05,
        test_value=0.05 * (1 + relative_change),
        relative_change=relative_change,
        absolute_change=0.05 * relative_change,
        p_value=p_value,
        confidence_interval=(0.0, 0.01),
        statistically_significant=significant,
        practically_significant=practical,
    )


def _analysis(primary: MetricResult, *, test_spend: float = 500.0, per_arm: int = 20_000) -> ExperimentAnalysis:
    control = ArmStats(VariantRole.CONTROL, "c", sample_size=per_arm, spend=500.0)
    test = ArmStats(VariantRole.TEST, "t", sample_size=per_arm, spend=test_spend)
    return ExperimentAnalysis(
        experiment_id="exp",
        analyzed_at=datetime.now(timezone.utc),
        method=StatisticalMethod.FREQUENTIST,
        control=control,
        test=test,
        primary=primary,
        duration_days=14,
    )


def _create(db, manager: ExperimentManager | None = None, config: ExperimentConfig | None = None):
    group = make_ad_group(db)
    control, test = make_variant_creatives(db, group)
    manager = manager or ExperimentManager()
    experiment = manager.create(
        db,
        name="Headline refresh",
        control=VariantSpec(name="Control", creative_id=control.id),
        test=VariantSpec(name="Challenger", creative_id=test.id),
        config=config,
        ad_group_id=group.id,
        hypothesis="Urgency copy lifts CTR",
    )
    return manager, experiment, control, test


def _running(db, **snapshot_kwargs):
    manager, experiment, control, test = _create(db)
    manager.mark_ready(db, experiment.id)
    manager.start(db, experiment.id)
    backdate_start(db, experiment)
    add_arm_snapshots(db, control, test, **snapshot_kwargs)
    return manager, experiment


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class TestExperimentConfig:
    def test_defaults_are_valid(self):
        assert ExperimentConfig().errors() == []

    def test_split_must_sum_to_100(self):
        errors = ExperimentConfig(control_percent=60.0, test_percent=50.0).errors()
        assert errors == ["Traffic split must sum to 100"]

    def test_each_arm_between_10_and_90(self):
        errors = ExperimentConfig(control_percent=5.0, test_percent=95.0).errors()
        assert "control traffic percent must be between 10 and 90" in errors
        assert "test traffic percent must be between 10 and 90" in errors

    def test_max_duration_must_exceed_min(self):
        errors = ExperimentConfig(min_duration_days=14, max_duration_days=14).errors()
        assert errors == ["max_duration_days must be greater than min_duration_days"]

    def test_volume_metric_cannot_be_primary(self):
        errors = ExperimentConfig(primary_metric=Metric.IMPRESSIONS).errors()
        assert errors == ["primary_metric IMPRESSIONS is not supported"]

    def test_validate_raises_with_all_errors(self):
        config = ExperimentConfig(power=0.5, significance_level=0.2)
        with pytest.raises(InvalidConfigurationError) as exc_info:
            config.validate()
        assert len(exc_info.value.errors) == 2

    def test_stored_config_reloads(self):
        config = ExperimentConfig(
            statistical_method=StatisticalMethod.BAYESIAN,
            primary_metric=Metric.CVR,
            secondary_metrics=(Metric.CTR, Metric.CPA),
        )
        assert ExperimentConfig.from_dict(config.to_dict()) == config

    def test_unknown_metric_in_stored_config(self):
        with pytest.raises(InvalidConfigurationError):
            ExperimentConfig.from_dict({"primary_metric": "BOUNCE_RATE"})


class TestTransitions:
    def test_terminal_states_have_no_exits(self):
        assert TRANSITIONS[ExperimentStatus.COMPLETED] == frozenset()
        assert TRANSITIONS[ExperimentStatus.CANCELLED] == frozenset()

    def test_only_running_can_complete(self):
        completing = [s for s, targets in TRANSITIONS.items() if ExperimentStatus.COMPLETED in targets]
        assert completing == [ExperimentStatus.RUNNING]

    def test_pause_is_reversible(self):
        assert ExperimentStatus.PAUSED in TRANSITIONS[ExperimentStatus.RUNNING]
        assert ExperimentStatus.RUNNING in TRANSITIONS[ExperimentStatus.PAUSED]


class TestSimilarity:
    def test_tokens_cover_nested_text(self):
        content = {"headlines": ["Fast Shipping!"], "extra": {"cta": ["Order"]}, "count": 3}
        assert variant_tokens(content) == {"fast", "shipping", "order"}

    def test_jaccard(self):
        assert jaccard_similarity({"a", "b"}, {"b", "c"}) == pytest.approx(1 / 3)
        assert jaccard_similarity(set(), set()) == 0.0


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


class TestSampleSize:
    def test_default_plan(self):
        per_arm = required_sample_size(0.05, 0.1, 0.05, 0.8)
        assert 31_000 < per_arm < 31_500

    def test_larger_effect_needs_fewer_samples(self):
        small = required_sample_size(0.05, 0.1, 0.05, 0.8)
        large = required_sample_size(0.05, 0.2, 0.05, 0.8)
        assert large < small

    def test_more_power_needs_more_samples(self):
        assert required_sample_size(0.05, 0.1, 0.05, 0.9) > required_sample_size(0.05, 0.1, 0.05, 0.8)


class TestAnalyzers:
    def test_frequentist_ctr_lift(self):
        result = FrequentistAnalyzer().compare(
            Metric.CTR,
            _arm(VariantRole.CONTROL, 1_000),
            _arm(VariantRole.TEST, 1_100),
            ExperimentConfig(),
        )
        assert result.relative_change == pytest.approx(0.1)
        assert result.p_value == pytest.approx(0.025, abs=0.003)
        assert result.statistically_significant is True
        assert result.practically_significant is True
        low, high = result.confidence_interval
        assert low < 0.005 < high

    def test_identical_arms_not_significant(self):
        result = FrequentistAnalyzer().compare(
            Metric.CTR,
            _arm(VariantRole.CONTROL, 1_000),
            _arm(VariantRole.TEST, 1_000),
            ExperimentConfig(),
        )
        assert result.relative_change == 0.0
        assert result.p_value == pytest.approx(1.0)
        assert result.statistically_significant is False

    def test_cpa_improvement_has_positive_lift(self):
        result = FrequentistAnalyzer().compare(
            Metric.CPA,
            _arm(VariantRole.CONTROL, 1_000, conversions=30),
            _arm(VariantRole.TEST, 1_000, conversions=40),
            ExperimentConfig(primary_metric=Metric.CPA),
        )
        assert result.relative_change < 0
        assert result.lift > 0
        # No daily series, so the t-test has nothing to work with
        assert result.p_value == 1.0

    def test_sequential_boundary_is_stricter_early(self):
        control = _arm(VariantRole.CONTROL, 1_000)
        test = _arm(VariantRole.TEST, 1_100)
        config = ExperimentConfig(statistical_method=StatisticalMethod.SEQUENTIAL)
        analyzer = SequentialAnalyzer()

        early = analyzer.compare(Metric.CTR, control, test, config, information_fraction=0.25)
        final = analyzer.compare(Metric.CTR, control, test, config, information_fraction=1.0)

        assert early.statistically_significant is False
        assert final.statistically_significant is True
        assert obrien_fleming_alpha(0.05, 1.0) == pytest.approx(0.05)
        assert analyzer.boundary(config, 0.25)["alpha_spent"] < 0.001

    def test_bayesian_posterior_is_deterministic(self):
        control = _arm(VariantRole.CONTROL, 1_000)
        test = _arm(VariantRole.TEST, 1_100)
        config = ExperimentConfig(statistical_method=StatisticalMethod.BAYESIAN)

        first = BayesianAnalyzer().posterior(Metric.CTR, control, test, config)
        second = BayesianAnalyzer().posterior(Metric.CTR, control, test, config)

        assert first == second
        assert first.probability_test_better > 0.95
        assert first.expected_loss_test < first.expected_loss_control
        result = BayesianAnalyzer().compare(Metric.CTR, control, test, config)
        assert result.statistically_significant is True


class TestRecommendation:
    def test_significant_and_practical_stops(self):
        rec = generate_recommendation(_result(0.1))
        assert rec.action == RecommendedAction.STOP_SUCCESS
        assert rec.winner == VariantRole.TEST
        assert rec.confidence == pytest.approx(0.98)

    def test_control_can_win(self):
        rec = generate_recommendation(_result(-0.1))
        assert rec.winner == VariantRole.CONTROL

    def test_small_significant_effect_continues(self):
        rec = generate_recommendation(_result(0.01, practical=False))
        assert rec.action == RecommendedAction.CONTINUE
        assert rec.winner is None

    def test_not_significant_continues(self):
        rec = generate_recommendation(_result(0.2, p_value=0.3, significant=False))
        assert rec.action == RecommendedAction.CONTINUE


class TestStoppingRules:
    def test_guardrail_wins_over_success(self):
        decision = evaluate_stopping_rules(_analysis(_result(-0.3)), ExperimentConfig())
        assert decision.should_stop is True
        assert decision.reason == EarlyStopReason.GUARDRAIL_VIOLATION
        assert len(decision.checks) == 4

    def test_spend_guardrail(self):
        decision = evaluate_stopping_rules(
            _analysis(_result(0.1), test_spend=1_000.0), ExperimentConfig()
        )
        assert decision.reason == EarlyStopReason.GUARDRAIL_VIOLATION
        assert "spend" in decision.message.lower()

    def test_early_success(self):
        decision = evaluate_stopping_rules(_analysis(_result(0.1)), ExperimentConfig())
        assert decision.reason == EarlyStopReason.EARLY_SUCCESS

    def test_early_success_can_be_disabled(self):
        config = ExperimentConfig(early_stopping_enabled=False)
        decision = evaluate_stopping_rules(_analysis(_result(0.1)), config)
        assert decision.should_stop is False
        assert decision.message == "Continue experiment"

    def test_futility_after_minimum_sample(self):
        primary = _result(0.005, p_value=0.8, significant=False, practical=False)
        decision = evaluate_stopping_rules(_analysis(primary), ExperimentConfig())
        assert decision.reason == EarlyStopReason.FUTILITY

    def test_futility_waits_for_minimum_sample(self):
        primary = _result(0.0, p_value=1.0, significant=False, practical=False)
        decision = evaluate_stopping_rules(_analysis(primary, per_arm=200), ExperimentConfig())
        assert decision.should_stop is False


# ---------------------------------------------------------------------------
# ExperimentManager against the store
# ---------------------------------------------------------------------------


class TestCreateExperiment:
    def test_create_plans_sample(self):
        _, Session = setup_test_db()
        db = Session()
        _, experiment, control, test = _create(db)

        assert experiment.status == "PLANNING"
        assert experiment.required_sample_size == 2 * required_sample_size(0.05, 0.1, 0.05, 0.8)
        assert experiment.estimated_duration_days == -(-experiment.required_sample_size // 1000)
        roles = {v.role: v for v in experiment.variants}
        assert roles["CONTROL"].creative_id == control.id
        assert roles["TEST"].traffic_percent == 50.0
        assert roles["TEST"].content_json["headlines"] == ["Summer sale ends soon"]
        assert [t.to_status for t in experiment.transitions] == ["PLANNING"]
        db.close()

    def test_same_creative_rejected(self):
        _, Session = setup_test_db()
        db = Session()
        group = make_ad_group(db)
        creative = make_creative(db, group)

        with pytest.raises(InvalidConfigurationError) as exc_info:
            ExperimentManager().create(
                db,
                name="Self test",
                control=VariantSpec("A", creative.id),
                test=VariantSpec("B", creative.id),
            )
        assert "Control and test variants must use different creatives" in exc_info.value.errors
        db.close()

    def test_near_duplicate_copy_rejected(self):
        _, Session = setup_test_db()
        db = Session()
        group = make_ad_group(db)
        a = make_creative(db, group)
        b = make_creative(db, group)

        with pytest.raises(InvalidConfigurationError) as exc_info:
            ExperimentManager().create(
                db, name="Twins", control=VariantSpec("A", a.id), test=VariantSpec("B", b.id)
            )
        assert exc_info.value.details["similarity"] == 1.0
        assert db.execute(select(Experiment)).scalars().all() == []
        db.close()

    def test_explicit_content_overrides_creative_copy(self):
        _, Session = setup_test_db()
        db = Session()
        group = make_ad_group(db)
        a = make_creative(db, group)
        b = make_creative(db, group)

        experiment = ExperimentManager().create(
            db,
            name="Override",
            control=VariantSpec("A", a.id),
            test=VariantSpec("B", b.id, {"headlines": ["Limited stock clearance"]}),
        )
        assert experiment.status == "PLANNING"
        db.close()

    def test_invalid_config_writes_nothing(self):
        _, Session = setup_test_db()
        db = Session()
        with pytest.raises(InvalidConfigurationError):
            _create(db, config=ExperimentConfig(control_percent=70.0, test_percent=40.0))
        assert db.execute(select(Experiment)).scalars().all() == []
        db.close()

    def test_unknown_creative(self):
        _, Session = setup_test_db()
        db = Session()
        with pytest.raises(NotFoundError):
            ExperimentManager().create(
                db,
                name="Ghost",
                control=VariantSpec("A", uuid.uuid4()),
                test=VariantSpec("B", uuid.uuid4()),
            )
        db.close()


class TestLifecycle:
    def test_full_sequence_is_recorded(self):
        _, Session = setup_test_db()
        db = Session()
        manager, experiment = _running(db)

        manager.pause(db, experiment.id, "budget review")
        manager.resume(db, experiment.id)
        result = manager.stop(db, experiment.id)

        assert result.experiment.status == "COMPLETED"
        assert [t.to_status for t in result.experiment.transitions] == [
            "PLANNING",
            "READY",
            "RUNNING",
            "PAUSED",
            "RUNNING",
            "COMPLETED",
        ]
        assert result.experiment.transitions[3].reason == "budget review"
        assert all(not v.active for v in result.experiment.variants)
        db.close()

    def test_start_activates_variants_and_emits(self):
        _, Session = setup_test_db()
        db = Session()
        manager, experiment, *_ = _create(db)
        manager.mark_ready(db, experiment.id)

        started = manager.start(db, experiment.id)

        assert started.status == "RUNNING"
        assert started.started_at is not None
        assert all(v.active for v in started.variants)
        outbox = EventOutbox()
        assert [e.event_type for e in outbox.pending(db, PLATFORM)] == ["experiment.variants_activated"]
        assert [e.event_type for e in outbox.pending(db, NOTIFICATION)] == ["experiment.started"]
        db.close()

    def test_cannot_start_from_planning(self):
        _, Session = setup_test_db()
        db = Session()
        manager, experiment, *_ = _create(db)

        with pytest.raises(InvalidTransitionError) as exc_info:
            manager.start(db, experiment.id)
        assert exc_info.value.current == "PLANNING"
        assert exc_info.value.requested == "RUNNING"
        db.close()

    def test_cannot_start_from_paused(self):
        _, Session = setup_test_db()
        db = Session()
        manager, experiment = _running(db)
        manager.pause(db, experiment.id)
        started_at = experiment.started_at

        with pytest.raises(InvalidTransitionError) as exc_info:
            manager.start(db, experiment.id)

        assert exc_info.value.current == "PAUSED"
        assert experiment.status == "PAUSED"
        assert experiment.started_at == started_at
        assert [t.to_status for t in experiment.transitions] == [
            "PLANNING",
            "READY",
            "RUNNING",
            "PAUSED",
        ]
        assert len(EventOutbox().pending(db, PLATFORM)) == 1
        db.close()

    def test_resume_keeps_collected_traffic(self):
        _, Session = setup_test_db()
        db = Session()
        manager, experiment = _running(db)
        started_at = experiment.started_at

        manager.pause(db, experiment.id)
        resumed = manager.resume(db, experiment.id)

        assert resumed.status == "RUNNING"
        assert resumed.started_at == started_at
        assert len(EventOutbox().pending(db, PLATFORM)) == 1
        db.close()

    def test_cannot_resume_unless_paused(self):
        _, Session = setup_test_db()
        db = Session()
        manager, experiment, *_ = _create(db)
        manager.mark_ready(db, experiment.id)

        with pytest.raises(InvalidTransitionError):
            manager.resume(db, experiment.id)
        assert experiment.started_at is None
        db.close()

    @pytest.mark.parametrize("status", ["COMPLETED", "CANCELLED"])
    def test_cannot_start_from_terminal(self, status):
        _, Session = setup_test_db()
        db = Session()
        manager, experiment = _running(db)
        if status == "COMPLETED":
            manager.stop(db, experiment.id)
        else:
            manager.cancel(db, experiment.id)

        with pytest.raises(InvalidTransitionError):
            manager.start(db, experiment.id)
        assert experiment.status == status
        db.close()

    def test_cannot_stop_unless_running(self):
        _, Session = setup_test_db()
        db = Session()
        manager, experiment, *_ = _create(db)
        manager.mark_ready(db, experiment.id)

        with pytest.raises(InvalidTransitionError):
            manager.stop(db, experiment.id)
        db.close()

    def test_cancel_from_paused(self):
        _, Session = setup_test_db()
        db = Session()
        manager, experiment = _running(db)
        manager.pause(db, experiment.id)

        cancelled = manager.cancel(db, experiment.id, "creative pulled")

        assert cancelled.status == "CANCELLED"
        assert cancelled.ended_at is not None
        with pytest.raises(InvalidTransitionError):
            manager.resume(db, experiment.id)
        db.close()

    def test_completed_is_terminal(self):
        _, Session = setup_test_db()
        db = Session()
        manager, experiment = _running(db)
        manager.stop(db, experiment.id)

        with pytest.raises(InvalidTransitionError):
            manager.cancel(db, experiment.id)
        db.close()

    def test_list_by_status(self):
        _, Session = setup_test_db()
        db = Session()
        manager, running = _running(db)
        _create(db, manager)

        assert [e.id for e in manager.list_experiments(db, ExperimentStatus.RUNNING)] == [running.id]
        assert len(manager.list_experiments(db, "PLANNING")) == 1
        assert len(manager.list_experiments(db)) == 2
        db.close()


class TestAnalysis:
    def test_not_started_has_no_data(self):
        _, Session = setup_test_db()
        db = Session()
        manager, experiment, *_ = _create(db)

        analysis = manager.analyze(db, experiment.id)

        assert analysis.total_sample_size == 0
        assert analysis.primary.p_value == 1.0
        assert analysis.duration_days == 0
        db.close()

    def test_analysis_is_stored(self):
        _, Session = setup_test_db()
        db = Session()
        manager, experiment = _running(db)

        analysis = manager.analyze(db, experiment.id)

        assert analysis.control.sample_size == 20_000
        assert analysis.test.clicks == 1_100
        assert analysis.primary.relative_change == pytest.approx(0.1)
        assert analysis.power.additional_sample_needed == experiment.required_sample_size - 40_000
        db.refresh(experiment)
        assert experiment.analysis_json["primary"]["metric"] == "CTR"
        assert experiment.recommendation_json["action"] == "STOP_SUCCESS"
        assert experiment.last_analyzed_at is not None
        db.close()

    def test_early_stopping_success(self):
        _, Session = setup_test_db()
        db = Session()
        manager, experiment = _running(db)

        decision = manager.check_early_stopping(db, experiment.id)

        assert decision.should_stop is True
        assert decision.reason == EarlyStopReason.EARLY_SUCCESS
        db.close()

    def test_early_stopping_futility(self):
        _, Session = setup_test_db()
        db = Session()
        manager, experiment = _running(db, test_clicks=100)

        decision = manager.check_early_stopping(db, experiment.id)

        assert decision.reason == EarlyStopReason.FUTILITY
        db.close()


class TestStop:
    def test_success_stop(self):
        _, Session = setup_test_db()
        db = Session()
        manager, experiment = _running(db)

        result = manager.stop(db, experiment.id)

        assert result.recommendation.action == RecommendedAction.STOP_SUCCESS
        assert result.recommendation.winner == VariantRole.TEST
        assert result.experiment.stop_reason == "SUCCESS"
        assert result.experiment.ended_at is not None
        assert result.selection is None
        events = EventOutbox().pending(db, NOTIFICATION)
        stopped = [e for e in events if e.event_type == "experiment.stopped"]
        assert stopped[0].payload_json["stop_reason"] == "SUCCESS"
        db.close()

    def test_flat_result_is_inconclusive(self):
        _, Session = setup_test_db()
        db = Session()
        manager, experiment = _running(db, test_clicks=100)

        result = manager.stop(db, experiment.id)

        assert result.experiment.stop_reason == "INCONCLUSIVE"
        assert result.recommendation.action == RecommendedAction.CONTINUE
        db.close()

    def test_explicit_reason_wins(self):
        _, Session = setup_test_db()
        db = Session()
        manager, experiment = _running(db)

        result = manager.stop(db, experiment.id, StopReason.MANUAL)

        assert result.experiment.stop_reason == "MANUAL"
        db.close()

    def test_success_hook_is_called(self):
        _, Session = setup_test_db()
        db = Session()
        calls = []
        manager = ExperimentManager(on_success=lambda session, eid: calls.append(eid) or "selected")
        _, experiment, control, test = _create(db, manager)
        manager.mark_ready(db, experiment.id)
        manager.start(db, experiment.id)
        backdate_start(db, experiment)
        add_arm_snapshots(db, control, test)

        result = manager.stop(db, experiment.id)

        assert calls == [experiment.id]
        assert result.selection == "selected"
        db.close()
