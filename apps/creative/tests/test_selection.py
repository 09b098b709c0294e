"""Tests for winner selection, rollout plans and post-implementation monitoring."""

from __future__ import annotations

import uuid
from datetime import date, timedelta

import pytest

from creative_engine.exceptions import InvalidConfigurationError, InvalidTransitionError, NotFoundError
from creative_engine.services.experimentation import ExperimentManager, Metric, VariantSpec
from creative_engine.services.outbox import NOTIFICATION, PLATFORM, EventOutbox
from creative_engine.services.selection import (
    ROLLOUT_TEMPLATES,
    Decision,
    ImplementationStatus,
    MonitoringAdvice,
    RiskLevel,
    RiskTolerance,
    RolloutStrategy,
    SelectionCriteria,
    Winner,
    WinnerSelector,
    build_experiment_services,
    compare_live_metrics,
    decide,
    monitoring_advice,
    monitoring_schedule,
    rollout_plan,
    selection_confidence,
)
from creative_engine.services.selection.schemas_internal import (
    BusinessValidation,
    PerformanceProjection,
    RiskAssessment,
    SelectionAnalysis,
    StatisticalValidation,
)
from creative_engine.services.selection.selector import risk_level
from tests.conftest import (
    add_arm_snapshots,
    backdate_start,
    make_ad_group,
    make_variant_creatives,
    setup_test_db,
)

START = date(2026, 10, 1)


def _selection(
    *,
    statistical: bool = True,
    business: bool = True,
    sample_ok: bool = True,
    duration_ok: bool = True,
    risk: RiskLevel = RiskLevel.LOW,
    lift: float = 0.1,
) -> SelectionAnalysis:
    return SelectionAnalysis(
        statistical=StatisticalValidation(
            primary_metric_valid=statistical,
            secondary_metrics_valid=True,
            sample_size_adequate=sample_ok,
            test_duration_adequate=duration_ok,
            confidence_threshold_met=statistical,
        ),
        business=BusinessValidation(
            practical_significance_met=business,
            secondary_metrics_acceptable=True,
            budget_constraints_met=True,
            roi_requirement_met=business,
            quality_gates_passed=True,
        ),
        risk=RiskAssessment(level=risk),
        projection=PerformanceProjection(
            expected_lift=lift,
            revenue=0.0,
            cost=0.0,
            conversions=0.0,
            confidence_interval=(0.0, 0.0),
        ),
    )


def _running_experiment(db, manager: ExperimentManager, **snapshot_kwargs):
    group = make_ad_group(db)
    control, test = make_variant_creatives(db, group)
    experiment = manager.create(
        db,
        name="Headline refresh",
        control=VariantSpec("Control", control.id),
        test=VariantSpec("Challenger", test.id),
        ad_group_id=group.id,
    )
    manager.mark_ready(db, experiment.id)
    manager.start(db, experiment.id)
    backdate_start(db, experiment)
    add_arm_snapshots(db, control, test, **snapshot_kwargs)
    return experiment


def _selected(db):
    """A running experiment with a clear winner and its PENDING selection."""
    selector = WinnerSelector()
    experiment = _running_experiment(db, selector.manager)
    return selector, experiment, selector.evaluate(db, experiment.id)


# ---------------------------------------------------------------------------
# Pure decision logic
# ---------------------------------------------------------------------------


class TestDecide:
    def test_all_gates_pass_selects_winner(self):
        decision = decide(_selection(), SelectionCriteria())
        assert decision.decision == Decision.SELECT_WINNER
        assert decision.winner == Winner.TEST
        assert decision.confidence == 1.0

    def test_negative_lift_selects_control(self):
        decision = decide(_selection(lift=-0.1), SelectionCriteria())
        assert decision.winner == Winner.CONTROL

    def test_aborted_experiment(self):
        decision = decide(_selection(), SelectionCriteria(), aborted=True)
        assert (decision.decision, decision.winner, decision.confidence) == (
            Decision.ABORT_TEST,
            Winner.NEITHER,
            0.1,
        )

    def test_thin_sample_continues(self):
        decision = decide(_selection(statistical=False, sample_ok=False), SelectionCriteria())
        assert decision.decision == Decision.CONTINUE_TEST
        assert decision.confidence == 0.5

    def test_short_test_continues(self):
        decision = decide(_selection(business=False, duration_ok=False), SelectionCriteria())
        assert decision.decision == Decision.CONTINUE_TEST

    def test_enough_data_without_effect_is_inconclusive(self):
        decision = decide(_selection(statistical=False), SelectionCriteria())
        assert decision.decision == Decision.DECLARE_INCONCLUSIVE
        assert decision.confidence == 0.3

    def test_high_risk_conservative_keeps_testing(self):
        criteria = SelectionCriteria(risk_tolerance=RiskTolerance.CONSERVATIVE)
        decision = decide(_selection(risk=RiskLevel.HIGH), criteria)
        assert decision.decision == Decision.CONTINUE_TEST
        assert decision.confidence == 0.6

    def test_high_risk_moderate_still_selects(self):
        decision = decide(_selection(risk=RiskLevel.HIGH), SelectionCriteria())
        assert decision.decision == Decision.SELECT_WINNER
        assert decision.confidence == pytest.approx(0.75)


class TestConfidenceAndRisk:
    def test_confidence_floor(self):
        selection = _selection(statistical=False, business=False, sample_ok=False, risk=RiskLevel.HIGH)
        assert selection_confidence(selection) == pytest.approx(0.15)

    def test_confidence_ceiling(self):
        assert selection_confidence(_selection()) == 1.0

    @pytest.mark.parametrize(
        "count,tolerance,expected",
        [
            (0, RiskTolerance.CONSERVATIVE, RiskLevel.LOW),
            (1, RiskTolerance.CONSERVATIVE, RiskLevel.MEDIUM),
            (2, RiskTolerance.CONSERVATIVE, RiskLevel.HIGH),
            (1, RiskTolerance.MODERATE, RiskLevel.LOW),
            (3, RiskTolerance.MODERATE, RiskLevel.HIGH),
            (3, RiskTolerance.AGGRESSIVE, RiskLevel.MEDIUM),
        ],
    )
    def test_risk_level(self, count, tolerance, expected):
        assert risk_level(count, tolerance) == expected

    def test_criteria_validation(self):
        with pytest.raises(InvalidConfigurationError) as exc_info:
            SelectionCriteria(min_confidence_level=0.5, max_fatigue_level="SEVERE").validate()
        assert len(exc_info.value.errors) == 2


# ---------------------------------------------------------------------------
# Rollout and monitoring rules
# ---------------------------------------------------------------------------


class TestRolloutPlan:
    def test_gradual_phases(self):
        phases = rollout_plan(RolloutStrategy.GRADUAL, START, Metric.CTR, (Metric.CVR,))
        assert [p.traffic_percent for p in phases] == [25, 50, 100]
        assert [p.start_date for p in phases] == [START, START + timedelta(days=3), START + timedelta(days=7)]
        assert phases[0].metrics == (Metric.CTR,)
        assert phases[1].metrics == (Metric.CTR, Metric.CVR)

    def test_every_template_ends_at_full_traffic(self):
        for strategy in ROLLOUT_TEMPLATES:
            assert rollout_plan(strategy, START, Metric.CTR)[-1].traffic_percent == 100
        assert len(rollout_plan(RolloutStrategy.IMMEDIATE, START, Metric.CTR)) == 1
        assert len(rollout_plan(RolloutStrategy.SEGMENTED, START, Metric.CTR)) == 4

    def test_monitoring_schedule(self):
        checks = monitoring_schedule(START, Metric.CTR, (Metric.CPA,), 0.1)
        assert len(checks) == 10
        assert checks[0].check_date == START + timedelta(days=1)
        assert checks[0].thresholds == {"CTR": 0.05}
        assert checks[-1].check_date == START + timedelta(weeks=4)
        assert checks[-1].metrics == (Metric.CTR, Metric.CPA)


class TestLiveMonitoring:
    def test_on_track(self):
        metrics, alerts = compare_live_metrics({"CTR": 0.05}, {"CTR": 0.052, "CVR": 0.1})
        assert list(metrics) == ["CTR"]
        assert metrics["CTR"]["variance"] == pytest.approx(0.04)
        assert alerts == []
        assert monitoring_advice(alerts) == MonitoringAdvice.CONTINUE

    def test_adverse_variance_is_critical(self):
        _, alerts = compare_live_metrics({"CTR": 0.05}, {"CTR": 0.035})
        assert alerts[0].severity == "CRITICAL"
        assert monitoring_advice(alerts) == MonitoringAdvice.ROLLBACK

    def test_large_favourable_variance_is_critical(self):
        _, alerts = compare_live_metrics({"CTR": 0.05}, {"CTR": 0.07})
        assert alerts[0].severity == "CRITICAL"
        assert alerts[0].variance == pytest.approx(0.4)
        assert "+40.0%" in alerts[0].message
        assert monitoring_advice(alerts) == MonitoringAdvice.ROLLBACK

    def test_moderate_favourable_variance_is_a_warning(self):
        _, alerts = compare_live_metrics({"CTR": 0.05}, {"CTR": 0.0575})
        assert alerts[0].severity == "WARNING"
        assert monitoring_advice(alerts) == MonitoringAdvice.CONTINUE

    def test_two_warnings_adjust(self):
        _, alerts = compare_live_metrics({"CTR": 0.05, "CVR": 0.03}, {"CTR": 0.044, "CVR": 0.0265})
        assert [a.severity for a in alerts] == ["WARNING", "WARNING"]
        assert monitoring_advice(alerts) == MonitoringAdvice.ADJUST

    def test_rising_cpa_is_adverse(self):
        metrics, alerts = compare_live_metrics({"CPA": 20.0}, {"CPA": 26.0})
        assert metrics["CPA"]["variance"] == pytest.approx(-0.3)
        assert alerts[0].severity == "CRITICAL"


# ---------------------------------------------------------------------------
# WinnerSelector against the store
# ---------------------------------------------------------------------------


class TestEvaluate:
    def test_clear_winner_is_selected(self):
        _, Session = setup_test_db()
        db = Session()
        _, experiment, record = _selected(db)

        assert record.decision == "SELECT_WINNER"
        assert record.winner == "TEST"
        assert record.confidence == 1.0
        assert record.risk_level == "LOW"
        assert record.implementation_status == "PENDING"
        assert record.recommendation_json["rollout_strategy"] == "IMMEDIATE"
        assert record.recommendation_json["traffic_allocation"] == 1.0
        assert record.result_json["expected_metrics"] == {"CTR": pytest.approx(0.055)}
        assert record.result_json["quality"]["quality_score"] == 8.0
        events = EventOutbox().pending(db, NOTIFICATION)
        assert events[-1].event_type == "winner.selected"
        assert events[-1].entity_id == str(record.id)
        db.close()

    def test_strict_confidence_blocks_selection(self):
        _, Session = setup_test_db()
        db = Session()
        selector = WinnerSelector()
        experiment = _running_experiment(db, selector.manager)

        record = selector.evaluate(db, experiment.id, SelectionCriteria(min_confidence_level=0.99))

        assert record.decision == "DECLARE_INCONCLUSIVE"
        assert record.winner == "NEITHER"
        assert record.recommendation_json["action"] == "MODIFY_TEST"
        db.close()

    def test_low_roi_blocks_selection(self):
        _, Session = setup_test_db()
        db = Session()
        selector = WinnerSelector()
        experiment = _running_experiment(db, selector.manager)

        record = selector.evaluate(db, experiment.id, SelectionCriteria(min_roi=5.0))

        assert record.decision == "DECLARE_INCONCLUSIVE"
        assert record.analysis_json["business_validation"]["roi_requirement_met"] is False
        db.close()

    def test_cancelled_experiment_is_aborted(self):
        _, Session = setup_test_db()
        db = Session()
        selector = WinnerSelector()
        experiment = _running_experiment(db, selector.manager)
        selector.manager.cancel(db, experiment.id)

        record = selector.evaluate(db, experiment.id)

        assert record.decision == "ABORT_TEST"
        assert record.confidence == 0.1
        assert record.recommendation_json["action"] == "ABORT_AND_RESTART"
        db.close()

    def test_batch_isolates_failures(self):
        _, Session = setup_test_db()
        db = Session()
        selector = WinnerSelector()
        experiment = _running_experiment(db, selector.manager)
        missing = uuid.uuid4()

        result = selector.evaluate_batch(db, [experiment.id, missing])

        assert len(result.results) == 1
        assert result.failures == [{"experiment_id": str(missing), "error": "Experiment not found"}]
        assert result.summary["total_tests"] == 1
        assert result.summary["decisions"]["SELECT_WINNER"] == 1
        assert result.summary["success_rate"] == 1.0
        db.close()


class TestImplementation:
    def test_implement_starts_rollout(self):
        _, Session = setup_test_db()
        db = Session()
        selector, experiment, record = _selected(db)

        plan = selector.implement(db, record.id)

        assert plan.strategy == RolloutStrategy.IMMEDIATE
        assert plan.selection.implementation_status == "IMPLEMENTING"
        assert plan.selection.implementation_started_at is not None
        assert len(plan.rollout) == 1
        assert len(plan.monitoring_schedule) == 10
        platform = [e for e in EventOutbox().pending(db, PLATFORM) if e.event_type == "winner.implementation_started"]
        assert len(platform) == 1
        test_creative = {v.role: str(v.creative_id) for v in experiment.variants}["TEST"]
        assert platform[0].payload_json["winner_creative_id"] == test_creative
        db.close()

    def test_strategy_override(self):
        _, Session = setup_test_db()
        db = Session()
        selector, _, record = _selected(db)

        plan = selector.implement(db, record.id, RolloutStrategy.SEGMENTED)

        assert [p.traffic_percent for p in plan.rollout] == [20, 40, 70, 100]
        db.close()

    def test_cannot_implement_twice(self):
        _, Session = setup_test_db()
        db = Session()
        selector, _, record = _selected(db)
        selector.implement(db, record.id)

        with pytest.raises(InvalidTransitionError):
            selector.implement(db, record.id)
        db.close()

    def test_cannot_implement_without_winner(self):
        _, Session = setup_test_db()
        db = Session()
        selector = WinnerSelector()
        experiment = _running_experiment(db, selector.manager, test_clicks=100)
        record = selector.evaluate(db, experiment.id)

        with pytest.raises(InvalidTransitionError) as exc_info:
            selector.implement(db, record.id)
        assert exc_info.value.current == record.decision
        db.close()

    def test_unknown_selection(self):
        _, Session = setup_test_db()
        db = Session()
        with pytest.raises(NotFoundError):
            WinnerSelector().implement(db, uuid.uuid4())
        db.close()


class TestMonitoring:
    def test_critical_drop_rolls_back(self):
        _, Session = setup_test_db()
        db = Session()
        selector, _, record = _selected(db)
        selector.implement(db, record.id)

        report = selector.monitor_implementation(db, record.id, {"CTR": 0.04})

        assert report.status == "ROLLBACK_REQUIRED"
        assert report.recommendation == MonitoringAdvice.ROLLBACK
        assert report.implementation_status == ImplementationStatus.ROLLED_BACK
        db.refresh(record)
        assert record.implementation_status == "ROLLED_BACK"
        assert record.last_monitoring_json["alerts"][0]["severity"] == "CRITICAL"
        for channel in (NOTIFICATION, PLATFORM):
            types = [e.event_type for e in EventOutbox().pending(db, channel)]
            assert "rollout.rollback_required" in types
        db.close()

    def test_on_track_completes_after_monitoring_window(self):
        _, Session = setup_test_db()
        db = Session()
        selector, _, record = _selected(db)
        selector.implement(db, record.id)

        early = selector.monitor_implementation(db, record.id, {"CTR": 0.056})
        late = selector.monitor_implementation(
            db, record.id, {"CTR": 0.056}, today=date.today() + timedelta(days=29)
        )

        assert early.status == "ON_TRACK"
        assert early.implementation_status == ImplementationStatus.IMPLEMENTING
        assert late.implementation_status == ImplementationStatus.COMPLETED
        db.close()

    def test_pending_selection_cannot_be_monitored(self):
        _, Session = setup_test_db()
        db = Session()
        selector, _, record = _selected(db)

        with pytest.raises(InvalidTransitionError):
            selector.monitor_implementation(db, record.id, {"CTR": 0.05})
        db.close()


class TestStopStartsRollout:
    def test_successful_stop_implements_winner(self):
        _, Session = setup_test_db()
        db = Session()
        manager, _ = build_experiment_services()
        experiment = _running_experiment(db, manager)

        result = manager.stop(db, experiment.id)

        assert result.experiment.stop_reason == "SUCCESS"
        assert result.selection is not None
        assert result.selection.decision == "SELECT_WINNER"
        assert result.selection.implementation_status == "IMPLEMENTING"
        db.close()

    def test_inconclusive_stop_selects_nothing(self):
        _, Session = setup_test_db()
        db = Session()
        manager, _ = build_experiment_services()
        experiment = _running_experiment(db, manager, test_clicks=100)

        result = manager.stop(db, experiment.id)

        assert result.experiment.stop_reason == "INCONCLUSIVE"
        assert result.selection is None
        db.close()
