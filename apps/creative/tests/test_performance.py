"""Tests for creative performance scoring, trends and ad-group ranking."""

from __future__ import annotations

import uuid
from datetime import date, timedelta

import pytest

from creative_engine.exceptions import NotFoundError
from creative_engine.services.metrics import DailyMetrics, MetricTotals
from creative_engine.services.performance import (
    DECLINING,
    GROWING,
    IMPROVING,
    STABLE,
    PerformanceAnalyzer,
    TrendSummary,
    compute_trends,
    performance_score,
    stability_index,
)
from tests.conftest import add_daily_snapshots, make_ad_group, make_creative, setup_test_db

TODAY = date(2026, 10, 1)


def _days(clicks: list[int], impressions: int = 1000) -> list[DailyMetrics]:
    start = TODAY - timedelta(days=len(clicks) - 1)
    return [
        DailyMetrics(day=start + timedelta(days=i), impressions=impressions, clicks=c, conversions=1)
        for i, c in enumerate(clicks)
    ]


# ---------------------------------------------------------------------------
# Pure scoring
# ---------------------------------------------------------------------------


class TestPerformanceScore:
    def test_strong_creative_scores_95(self):
        totals = MetricTotals(
            impressions=20_000,
            clicks=1_200,
            conversions=60,
            cost=1_000.0,
            revenue=5_000.0,
            days=10,
            avg_quality_score=8.0,
        )
        assert performance_score(totals, TrendSummary()) == 95.0

    def test_empty_totals_keep_base_score(self):
        assert performance_score(MetricTotals(), TrendSummary()) == 20.0

    def test_score_is_clamped_to_100(self):
        totals = MetricTotals(
            impressions=20_000,
            clicks=1_200,
            conversions=60,
            cost=1_000.0,
            revenue=5_000.0,
            days=10,
            avg_quality_score=9.0,
        )
        trends = TrendSummary(IMPROVING, IMPROVING, GROWING, confidence=1.0)
        assert performance_score(totals, trends) == 100.0

    def test_declining_trends_lower_the_score(self):
        totals = MetricTotals(impressions=5_000, clicks=100, conversions=2, cost=50.0, revenue=60.0)
        neutral = performance_score(totals, TrendSummary())
        declining = performance_score(
            totals, TrendSummary(DECLINING, DECLINING, STABLE, confidence=1.0)
        )
        assert declining == neutral - 6

    def test_cvr_band_is_inclusive(self):
        at_band = MetricTotals(impressions=1_000, clicks=100, conversions=2)
        below = MetricTotals(impressions=1_000, clicks=100, conversions=1)
        assert performance_score(at_band, TrendSummary()) - performance_score(
            below, TrendSummary()
        ) == 6


class TestTrends:
    def test_short_series_is_neutral(self):
        trends = compute_trends(_days([10, 12]))
        assert trends == TrendSummary()
        assert trends.confidence == 0.0

    def test_flat_series_is_stable(self):
        trends = compute_trends(_days([30] * 8))
        assert trends.ctr_trend == STABLE
        assert trends.volume_trend == STABLE
        assert trends.confidence == pytest.approx(0.8)

    def test_falling_clicks_mark_ctr_declining(self):
        trends = compute_trends(_days([40, 40, 40, 40, 20, 20, 20, 20]))
        assert trends.ctr_trend == DECLINING

    def test_rising_clicks_mark_ctr_improving(self):
        trends = compute_trends(_days([20, 20, 20, 40, 40, 40]))
        assert trends.ctr_trend == IMPROVING

    def test_confidence_saturates(self):
        trends = compute_trends(_days([30] * 5, impressions=50_000))
        assert trends.confidence == 1.0


class TestStabilityIndex:
    def test_single_score_is_fully_stable(self):
        assert stability_index([42.0]) == 100.0

    def test_spread_lowers_stability(self):
        assert stability_index([40.0, 60.0]) == 80.0

    def test_floor_at_zero(self):
        assert stability_index([0.0, 100.0]) == 0.0


# ---------------------------------------------------------------------------
# PerformanceAnalyzer against the store
# ---------------------------------------------------------------------------


class TestPerformanceAnalyzer:
    def test_analyze_creative(self):
        _, Session = setup_test_db()
        db = Session()
        group = make_ad_group(db)
        creative = make_creative(db, group)
        add_daily_snapshots(
            db,
            creative,
            days=10,
            end=TODAY,
            clicks=120,
            conversions=6,
            cost=100.0,
            revenue=500.0,
            quality_score=8.0,
        )

        profile = PerformanceAnalyzer().analyze_creative(db, creative.id, today=TODAY)

        assert profile.score == 95.0
        assert profile.totals.impressions == 20_000
        assert profile.window_end == TODAY
        assert profile.trends.ctr_trend == STABLE
        db.close()

    def test_lookback_excludes_older_snapshots(self):
        _, Session = setup_test_db()
        db = Session()
        group = make_ad_group(db)
        creative = make_creative(db, group)
        add_daily_snapshots(db, creative, days=20, end=TODAY)

        profile = PerformanceAnalyzer().analyze_creative(db, creative.id, 7, today=TODAY)

        assert profile.totals.days == 7
        assert profile.totals.impressions == 14_000
        db.close()

    def test_unknown_creative_raises(self):
        _, Session = setup_test_db()
        db = Session()
        with pytest.raises(NotFoundError):
            PerformanceAnalyzer().analyze_creative(db, uuid.uuid4(), today=TODAY)
        db.close()

    def test_ad_group_ranks_by_score(self):
        _, Session = setup_test_db()
        db = Session()
        group = make_ad_group(db)
        strong = make_creative(db, group, name="Strong")
        weak = make_creative(db, group, name="Weak")
        thin = make_creative(db, group, name="Thin")
        add_daily_snapshots(
            db, strong, days=10, end=TODAY, clicks=120, conversions=6, cost=100.0, revenue=500.0
        )
        add_daily_snapshots(
            db, weak, days=10, end=TODAY, clicks=10, conversions=0, cost=100.0, revenue=50.0
        )
        add_daily_snapshots(db, thin, days=2, end=TODAY, impressions=100)

        result = PerformanceAnalyzer().analyze_ad_group(db, group.id, today=TODAY)

        assert result.total_creatives == 3
        assert result.active_creatives == 3
        assert [p.name for p in result.ranked] == ["Strong", "Weak"]
        assert result.ranked[0].rank == 1
        assert result.profiles[-1].name == "Thin"
        assert result.profiles[-1].rank is None
        assert result.top_performers[0].name == "Strong"
        assert result.poor_performers[-1].name == "Weak"
        db.close()

    def test_poor_creative_drags_group_health(self):
        _, Session = setup_test_db()
        db = Session()
        group = make_ad_group(db)
        top = make_creative(db, group, name="Top")
        mid = make_creative(db, group, name="Mid")
        bottom = make_creative(db, group, name="Bottom")
        # 8% CTR and 5% CVR, 500 conversions over the window
        add_daily_snapshots(
            db,
            top,
            days=10,
            end=TODAY,
            impressions=12500,
            clicks=1000,
            conversions=50,
            cost=1000.0,
            revenue=5000.0,
        )
        add_daily_snapshots(db, mid, days=10, end=TODAY)
        # 1% CTR, no conversions
        add_daily_snapshots(
            db, bottom, days=10, end=TODAY, clicks=20, conversions=0, cost=60.0, revenue=0.0
        )

        result = PerformanceAnalyzer().analyze_ad_group(db, group.id, today=TODAY)

        assert result.ranked[0].name == "Top"
        assert result.ranked[0].rank == 1
        assert result.ranked[0].totals.conversions == 500
        assert [p.name for p in result.poor_performers] == ["Bottom"]
        assert result.ranked[-1].score < 30
        assert result.health.status in ("fair", "poor")
        assert "High share of poor-performing creatives" in result.health.issues
        db.close()

    def test_removed_creatives_are_ignored(self):
        _, Session = setup_test_db()
        db = Session()
        group = make_ad_group(db)
        make_creative(db, group, status="REMOVED")

        with pytest.raises(NotFoundError):
            PerformanceAnalyzer().analyze_ad_group(db, group.id, today=TODAY)
        db.close()

    def test_unknown_ad_group_raises(self):
        _, Session = setup_test_db()
        db = Session()
        with pytest.raises(NotFoundError):
            PerformanceAnalyzer().analyze_ad_group(db, uuid.uuid4(), today=TODAY)
        db.close()

    def test_single_creative_needs_more_creatives(self):
        _, Session = setup_test_db()
        db = Session()
        group = make_ad_group(db)
        creative = make_creative(db, group)
        add_daily_snapshots(db, creative, days=10, end=TODAY)

        result = PerformanceAnalyzer().analyze_ad_group(db, group.id, today=TODAY)

        assert result.rotation.recommended_strategy == "NEED_MORE_CREATIVES"
        assert any("diversity" in issue for issue in result.health.issues)
        db.close()

    def test_rotation_strategy_for_spread_scores(self):
        _, Session = setup_test_db()
        db = Session()
        group = make_ad_group(db)
        strong = make_creative(db, group)
        weak = make_creative(db, group)
        add_daily_snapshots(
            db, strong, days=10, end=TODAY, clicks=120, conversions=6, cost=100.0, revenue=500.0
        )
        add_daily_snapshots(
            db, weak, days=10, end=TODAY, clicks=10, conversions=0, cost=100.0, revenue=50.0
        )

        rotation = PerformanceAnalyzer().analyze_rotation_strategy(db, group.id, today=TODAY)

        assert rotation.recommended_strategy == "OPTIMIZE"
        assert rotation.score_variance >= 100
        assert rotation.effectiveness < 100
        db.close()


class TestComparePeriods:
    def test_week_over_week_drop(self):
        _, Session = setup_test_db()
        db = Session()
        group = make_ad_group(db)
        creative = make_creative(db, group)
        add_daily_snapshots(db, creative, days=7, end=TODAY - timedelta(days=7), clicks=60)
        add_daily_snapshots(db, creative, days=7, end=TODAY, clicks=30)

        comparison = PerformanceAnalyzer().compare_periods(db, creative.id, 7, 7, today=TODAY)

        assert comparison.previous.clicks == 420
        assert comparison.current.clicks == 210
        assert comparison.changes["ctr"] == pytest.approx(-0.5)
        assert comparison.changes["impressions"] == 0.0
        assert comparison.significance == 1.0
        db.close()

    def test_unknown_creative(self):
        _, Session = setup_test_db()
        db = Session()
        with pytest.raises(NotFoundError):
            PerformanceAnalyzer().compare_periods(db, uuid.uuid4(), 7, 7, today=TODAY)
        db.close()
