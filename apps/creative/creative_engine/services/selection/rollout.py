"""Rollout templates and post-implementation monitoring rules."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import date, timedelta
from typing import Any

from creative_engine.services.experimentation.schemas_internal import Metric
from creative_engine.services.metrics import safe_div
from creative_engine.services.selection.schemas_internal import (
    MonitoringAdvice,
    MonitoringAlert,
    MonitoringCheck,
    RolloutPhase,
    RolloutStrategy,
    SelectionCriteria,
)
from creative_engine.settings import settings

DEFAULT_VARIANCE_THRESHOLD = settings.SELECTION_MONITORING_VARIANCE_THRESHOLD
DAILY_CHECK_DAYS = 7
WEEKLY_CHECK_WEEKS = (2, 3, 4)
MONITORING_DAYS = 28
_LOWER_IS_BETTER = frozenset(m.value for m in Metric if m.lower_is_better)

# (day offset, traffic percent, include secondary metrics)
ROLLOUT_TEMPLATES: dict[RolloutStrategy, tuple[tuple[int, int, bool], ...]] = {
    RolloutStrategy.IMMEDIATE: ((0, 100, True),),
    RolloutStrategy.GRADUAL: ((0, 25, False), (3, 50, True), (7, 100, True)),
    RolloutStrategy.SEGMENTED: ((0, 20, False), (5, 40, True), (10, 70, True), (14, 100, True)),
}

TRAFFIC_ALLOCATION = {
    RolloutStrategy.IMMEDIATE: 1.0,
    RolloutStrategy.GRADUAL: 0.5,
    RolloutStrategy.SEGMENTED: 0.5,
}


def rollout_plan(
    strategy: RolloutStrategy,
    start: date,
    primary: Metric,
    secondary: Sequence[Metric] = (),
) -> tuple[RolloutPhase, ...]:
    phases = []
    for index, (offset, percent, with_secondary) in enumerate(ROLLOUT_TEMPLATES[strategy], start=1):
        metrics = (primary, *secondary) if with_secondary else (primary,)
        phases.append(
            RolloutPhase(
                phase=index,
                traffic_percent=percent,
                start_date=start + timedelta(days=offset),
                metrics=metrics,
            )
        )
    return tuple(phases)


def monitoring_schedule(
    start: date,
    primary: Metric,
    secondary: Sequence[Metric],
    expected_lift: float,
) -> tuple[MonitoringCheck, ...]:
    """Daily primary-metric checks for a week, then weekly full checks to week four."""
    checks = [
        MonitoringCheck(
            check_date=start + timedelta(days=day),
            metrics=(primary,),
            thresholds={primary.value: round(expected_lift * 0.5, 6)},
        )
        for day in range(1, DAILY_CHECK_DAYS + 1)
    ]
    checks.extend(
        MonitoringCheck(
            check_date=start + timedelta(weeks=week),
            metrics=(primary, *secondary),
            thresholds={primary.value: round(expected_lift * 0.8, 6)},
        )
        for week in WEEKLY_CHECK_WEEKS
    )
    return tuple(checks)


def rollback_triggers(primary: Metric, criteria: SelectionCriteria) -> tuple[str, ...]:
    return (
        f"{primary.value} declines more than {criteria.max_tolerable_decline:.0%} against projection",
        f"Spend rises more than {criteria.max_budget_increase:.0%} above control",
        f"Quality score drops below {criteria.min_quality_score:g}",
    )


# ---------------------------------------------------------------------------
# Live monitoring
# ---------------------------------------------------------------------------


def compare_live_metrics(
    expected: Mapping[str, float],
    live: Mapping[str, float],
    *,
    threshold: float = DEFAULT_VARIANCE_THRESHOLD,
) -> tuple[dict[str, dict[str, Any]], list[MonitoringAlert]]:
    """Variance of each live metric against its projected value.

    Variance is oriented so negative always means worse than projected.
    Variance beyond the threshold in either direction is a warning, and
    beyond twice the threshold it is critical.
    """
    metrics: dict[str, dict[str, Any]] = {}
    alerts: list[MonitoringAlert] = []
    for name, current in live.items():
        if name not in expected:
            continue
        projected = expected[name]
        variance = safe_div(current - projected, projected)
        if name in _LOWER_IS_BETTER:
            variance = -variance
        metrics[name] = {
            "current": current,
            "expected": projected,
            "variance": round(variance, 4),
            "threshold": threshold,
        }
        if abs(variance) <= threshold:
            continue
        severity = "CRITICAL" if abs(variance) > 2 * threshold else "WARNING"
        alerts.append(
            MonitoringAlert(
                severity=severity,
                metric=name,
                variance=round(variance, 4),
                message=f"{name} variance of {variance:+.1%} exceeds the {threshold:.0%} threshold",
            )
        )
    return metrics, alerts


def monitoring_advice(alerts: Sequence[MonitoringAlert]) -> MonitoringAdvice:
    if any(a.severity == "CRITICAL" for a in alerts):
        return MonitoringAdvice.ROLLBACK
    if sum(1 for a in alerts if a.severity == "WARNING") >= 2:
        return MonitoringAdvice.ADJUST
    return MonitoringAdvice.CONTINUE


def monitoring_status(alerts: Sequence[MonitoringAlert]) -> str:
    if any(a.severity == "CRITICAL" for a in alerts):
        return "ROLLBACK_REQUIRED"
    if alerts:
        return "NEEDS_ATTENTION"
    return "ON_TRACK"
