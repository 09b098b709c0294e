"""Early-stopping checks for running experiments.

Four standalone pure-logic functions, each returning a
``StoppingCheckResult``.  ``passed=False`` means the experiment should stop.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from creative_engine.services.experimentation.schemas_internal import (
    EarlyStopReason,
    ExperimentAnalysis,
    ExperimentConfig,
)
from creative_engine.services.metrics import safe_div

FUTILITY_EFFECT_RATIO = 0.1


@dataclass(frozen=True)
class StoppingCheckResult:
    """Outcome of a single stopping rule."""

    passed: bool
    rule_name: str
    message: str
    stop_reason: EarlyStopReason | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EarlyStoppingDecision:
    should_stop: bool
    reason: EarlyStopReason | None
    message: str
    checks: tuple[StoppingCheckResult, ...] = ()

    def as_dict(self) -> dict[str, Any]:
        return {
            "should_stop": self.should_stop,
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
            "checks": [
                {
                    "passed": c.passed,
                    "rule_name": c.rule_name,
                    "message": c.message,
                    "details": c.details,
                }
                for c in self.checks
            ],
        }


# ---------------------------------------------------------------------------
# 1. Negative impact
# ---------------------------------------------------------------------------


def check_negative_impact(analysis: ExperimentAnalysis, config: ExperimentConfig) -> StoppingCheckResult:
    """The test arm may not be worse than control by more than *max_negative_impact*."""
    lift = analysis.primary.lift
    if lift < -config.max_negative_impact:
        return StoppingCheckResult(
            passed=False,
            rule_name="negative_impact",
            message=(
                f"{analysis.primary.metric.value} declined {abs(lift):.1%}, "
                f"beyond the {config.max_negative_impact:.0%} limit"
            ),
            stop_reason=EarlyStopReason.GUARDRAIL_VIOLATION,
            details={"lift": lift, "max_negative_impact": config.max_negative_impact},
        )
    return StoppingCheckResult(
        passed=True,
        rule_name="negative_impact",
        message="Primary metric within the negative impact limit",
    )


# ---------------------------------------------------------------------------
# 2. Spend increase
# ---------------------------------------------------------------------------


def check_spend_increase(analysis: ExperimentAnalysis, config: ExperimentConfig) -> StoppingCheckResult:
    """Cost per impression of the test arm may not exceed control by more than *max_spend_increase*."""
    control_cpi = safe_div(analysis.control.spend, analysis.control.sample_size)
    test_cpi = safe_div(analysis.test.spend, analysis.test.sample_size)
    increase = safe_div(test_cpi - control_cpi, control_cpi)
    if increase > config.max_spend_increase:
        return StoppingCheckResult(
            passed=False,
            rule_name="spend_increase",
            message=(
                f"Test spend per impression is up {increase:.1%}, "
                f"beyond the {config.max_spend_increase:.0%} limit"
            ),
            stop_reason=EarlyStopReason.GUARDRAIL_VIOLATION,
            details={"increase": round(increase, 4), "max_spend_increase": config.max_spend_increase},
        )
    return StoppingCheckResult(
        passed=True,
        rule_name="spend_increase",
        message="Spend within limit",
        details={"increase": round(increase, 4)},
    )


# ---------------------------------------------------------------------------
# 3. Early success
# ---------------------------------------------------------------------------


def check_early_success(analysis: ExperimentAnalysis, config: ExperimentConfig) -> StoppingCheckResult:
    """Stop once the primary metric is both statistically and practically significant."""
    primary = analysis.primary
    if (
        config.early_stopping_enabled
        and primary.statistically_significant
        and primary.practically_significant
    ):
        return StoppingCheckResult(
            passed=False,
            rule_name="early_success",
            message=f"{primary.metric.value} significant with p={primary.p_value:.4f}",
            stop_reason=EarlyStopReason.EARLY_SUCCESS,
            details={"p_value": primary.p_value, "relative_change": primary.relative_change},
        )
    return StoppingCheckResult(
        passed=True,
        rule_name="early_success",
        message="No significant result yet" if config.early_stopping_enabled else "Early stopping disabled",
    )


# ---------------------------------------------------------------------------
# 4. Futility
# ---------------------------------------------------------------------------


def check_futility(analysis: ExperimentAnalysis, config: ExperimentConfig) -> StoppingCheckResult:
    """Stop when the observed effect is a negligible fraction of the detectable effect.

    Only applies once the minimum sample has been collected, otherwise a
    freshly started test with no traffic would always look futile.
    """
    if not config.futility_stopping_enabled:
        return StoppingCheckResult(passed=True, rule_name="futility", message="Futility stopping disabled")
    if analysis.total_sample_size < config.min_sample_size:
        return StoppingCheckResult(
            passed=True,
            rule_name="futility",
            message="Minimum sample not reached",
            details={"sample_size": analysis.total_sample_size},
        )
    ratio = abs(analysis.primary.relative_change) / config.min_detectable_effect
    if ratio < FUTILITY_EFFECT_RATIO:
        return StoppingCheckResult(
            passed=False,
            rule_name="futility",
            message=f"Observed effect is {ratio:.0%} of the minimum detectable effect",
            stop_reason=EarlyStopReason.FUTILITY,
            details={"effect_ratio": round(ratio, 4)},
        )
    return StoppingCheckResult(
        passed=True,
        rule_name="futility",
        message="Effect large enough to continue",
        details={"effect_ratio": round(ratio, 4)},
    )


def evaluate_stopping_rules(analysis: ExperimentAnalysis, config: ExperimentConfig) -> EarlyStoppingDecision:
    """Run every rule; guardrail violations win over success, success over futility."""
    checks = (
        check_negative_impact(analysis, config),
        check_spend_increase(analysis, config),
        check_early_success(analysis, config),
        check_futility(analysis, config),
    )
    for check in checks:
        if not check.passed:
            return EarlyStoppingDecision(
                should_stop=True,
                reason=check.stop_reason,
                message=check.message,
                checks=checks,
            )
    return EarlyStoppingDecision(
        should_stop=False,
        reason=None,
        message="Continue experiment",
        checks=checks,
    )
