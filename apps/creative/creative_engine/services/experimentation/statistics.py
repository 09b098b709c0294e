from __future__ import annotations

import math
from abc import ABC, abstractmethod
from typing import Any

import numpy as np
from scipy import stats

from creative_engine.services.experimentation.schemas_internal import (
    ArmStats,
    BayesianResult,
    ExperimentConfig,
    Metric,
    MetricResult,
    StatisticalMethod,
)
from creative_engine.services.metrics import safe_div

DEFAULT_POSTERIOR_DRAWS = 20000
DEFAULT_SEED = 7


# ---------------------------------------------------------------------------
# Metric extraction
# ---------------------------------------------------------------------------


def metric_value(metric: Metric, arm: ArmStats) -> float:
    """Aggregate value of ``metric`` over the whole arm."""
    if metric == Metric.CTR:
        return safe_div(arm.clicks, arm.sample_size)
    if metric == Metric.CVR:
        return safe_div(arm.conversions, arm.clicks)
    if metric == Metric.CPA:
        return safe_div(arm.spend, arm.conversions)
    if metric == Metric.ROAS:
        return safe_div(arm.revenue, arm.spend)
    if metric == Metric.REVENUE:
        return safe_div(arm.revenue * 1000, arm.sample_size)
    if metric == Metric.IMPRESSIONS:
        return safe_div(arm.sample_size, arm.days)
    return safe_div(arm.clicks, arm.days)


def rate_counts(metric: Metric, arm: ArmStats) -> tuple[int, int]:
    """(successes, trials) for the rate metrics."""
    if metric == Metric.CTR:
        return arm.clicks, arm.sample_size
    if metric == Metric.CVR:
        return arm.conversions, arm.clicks
    raise ValueError(f"{metric.value} is not a rate metric")


def _relative(control: float, test: float) -> float:
    return safe_div(test - control, control)


def _practical(relative_change: float, config: ExperimentConfig) -> bool:
    return abs(relative_change) >= config.practical_significance_threshold


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


def two_proportion_test(
    control_successes: int,
    control_trials: int,
    test_successes: int,
    test_trials: int,
    alpha: float,
) -> tuple[float, tuple[float, float]]:
    """Pooled two-proportion z-test; returns (p_value, CI of the absolute difference)."""
    if control_trials <= 0 or test_trials <= 0:
        return 1.0, (0.0, 0.0)
    p1 = control_successes / control_trials
    p2 = test_successes / test_trials
    pooled = (control_successes + test_successes) / (control_trials + test_trials)
    if pooled in (0, 1):
        return 1.0, (0.0, 0.0)
    se_pooled = math.sqrt(pooled * (1 - pooled) * (1 / control_trials + 1 / test_trials))
    z = (p2 - p1) / se_pooled
    p_value = float(2 * stats.norm.sf(abs(z)))

    se = math.sqrt(p1 * (1 - p1) / control_trials + p2 * (1 - p2) / test_trials)
    margin = float(stats.norm.ppf(1 - alpha / 2)) * se
    diff = p2 - p1
    return p_value, (diff - margin, diff + margin)


def welch_test(
    control_values: list[float],
    test_values: list[float],
    alpha: float,
) -> tuple[float, tuple[float, float]]:
    """Welch t-test on daily values; returns (p_value, CI of the mean difference)."""
    if len(control_values) < 2 or len(test_values) < 2:
        return 1.0, (0.0, 0.0)
    control = np.asarray(control_values, dtype=float)
    test = np.asarray(test_values, dtype=float)
    result = stats.ttest_ind(test, control, equal_var=False)
    p_value = float(result.pvalue)
    if math.isnan(p_value):
        p_value = 1.0

    se = math.sqrt(control.var(ddof=1) / control.size + test.var(ddof=1) / test.size)
    margin = float(stats.norm.ppf(1 - alpha / 2)) * se
    diff = float(test.mean() - control.mean())
    return p_value, (diff - margin, diff + margin)


def required_sample_size(
    baseline_rate: float,
    min_detectable_effect: float,
    alpha: float,
    power: float,
) -> int:
    """Per-arm sample size for detecting a relative lift of ``min_detectable_effect``."""
    p1 = baseline_rate
    p2 = min(baseline_rate * (1 + min_detectable_effect), 0.9999)
    pooled = (p1 + p2) / 2
    z_alpha = stats.norm.ppf(1 - alpha / 2)
    z_beta = stats.norm.ppf(power)
    numerator = (
        z_alpha * math.sqrt(2 * pooled * (1 - pooled))
        + z_beta * math.sqrt(p1 * (1 - p1) + p2 * (1 - p2))
    ) ** 2
    return int(math.ceil(numerator / (p2 - p1) ** 2))


def achieved_power(
    baseline_rate: float,
    min_detectable_effect: float,
    per_arm_sample: int,
    alpha: float,
) -> float:
    if per_arm_sample <= 0 or baseline_rate <= 0:
        return 0.0
    p1 = min(baseline_rate, 0.9999)
    p2 = min(p1 * (1 + min_detectable_effect), 0.9999)
    pooled = (p1 + p2) / 2
    z_alpha = stats.norm.ppf(1 - alpha / 2)
    spread = math.sqrt(p1 * (1 - p1) + p2 * (1 - p2))
    if spread == 0:
        return 0.0
    z = (abs(p2 - p1) * math.sqrt(per_arm_sample) - z_alpha * math.sqrt(2 * pooled * (1 - pooled))) / spread
    return round(float(stats.norm.cdf(z)), 4)


def obrien_fleming_alpha(alpha: float, information_fraction: float) -> float:
    """Cumulative alpha spent at ``information_fraction`` under an O'Brien-Fleming boundary."""
    if information_fraction <= 0:
        return 0.0
    t = min(information_fraction, 1.0)
    return float(2 * (1 - stats.norm.cdf(stats.norm.ppf(1 - alpha / 2) / math.sqrt(t))))


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


class StatisticalAnalyzer(ABC):
    """One way of deciding whether the test arm differs from control."""

    method: StatisticalMethod

    @abstractmethod
    def compare(
        self,
        metric: Metric,
        control: ArmStats,
        test: ArmStats,
        config: ExperimentConfig,
        *,
        information_fraction: float = 1.0,
    ) -> MetricResult:
        raise NotImplementedError

    def posterior(
        self, metric: Metric, control: ArmStats, test: ArmStats, config: ExperimentConfig
    ) -> BayesianResult | None:
        return None

    def boundary(self, config: ExperimentConfig, information_fraction: float) -> dict[str, Any] | None:
        return None


class FrequentistAnalyzer(StatisticalAnalyzer):
    method = StatisticalMethod.FREQUENTIST

    def _test(
        self, metric: Metric, control: ArmStats, test: ArmStats, alpha: float
    ) -> tuple[float, tuple[float, float]]:
        if metric.is_rate:
            c_succ, c_trials = rate_counts(metric, control)
            t_succ, t_trials = rate_counts(metric, test)
            return two_proportion_test(c_succ, c_trials, t_succ, t_trials, alpha)
        return welch_test(
            control.daily.get(metric.value, []),
            test.daily.get(metric.value, []),
            alpha,
        )

    def _threshold(self, config: ExperimentConfig, information_fraction: float) -> float:
        return config.significance_level

    def compare(
        self,
        metric: Metric,
        control: ArmStats,
        test: ArmStats,
        config: ExperimentConfig,
        *,
        information_fraction: float = 1.0,
    ) -> MetricResult:
        control_value = metric_value(metric, control)
        test_value = metric_value(metric, test)
        relative = _relative(control_value, test_value)
        p_value, interval = self._test(metric, control, test, config.significance_level)
        threshold = self._threshold(config, information_fraction)
        return MetricResult(
            metric=metric,
            control_value=round(control_value, 6),
            test_value=round(test_value, 6),
            relative_change=round(relative, 6),
            absolute_change=round(test_value - control_value, 6),
            p_value=round(p_value, 6),
            confidence_interval=(round(interval[0], 6), round(interval[1], 6)),
            statistically_significant=p_value < threshold,
            practically_significant=_practical(relative, config),
        )


class SequentialAnalyzer(FrequentistAnalyzer):
    """Frequentist tests judged against an O'Brien-Fleming spending boundary."""

    method = StatisticalMethod.SEQUENTIAL

    def _threshold(self, config: ExperimentConfig, information_fraction: float) -> float:
        return obrien_fleming_alpha(config.significance_level, information_fraction)

    def boundary(self, config: ExperimentConfig, information_fraction: float) -> dict[str, Any] | None:
        fraction = max(0.0, min(information_fraction, 1.0))
        alpha_spent = obrien_fleming_alpha(config.significance_level, fraction)
        boundary_z = (
            float(stats.norm.ppf(1 - alpha_spent / 2)) if alpha_spent > 0 else None
        )
        return {
            "information_fraction": round(fraction, 4),
            "alpha_spent": round(alpha_spent, 6),
            "boundary_z": round(boundary_z, 4) if boundary_z is not None else None,
        }


class BayesianAnalyzer(StatisticalAnalyzer):
    """Posterior comparison using Beta priors for rates and normal posteriors otherwise."""

    method = StatisticalMethod.BAYESIAN

    def __init__(self, *, draws: int = DEFAULT_POSTERIOR_DRAWS, seed: int = DEFAULT_SEED) -> None:
        self.draws = draws
        self.seed = seed

    def _samples(
        self, metric: Metric, control: ArmStats, test: ArmStats
    ) -> tuple[np.ndarray, np.ndarray] | None:
        rng = np.random.default_rng(self.seed)
        if metric.is_rate:
            c_succ, c_trials = rate_counts(metric, control)
            t_succ, t_trials = rate_counts(metric, test)
            control_draws = rng.beta(1 + c_succ, 1 + max(c_trials - c_succ, 0), self.draws)
            test_draws = rng.beta(1 + t_succ, 1 + max(t_trials - t_succ, 0), self.draws)
            return control_draws, test_draws

        control_values = np.asarray(control.daily.get(metric.value, []), dtype=float)
        test_values = np.asarray(test.daily.get(metric.value, []), dtype=float)
        if control_values.size < 2 or test_values.size < 2:
            return None
        control_draws = rng.normal(
            control_values.mean(),
            control_values.std(ddof=1) / math.sqrt(control_values.size),
            self.draws,
        )
        test_draws = rng.normal(
            test_values.mean(),
            test_values.std(ddof=1) / math.sqrt(test_values.size),
            self.draws,
        )
        return control_draws, test_draws

    def posterior(
        self, metric: Metric, control: ArmStats, test: ArmStats, config: ExperimentConfig
    ) -> BayesianResult | None:
        samples = self._samples(metric, control, test)
        if samples is None:
            return None
        control_draws, test_draws = samples
        diff = test_draws - control_draws
        if metric.lower_is_better:
            diff = -diff
        alpha = config.significance_level
        low, high = np.percentile(test_draws - control_draws, [alpha / 2 * 100, (1 - alpha / 2) * 100])
        return BayesianResult(
            probability_test_better=round(float(np.mean(diff > 0)), 4),
            expected_loss_control=round(float(np.mean(np.maximum(diff, 0))), 6),
            expected_loss_test=round(float(np.mean(np.maximum(-diff, 0))), 6),
            credible_interval=(round(float(low), 6), round(float(high), 6)),
        )

    def compare(
        self,
        metric: Metric,
        control: ArmStats,
        test: ArmStats,
        config: ExperimentConfig,
        *,
        information_fraction: float = 1.0,
    ) -> MetricResult:
        control_value = metric_value(metric, control)
        test_value = metric_value(metric, test)
        relative = _relative(control_value, test_value)
        result = self.posterior(metric, control, test, config)
        if result is None:
            p_value, interval = 1.0, (0.0, 0.0)
        else:
            prob = result.probability_test_better
            p_value = 2 * min(prob, 1 - prob)
            interval = result.credible_interval
        return MetricResult(
            metric=metric,
            control_value=round(control_value, 6),
            test_value=round(test_value, 6),
            relative_change=round(relative, 6),
            absolute_change=round(test_value - control_value, 6),
            p_value=round(p_value, 6),
            confidence_interval=interval,
            statistically_significant=p_value < config.significance_level,
            practically_significant=_practical(relative, config),
        )


def build_default_analyzers() -> dict[StatisticalMethod, StatisticalAnalyzer]:
    return {
        StatisticalMethod.FREQUENTIST: FrequentistAnalyzer(),
        StatisticalMethod.BAYESIAN: BayesianAnalyzer(),
        StatisticalMethod.SEQUENTIAL: SequentialAnalyzer(),
    }
