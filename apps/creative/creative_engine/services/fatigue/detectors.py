"""Concrete fatigue detectors.

CTR and CVR declines compare the recent window with the baseline window
and are gated by a pooled z-score; the remaining detectors are plain
magnitude-over-threshold checks with fixed severity bands.
"""

from __future__ import annotations

from creative_engine.services.fatigue.base import (
    Bands,
    BaseFatigueDetector,
    FatigueContext,
    FatigueSignal,
    FatigueSignalType,
    Severity,
    determine_severity,
    pooled_z_score,
)
from creative_engine.services.metrics import mean
from creative_engine.settings import settings

# Defaults
DEFAULT_Z_THRESHOLD = settings.FATIGUE_Z_THRESHOLD
DEFAULT_CTR_DECLINE_THRESHOLD = 0.15
DEFAULT_CTR_BANDS: Bands = (0.15, 0.25, 0.40, 0.60)
DEFAULT_CVR_DECLINE_THRESHOLD = 0.20
DEFAULT_CVR_BANDS: Bands = (0.20, 0.35, 0.50, 0.70)
DEFAULT_FREQUENCY_THRESHOLD = settings.FATIGUE_FREQUENCY_THRESHOLD
DEFAULT_FREQUENCY_BANDS: Bands = (3.0, 4.0, 5.0, 7.0)
DEFAULT_CPC_INCREASE_THRESHOLD = settings.FATIGUE_CPC_INCREASE_THRESHOLD
DEFAULT_CPC_BANDS: Bands = (0.25, 0.40, 0.60, 1.0)
DEFAULT_STALENESS_DAYS = settings.FATIGUE_STALENESS_DAYS
DEFAULT_STALENESS_BANDS: Bands = (45, 60, 90, 120)


def _window(ctx: FatigueContext) -> dict[str, str]:
    recent = ctx.recent
    return {
        "start_date": recent[-1].day.isoformat(),
        "end_date": recent[0].day.isoformat(),
    }


class _RateDeclineDetector(BaseFatigueDetector):
    """Shared logic for CTR and CVR decline."""

    metric = ""
    label = ""
    recommendation = ""

    def __init__(
        self,
        *,
        decline_threshold: float,
        bands: Bands,
        z_threshold: float = DEFAULT_Z_THRESHOLD,
    ) -> None:
        self.decline_threshold = decline_threshold
        self.bands = bands
        self.z_threshold = z_threshold

    def check_preconditions(self, ctx: FatigueContext) -> tuple[bool, str]:
        if len(ctx.recent) < ctx.recent_days:
            return False, f"Need {ctx.recent_days} days of data"
        if not ctx.baseline:
            return False, "No baseline window"
        return True, ""

    def detect(self, ctx: FatigueContext) -> FatigueSignal | None:
        recent = [getattr(d, self.metric) for d in ctx.recent]
        baseline = [getattr(d, self.metric) for d in ctx.baseline]
        recent_avg = mean(recent)
        baseline_avg = mean(baseline)
        if baseline_avg == 0:
            return None

        change = (recent_avg - baseline_avg) / baseline_avg
        z_score = pooled_z_score(recent, baseline)
        if change >= -self.decline_threshold or abs(z_score) <= self.z_threshold:
            return None

        return FatigueSignal(
            signal_type=self.signal_type,
            severity=determine_severity(abs(change), self.bands),
            confidence=min(1.0, abs(z_score) / self.z_threshold),
            current_value=recent_avg,
            baseline_value=baseline_avg,
            change=change,
            z_score=z_score,
            description=f"{self.label} declined {abs(change):.1%} over the last {len(recent)} days",
            recommendation=self.recommendation,
            window=_window(ctx),
        )


class CTRDeclineDetector(_RateDeclineDetector):
    signal_type = FatigueSignalType.CTR_DECLINE
    metric = "ctr"
    label = "CTR"
    recommendation = "Refresh creative elements or test new messaging"

    def __init__(
        self,
        *,
        decline_threshold: float = DEFAULT_CTR_DECLINE_THRESHOLD,
        bands: Bands = DEFAULT_CTR_BANDS,
        z_threshold: float = DEFAULT_Z_THRESHOLD,
    ) -> None:
        super().__init__(decline_threshold=decline_threshold, bands=bands, z_threshold=z_threshold)


class CVRDeclineDetector(_RateDeclineDetector):
    signal_type = FatigueSignalType.CVR_DECLINE
    metric = "cvr"
    label = "CVR"
    recommendation = "Review landing page experience and audience targeting"

    def __init__(
        self,
        *,
        decline_threshold: float = DEFAULT_CVR_DECLINE_THRESHOLD,
        bands: Bands = DEFAULT_CVR_BANDS,
        z_threshold: float = DEFAULT_Z_THRESHOLD,
    ) -> None:
        super().__init__(decline_threshold=decline_threshold, bands=bands, z_threshold=z_threshold)


class FrequencyDetector(BaseFatigueDetector):
    signal_type = FatigueSignalType.FREQUENCY_INCREASE

    def __init__(
        self,
        *,
        threshold: float = DEFAULT_FREQUENCY_THRESHOLD,
        bands: Bands = DEFAULT_FREQUENCY_BANDS,
    ) -> None:
        self.threshold = threshold
        self.bands = bands

    def check_preconditions(self, ctx: FatigueContext) -> tuple[bool, str]:
        if ctx.avg_frequency is None:
            return False, "No frequency data reported"
        return True, ""

    def detect(self, ctx: FatigueContext) -> FatigueSignal | None:
        frequency = ctx.avg_frequency or 0.0
        if frequency <= self.threshold:
            return None
        return FatigueSignal(
            signal_type=self.signal_type,
            severity=determine_severity(frequency, self.bands),
            confidence=0.9,
            current_value=frequency,
            baseline_value=self.threshold,
            change=(frequency - self.threshold) / self.threshold,
            description=f"Frequency of {frequency:.2f} indicates audience saturation",
            recommendation="Apply frequency capping or expand audience targeting",
        )


class CPCIncreaseDetector(BaseFatigueDetector):
    signal_type = FatigueSignalType.CPC_INCREASE

    def __init__(
        self,
        *,
        threshold: float = DEFAULT_CPC_INCREASE_THRESHOLD,
        bands: Bands = DEFAULT_CPC_BANDS,
    ) -> None:
        self.threshold = threshold
        self.bands = bands

    def check_preconditions(self, ctx: FatigueContext) -> tuple[bool, str]:
        if len(ctx.recent) < ctx.recent_days:
            return False, f"Need {ctx.recent_days} days of data"
        if not ctx.baseline:
            return False, "No baseline window"
        return True, ""

    def detect(self, ctx: FatigueContext) -> FatigueSignal | None:
        recent_avg = mean([d.cpc for d in ctx.recent])
        baseline_avg = mean([d.cpc for d in ctx.baseline])
        if baseline_avg == 0:
            return None
        change = (recent_avg - baseline_avg) / baseline_avg
        if change <= self.threshold:
            return None
        return FatigueSignal(
            signal_type=self.signal_type,
            severity=determine_severity(change, self.bands),
            confidence=0.8,
            current_value=recent_avg,
            baseline_value=baseline_avg,
            change=change,
            description=f"CPC increased {change:.1%}, ad relevance is slipping",
            recommendation="Review ad relevance and quality score factors",
            window=_window(ctx),
        )


class StalenessDetector(BaseFatigueDetector):
    signal_type = FatigueSignalType.CREATIVE_STALENESS

    def __init__(
        self,
        *,
        threshold_days: int = DEFAULT_STALENESS_DAYS,
        bands: Bands = DEFAULT_STALENESS_BANDS,
    ) -> None:
        self.threshold_days = threshold_days
        self.bands = bands

    def check_preconditions(self, ctx: FatigueContext) -> tuple[bool, str]:
        return True, ""

    def detect(self, ctx: FatigueContext) -> FatigueSignal | None:
        if ctx.days_active <= self.threshold_days:
            return None
        severity = determine_severity(ctx.days_active, self.bands)
        if severity == Severity.NONE:
            severity = Severity.MILD
        return FatigueSignal(
            signal_type=self.signal_type,
            severity=severity,
            confidence=0.7,
            current_value=float(ctx.days_active),
            baseline_value=float(self.threshold_days),
            change=(ctx.days_active - self.threshold_days) / self.threshold_days,
            description=f"Creative has been active for {ctx.days_active} days",
            recommendation="Create fresh creative variations",
        )


def build_default_detectors() -> dict[FatigueSignalType, BaseFatigueDetector]:
    """One detector per signal type, configured with the default thresholds."""
    detectors: list[BaseFatigueDetector] = [
        CTRDeclineDetector(),
        CVRDeclineDetector(),
        FrequencyDetector(),
        CPCIncreaseDetector(),
        StalenessDetector(),
    ]
    return {detector.signal_type: detector for detector in detectors}
