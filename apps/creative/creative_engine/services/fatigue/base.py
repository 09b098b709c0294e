"""Base abstractions for pluggable fatigue signal detectors."""

from __future__ import annotations

import enum
import math
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from creative_engine.services.metrics import DailyMetrics, mean, population_variance


class FatigueSignalType(str, enum.Enum):
    CTR_DECLINE = "CTR_DECLINE"
    CVR_DECLINE = "CVR_DECLINE"
    FREQUENCY_INCREASE = "FREQUENCY_INCREASE"
    CPC_INCREASE = "CPC_INCREASE"
    CREATIVE_STALENESS = "CREATIVE_STALENESS"


class Severity(str, enum.Enum):
    NONE = "NONE"
    MILD = "MILD"
    MODERATE = "MODERATE"
    SEVERE = "SEVERE"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    @property
    def points(self) -> int:
        return SEVERITY_POINTS[self]


_SEVERITY_ORDER = [
    Severity.NONE,
    Severity.MILD,
    Severity.MODERATE,
    Severity.SEVERE,
    Severity.CRITICAL,
]

SEVERITY_POINTS = {
    Severity.NONE: 0,
    Severity.MILD: 20,
    Severity.MODERATE: 50,
    Severity.SEVERE: 80,
    Severity.CRITICAL: 100,
}

Bands = tuple[float, float, float, float]


def determine_severity(value: float, bands: Bands) -> Severity:
    """Highest band whose threshold *value* reaches (MILD, MODERATE, SEVERE, CRITICAL)."""
    for threshold, severity in zip(reversed(bands), reversed(_SEVERITY_ORDER[1:])):
        if value >= threshold:
            return severity
    return Severity.NONE


def pooled_z_score(sample: Sequence[float], reference: Sequence[float]) -> float:
    """Mean difference over the pooled population standard deviation.

    Returns 0 when either sample is empty or both are constant.
    """
    if not sample or not reference:
        return 0.0
    pooled = math.sqrt((population_variance(sample) + population_variance(reference)) / 2)
    if pooled == 0:
        return 0.0
    return (mean(sample) - mean(reference)) / pooled


# ---------------------------------------------------------------------------
# Context and signal
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FatigueContext:
    """Immutable snapshot of everything a detector may read.

    ``daily`` is ordered newest first.
    """

    creative_id: str
    analysis_date: date
    daily: tuple[DailyMetrics, ...] = ()
    avg_frequency: float | None = None
    days_active: int = 0
    recent_days: int = 7
    baseline_days: int = 14

    @property
    def recent(self) -> tuple[DailyMetrics, ...]:
        return self.daily[: self.recent_days]

    @property
    def baseline(self) -> tuple[DailyMetrics, ...]:
        return self.daily[self.recent_days : self.recent_days + self.baseline_days]


@dataclass(frozen=True)
class FatigueSignal:
    signal_type: FatigueSignalType
    severity: Severity
    confidence: float
    current_value: float
    baseline_value: float
    change: float
    z_score: float | None = None
    description: str = ""
    recommendation: str = ""
    window: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "type": self.signal_type.value,
            "severity": self.severity.value,
            "confidence": round(self.confidence, 4),
            "current_value": round(self.current_value, 6),
            "baseline_value": round(self.baseline_value, 6),
            "change": round(self.change, 4),
            "z_score": None if self.z_score is None else round(self.z_score, 4),
            "description": self.description,
            "recommendation": self.recommendation,
            "window": dict(self.window),
        }


# ---------------------------------------------------------------------------
# Detector interface
# ---------------------------------------------------------------------------


class BaseFatigueDetector(ABC):
    """Abstract base for all fatigue detectors.

    Subclasses set ``signal_type`` and implement ``check_preconditions``
    and ``detect``.
    """

    signal_type: FatigueSignalType

    @abstractmethod
    def check_preconditions(self, ctx: FatigueContext) -> tuple[bool, str]:
        """Return ``(ok, reason)``.  If ``ok`` is False the detector is skipped."""
        ...

    @abstractmethod
    def detect(self, ctx: FatigueContext) -> FatigueSignal | None:
        """Return a signal when the detector fires, ``None`` otherwise."""
        ...
