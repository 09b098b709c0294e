"""Fatigue detection package: detectors keyed by signal type."""

from creative_engine.services.fatigue.base import (
    BaseFatigueDetector,
    FatigueContext,
    FatigueSignal,
    FatigueSignalType,
    Severity,
    determine_severity,
)
from creative_engine.services.fatigue.detector import (
    BatchFatigueResult,
    CampaignFatigueResult,
    FatigueDetector,
    FatigueVerdict,
    OverallFatigue,
)
from creative_engine.services.fatigue.detectors import (
    CPCIncreaseDetector,
    CTRDeclineDetector,
    CVRDeclineDetector,
    FrequencyDetector,
    StalenessDetector,
    build_default_detectors,
)

__all__ = [
    "BaseFatigueDetector",
    "BatchFatigueResult",
    "CPCIncreaseDetector",
    "CTRDeclineDetector",
    "CVRDeclineDetector",
    "CampaignFatigueResult",
    "FatigueContext",
    "FatigueDetector",
    "FatigueSignal",
    "FatigueSignalType",
    "FatigueVerdict",
    "FrequencyDetector",
    "OverallFatigue",
    "Severity",
    "StalenessDetector",
    "build_default_detectors",
    "determine_severity",
]
