from creative_engine.services.experimentation.guardrails import (
    EarlyStoppingDecision,
    StoppingCheckResult,
    evaluate_stopping_rules,
)
from creative_engine.services.experimentation.manager import (
    TRANSITIONS,
    ExperimentManager,
    StopResult,
    generate_recommendation,
    jaccard_similarity,
    planned_sample,
    variant_tokens,
)
from creative_engine.services.experimentation.schemas_internal import (
    ArmStats,
    EarlyStopReason,
    ExperimentAnalysis,
    ExperimentConfig,
    ExperimentStatus,
    Metric,
    MetricResult,
    Recommendation,
    RecommendedAction,
    StatisticalMethod,
    StopReason,
    TestType,
    VariantRole,
    VariantSpec,
)
from creative_engine.services.experimentation.statistics import (
    BayesianAnalyzer,
    FrequentistAnalyzer,
    SequentialAnalyzer,
    StatisticalAnalyzer,
    build_default_analyzers,
    required_sample_size,
)

__all__ = [
    "TRANSITIONS",
    "ArmStats",
    "BayesianAnalyzer",
    "EarlyStopReason",
    "EarlyStoppingDecision",
    "ExperimentAnalysis",
    "ExperimentConfig",
    "ExperimentManager",
    "ExperimentStatus",
    "FrequentistAnalyzer",
    "Metric",
    "MetricResult",
    "Recommendation",
    "RecommendedAction",
    "SequentialAnalyzer",
    "StatisticalAnalyzer",
    "StatisticalMethod",
    "StopReason",
    "StopResult",
    "StoppingCheckResult",
    "TestType",
    "VariantRole",
    "VariantSpec",
    "build_default_analyzers",
    "evaluate_stopping_rules",
    "generate_recommendation",
    "jaccard_similarity",
    "planned_sample",
    "required_sample_size",
    "variant_tokens",
]
