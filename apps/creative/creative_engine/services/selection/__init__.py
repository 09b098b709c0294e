from creative_engine.services.selection.rollout import (
    ROLLOUT_TEMPLATES,
    compare_live_metrics,
    monitoring_advice,
    monitoring_schedule,
    rollout_plan,
)
from creative_engine.services.selection.schemas_internal import (
    Decision,
    DecisionContext,
    ImplementationAction,
    ImplementationStatus,
    MonitoringAdvice,
    QualitySnapshot,
    RiskLevel,
    RiskTolerance,
    RolloutStrategy,
    SelectionCriteria,
    Winner,
)
from creative_engine.services.selection.selector import (
    ImplementationPlan,
    MonitoringReport,
    SelectionBatchResult,
    WinnerSelector,
    build_experiment_services,
    decide,
    selection_confidence,
)

__all__ = [
    "ROLLOUT_TEMPLATES",
    "Decision",
    "DecisionContext",
    "ImplementationAction",
    "ImplementationPlan",
    "ImplementationStatus",
    "MonitoringAdvice",
    "MonitoringReport",
    "QualitySnapshot",
    "RiskLevel",
    "RiskTolerance",
    "RolloutStrategy",
    "SelectionBatchResult",
    "SelectionCriteria",
    "Winner",
    "WinnerSelector",
    "build_experiment_services",
    "compare_live_metrics",
    "decide",
    "monitoring_advice",
    "monitoring_schedule",
    "rollout_plan",
    "selection_confidence",
]
