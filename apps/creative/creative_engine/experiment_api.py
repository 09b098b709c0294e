"""FastAPI router for experiments and winner selection."""

from __future__ import annotations

import uuid
from datetime import date

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from creative_engine.api import http_errors
from creative_engine.db import get_db
from creative_engine.schemas import (
    EarlyStoppingOut,
    ExperimentAnalysisOut,
    ExperimentCreate,
    ExperimentListItem,
    ExperimentOut,
    ImplementationPlanOut,
    ImplementRequest,
    MonitoringReportOut,
    MonitorRequest,
    SelectionOut,
    SelectionRequest,
    StopOut,
    StopRequest,
    TransitionRequest,
)
from creative_engine.services.experimentation import ExperimentStatus
from creative_engine.services.selection import build_experiment_services

experiment_router = APIRouter(prefix="/api", tags=["experiments"])


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


@experiment_router.post("/experiments", response_model=ExperimentOut, status_code=201)
def create_experiment(payload: ExperimentCreate, db: Session = Depends(get_db)):
    """Validate the configuration and create an experiment in PLANNING."""
    manager, _ = build_experiment_services()
    with http_errors():
        return manager.create(
            db,
            name=payload.name,
            control=payload.control.to_spec(),
            test=payload.test.to_spec(),
            config=payload.config.to_config(),
            ad_group_id=payload.ad_group_id,
            hypothesis=payload.hypothesis,
        )


@experiment_router.get("/experiments", response_model=list[ExperimentListItem])
def list_experiments(status: ExperimentStatus | None = None, db: Session = Depends(get_db)):
    manager, _ = build_experiment_services()
    with http_errors():
        return manager.list_experiments(db, status)


@experiment_router.get("/experiments/{experiment_id}", response_model=ExperimentOut)
def get_experiment(experiment_id: uuid.UUID, db: Session = Depends(get_db)):
    manager, _ = build_experiment_services()
    with http_errors():
        return manager.get(db, experiment_id)


@experiment_router.post("/experiments/{experiment_id}/ready", response_model=ExperimentOut)
def mark_experiment_ready(experiment_id: uuid.UUID, db: Session = Depends(get_db)):
    manager, _ = build_experiment_services()
    with http_errors():
        return manager.mark_ready(db, experiment_id)


@experiment_router.post("/experiments/{experiment_id}/start", response_model=ExperimentOut)
def start_experiment(experiment_id: uuid.UUID, db: Session = Depends(get_db)):
    """Activate both variants and start collecting data."""
    manager, _ = build_experiment_services()
    with http_errors():
        return manager.start(db, experiment_id)


@experiment_router.post("/experiments/{experiment_id}/pause", response_model=ExperimentOut)
def pause_experiment(
    experiment_id: uuid.UUID,
    payload: TransitionRequest | None = None,
    db: Session = Depends(get_db),
):
    manager, _ = build_experiment_services()
    with http_errors():
        return manager.pause(db, experiment_id, payload.reason if payload else None)


@experiment_router.post("/experiments/{experiment_id}/resume", response_model=ExperimentOut)
def resume_experiment(experiment_id: uuid.UUID, db: Session = Depends(get_db)):
    manager, _ = build_experiment_services()
    with http_errors():
        return manager.resume(db, experiment_id)


@experiment_router.post("/experiments/{experiment_id}/cancel", response_model=ExperimentOut)
def cancel_experiment(
    experiment_id: uuid.UUID,
    payload: TransitionRequest | None = None,
    db: Session = Depends(get_db),
):
    manager, _ = build_experiment_services()
    with http_errors():
        return manager.cancel(db, experiment_id, payload.reason if payload else None)


@experiment_router.post("/experiments/{experiment_id}/stop", response_model=StopOut)
def stop_experiment(
    experiment_id: uuid.UUID,
    payload: StopRequest | None = None,
    as_of: date | None = None,
    db: Session = Depends(get_db),
):
    """Complete a running experiment; a successful stop starts the winner rollout."""
    manager, _ = build_experiment_services()
    with http_errors():
        result = manager.stop(db, experiment_id, payload.reason if payload else None, as_of)
    return StopOut(
        experiment=ExperimentOut.model_validate(result.experiment),
        analysis=ExperimentAnalysisOut(**result.analysis.as_dict()),
        recommendation=result.recommendation.as_dict(),
        selection_id=result.selection.id if result.selection is not None else None,
    )


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------


@experiment_router.post("/experiments/{experiment_id}/analyze", response_model=ExperimentAnalysisOut)
def analyze_experiment(
    experiment_id: uuid.UUID,
    as_of: date | None = None,
    db: Session = Depends(get_db),
):
    """Run the configured statistical analysis and store the result."""
    manager, _ = build_experiment_services()
    with http_errors():
        analysis = manager.analyze(db, experiment_id, as_of)
    return ExperimentAnalysisOut(**analysis.as_dict())


@experiment_router.get("/experiments/{experiment_id}/early-stopping", response_model=EarlyStoppingOut)
def early_stopping(
    experiment_id: uuid.UUID,
    as_of: date | None = None,
    db: Session = Depends(get_db),
):
    """Evaluate guardrail, success and futility rules against current data."""
    manager, _ = build_experiment_services()
    with http_errors():
        decision = manager.check_early_stopping(db, experiment_id, as_of)
    return EarlyStoppingOut(**decision.as_dict())


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


@experiment_router.post(
    "/experiments/{experiment_id}/selection",
    response_model=SelectionOut,
    tags=["selection"],
)
def select_winner(
    experiment_id: uuid.UUID,
    payload: SelectionRequest | None = None,
    as_of: date | None = None,
    db: Session = Depends(get_db),
):
    """Decide whether the experiment has a winner worth implementing."""
    payload = payload or SelectionRequest()
    _, selector = build_experiment_services()
    with http_errors():
        return selector.evaluate(
            db,
            experiment_id,
            payload.criteria.to_criteria(),
            payload.context.to_context() if payload.context else None,
            as_of,
        )


@experiment_router.post(
    "/selections/{selection_id}/implement",
    response_model=ImplementationPlanOut,
    tags=["selection"],
)
def implement_selection(
    selection_id: uuid.UUID,
    payload: ImplementRequest | None = None,
    as_of: date | None = None,
    db: Session = Depends(get_db),
):
    """Start rolling out the selected winner."""
    _, selector = build_experiment_services()
    with http_errors():
        plan = selector.implement(db, selection_id, payload.strategy if payload else None, as_of)
    return ImplementationPlanOut(
        selection=SelectionOut.model_validate(plan.selection),
        strategy=plan.strategy.value,
        rollout=[p.as_dict() for p in plan.rollout],
        monitoring_schedule=[c.as_dict() for c in plan.monitoring_schedule],
    )


@experiment_router.post(
    "/selections/{selection_id}/monitor",
    response_model=MonitoringReportOut,
    tags=["selection"],
)
def monitor_selection(
    selection_id: uuid.UUID,
    payload: MonitorRequest,
    as_of: date | None = None,
    db: Session = Depends(get_db),
):
    """Compare live metrics against the projection and advise on the rollout."""
    _, selector = build_experiment_services()
    with http_errors():
        report = selector.monitor_implementation(db, selection_id, payload.live_metrics, as_of)
    return MonitoringReportOut(**report.as_dict())
