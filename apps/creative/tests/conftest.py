from __future__ import annotations

import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from creative_engine import models  # noqa: F401  -- ensure all models are registered
from creative_engine.db import Base, get_db
from creative_engine.models import AdGroup, Creative, MetricSnapshot


# ---------------------------------------------------------------------------
# Test DB
# ---------------------------------------------------------------------------


def setup_test_db():
    """Create an in-memory SQLite engine and session factory."""
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(engine)
    return engine, TestingSessionLocal


def override_app_db(app, TestingSessionLocal) -> None:
    """Point the app's ``get_db`` dependency at the test session factory."""

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_ad_group(db: Session, **kwargs) -> AdGroup:
    defaults: dict[str, Any] = dict(name="Brand Search", campaign_id=uuid.uuid4())
    defaults.update(kwargs)
    group = AdGroup(**defaults)
    db.add(group)
    db.commit()
    db.refresh(group)
    return group


def make_creative(db: Session, ad_group: AdGroup, **kwargs) -> Creative:
    now = datetime.now(timezone.utc)
    defaults: dict[str, Any] = dict(
        ad_group_id=ad_group.id,
        campaign_id=ad_group.campaign_id,
        name=f"Creative {uuid.uuid4().hex[:6]}",
        creative_type="RESPONSIVE",
        status="ENABLED",
        content_json={"headlines": ["Fast shipping"], "descriptions": ["Order today"]},
        created_at=now,
        updated_at=now,
    )
    defaults.update(kwargs)
    creative = Creative(**defaults)
    db.add(creative)
    db.commit()
    db.refresh(creative)
    return creative


def add_daily_snapshots(
    db: Session,
    creative: Creative,
    *,
    days: int,
    end: date | None = None,
    impressions: int = 2000,
    clicks: int = 60,
    conversions: int = 3,
    cost: float = 60.0,
    revenue: float = 240.0,
    frequency: float | None = None,
    quality_score: float | None = None,
) -> list[MetricSnapshot]:
    """One snapshot per day for *days* days ending on *end* (inclusive)."""
    end = end or date.today()
    rows = []
    for offset in range(days):
        row = MetricSnapshot(
            creative_id=creative.id,
            snapshot_date=end - timedelta(days=days - 1 - offset),
            impressions=impressions,
            clicks=clicks,
            conversions=conversions,
            cost=cost,
            revenue=revenue,
            frequency=frequency,
            quality_score=quality_score,
        )
        db.add(row)
        rows.append(row)
    db.commit()
    return rows


# ---------------------------------------------------------------------------
# Experiment builders
# ---------------------------------------------------------------------------

CONTROL_CONTENT = {"headlines": ["Fast shipping"], "descriptions": ["Order today"]}
TEST_CONTENT = {"headlines": ["Summer sale ends soon"], "descriptions": ["Save big on boots"]}


def make_variant_creatives(db: Session, ad_group: AdGroup) -> tuple[Creative, Creative]:
    """A control and a test creative whose copy shares no tokens."""
    control = make_creative(db, ad_group, name="Control", content_json=CONTROL_CONTENT)
    test = make_creative(db, ad_group, name="Challenger", content_json=TEST_CONTENT)
    return control, test


def backdate_start(db: Session, experiment, days: int = 15) -> None:
    """Move ``started_at`` into the past so stored snapshots fall inside the window."""
    experiment.started_at = datetime.now(timezone.utc) - timedelta(days=days)
    db.commit()
    db.refresh(experiment)


def add_arm_snapshots(
    db: Session,
    control: Creative,
    test: Creative,
    *,
    control_clicks: int = 100,
    test_clicks: int = 110,
    days: int = 10,
    test_cost: float = 50.0,
) -> None:
    """CTR of 5.0% vs 5.5% on 2000 daily impressions per arm."""
    common: dict[str, Any] = dict(days=days, conversions=3, revenue=200.0, quality_score=8.0)
    add_daily_snapshots(db, control, clicks=control_clicks, cost=50.0, **common)
    add_daily_snapshots(db, test, clicks=test_clicks, cost=test_cost, **common)
