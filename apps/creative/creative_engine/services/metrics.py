"""Daily metric loading and derived-rate helpers.

Snapshots are the source of truth; every rate here is computed on read
with zero-denominator guards so callers never see NaN.
"""

from __future__ import annotations

import math
import uuid
from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from creative_engine.models import MetricSnapshot
from creative_engine.services.store import store_guard


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _to_float(value: Any) -> float:
    if value is None:
        return 0.0
    return float(value)


def safe_div(numerator: float, denominator: float) -> float:
    if denominator == 0:
        return 0.0
    return numerator / denominator


def mean(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    return sum(values) / len(values)


def population_variance(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    avg = mean(values)
    return sum((v - avg) ** 2 for v in values) / len(values)


def population_std(values: Sequence[float]) -> float:
    return math.sqrt(population_variance(values))


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DailyMetrics:
    """One day of performance for a single creative."""

    day: date
    impressions: int = 0
    clicks: int = 0
    conversions: int = 0
    cost: float = 0.0
    revenue: float = 0.0
    frequency: float | None = None
    reach_percent: float | None = None
    quality_score: float | None = None

    @property
    def ctr(self) -> float:
        return safe_div(self.clicks, self.impressions)

    @property
    def cvr(self) -> float:
        return safe_div(self.conversions, self.clicks)

    @property
    def cpc(self) -> float:
        return safe_div(self.cost, self.clicks)


@dataclass(frozen=True)
class MetricTotals:
    impressions: int = 0
    clicks: int = 0
    conversions: int = 0
    cost: float = 0.0
    revenue: float = 0.0
    days: int = 0
    avg_frequency: float | None = None
    avg_quality_score: float | None = None

    @property
    def ctr(self) -> float:
        return safe_div(self.clicks, self.impressions)

    @property
    def cvr(self) -> float:
        return safe_div(self.conversions, self.clicks)

    @property
    def cpa(self) -> float:
        return safe_div(self.cost, self.conversions)

    @property
    def roas(self) -> float:
        return safe_div(self.revenue, self.cost)

    @property
    def cpc(self) -> float:
        return safe_div(self.cost, self.clicks)

    def as_dict(self) -> dict[str, Any]:
        return {
            "impressions": self.impressions,
            "clicks": self.clicks,
            "conversions": self.conversions,
            "cost": round(self.cost, 2),
            "revenue": round(self.revenue, 2),
            "days": self.days,
            "ctr": round(self.ctr, 6),
            "cvr": round(self.cvr, 6),
            "cpa": round(self.cpa, 4),
            "roas": round(self.roas, 4),
            "cpc": round(self.cpc, 4),
            "avg_frequency": self.avg_frequency,
            "avg_quality_score": self.avg_quality_score,
        }


def summarize(days: Iterable[DailyMetrics]) -> MetricTotals:
    """Sum a series of daily rows into totals."""
    rows = list(days)
    frequencies = [d.frequency for d in rows if d.frequency is not None]
    quality = [d.quality_score for d in rows if d.quality_score is not None]
    return MetricTotals(
        impressions=sum(d.impressions for d in rows),
        clicks=sum(d.clicks for d in rows),
        conversions=sum(d.conversions for d in rows),
        cost=sum(d.cost for d in rows),
        revenue=sum(d.revenue for d in rows),
        days=len(rows),
        avg_frequency=mean(frequencies) if frequencies else None,
        avg_quality_score=mean(quality) if quality else None,
    )


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def _from_row(row: MetricSnapshot) -> DailyMetrics:
    return DailyMetrics(
        day=row.snapshot_date,
        impressions=int(row.impressions or 0),
        clicks=int(row.clicks or 0),
        conversions=int(row.conversions or 0),
        cost=_to_float(row.cost),
        revenue=_to_float(row.revenue),
        frequency=None if row.frequency is None else float(row.frequency),
        reach_percent=None if row.reach_percent is None else float(row.reach_percent),
        quality_score=None if row.quality_score is None else float(row.quality_score),
    )


def load_daily_metrics_many(
    db: Session,
    creative_ids: Sequence[uuid.UUID],
    *,
    start: date | None = None,
    end: date | None = None,
) -> dict[uuid.UUID, list[DailyMetrics]]:
    """Daily rows per creative, oldest first.  Creatives with no rows map to ``[]``."""
    result: dict[uuid.UUID, list[DailyMetrics]] = defaultdict(list)
    for creative_id in creative_ids:
        result[creative_id] = []
    if not creative_ids:
        return dict(result)

    query = select(MetricSnapshot).where(MetricSnapshot.creative_id.in_(list(creative_ids)))
    if start is not None:
        query = query.where(MetricSnapshot.snapshot_date >= start)
    if end is not None:
        query = query.where(MetricSnapshot.snapshot_date <= end)
    query = query.order_by(MetricSnapshot.snapshot_date.asc())

    with store_guard(db, "load metric snapshots"):
        rows = db.execute(query).scalars().all()
    for row in rows:
        result[row.creative_id].append(_from_row(row))
    return dict(result)


def load_daily_metrics(
    db: Session,
    creative_id: uuid.UUID,
    *,
    start: date | None = None,
    end: date | None = None,
) -> list[DailyMetrics]:
    return load_daily_metrics_many(db, [creative_id], start=start, end=end)[creative_id]


def lookback_window(lookback_days: int, *, today: date | None = None) -> tuple[date, date]:
    """Inclusive ``(start, end)`` covering the last *lookback_days* days."""
    end = today or date.today()
    return end - timedelta(days=max(lookback_days, 1) - 1), end
