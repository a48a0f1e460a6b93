"""Results summary for the experiment dashboard.

Turns per-variant counts from the analytics store into VariantStats, runs
the significance analysis, and adds the planning figures the dashboard
shows next to it.

The analytics store is reached through VariantCountsSource. If it fails,
the failure surfaces as ResultsUnavailableError. Counts are never
defaulted to zero.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

from pydantic import BaseModel

from src.experiments.errors import ResultsUnavailableError
from src.experiments.experiment import Experiment, ExperimentStatus
from src.experiments.stats import (
    analyze_experiment,
    calculate_minimum_sample_size,
    get_status_message,
)

logger = logging.getLogger(__name__)

# Planning assumptions for the "enough data" hint
DEFAULT_BASELINE_RATE = 0.05
PLANNING_MDE = 0.10


@dataclass(frozen=True)
class GoalCounts:
    goal_id: str
    conversions: int
    goal_name: str | None = None
    goal_type: str | None = None
    is_primary: bool = False
    total_revenue: float = 0.0


@dataclass(frozen=True)
class VariantCounts:
    """Aggregated counts for one variant, as returned by the analytics store."""
    variant_id: str
    users: int
    conversions: int
    goals: tuple[GoalCounts, ...] = ()


class VariantCountsSource(Protocol):
    def fetch_variant_counts(
        self,
        site_id: str,
        experiment_id: str,
        start_date: str | None = None,
        end_date: str | None = None,
    ) -> list[VariantCounts]:
        ...


class GoalStats(BaseModel):
    goal_id: str
    goal_name: str
    goal_type: str | None = None
    is_primary: bool = False
    conversions: int
    conversion_rate: float
    total_revenue: float | None = None
    avg_order_value: float | None = None
    revenue_per_visitor: float | None = None


class VariantStats(BaseModel):
    variant_id: str
    variant_name: str
    users: int
    conversions: int
    conversion_rate: float  # percent
    goals: list[GoalStats] = []


class ExperimentResults(BaseModel):
    experiment_id: str
    experiment_name: str
    status: ExperimentStatus
    total_users: int
    variants: list[VariantStats]
    winner: str | None = None
    confidence_level: int | None = None
    z_score: float | None = None
    lift_percentage: float | None = None
    is_significant: bool = False
    started_at: str | None = None
    days_running: int = 0
    status_message: str = ""
    minimum_sample_size: int | None = None
    has_enough_data: bool = False


def _percent(part: float, whole: int) -> float:
    return part / whole * 100 if whole > 0 else 0.0


def _goal_stats(goal: GoalCounts, users: int, goal_names: dict[str, str]) -> GoalStats:
    revenue = goal.total_revenue or None
    return GoalStats(
        goal_id=goal.goal_id,
        goal_name=goal.goal_name or goal_names.get(goal.goal_id, goal.goal_id),
        goal_type=goal.goal_type,
        is_primary=goal.is_primary,
        conversions=goal.conversions,
        conversion_rate=_percent(goal.conversions, users),
        total_revenue=revenue,
        avg_order_value=revenue / goal.conversions if revenue and goal.conversions else None,
        revenue_per_visitor=revenue / users if revenue and users else None,
    )


def build_variant_stats(experiment: Experiment, counts: list[VariantCounts]) -> list[VariantStats]:
    variant_names = {v.id: v.name for v in experiment.variants}
    goal_names = {
        str(g.get("id")): str(g.get("name"))
        for g in experiment.goals
        if isinstance(g, dict) and g.get("id") and g.get("name")
    }
    return [
        VariantStats(
            variant_id=row.variant_id,
            variant_name=variant_names.get(row.variant_id, row.variant_id),
            users=row.users,
            conversions=row.conversions,
            conversion_rate=_percent(row.conversions, row.users),
            goals=[_goal_stats(g, row.users, goal_names) for g in row.goals],
        )
        for row in counts
    ]


def days_since(started_at: str | None, now: datetime | None = None) -> int:
    if not started_at:
        return 0
    try:
        started = datetime.fromisoformat(str(started_at).replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Unparseable started_at %r, reporting 0 days running", started_at)
        return 0
    if started.tzinfo is None:
        started = started.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0, (now - started).days)


def compute_results(
    experiment: Experiment,
    source: VariantCountsSource,
    start_date: str | None = None,
    end_date: str | None = None,
    now: datetime | None = None,
) -> ExperimentResults:
    """Fetch counts for an experiment and build its results summary.

    Raises ResultsUnavailableError when the counts cannot be fetched.
    """
    try:
        counts = source.fetch_variant_counts(experiment.site_id, experiment.id, start_date, end_date)
    except Exception as exc:
        logger.error(
            "Fetching variant counts failed for experiment %s (site %s): %s",
            experiment.id, experiment.site_id, exc,
        )
        raise ResultsUnavailableError(experiment.site_id, experiment.id) from exc

    variants = build_variant_stats(experiment, counts)
    total_users = sum(v.users for v in variants)
    analysis = analyze_experiment(variants)

    baseline = (variants[0].conversion_rate / 100 if variants else 0) or DEFAULT_BASELINE_RATE
    minimum = calculate_minimum_sample_size(baseline, PLANNING_MDE)
    minimum_sample_size = None if math.isinf(minimum) or minimum <= 0 else int(minimum)

    return ExperimentResults(
        experiment_id=experiment.id,
        experiment_name=experiment.name,
        status=experiment.status,
        total_users=total_users,
        variants=variants,
        winner=analysis.winner,
        confidence_level=analysis.confidence_level,
        z_score=analysis.z_score,
        lift_percentage=analysis.lift_percentage,
        is_significant=analysis.is_significant,
        started_at=experiment.started_at,
        days_running=days_since(experiment.started_at, now),
        status_message=get_status_message(
            analysis.confidence_level or 0,
            analysis.is_significant,
            analysis.winner,
            total_users,
        ),
        minimum_sample_size=minimum_sample_size,
        has_enough_data=(
            minimum_sample_size is not None and total_users >= minimum_sample_size * 2
        ),
    )
