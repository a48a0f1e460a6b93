"""Statistical analysis of experiment outcomes.

Two-proportion z-test over per-variant (users, conversions) counts, plus
confidence mapping, lift, and sample-size planning.

Every function here is total: guard conditions (too few users, a pooled
proportion of 0 or 1, identical rates) produce neutral sentinel values
instead of exceptions.
Callers should show a zero z-score as "inconclusive", not "0% confidence".
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, Sequence

# Arms with fewer users than this are not compared at all
MIN_USERS_PER_ARM = 10

# Minimum per-variant sample before a status message reports anything
MIN_SAMPLE_FOR_STATUS = 100

DEFAULT_SIGNIFICANCE_THRESHOLD = 1.96

# (|z| lower bound, confidence %), highest first
CONFIDENCE_BREAKPOINTS: tuple[tuple[float, int], ...] = (
    (2.576, 99),
    (1.960, 95),
    (1.645, 90),
    (1.282, 80),
)

# Below the 80% breakpoint confidence is interpolated linearly. This is a
# display heuristic, not a statistical table: 0.674 -> 50% and the slope
# reaches 80% at |z| = 1.282. Under 0.674 it ramps linearly from 0.
INTERPOLATION_ANCHOR_Z = 0.674
INTERPOLATION_ANCHOR_CONFIDENCE = 50
INTERPOLATION_SLOPE = 49.2

# Two-sided critical values keyed by confidence level (%)
Z_ALPHA_BY_CONFIDENCE: dict[int, float] = {
    80: 1.282,
    90: 1.645,
    95: 1.960,
    99: 2.576,
}
DEFAULT_Z_ALPHA = 1.960

# One-sided critical values keyed by statistical power
Z_BETA_BY_POWER: dict[float, float] = {
    0.7: 0.524,
    0.8: 0.842,
    0.9: 1.282,
}
DEFAULT_Z_BETA = 0.842


class Arm(Protocol):
    users: int
    conversions: int


@dataclass(frozen=True)
class Counts:
    """Plain (users, conversions) pair for callers without richer stats."""
    users: int
    conversions: int


class ResultState(str, Enum):
    INSUFFICIENT_DATA = "insufficient_data"
    TRENDING = "trending"
    INCONCLUSIVE = "inconclusive"
    WINNER_FOUND = "winner_found"
    SIGNIFICANT = "significant"


@dataclass(frozen=True)
class AnalysisSummary:
    is_significant: bool = False
    winner: str | None = None
    confidence_level: int | None = None
    z_score: float | None = None
    lift_percentage: float | None = None


def _rate(arm: Arm) -> float:
    return arm.conversions / arm.users if arm.users > 0 else 0.0


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def calculate_z_score(control: Arm, variant: Arm) -> float:
    """Pooled two-proportion z-score; positive means the variant is better."""
    n1, n2 = control.users, variant.users
    if n1 < MIN_USERS_PER_ARM or n2 < MIN_USERS_PER_ARM:
        return 0.0

    p1 = control.conversions / n1
    p2 = variant.conversions / n2
    pooled = (control.conversions + variant.conversions) / (n1 + n2)
    if pooled <= 0 or pooled >= 1:
        return 0.0

    se = math.sqrt(pooled * (1 - pooled) * (1 / n1 + 1 / n2))
    if se == 0:
        return 0.0
    return (p2 - p1) / se


def get_confidence_level(z_score: float) -> int:
    """Map |z| to a confidence percentage.

    The 80/90/95/99 breakpoints are the standard two-sided critical values.
    Anything below 80% is the interpolation heuristic described above and
    should only be used for display.
    """
    abs_z = abs(z_score)
    if math.isnan(abs_z):
        return 0
    for threshold, confidence in CONFIDENCE_BREAKPOINTS:
        if abs_z >= threshold:
            return confidence

    if abs_z >= INTERPOLATION_ANCHOR_Z:
        return _round_half_up(
            INTERPOLATION_ANCHOR_CONFIDENCE + (abs_z - INTERPOLATION_ANCHOR_Z) * INTERPOLATION_SLOPE
        )
    return _round_half_up(abs_z / INTERPOLATION_ANCHOR_Z * INTERPOLATION_ANCHOR_CONFIDENCE)


def calculate_lift(control: Arm, variant: Arm) -> float:
    """Relative change of the variant's conversion rate over control, in %.

    Lift from a zero baseline is undefined; it is reported as 100 when the
    variant converted at all and 0 otherwise.
    """
    control_rate = _rate(control)
    variant_rate = _rate(variant)
    if control_rate == 0:
        return 100.0 if variant_rate > 0 else 0.0
    return (variant_rate - control_rate) / control_rate * 100


def is_significant(z_score: float, threshold: float = DEFAULT_SIGNIFICANCE_THRESHOLD) -> bool:
    return abs(z_score) >= threshold


def calculate_minimum_sample_size(
    baseline_rate: float,
    minimum_detectable_effect: float,
    confidence_level: int = 95,
    power: float = 0.8,
) -> float:
    """Minimum users per variant for a two-proportion test.

    n = 2 * (Z_alpha + Z_beta)^2 * p(1 - p) / (p1 - p2)^2 where
    p2 = baseline * (1 + mde), kept within [0, 1], and p is the mean of p1 and p2.
    Unknown confidence levels fall back to 95%, unknown powers to 0.8.

    Returns an int, or math.inf when the effect is zero or an input is not finite.
    """
    z_alpha = Z_ALPHA_BY_CONFIDENCE.get(confidence_level, DEFAULT_Z_ALPHA)
    z_beta = Z_BETA_BY_POWER.get(power, DEFAULT_Z_BETA)

    if not (math.isfinite(baseline_rate) and math.isfinite(minimum_detectable_effect)):
        return math.inf

    p1 = baseline_rate
    p2 = max(0.0, min(1.0, baseline_rate * (1 + minimum_detectable_effect)))
    p_avg = (p1 + p2) / 2

    denominator = (p2 - p1) ** 2
    if denominator == 0:
        return math.inf
    numerator = 2 * (z_alpha + z_beta) ** 2 * p_avg * (1 - p_avg)
    return math.ceil(numerator / denominator)


def estimate_days_to_significance(
    daily_visitors: float,
    baseline_rate: float,
    minimum_detectable_effect: float,
    num_variants: int = 2,
    confidence_level: int = 95,
) -> float:
    per_variant = calculate_minimum_sample_size(
        baseline_rate, minimum_detectable_effect, confidence_level,
    )
    if daily_visitors <= 0 or math.isinf(per_variant):
        return math.inf
    return math.ceil(per_variant * num_variants / daily_visitors)


def _is_control(variant) -> bool:
    return variant.variant_id == "control" or variant.variant_name == "control"


def analyze_experiment(variants: Sequence) -> AnalysisSummary:
    """Compare every variant against control and report the strongest one.

    `variants` are VariantStats-like objects (variant_id, variant_name,
    users, conversions). Control is the variant identified as "control",
    else the first one. The winner is only set when the result is
    significant, and is control itself when the variant is worse.
    """
    if len(variants) < 2:
        return AnalysisSummary(is_significant=False)

    control = next((v for v in variants if _is_control(v)), variants[0])

    best = control
    best_z = 0.0
    best_lift = 0.0
    for variant in variants:
        if variant.variant_id == control.variant_id:
            continue
        z = calculate_z_score(control, variant)
        if abs(z) > abs(best_z):
            best, best_z = variant, z
            best_lift = calculate_lift(control, variant)

    significant = is_significant(best_z)
    winner = None
    if significant:
        winner = best.variant_id if best_z > 0 else control.variant_id

    return AnalysisSummary(
        is_significant=significant,
        winner=winner,
        confidence_level=get_confidence_level(best_z),
        z_score=round(best_z, 3),
        lift_percentage=round(best_lift, 1),
    )


def classify_results(
    confidence: int,
    significant: bool,
    winner: str | None = None,
    sample_size: int | None = None,
) -> ResultState:
    if not sample_size or sample_size < MIN_SAMPLE_FOR_STATUS:
        return ResultState.INSUFFICIENT_DATA
    if not significant:
        if confidence >= 80:
            return ResultState.TRENDING
        return ResultState.INCONCLUSIVE
    if winner:
        return ResultState.WINNER_FOUND
    return ResultState.SIGNIFICANT


def get_status_message(
    confidence: int,
    significant: bool,
    winner: str | None = None,
    sample_size: int | None = None,
) -> str:
    state = classify_results(confidence, significant, winner, sample_size)
    if state == ResultState.INSUFFICIENT_DATA:
        return f"Collecting data... Need at least {MIN_SAMPLE_FOR_STATUS} visitors per variant."
    if state == ResultState.TRENDING:
        return f"Trending towards significance ({confidence}% confidence). Continue test."
    if state == ResultState.INCONCLUSIVE:
        return "No significant difference detected yet. Continue running the test."
    if state == ResultState.WINNER_FOUND:
        return f"Winner found! {winner} with {confidence}% confidence."
    return f"Statistically significant result at {confidence}% confidence."
