"""Deterministic visitor bucketing.

Assignment is hash-based: given the same (visitor_id, experiment_id) pair,
the visitor always lands in the same bucket. No randomness and no stored
per-visitor state is involved, so assignment can run on every request.

This guarantees:
- Consistency: same visitor always sees the same variant
- Reproducibility: assignments can be verified independently
- No coordination: no database lookups needed for assignment
"""

import hashlib

from src.experiments.experiment import Experiment, Variant

# Appended to the experiment id for the enrolment decision so that
# "is the visitor in the experiment" and "which variant" are independent.
TRAFFIC_SUFFIX = "_traffic"


def get_bucket(visitor_id: str, experiment_id: str, total: int = 2) -> int:
    """Map (visitor_id, experiment_id) to a bucket in [0, total).

    Uses the first 4 bytes of SHA-256("{visitor_id}-{experiment_id}") as an
    unsigned int. A non-positive total yields bucket 0.
    """
    if total <= 0:
        return 0
    digest = hashlib.sha256(f"{visitor_id}-{experiment_id}".encode()).digest()
    return int.from_bytes(digest[:4], "big") % total


def is_enrolled(visitor_id: str, experiment: Experiment) -> bool:
    if experiment.traffic_percentage >= 100:
        return True
    bucket = get_bucket(visitor_id, f"{experiment.id}{TRAFFIC_SUFFIX}", 100)
    return bucket < experiment.traffic_percentage


def assign_variant(visitor_id: str, experiment: Experiment) -> Variant | None:
    """Assign a visitor to a variant deterministically.

    Returns None when the visitor falls outside the experiment's traffic
    percentage or the experiment has no variants.
    """
    if not is_enrolled(visitor_id, experiment):
        return None

    variants = experiment.variants
    if not variants:
        return None

    # Fast path: equal weights (most common)
    if experiment.has_equal_weights:
        return variants[get_bucket(visitor_id, experiment.id, len(variants))]

    bucket = get_bucket(visitor_id, experiment.id, experiment.total_weight)
    cumulative = 0
    for variant in variants:
        cumulative += variant.weight
        if bucket < cumulative:
            return variant

    # Unreachable: the final cumulative sum equals total_weight > bucket
    return variants[-1]


def assign_all_variants(visitor_id: str, experiments: list[Experiment]) -> dict[str, str]:
    """Assign a visitor across every running experiment.

    Returns experiment_id -> variant_id. Experiments that are not running,
    have no variants, or exclude the visitor are left out.
    """
    assignments: dict[str, str] = {}
    for experiment in experiments:
        if not experiment.is_running:
            continue
        variant = assign_variant(visitor_id, experiment)
        if variant is not None:
            assignments[experiment.id] = variant.id
    return assignments


def verify_consistency(
    visitor_id: str,
    experiment_id: str,
    total: int = 2,
    iterations: int = 100,
) -> tuple[bool, int]:
    """Recompute a bucket repeatedly; returns (consistent, first_bucket)."""
    first = get_bucket(visitor_id, experiment_id, total)
    for _ in range(iterations):
        if get_bucket(visitor_id, experiment_id, total) != first:
            return False, first
    return True, first
