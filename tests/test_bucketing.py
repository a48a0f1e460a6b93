"""Tests for deterministic visitor bucketing and experiment definitions."""

import pytest

from src.experiments.bucketing import (
    assign_all_variants,
    assign_variant,
    get_bucket,
    verify_consistency,
)
from src.experiments.experiment import Experiment, ExperimentStatus, Variant


def _experiment(exp_id="exp_1", weights=(50, 50), traffic=100, status=ExperimentStatus.RUNNING):
    variants = tuple(
        Variant(id="control" if i == 0 else f"variant_{i}", name=f"v{i}", weight=w)
        for i, w in enumerate(weights)
    )
    return Experiment(
        id=exp_id,
        site_id="site_1",
        name="Test",
        status=status,
        variants=variants,
        traffic_percentage=traffic,
    )


class TestExperimentDefinition:
    def test_valid_experiment(self):
        exp = _experiment()
        assert len(exp.variants) == 2
        assert exp.has_equal_weights
        assert exp.total_weight == 100

    def test_weights_need_not_sum_to_100(self):
        exp = _experiment(weights=(1, 3))
        assert exp.total_weight == 4
        assert not exp.has_equal_weights

    def test_negative_weight_rejected(self):
        with pytest.raises(ValueError, match="non-negative"):
            Variant(id="a", name="a", weight=-1)

    def test_traffic_percentage_range(self):
        with pytest.raises(ValueError, match="between 0 and 100"):
            _experiment(traffic=101)

    def test_variant_ids_must_be_unique(self):
        with pytest.raises(ValueError, match="unique"):
            Experiment(
                id="e", site_id="s", name="n",
                variants=(Variant("a", "a"), Variant("a", "b")),
            )

    def test_from_dict(self):
        exp = Experiment.from_dict({
            "id": "exp_9",
            "site_id": "site_9",
            "name": "Hero copy",
            "status": "running",
            "traffic_percentage": 40,
            "variants": [
                {"id": "control", "name": "control", "weight": 70},
                {"id": "v1", "name": "Bold headline", "weight": 30},
            ],
            "started_at": "2024-12-14T00:00:00Z",
        })
        assert exp.is_running
        assert exp.traffic_percentage == 40
        assert [v.weight for v in exp.variants] == [70, 30]
        assert exp.variants[1].name == "Bold headline"


class TestGetBucket:
    def test_deterministic(self):
        """Same visitor + experiment always gets the same bucket."""
        first = get_bucket("visitor_001", "exp_1", 7)
        for _ in range(100):
            assert get_bucket("visitor_001", "exp_1", 7) == first

    def test_in_range(self):
        for i in range(1000):
            assert 0 <= get_bucket(f"visitor_{i}", "exp_1", 3) < 3

    def test_non_positive_total(self):
        assert get_bucket("visitor", "exp", 0) == 0
        assert get_bucket("visitor", "exp", -5) == 0

    def test_verify_consistency(self):
        consistent, bucket = verify_consistency("visitor_42", "exp_1", 4)
        assert consistent
        assert bucket == get_bucket("visitor_42", "exp_1", 4)


class TestAssignVariant:
    def test_deterministic(self):
        exp = _experiment()
        first = assign_variant("visitor_001", exp)
        for _ in range(100):
            assert assign_variant("visitor_001", exp) == first

    def test_uniform_split(self):
        """50/50 experiment stays within 2 points of an even split."""
        exp = _experiment()
        n = 100_000
        control = sum(
            1 for i in range(n) if assign_variant(f"visitor_{i}", exp).id == "control"
        )
        assert 0.48 <= control / n <= 0.52

    def test_weighted_split(self):
        exp = _experiment(weights=(10, 30, 60))
        n = 100_000
        counts = {v.id: 0 for v in exp.variants}
        for i in range(n):
            variant = assign_variant(f"visitor_{i}", exp)
            assert variant is not None
            counts[variant.id] += 1
        assert sum(counts.values()) == n
        assert abs(counts["control"] / n - 0.10) < 0.02
        assert abs(counts["variant_1"] / n - 0.30) < 0.02
        assert abs(counts["variant_2"] / n - 0.60) < 0.02

    def test_zero_weight_variant_never_assigned(self):
        exp = _experiment(weights=(0, 100))
        for i in range(2000):
            assert assign_variant(f"visitor_{i}", exp).id == "variant_1"

    def test_traffic_exclusion(self):
        exp = _experiment(weights=(50, 50), traffic=30)
        n = 50_000
        assigned = [assign_variant(f"visitor_{i}", exp) for i in range(n)]
        enrolled = [v for v in assigned if v is not None]
        assert abs(len(enrolled) / n - 0.30) < 0.02
        control = sum(1 for v in enrolled if v.id == "control")
        assert abs(control / len(enrolled) - 0.50) < 0.03

    def test_zero_traffic_excludes_everyone(self):
        exp = _experiment(traffic=0)
        assert all(assign_variant(f"visitor_{i}", exp) is None for i in range(500))

    def test_no_variants(self):
        exp = _experiment(weights=())
        assert assign_variant("visitor_1", exp) is None

    def test_different_experiments_differ(self):
        exp_a = _experiment("exp_a")
        exp_b = _experiment("exp_b")
        assert any(
            assign_variant(f"visitor_{i}", exp_a) != assign_variant(f"visitor_{i}", exp_b)
            for i in range(100)
        )


class TestAssignAllVariants:
    def test_only_running_experiments(self):
        running = _experiment("running")
        paused = _experiment("paused", status=ExperimentStatus.PAUSED)
        draft = _experiment("draft", status=ExperimentStatus.DRAFT)
        result = assign_all_variants("visitor_1", [running, paused, draft])
        assert set(result) == {"running"}
        assert result["running"] in {"control", "variant_1"}

    def test_omits_empty_and_excluded(self):
        empty = _experiment("empty", weights=())
        closed = _experiment("closed", traffic=0)
        result = assign_all_variants("visitor_1", [empty, closed])
        assert result == {}

    def test_matches_single_assignment(self):
        exps = [_experiment(f"exp_{i}", weights=(20, 80)) for i in range(5)]
        result = assign_all_variants("visitor_7", exps)
        for exp in exps:
            assert result[exp.id] == assign_variant("visitor_7", exp).id
