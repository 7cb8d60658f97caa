"""
Deterministic hashing, allocation gate and weighted selection.
"""

from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from content_engine.services.bucketing import (
    ALLOCATION_SALT,
    VARIANT_SALT,
    in_allocation,
    select_variant,
    stable_hash,
)

T0 = datetime(2024, 1, 1)


def fake_variant(variant_id, weight, offset):
    return SimpleNamespace(
        variant_id=variant_id,
        traffic_weight=weight,
        created_at=T0 + timedelta(seconds=offset),
    )


class TestStableHash:
    def test_is_pure(self):
        assert stable_hash("exp", "abc", ALLOCATION_SALT) == stable_hash(
            "exp", "abc", ALLOCATION_SALT
        )

    def test_in_unit_interval(self):
        for i in range(1000):
            value = stable_hash("exp", f"s{i}", VARIANT_SALT)
            assert 0.0 <= value < 1.0

    def test_salts_are_independent(self):
        assert stable_hash("exp", "abc", ALLOCATION_SALT) != stable_hash(
            "exp", "abc", VARIANT_SALT
        )

    def test_depends_on_experiment(self):
        assert stable_hash("exp-1", "abc", VARIANT_SALT) != stable_hash(
            "exp-2", "abc", VARIANT_SALT
        )


class TestAllocationGate:
    def test_zero_and_full_allocation(self):
        sessions = [f"session-{i}" for i in range(200)]
        assert not any(in_allocation("exp", s, 0) for s in sessions)
        assert all(in_allocation("exp", s, 100) for s in sessions)

    def test_allocation_converges(self):
        n = 10_000
        allocated = sum(in_allocation("exp-conv", f"session-{i}", 30) for i in range(n))
        assert allocated / n == pytest.approx(0.30, abs=0.02)

    def test_gate_is_monotonic_in_allocation(self):
        # A session inside 30% is also inside 60%
        for i in range(500):
            if in_allocation("exp", f"s{i}", 30):
                assert in_allocation("exp", f"s{i}", 60)


class TestSelectVariant:
    def test_walks_cumulative_weights_in_creation_order(self):
        # Passed out of order on purpose
        variants = [fake_variant("b", 30, 2), fake_variant("a", 10, 1), fake_variant("c", 60, 3)]

        assert select_variant(variants, 0.05).variant_id == "a"
        assert select_variant(variants, 0.10).variant_id == "b"
        assert select_variant(variants, 0.39).variant_id == "b"
        assert select_variant(variants, 0.40).variant_id == "c"
        assert select_variant(variants, 0.999).variant_id == "c"

    def test_weights_need_not_sum_to_100(self):
        variants = [fake_variant("a", 1, 1), fake_variant("b", 3, 2)]
        assert select_variant(variants, 0.24).variant_id == "a"
        assert select_variant(variants, 0.25).variant_id == "b"

    def test_zero_weight_never_selected(self):
        variants = [fake_variant("a", 0, 1), fake_variant("b", 5, 2), fake_variant("c", 0, 3)]
        for bucket in (0.0, 0.5, 0.9999):
            assert select_variant(variants, bucket).variant_id == "b"

    def test_no_weight_selects_nothing(self):
        assert select_variant([], 0.5) is None
        assert select_variant([fake_variant("a", 0, 1)], 0.5) is None

    def test_weight_convergence(self):
        variants = [fake_variant("control", 70, 1), fake_variant("treatment", 30, 2)]
        n = 10_000
        counts = {"control": 0, "treatment": 0}
        for i in range(n):
            bucket = stable_hash("exp-weights", f"session-{i}", VARIANT_SALT)
            counts[select_variant(variants, bucket).variant_id] += 1

        assert counts["control"] / n == pytest.approx(0.70, abs=0.02)
        assert counts["treatment"] / n == pytest.approx(0.30, abs=0.02)
