import logging
import random
import pytest
import sys
import os

# Add src to path for internal imports
src_path = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'src')
if src_path not in sys.path:
    sys.path.insert(0, src_path)

from promo_engine.engine.models import Discount
from promo_engine.engine.stacking import StackingResolver


@pytest.fixture
def resolver():
    return StackingResolver(max_exclusive_candidates=12)


def test_picks_best_exclusive_plus_stackables(resolver):
    """Two non-stackable (1000, 1500) and one stackable (200): 1500 + 200 wins."""
    discounts = [
        Discount("SAVE10", "fixed", 1000, priority=5, stackable=False),
        Discount("SAVE15", "fixed", 1500, priority=1, stackable=False),
        Discount("EXTRA2", "fixed", 200, priority=0, stackable=True),
    ]
    result = resolver.resolve(10000, discounts)

    assert result.total_discount == 1700
    assert result.final_amount == 8300
    assert sorted(result.applied_ids) == ["EXTRA2", "SAVE15"]
    assert result.strategy == "search"
    assert resolver.can_stack([d for d in discounts if d.discount_id in result.applied_ids])


def test_single_exclusive_applies_greedily(resolver):
    discounts = [
        Discount("A", "fixed", 2000, priority=10, stackable=False),
        Discount("B", "percentage", 10, priority=5),
    ]
    result = resolver.resolve(10000, discounts)
    # 10% is taken from what remains after the higher-priority fixed discount
    assert [(a.discount_id, a.amount) for a in result.applied_discounts] == [("A", 2000), ("B", 800)]
    assert result.strategy == "greedy"


def test_never_discounts_below_zero(resolver):
    discounts = [
        Discount("BIG", "fixed", 8000, priority=2),
        Discount("BIGGER", "fixed", 5000, priority=1),
    ]
    result = resolver.resolve(10000, discounts)
    assert result.final_amount == 0
    assert result.total_discount == 10000
    assert [a.amount for a in result.applied_discounts] == [8000, 2000]


def test_max_amount_respected(resolver):
    result = resolver.resolve(100000, [Discount("CAP", "percentage", 50, max_amount=2500)])
    assert result.total_discount == 2500


def test_priority_ties_broken_by_id(resolver):
    discounts = [
        Discount("B", "percentage", 10, priority=1),
        Discount("A", "percentage", 10, priority=1),
    ]
    result = resolver.resolve(10000, discounts)
    assert [(a.discount_id, a.amount) for a in result.applied_discounts] == [("A", 1000), ("B", 900)]


def test_same_input_same_combination(resolver):
    discounts = [
        Discount(f"X{i}", "fixed", 100 * i, priority=i % 3, stackable=(i % 2 == 0))
        for i in range(1, 9)
    ]
    expected = resolver.resolve(20000, discounts)
    rng = random.Random(7)
    for _ in range(10):
        shuffled = discounts[:]
        rng.shuffle(shuffled)
        result = resolver.resolve(20000, shuffled)
        assert result.applied_ids == expected.applied_ids
        assert result.total_discount == expected.total_discount


def test_equal_exclusives_prefer_higher_priority(resolver):
    discounts = [
        Discount("LOW", "fixed", 1000, priority=1, stackable=False),
        Discount("HIGH", "fixed", 1000, priority=9, stackable=False),
    ]
    assert resolver.resolve(5000, discounts).applied_ids == ["HIGH"]


def test_exclusive_cap_falls_back_to_greedy(caplog):
    """Above the candidate cap the first non-stackable by priority wins."""
    resolver = StackingResolver(max_exclusive_candidates=12)
    discounts = [
        Discount(f"N{i:02d}", "fixed", 100 + i, priority=i, stackable=False)
        for i in range(13)
    ]
    discounts.append(Discount("S", "fixed", 50, priority=100))

    with caplog.at_level(logging.INFO, logger="promo_engine.engine.stacking"):
        result = resolver.resolve(10000, discounts)

    assert result.strategy == "greedy_fallback"
    assert result.applied_ids == ["S", "N12"]
    assert any("fallback" in r.message for r in caplog.records)


def test_at_cap_still_searches():
    resolver = StackingResolver(max_exclusive_candidates=12)
    discounts = [Discount(f"N{i:02d}", "fixed", 100 * (i + 1), priority=12 - i, stackable=False) for i in range(12)]
    result = resolver.resolve(100000, discounts)
    assert result.strategy == "search"
    assert result.applied_ids == ["N11"]
    assert result.total_discount == 1200


def test_no_discounts(resolver):
    result = resolver.resolve(4200, [])
    assert result.total_discount == 0
    assert result.final_amount == 4200
    assert result.applied_discounts == []


def test_totals_stay_within_bounds(resolver):
    """Random carts: final amount in [0, original], total = original - final."""
    rng = random.Random(42)
    for _ in range(200):
        original = rng.randint(0, 50000)
        discounts = []
        for i in range(rng.randint(0, 8)):
            if rng.random() < 0.5:
                discounts.append(Discount(f"P{i}", "percentage", rng.randint(0, 100),
                                          priority=rng.randint(0, 5), stackable=rng.random() < 0.6,
                                          max_amount=rng.choice([None, rng.randint(0, 5000)])))
            else:
                discounts.append(Discount(f"F{i}", "fixed", rng.randint(0, 30000),
                                          priority=rng.randint(0, 5), stackable=rng.random() < 0.6))
        result = resolver.resolve(original, discounts)

        assert 0 <= result.final_amount <= original
        assert result.total_discount == original - result.final_amount
        assert sum(a.amount for a in result.applied_discounts) == result.total_discount
        assert resolver.can_stack([d for d in discounts if d.discount_id in result.applied_ids])
