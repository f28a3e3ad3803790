import numpy as np
import pytest
import sys
import os

sys.path.append(os.path.join(os.path.dirname(__file__), ".."))

from pe_households import households_from_values
from pe_metrics import BlockMetrics, compute_block_metrics
from pe_selection import (
    BudgetInfeasible,
    GlobalGreedyStrategy,
    HouseholdGreedyStrategy,
    PairwiseUniquenessStrategy,
    RandomStrategy,
    budget_for_ratio,
    decode_edge,
    edge_count,
    encode_edge,
    make_strategy,
    select,
    steps_for_ratio,
    uniqueness_score,
)


def _fixed_metrics(entropy):
    entropy = np.asarray(entropy, dtype=np.float64)
    return BlockMetrics(
        entropy=entropy,
        transition=np.zeros(entropy.shape, dtype=np.int64),
        entropy_sum=float(entropy.sum()),
        transition_sum=0,
        target="entropy",
        target_min=float(entropy.min()),
        target_max=float(entropy.max()),
        tables=None,
    )


ENTROPY = [
    [9, 1, 1, 1],
    [8, 7, 1, 2],
    [6, 5, 4, 3],
]


@pytest.fixture
def three_households():
    rng = np.random.default_rng(0)
    return households_from_values([rng.integers(0, 9, size=8) for _ in range(3)])


def test_budget_helpers():
    assert steps_for_ratio(0, 4) == 0
    assert steps_for_ratio(10, 4) == 1
    assert steps_for_ratio(100, 4) == 4
    assert budget_for_ratio(50, 2, 8) == 8
    assert budget_for_ratio(33, 3, 10) == 9


def test_global_greedy_step_marks_best_blocks(three_households):
    strategy = GlobalGreedyStrategy(three_households, _fixed_metrics(ENTROPY), 2)
    picked = strategy.pick_next()
    assert picked == [(0, 0), (1, 0), (1, 1)]
    assert strategy.marked_blocks() == {(0, 0), (1, 0), (1, 1)}


def test_global_greedy_is_monotone(three_households):
    strategy = GlobalGreedyStrategy(three_households, _fixed_metrics(ENTROPY), 2)
    previous = set()
    for e in range(1, 5):
        strategy.advance_to(e)
        marked = strategy.marked_blocks()
        assert previous <= marked
        assert len(marked) == e * 3
        previous = marked
    assert strategy.done()
    assert strategy.record_mask().all()


def test_global_greedy_steps_grow_strictly(three_households):
    metrics = _fixed_metrics([[3, 1, 2, 0], [2, 2, 3, 1], [1, 0, 3, 2]])
    strategy = GlobalGreedyStrategy(three_households, metrics, 2)
    strategy.advance_to(1)
    first = strategy.marked_blocks()
    assert first == {(0, 0), (1, 2), (2, 2)}
    strategy.advance_to(2)
    second = strategy.marked_blocks()
    assert first < second
    assert second - first == {(0, 2), (1, 0), (1, 1)}


def test_household_greedy_marks_one_block_per_household(three_households):
    strategy = HouseholdGreedyStrategy(three_households, _fixed_metrics(ENTROPY), 2)
    assert strategy.pick_next() == [(0, 0), (1, 0), (2, 0)]
    assert strategy.pick_next() == [(0, 1), (1, 1), (2, 1)]
    assert strategy.block_mask().sum(axis=1).tolist() == [2, 2, 2]


def test_random_exhausts_all_blocks():
    households = households_from_values([np.arange(10)])
    metrics = compute_block_metrics(households, 2, threshold=1)
    strategy = RandomStrategy(households, metrics, 2, rng=np.random.default_rng(11))
    assert strategy.blocks == 5
    for e in range(1, 6):
        strategy.pick_next()
        assert strategy.marked_blocks() == {(0, int(b)) for b in strategy.flag[0, 5 - e:]}
        assert len(strategy.marked_blocks()) == e
    assert sorted(strategy.flag[0].tolist()) == [0, 1, 2, 3, 4]
    assert strategy.done()
    assert strategy.pick_next() == []
    assert strategy.record_mask().all()


def test_budget_above_blocks_is_clamped():
    households = households_from_values([np.arange(10)])
    metrics = compute_block_metrics(households, 2, threshold=1)
    strategy = RandomStrategy(households, metrics, 2, rng=np.random.default_rng(1))
    with pytest.warns(BudgetInfeasible):
        clamped = select(strategy, 150)
    assert clamped
    assert strategy.record_mask().all()


def test_make_strategy_rejects_unknown_name(three_households):
    with pytest.raises(ValueError):
        make_strategy("fastest", three_households, _fixed_metrics(ENTROPY), 2)


# ----------------------------
# Edge indexing
# ----------------------------

def test_edge_decode_examples():
    assert edge_count(3, 2) == 12
    assert decode_edge(0, 3, 2) == (0, 0, 1, 0)
    assert decode_edge(4, 3, 2) == (0, 0, 2, 0)
    assert decode_edge(11, 3, 2) == (1, 1, 2, 1)
    with pytest.raises(IndexError):
        decode_edge(12, 3, 2)


@pytest.mark.parametrize("households,blocks", [(2, 1), (3, 2), (4, 3)])
def test_edge_encoding_is_a_bijection(households, blocks):
    total = edge_count(households, blocks)
    decoded = [decode_edge(i, households, blocks) for i in range(total)]
    assert len(set(decoded)) == total
    for i, (h1, b1, h2, b2) in enumerate(decoded):
        assert h1 < h2
        assert encode_edge(h1, b1, h2, b2, households, blocks) == i


def test_encode_edge_orders_endpoints():
    assert encode_edge(2, 1, 1, 0, 3, 2) == encode_edge(1, 0, 2, 1, 3, 2)
    with pytest.raises(ValueError):
        encode_edge(1, 0, 1, 1, 3, 2)


# ----------------------------
# Pairwise uniqueness
# ----------------------------

def _pairwise(series, block_size, ratio):
    households = households_from_values(series)
    metrics = compute_block_metrics(households, block_size, threshold=1)
    return PairwiseUniquenessStrategy(households, metrics, block_size, ratio=ratio)


def test_uniqueness_score_weights():
    a = np.array([1, 2, 3, 4])
    b = np.array([1, 5, 3, 6])
    none = np.zeros(4, dtype=bool)
    assert uniqueness_score(a, none, b, none) == 2.0
    flags = np.array([True, False, False, False])
    assert uniqueness_score(a, flags, b, none) == pytest.approx(2.9)
    assert uniqueness_score(a, none, b, none, valid=np.array([True, True, False, False])) == 1.0


def test_pairwise_scores_are_symmetric():
    rng = np.random.default_rng(5)
    strategy = _pairwise([rng.integers(0, 3, size=8) for _ in range(3)], 4, ratio=20)
    strategy.run_to_budget()
    for h1, b1, h2, b2 in [(0, 0, 1, 1), (1, 0, 2, 0), (0, 1, 2, 1)]:
        assert strategy.score(h1, b1, h2, b2) == pytest.approx(strategy.score(h2, b2, h1, b1))
    pair = strategy.pair_scores(0, 1)
    assert pair[0, 1] == pytest.approx(strategy.score(0, 0, 1, 1))


def test_pairwise_marks_most_distinct_pair_up_to_budget():
    series = [np.arange(1, 9), np.arange(11, 19)]
    strategy = _pairwise(series, 4, ratio=50)
    assert strategy.budget == 8
    strategy.run_to_budget()
    assert strategy.marked_count() == 8
    expected = [True] * 4 + [False] * 4
    assert strategy.record_mask().tolist() == [expected, expected]


def test_pairwise_stops_exactly_at_budget():
    strategy = _pairwise([np.arange(1, 9), np.arange(11, 19)], 4, ratio=25)
    strategy.run_to_budget()
    expected = [True, True] + [False] * 6
    assert strategy.record_mask().tolist() == [expected, expected]
    assert strategy.record_mask().sum() == strategy.budget == 4


def test_pairwise_stalls_without_distinguishable_pairs():
    strategy = _pairwise([np.full(8, 5), np.full(8, 5)], 4, ratio=50)
    assert strategy.run_to_budget() == 0
    assert strategy.done() and strategy.stalled
    assert not strategy.record_mask().any()


def test_pairwise_never_marks_padding():
    strategy = _pairwise([np.arange(1, 7), np.arange(11, 17)], 4, ratio=100)
    pair = strategy.pair_scores(0, 1)
    assert pair[1, 1] == 2.0
    strategy.run_to_budget()
    assert not strategy.greedy_flags[:, 1, 2:].any()
    assert strategy.marked_count() == strategy.record_mask().sum()
    # the fully marked first pair keeps outscoring the rest, so the pass stalls
    assert strategy.stalled and strategy.marked_count() == 8
