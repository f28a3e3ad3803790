"""
Selection strategies for partial encryption
-------------------------------------------
Each strategy owns its mask state and exposes the same capabilities:
`score`, `pick_next` (one selection step), `done`, `record_mask`.

- global-greedy:       per step, P picks of the best unmarked block over all
                       households.
- household-greedy:    per step, every household marks its best unmarked block.
- random:              per step, every household marks one block drawn from a
                       shrinking permutation.
- pairwise-uniqueness: marks individual records of the most distinguishable
                       pair of blocks until a record budget is reached.
"""

import math
import warnings
from typing import List, Sequence, Tuple

import numpy as np

from pe_households import Household, block_count, block_mask_to_record_mask, padded_blocks
from pe_metrics import BlockMetrics

STRATEGY_GLOBAL = "global-greedy"
STRATEGY_HOUSEHOLD = "household-greedy"
STRATEGY_RANDOM = "random"
STRATEGY_PAIRWISE = "pairwise-uniqueness"

# weight of a record pair where either side is already marked
MARKED_WEIGHT = 0.9


class BudgetInfeasible(UserWarning):
    """Requested encryption budget exceeds what the households can hold."""


def steps_for_ratio(ratio: float, blocks: int) -> int:
    return math.ceil(blocks * ratio / 100)


def budget_for_ratio(ratio: float, households: int, rows: int) -> int:
    return int(households * rows * ratio // 100)


# ----------------------------
# Edge indexing (pairwise-uniqueness)
# ----------------------------

def edge_count(households: int, blocks: int) -> int:
    return households * (households - 1) * blocks * blocks // 2


def decode_edge(index: int, households: int, blocks: int) -> Tuple[int, int, int, int]:
    if not 0 <= index < edge_count(households, blocks):
        raise IndexError(f"edge {index} out of range for P={households}, B={blocks}")
    per_pair = blocks * blocks
    first = 0
    while index >= (households - 1 - first) * per_pair:
        index -= (households - 1 - first) * per_pair
        first += 1
    second = first + 1 + index // per_pair
    index %= per_pair
    return first, index // blocks, second, index % blocks


def encode_edge(first: int, first_block: int, second: int, second_block: int,
                households: int, blocks: int) -> int:
    if first == second:
        raise ValueError("an edge joins blocks of two different households")
    if first > second:
        first, first_block, second, second_block = second, second_block, first, first_block
    per_pair = blocks * blocks
    offset = sum((households - 1 - h) * per_pair for h in range(first))
    return offset + (second - first - 1) * per_pair + first_block * blocks + second_block


def uniqueness_score(first: np.ndarray, first_flags: np.ndarray,
                     second: np.ndarray, second_flags: np.ndarray, valid=None) -> float:
    marked = np.asarray(first_flags, dtype=bool) | np.asarray(second_flags, dtype=bool)
    weights = np.where(marked, MARKED_WEIGHT, (np.asarray(first) != np.asarray(second)).astype(np.float64))
    if valid is not None:
        weights = np.where(valid, weights, 0.0)
    return float(weights.sum())


# ----------------------------
# Strategies
# ----------------------------

class SelectionStrategy:
    name = None

    def __init__(self, households: Sequence[Household], metrics: BlockMetrics, block_size: int,
                 target: str = None, rng: np.random.Generator = None):
        if not households:
            raise ValueError("selection needs at least one household")
        self.households = list(households)
        self.metrics = metrics
        self.block_size = block_size
        self.target = target or metrics.target
        self.rng = rng if rng is not None else np.random.default_rng()
        self.rows = self.households[0].length
        self.blocks = block_count(self.rows, block_size)
        self.steps_taken = 0

    @property
    def household_count(self) -> int:
        return len(self.households)

    def score(self, household: int, block: int) -> float:
        return float(self.metrics.target_values(self.target)[household, block])

    def pick_next(self) -> List[Tuple[int, int]]:
        raise NotImplementedError

    def done(self) -> bool:
        raise NotImplementedError

    def record_mask(self) -> np.ndarray:
        raise NotImplementedError

    def marked_count(self) -> int:
        return int(self.record_mask().sum())

    def block_mask(self) -> np.ndarray:
        """Blocks whose every record is marked."""
        mask = np.zeros((self.household_count, self.blocks * self.block_size), dtype=bool)
        mask[:, : self.rows] = self.record_mask()
        mask[:, self.rows:] = True
        return mask.reshape(self.household_count, self.blocks, self.block_size).all(axis=2)


class BlockStrategy(SelectionStrategy):
    """Strategies that mark whole blocks, one selection step at a time."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.marks = np.zeros((self.household_count, self.blocks), dtype=bool)

    def done(self) -> bool:
        return bool(self.marks.all())

    def record_mask(self) -> np.ndarray:
        return block_mask_to_record_mask(self.marks, self.rows, self.block_size)

    def block_mask(self) -> np.ndarray:
        return self.marks.copy()

    def marked_blocks(self):
        return {(int(h), int(b)) for h, b in zip(*np.nonzero(self.marks))}

    def advance_to(self, steps: int) -> bool:
        """Run selection steps until `steps` have been taken.

        Returns True when the request was clamped to the number of blocks.
        """
        clamped = steps > self.blocks
        if clamped:
            warnings.warn(f"{steps} steps requested but only {self.blocks} blocks per household; "
                          f"clamping", BudgetInfeasible, stacklevel=2)
            steps = self.blocks
        while self.steps_taken < steps and not self.done():
            self.pick_next()
        return clamped

    def _available_scores(self) -> np.ndarray:
        return np.where(self.marks, -np.inf, self.metrics.target_values(self.target))


class GlobalGreedyStrategy(BlockStrategy):
    name = STRATEGY_GLOBAL

    def pick_next(self):
        picked = []
        for _ in range(self.household_count):
            available = self._available_scores()
            k = int(np.argmax(available))
            if np.isneginf(available.flat[k]):
                break
            h, b = divmod(k, self.blocks)
            self.marks[h, b] = True
            picked.append((h, b))
        self.steps_taken += 1
        return picked


class HouseholdGreedyStrategy(BlockStrategy):
    name = STRATEGY_HOUSEHOLD

    def pick_next(self):
        picked = []
        available = self._available_scores()
        for h in range(self.household_count):
            b = int(np.argmax(available[h]))
            if np.isneginf(available[h, b]):
                continue
            self.marks[h, b] = True
            picked.append((h, b))
        self.steps_taken += 1
        return picked


class RandomStrategy(BlockStrategy):
    """The tail of each household's `flag` permutation holds its marked blocks."""

    name = STRATEGY_RANDOM

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.flag = np.tile(np.arange(self.blocks), (self.household_count, 1))

    def done(self) -> bool:
        return self.steps_taken >= self.blocks

    def pick_next(self):
        if self.done():
            return []
        step = self.steps_taken + 1
        tail = self.blocks - step
        picked = []
        for h in range(self.household_count):
            r = int(self.rng.integers(self.blocks - step + 1))
            self.flag[h, r], self.flag[h, tail] = self.flag[h, tail], self.flag[h, r]
            b = int(self.flag[h, tail])
            self.marks[h, b] = True
            picked.append((h, b))
        self.steps_taken = step
        return picked


class PairwiseUniquenessStrategy(SelectionStrategy):
    name = STRATEGY_PAIRWISE

    def __init__(self, households, metrics, block_size, target=None, rng=None, ratio: float = 0):
        super().__init__(households, metrics, block_size, target=target, rng=rng)
        self.greedy_inputs = np.stack([padded_blocks(h.decorated, block_size) for h in self.households])
        self.greedy_flags = np.zeros(self.greedy_inputs.shape, dtype=bool)
        # zero padding of the last block is never scored or marked
        self.valid = (np.arange(self.blocks * block_size) < self.rows).reshape(self.blocks, block_size)
        self.budget = 0
        self.marked = 0
        self.stalled = False
        self.set_budget(ratio)

    def set_budget(self, ratio: float) -> bool:
        budget = budget_for_ratio(ratio, self.household_count, self.rows)
        limit = self.household_count * self.rows
        clamped = budget > limit
        if clamped:
            warnings.warn(f"budget of {budget} records exceeds {limit}; clamping",
                          BudgetInfeasible, stacklevel=2)
            budget = limit
        self.budget = budget
        self.stalled = False
        return clamped

    def score(self, first: int, first_block: int, second: int = None, second_block: int = None) -> float:
        if second is None:
            return super().score(first, first_block)
        return uniqueness_score(
            self.greedy_inputs[first, first_block], self.greedy_flags[first, first_block],
            self.greedy_inputs[second, second_block], self.greedy_flags[second, second_block],
            valid=self.valid[first_block] & self.valid[second_block],
        )

    def pair_scores(self, first: int, second: int) -> np.ndarray:
        """(B, B) uniqueness scores between every block of two households."""
        differ = self.greedy_inputs[first][:, None, :] != self.greedy_inputs[second][None, :, :]
        marked = self.greedy_flags[first][:, None, :] | self.greedy_flags[second][None, :, :]
        valid = self.valid[:, None, :] & self.valid[None, :, :]
        weights = np.where(marked, MARKED_WEIGHT, differ.astype(np.float64))
        return np.where(valid, weights, 0.0).sum(axis=2)

    def edge_scores(self) -> np.ndarray:
        """Scores of every edge, laid out in edge-index order."""
        p = self.household_count
        chunks = [self.pair_scores(h1, h2).ravel() for h1 in range(p) for h2 in range(h1 + 1, p)]
        if not chunks:
            return np.zeros(0)
        return np.concatenate(chunks)

    def done(self) -> bool:
        return self.stalled or self.marked >= self.budget or self.household_count < 2

    def pick_next(self):
        if self.done():
            return []
        scores = self.edge_scores()
        edge = decode_edge(int(np.argmax(scores)), self.household_count, self.blocks)
        added = self.mark_edge(*edge)
        self.steps_taken += 1
        if not added:
            self.stalled = True
        return added

    def mark_edge(self, first: int, first_block: int, second: int, second_block: int):
        """Mark every differing position of two blocks, stopping at the budget."""
        a = self.greedy_inputs[first, first_block]
        b = self.greedy_inputs[second, second_block]
        fa = self.greedy_flags[first, first_block]
        fb = self.greedy_flags[second, second_block]
        valid = self.valid[first_block] & self.valid[second_block]
        added = []
        for k in range(self.block_size):
            if not valid[k] or a[k] == b[k]:
                continue
            for h, blk, flags in ((first, first_block, fa), (second, second_block, fb)):
                if flags[k]:
                    continue
                flags[k] = True
                self.marked += 1
                added.append((h, blk * self.block_size + k))
                if self.marked >= self.budget:
                    return added
        return added

    def run_to_budget(self):
        while not self.done():
            self.pick_next()
        return self.marked

    def record_mask(self) -> np.ndarray:
        return self.greedy_flags.reshape(self.household_count, -1)[:, : self.rows].copy()

    def marked_count(self) -> int:
        return self.marked


STRATEGIES = {
    STRATEGY_GLOBAL: GlobalGreedyStrategy,
    STRATEGY_HOUSEHOLD: HouseholdGreedyStrategy,
    STRATEGY_RANDOM: RandomStrategy,
    STRATEGY_PAIRWISE: PairwiseUniquenessStrategy,
}


def make_strategy(name: str, households, metrics, block_size, target=None, rng=None, ratio: float = 0):
    try:
        cls = STRATEGIES[name]
    except KeyError:
        raise ValueError(f"unknown strategy {name!r}, expected one of {sorted(STRATEGIES)}") from None
    if cls is PairwiseUniquenessStrategy:
        return cls(households, metrics, block_size, target=target, rng=rng, ratio=ratio)
    return cls(households, metrics, block_size, target=target, rng=rng)


def select(strategy: SelectionStrategy, ratio: float) -> bool:
    """Drive a strategy to the budget of `ratio` percent. Returns True if clamped."""
    if isinstance(strategy, PairwiseUniquenessStrategy):
        clamped = strategy.set_budget(ratio)
        strategy.run_to_budget()
        return clamped
    return strategy.advance_to(steps_for_ratio(ratio, strategy.blocks))
