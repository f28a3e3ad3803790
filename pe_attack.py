"""
Member-identification attack (MIA) under partial encryption
-----------------------------------------------------------
The adversary holds an attacker data block (ATD): `atd_size` contiguous
plaintext records of one victim household. A trial succeeds when matching the
ATD against every household's encrypted view singles out the victim and only
the victim.

- Offsets are never reused for the same household inside one macro loop.
- Unique-ATD mode resamples until the ATD does not occur in any other
  household's raw series; a trial that cannot find one is aborted (None).
- With `min_percent < 100` the victim only needs `ceil(A*pct/100)` equal
  records, and every candidate window of its encrypted view (sentinels
  included) must be unique.
- The inner loop stops once the standard error of the 0/1 outcomes drops to
  `se_cutoff` (after `min_trials`); the macro loop does the same over the
  per-inner-loop ASR estimates.
"""

import math
from collections import defaultdict
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np

from pe_households import Household, HouseholdView

SE_CUTOFF = 0.01
MIN_TRIALS = 100
MAX_RETRIES = 1000


def min_match_length(atd_size: int, min_percent: float) -> int:
    return math.ceil(atd_size * min_percent / 100)


def candidate_windows(atd_size: int, match_length: int, block_size: int) -> List[Tuple[int, int]]:
    """Offsets, relative to the ATD, of the sub-slices checked for uniqueness."""
    if match_length >= atd_size:
        return [(0, atd_size)]
    if atd_size <= block_size:
        # the encrypted stretch can only be a prefix or a suffix
        return [(0, match_length), (atd_size - match_length, atd_size)]
    return [(i, i + match_length) for i in range(atd_size - match_length + 1)]


def occurrences(series: np.ndarray, pattern: np.ndarray) -> np.ndarray:
    """Start offsets at which `pattern` occurs contiguously in `series`."""
    m, n = pattern.shape[0], series.shape[0]
    if m == 0 or m > n:
        return np.zeros(0, dtype=np.int64)
    starts = np.flatnonzero(series[: n - m + 1] == pattern[0])
    for j in range(1, m):
        if starts.size == 0:
            break
        starts = starts[series[starts + j] == pattern[j]]
    return starts


# ----------------------------
# ASR estimator
# ----------------------------

class ASREstimator:
    """Running mean / unbiased std / standard error over a list of samples."""

    def __init__(self):
        self.samples: List[float] = []

    def add(self, value: Optional[float]):
        if value is not None:
            self.samples.append(float(value))

    def __len__(self):
        return len(self.samples)

    @property
    def mean(self) -> float:
        return float(np.mean(self.samples)) if self.samples else float("nan")

    @property
    def std(self) -> float:
        if len(self.samples) < 2:
            return float("nan")
        return float(np.std(self.samples, ddof=1))

    @property
    def standard_error(self) -> float:
        if len(self.samples) < 2:
            return float("nan")
        return self.std / math.sqrt(len(self.samples))

    def converged(self, min_samples: int, cutoff: float = SE_CUTOFF) -> bool:
        return len(self.samples) >= min_samples and self.standard_error <= cutoff


# ----------------------------
# Simulator
# ----------------------------

class AttackSimulator:

    def __init__(self, households: Sequence[Household], views: Sequence[HouseholdView],
                 atd_size: int, block_size: int, min_percent: float = 100,
                 unique_atd: bool = False, rng: np.random.Generator = None,
                 max_retries: int = MAX_RETRIES):
        if len(households) != len(views):
            raise ValueError("one encrypted view per household is required")
        rows = households[0].length
        if not 1 <= atd_size <= rows:
            raise ValueError(f"ATD size {atd_size} outside [1, {rows}]")
        if not 0 < min_percent <= 100:
            raise ValueError(f"minimum matched percentage {min_percent} outside (0, 100]")

        self.raw = [h.raw for h in households]
        self.encrypted = [v.encrypted_input for v in views]
        self.rows = rows
        self.atd_size = atd_size
        self.block_size = block_size
        self.min_percent = min_percent
        self.unique_atd = unique_atd
        self.rng = rng if rng is not None else np.random.default_rng()
        self.max_retries = max_retries
        self.match_length = min_match_length(atd_size, min_percent)
        self.windows = candidate_windows(atd_size, self.match_length, block_size)
        self.used_offsets = defaultdict(set)

    @property
    def household_count(self) -> int:
        return len(self.raw)

    @property
    def offset_count(self) -> int:
        return self.rows - self.atd_size + 1

    def reset(self):
        self.used_offsets.clear()

    def draw_offset(self, household: int) -> Optional[int]:
        used = self.used_offsets[household]
        if len(used) >= self.offset_count:
            return None
        if len(used) * 2 > self.offset_count:
            free = np.setdiff1d(np.arange(self.offset_count), np.fromiter(used, dtype=np.int64))
            offset = int(free[self.rng.integers(free.size)])
        else:
            offset = int(self.rng.integers(self.offset_count))
            while offset in used:
                offset = int(self.rng.integers(self.offset_count))
        used.add(offset)
        return offset

    def atd(self, household: int, offset: int) -> np.ndarray:
        return self.raw[household][offset: offset + self.atd_size]

    def draw_atd(self) -> Optional[Tuple[int, int]]:
        """Pick a (victim, offset) pair, or None once retries are exhausted."""
        for _ in range(self.max_retries):
            victim = int(self.rng.integers(self.household_count))
            offset = self.draw_offset(victim)
            if offset is None:
                continue
            if not self.unique_atd:
                return victim, offset
            block = self.atd(victim, offset)
            unique = True
            for other in range(self.household_count):
                if other == victim:
                    continue
                hits = occurrences(self.raw[other], block)
                if hits.size:
                    unique = False
                    self.used_offsets[other].update(int(i) for i in hits)
            if unique:
                return victim, offset
        return None

    def _found_elsewhere(self, victim: int, patterns) -> List[int]:
        return [other for other in range(self.household_count)
                if other != victim and any(occurrences(self.encrypted[other], p).size for p in patterns)]

    def identify(self, victim: int, offset: int) -> List[int]:
        """Households the adversary cannot tell apart from the victim's slice."""
        block = self.atd(victim, offset)
        candidate = self.encrypted[victim][offset: offset + self.atd_size]

        if self.match_length >= self.atd_size:
            if not np.array_equal(candidate, block):
                return []
            return [victim] + self._found_elsewhere(victim, [block])

        if int(np.count_nonzero(candidate == block)) < self.match_length:
            return []
        # windows keep their sentinels; encrypted stretches match each other
        patterns = [candidate[start:stop] for start, stop in self.windows]
        return [victim] + self._found_elsewhere(victim, patterns)

    def trial(self) -> Optional[int]:
        drawn = self.draw_atd()
        if drawn is None:
            return None
        victim, offset = drawn
        return int(self.identify(victim, offset) == [victim])


# ----------------------------
# Attack loops
# ----------------------------

@dataclass
class InnerLoopResult:
    successes: int
    trials: int
    aborted: int
    standard_error: float

    @property
    def asr(self) -> Optional[float]:
        return self.successes / self.trials if self.trials else None


@dataclass
class AttackSummary:
    mean: float
    std: float
    standard_error: float
    loops: int
    trials: int
    aborted: int
    asr_list: List[float] = field(default_factory=list)


def run_inner_loop(simulator: AttackSimulator, max_trials: int, min_trials: int = MIN_TRIALS,
                   se_cutoff: float = SE_CUTOFF) -> InnerLoopResult:
    outcomes = ASREstimator()
    aborted = 0
    for _ in range(max_trials):
        outcome = simulator.trial()
        if outcome is None:
            aborted += 1
            continue
        outcomes.add(outcome)
        if outcomes.converged(min_trials, se_cutoff):
            break
    return InnerLoopResult(
        successes=int(sum(outcomes.samples)),
        trials=len(outcomes),
        aborted=aborted,
        standard_error=outcomes.standard_error,
    )


def member_identification_attack(simulator: AttackSimulator, macro_loops: int, inner_loops: int,
                                 min_trials: int = MIN_TRIALS, min_loops: int = 2,
                                 se_cutoff: float = SE_CUTOFF, verbose: bool = False) -> AttackSummary:
    """Repeat inner attack loops until the ASR estimate settles.

    With a single usable inner loop the trial-level standard error is reported.
    """
    estimator = ASREstimator()
    trials, aborted, loops = 0, 0, 0
    last = None
    for loop in range(macro_loops):
        simulator.reset()
        inner = run_inner_loop(simulator, inner_loops, min_trials=min_trials, se_cutoff=se_cutoff)
        loops += 1
        trials += inner.trials
        aborted += inner.aborted
        if inner.asr is None:
            continue
        last = inner
        estimator.add(inner.asr)
        if verbose:
            print(f"  attack loop {loop}: ASR={inner.asr:.3f} trials={inner.trials} "
                  f"mean={estimator.mean:.3f} se={estimator.standard_error:.3f}")
        if estimator.converged(min_loops, se_cutoff):
            break

    standard_error = estimator.standard_error
    if len(estimator) == 1 and last is not None:
        standard_error = last.standard_error
    return AttackSummary(
        mean=estimator.mean,
        std=estimator.std,
        standard_error=standard_error,
        loops=loops,
        trials=trials,
        aborted=aborted,
        asr_list=list(estimator.samples),
    )
