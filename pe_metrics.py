"""
Per-block privacy metrics
-------------------------
- Global value-frequency table over all households and the per-occurrence
  Shannon term `-p*log2(p)/count` of every quantized value.
- Per block: entropy (sum of the per-occurrence terms) and transition count
  (adjacent records differing by more than the dataset threshold).
- Helpers reported by the harness: metric histogram, metric left in plaintext,
  and the plaintext summation / average / variance baseline.
"""

from dataclasses import dataclass
from typing import Dict, List, Sequence

import numpy as np

from pe_households import MILLI, Household, block_count

TARGET_ENTROPY = "entropy"
TARGET_TRANSITION = "transition"
TARGETS = (TARGET_ENTROPY, TARGET_TRANSITION)

HISTOGRAM_BUCKETS = 20


@dataclass
class ValueTables:
    values: np.ndarray      # sorted distinct milli values
    counts: np.ndarray      # occurrences of each value
    terms: np.ndarray       # per-occurrence entropy term of each value
    total_records: int

    def frequency(self) -> Dict[float, int]:
        return {float(v) / MILLI: int(c) for v, c in zip(self.values, self.counts)}

    def lookup_terms(self, raw: np.ndarray) -> np.ndarray:
        return self.terms[np.searchsorted(self.values, raw)]


@dataclass
class BlockMetrics:
    entropy: np.ndarray      # (P, B)
    transition: np.ndarray   # (P, B)
    entropy_sum: float
    transition_sum: int
    target: str
    target_min: float
    target_max: float
    tables: ValueTables

    def target_values(self, target: str = None) -> np.ndarray:
        target = target or self.target
        if target == TARGET_ENTROPY:
            return self.entropy
        if target == TARGET_TRANSITION:
            return self.transition.astype(np.float64)
        raise ValueError(f"unknown target metric {target!r}, expected one of {TARGETS}")


def build_value_tables(households: Sequence[Household]) -> ValueTables:
    values, counts = np.unique(np.concatenate([h.raw for h in households]), return_counts=True)
    total = int(counts.sum())
    p = counts / total
    terms = -p * np.log2(p) / counts
    return ValueTables(values=values, counts=counts, terms=terms, total_records=total)


def compute_block_metrics(households: Sequence[Household], block_size: int, threshold: float,
                          target: str = TARGET_ENTROPY) -> BlockMetrics:
    if target not in TARGETS:
        raise ValueError(f"unknown target metric {target!r}, expected one of {TARGETS}")
    tables = build_value_tables(households)
    rows = households[0].length
    blocks = block_count(rows, block_size)
    starts = np.arange(0, rows, block_size)
    limit = int(round(threshold * MILLI))

    entropy = np.zeros((len(households), blocks), dtype=np.float64)
    transition = np.zeros((len(households), blocks), dtype=np.int64)
    for pi, h in enumerate(households):
        entropy[pi] = np.add.reduceat(tables.lookup_terms(h.raw), starts)
        changed = np.abs(np.diff(h.raw)) > limit
        transition[pi] = np.bincount(np.arange(1, rows) // block_size,
                                     weights=changed.astype(np.float64),
                                     minlength=blocks).astype(np.int64)

    target_arr = entropy if target == TARGET_ENTROPY else transition
    return BlockMetrics(
        entropy=entropy,
        transition=transition,
        entropy_sum=float(entropy.sum()),
        transition_sum=int(transition.sum()),
        target=target,
        target_min=float(target_arr.min()),
        target_max=float(target_arr.max()),
        tables=tables,
    )


def remaining_metrics(metrics: BlockMetrics, block_mask: np.ndarray):
    """Entropy and transitions still in plaintext under a block mask."""
    plain = ~np.asarray(block_mask, dtype=bool)
    return float(metrics.entropy[plain].sum()), int(metrics.transition[plain].sum())


def metric_histogram(metrics: BlockMetrics, buckets: int = HISTOGRAM_BUCKETS):
    """Histogram of the target metric over every block, normalized to [min, max].

    Returns (bucket_centers, counts); the maximum falls in the last bucket.
    """
    values = metrics.target_values().ravel()
    span = metrics.target_max - metrics.target_min
    if span > 0:
        idx = np.floor(buckets * (values - metrics.target_min) / span).astype(np.int64)
    else:
        idx = np.zeros(values.shape, dtype=np.int64)
    idx = np.clip(idx, 0, buckets - 1)
    counts = np.bincount(idx, minlength=buckets)
    centers = (np.arange(buckets) + 0.5) / buckets
    return centers, counts


def expected_statistics(households: Sequence[Household]) -> List[dict]:
    """Plaintext summation, average and population variance per household."""
    stats = []
    for h in households:
        values = h.values
        total = float(values.sum())
        average = total / h.length
        stats.append({
            "household": h.filename,
            "summation": total,
            "average": average,
            "variance": float(np.mean((values - average) ** 2)),
        })
    return stats
