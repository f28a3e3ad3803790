"""
Household time series for partial-encryption experiments
--------------------------------------------------------
- Reads one CSV per household (last column), truncates to `max_rows` and
  quantizes every record to exact integer milli units so all equality tests
  are exact.
- Block indexing over fixed-size sections.
- Encryption projector: plaintext / encrypted-block / sentinel views of each
  household under a record mask.
"""

import math
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

import numpy as np


MILLI = 1000            # quantized values are stored in thousandths
DECORATED_STEP = 100    # 1-decimal "decorated" values, in milli units
VALUE_LIMIT = 2 ** 62   # legal |value| in milli units, keeps ENCRYPTED out of range

# marked positions of an encrypted view; never a legal quantized value
ENCRYPTED = np.iinfo(np.int64).min

DATASET_WATER = "water"
DATASET_ELECTRICITY = "electricity"
TRANSITION_THRESHOLDS = {
    DATASET_WATER: 100,
    DATASET_ELECTRICITY: 2,
}

_FIELD_SPLIT = re.compile(r"[,\s]+")


class InputShapeError(ValueError):
    """Households disagree in length after truncation."""


class QuantizationDomainError(ValueError):
    """A record cannot be parsed as a finite real inside the legal range."""


# ----------------------------
# Data model
# ----------------------------

@dataclass
class Household:
    filename: str
    raw: np.ndarray          # int64 milli units, read-only
    decorated: np.ndarray    # int64 milli units, 1-decimal, sum-preserving

    def __post_init__(self):
        self.raw.setflags(write=False)
        self.decorated.setflags(write=False)

    @property
    def length(self) -> int:
        return int(self.raw.shape[0])

    @property
    def values(self) -> np.ndarray:
        return self.raw / MILLI


@dataclass
class HouseholdView:
    plain_input: np.ndarray
    input: List[np.ndarray] = field(default_factory=list)
    encrypted_input: Optional[np.ndarray] = None

    @property
    def encrypted_blocks(self) -> int:
        return len(self.input)


# ----------------------------
# Loader
# ----------------------------

def default_data_folder(dataset: str, max_rows: int) -> Path:
    return Path("examples") / "datasets" / dataset / f"households_{max_rows}"


def list_household_files(folder) -> List[Path]:
    folder = Path(folder)
    if not folder.is_dir():
        raise FileNotFoundError(f"household folder not found: {folder}")
    return sorted(p for p in folder.rglob("*") if p.is_file())


def read_rows(path, max_rows: Optional[int] = None, header: bool = True) -> List[str]:
    with open(path, "r") as f:
        lines = [ln.rstrip("\r") for ln in f.read().split("\n")]
    while lines and not lines[-1].strip():
        lines.pop()
    if header and lines:
        lines = lines[1:]
    if max_rows is not None:
        lines = lines[:max_rows]
    return lines


def parse_last_field(lines: Sequence[str], source: str = "") -> np.ndarray:
    values = np.empty(len(lines), dtype=np.float64)
    for i, line in enumerate(lines):
        token = _FIELD_SPLIT.split(line.strip())[-1]
        try:
            values[i] = float(token)
        except ValueError:
            raise QuantizationDomainError(
                f"{source}: record {i} has non-numeric last field {token!r}"
            ) from None
    return values


def round_half_away(values, scale: int) -> np.ndarray:
    scaled = np.asarray(values, dtype=np.float64) * scale
    return (np.sign(scaled) * np.floor(np.abs(scaled) + 0.5)).astype(np.int64)


def quantize(values, source: str = ""):
    """Return (raw, decorated) milli-unit series for a sequence of reals.

    `raw` keeps 3 decimals. `decorated` keeps 1 decimal and its last record
    absorbs the accumulated rounding delta, so both series have the same sum.
    """
    values = np.asarray(values, dtype=np.float64)
    if not np.all(np.isfinite(values)):
        raise QuantizationDomainError(f"{source}: non-finite record")
    if values.size and np.max(np.abs(values)) * MILLI >= VALUE_LIMIT:
        raise QuantizationDomainError(f"{source}: record outside the legal range")

    raw = round_half_away(values, MILLI)
    decorated = round_half_away(values, MILLI // DECORATED_STEP) * DECORATED_STEP
    if raw.size:
        decorated[-1] -= int((decorated - raw).sum())
    return raw, decorated


def load_household(path, max_rows: Optional[int] = None, header: bool = True) -> Household:
    lines = read_rows(path, max_rows=max_rows, header=header)
    raw, decorated = quantize(parse_last_field(lines, str(path)), str(path))
    return Household(filename=str(path), raw=raw, decorated=decorated)


def load_households(paths, max_rows: Optional[int] = None, header: bool = True) -> List[Household]:
    households = []
    for path in paths:
        h = load_household(path, max_rows=max_rows, header=header)
        if households and h.length != households[0].length:
            raise InputShapeError(
                f"{h.filename} has {h.length} records, "
                f"{households[0].filename} has {households[0].length}"
            )
        households.append(h)
    return households


def households_from_values(series, names=None) -> List[Household]:
    """Build households straight from numeric series (tests, synthetic runs)."""
    households = []
    for i, values in enumerate(series):
        name = names[i] if names is not None else f"household_{i}"
        raw, decorated = quantize(values, name)
        if households and raw.shape[0] != households[0].length:
            raise InputShapeError(f"{name} has {raw.shape[0]} records, expected {households[0].length}")
        households.append(Household(filename=name, raw=raw, decorated=decorated))
    return households


# ----------------------------
# Block indexer
# ----------------------------

def block_count(rows: int, block_size: int) -> int:
    return math.ceil(rows / block_size)


def block_bounds(block: int, rows: int, block_size: int):
    start = block * block_size
    return start, min(start + block_size, rows)


def block_mask_to_record_mask(block_mask: np.ndarray, rows: int, block_size: int) -> np.ndarray:
    return np.repeat(np.asarray(block_mask, dtype=bool), block_size, axis=1)[:, :rows]


def padded_blocks(series: np.ndarray, block_size: int) -> np.ndarray:
    """Reshape a series into (B, S), zero-padding the last block."""
    blocks = block_count(series.shape[0], block_size)
    grid = np.zeros(blocks * block_size, dtype=series.dtype)
    grid[: series.shape[0]] = series
    return grid.reshape(blocks, block_size)


# ----------------------------
# Encryption projector
# ----------------------------

def project(household: Household, record_mask: np.ndarray, block_size: int) -> HouseholdView:
    raw = household.raw
    mask = np.asarray(record_mask, dtype=bool)
    if mask.shape != raw.shape:
        raise InputShapeError(f"mask of shape {mask.shape} for {household.length} records")

    blocks = []
    for b in range(block_count(household.length, block_size)):
        start, stop = block_bounds(b, household.length, block_size)
        seg = mask[start:stop]
        if not seg.any():
            continue
        buf = np.zeros(block_size, dtype=np.int64)
        buf[: stop - start][seg] = raw[start:stop][seg]
        blocks.append(buf)

    return HouseholdView(
        plain_input=raw[~mask].copy(),
        input=blocks,
        encrypted_input=np.where(mask, ENCRYPTED, raw),
    )


def project_all(households: Sequence[Household], record_mask: np.ndarray, block_size: int) -> List[HouseholdView]:
    return [project(h, record_mask[i], block_size) for i, h in enumerate(households)]
