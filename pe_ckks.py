"""
CKKS (TenSEAL) analyst path for partially encrypted households
--------------------------------------------------------------
- Key setup: one secret context (secret / public / relinearization / galois
  keys) and a public context derived from it.
- Each household encrypts only its marked blocks; the analyst runs two
  composable stages on the ciphertexts:
    summation(blocks)                -> sum_ct   (add + inner sum)
    variance(blocks, sum_ct, ...)    -> var_ct   (E[x^2] - mean^2, mul-relin)
  and combines the decrypted results with the plaintext remainder.
- Elapsed times go into an explicit `HETimings` value owned by the caller.

Variance keeps two multiplicative levels, so the default coefficient modulus
is (60, 40, 40, 60).
"""

import time
from dataclasses import asdict, dataclass
from typing import List, Optional, Sequence

import numpy as np

try:
    import tenseal as ts
except ImportError:
    raise SystemExit("tenseal is required. Install via: pip install tenseal")

from pe_households import MILLI, Household, HouseholdView


class HEError(RuntimeError):
    pass


def now_ms() -> float:
    return time.perf_counter() * 1000.0


@dataclass
class HETimings:
    setup_ms: float = 0.0
    encrypt_ms: float = 0.0
    summation_ms: float = 0.0
    variance_ms: float = 0.0
    decrypt_ms: float = 0.0
    ciphertexts: int = 0

    def add(self, other: "HETimings") -> "HETimings":
        for key, value in asdict(other).items():
            setattr(self, key, getattr(self, key) + value)
        return self

    def averaged(self, loops: int) -> "HETimings":
        return HETimings(**{k: v / loops for k, v in asdict(self).items()})

    def as_dict(self) -> dict:
        return asdict(self)


# ----------------------------
# HE: context & ops
# ----------------------------

def make_ckks_context(poly_mod_degree=16_384, coeff_mod_bit_sizes=(60, 40, 40, 60), scale=2 ** 40):
    t0 = now_ms()
    try:
        context = ts.context(ts.SCHEME_TYPE.CKKS, poly_mod_degree,
                             coeff_mod_bit_sizes=list(coeff_mod_bit_sizes))
        context.global_scale = scale
        context.generate_galois_keys()
        context.generate_relin_keys()
        # Secret (with sk) and public (without sk) split
        secret_ctx = context
        public_bytes = secret_ctx.serialize(save_public_key=True, save_secret_key=False,
                                            save_galois_keys=True, save_relin_keys=True)
        public_ctx = ts.context_from(public_bytes)
    except (ValueError, RuntimeError, TypeError) as exc:
        raise HEError(f"CKKS key setup failed: {exc}") from exc
    setup_ms = now_ms() - t0
    return secret_ctx, public_ctx, setup_ms


def slot_capacity(poly_mod_degree: int) -> int:
    return poly_mod_degree // 2


def chunk_vector(vec: np.ndarray, max_len: int) -> list:
    return [vec[i:i + max_len] for i in range(0, len(vec), max_len)]


def encrypt_blocks(public_ctx, blocks: Sequence[np.ndarray], max_slots: int) -> list:
    """Encrypt milli-unit blocks as real-valued CKKS vectors of at most `max_slots`."""
    cts = []
    for block in blocks:
        if len(block) > max_slots and len(block) % max_slots:
            raise HEError(f"block of {len(block)} records does not split into {max_slots}-slot chunks")
        for ch in chunk_vector(np.asarray(block, dtype=np.float64) / MILLI, max_slots):
            cts.append(ts.ckks_vector(public_ctx, ch.tolist()))
    return cts


def summation(cts: Sequence) -> Optional[object]:
    if not cts:
        return None
    acc = cts[0].copy()
    for ct in cts[1:]:
        acc += ct
    return acc.sum()


def variance(cts: Sequence, sum_ct, plain_sum: float, plain_sq_sum: float, rows: int):
    """Population variance ciphertext from the encrypted blocks and their sum.

    Squares are scaled by 1/rows before the inner sum to keep magnitudes low.
    """
    if not cts:
        return None
    inv = 1.0 / rows
    sq = cts[0] * cts[0] * inv
    for ct in cts[1:]:
        sq += ct * ct * inv
    second_moment = sq.sum() + plain_sq_sum * inv
    mean = sum_ct * inv + plain_sum * inv
    return second_moment - mean * mean


def decrypt_scalar(secret_ctx, ct) -> float:
    return float(ct.decrypt(secret_ctx.secret_key())[0])


# ----------------------------
# Analyst pipeline
# ----------------------------

def analyse_households(secret_ctx, public_ctx, households: Sequence[Household],
                       views: Sequence[HouseholdView], max_slots: int,
                       timings: HETimings) -> List[dict]:
    """Summation and variance of every household under its current mask."""
    results = []
    for h, view in zip(households, views):
        plain = view.plain_input / MILLI
        plain_sum = float(plain.sum())
        plain_sq_sum = float(np.square(plain).sum())
        rows = h.length
        try:
            t0 = now_ms()
            cts = encrypt_blocks(public_ctx, view.input, max_slots)
            timings.encrypt_ms += now_ms() - t0
            timings.ciphertexts += len(cts)

            t0 = now_ms()
            sum_ct = summation(cts)
            timings.summation_ms += now_ms() - t0

            t0 = now_ms()
            var_ct = variance(cts, sum_ct, plain_sum, plain_sq_sum, rows)
            timings.variance_ms += now_ms() - t0

            t0 = now_ms()
            enc_sum = decrypt_scalar(secret_ctx, sum_ct) if sum_ct is not None else 0.0
            if var_ct is not None:
                var = decrypt_scalar(secret_ctx, var_ct)
            else:
                var = plain_sq_sum / rows - (plain_sum / rows) ** 2
            timings.decrypt_ms += now_ms() - t0
        except (ValueError, RuntimeError, TypeError) as exc:
            raise HEError(f"{h.filename}: {exc}") from exc

        results.append({
            "household": h.filename,
            "summation": plain_sum + enc_sum,
            "variance": var,
            "encrypted_blocks": len(view.input),
        })
    return results
