"""
Partial encryption of household time series: attack success rate benchmark
----------------------------------------------------------------------------

What this measures
- How much of a household load/consumption series has to be encrypted before
  an adversary holding a plaintext slice (the "ATD") can no longer single the
  household out among all others.
- Optionally, what the analyst pays in CKKS (TenSEAL) time to still compute
  per-household summation and variance over the partially encrypted data.

Sweep
- For every household count N (a random subset of the dataset), every
  encryption ratio (percent), every ATD size A and every minimum matched
  percentage, one record is written to `asr_metrics.csv` / `asr_metrics.jsonl`.
- Ratios are processed in ascending order and the selection strategy keeps its
  mask between ratios, so each cell extends the previous one.
- With `--he`, one record per (N, ratio) goes to `he_metrics.csv` /
  `he_metrics.jsonl`.

Failure semantics
- A failing cell writes a record with `status=error` and the sweep moves on.

Usage examples
- Global-greedy on entropy, water dataset:
    python pe_ckks_asr_benchmark.py --strategy global-greedy --dataset water \
        --ratios 0 10 20 40 --atd-start 6 --atd-stop 24 --atd-step 6

- Pairwise-uniqueness with unique ATDs and the HE analyst path:
    python pe_ckks_asr_benchmark.py --strategy pairwise-uniqueness --unique-atd \
        --ratios 0 5 10 --he --performance-loops 3
"""
import argparse
import json
import os
import time
from pathlib import Path

import numpy as np
import psutil

from pe_attack import MAX_RETRIES, MIN_TRIALS, SE_CUTOFF, AttackSimulator, member_identification_attack
from pe_households import (
    DATASET_ELECTRICITY,
    DATASET_WATER,
    TRANSITION_THRESHOLDS,
    default_data_folder,
    list_household_files,
    load_households,
    project_all,
)
from pe_metrics import TARGETS, compute_block_metrics, expected_statistics, metric_histogram, remaining_metrics
from pe_selection import STRATEGIES, make_strategy, select


ASR_COLUMNS = (
    "status", "strategy", "dataset", "target", "unique_atd", "households", "rows",
    "block_size", "ratio", "atd_size", "min_percent", "encrypted_records",
    "encrypted_blocks", "remaining_entropy", "remaining_transition", "clamped",
    "mean_asr", "std_asr", "std_error", "loops", "trials", "aborted",
    "select_ms", "attack_ms", "peak_rss_mb", "error",
)

HE_COLUMNS = (
    "status", "households", "ratio", "encrypted_blocks", "ciphertexts", "loops",
    "he_setup_ms", "he_encrypt_ms", "he_summation_ms", "he_variance_ms",
    "he_decrypt_ms", "max_sum_error", "max_var_error", "peak_rss_mb", "error",
)

# cell failures the sweep records and steps over
CELL_ERRORS = (ValueError, RuntimeError, IndexError)


# ----------------------------
# Utilities
# ----------------------------

def now_ms():
    return int(time.time() * 1000)


class RSSTracker:
    def __init__(self):
        self.process = psutil.Process(os.getpid())
        self.peak_mb = 0.0

    def sample(self) -> float:
        rss_mb = self.process.memory_info().rss / (1024 ** 2)
        self.peak_mb = max(self.peak_mb, rss_mb)
        return self.peak_mb


def _format(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        return f"{value:.6g}"
    text = str(value)
    if "," in text or '"' in text:
        text = '"' + text.replace('"', '""') + '"'
    return text


class MetricsLog:
    """CSV + JSONL pair, one line per record."""

    def __init__(self, outdir, stem: str, columns):
        self.csv_path = Path(outdir) / f"{stem}.csv"
        self.jsonl_path = Path(outdir) / f"{stem}.jsonl"
        self.columns = columns
        with open(self.csv_path, 'w') as f:
            f.write(",".join(columns) + "\n")
        open(self.jsonl_path, 'w').close()

    def write(self, row: dict):
        with open(self.csv_path, 'a') as f:
            f.write(",".join(_format(row.get(c)) for c in self.columns) + "\n")
        with open(self.jsonl_path, 'a') as f:
            f.write(json.dumps(row) + "\n")


def atd_sizes(start: int, stop: int, step: int):
    if step <= 0:
        raise ValueError("ATD step must be positive")
    return list(range(start, stop + 1, step))


def print_histogram(metrics):
    centers, counts = metric_histogram(metrics)
    print(f"  {metrics.target} histogram (min={metrics.target_min:.4g}, max={metrics.target_max:.4g}):")
    for c, n in zip(centers, counts):
        print(f"    {c:.3f}: {int(n)}")


# ----------------------------
# HE analyst path
# ----------------------------

def run_he_cell(he, households, views, args, rss: RSSTracker) -> dict:
    import pe_ckks

    secret_ctx, public_ctx, setup_ms = he
    max_slots = pe_ckks.slot_capacity(args.poly_mod_degree)
    loops = max(1, args.performance_loops)
    timings = pe_ckks.HETimings()
    results = []
    for _ in range(loops):
        results = pe_ckks.analyse_households(secret_ctx, public_ctx, households, views, max_slots, timings)
    timings = timings.averaged(loops)
    timings.setup_ms = setup_ms

    expected = expected_statistics(households)
    return {
        "status": "ok",
        "encrypted_blocks": int(sum(v.encrypted_blocks for v in views)),
        "ciphertexts": int(round(timings.ciphertexts)),
        "loops": loops,
        "he_setup_ms": timings.setup_ms,
        "he_encrypt_ms": timings.encrypt_ms,
        "he_summation_ms": timings.summation_ms,
        "he_variance_ms": timings.variance_ms,
        "he_decrypt_ms": timings.decrypt_ms,
        "max_sum_error": max(abs(r["summation"] - e["summation"]) for r, e in zip(results, expected)),
        "max_var_error": max(abs(r["variance"] - e["variance"]) for r, e in zip(results, expected)),
        "peak_rss_mb": rss.sample(),
    }


def setup_he(args):
    import pe_ckks

    secret_ctx, public_ctx, setup_ms = pe_ckks.make_ckks_context(
        args.poly_mod_degree, tuple(args.coeff_mod_bit_sizes), 2 ** args.scale_bits
    )
    return secret_ctx, public_ctx, setup_ms


# ----------------------------
# Sweep
# ----------------------------

def run_cells(households, args, rng, asr_log, he_log, he, rss, say):
    """All ratio / ATD / percentage cells for one household subset."""
    n = len(households)
    base = {
        "strategy": args.strategy, "dataset": args.dataset, "target": args.target,
        "unique_atd": bool(args.unique_atd), "households": n, "block_size": args.block_size,
    }
    threshold = TRANSITION_THRESHOLDS[args.dataset]
    metrics = compute_block_metrics(households, args.block_size, threshold, args.target)
    say(f"[N={n}] rows={households[0].length} entropy_sum={metrics.entropy_sum:.4f} "
        f"transition_sum={metrics.transition_sum}")
    if args.histogram and not args.quiet:
        print_histogram(metrics)

    strategy = make_strategy(args.strategy, households, metrics, args.block_size,
                             target=args.target, rng=rng)
    records = []
    for ratio in sorted(args.ratios):
        cell = dict(base, rows=households[0].length, ratio=ratio)
        try:
            t0 = now_ms()
            clamped = select(strategy, ratio)
            views = project_all(households, strategy.record_mask(), args.block_size)
            select_ms = now_ms() - t0
        except CELL_ERRORS as exc:
            row = dict(cell, status="error", error=f"{type(exc).__name__}: {exc}")
            asr_log.write(row)
            records.append(row)
            say(f"[N={n} ratio={ratio}] selection failed: {exc}")
            continue

        rem_entropy, rem_transition = remaining_metrics(metrics, strategy.block_mask())
        cell.update(
            encrypted_records=strategy.marked_count(),
            encrypted_blocks=int(sum(v.encrypted_blocks for v in views)),
            remaining_entropy=rem_entropy,
            remaining_transition=rem_transition,
            clamped=bool(clamped),
            select_ms=select_ms,
        )
        say(f"[N={n} ratio={ratio}] encrypted={cell['encrypted_records']} records "
            f"blocks={cell['encrypted_blocks']} remaining entropy={rem_entropy:.4f} "
            f"transitions={rem_transition}{' (clamped)' if clamped else ''}")

        if he is not None:
            he_cell = {"households": n, "ratio": ratio}
            try:
                he_cell.update(run_he_cell(he, households, views, args, rss))
                say(f"  he: enc={he_cell['he_encrypt_ms']:.1f}ms sum={he_cell['he_summation_ms']:.1f}ms "
                    f"var={he_cell['he_variance_ms']:.1f}ms dec={he_cell['he_decrypt_ms']:.1f}ms "
                    f"err(sum)={he_cell['max_sum_error']:.3g} err(var)={he_cell['max_var_error']:.3g}")
            except CELL_ERRORS as exc:
                he_cell.update(status="error", error=f"{type(exc).__name__}: {exc}")
                say(f"  he failed: {exc}")
            he_log.write(he_cell)

        for atd_size in atd_sizes(args.atd_start, args.atd_stop, args.atd_step):
            for pct in args.min_percent:
                row = dict(cell, atd_size=atd_size, min_percent=pct)
                try:
                    t0 = now_ms()
                    sim = AttackSimulator(households, views, atd_size, args.block_size,
                                          min_percent=pct, unique_atd=args.unique_atd,
                                          rng=rng, max_retries=args.max_retries)
                    summary = member_identification_attack(
                        sim, args.macro_loops, args.inner_loops, min_trials=args.min_trials,
                        se_cutoff=args.se_cutoff, verbose=args.verbose,
                    )
                    row.update(
                        status="ok",
                        mean_asr=summary.mean,
                        std_asr=summary.std,
                        std_error=summary.standard_error,
                        loops=summary.loops,
                        trials=summary.trials,
                        aborted=summary.aborted,
                        attack_ms=now_ms() - t0,
                    )
                    say(f"  A={atd_size} pct={pct}: ASR={summary.mean:.4f} se={summary.standard_error:.4f} "
                        f"trials={summary.trials} aborted={summary.aborted} | "
                        f"attack={row['attack_ms']}ms mem~{rss.sample():.1f}MB")
                except CELL_ERRORS as exc:
                    row.update(status="error", error=f"{type(exc).__name__}: {exc}")
                    say(f"  A={atd_size} pct={pct}: failed: {exc}")
                row["peak_rss_mb"] = rss.sample()
                asr_log.write(row)
                records.append(row)
    return records


def run_sweep(args):
    """Run the whole sweep described by `args`; returns the ASR records."""
    os.makedirs(args.outdir, exist_ok=True)
    rng = np.random.default_rng(args.seed)
    rss = RSSTracker()
    say = (lambda *a, **k: None) if args.quiet else print

    asr_log = MetricsLog(args.outdir, "asr_metrics", ASR_COLUMNS)
    he_log = MetricsLog(args.outdir, "he_metrics", HE_COLUMNS) if args.he else None

    records = []
    try:
        folder = args.data or default_data_folder(args.dataset, args.max_rows)
        files = list_household_files(folder)
        if not files:
            raise ValueError(f"no household files in {folder}")
        everyone = load_households(files, max_rows=args.max_rows, header=not args.no_header)
    except (OSError, ValueError) as exc:
        row = {"status": "error", "strategy": args.strategy, "dataset": args.dataset,
               "target": args.target, "error": f"{type(exc).__name__}: {exc}"}
        asr_log.write(row)
        say(f"Loading households failed: {exc}")
        return [row]
    say(f"Loaded {len(everyone)} households x {everyone[0].length} records from {folder}")

    he = setup_he(args) if args.he else None
    if he is not None:
        say(f"CKKS setup: {he[2]:.1f}ms")

    for count in args.households or [len(everyone)]:
        if not 1 <= count <= len(everyone):
            row = {"status": "error", "strategy": args.strategy, "dataset": args.dataset,
                   "target": args.target, "households": count,
                   "error": f"household count {count} outside [1, {len(everyone)}]"}
            asr_log.write(row)
            records.append(row)
            say(f"[N={count}] skipped: {row['error']}")
            continue
        picked = np.sort(rng.choice(len(everyone), size=count, replace=False))
        subset = [everyone[i] for i in picked]
        try:
            records.extend(run_cells(subset, args, rng, asr_log, he_log, he, rss, say))
        except CELL_ERRORS as exc:
            row = {"status": "error", "strategy": args.strategy, "dataset": args.dataset,
                   "target": args.target, "households": count, "error": f"{type(exc).__name__}: {exc}"}
            asr_log.write(row)
            records.append(row)
            say(f"[N={count}] failed: {exc}")

    say(f"\nLogs written to: {asr_log.csv_path} and {asr_log.jsonl_path}")
    if he_log is not None:
        say(f"HE logs written to: {he_log.csv_path} and {he_log.jsonl_path}")
    return records


# ----------------------------
# Main
# ----------------------------

def build_parser():
    parser = argparse.ArgumentParser(description="Partial encryption of household series: ASR benchmark")
    parser.add_argument('--strategy', choices=sorted(STRATEGIES), default='global-greedy')
    parser.add_argument('--dataset', choices=[DATASET_WATER, DATASET_ELECTRICITY], default=DATASET_WATER)
    parser.add_argument('--target', choices=TARGETS, default='entropy')
    parser.add_argument('--unique-atd', action='store_true',
                        help='resample ATDs until they occur in no other household')
    parser.add_argument('--ratios', type=float, nargs='+', default=[0, 10, 20, 30, 40, 50],
                        help='encryption ratios in percent')

    parser.add_argument('--atd-start', type=int, default=12)
    parser.add_argument('--atd-stop', type=int, default=48)
    parser.add_argument('--atd-step', type=int, default=12)
    parser.add_argument('--min-percent', type=float, nargs='+', default=[100.0])
    parser.add_argument('--households', type=int, nargs='+', default=None,
                        help='household counts to sample (default: all)')

    parser.add_argument('--block-size', type=int, default=1024)
    parser.add_argument('--max-rows', type=int, default=105_120)
    parser.add_argument('--data', type=str, default=None)
    parser.add_argument('--no-header', action='store_true')
    parser.add_argument('--outdir', type=str, default='./runs/pe_asr')

    parser.add_argument('--inner-loops', type=int, default=1000)
    parser.add_argument('--macro-loops', type=int, default=100)
    parser.add_argument('--min-trials', type=int, default=MIN_TRIALS)
    parser.add_argument('--se-cutoff', type=float, default=SE_CUTOFF)
    parser.add_argument('--max-retries', type=int, default=MAX_RETRIES)
    parser.add_argument('--seed', type=int, default=42)

    parser.add_argument('--he', action='store_true', help='run the CKKS summation/variance analyst path')
    parser.add_argument('--poly-mod-degree', type=int, default=16_384)
    parser.add_argument('--coeff-mod-bit-sizes', type=int, nargs='+', default=[60, 40, 40, 60])
    parser.add_argument('--scale-bits', type=int, default=40)
    parser.add_argument('--performance-loops', type=int, default=1)

    parser.add_argument('--histogram', action='store_true')
    parser.add_argument('--verbose', action='store_true', help='print every macro loop')
    parser.add_argument('--quiet', action='store_true')
    return parser


def check_args(parser, args):
    s = args.block_size
    if s < 1024 or s > 32768 or s & (s - 1):
        parser.error("--block-size must be a power of two between 1024 and 32768")
    if any(r < 0 or r > 100 for r in args.ratios):
        parser.error("--ratios must lie in [0, 100]")
    if any(p <= 0 or p > 100 for p in args.min_percent):
        parser.error("--min-percent must lie in (0, 100]")
    if args.atd_start < 1 or args.atd_stop < args.atd_start or args.atd_step < 1:
        parser.error("ATD sizes need 1 <= --atd-start <= --atd-stop and --atd-step >= 1")
    if args.max_rows < 1:
        parser.error("--max-rows must be positive")


if __name__ == "__main__":
    parser = build_parser()
    args, _ = parser.parse_known_args()
    check_args(parser, args)
    run_sweep(args)
