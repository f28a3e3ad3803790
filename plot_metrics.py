import argparse
import pandas as pd
import matplotlib.pyplot as plt
from pathlib import Path


def load_metrics(csv_paths, metric, x):
    frames = []
    for csv_path in csv_paths:
        df = pd.read_csv(csv_path)

        for col in [metric, x]:
            if col not in df.columns:
                raise ValueError(
                    f"Column '{col}' not found in {csv_path}. "
                    f"Available columns: {list(df.columns)}"
                )
        if "status" in df.columns:
            df = df[df["status"] == "ok"]

        df = df.assign(run=Path(csv_path).parent.name)  # use run directory as label
        frames.append(df)
    return pd.concat(frames, ignore_index=True)


def curve_keys(df, group=None):
    # he_metrics.csv has no per-ATD columns; those files plot one curve per run
    return ["run"] + ([group] if group and group in df.columns else [])


def plot_curves(df, metric, x, group=None):
    keys = curve_keys(df, group)
    group = keys[1] if len(keys) > 1 else None
    for key, part in df.groupby(keys):
        key = key if isinstance(key, tuple) else (key,)
        label = key[0] if not group else f"{key[0]} {group}={key[1]}"
        part = part.groupby(x, as_index=False)[metric].mean().sort_values(x)
        plt.plot(part[x], part[metric], marker="o", linestyle="-", label=label)


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument(
        "--csv", type=str, nargs="+", required=True,
        help="One or more paths to asr_metrics.csv / he_metrics.csv files"
    )
    parser.add_argument(
        "--out", type=str, default=None,
        help="Output image file (PNG). If not given, show interactively."
    )
    parser.add_argument(
        "--metric", type=str, default="mean_asr",
        help="Column to plot (default: mean_asr)"
    )
    parser.add_argument("--x", type=str, default="ratio", help="X-axis column (default: ratio)")
    parser.add_argument(
        "--group", type=str, default="atd_size",
        help="One curve per value of this column when present (default: atd_size, '' for none)"
    )
    args = parser.parse_args()

    df = load_metrics(args.csv, args.metric, args.x)

    plt.figure(figsize=(7, 5))
    plot_curves(df, args.metric, args.x, args.group or None)

    plt.xlabel(args.x.replace("_", " ").title())
    plt.ylabel(args.metric.replace("_", " ").title())
    plt.title(f"{args.metric.replace('_', ' ').title()} vs {args.x.replace('_', ' ').title()}")
    plt.grid(True, linestyle="--", alpha=0.6)
    plt.legend()

    if args.out:
        plt.savefig(args.out, bbox_inches="tight", dpi=150)
        print(f"Saved plot to {args.out}")
    else:
        plt.show()


if __name__ == "__main__":
    main()
