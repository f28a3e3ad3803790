import json

import pytest
import sys
import os

sys.path.append(os.path.join(os.path.dirname(__file__), ".."))

from pe_ckks_asr_benchmark import atd_sizes, build_parser, check_args, run_sweep


def _write_dataset(folder, count=3, rows=16):
    folder.mkdir()
    for h in range(count):
        lines = ["timestamp,value"] + [f"{i},{h * 100 + i * 0.5}" for i in range(rows)]
        (folder / f"household_{h}.csv").write_text("\n".join(lines) + "\n")
    return folder


def _args(tmp_path, *extra):
    data = _write_dataset(tmp_path / "data")
    return build_parser().parse_args([
        "--data", str(data), "--outdir", str(tmp_path / "run"),
        "--block-size", "4", "--max-rows", "16",
        "--ratios", "100", "0",
        "--atd-start", "4", "--atd-stop", "4", "--atd-step", "1",
        "--inner-loops", "50", "--macro-loops", "2", "--min-trials", "10",
        "--quiet", *extra,
    ])


def test_sweep_writes_one_record_per_cell(tmp_path):
    records = run_sweep(_args(tmp_path))
    assert [r["status"] for r in records] == ["ok", "ok"]
    assert [r["ratio"] for r in records] == [0.0, 100.0]
    plain, full = records
    assert plain["mean_asr"] == 1.0
    assert full["mean_asr"] == 0.0
    assert plain["encrypted_records"] == 0
    assert full["encrypted_records"] == 3 * 16
    assert full["remaining_entropy"] == 0.0
    assert not full["clamped"]

    run = tmp_path / "run"
    csv_lines = (run / "asr_metrics.csv").read_text().splitlines()
    assert csv_lines[0].startswith("status,strategy,dataset")
    assert len(csv_lines) == 3
    rows = [json.loads(line) for line in (run / "asr_metrics.jsonl").read_text().splitlines()]
    assert [r["mean_asr"] for r in rows] == [1.0, 0.0]
    assert not (run / "he_metrics.csv").exists()


@pytest.mark.parametrize("strategy", ["household-greedy", "random", "pairwise-uniqueness"])
def test_every_strategy_runs(tmp_path, strategy):
    records = run_sweep(_args(tmp_path, "--strategy", strategy, "--target", "transition"))
    assert all(r["status"] == "ok" for r in records)
    assert records[0]["mean_asr"] == 1.0


def test_bad_household_count_is_recorded(tmp_path):
    records = run_sweep(_args(tmp_path, "--households", "5", "2"))
    assert records[0]["status"] == "error"
    assert "household count" in records[0]["error"]
    assert [r["households"] for r in records[1:]] == [2, 2]


def test_oversized_atd_is_recorded_and_sweep_continues(tmp_path):
    records = run_sweep(_args(tmp_path, "--atd-start", "4", "--atd-stop", "20", "--atd-step", "16"))
    statuses = [(r["ratio"], r["atd_size"], r["status"]) for r in records]
    assert statuses == [(0.0, 4, "ok"), (0.0, 20, "error"), (100.0, 4, "ok"), (100.0, 20, "error")]


def test_missing_data_folder(tmp_path):
    args = build_parser().parse_args(["--data", str(tmp_path / "nowhere"), "--outdir", str(tmp_path), "--quiet"])
    (record,) = run_sweep(args)
    assert record["status"] == "error"
    assert "FileNotFoundError" in record["error"]


def test_atd_sizes_include_stop():
    assert atd_sizes(12, 48, 12) == [12, 24, 36, 48]
    with pytest.raises(ValueError):
        atd_sizes(1, 2, 0)


@pytest.mark.parametrize(
    "argv",
    [
        ["--block-size", "1000"],
        ["--block-size", "512"],
        ["--ratios", "-5"],
        ["--min-percent", "0"],
        ["--atd-start", "10", "--atd-stop", "5"],
    ],
)
def test_check_args_rejects(argv):
    parser = build_parser()
    with pytest.raises(SystemExit):
        check_args(parser, parser.parse_args(argv))


def test_check_args_accepts_defaults():
    parser = build_parser()
    check_args(parser, parser.parse_args([]))


def test_plot_loader_keeps_successful_rows(tmp_path):
    plot_metrics = pytest.importorskip("plot_metrics")
    run_sweep(_args(tmp_path, "--atd-stop", "20", "--atd-step", "16"))
    df = plot_metrics.load_metrics([str(tmp_path / "run" / "asr_metrics.csv")], "mean_asr", "ratio")
    assert sorted(df["ratio"].tolist()) == [0.0, 100.0]
    assert set(df["run"]) == {"run"}
    with pytest.raises(ValueError):
        plot_metrics.load_metrics([str(tmp_path / "run" / "asr_metrics.csv")], "accuracy", "ratio")
    assert plot_metrics.curve_keys(df, "atd_size") == ["run", "atd_size"]


def test_plot_loader_accepts_he_metrics(tmp_path):
    plot_metrics = pytest.importorskip("plot_metrics")
    run = tmp_path / "he_run"
    run.mkdir()
    (run / "he_metrics.csv").write_text(
        "status,households,ratio,he_variance_ms\n"
        "ok,3,0,0.0\n"
        "ok,3,50,12.5\n"
        "error,3,100,\n"
    )
    df = plot_metrics.load_metrics([str(run / "he_metrics.csv")], "he_variance_ms", "ratio")
    assert df["ratio"].tolist() == [0, 50]
    assert plot_metrics.curve_keys(df, "atd_size") == ["run"]
