"""Tests for bench CSV export."""

import pandas as pd

from bench import BenchResult
from export import admissions_frame, save_admissions_csv


def _result(admissions, span=0.2, max_count=2):
    return BenchResult(max_count, span, 1.0, 4, "thread", admissions=admissions)


def test_in_window_counts():
    frame = admissions_frame(_result([0.3, 0.0, 0.05, 0.26]))
    assert frame["offset_seconds"].tolist() == [0.0, 0.05, 0.26, 0.3]
    assert frame["in_window"].tolist() == [1, 2, 1, 2]
    assert frame["index"].tolist() == [0, 1, 2, 3]


def test_zero_span_counts_everything():
    frame = admissions_frame(_result([0.0, 0.0, 0.0], span=0.0))
    assert frame["in_window"].tolist() == [1, 2, 3]


def test_empty_result():
    frame = admissions_frame(_result([]))
    assert frame.empty
    assert list(frame.columns) == ["index", "offset_seconds", "in_window"]


def test_save_admissions_csv(tmp_path):
    out_dir = tmp_path / "out" / "bench"
    path = save_admissions_csv(_result([0.0, 0.1]), out_dir)

    assert path.parent == out_dir
    assert path.name.startswith("admissions_")
    loaded = pd.read_csv(path)
    assert len(loaded) == 2
    assert loaded["in_window"].max() == 2
