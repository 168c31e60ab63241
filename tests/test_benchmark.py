from covcomb.benchmark import (
    HEADER,
    analyze_and_visualize,
    make_scenarios,
    metrics_to_row,
    run_benchmark,
    scenario_worker,
    scenarios_to_df,
)
from covcomb.simulation import Scenario


def _small(name="small", seed=1):
    return Scenario(name, n_vars=4, n_matrices=3, subset_size=3, n_trials=2, seed=seed)


def test_make_scenarios_balanced() -> None:
    scens = make_scenarios(3)
    assert len(scens) == 13
    assert len({s.name for s in scens}) == len(scens)
    for scn in scens:
        assert scn.n_trials == 3


def test_metrics_to_row_len() -> None:
    data = scenario_worker(_small())
    row = metrics_to_row(data)
    assert len(row) == len(HEADER)
    assert row[0] == "small"


def test_scenarios_to_df() -> None:
    data = [scenario_worker(_small("a", 1)), scenario_worker(_small("b", 2))]
    df = scenarios_to_df(data)
    assert list(df.columns) == HEADER
    assert len(df) == 2
    assert (df["fail_rate"] <= 1.0).all()


def test_run_benchmark_and_report(tmp_path) -> None:
    scns = [_small("x", 5), _small("y", 6)]
    df = run_benchmark(scns, processes=1)
    assert df["name"].tolist() == ["x", "y"]

    report = analyze_and_visualize(df, tmp_path / "report.html")
    text = report.read_text(encoding="utf-8")
    assert "Benchmark Report" in text
    assert text.count("<h2>Figure") == 3
