# covcomb/benchmark.py ─ Stress-benchmark for the EM covariance combiner
# =====================================================================
"""
Run a battery of Monte-Carlo scenarios (defined on-the-fly) with
multiprocessing support and produce:
  • a summary DataFrame   (metrics per scenario, vector metrics averaged)
  • an HTML report        (interactive Plotly figs)

Usage
-----
>>> from covcomb.benchmark import make_scenarios, run_benchmark, analyze_and_visualize
>>> df = run_benchmark(make_scenarios(50), processes=4)
>>> analyze_and_visualize(df, Path("covcomb_benchmark.html"))
"""
from __future__ import annotations

import logging
import multiprocessing as mp
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
import plotly.graph_objects as go
from tqdm import tqdm

from covcomb.simulation import Metrics, Scenario, evaluate, monte_carlo

# ------------------------------------------------------------------ #
# 1. Scenario factory
# ------------------------------------------------------------------ #
def make_scenarios(trial_base: int) -> List[Scenario]:
    """Return a diverse list of Scenario objects."""
    n_default, k_default, sub_default = 6, 4, 3

    scns: List[Scenario] = [
        Scenario("1. Base", n_default, k_default, sub_default,
                 n_trials=trial_base, seed=1),
        Scenario("2. UnequalDOF", n_default, k_default, sub_default,
                 dof=(400., 100., 50., 25.), n_trials=trial_base, seed=2),
        Scenario("3. SmallDOF", n_default, k_default, sub_default,
                 dof=10., n_trials=trial_base, seed=3),
        Scenario("4. StrongCorr", n_default, k_default, sub_default,
                 rho=.95, n_trials=trial_base, seed=4),
        Scenario("5. Banded", n_default, k_default, sub_default,
                 structure="banded", n_trials=trial_base, seed=5),
        Scenario("6. RandomSPD", n_default, k_default, sub_default,
                 structure="random", n_trials=trial_base, seed=6),
        Scenario("7. RandomOverlap", n_default, 6, sub_default,
                 overlap="random", n_trials=trial_base, seed=7),
    ]

    # ─ n_vars-scaling -------------------------------------------------
    for n_val in (4, 8, 12):
        scns.append(
            Scenario(f"8. Scale_n={n_val}", n_val, n_val // 2 + 1, n_val // 2,
                     n_trials=trial_base, seed=100 + n_val)
        )
    # ─ overlap-scaling ------------------------------------------------
    for sub_val in (2, 4, 5):
        scns.append(
            Scenario(f"9. Subset={sub_val}", n_default, 5, sub_val,
                     n_trials=trial_base, seed=200 + sub_val)
        )
    return scns


# ------------------------------------------------------------------ #
# 2.   Worker (runs inside multiprocessing Pool)
# ------------------------------------------------------------------ #
def scenario_worker(scn: Scenario) -> Dict[str, Any]:
    t0  = time.time()
    res = monte_carlo(scn)
    return {
        "scenario": scn,
        "metrics": evaluate(res),
        "runtime_s": time.time() - t0,
    }


# ------------------------------------------------------------------ #
# 3.   Tabulation
# ------------------------------------------------------------------ #
_SCENARIO_COLS = ["name", "n_vars", "n_matrices", "subset_size", "n_trials",
                  "structure", "overlap", "rho"]
_METRIC_COLS = ["abs_bias_mean", "abs_bias_max", "sd_mean", "rmse_mean",
                "var_ratio_median", "cover95_mean", "fail_rate",
                "iter_mean", "iter_max", "runtime_s"]
HEADER = _SCENARIO_COLS + _METRIC_COLS


def _nan_reduce(fn, x: np.ndarray) -> float:
    x = np.asarray(x, float)
    return float(fn(x)) if np.isfinite(x).any() else float("nan")


def metrics_to_row(data: Dict[str, Any]) -> List[Any]:
    """Flatten one :func:`scenario_worker` record into a row matching ``HEADER``."""
    scn: Scenario = data["scenario"]
    m: Metrics    = data["metrics"]
    return [
        scn.name, scn.n_vars, scn.n_matrices, scn.subset_size, scn.n_trials,
        scn.structure, scn.overlap, scn.rho,
        _nan_reduce(np.nanmean, np.abs(m.bias)),
        _nan_reduce(np.nanmax, np.abs(m.bias)),
        _nan_reduce(np.nanmean, m.sd),
        _nan_reduce(np.nanmean, m.rmse),
        _nan_reduce(np.nanmedian, m.var_ratio),
        _nan_reduce(np.nanmean, m.cover95),
        float(m.fail_rate),
        float(m.iter_mean),
        float(m.iter_max),
        float(data["runtime_s"]),
    ]


def scenarios_to_df(data: Sequence[Dict[str, Any]]) -> pd.DataFrame:
    return pd.DataFrame([metrics_to_row(d) for d in data], columns=HEADER)


def run_benchmark(scenarios: Sequence[Scenario],
                  processes: Optional[int] = None) -> pd.DataFrame:
    """Run every scenario (in parallel unless ``processes == 1``)."""
    processes = max(1, mp.cpu_count() - 1) if processes is None else processes
    logging.info(f"Running {len(scenarios)} scenarios on {processes} process(es) …")

    if processes == 1:
        data = [scenario_worker(s) for s in tqdm(scenarios, desc="Scenarios")]
    else:
        with mp.Pool(processes) as pool:
            data = list(tqdm(pool.imap_unordered(scenario_worker, scenarios),
                             total=len(scenarios), desc="Scenarios"))

    df = scenarios_to_df(data)
    order = {s.name: i for i, s in enumerate(scenarios)}
    return df.sort_values("name", key=lambda c: c.map(order)).reset_index(drop=True)


# ------------------------------------------------------------------ #
# 4.   Visualisation helper
# ------------------------------------------------------------------ #
def analyze_and_visualize(df: pd.DataFrame, report: Path) -> Path:
    """Generate an interactive HTML summary (Plotly)."""
    figs: List[go.Figure] = []

    # -------- Fig 1: Accuracy -----------------------------------------
    fig1 = go.Figure()
    fig1.add_trace(go.Bar(name="mean |bias|", x=df["name"], y=df["abs_bias_mean"],
                          marker_color="royalblue"))
    fig1.add_trace(go.Bar(name="mean RMSE", x=df["name"], y=df["rmse_mean"],
                          marker_color="firebrick"))
    fig1.update_layout(title="Figure 1 – Accuracy of vech(Ψ̂)",
                       yaxis_title="Absolute error", barmode="group")
    figs.append(fig1)

    # -------- Fig 2: Variance ratio -----------------------------------
    fig2 = go.Figure()
    fig2.add_trace(go.Scatter(x=df["name"], y=df["var_ratio_median"],
                              mode="markers+lines", marker_color="firebrick",
                              name="median var ratio"))
    fig2.add_hline(y=1.0, line_dash="dash",
                   line_color="black",
                   annotation_text="Ideal = 1")
    fig2.update_layout(title="Figure 2 – Empirical / Sandwich Variance",
                       yaxis_type="log", yaxis_title="Ratio")
    figs.append(fig2)

    # -------- Fig 3: Coverage & failure rate --------------------------
    fig3 = go.Figure()
    fig3.add_trace(go.Bar(name="95% coverage (%)", x=df["name"],
                          y=df["cover95_mean"] * 100, marker_color="seagreen"))
    fig3.add_trace(go.Bar(name="failures (%)", x=df["name"],
                          y=df["fail_rate"] * 100, marker_color="gray"))
    fig3.add_hline(y=95.0, line_dash="dash", line_color="black")
    fig3.update_layout(title="Figure 3 – Coverage & Failure Rate (%)",
                       yaxis_title="%", barmode="group")
    figs.append(fig3)

    # -------- HTML export ---------------------------------------------
    report = Path(report)
    with open(report, "w", encoding="utf-8") as f:
        f.write("<html><head><title>covcomb Benchmark</title></head>"
                "<body style='font-family: sans-serif'>")
        f.write("<h1>EM Covariance Combiner Benchmark Report</h1>")
        for i, fig in enumerate(figs, 1):
            f.write(f"<h2>Figure {i}</h2>")
            f.write(fig.to_html(full_html=False, include_plotlyjs="cdn"))
        f.write("</body></html>")
    logging.info(f"Report saved → {report.absolute()}")
    return report
