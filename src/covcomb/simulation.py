# covcomb/simulation.py ─ Monte‑Carlo test‑bed for the EM covariance combiner
# ===========================================================================
# Synthesises *trial‑like* collections of partial covariance matrices from a
# known Σ and checks how well ``covcomb.core`` recovers it: every partial
# matrix is a Wishart draw over a subset of the variables, exactly the
# sampling model the combiner assumes.
#
#  ──────────────────────────────────────────────────────────────
#  Sampling model
#  ──────────────────────────────────────────────────────────────
#  Y_i ~ Wishart(ν_i, Σ_AiAi / ν_i)   ⇒   E[Y_i] = Σ_AiAi
#
#  so Σ is the target of Ψ̂ and the sandwich covariance should describe
#  the spread of vech(Ψ̂) across trials.
#  ------------------------------------------------------------------

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional, Sequence, Union

import numpy as np
import scipy.stats
from numpy.random import Generator, default_rng
from scipy.stats import ortho_group

from covcomb.core import EMCovarianceCombiner, vech
from covcomb.exceptions import NumericalDegeneracyError

__all__ = [
    "Scenario",
    "Metrics",
    "generate_true_covariance",
    "generate_index_sets",
    "draw_partial_covariance",
    "run_combiner",
    "monte_carlo",
    "evaluate",
]

# ---------------------------------------------------------------------
# 1. Scenario specification
# ---------------------------------------------------------------------
@dataclass(slots=True)
class Scenario:
    """High‑level *recipe* for a Monte‑Carlo run.

    Parameters
    ----------
    name : str
        Free‑form scenario label.
    n_vars : int
        Number of variables in the true Σ.
    n_matrices : int
        Partial matrices drawn per trial.
    subset_size : int
        Variables observed by each partial matrix.
    dof : float | Sequence[float], default=100
        Wishart degrees of freedom ν_i (scalar ⇒ same for every matrix).
    n_trials : int, default=100
        Independent Monte‑Carlo replications.
    structure : Literal["toeplitz", "banded", "random"]
        Pattern of Σ. See :func:`generate_true_covariance`.
    overlap : Literal["sliding", "random"]
        How index sets are chosen. See :func:`generate_index_sets`.
    rho : float, default=0.6
        Correlation parameter of the toeplitz / banded patterns.
    calc_sampling_cov : bool, default=True
        Also compute the sandwich covariance in every trial.
    seed : int | None, default=None
        NumPy RNG seed for full reproducibility.
    """

    name: str
    n_vars: int
    n_matrices: int
    subset_size: int
    dof: Union[float, Sequence[float]] = 100.0
    n_trials: int = 100
    structure: Literal["toeplitz", "banded", "random"] = "toeplitz"
    overlap: Literal["sliding", "random"] = "sliding"
    rho: float = 0.6
    calc_sampling_cov: bool = True
    seed: Optional[int] = None


# ---------------------------------------------------------------------
# 2. True covariance generator
# ---------------------------------------------------------------------
def _toeplitz_cov(n: int, ρ: float) -> np.ndarray:
    """Toeplitz(ρ^{|i−j|}) positive‑definite matrix (AR(1) correlation)."""

    idx = np.arange(n)
    return ρ ** np.abs(np.subtract.outer(idx, idx))


def _banded_cov(n: int, ρ: float, bandwidth: int = 2) -> np.ndarray:
    """Unit‑diagonal banded matrix, made SPD by a diagonal shift if needed."""

    S = np.eye(n)
    for k in range(1, min(bandwidth, n - 1) + 1):
        np.fill_diagonal(S[k:], ρ ** k)
        np.fill_diagonal(S[:, k:], ρ ** k)
    λ_min = np.linalg.eigvalsh(S)[0]
    if λ_min <= 0.05:
        S += (0.05 - λ_min) * np.eye(n)
    return S


def _random_spd(n: int, rng: Generator) -> np.ndarray:
    """Random SPD matrix with log‑uniform spectrum in [0.2, 5]."""

    U = ortho_group.rvs(dim=n, random_state=rng) if n > 1 else np.ones((1, 1))
    λ = np.exp(rng.uniform(np.log(0.2), np.log(5.0), size=n))
    return (U * λ) @ U.T


def generate_true_covariance(
    n_vars: int,
    structure: Literal["toeplitz", "banded", "random"],
    rng: Optional[Generator] = None,
    rho: float = 0.6,
) -> np.ndarray:
    """Return the *true* Σ ∈ R^{n×n}.

    *toeplitz*  – AR(1)‑like correlation ρ^{|i−j|}
    *banded*    – correlation ρ^k up to two off‑diagonals
    *random*    – random SPD matrix (random eigenvectors and spectrum)
    """

    rng = default_rng() if rng is None else rng

    if structure == "toeplitz":
        return _toeplitz_cov(n_vars, rho)
    if structure == "banded":
        return _banded_cov(n_vars, rho)
    if structure == "random":
        S = _random_spd(n_vars, rng)
        return 0.5 * (S + S.T)
    raise ValueError(f"Unknown structure: {structure}")


# ---------------------------------------------------------------------
# 3. Index‑set generator
# ---------------------------------------------------------------------
def generate_index_sets(
    n_vars: int,
    n_matrices: int,
    subset_size: int,
    overlap: Literal["sliding", "random"] = "sliding",
    rng: Optional[Generator] = None,
) -> List[np.ndarray]:
    """Return *n_matrices* sorted index sets covering every variable.

    *sliding* – windows of length *subset_size* whose starts are spread
                evenly over [0, n_vars − subset_size]
    *random*  – random subsets; the first ⌈n_vars / subset_size⌉ sets are a
                random partition‑like cover so no variable is left out
    """

    if not 1 <= subset_size <= n_vars:
        raise ValueError(f"subset_size must be in [1, {n_vars}]. Got {subset_size}")
    rng = default_rng() if rng is None else rng

    if overlap == "sliding":
        starts = np.linspace(0, n_vars - subset_size, n_matrices).round().astype(int)
        sets = [np.arange(s, s + subset_size) for s in starts]
        covered = np.unique(np.concatenate(sets))
        if covered.size < n_vars:
            raise ValueError(
                f"{n_matrices} windows of size {subset_size} cannot cover {n_vars} variables"
            )
        return sets

    if overlap == "random":
        perm = rng.permutation(n_vars)
        sets: List[np.ndarray] = []
        for start in range(0, n_vars, subset_size):
            chunk = perm[start : start + subset_size]
            if chunk.size < subset_size:
                rest = np.setdiff1d(np.arange(n_vars), chunk)
                chunk = np.concatenate([chunk, rng.choice(rest, subset_size - chunk.size, replace=False)])
            sets.append(np.sort(chunk))
        if len(sets) > n_matrices:
            raise ValueError(
                f"{n_matrices} random subsets of size {subset_size} cannot cover {n_vars} variables"
            )
        while len(sets) < n_matrices:
            sets.append(np.sort(rng.choice(n_vars, subset_size, replace=False)))
        return sets

    raise ValueError(f"Unknown overlap: {overlap}")


# ---------------------------------------------------------------------
# 4. Partial‑matrix generator  (Y ~ Wishart(ν, Σ_AA / ν))
# ---------------------------------------------------------------------
def draw_partial_covariance(
    sigma: np.ndarray,
    idx: Sequence[int],
    dof: float,
    rng: Generator,
) -> np.ndarray:
    """Draw one sample covariance over *idx* with expectation Σ[idx, idx]."""

    sub = sigma[np.ix_(idx, idx)]
    Y = scipy.stats.wishart(df=dof, scale=sub / dof).rvs(random_state=rng)
    Y = np.atleast_2d(Y)
    return 0.5 * (Y + Y.T)


# ---------------------------------------------------------------------
# 5. Wrapper – fit the combiner on one synthetic data set
# ---------------------------------------------------------------------
def run_combiner(
    partial_covs: Sequence[np.ndarray],
    var_indices: Sequence[Sequence[int]],
    dof: Sequence[float],
    calc_sampling_cov: bool = True,
    **options: Any,
) -> Dict[str, Any]:
    """Fit :class:`EMCovarianceCombiner` and return a flat record."""

    est = EMCovarianceCombiner(calc_sampling_cov=calc_sampling_cov, track_loglik=True, **options)
    try:
        est.fit(partial_covs, var_indices, dof)
    except NumericalDegeneracyError as e:
        logging.warning("EM aborted: %s", e)
        return {"psi": None, "sampling_cov": None, "n_iter": int(est.n_iter_),
                "converged": False, "loglik": -np.inf}
    return {
        "psi": est.psi_.copy(),
        "sampling_cov": None if est.sampling_cov_ is None else est.sampling_cov_.copy(),
        "n_iter": int(est.n_iter_),
        "converged": bool(est.converged_),
        "loglik": float(est.loglik_path_[-1]),
    }


def _dof_vector(scn: Scenario) -> np.ndarray:
    if np.ndim(scn.dof) == 0:
        return np.full(scn.n_matrices, float(scn.dof))
    dof = np.asarray(scn.dof, float)
    if dof.size != scn.n_matrices:
        raise ValueError("Length of dof must match n_matrices")
    return dof


# ---------------------------------------------------------------------
# 6. Monte‑Carlo driver
# ---------------------------------------------------------------------
def monte_carlo(scn: Scenario, **options: Any) -> Dict[str, np.ndarray]:
    """Run *n_trials* synthetic experiments under *Scenario scn*.

    The true Σ and the index sets are fixed per scenario; only the Wishart
    draws change between trials.  Returned metrics:
        • sigma_true   – (n, n)       true covariance
        • psi          – (N, n, n)    Ψ̂ per trial (NaN if EM aborted)
        • sampling_cov – (N, p, p)    sandwich covariance (NaN if absent)
        • n_iter       – (N,)         iteration count
        • converged    – (N,)         boolean flag
        • loglik       – (N,)         final log‑likelihood
    """

    rng = default_rng(scn.seed)

    # 1. experiment design ------------------------------------------------
    sigma_true = generate_true_covariance(scn.n_vars, scn.structure, rng, rho=scn.rho)
    var_indices = generate_index_sets(scn.n_vars, scn.n_matrices, scn.subset_size, scn.overlap, rng)
    dof = _dof_vector(scn)
    n = scn.n_vars
    p = n * (n + 1) // 2

    # 2. storage allocation ----------------------------------------------
    metrics = ("psi", "sampling_cov", "n_iter", "converged", "loglik")
    results: Dict[str, list] = {m: [] for m in metrics}

    # 3. Monte‑Carlo loop -------------------------------------------------
    for _ in range(scn.n_trials):
        covs = [draw_partial_covariance(sigma_true, idx, ν, rng) for idx, ν in zip(var_indices, dof)]
        out = run_combiner(covs, var_indices, dof, calc_sampling_cov=scn.calc_sampling_cov, **options)
        results["psi"].append(np.full((n, n), np.nan) if out["psi"] is None else out["psi"])
        results["sampling_cov"].append(
            np.full((p, p), np.nan) if out["sampling_cov"] is None else out["sampling_cov"]
        )
        for m in ("n_iter", "converged", "loglik"):
            results[m].append(out[m])

    # 4. stack → ndarray --------------------------------------------------
    return {
        "sigma_true": sigma_true,
        "psi": np.stack(results["psi"]),
        "sampling_cov": np.stack(results["sampling_cov"]),
        "n_iter": np.array(results["n_iter"], int),
        "converged": np.array(results["converged"], bool),
        "loglik": np.array(results["loglik"], float),
    }


# ---------------------------------------------------------------------
# 7. Evaluation
# ---------------------------------------------------------------------
@dataclass(slots=True)
class Metrics:
    """Per‑parameter accuracy of vech(Ψ̂) against vech(Σ)."""

    bias: np.ndarray
    sd: np.ndarray
    rmse: np.ndarray
    var_ratio: np.ndarray
    cover95: np.ndarray
    fail_rate: float
    iter_mean: float
    iter_max: float


def evaluate(results: Dict[str, np.ndarray], level: float = 0.95) -> Metrics:
    """Summarise a :func:`monte_carlo` run.

    *var_ratio* is empirical variance over mean sandwich variance (ideal 1);
    *cover95* the share of Wald intervals at *level* that contain the truth.
    """

    truth = vech(results["sigma_true"])
    p = truth.size
    psi = results["psi"]
    ok = results["converged"] & np.isfinite(psi).all(axis=(1, 2))

    nan_vec = np.full(p, np.nan)
    if not ok.any():
        return Metrics(nan_vec, nan_vec, nan_vec, nan_vec, nan_vec, 1.0, np.nan, np.nan)

    est = np.stack([vech(P) for P in psi[ok]])          # (N_ok, p)
    mean_est = est.mean(axis=0)
    var = est.var(axis=0, ddof=1) if est.shape[0] > 1 else np.zeros(p)
    rmse = np.sqrt(np.mean((est - truth) ** 2, axis=0))

    diag_cov = np.diagonal(results["sampling_cov"][ok], axis1=1, axis2=2)  # (N_ok, p)
    has_cov = np.isfinite(diag_cov).all(axis=1)
    if has_cov.any():
        z = scipy.stats.norm.ppf(0.5 + level / 2.0)
        hw = z * np.sqrt(np.clip(diag_cov[has_cov], 0.0, None))
        cover = (np.abs(est[has_cov] - truth) <= hw).mean(axis=0)
        var_ratio = var / (diag_cov[has_cov].mean(axis=0) + 1e-12)
    else:
        cover = var_ratio = nan_vec

    n_iter = results["n_iter"][ok]
    return Metrics(
        bias=mean_est - truth,
        sd=np.sqrt(var),
        rmse=rmse,
        var_ratio=var_ratio,
        cover95=cover,
        fail_rate=float(1.0 - ok.mean()),
        iter_mean=float(n_iter.mean()),
        iter_max=float(n_iter.max()),
    )


