# covcomb/core.py ― EM combination of partially observed covariance matrices
# =========================================================================
# References (abbrev. used below):
#   ▸ DLR 1977  = Dempster, Laird & Rubin (1977), “Maximum Likelihood from
#                 Incomplete Data via the EM Algorithm”
#   ▸ MKB 1979  = Mardia, Kent & Bibby (1979), “Multivariate Analysis”,
#                 Ch. 3 (conditional normal, Wishart)
#
# Every partial matrix Y_a is an observation of the [A, A] block of a
# Wishart(ν, Ψ/ν) matrix over all n_vars variables.  The E-step fills in the
# unobserved blocks by their conditional expectation given Y_a, the M-step
# is the ν-weighted mean of the completed matrices.

from __future__ import annotations

import logging
import warnings
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Literal, Optional, Sequence, Tuple

import numpy as np

from .exceptions import (
    InputValidationError,
    NumericalDegeneracyError,
    SamplingCovarianceError,
    SamplingCovarianceWarning,
)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
)

DEFAULT_DEGREES_OF_FREEDOM = 100.0

Status = Literal["initialized", "iterating", "converged", "max_iter_reached"]

# ---------------------------------------------------------------------
# Packed lower-triangular parameter indexing
# ---------------------------------------------------------------------
def linear_index(i: int, j: int) -> int:
    """
    Position of element (i, j) of a symmetric matrix in its packed
    lower-triangular vector of unique elements:

        p(i, j) = i (i + 1) / 2 + j          with i ≥ j (swapped if needed)

    ``linear_index(i, j) == linear_index(j, i)`` and, for a fixed n, the map
    is a bijection onto {0, …, n(n+1)/2 − 1}.
    """
    if i < j:
        i, j = j, i
    return i * (i + 1) // 2 + j


def packed_indices(n: int) -> Tuple[np.ndarray, np.ndarray]:
    """Return ``(rows, cols)`` with ``linear_index(rows[p], cols[p]) == p``."""
    return np.tril_indices(n)


def vech(S: np.ndarray) -> np.ndarray:
    """Packed lower-triangular vector of the symmetric matrix *S*."""
    rows, cols = packed_indices(S.shape[0])
    return S[rows, cols]


def parallel_map(fn: Callable[[Any], Any], items: Iterable[Any], n_jobs: Optional[int] = None) -> list:
    """
    Apply *fn* to every item, on a thread pool when ``n_jobs > 1``.

    Results come back in input order; callers reduce them on the calling
    thread.  NumPy releases the GIL inside LAPACK, so threads overlap the
    per-matrix linear algebra.
    """
    if n_jobs is None or n_jobs <= 1:
        return [fn(item) for item in items]
    with ThreadPoolExecutor(max_workers=n_jobs) as pool:
        return list(pool.map(fn, items))


# ---------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------
def validate_inputs(
    partial_covs: Sequence[Any],
    var_indices: Sequence[Sequence[int]],
    degrees_of_freedom: Optional[Sequence[float]] = None,
) -> Tuple[List[np.ndarray], List[np.ndarray], np.ndarray, int]:
    """
    Check and normalise the (matrix, index set, weight) triples.

    Returns
    -------
    covs : list of (k_i, k_i) float ndarrays
    idx : list of (k_i,) int ndarrays (0-based global variable indices)
    nu : (N,) float ndarray of degrees of freedom (default 100 each)
    n_vars : int
        ``max(all indices) + 1``.

    Raises
    ------
    InputValidationError
        On any malformed input; nothing is computed in that case.
    """
    if partial_covs is None or var_indices is None or len(partial_covs) == 0 or len(var_indices) == 0:
        raise InputValidationError("Empty input provided")
    if len(partial_covs) != len(var_indices):
        raise InputValidationError(
            f"Number of covariance matrices ({len(partial_covs)}) must match "
            f"number of index sets ({len(var_indices)})"
        )

    covs: List[np.ndarray] = []
    idx: List[np.ndarray] = []
    for k, (cov, ind) in enumerate(zip(partial_covs, var_indices)):
        C = np.asarray(cov, dtype=float)
        I = np.asarray(ind)
        if C.ndim != 2 or C.shape[0] != C.shape[1]:
            raise InputValidationError(f"Matrix {k} must be square. Got shape {C.shape}")
        if I.ndim != 1 or I.shape[0] != C.shape[0]:
            raise InputValidationError(
                f"Index set {k} has length {I.size}, matrix {k} has dimension {C.shape[0]}"
            )
        if I.size == 0:
            raise InputValidationError(f"Index set {k} is empty")
        if not np.issubdtype(I.dtype, np.integer):
            if not np.all(np.equal(np.mod(I, 1), 0)):
                raise InputValidationError(f"Index set {k} must contain integers")
            I = I.astype(int)
        if np.any(I < 0):
            raise InputValidationError(f"Index set {k} contains negative indices (0-based expected)")
        if np.unique(I).size != I.size:
            raise InputValidationError(f"Index set {k} contains duplicate indices")
        if not np.all(np.isfinite(C)):
            raise InputValidationError(f"Matrix {k} contains NaN or inf")
        if not np.allclose(C, C.T):
            raise InputValidationError(f"Matrix {k} is not symmetric")
        covs.append(C)
        idx.append(I.astype(np.intp))

    if degrees_of_freedom is None:
        nu = np.full(len(covs), DEFAULT_DEGREES_OF_FREEDOM)
    else:
        nu = np.asarray(degrees_of_freedom, dtype=float).ravel()
        if nu.size != len(covs):
            raise InputValidationError(
                f"Length of degrees_of_freedom ({nu.size}) must match number of matrices ({len(covs)})"
            )
        if not np.all(np.isfinite(nu)) or np.any(nu <= 0.0):
            raise InputValidationError("degrees_of_freedom must be finite and positive")

    n_vars = int(max(int(I.max()) for I in idx)) + 1
    return covs, idx, nu, n_vars


# ---------------------------------------------------------------------
# Initial Ψ
# ---------------------------------------------------------------------
def initialize_psi(
    partial_covs: Sequence[np.ndarray],
    var_indices: Sequence[Sequence[int]],
    n_vars: int,
) -> np.ndarray:
    """
    Diagonal starting value: Ψ⁽⁰⁾_vv = mean of every observed variance of v.

    A variable that no partial matrix observes keeps the identity's 1.0 on
    the diagonal.  Off-diagonal elements start at zero.
    """
    psi = np.eye(n_vars)
    for v in range(n_vars):
        variances = []
        for cov, idx in zip(partial_covs, var_indices):
            hits = np.flatnonzero(np.asarray(idx) == v)
            if hits.size:
                variances.append(cov[hits[0], hits[0]])
        if variances:
            psi[v, v] = np.mean(variances)
    return psi


# ---------------------------------------------------------------------
# E-step
# ---------------------------------------------------------------------
def conditional_expectation(
    ya: np.ndarray,
    psi: np.ndarray,
    obs_idx: Sequence[int],
    missing_idx: Optional[Sequence[int]] = None,
    singular_tol: float = 1e12,
    verbose: bool = False,
) -> np.ndarray:
    """
    Return E[Y | Y_AA = ya, Ψ] embedded in an (n_vars, n_vars) matrix.

    With  B = Ψ_ABᵀ Ψ_AA⁻¹  (regression of the missing block on the observed
    block, MKB 1979 §3.2):

        E[Y_AA] = ya
        E[Y_BA] = B ya                                     E[Y_AB] = E[Y_BA]ᵀ
        E[Y_BB] = Ψ_BB − B Ψ_AB + B ya Bᵀ

    If nothing is missing, *ya* is simply embedded in the [A, A] block.

    Raises
    ------
    NumericalDegeneracyError
        If Ψ_AA is numerically singular or the regression weights are not
        finite.  A condition number above *singular_tol* only logs a warning
        when *verbose* is set.
    """
    n_total = psi.shape[0]
    obs = np.asarray(obs_idx, dtype=np.intp)
    if missing_idx is None:
        missing = np.setdiff1d(np.arange(n_total), obs)
    else:
        missing = np.asarray(missing_idx, dtype=np.intp)

    result = np.zeros((n_total, n_total))
    result[np.ix_(obs, obs)] = ya
    if missing.size == 0:
        return result

    psi_aa = psi[np.ix_(obs, obs)]
    psi_ab = psi[np.ix_(obs, missing)]
    psi_bb = psi[np.ix_(missing, missing)]

    if verbose and np.linalg.cond(psi_aa) > singular_tol:
        logging.warning(f"Psi restricted to observed variables {obs.tolist()} is ill-conditioned")
    try:
        B = np.linalg.solve(psi_aa, psi_ab).T  # Ψ_AA symmetric ⇒ (Ψ_AA⁻¹ Ψ_AB)ᵀ = Ψ_ABᵀ Ψ_AA⁻¹
    except np.linalg.LinAlgError as e:
        raise NumericalDegeneracyError(
            f"Psi restricted to observed variables {obs.tolist()} is singular"
        ) from e
    if not np.all(np.isfinite(B)):
        raise NumericalDegeneracyError(
            f"Psi restricted to observed variables {obs.tolist()} gave non-finite regression weights"
        )

    exp_ba = B @ ya
    result[np.ix_(missing, obs)] = exp_ba
    result[np.ix_(obs, missing)] = exp_ba.T
    exp_bb = psi_bb - B @ psi_ab + B @ ya @ B.T
    result[np.ix_(missing, missing)] = 0.5 * (exp_bb + exp_bb.T)
    return result


# ---------------------------------------------------------------------
# Observed-data log-likelihood
# ---------------------------------------------------------------------
def log_likelihood(
    psi: np.ndarray,
    partial_covs: Sequence[np.ndarray],
    var_indices: Sequence[Sequence[int]],
    degrees_of_freedom: Sequence[float],
) -> float:
    """
    Wishart observed-data log-likelihood, constant terms dropped:

        ℓ(Ψ) = Σ_i −½ ν_i [ log|Ψ_AiAi| + tr(Ψ_AiAi⁻¹ Y_i) ]

    Returns ``-inf`` as soon as one Ψ_AiAi has an eigenvalue ≤ 0; that is
    an ordinary outcome during early iterations, not an error.
    """
    log_lik = 0.0
    for ya, idx, nu in zip(partial_covs, var_indices, degrees_of_freedom):
        idx = np.asarray(idx, dtype=np.intp)
        psi_sub = psi[np.ix_(idx, idx)]
        w, V = np.linalg.eigh(psi_sub)
        if np.any(w <= 0.0):
            return -np.inf
        logdet = float(np.sum(np.log(w)))
        # tr(Ψ⁻¹ Y) = tr(Λ⁻¹ Vᵀ Y V)
        trace_term = float(np.sum(np.diagonal(V.T @ ya @ V) / w))
        log_lik += -0.5 * nu * (logdet + trace_term)
    return float(log_lik)


# ---------------------------------------------------------------------
# Result container
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class CombinerResult:
    """
    Output of :func:`combine_covariances`.

    ``psi`` is always present.  ``loglik_path`` is ``None`` unless the
    likelihood was tracked; ``sampling_cov`` is ``None`` unless requested
    and successfully computed (see ``sampling_cov_error`` otherwise).
    """

    psi: np.ndarray
    sampling_cov: Optional[np.ndarray] = None
    loglik_path: Optional[List[float]] = None
    n_iter: int = 0
    converged: bool = False
    status: Status = "initialized"
    sampling_cov_error: Optional[str] = None

    @property
    def n_vars(self) -> int:
        return int(self.psi.shape[0])

    @property
    def stderr(self) -> Optional[np.ndarray]:
        """Standard errors of Ψ as a symmetric (n_vars, n_vars) matrix."""
        if self.sampling_cov is None:
            return None
        n = self.n_vars
        rows, cols = packed_indices(n)
        se = np.full((n, n), np.nan)
        diag = np.sqrt(np.clip(np.diagonal(self.sampling_cov), 0.0, None))
        se[rows, cols] = diag
        se[cols, rows] = diag
        return se


# ---------------------------------------------------------------------
# EM driver
# ---------------------------------------------------------------------
@dataclass
class EMCovarianceCombiner:
    r"""
    EM estimator of a combined covariance matrix Ψ from partial matrices.

    Life-cycle of ``status_``::

        initialized → iterating → converged | max_iter_reached

    Running out of iterations is a reported terminal state, not an error;
    ``psi_`` then holds the last iterate.

    ``n_jobs > 1`` evaluates the per-matrix E-step contributions (and the
    per-matrix sandwich terms) on a thread pool; Ψ itself is only updated
    on the calling thread.  ``sampling_timeout`` (seconds) and
    ``should_stop`` bound the O(n_vars⁴) sampling-covariance stage.
    """

    # ---------------- public inputs ----------------
    max_iter: int = 100
    tol: float = 1e-6
    track_loglik: bool = True
    calc_sampling_cov: bool = False
    verbose: bool = False
    singular_tol: float = 1e12
    n_jobs: Optional[int] = None
    sampling_timeout: Optional[float] = None
    should_stop: Optional[Callable[[], bool]] = None

    # ---------------- results (populated by .fit) --
    psi_: np.ndarray = field(init=False)
    loglik_path_: Optional[List[float]] = field(init=False, default=None)
    sampling_cov_: Optional[np.ndarray] = field(init=False, default=None)
    sampling_cov_error_: Optional[str] = field(init=False, default=None)
    n_vars_: int = field(init=False, default=0)
    n_iter_: int = field(init=False, default=0)
    converged_: bool = field(init=False, default=False)
    status_: Status = field(init=False, default="initialized")

    def __post_init__(self) -> None:
        if self.max_iter < 1:
            raise InputValidationError("max_iter must be at least 1")
        if not self.tol > 0.0:
            raise InputValidationError("tol must be positive")
        self.psi_ = np.empty((0, 0))

    # ------------------------------------------------
    # one EM iteration
    # ------------------------------------------------
    def _em_step(
        self,
        psi: np.ndarray,
        covs: Sequence[np.ndarray],
        idx: Sequence[np.ndarray],
        nu: np.ndarray,
    ) -> np.ndarray:
        """E-step for every matrix, then Ψ ← Σ ν_i E_i / Σ ν_i  (DLR 1977)."""
        n_vars = psi.shape[0]
        all_vars = np.arange(n_vars)

        def expectation(k: int) -> np.ndarray:
            missing = np.setdiff1d(all_vars, idx[k])
            return nu[k] * conditional_expectation(
                covs[k], psi, idx[k], missing,
                singular_tol=self.singular_tol, verbose=self.verbose,
            )

        psi_sum = np.zeros((n_vars, n_vars))
        for weighted in parallel_map(expectation, range(len(covs)), self.n_jobs):
            psi_sum += weighted
        psi_new = psi_sum / float(np.sum(nu))
        return 0.5 * (psi_new + psi_new.T)

    # ------------------------------------------------
    # main driver
    # ------------------------------------------------
    def fit(
        self,
        partial_covs: Sequence[Any],
        var_indices: Sequence[Sequence[int]],
        degrees_of_freedom: Optional[Sequence[float]] = None,
    ) -> "EMCovarianceCombiner":
        """
        Iterate until

          max |Ψ⁽ᵗ⁾ − Ψ⁽ᵗ⁻¹⁾|  <  ``tol``

        or *max_iter* is reached.  Afterwards the sandwich sampling
        covariance is computed if ``calc_sampling_cov`` is set.

        Raises
        ------
        InputValidationError
            Malformed inputs (raised before any computation).
        NumericalDegeneracyError
            A Ψ_AA block became singular during the E-step.
        """
        return self._fit(partial_covs, var_indices, degrees_of_freedom)

    def _fit(
        self,
        partial_covs: Sequence[Any],
        var_indices: Sequence[Sequence[int]],
        degrees_of_freedom: Optional[Sequence[float]],
    ) -> "EMCovarianceCombiner":
        # shared by fit() and combine_covariances() so the sampling warning
        # is always raised four frames below the user call
        covs, idx, nu, n_vars = validate_inputs(partial_covs, var_indices, degrees_of_freedom)
        self.n_vars_ = n_vars
        self.n_iter_ = 0
        self.converged_ = False
        self.sampling_cov_ = None
        self.sampling_cov_error_ = None

        psi = initialize_psi(covs, idx, n_vars)
        self.psi_ = psi
        self.status_ = "initialized"
        self.loglik_path_ = None
        if self.track_loglik:
            self.loglik_path_ = [log_likelihood(psi, covs, idx, nu)]

        self.status_ = "iterating"
        for it in range(1, self.max_iter + 1):
            self.n_iter_ = it
            psi_old = psi
            psi = self._em_step(psi_old, covs, idx, nu)
            self.psi_ = psi

            if self.track_loglik:
                self.loglik_path_.append(log_likelihood(psi, covs, idx, nu))

            delta = float(np.max(np.abs(psi - psi_old)))
            if self.verbose:
                logging.info(f"Iter {it:02d}: max|ΔΨ| = {delta:.3e}")
            if delta < self.tol:
                self.converged_ = True
                self.status_ = "converged"
                break

        if not self.converged_:
            self.status_ = "max_iter_reached"
            if self.verbose:
                logging.warning(f"EM did *not* converge within {self.max_iter} iterations")

        if self.calc_sampling_cov:
            self._fit_sampling_covariance(covs, idx, nu)
        return self

    def _fit_sampling_covariance(
        self,
        covs: Sequence[np.ndarray],
        idx: Sequence[np.ndarray],
        nu: np.ndarray,
    ) -> None:
        from .sandwich import sampling_covariance

        try:
            self.sampling_cov_ = sampling_covariance(
                self.psi_,
                covs,
                idx,
                nu,
                singular_tol=self.singular_tol,
                verbose=self.verbose,
                n_jobs=self.n_jobs,
                timeout=self.sampling_timeout,
                should_stop=self.should_stop,
            )
        except SamplingCovarianceError as e:
            self.sampling_cov_ = None
            self.sampling_cov_error_ = str(e)
            logging.warning(f"Error computing sampling covariance: {e}")
            warnings.warn(
                f"Error computing sampling covariance: {e}",
                SamplingCovarianceWarning,
                stacklevel=4,
            )

    # ------------------------------------------------
    # utilities
    # ------------------------------------------------
    def result(self) -> CombinerResult:
        """Snapshot of the fitted state as an immutable :class:`CombinerResult`."""
        return CombinerResult(
            psi=self.psi_.copy(),
            sampling_cov=None if self.sampling_cov_ is None else self.sampling_cov_.copy(),
            loglik_path=None if self.loglik_path_ is None else list(self.loglik_path_),
            n_iter=self.n_iter_,
            converged=self.converged_,
            status=self.status_,
            sampling_cov_error=self.sampling_cov_error_,
        )


def combine_covariances(
    partial_matrices: Sequence[Any],
    variable_index_sets: Sequence[Sequence[int]],
    degrees_of_freedom: Optional[Sequence[float]] = None,
    max_iter: int = 100,
    tol: float = 1e-6,
    track_loglik: bool = True,
    calc_sampling_cov: bool = False,
    **options: Any,
) -> CombinerResult:
    """
    Combine partial covariance matrices into one estimate Ψ by EM.

    Parameters
    ----------
    partial_matrices : sequence of (k_i, k_i) array-likes
        Symmetric partial covariance matrices.
    variable_index_sets : sequence of int sequences
        0-based global variable indices of each matrix, in matrix order.
    degrees_of_freedom : sequence of float, optional
        Weight ν_i of each matrix; 100 each when omitted.
    max_iter, tol : int, float
        EM stopping rule (max absolute element change below *tol*).
    track_loglik : bool
        Record the log-likelihood before the first and after every iteration.
    calc_sampling_cov : bool
        Compute the sandwich sampling covariance of vech(Ψ).
    **options
        Further :class:`EMCovarianceCombiner` fields (``verbose``,
        ``singular_tol``, ``n_jobs``, ``sampling_timeout``, ``should_stop``).

    Returns
    -------
    CombinerResult
    """
    combiner = EMCovarianceCombiner(
        max_iter=max_iter,
        tol=tol,
        track_loglik=track_loglik,
        calc_sampling_cov=calc_sampling_cov,
        **options,
    )
    return combiner._fit(partial_matrices, variable_index_sets, degrees_of_freedom).result()
