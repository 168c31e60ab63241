# covcomb/sandwich.py ― Sandwich sampling covariance of vech(Ψ̂)
# ==============================================================
#
#   Cov{vech Ψ̂}  ≈  I⁻¹ S I⁻ᵀ
#
#   bread  I = Σ_i ν_i M(Ψ⁻¹),   M_pq = Ψ⁻¹_ac Ψ⁻¹_bd + Ψ⁻¹_ad Ψ⁻¹_bc,
#                                 p = (a, b), q = (c, d), a ≥ b, c ≥ d
#   meat   S = Σ_i ν_i s_i s_iᵀ, s_i = vech(E[Y_i | Y_AiAi, Ψ̂] − Ψ̂)
#
# The bread uses the full Ψ⁻¹ for every partial matrix, not the inverse of
# the block each matrix actually observes, which only approximates the
# observed information under missing data.

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Sequence

import numpy as np

from .core import conditional_expectation, packed_indices, parallel_map, vech
from .exceptions import (
    EstimationCancelled,
    NumericalDegeneracyError,
    SamplingCovarianceError,
)


def _checked_inverse(
    A: np.ndarray, what: str, singular_tol: float, verbose: bool = False
) -> np.ndarray:
    """
    Invert *A*, raising :class:`SamplingCovarianceError` if it is singular
    or the inverse is not finite.  A condition number above *singular_tol*
    is only reported (verbose mode).
    """
    if not np.all(np.isfinite(A)):
        raise SamplingCovarianceError(f"{what} contains NaN or inf")
    if verbose and np.linalg.cond(A) > singular_tol:
        logging.warning(f"{what} is ill-conditioned; sampling covariance may be unstable")
    try:
        A_inv = np.linalg.inv(A)
    except np.linalg.LinAlgError as e:
        raise SamplingCovarianceError(f"{what} is singular: {e}") from e
    if not np.all(np.isfinite(A_inv)):
        raise SamplingCovarianceError(f"{what} has a non-finite inverse")
    return A_inv


def information_matrix(psi_inv: np.ndarray, nu: float = 1.0) -> np.ndarray:
    """
    ν-scaled information ("bread") over the packed parameters of Ψ.

    Inputs
    - psi_inv : (n, n) inverse of the combined matrix
    - nu      : degrees of freedom of one partial matrix

    Output
    - info    : (n(n+1)/2, n(n+1)/2)
    """
    rows, cols = packed_indices(psi_inv.shape[0])
    ac = psi_inv[np.ix_(rows, rows)]
    bd = psi_inv[np.ix_(cols, cols)]
    ad = psi_inv[np.ix_(rows, cols)]
    bc = psi_inv[np.ix_(cols, rows)]
    return nu * (ac * bd + ad * bc)


def score_vector(exp_y: np.ndarray, psi: np.ndarray) -> np.ndarray:
    """Packed score s = vech(E − Ψ) of one partial matrix."""
    return vech(exp_y - psi)



def sampling_covariance(
    psi: np.ndarray,
    partial_covs: Sequence[np.ndarray],
    var_indices: Sequence[Sequence[int]],
    degrees_of_freedom: Sequence[float],
    *,
    singular_tol: float = 1e12,
    verbose: bool = False,
    n_jobs: Optional[int] = None,
    timeout: Optional[float] = None,
    should_stop: Optional[Callable[[], bool]] = None,
) -> np.ndarray:
    """
    Sandwich sampling covariance of the packed elements of *psi*.

    Rows/columns follow :func:`covcomb.core.linear_index`.  The bread does
    not depend on the matrix, so it is built once and scaled by Σ ν_i.
    Per-matrix score vectors are independent given Ψ and may run on
    ``n_jobs`` threads; the meat S = Σ ν_i s_i s_iᵀ is formed here.

    *timeout* (seconds, wall clock from the call) and *should_stop* are
    checked before the bread and before every per-matrix score.

    Raises
    ------
    SamplingCovarianceError
        Ψ or the information matrix is singular, or an E-step at Ψ fails.
    EstimationCancelled
        The timeout expired or ``should_stop()`` returned true.
    """
    n_vars = psi.shape[0]
    deadline = None if timeout is None else time.monotonic() + timeout
    nu = np.asarray(degrees_of_freedom, dtype=float)
    all_vars = np.arange(n_vars)

    def check_cancel() -> None:
        if deadline is not None and time.monotonic() > deadline:
            raise EstimationCancelled(f"sampling covariance exceeded timeout of {timeout} s")
        if should_stop is not None and should_stop():
            raise EstimationCancelled("sampling covariance cancelled by caller")

    def score(k: int) -> np.ndarray:
        check_cancel()
        idx = np.asarray(var_indices[k])
        missing = np.setdiff1d(all_vars, idx)
        try:
            exp_y = conditional_expectation(
                partial_covs[k], psi, idx, missing,
                singular_tol=singular_tol, verbose=verbose,
            )
        except NumericalDegeneracyError as e:
            raise SamplingCovarianceError(str(e)) from e
        return score_vector(exp_y, psi)

    psi_inv = _checked_inverse(psi, "Psi", singular_tol, verbose)
    check_cancel()
    information = information_matrix(psi_inv, nu=float(nu.sum()))

    scores = np.array(parallel_map(score, range(len(partial_covs)), n_jobs))
    check_cancel()
    score_cov = (scores * nu[:, None]).T @ scores

    info_inv = _checked_inverse(information, "Information matrix", singular_tol, verbose)
    sampling_cov = info_inv @ score_cov @ info_inv.T
    return 0.5 * (sampling_cov + sampling_cov.T)
