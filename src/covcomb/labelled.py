# covcomb/labelled.py ― Combine covariance matrices keyed by trait / germplasm names
# =================================================================================
"""
Label-aware front door for :func:`covcomb.core.combine_covariances`.

Partial matrices coming out of trial databases carry names (traits,
accessions) rather than global integer positions.  Each input is a square
``pandas.DataFrame`` whose index equals its columns; the union of labels,
in order of first appearance, defines the global variable order.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Hashable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .core import CombinerResult, combine_covariances, packed_indices
from .exceptions import InputValidationError


@dataclass(frozen=True)
class LabelledCombinerResult:
    """Labelled view of a :class:`CombinerResult`."""

    psi: pd.DataFrame
    sampling_cov: Optional[pd.DataFrame]
    raw: CombinerResult

    @property
    def labels(self) -> List[Hashable]:
        return list(self.psi.index)

    @property
    def loglik_path(self) -> Optional[List[float]]:
        return self.raw.loglik_path


def align_labelled(
    frames: Sequence[pd.DataFrame],
) -> Tuple[List[np.ndarray], List[np.ndarray], List[Hashable]]:
    """
    Map labelled square frames onto global 0-based variable indices.

    Returns
    -------
    partial_covs : list of (k_i, k_i) ndarrays
    var_indices : list of (k_i,) int ndarrays
    labels : list
        Global variable labels; ``labels[j]`` names variable ``j``.
    """
    if frames is None or len(frames) == 0:
        raise InputValidationError("Empty input provided")

    labels: List[Hashable] = []
    position: dict[Hashable, int] = {}
    partial_covs: List[np.ndarray] = []
    var_indices: List[np.ndarray] = []

    for k, df in enumerate(frames):
        if not isinstance(df, pd.DataFrame):
            raise InputValidationError(f"Frame {k} must be a pandas.DataFrame, got {type(df).__name__}")
        if not df.index.is_unique or not df.columns.is_unique:
            raise InputValidationError(f"Frame {k} has duplicate labels")
        if set(df.index) != set(df.columns) or len(df.index) != len(df.columns):
            raise InputValidationError(f"Frame {k} must have identical row and column labels")

        # rows define the order; columns are reindexed to match
        df = df.loc[:, list(df.index)]
        for lab in df.index:
            if lab not in position:
                position[lab] = len(labels)
                labels.append(lab)
        partial_covs.append(df.to_numpy(dtype=float))
        var_indices.append(np.array([position[lab] for lab in df.index], dtype=np.intp))

    return partial_covs, var_indices, labels


def parameter_index(labels: Sequence[Hashable]) -> pd.MultiIndex:
    """(row_label, col_label) pairs of the packed lower-triangular parameters."""
    rows, cols = packed_indices(len(labels))
    return pd.MultiIndex.from_arrays(
        [[labels[r] for r in rows], [labels[c] for c in cols]],
        names=["row", "col"],
    )


def combine_labelled_covariances(
    frames: Sequence[pd.DataFrame],
    degrees_of_freedom: Optional[Sequence[float]] = None,
    **kwargs: Any,
) -> LabelledCombinerResult:
    """
    Combine labelled partial covariance matrices.

    Extra keyword arguments are forwarded to
    :func:`covcomb.core.combine_covariances`.  ``degrees_of_freedom`` may
    also be a ``pandas.Series`` aligned with *frames* by position.
    """
    partial_covs, var_indices, labels = align_labelled(frames)
    if isinstance(degrees_of_freedom, pd.Series):
        degrees_of_freedom = degrees_of_freedom.to_numpy(dtype=float)

    res = combine_covariances(partial_covs, var_indices, degrees_of_freedom, **kwargs)

    psi = pd.DataFrame(res.psi, index=labels, columns=labels)
    sampling_cov = None
    if res.sampling_cov is not None:
        pidx = parameter_index(labels)
        sampling_cov = pd.DataFrame(res.sampling_cov, index=pidx, columns=pidx)
    return LabelledCombinerResult(psi=psi, sampling_cov=sampling_cov, raw=res)
