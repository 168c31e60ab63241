from __future__ import annotations


class CovCombError(Exception):
    """Base exception for covcomb."""


class InputValidationError(CovCombError, ValueError):
    """Empty inputs, length mismatches, bad shapes or invalid weights."""


class NumericalDegeneracyError(CovCombError, RuntimeError):
    """A required submatrix of Psi is singular or numerically non-invertible."""


class SamplingCovarianceError(CovCombError, RuntimeError):
    """The sandwich sampling covariance could not be computed."""


class EstimationCancelled(SamplingCovarianceError):
    """Sampling covariance stopped by a timeout or a cancellation callback."""


class SamplingCovarianceWarning(UserWarning):
    """Emitted when the combiner drops the sampling covariance and keeps Psi."""
