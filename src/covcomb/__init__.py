"""Public API for the covcomb package."""

from .core import (
    CombinerResult,
    EMCovarianceCombiner,
    combine_covariances,
    conditional_expectation,
    initialize_psi,
    linear_index,
    log_likelihood,
)
from .exceptions import (
    CovCombError,
    EstimationCancelled,
    InputValidationError,
    NumericalDegeneracyError,
    SamplingCovarianceError,
    SamplingCovarianceWarning,
)
from .labelled import LabelledCombinerResult, combine_labelled_covariances
from .sandwich import sampling_covariance

__all__ = [
    "CombinerResult",
    "EMCovarianceCombiner",
    "combine_covariances",
    "conditional_expectation",
    "initialize_psi",
    "linear_index",
    "log_likelihood",
    "sampling_covariance",
    "LabelledCombinerResult",
    "combine_labelled_covariances",
    "CovCombError",
    "EstimationCancelled",
    "InputValidationError",
    "NumericalDegeneracyError",
    "SamplingCovarianceError",
    "SamplingCovarianceWarning",
]
