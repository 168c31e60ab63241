import numpy as np
import pytest


@pytest.fixture
def three_trials():
    """Three 2x2 matrices over pairs of three variables, 100 dof each."""
    partial_covs = [
        np.array([[1.0, 0.5], [0.5, 2.0]]),
        np.array([[1.5, 0.3], [0.3, 1.8]]),
        np.array([[2.0, 1.0], [1.0, 3.0]]),
    ]
    var_indices = [[0, 1], [1, 2], [0, 2]]
    dof = [100, 100, 100]
    return partial_covs, var_indices, dof


def make_spd(n: int, *, seed: int = 123) -> np.ndarray:
    """Well-conditioned random SPD matrix."""
    rng = np.random.default_rng(seed)
    X = rng.standard_normal((n, 2 * n))
    S = X @ X.T / (2 * n)
    return S + 0.5 * np.eye(n)


@pytest.fixture
def spd():
    return make_spd
