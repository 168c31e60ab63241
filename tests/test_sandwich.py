import tracemalloc

import numpy as np
import pytest

from covcomb import (
    EstimationCancelled,
    SamplingCovarianceError,
    SamplingCovarianceWarning,
    combine_covariances,
    conditional_expectation,
    linear_index,
    sampling_covariance,
)
from covcomb.core import vech
from covcomb.sandwich import information_matrix, score_vector


def test_information_matrix_matches_elementwise_definition(spd) -> None:
    n = 3
    psi_inv = np.linalg.inv(spd(n, seed=21))
    info = information_matrix(psi_inv, nu=2.5)

    p = n * (n + 1) // 2
    expected = np.zeros((p, p))
    for a in range(n):
        for b in range(a + 1):
            for c in range(n):
                for d in range(c + 1):
                    expected[linear_index(a, b), linear_index(c, d)] += 2.5 * (
                        psi_inv[a, c] * psi_inv[b, d] + psi_inv[a, d] * psi_inv[b, c]
                    )
    assert np.allclose(info, expected)
    assert np.allclose(info, info.T)


def test_score_vector_is_packed_difference(spd) -> None:
    psi = spd(3, seed=2)
    ya = spd(2, seed=3)
    exp_y = conditional_expectation(ya, psi, [0, 2])
    s = score_vector(exp_y, psi)
    diff = exp_y - psi
    assert s.shape == (6,)
    assert np.isclose(s[linear_index(2, 0)], diff[2, 0])
    assert np.isclose(s[linear_index(1, 1)], diff[1, 1])


def test_direct_call_matches_combiner(three_trials) -> None:
    covs, idx, dof = three_trials
    res = combine_covariances(covs, idx, dof, calc_sampling_cov=True)
    direct = sampling_covariance(res.psi, covs, idx, dof)
    assert np.allclose(direct, res.sampling_cov)


def test_sampling_cov_scales_inversely_with_dof(three_trials) -> None:
    covs, idx, _ = three_trials
    low = combine_covariances(covs, idx, [100, 100, 100], calc_sampling_cov=True)
    high = combine_covariances(covs, idx, [400, 400, 400], calc_sampling_cov=True)
    # equal weights leave Psi unchanged; the sandwich shrinks by 1/4
    assert np.allclose(low.psi, high.psi)
    assert np.allclose(high.sampling_cov, low.sampling_cov / 4.0)


def test_singular_psi_drops_sampling_cov_with_warning() -> None:
    covs = [np.array([[1.0, 1.0], [1.0, 1.0]])]
    with pytest.warns(SamplingCovarianceWarning):
        res = combine_covariances(covs, [[0, 1]], calc_sampling_cov=True)
    assert res.sampling_cov is None
    assert res.sampling_cov_error is not None
    assert np.max(np.abs(res.psi - res.psi.T)) < 1e-9
    assert np.allclose(res.psi, 1.0)


def test_singular_psi_direct_call_raises() -> None:
    psi = np.ones((2, 2))
    with pytest.raises(SamplingCovarianceError):
        sampling_covariance(psi, [psi], [[0, 1]], [100.0])


def test_cancellation_callback(three_trials) -> None:
    covs, idx, dof = three_trials
    with pytest.raises(EstimationCancelled):
        sampling_covariance(np.eye(3), covs, idx, dof, should_stop=lambda: True)

    with pytest.warns(SamplingCovarianceWarning):
        res = combine_covariances(covs, idx, dof, calc_sampling_cov=True, should_stop=lambda: True)
    assert res.sampling_cov is None
    assert "cancelled" in res.sampling_cov_error
    assert res.loglik_path is not None


def test_expired_timeout(three_trials) -> None:
    covs, idx, dof = three_trials
    with pytest.raises(EstimationCancelled):
        sampling_covariance(np.eye(3), covs, idx, dof, timeout=-1.0)


def test_cancelled_is_a_sampling_failure() -> None:
    assert issubclass(EstimationCancelled, SamplingCovarianceError)
    assert issubclass(SamplingCovarianceError, RuntimeError)


def test_mixed_scale_psi_keeps_sampling_cov() -> None:
    # cond(Psi) = 1e7 and cond(information) = 1e14, both invert exactly
    res = combine_covariances([np.diag([1e4, 1e-3])], [[0, 1]], calc_sampling_cov=True)
    assert res.sampling_cov_error is None
    assert res.sampling_cov is not None
    assert res.sampling_cov.shape == (3, 3)
    assert np.allclose(res.sampling_cov, 0.0)


def test_matches_per_matrix_sandwich(three_trials) -> None:
    covs, idx, _ = three_trials
    dof = [50.0, 120.0, 300.0]
    psi = combine_covariances(covs, idx, dof).psi
    psi_inv = np.linalg.inv(psi)

    info = np.zeros((6, 6))
    meat = np.zeros((6, 6))
    for ya, ind, nu in zip(covs, idx, dof):
        s = vech(conditional_expectation(ya, psi, ind) - psi)
        info += information_matrix(psi_inv, nu=nu)
        meat += nu * np.outer(s, s)
    info_inv = np.linalg.inv(info)
    expected = info_inv @ meat @ info_inv.T

    assert np.allclose(sampling_covariance(psi, covs, idx, dof), expected)
    assert np.allclose(sampling_covariance(psi, covs, idx, dof, n_jobs=2), expected)


def test_memory_does_not_grow_with_matrix_count(spd) -> None:
    n, n_mats = 12, 300
    p = n * (n + 1) // 2
    psi = spd(n, seed=4)
    rng = np.random.default_rng(5)
    idx = [np.sort(rng.choice(n, 4, replace=False)) for _ in range(n_mats)]
    covs = [psi[np.ix_(i, i)] for i in idx]
    dof = np.full(n_mats, 80.0)

    tracemalloc.start()
    try:
        sampling_covariance(psi, covs, idx, dof)
        _, peak = tracemalloc.get_traced_memory()
    finally:
        tracemalloc.stop()
    assert peak < 40 * p * p * 8


def test_cancellation_checked_before_information() -> None:
    calls = []

    def stop() -> bool:
        calls.append(1)
        return True

    with pytest.raises(EstimationCancelled):
        sampling_covariance(np.eye(3), [np.eye(3)], [[0, 1, 2]], [10.0], should_stop=stop)
    assert len(calls) == 1
