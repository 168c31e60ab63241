import numpy as np
import pytest

from covcomb.simulation import (
    Scenario,
    draw_partial_covariance,
    evaluate,
    generate_index_sets,
    generate_true_covariance,
    monte_carlo,
)


@pytest.mark.parametrize("structure", ["toeplitz", "banded", "random"])
def test_true_covariance_is_spd(structure) -> None:
    S = generate_true_covariance(6, structure, np.random.default_rng(0), rho=0.9)
    assert np.allclose(S, S.T)
    assert np.linalg.eigvalsh(S)[0] > 0.0


@pytest.mark.parametrize("overlap", ["sliding", "random"])
def test_index_sets_cover_all_variables(overlap) -> None:
    sets = generate_index_sets(7, 5, 3, overlap, np.random.default_rng(1))
    assert len(sets) == 5
    assert all(s.size == 3 and np.unique(s).size == 3 for s in sets)
    assert np.array_equal(np.unique(np.concatenate(sets)), np.arange(7))


def test_index_sets_reject_impossible_cover() -> None:
    with pytest.raises(ValueError):
        generate_index_sets(10, 2, 3, "sliding")


def test_draw_partial_covariance() -> None:
    rng = np.random.default_rng(2)
    S = generate_true_covariance(4, "toeplitz", rng)
    Y = draw_partial_covariance(S, [1, 3], 50.0, rng)
    assert Y.shape == (2, 2)
    assert np.allclose(Y, Y.T)
    assert np.linalg.eigvalsh(Y)[0] > 0.0


def test_monte_carlo_shapes() -> None:
    scn = Scenario("shapes", n_vars=4, n_matrices=3, subset_size=2, n_trials=5, seed=3)
    res = monte_carlo(scn)
    assert res["sigma_true"].shape == (4, 4)
    assert res["psi"].shape == (5, 4, 4)
    assert res["sampling_cov"].shape == (5, 10, 10)
    assert res["n_iter"].shape == (5,)
    assert res["converged"].dtype == bool


def test_monte_carlo_bias_small() -> None:
    scn = Scenario(
        "bias", n_vars=4, n_matrices=3, subset_size=3,
        dof=500.0, n_trials=20, rho=0.5, seed=123,
    )
    m = evaluate(monte_carlo(scn))
    assert m.fail_rate == 0.0
    assert np.max(np.abs(m.bias)) < 0.15
    assert m.bias.shape == (10,)


def test_monte_carlo_is_reproducible() -> None:
    scn = Scenario("seed", n_vars=4, n_matrices=3, subset_size=2, n_trials=3, seed=42,
                   calc_sampling_cov=False)
    a, b = monte_carlo(scn), monte_carlo(scn)
    assert a.keys() == b.keys()
    for key in a:
        np.testing.assert_array_equal(a[key], b[key])


def test_evaluate_without_sampling_cov() -> None:
    scn = Scenario("nosc", n_vars=3, n_matrices=2, subset_size=2, n_trials=4, seed=9,
                   calc_sampling_cov=False)
    m = evaluate(monte_carlo(scn))
    assert np.isnan(m.cover95).all()
    assert np.isfinite(m.bias).all()
