from __future__ import annotations

import numpy as np
import pytest

from choice_sbc.config import DesignConfig, PriorConfig, SBCConfig
from choice_sbc.simulate import (
    MultinomialLogit,
    NormalMeans,
    build_model,
    choice_probabilities,
    draw_prior,
    normal_means_posterior,
    random_design,
    simulate_choices,
    simulate_dataset,
    softmax,
)


def test_draw_prior_is_reproducible() -> None:
    prior = PriorConfig()
    a = draw_prior(np.random.default_rng(7), prior, 10)
    b = draw_prior(np.random.default_rng(7), prior, 10)

    assert a.shape == (10,)
    np.testing.assert_array_equal(a, b)


def test_simulate_dataset_is_reproducible() -> None:
    model = MultinomialLogit(DesignConfig(n_obs=100, n_alts=3, n_levels=10))

    first = simulate_dataset(model, np.random.default_rng(123))
    second = simulate_dataset(model, np.random.default_rng(123))

    np.testing.assert_array_equal(first.theta, second.theta)
    np.testing.assert_array_equal(first.data["X"], second.data["X"])
    np.testing.assert_array_equal(first.data["Y"], second.data["Y"])


def test_choices_are_valid_alternatives() -> None:
    design = DesignConfig(n_obs=200, n_alts=4, n_levels=5)
    rng = np.random.default_rng(1)
    X = random_design(rng, design)
    theta = draw_prior(rng, PriorConfig(scale=3.0), design.n_levels)

    y = simulate_choices(rng, X, theta)

    assert X.shape == (200, 4, 5)
    assert set(np.unique(X)) <= {0.0, 1.0}
    assert y.shape == (200,)
    assert y.min() >= 0
    assert y.max() < 4


def test_softmax_handles_extreme_utilities() -> None:
    u = np.array([[1000.0, 0.0, -1000.0], [-5000.0, -5000.0, -5000.0]])

    p = softmax(u)

    assert np.all(np.isfinite(p))
    np.testing.assert_allclose(p.sum(axis=1), 1.0)
    np.testing.assert_allclose(p[0], [1.0, 0.0, 0.0])
    np.testing.assert_allclose(p[1], [1 / 3, 1 / 3, 1 / 3])


def test_softmax_rejects_non_finite_utilities() -> None:
    with pytest.raises(ValueError, match="finite"):
        softmax(np.array([[np.inf, 0.0]]))


def test_choice_probabilities_invariant_to_row_shift() -> None:
    rng = np.random.default_rng(5)
    u = rng.normal(size=(50, 3))
    shift = rng.normal(scale=500.0, size=(50, 1))

    np.testing.assert_allclose(softmax(u), softmax(u + shift), atol=1e-12)


def test_choice_probabilities_follow_utilities() -> None:
    X = np.zeros((1, 2, 1))
    X[0, 0, 0] = 1.0

    p = choice_probabilities(X, np.array([np.log(3.0)]))

    np.testing.assert_allclose(p, [[0.75, 0.25]])


def test_choice_frequencies_match_probabilities() -> None:
    X = np.zeros((20_000, 3, 1))
    X[:, 0, 0] = 1.0
    X[:, 1, 0] = 0.5
    theta = np.array([1.0])
    p = choice_probabilities(X[:1], theta)[0]

    y = simulate_choices(np.random.default_rng(11), X, theta)

    freq = np.bincount(y, minlength=3) / y.size
    np.testing.assert_allclose(freq, p, atol=0.02)


def test_mnl_stan_data_uses_one_based_choices() -> None:
    model = MultinomialLogit(DesignConfig(n_obs=5, n_alts=3, n_levels=2))
    dataset = simulate_dataset(model, np.random.default_rng(0))

    data = model.stan_data(dataset.data)

    assert (data["N"], data["P"], data["L"]) == (5, 3, 2)
    assert data["Y"] == [int(y) + 1 for y in dataset.data["Y"]]
    assert min(data["Y"]) >= 1
    assert max(data["Y"]) <= 3
    model.recipe.check_data(data)


def test_mnl_fixed_design_is_reused() -> None:
    design = DesignConfig(n_obs=4, n_alts=2, n_levels=3)
    X = np.ones((4, 2, 3))
    model = MultinomialLogit(design, X=X)

    data = model.simulate(np.zeros(3), np.random.default_rng(0))

    np.testing.assert_array_equal(data["X"], X)


def test_mnl_fixed_design_shape_is_checked() -> None:
    with pytest.raises(ValueError, match="expected"):
        MultinomialLogit(DesignConfig(n_obs=4, n_alts=2, n_levels=3), X=np.ones((4, 3, 3)))


def test_normal_means_posterior_matches_conjugate_update() -> None:
    model = NormalMeans(n_obs=4, n_dims=2, sigma=2.0, prior=PriorConfig(loc=1.0, scale=1.0))
    y = np.array([[1.0, 0.0], [3.0, 0.0], [1.0, 4.0], [3.0, 4.0]])

    mean, sd = normal_means_posterior(model.stan_data({"y": y}))

    # precision = 1 + 4/4 = 2
    np.testing.assert_allclose(mean, [(1.0 + 8.0 / 4.0) / 2.0, (1.0 + 8.0 / 4.0) / 2.0])
    np.testing.assert_allclose(sd, [np.sqrt(0.5), np.sqrt(0.5)])


def test_build_model_rejects_unknown_name() -> None:
    assert isinstance(build_model("normal-means", n_dims=3), NormalMeans)
    with pytest.raises(ValueError, match="Unknown model"):
        build_model("probit")


def test_config_validation() -> None:
    with pytest.raises(ValueError, match="n_alts"):
        DesignConfig(n_alts=1)
    with pytest.raises(ValueError, match="scale"):
        PriorConfig(scale=0.0)
    with pytest.raises(ValueError, match="bins must be >= 2"):
        SBCConfig(bins=1)
