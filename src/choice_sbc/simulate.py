"""Generative models: prior draws and synthetic data.

Every function takes its randomness from an explicit ``numpy.random.Generator``
so a run is fully determined by its seed.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

import numpy as np

from .config import DesignConfig, PriorConfig
from .models import MNL_ESTIMATE, NORMAL_MEANS_ESTIMATE, ModelRecipe


@dataclass(frozen=True)
class SimulatedDataset:
    theta: np.ndarray
    data: dict[str, np.ndarray]


class GenerativeModel(Protocol):
    name: str
    recipe: ModelRecipe
    n_dims: int

    def draw_parameters(self, rng: np.random.Generator) -> np.ndarray:
        """Draw one parameter vector from the prior."""

    def simulate(self, theta: np.ndarray, rng: np.random.Generator) -> dict[str, np.ndarray]:
        """Draw one synthetic dataset given ``theta``."""

    def stan_data(self, data: dict[str, np.ndarray]) -> dict[str, Any]:
        """Convert a simulated dataset into the estimation program's data block."""


def draw_prior(rng: np.random.Generator, prior: PriorConfig, n_levels: int) -> np.ndarray:
    return rng.normal(prior.loc, prior.scale, size=n_levels)


def random_design(rng: np.random.Generator, design: DesignConfig) -> np.ndarray:
    """Dummy-coded attribute levels, shape (n_obs, n_alts, n_levels)."""
    shape = (design.n_obs, design.n_alts, design.n_levels)
    return (rng.random(shape) < design.level_prob).astype(float)


def utilities(X: np.ndarray, theta: np.ndarray) -> np.ndarray:
    X = np.asarray(X, dtype=float)
    theta = np.asarray(theta, dtype=float)
    if X.ndim != 3 or X.shape[2] != theta.shape[0]:
        raise ValueError(f"design shape {X.shape} does not match {theta.shape[0]} levels")
    return X @ theta


def softmax(u: np.ndarray) -> np.ndarray:
    """Row-wise softmax with the row maximum subtracted first."""
    u = np.asarray(u, dtype=float)
    if not np.all(np.isfinite(u)):
        raise ValueError("utilities must be finite")
    shifted = u - u.max(axis=-1, keepdims=True)
    expu = np.exp(shifted)
    return expu / expu.sum(axis=-1, keepdims=True)


def choice_probabilities(X: np.ndarray, theta: np.ndarray) -> np.ndarray:
    return softmax(utilities(X, theta))


def draw_categorical(rng: np.random.Generator, probs: np.ndarray) -> np.ndarray:
    """One draw per row of ``probs`` by inverse CDF."""
    cdf = np.cumsum(probs, axis=1)
    u = rng.random(probs.shape[0])
    choices = (cdf < u[:, None]).sum(axis=1)
    # cdf[-1] can fall a hair below 1.0
    return np.minimum(choices, probs.shape[1] - 1).astype(np.int64)


def simulate_choices(rng: np.random.Generator, X: np.ndarray, theta: np.ndarray) -> np.ndarray:
    return draw_categorical(rng, choice_probabilities(X, theta))


def simulate_dataset(model: GenerativeModel, rng: np.random.Generator) -> SimulatedDataset:
    theta = model.draw_parameters(rng)
    return SimulatedDataset(theta=theta, data=model.simulate(theta, rng))


class MultinomialLogit:
    """Choice experiment with a random design and a multinomial-logit link."""

    name = "mnl"
    recipe = MNL_ESTIMATE

    def __init__(
        self,
        design: DesignConfig | None = None,
        prior: PriorConfig | None = None,
        X: np.ndarray | None = None,
    ) -> None:
        self.design = design or DesignConfig()
        self.prior = prior or PriorConfig()
        if X is not None:
            X = np.asarray(X, dtype=float)
            expected = (self.design.n_obs, self.design.n_alts, self.design.n_levels)
            if X.shape != expected:
                raise ValueError(f"fixed design has shape {X.shape}; expected {expected}")
        self._fixed_X = X

    @property
    def n_dims(self) -> int:
        return self.design.n_levels

    def draw_parameters(self, rng: np.random.Generator) -> np.ndarray:
        return draw_prior(rng, self.prior, self.design.n_levels)

    def simulate(self, theta: np.ndarray, rng: np.random.Generator) -> dict[str, np.ndarray]:
        X = self._fixed_X if self._fixed_X is not None else random_design(rng, self.design)
        Y = simulate_choices(rng, X, theta)
        return {"X": X, "Y": Y}

    def stan_data(self, data: dict[str, np.ndarray]) -> dict[str, Any]:
        X = data["X"]
        return {
            "N": int(X.shape[0]),
            "P": int(X.shape[1]),
            "L": int(X.shape[2]),
            "Y": [int(y) + 1 for y in data["Y"]],
            "X": X.tolist(),
            "prior_loc": float(self.prior.loc),
            "prior_scale": float(self.prior.scale),
        }


class NormalMeans:
    """Independent normal means observed with known noise; conjugate prior."""

    name = "normal-means"
    recipe = NORMAL_MEANS_ESTIMATE

    def __init__(
        self,
        n_obs: int = 10,
        n_dims: int = 1,
        sigma: float = 1.0,
        prior: PriorConfig | None = None,
    ) -> None:
        if n_obs < 1 or n_dims < 1:
            raise ValueError("n_obs and n_dims must be >= 1")
        if not sigma > 0:
            raise ValueError(f"sigma must be positive; got {sigma}")
        self.n_obs = n_obs
        self.n_dims = n_dims
        self.sigma = float(sigma)
        self.prior = prior or PriorConfig()

    def draw_parameters(self, rng: np.random.Generator) -> np.ndarray:
        return draw_prior(rng, self.prior, self.n_dims)

    def simulate(self, theta: np.ndarray, rng: np.random.Generator) -> dict[str, np.ndarray]:
        y = rng.normal(theta, self.sigma, size=(self.n_obs, self.n_dims))
        return {"y": y}

    def stan_data(self, data: dict[str, np.ndarray]) -> dict[str, Any]:
        y = data["y"]
        return {
            "N": int(y.shape[0]),
            "L": int(y.shape[1]),
            "y": y.tolist(),
            "sigma": self.sigma,
            "prior_loc": float(self.prior.loc),
            "prior_scale": float(self.prior.scale),
        }


def normal_means_posterior(data: dict[str, Any]) -> tuple[np.ndarray, np.ndarray]:
    """Closed-form posterior mean and sd for ``normal_means_estimate`` data."""
    y = np.asarray(data["y"], dtype=float)
    if y.ndim != 2 or y.shape != (int(data["N"]), int(data["L"])):
        raise ValueError(f"y has shape {y.shape}; expected ({data['N']}, {data['L']})")
    sigma2 = float(data["sigma"]) ** 2
    tau2 = float(data["prior_scale"]) ** 2
    precision = 1.0 / tau2 + y.shape[0] / sigma2
    mean = (float(data["prior_loc"]) / tau2 + y.sum(axis=0) / sigma2) / precision
    return mean, np.full(y.shape[1], np.sqrt(1.0 / precision))


def build_model(name: str, **kwargs: Any) -> GenerativeModel:
    if name == MultinomialLogit.name:
        return MultinomialLogit(**kwargs)
    if name == NormalMeans.name:
        return NormalMeans(**kwargs)
    raise ValueError(f"Unknown model: {name}")
