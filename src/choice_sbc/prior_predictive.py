"""Prior predictive check for the choice model.

Parameters and datasets come from the prior only; nothing is fitted. The
summaries show how often each attribute level ends up in the chosen
alternative, which is where implausible priors show first.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import pyarrow as pa

from .engine import CmdStanEngine, DrawShapeError
from .models import MNL_SIMULATE
from .simulate import MultinomialLogit


@dataclass(frozen=True)
class PriorPredictive:
    theta: np.ndarray
    choices: np.ndarray
    level_choice_share: np.ndarray
    choice_share: np.ndarray

    @property
    def n_draws(self) -> int:
        return self.theta.shape[0]

    def summary(self, quantiles: tuple[float, ...] = (0.05, 0.5, 0.95)) -> dict[str, dict[str, float]]:
        out: dict[str, dict[str, float]] = {}
        for level in range(self.level_choice_share.shape[1]):
            values = self.level_choice_share[:, level]
            entry = {"mean": float(values.mean())}
            for q, v in zip(quantiles, np.quantile(values, quantiles), strict=False):
                entry[f"q{int(q * 100)}"] = float(v)
            out[f"level_{level + 1}"] = entry
        return out

    def to_table(self) -> pa.Table:
        columns: dict[str, pa.Array] = {"draw": pa.array(np.arange(self.n_draws), type=pa.int64())}
        for level in range(self.theta.shape[1]):
            columns[f"B_{level + 1}"] = pa.array(self.theta[:, level])
        for level in range(self.level_choice_share.shape[1]):
            columns[f"share_level_{level + 1}"] = pa.array(self.level_choice_share[:, level])
        for alt in range(self.choice_share.shape[1]):
            columns[f"share_alt_{alt + 1}"] = pa.array(self.choice_share[:, alt])
        return pa.table(columns)


def prior_predictive(model: MultinomialLogit, draws: int = 1000, seed: int = 42) -> PriorPredictive:
    _require_draws(draws)
    rng = np.random.default_rng(seed)
    thetas, designs, choices = [], [], []
    for _ in range(draws):
        theta = model.draw_parameters(rng)
        data = model.simulate(theta, rng)
        thetas.append(theta)
        designs.append(data["X"])
        choices.append(data["Y"])
    return _summarize(np.array(thetas), np.array(designs), np.array(choices), model.design.n_alts)


def prior_predictive_stan(
    model: MultinomialLogit, engine: CmdStanEngine, draws: int = 1000, seed: int = 42
) -> PriorPredictive:
    """Same check, with parameters and datasets drawn by the ``mnl_simulate`` program."""
    _require_draws(draws)
    design = model.design
    data = {
        "N": design.n_obs,
        "P": design.n_alts,
        "L": design.n_levels,
        "prior_loc": float(model.prior.loc),
        "prior_scale": float(model.prior.scale),
        "level_prob": float(design.level_prob),
    }
    chain = engine.generate(MNL_SIMULATE, data, seed=seed, draws=draws)[0]
    theta = _stack(chain, "B", [(l,) for l in range(1, design.n_levels + 1)])
    X = _stack(
        chain,
        "X",
        [
            (n, p, l)
            for n in range(1, design.n_obs + 1)
            for p in range(1, design.n_alts + 1)
            for l in range(1, design.n_levels + 1)
        ],
    ).reshape(draws, design.n_obs, design.n_alts, design.n_levels)
    Y = _stack(chain, "Y", [(n,) for n in range(1, design.n_obs + 1)]).astype(np.int64) - 1
    if Y.min() < 0 or Y.max() >= design.n_alts:
        raise DrawShapeError(f"simulated choices outside 1..{design.n_alts}")
    return _summarize(theta, X, Y, design.n_alts)


def _require_draws(draws: int) -> None:
    if draws < 1:
        raise ValueError(f"draws must be >= 1; got {draws}")


def _stack(chain: dict[str, list[float]], name: str, indices: list[tuple[int, ...]]) -> np.ndarray:
    columns = [f"{name}[{','.join(str(i) for i in idx)}]" for idx in indices]
    missing = [c for c in columns if c not in chain]
    if missing:
        raise DrawShapeError(f"simulation output is missing {len(missing)} column(s) of {name}")
    return np.array([chain[c] for c in columns], dtype=float).T


def _summarize(theta: np.ndarray, X: np.ndarray, Y: np.ndarray, n_alts: int) -> PriorPredictive:
    # X: (draws, N, P, L); Y: (draws, N) with 0-based choices
    n_draws, n_obs = Y.shape
    chosen = X[np.arange(n_draws)[:, None], np.arange(n_obs)[None, :], Y, :]
    alt_shares = np.array([np.bincount(y, minlength=n_alts) / n_obs for y in Y])
    return PriorPredictive(
        theta=theta,
        choices=Y,
        level_choice_share=chosen.mean(axis=1),
        choice_share=alt_shares,
    )
