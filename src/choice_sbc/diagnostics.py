"""Convergence diagnostics: rank-normalized split R-hat and ESS.

Vectorized versions of the standard recommendations; chains are given as a
sequence of equal-length draw sequences.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import numpy as np
from scipy import stats

if TYPE_CHECKING:
    from .draws import PosteriorDraws


@dataclass(frozen=True)
class ConvergenceReport:
    converged: bool
    max_rhat: float
    min_ess_bulk: float
    divergences: int
    reasons: list[str] = field(default_factory=list)


def split_rhat(chains: Sequence[Sequence[float]], *, min_chains: int = 4) -> float:
    """Rank-normalized split R-hat with folded variant (returns max of both).

    Diagnostics need at least ``min_chains`` chains; ``min_chains=1`` lets a
    single chain through and returns ``nan`` for it.
    """
    x = _as_chains(chains, min_chains, "R-hat")
    if x.shape[0] < 2:
        return float("nan")
    rhat_bulk = _rhat(_split(_rank_normalize(x)))
    rhat_tail = _rhat(_split(_rank_normalize(_fold(x))))
    return max(rhat_bulk, rhat_tail)


def ess_bulk(chains: Sequence[Sequence[float]], *, min_chains: int = 4) -> float:
    x = _as_chains(chains, min_chains, "ESS")
    if x.shape[0] < 2:
        return float("nan")
    return _ess(_rank_normalize(x))


def ess_tail(chains: Sequence[Sequence[float]], *, min_chains: int = 4) -> float:
    x = _as_chains(chains, min_chains, "ESS")
    if x.shape[0] < 2:
        return float("nan")
    return _ess(_rank_normalize(_fold(x)))


def check_convergence(
    draws: PosteriorDraws,
    divergences: int = 0,
    *,
    rhat_max: float = 1.05,
    max_divergences: int = 0,
) -> ConvergenceReport:
    """Check every dimension of ``draws``; single-chain fits skip R-hat."""
    rhats: list[float] = []
    esses: list[float] = []
    for dim in range(draws.n_dims):
        chains = draws.chains_for(dim)
        rhats.append(split_rhat(chains, min_chains=1))
        esses.append(ess_bulk(chains, min_chains=1))

    max_rhat = float(np.nanmax(rhats)) if not np.all(np.isnan(rhats)) else float("nan")
    min_ess = float(np.nanmin(esses)) if not np.all(np.isnan(esses)) else float("nan")

    reasons: list[str] = []
    if not np.isnan(max_rhat) and max_rhat > rhat_max:
        reasons.append(f"rhat {max_rhat:.3f} > {rhat_max}")
    if divergences > max_divergences:
        reasons.append(f"{divergences} divergent transitions")
    return ConvergenceReport(
        converged=not reasons,
        max_rhat=max_rhat,
        min_ess_bulk=min_ess,
        divergences=divergences,
        reasons=reasons,
    )


def _as_chains(chains: Sequence[Sequence[float]], min_chains: int, label: str) -> np.ndarray:
    if min_chains < 1:
        raise ValueError(f"min_chains must be >= 1; got {min_chains}")
    if len(chains) < min_chains:
        raise ValueError(
            f"{label} diagnostics require at least {min_chains} chains; got {len(chains)} chain(s)"
        )
    n = min(len(c) for c in chains) if len(chains) else 0
    return np.array([list(c[:n]) for c in chains], dtype=float)


def _split(x: np.ndarray) -> np.ndarray:
    half = x.shape[1] // 2
    return np.concatenate([x[:, :half], x[:, half : 2 * half]], axis=0)


def _fold(x: np.ndarray) -> np.ndarray:
    return np.abs(x - np.median(x))


def _rank_normalize(x: np.ndarray) -> np.ndarray:
    ranks = stats.rankdata(x, method="average").reshape(x.shape)
    return stats.norm.ppf((ranks - 0.5) / x.size)


def _rhat(x: np.ndarray) -> float:
    m, n = x.shape
    if m < 2 or n < 2:
        return float("nan")
    var_between = n * np.var(x.mean(axis=1), ddof=1)
    var_within = np.mean(np.var(x, axis=1, ddof=1))
    if var_within == 0:
        return 1.0 if var_between == 0 else float("inf")
    var_hat = (n - 1) / n * var_within + var_between / n
    return float(np.sqrt(var_hat / var_within))


def _ess(x: np.ndarray) -> float:
    m, n = x.shape
    if n < 2:
        return float("nan")
    var_between = n * np.var(x.mean(axis=1), ddof=1) if m > 1 else 0.0
    var_within = np.mean(np.var(x, axis=1, ddof=1))
    var_hat = (n - 1) / n * var_within + var_between / n
    if var_hat == 0:
        return float(m * n)

    rho = _autocov(x).mean(axis=0) / var_hat
    negative = np.nonzero(rho[1:] < 0)[0]
    stop = negative[0] + 1 if negative.size else n
    return float(m * n / (1 + 2 * rho[1:stop].sum()))


def _autocov(x: np.ndarray) -> np.ndarray:
    n = x.shape[1]
    centered = x - x.mean(axis=1, keepdims=True)
    size = 1 << (2 * n - 1).bit_length()
    f = np.fft.rfft(centered, n=size, axis=1)
    acov = np.fft.irfft(f * np.conj(f), n=size, axis=1)[:, :n]
    return acov / (n - np.arange(n))
