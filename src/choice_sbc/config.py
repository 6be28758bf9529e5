"""Run configuration for simulation-based calibration."""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any


@dataclass(frozen=True)
class DesignConfig:
    n_obs: int = 100
    n_alts: int = 3
    n_levels: int = 10
    level_prob: float = 0.5

    def __post_init__(self) -> None:
        _require_positive("n_obs", self.n_obs)
        if self.n_alts < 2:
            raise ValueError(f"n_alts must be >= 2; got {self.n_alts}")
        _require_positive("n_levels", self.n_levels)
        if not 0.0 <= self.level_prob <= 1.0:
            raise ValueError(f"level_prob must be in [0, 1]; got {self.level_prob}")


@dataclass(frozen=True)
class PriorConfig:
    loc: float = 0.0
    scale: float = 1.0

    def __post_init__(self) -> None:
        if not self.scale > 0:
            raise ValueError(f"scale must be positive; got {self.scale}")


@dataclass(frozen=True)
class SamplerConfig:
    chains: int = 4
    iter_warmup: int = 500
    iter_sampling: int = 500
    thin: int = 1

    def __post_init__(self) -> None:
        _require_positive("chains", self.chains)
        if self.iter_warmup < 0:
            raise ValueError(f"iter_warmup must be >= 0; got {self.iter_warmup}")
        _require_positive("iter_sampling", self.iter_sampling)
        _require_positive("thin", self.thin)

    @property
    def total_draws(self) -> int:
        return self.chains * (self.iter_sampling // self.thin)


@dataclass(frozen=True)
class SBCConfig:
    runs: int = 50
    seed: int = 42
    n_rank_draws: int | None = None
    bins: int = 20
    alpha: float = 0.01
    max_invalid_fraction: float = 0.1
    rhat_max: float = 1.05
    max_divergences: int = 0
    workers: int = 1

    def __post_init__(self) -> None:
        _require_positive("runs", self.runs)
        if self.n_rank_draws is not None:
            _require_positive("n_rank_draws", self.n_rank_draws)
        if self.bins < 2:
            raise ValueError(f"bins must be >= 2; got {self.bins}")
        if not 0.0 < self.alpha < 1.0:
            raise ValueError(f"alpha must be in (0, 1); got {self.alpha}")
        if not 0.0 <= self.max_invalid_fraction <= 1.0:
            raise ValueError(
                f"max_invalid_fraction must be in [0, 1]; got {self.max_invalid_fraction}"
            )
        if self.max_divergences < 0:
            raise ValueError(f"max_divergences must be >= 0; got {self.max_divergences}")
        _require_positive("workers", self.workers)


def to_dict(*configs: Any) -> dict[str, dict[str, Any]]:
    """Serialize configs keyed by class name, for run metadata."""
    return {type(cfg).__name__: asdict(cfg) for cfg in configs}


def default_store_root() -> Path:
    env = os.environ.get("CHOICE_SBC_ROOT")
    if env:
        return Path(env)
    return Path.home() / ".choice-sbc"


def _require_positive(name: str, value: int) -> None:
    if value < 1:
        raise ValueError(f"{name} must be >= 1; got {value}")
