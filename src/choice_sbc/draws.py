"""Posterior draws of one vector parameter, shaped (chains, draws, dims)."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

import numpy as np

from .engine import ChainPayload, DrawShapeError, validate_payload


@dataclass(frozen=True)
class PosteriorDraws:
    values: np.ndarray
    param: str

    def __post_init__(self) -> None:
        if self.values.ndim != 3:
            raise DrawShapeError(
                f"draws for {self.param} must be (chains, draws, dims); got {self.values.shape}"
            )
        if 0 in self.values.shape:
            raise DrawShapeError(f"empty draw set for {self.param}: {self.values.shape}")

    @classmethod
    def from_payload(cls, chains: ChainPayload, param: str, dims: int) -> PosteriorDraws:
        """Extract ``param[1]..param[dims]`` from a chain payload.

        A scalar column named ``param`` is accepted when ``dims == 1``. Shapes are
        never coerced: any missing or extra element raises ``DrawShapeError``.
        """
        validate_payload(chains)
        columns = _element_columns(chains[0].keys(), param)
        if not columns and dims == 1 and param in chains[0]:
            columns = {1: param}
        if not columns:
            raise DrawShapeError(f"engine output has no columns for parameter {param!r}")
        if sorted(columns) != list(range(1, dims + 1)):
            raise DrawShapeError(
                f"{param} has elements {sorted(columns)}; expected 1..{dims}"
            )

        try:
            values = np.array(
                [[chain[columns[idx]] for idx in range(1, dims + 1)] for chain in chains],
                dtype=float,
            ).transpose(0, 2, 1)
        except (TypeError, ValueError) as exc:
            raise DrawShapeError(f"draws for {param} are not a numeric array: {exc}") from exc
        if not np.all(np.isfinite(values)):
            raise DrawShapeError(f"non-finite draws for {param}")
        return cls(values=values, param=param)

    @property
    def n_draws(self) -> int:
        return self.values.shape[0] * self.values.shape[1]

    @property
    def n_dims(self) -> int:
        return self.values.shape[2]

    def pooled(self) -> np.ndarray:
        return self.values.reshape(-1, self.n_dims)

    def thin(self, m: int | None) -> np.ndarray:
        """Return ``m`` evenly spaced pooled draws, or all draws when ``m`` is None."""
        pooled = self.pooled()
        if m is None:
            return pooled
        if not 1 <= m <= pooled.shape[0]:
            raise ValueError(f"cannot thin {pooled.shape[0]} draws to {m}")
        idx = np.floor(np.arange(m) * (pooled.shape[0] / m)).astype(int)
        return pooled[idx]

    def chains_for(self, dim: int) -> list[list[float]]:
        return self.values[:, :, dim].tolist()


def _element_columns(names: Iterable[str], param: str) -> dict[int, str]:
    prefix = f"{param}["
    out: dict[int, str] = {}
    for name in names:
        if not (name.startswith(prefix) and name.endswith("]")):
            continue
        inner = name[len(prefix) : -1]
        if not inner.isdigit():
            raise DrawShapeError(f"{param} is not a vector parameter: {name}")
        out[int(inner)] = name
    return out
