"""Rank of the true parameter among posterior draws."""

from __future__ import annotations

import numpy as np

from .engine import DrawShapeError


def rank_statistic(draws: np.ndarray, truth: float) -> int:
    """Number of draws strictly less than ``truth``; ties do not count."""
    draws = np.asarray(draws, dtype=float)
    if draws.ndim != 1 or draws.size == 0:
        raise DrawShapeError(f"expected a non-empty 1-d draw set; got shape {draws.shape}")
    return int(np.count_nonzero(draws < truth))


def rank_vector(draws: np.ndarray, theta: np.ndarray) -> np.ndarray:
    """Per-dimension ranks for draws of shape (M, L) against ``theta`` of shape (L,)."""
    draws = np.asarray(draws, dtype=float)
    theta = np.asarray(theta, dtype=float)
    if draws.ndim != 2 or draws.shape[0] == 0:
        raise DrawShapeError(f"expected draws of shape (M, L); got {draws.shape}")
    if theta.ndim != 1 or draws.shape[1] != theta.shape[0]:
        raise DrawShapeError(f"draws have {draws.shape[1]} dims; parameter has {theta.shape}")
    return np.count_nonzero(draws < theta[None, :], axis=0).astype(np.int64)
