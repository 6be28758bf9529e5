"""Diagnostic figures: SBC rank histograms and prior predictive bars."""

from __future__ import annotations

import math
from pathlib import Path

import matplotlib
import numpy as np
from scipy import stats

from .calibration import CalibrationReport
from .prior_predictive import PriorPredictive

matplotlib.use("Agg")
import matplotlib.pyplot as plt  # noqa: E402


def rank_histograms(report: CalibrationReport, path: Path, band: float = 0.99) -> Path:
    """One panel per dimension; the grey band is the ``band`` interval of each bin
    count under uniform ranks."""
    n_cols = min(5, report.n_dims)
    n_rows = math.ceil(report.n_dims / n_cols)
    fig, axes = plt.subplots(
        n_rows, n_cols, figsize=(3 * n_cols, 2.5 * n_rows), squeeze=False, sharey=True
    )
    n = report.valid_runs
    for dim_result in report.dimensions:
        ax = axes[dim_result.dim // n_cols][dim_result.dim % n_cols]
        hist = np.asarray(dim_result.uniformity.histogram)
        expected = np.asarray(dim_result.uniformity.expected)
        x = np.arange(hist.size)
        if n > 0:
            p = expected / n
            lo = stats.binom.ppf((1 - band) / 2, n, p)
            hi = stats.binom.ppf(1 - (1 - band) / 2, n, p)
            ax.fill_between(x, lo, hi, step="mid", color="0.85")
        ax.bar(x, hist, width=1.0, color="tab:red" if dim_result.flagged else "tab:blue")
        p_value = dim_result.uniformity.p_value
        ax.set_title(f"{report.dim_label(dim_result.dim)}  p={p_value:.3g}", fontsize=9)
        ax.set_xticks([])
    for idx in range(report.n_dims, n_rows * n_cols):
        axes[idx // n_cols][idx % n_cols].set_visible(False)
    fig.suptitle(f"SBC rank histograms ({n} runs, verdict: {report.verdict})")
    fig.tight_layout()
    return _save(fig, path)


def prior_predictive_bars(result: PriorPredictive, path: Path) -> Path:
    """Mean share of chosen alternatives containing each level, with 90% intervals."""
    shares = result.level_choice_share
    mean = shares.mean(axis=0)
    lo, hi = np.quantile(shares, [0.05, 0.95], axis=0)
    x = np.arange(1, shares.shape[1] + 1)
    fig, ax = plt.subplots(figsize=(max(4, 0.6 * x.size), 3))
    ax.bar(x, mean, yerr=[mean - lo, hi - mean], capsize=3, color="tab:blue")
    ax.set_xticks(x)
    ax.set_xlabel("attribute level")
    ax.set_ylabel("share in chosen alternative")
    ax.set_title(f"Prior predictive check ({result.n_draws} datasets)")
    fig.tight_layout()
    return _save(fig, path)


def _save(fig, path: Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(path, dpi=120)
    plt.close(fig)
    return path
