"""Aggregation of SBC ranks and the uniformity check.

Ranks are collected per run id, so the result does not depend on the order in
which runs finish. The report is a diagnostic: it gives the chi-square
statistic per dimension and never declares the model calibrated.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import numpy as np
import pyarrow as pa
from scipy import stats

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_DIVERGED = "diverged"
STATUS_FAILED = "failed"

VERDICT_INCONCLUSIVE = "inconclusive"
VERDICT_DEVIATION = "deviation_detected"
VERDICT_NO_DEVIATION = "no_deviation_detected"


@dataclass(frozen=True)
class RunResult:
    run_id: int
    seed: int
    status: str
    ranks: np.ndarray | None = None
    reason: str = ""

    @property
    def valid(self) -> bool:
        return self.status == STATUS_OK


@dataclass(frozen=True)
class UniformityResult:
    statistic: float
    p_value: float
    dof: int
    histogram: list[int]
    expected: list[float]


@dataclass(frozen=True)
class DimensionResult:
    dim: int
    uniformity: UniformityResult
    flagged: bool


@dataclass(frozen=True)
class Exclusion:
    run_id: int
    status: str
    reason: str


@dataclass(frozen=True)
class CalibrationReport:
    param: str
    n_dims: int
    n_rank_draws: int
    bins: int
    alpha: float
    max_invalid_fraction: float
    total_runs: int
    valid_runs: int
    run_ids: list[int]
    ranks: np.ndarray
    exclusions: list[Exclusion]
    dimensions: list[DimensionResult]
    verdict: str
    results: list[RunResult] = field(repr=False, default_factory=list)

    @property
    def excluded_runs(self) -> int:
        return len(self.exclusions)

    @property
    def flagged_dims(self) -> list[int]:
        return [d.dim for d in self.dimensions if d.flagged]

    def dim_label(self, dim: int) -> str:
        return f"{self.param}[{dim + 1}]"

    def to_dict(self) -> dict[str, Any]:
        return {
            "param": self.param,
            "n_dims": self.n_dims,
            "n_rank_draws": self.n_rank_draws,
            "bins": self.bins,
            "alpha": self.alpha,
            "max_invalid_fraction": self.max_invalid_fraction,
            "total_runs": self.total_runs,
            "valid_runs": self.valid_runs,
            "excluded_runs": self.excluded_runs,
            "exclusions": [vars(e) for e in self.exclusions],
            "verdict": self.verdict,
            "dimensions": {
                self.dim_label(d.dim): {
                    "chi2": d.uniformity.statistic,
                    "p_value": d.uniformity.p_value,
                    "dof": d.uniformity.dof,
                    "flagged": d.flagged,
                    "histogram": d.uniformity.histogram,
                }
                for d in self.dimensions
            },
        }


class CheckerState(str, Enum):
    COLLECTING = "collecting"
    COMPLETE = "complete"


class CalibrationChecker:
    def __init__(self, n_dims: int, n_rank_draws: int, param: str = "B") -> None:
        if n_dims < 1 or n_rank_draws < 1:
            raise ValueError("n_dims and n_rank_draws must be >= 1")
        self.n_dims = n_dims
        self.n_rank_draws = n_rank_draws
        self.param = param
        self._results: dict[int, RunResult] = {}
        self._state = CheckerState.COLLECTING

    @property
    def state(self) -> CheckerState:
        return self._state

    def __len__(self) -> int:
        return len(self._results)

    def add(self, result: RunResult) -> None:
        if self._state is CheckerState.COMPLETE:
            raise RuntimeError("calibration checker is complete; no more runs can be added")
        if result.run_id in self._results:
            raise ValueError(f"duplicate run id: {result.run_id}")
        if result.ranks is not None:
            self._check_ranks(result)
        elif result.valid:
            raise ValueError(f"run {result.run_id} is ok but has no ranks")
        if not result.valid:
            logger.warning(
                "run %d excluded (%s): %s", result.run_id, result.status, result.reason
            )
        self._results[result.run_id] = result

    def merge(self, other: CalibrationChecker) -> CalibrationChecker:
        """Union of two disjoint collections; ``a.merge(b)`` equals ``b.merge(a)``."""
        if (self.n_dims, self.n_rank_draws, self.param) != (
            other.n_dims,
            other.n_rank_draws,
            other.param,
        ):
            raise ValueError("cannot merge checkers with different dims, draws or parameter")
        overlap = self._results.keys() & other._results.keys()
        if overlap:
            raise ValueError(f"duplicate run id(s): {sorted(overlap)}")
        merged = CalibrationChecker(self.n_dims, self.n_rank_draws, self.param)
        merged._results = {**self._results, **other._results}
        return merged

    def rank_collection(self) -> tuple[list[int], np.ndarray]:
        """Run ids and ranks of the valid runs, ordered by run id."""
        valid = [self._results[i] for i in sorted(self._results) if self._results[i].valid]
        ranks = np.array([r.ranks for r in valid], dtype=np.int64).reshape(-1, self.n_dims)
        return [r.run_id for r in valid], ranks

    def complete(
        self,
        bins: int = 20,
        alpha: float = 0.01,
        max_invalid_fraction: float = 0.1,
    ) -> CalibrationReport:
        self._state = CheckerState.COMPLETE
        run_ids, ranks = self.rank_collection()
        results = [self._results[i] for i in sorted(self._results)]
        exclusions = [Exclusion(r.run_id, r.status, r.reason) for r in results if not r.valid]
        bins = effective_bins(bins, self.n_rank_draws)

        dimensions: list[DimensionResult] = []
        for dim in range(self.n_dims):
            result = uniformity_test(ranks[:, dim], self.n_rank_draws, bins)
            flagged = bool(np.isfinite(result.p_value) and result.p_value < alpha)
            dimensions.append(DimensionResult(dim=dim, uniformity=result, flagged=flagged))

        verdict = _verdict(len(results), len(exclusions), dimensions, max_invalid_fraction)
        if verdict == VERDICT_INCONCLUSIVE:
            logger.warning(
                "calibration inconclusive: %d of %d runs excluded", len(exclusions), len(results)
            )
        return CalibrationReport(
            param=self.param,
            n_dims=self.n_dims,
            n_rank_draws=self.n_rank_draws,
            bins=bins,
            alpha=alpha,
            max_invalid_fraction=max_invalid_fraction,
            total_runs=len(results),
            valid_runs=len(run_ids),
            run_ids=run_ids,
            ranks=ranks,
            exclusions=exclusions,
            dimensions=dimensions,
            verdict=verdict,
            results=results,
        )

    def _check_ranks(self, result: RunResult) -> None:
        ranks = np.asarray(result.ranks)
        if ranks.shape != (self.n_dims,):
            raise ValueError(
                f"run {result.run_id} has rank shape {ranks.shape}; expected ({self.n_dims},)"
            )
        if ranks.min() < 0 or ranks.max() > self.n_rank_draws:
            raise ValueError(f"run {result.run_id} has ranks outside [0, {self.n_rank_draws}]")


def effective_bins(bins: int, n_rank_draws: int) -> int:
    """There are only M + 1 distinct ranks, so never use more bins than that."""
    return max(1, min(bins, n_rank_draws + 1))


def rank_histogram(ranks: np.ndarray, n_rank_draws: int, bins: int) -> np.ndarray:
    ranks = np.asarray(ranks, dtype=np.int64)
    idx = ranks * bins // (n_rank_draws + 1)
    return np.bincount(idx, minlength=bins)


def expected_counts(n: int, n_rank_draws: int, bins: int) -> np.ndarray:
    """Expected bin counts for ``n`` ranks uniform on {0, ..., M}."""
    per_bin = rank_histogram(np.arange(n_rank_draws + 1), n_rank_draws, bins)
    return n * per_bin / float(n_rank_draws + 1)


def uniformity_test(ranks: np.ndarray, n_rank_draws: int, bins: int) -> UniformityResult:
    ranks = np.asarray(ranks, dtype=np.int64)
    bins = effective_bins(bins, n_rank_draws)
    hist = rank_histogram(ranks, n_rank_draws, bins)
    expected = expected_counts(ranks.size, n_rank_draws, bins)
    if ranks.size == 0 or bins < 2:
        statistic, p_value = float("nan"), float("nan")
    else:
        res = stats.chisquare(f_obs=hist, f_exp=expected)
        statistic, p_value = float(res.statistic), float(res.pvalue)
    return UniformityResult(
        statistic=statistic,
        p_value=p_value,
        dof=bins - 1,
        histogram=hist.tolist(),
        expected=expected.tolist(),
    )


def _verdict(
    total: int,
    excluded: int,
    dimensions: list[DimensionResult],
    max_invalid_fraction: float,
) -> str:
    if total == 0 or total == excluded:
        return VERDICT_INCONCLUSIVE
    if excluded / total > max_invalid_fraction:
        return VERDICT_INCONCLUSIVE
    if not all(np.isfinite(d.uniformity.p_value) for d in dimensions):
        return VERDICT_INCONCLUSIVE
    if any(d.flagged for d in dimensions):
        return VERDICT_DEVIATION
    return VERDICT_NO_DEVIATION


def rank_table(report: CalibrationReport) -> pa.Table:
    """One row per run: id, seed, status, convergence flag, ranks, reason."""
    results = report.results
    columns: dict[str, pa.Array] = {
        "run_id": pa.array([r.run_id for r in results], type=pa.int64()),
        "seed": pa.array([r.seed for r in results], type=pa.int64()),
        "status": pa.array([r.status for r in results], type=pa.string()),
        "converged": pa.array([r.valid for r in results], type=pa.bool_()),
    }
    for dim in range(report.n_dims):
        columns[f"rank_{dim + 1}"] = pa.array(
            [None if r.ranks is None else int(r.ranks[dim]) for r in results],
            type=pa.int64(),
        )
    columns["reason"] = pa.array([r.reason for r in results], type=pa.string())
    return pa.table(columns)


def checker_from_table(table: pa.Table, n_rank_draws: int, param: str = "B") -> CalibrationChecker:
    """Rebuild a collecting checker from a stored rank table."""
    rank_cols = sorted(
        (c for c in table.column_names if c.startswith("rank_")),
        key=lambda c: int(c.split("_", 1)[1]),
    )
    checker = CalibrationChecker(len(rank_cols), n_rank_draws, param)
    for row in table.to_pylist():
        values = [row[c] for c in rank_cols]
        ranks = None if any(v is None for v in values) else np.array(values, dtype=np.int64)
        checker.add(
            RunResult(
                run_id=int(row["run_id"]),
                seed=int(row["seed"]),
                status=row["status"],
                ranks=ranks,
                reason=row.get("reason") or "",
            )
        )
    return checker
