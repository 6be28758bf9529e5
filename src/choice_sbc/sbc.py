"""Simulation-based calibration runs.

Each run is a pure function of its seed: draw parameters from the prior,
simulate a dataset, fit it, and rank the true parameters among the posterior
draws. Runs share nothing, so they can execute on a worker pool; results are
merged by run id.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed

import numpy as np

from .calibration import (
    STATUS_DIVERGED,
    STATUS_FAILED,
    STATUS_OK,
    CalibrationChecker,
    CalibrationReport,
    RunResult,
)
from .config import SBCConfig
from .diagnostics import check_convergence
from .draws import PosteriorDraws
from .engine import DrawShapeError, Engine, EngineError, NonConvergenceError
from .ranks import rank_vector
from .simulate import GenerativeModel, simulate_dataset

logger = logging.getLogger(__name__)


def run_seeds(seed: int, runs: int) -> list[int]:
    """Independent per-run seeds; run ``i`` gets the same seed for any ``runs > i``."""
    children = np.random.SeedSequence(seed).spawn(runs)
    return [int(child.generate_state(1)[0]) for child in children]


def rank_draw_count(engine: Engine, config: SBCConfig) -> int:
    if config.n_rank_draws is not None:
        return config.n_rank_draws
    return engine.sampler.total_draws


def check_run_setup(model: GenerativeModel, engine: Engine, config: SBCConfig) -> None:
    """Raise ValueError for setups in which every run would fail."""
    recipes = getattr(engine, "recipes", None)
    if recipes is not None and model.recipe.name not in recipes:
        raise ValueError(f"{engine.name} engine cannot fit model {model.name}")
    total = engine.sampler.total_draws
    if config.n_rank_draws is not None and config.n_rank_draws > total:
        raise ValueError(
            f"n_rank_draws={config.n_rank_draws} exceeds the {total} draws the sampler returns"
        )


def simulate_run(
    run_id: int,
    seed: int,
    model: GenerativeModel,
    engine: Engine,
    config: SBCConfig,
) -> RunResult:
    rng = np.random.default_rng(seed)
    dataset = simulate_dataset(model, rng)
    data = model.stan_data(dataset.data)
    engine_seed = int(rng.integers(0, 2**31 - 1))
    n_rank_draws = rank_draw_count(engine, config)

    try:
        fit = engine.fit(model.recipe, data, seed=engine_seed)
        draws = PosteriorDraws.from_payload(fit.chains, model.recipe.param, model.n_dims)
        if draws.n_draws < n_rank_draws:
            raise DrawShapeError(
                f"engine returned {draws.n_draws} draws; {n_rank_draws} are needed for ranking"
            )
    except NonConvergenceError as exc:
        return RunResult(run_id=run_id, seed=seed, status=STATUS_DIVERGED, reason=str(exc))
    except (EngineError, DrawShapeError) as exc:
        return RunResult(run_id=run_id, seed=seed, status=STATUS_FAILED, reason=str(exc))

    ranks = rank_vector(draws.thin(n_rank_draws), dataset.theta)
    convergence = check_convergence(
        draws,
        fit.divergences,
        rhat_max=config.rhat_max,
        max_divergences=config.max_divergences,
    )
    if not convergence.converged:
        return RunResult(
            run_id=run_id,
            seed=seed,
            status=STATUS_DIVERGED,
            ranks=ranks,
            reason="; ".join(convergence.reasons),
        )
    logger.debug("run %d ok: ranks=%s", run_id, ranks.tolist())
    return RunResult(run_id=run_id, seed=seed, status=STATUS_OK, ranks=ranks)


def run_sbc(
    model: GenerativeModel,
    engine: Engine,
    config: SBCConfig | None = None,
    *,
    progress: Callable[[RunResult], None] | None = None,
) -> CalibrationReport:
    config = config or SBCConfig()
    check_run_setup(model, engine, config)
    checker = CalibrationChecker(
        n_dims=model.n_dims,
        n_rank_draws=rank_draw_count(engine, config),
        param=model.recipe.param or "theta",
    )
    seeds = run_seeds(config.seed, config.runs)
    logger.info(
        "running %d SBC runs of %s with %s engine on %d worker(s)",
        config.runs,
        model.name,
        engine.name,
        config.workers,
    )

    def collect(result: RunResult) -> None:
        checker.add(result)
        if progress is not None:
            progress(result)

    if config.workers == 1:
        for run_id, seed in enumerate(seeds):
            collect(simulate_run(run_id, seed, model, engine, config))
    else:
        with ThreadPoolExecutor(max_workers=config.workers) as executor:
            futures = [
                executor.submit(simulate_run, run_id, seed, model, engine, config)
                for run_id, seed in enumerate(seeds)
            ]
            for future in as_completed(futures):
                collect(future.result())

    report = checker.complete(
        bins=config.bins,
        alpha=config.alpha,
        max_invalid_fraction=config.max_invalid_fraction,
    )
    logger.info(
        "SBC finished: %d valid, %d excluded, verdict=%s",
        report.valid_runs,
        report.excluded_runs,
        report.verdict,
    )
    return report
