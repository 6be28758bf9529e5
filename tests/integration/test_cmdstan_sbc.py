"""End-to-end SBC against a real CmdStan install (skipped when unavailable)."""

from __future__ import annotations

from pathlib import Path

import pytest

from choice_sbc.config import DesignConfig, SamplerConfig, SBCConfig
from choice_sbc.engine import CmdStanEngine
from choice_sbc.prior_predictive import prior_predictive_stan
from choice_sbc.sbc import run_sbc
from choice_sbc.simulate import MultinomialLogit, NormalMeans

cmdstanpy = pytest.importorskip("cmdstanpy")


def _cmdstan_available() -> bool:
    try:
        cmdstanpy.cmdstan_path()
    except ValueError:
        return False
    return True


pytestmark = pytest.mark.skipif(not _cmdstan_available(), reason="CmdStan is not installed")


def test_mnl_sbc_with_cmdstan(tmp_path: Path) -> None:
    model = MultinomialLogit(DesignConfig(n_obs=50, n_alts=3, n_levels=3))
    engine = CmdStanEngine(
        SamplerConfig(chains=4, iter_warmup=200, iter_sampling=100), build_dir=tmp_path
    )

    report = run_sbc(model, engine, SBCConfig(runs=5, n_rank_draws=100, bins=5, workers=2))

    assert report.total_runs == 5
    assert report.ranks.shape[1] == 3
    assert report.valid_runs + report.excluded_runs == 5
    assert all(e.reason for e in report.exclusions)
    if report.valid_runs:
        assert report.ranks.max() <= 100


def test_normal_means_sbc_with_cmdstan(tmp_path: Path) -> None:
    model = NormalMeans(n_obs=10, n_dims=2)
    engine = CmdStanEngine(
        SamplerConfig(chains=4, iter_warmup=200, iter_sampling=50), build_dir=tmp_path
    )

    report = run_sbc(model, engine, SBCConfig(runs=5, bins=4))

    assert report.valid_runs + report.excluded_runs == 5
    assert report.n_rank_draws == 200


def test_mnl_simulate_program_with_fixed_param(tmp_path: Path) -> None:
    model = MultinomialLogit(DesignConfig(n_obs=20, n_alts=3, n_levels=4))

    with CmdStanEngine(build_dir=tmp_path) as engine:
        result = prior_predictive_stan(model, engine, draws=10, seed=3)

    assert result.theta.shape == (10, 4)
    assert result.choices.shape == (10, 20)
    assert result.choices.min() >= 0
    assert result.choices.max() < 3
