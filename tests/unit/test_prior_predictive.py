from __future__ import annotations

import types
from pathlib import Path
from unittest.mock import patch

import numpy as np
import pytest

from choice_sbc.config import DesignConfig, PriorConfig
from choice_sbc.engine import CmdStanEngine, DrawShapeError
from choice_sbc.prior_predictive import prior_predictive, prior_predictive_stan
from choice_sbc.simulate import MultinomialLogit


def test_prior_predictive_shapes() -> None:
    model = MultinomialLogit(DesignConfig(n_obs=30, n_alts=3, n_levels=4))

    result = prior_predictive(model, draws=25, seed=1)

    assert result.theta.shape == (25, 4)
    assert result.choices.shape == (25, 30)
    assert result.level_choice_share.shape == (25, 4)
    np.testing.assert_allclose(result.choice_share.sum(axis=1), 1.0)
    assert np.all((result.level_choice_share >= 0) & (result.level_choice_share <= 1))


def test_prior_predictive_is_reproducible() -> None:
    model = MultinomialLogit(DesignConfig(n_obs=10, n_alts=2, n_levels=2))

    a = prior_predictive(model, draws=5, seed=3)
    b = prior_predictive(model, draws=5, seed=3)

    np.testing.assert_array_equal(a.choices, b.choices)


def test_strong_positive_prior_favours_levels_in_chosen_alternative() -> None:
    model = MultinomialLogit(
        DesignConfig(n_obs=200, n_alts=3, n_levels=2),
        prior=PriorConfig(loc=3.0, scale=0.1),
    )

    summary = prior_predictive(model, draws=20, seed=0).summary()

    # without any effect each level is present half the time
    assert summary["level_1"]["mean"] > 0.7
    assert set(summary["level_1"]) == {"mean", "q5", "q50", "q95"}


def test_prior_predictive_table_columns() -> None:
    model = MultinomialLogit(DesignConfig(n_obs=5, n_alts=2, n_levels=2))

    table = prior_predictive(model, draws=3).to_table()

    assert table.num_rows == 3
    assert table.column_names == [
        "draw",
        "B_1",
        "B_2",
        "share_level_1",
        "share_level_2",
        "share_alt_1",
        "share_alt_2",
    ]


def test_prior_predictive_requires_draws() -> None:
    with pytest.raises(ValueError, match="draws"):
        prior_predictive(MultinomialLogit(), draws=0)


def _write_simulation_csv(path: Path, draws: int, n_obs: int, n_alts: int, n_levels: int) -> str:
    header = ["lp__", "accept_stat__"]
    header += [f"B.{l}" for l in range(1, n_levels + 1)]
    header += [
        f"X.{n}.{p}.{l}"
        for n in range(1, n_obs + 1)
        for p in range(1, n_alts + 1)
        for l in range(1, n_levels + 1)
    ]
    header += [f"Y.{n}" for n in range(1, n_obs + 1)]
    rows = []
    for d in range(draws):
        row = [0.0, 0.0] + [float(d)] * n_levels
        # level 1 only on alternative 1, which is always chosen
        row += [
            1.0 if (p == 1 and l == 1) else 0.0
            for _ in range(n_obs)
            for p in range(1, n_alts + 1)
            for l in range(1, n_levels + 1)
        ]
        row += [1.0] * n_obs
        rows.append(",".join(str(v) for v in row))
    path.write_text("# fixed_param\n" + ",".join(header) + "\n" + "\n".join(rows) + "\n")
    return str(path)


def test_prior_predictive_stan_reads_fixed_param_output(tmp_path: Path) -> None:
    calls: list[dict[str, object]] = []
    csv_file = _write_simulation_csv(tmp_path / "sim.csv", draws=4, n_obs=3, n_alts=2, n_levels=2)

    class FakeCmdStanModel:
        def __init__(self, *, stan_file: str) -> None:
            assert Path(stan_file).name == "mnl_simulate.stan"

        def sample(self, **kwargs: object) -> object:
            calls.append(kwargs)
            return types.SimpleNamespace(runset=types.SimpleNamespace(csv_files=[csv_file]))

    model = MultinomialLogit(DesignConfig(n_obs=3, n_alts=2, n_levels=2))
    engine = CmdStanEngine(build_dir=tmp_path / "build")

    with patch.dict("sys.modules", {"cmdstanpy": types.SimpleNamespace(CmdStanModel=FakeCmdStanModel)}):
        result = prior_predictive_stan(model, engine, draws=4, seed=9)

    assert calls[0]["fixed_param"] is True
    assert calls[0]["iter_sampling"] == 4
    assert calls[0]["data"]["level_prob"] == 0.5
    assert result.theta[:, 0].tolist() == [0.0, 1.0, 2.0, 3.0]
    assert result.choices.tolist() == [[0, 0, 0]] * 4
    np.testing.assert_allclose(result.level_choice_share, [[1.0, 0.0]] * 4)
    np.testing.assert_allclose(result.choice_share, [[1.0, 0.0]] * 4)


def test_prior_predictive_stan_rejects_incomplete_output(tmp_path: Path) -> None:
    csv_file = tmp_path / "sim.csv"
    csv_file.write_text("lp__,B.1,B.2\n0,1.0,2.0\n")

    class FakeCmdStanModel:
        def __init__(self, *, stan_file: str) -> None:
            pass

        def sample(self, **_: object) -> object:
            return types.SimpleNamespace(runset=types.SimpleNamespace(csv_files=[str(csv_file)]))

    model = MultinomialLogit(DesignConfig(n_obs=2, n_alts=2, n_levels=2))
    engine = CmdStanEngine(build_dir=tmp_path / "build")

    with patch.dict("sys.modules", {"cmdstanpy": types.SimpleNamespace(CmdStanModel=FakeCmdStanModel)}):
        with pytest.raises(DrawShapeError, match="missing 8 column"):
            prior_predictive_stan(model, engine, draws=1)
