from __future__ import annotations

from pathlib import Path

import pytest

from choice_sbc.models import MNL_ESTIMATE, list_recipes, materialize, recipe


def test_list_recipes() -> None:
    assert list_recipes() == ["mnl_estimate", "mnl_simulate", "normal_means_estimate"]


def test_recipe_lookup() -> None:
    assert recipe("mnl_estimate") is MNL_ESTIMATE
    with pytest.raises(ValueError, match="unknown model recipe"):
        recipe("missing")


def test_declared_data_fields_appear_in_program() -> None:
    for name in list_recipes():
        r = recipe(name)
        data_block = r.stan_code.split("data {", 1)[1].split("}", 1)[0]
        for field in r.data_fields:
            assert f" {field};" in data_block, (name, field)


def test_check_data_reports_missing_fields() -> None:
    with pytest.raises(ValueError, match="missing data field\\(s\\): Y, X"):
        MNL_ESTIMATE.check_data({"N": 1, "P": 2, "L": 1, "prior_loc": 0, "prior_scale": 1})


def test_materialize_writes_stan_files(tmp_path: Path) -> None:
    written = materialize(tmp_path)

    assert [p.name for p in written] == [
        "mnl_estimate.stan",
        "mnl_simulate.stan",
        "normal_means_estimate.stan",
    ]
    assert "categorical_logit" in (tmp_path / "stan_models" / "mnl_estimate.stan").read_text()
