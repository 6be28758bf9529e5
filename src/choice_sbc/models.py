"""Stan programs for simulating and estimating the choice models."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any


@dataclass(frozen=True)
class ModelRecipe:
    name: str
    description: str
    stan_code: str
    data_fields: tuple[str, ...]
    param: str | None = None

    def check_data(self, data: dict[str, Any]) -> None:
        """Raise if ``data`` is missing a field the program declares."""
        missing = [field for field in self.data_fields if field not in data]
        if missing:
            raise ValueError(f"{self.name}: missing data field(s): {', '.join(missing)}")


MNL_SIMULATE = ModelRecipe(
    name="mnl_simulate",
    description="Prior predictive simulation of a multinomial-logit choice experiment.",
    stan_code="""
data {
  int<lower=1> N;
  int<lower=2> P;
  int<lower=1> L;
  real prior_loc;
  real<lower=0> prior_scale;
  real<lower=0, upper=1> level_prob;
}
generated quantities {
  vector[L] B;
  array[N] matrix[P, L] X;
  array[N] int<lower=1, upper=P> Y;
  for (l in 1:L) {
    B[l] = normal_rng(prior_loc, prior_scale);
  }
  for (n in 1:N) {
    for (p in 1:P) {
      for (l in 1:L) {
        X[n][p, l] = bernoulli_rng(level_prob);
      }
    }
    Y[n] = categorical_logit_rng(X[n] * B);
  }
}
""",
    data_fields=("N", "P", "L", "prior_loc", "prior_scale", "level_prob"),
)


MNL_ESTIMATE = ModelRecipe(
    name="mnl_estimate",
    description="Multinomial-logit choice model with independent normal priors.",
    stan_code="""
data {
  int<lower=1> N;
  int<lower=2> P;
  int<lower=1> L;
  array[N] int<lower=1, upper=P> Y;
  array[N] matrix[P, L] X;
  real prior_loc;
  real<lower=0> prior_scale;
}
parameters {
  vector[L] B;
}
model {
  B ~ normal(prior_loc, prior_scale);
  for (n in 1:N) {
    Y[n] ~ categorical_logit(X[n] * B);
  }
}
""",
    data_fields=("N", "P", "L", "Y", "X", "prior_loc", "prior_scale"),
    param="B",
)


NORMAL_MEANS_ESTIMATE = ModelRecipe(
    name="normal_means_estimate",
    description="Independent normal means with known noise scale (conjugate).",
    stan_code="""
data {
  int<lower=1> N;
  int<lower=1> L;
  array[N] vector[L] y;
  real<lower=0> sigma;
  real prior_loc;
  real<lower=0> prior_scale;
}
parameters {
  vector[L] mu;
}
model {
  mu ~ normal(prior_loc, prior_scale);
  for (n in 1:N) {
    y[n] ~ normal(mu, sigma);
  }
}
""",
    data_fields=("N", "L", "y", "sigma", "prior_loc", "prior_scale"),
    param="mu",
)


_RECIPES = {r.name: r for r in (MNL_SIMULATE, MNL_ESTIMATE, NORMAL_MEANS_ESTIMATE)}


def list_recipes() -> list[str]:
    return sorted(_RECIPES)


def recipe(name: str) -> ModelRecipe:
    try:
        return _RECIPES[name]
    except KeyError:
        raise ValueError(f"unknown model recipe: {name}") from None


def materialize(output_root: Path) -> list[Path]:
    """Write every program to ``<output_root>/stan_models/<name>.stan``."""
    stan_models = Path(output_root) / "stan_models"
    stan_models.mkdir(parents=True, exist_ok=True)
    written: list[Path] = []
    for name in list_recipes():
        path = stan_models / f"{name}.stan"
        path.write_text(_RECIPES[name].stan_code.strip() + "\n")
        written.append(path)
    return written
