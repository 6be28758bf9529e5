"""Posterior fitting engines.

An engine turns a model program and its data into posterior draws. The
orchestration only sees the ``Engine`` protocol, so CmdStan and the exact
conjugate sampler are interchangeable.
"""

from __future__ import annotations

import csv
import logging
import re
import tempfile
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import numpy as np

from .config import SamplerConfig
from .models import NORMAL_MEANS_ESTIMATE, ModelRecipe
from .simulate import normal_means_posterior

logger = logging.getLogger(__name__)

DIVERGENT = "divergent__"


class EngineError(RuntimeError):
    """The engine failed to produce draws."""


class NonConvergenceError(EngineError):
    """Draws were produced but failed convergence diagnostics."""


class DrawShapeError(ValueError):
    """Engine output does not match the declared model."""


ChainPayload = list[dict[str, list[float]]]


@dataclass(frozen=True)
class EngineResult:
    chains: ChainPayload
    divergences: int = 0
    meta: dict[str, Any] = field(default_factory=dict)


class Engine(Protocol):
    name: str
    sampler: SamplerConfig
    recipes: tuple[str, ...] | None

    def fit(self, recipe: ModelRecipe, data: dict[str, Any], *, seed: int) -> EngineResult:
        """Return posterior draws for ``data`` under ``recipe``."""

    def close(self) -> None:
        """Release resources held between fits."""


def validate_payload(chains: ChainPayload) -> ChainPayload:
    """Check the chain payload: list[chain][param] -> draws."""
    if not chains:
        raise DrawShapeError("no chain draws provided")

    params = set(chains[0].keys())
    if not params:
        raise DrawShapeError("chain draws contain no parameters")

    n_draws: int | None = None
    for idx, chain in enumerate(chains):
        if set(chain.keys()) != params:
            raise DrawShapeError(f"chain {idx} parameter keys mismatch")
        lens = {len(values) for values in chain.values()}
        if len(lens) != 1:
            raise DrawShapeError(f"chain {idx} has inconsistent draw counts")
        if lens == {0}:
            raise DrawShapeError(f"chain {idx} has no draws")
        if n_draws is None:
            n_draws = lens.pop()
        elif lens != {n_draws}:
            raise DrawShapeError(
                f"chain {idx} has {lens.pop()} draws; chain 0 has {n_draws}"
            )
    return chains


def parse_cmdstan_csv(path: Path) -> dict[str, list[float]]:
    """Parse one CmdStan chain CSV into {param: draws}.

    Sampler columns are dropped except ``divergent__``.
    """
    rows: list[str] = []
    with Path(path).open() as f:
        for line in f:
            if not line.startswith("#"):
                rows.append(line)
    reader = csv.DictReader(rows)

    columns: dict[str, list[float]] = {}
    for row in reader:
        for key, value in row.items():
            if key is None or (key.endswith("__") and key != DIVERGENT):
                continue
            columns.setdefault(_normalize_param_name(key), []).append(float(value))
    return columns


_VECTOR_SUFFIX_RE = re.compile(r"^(?P<base>[A-Za-z_][A-Za-z0-9_]*)((?:\.\d+)+)$")


def _normalize_param_name(name: str) -> str:
    """Convert CmdStan CSV names (theta.1.2) to Stan-style names (theta[1,2])."""
    m = _VECTOR_SUFFIX_RE.match(name)
    if not m:
        return name
    indices = m.group(2).lstrip(".").split(".")
    return f"{m.group('base')}[{','.join(indices)}]"


def _read_chains(recipe: ModelRecipe, csv_files: list[str]) -> ChainPayload:
    try:
        return [parse_cmdstan_csv(Path(p)) for p in csv_files]
    except ValueError as exc:
        raise DrawShapeError(f"{recipe.name}: unreadable CmdStan output: {exc}") from exc


def _pop_divergences(chains: ChainPayload) -> int:
    total = 0
    for chain in chains:
        flags = chain.pop(DIVERGENT, None)
        if flags:
            total += int(sum(1 for flag in flags if flag))
    return total


class CmdStanEngine:
    """Compile once per program, then sample with CmdStan."""

    name = "cmdstan"
    recipes = None

    def __init__(self, sampler: SamplerConfig | None = None, build_dir: Path | None = None) -> None:
        self.sampler = sampler or SamplerConfig()
        self._build_dir = Path(build_dir) if build_dir is not None else None
        self._tmpdir: tempfile.TemporaryDirectory[str] | None = None
        self._compiled: dict[str, Any] = {}
        self._lock = threading.Lock()

    def __enter__(self) -> CmdStanEngine:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Remove the temporary build directory, if this engine created one."""
        with self._lock:
            if self._tmpdir is not None:
                self._tmpdir.cleanup()
                self._tmpdir = None
            self._compiled.clear()

    def fit(self, recipe: ModelRecipe, data: dict[str, Any], *, seed: int) -> EngineResult:
        recipe.check_data(data)
        model = self._compile(recipe)
        try:
            fit = model.sample(
                data=data,
                chains=self.sampler.chains,
                iter_warmup=self.sampler.iter_warmup,
                iter_sampling=self.sampler.iter_sampling,
                thin=self.sampler.thin,
                seed=seed,
                show_progress=False,
            )
        except RuntimeError as exc:
            raise EngineError(f"{recipe.name}: sampling failed: {exc}") from exc

        chains = _read_chains(recipe, fit.runset.csv_files)
        divergences = _pop_divergences(chains)
        return EngineResult(
            chains=validate_payload(chains),
            divergences=divergences,
            meta={"engine": self.name, "seed": seed},
        )

    def generate(
        self, recipe: ModelRecipe, data: dict[str, Any], *, seed: int, draws: int
    ) -> ChainPayload:
        """Run a generated-quantities program with the fixed-parameter sampler."""
        recipe.check_data(data)
        model = self._compile(recipe)
        try:
            fit = model.sample(
                data=data,
                chains=1,
                iter_sampling=draws,
                seed=seed,
                fixed_param=True,
                show_progress=False,
            )
        except RuntimeError as exc:
            raise EngineError(f"{recipe.name}: simulation failed: {exc}") from exc
        chains = _read_chains(recipe, fit.runset.csv_files)
        _pop_divergences(chains)
        return validate_payload(chains)

    def _compile(self, recipe: ModelRecipe):
        with self._lock:
            model = self._compiled.get(recipe.name)
            if model is not None:
                return model

            import cmdstanpy  # type: ignore[import-untyped]

            if self._build_dir is not None:
                build_dir = self._build_dir
            else:
                if self._tmpdir is None:
                    self._tmpdir = tempfile.TemporaryDirectory(prefix="choice-sbc-")
                build_dir = Path(self._tmpdir.name)
            build_dir.mkdir(parents=True, exist_ok=True)
            stan_file = build_dir / f"{recipe.name}.stan"
            stan_file.write_text(recipe.stan_code.strip() + "\n")
            logger.info("compiling %s in %s", recipe.name, build_dir)
            model = cmdstanpy.CmdStanModel(stan_file=str(stan_file))
            self._compiled[recipe.name] = model
            return model


class ExactEngine:
    """Independent draws from the closed-form normal-means posterior.

    Its draws are exact, so SBC ranks against it must be uniform.
    """

    name = "exact"
    recipes = (NORMAL_MEANS_ESTIMATE.name,)

    def __init__(self, sampler: SamplerConfig | None = None) -> None:
        self.sampler = sampler or SamplerConfig()

    def close(self) -> None:
        pass

    def fit(self, recipe: ModelRecipe, data: dict[str, Any], *, seed: int) -> EngineResult:
        if recipe.name not in self.recipes:
            raise EngineError(f"exact engine cannot fit {recipe.name}")
        recipe.check_data(data)
        mean, sd = normal_means_posterior(data)
        rng = np.random.default_rng(seed)
        n_draws = self.sampler.iter_sampling // self.sampler.thin
        chains: ChainPayload = []
        for _ in range(self.sampler.chains):
            draws = rng.normal(mean, sd, size=(n_draws, mean.shape[0]))
            chains.append(
                {f"{recipe.param}[{l + 1}]": draws[:, l].tolist() for l in range(mean.shape[0])}
            )
        return EngineResult(chains=chains, meta={"engine": self.name, "seed": seed})


@dataclass(frozen=True)
class EngineSpec:
    name: str
    loader: Callable[..., Engine]


ENGINES: dict[str, EngineSpec] = {
    "cmdstan": EngineSpec(name="cmdstan", loader=CmdStanEngine),
    "exact": EngineSpec(name="exact", loader=ExactEngine),
}


def get_engine(name: str, **kwargs: Any) -> Engine:
    spec = ENGINES.get(name)
    if spec is None:
        raise ValueError(f"Unknown engine: {name}")
    return spec.loader(**kwargs)
