"""CLI entry point for choice-sbc."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import click
import pyarrow.parquet as pq

from . import models
from .calibration import VERDICT_INCONCLUSIVE, CalibrationReport, checker_from_table
from .config import DesignConfig, PriorConfig, SamplerConfig, SBCConfig, to_dict
from .engine import CmdStanEngine, DrawShapeError, EngineError, get_engine
from .prior_predictive import prior_predictive, prior_predictive_stan
from .sbc import check_run_setup, run_sbc
from .simulate import MultinomialLogit, NormalMeans
from .store import ResultStore


@click.group()
@click.option("--verbose", "-v", count=True, help="Log progress (-v) or every run (-vv).")
def main(verbose: int) -> None:
    """choice-sbc CLI."""
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


@main.command("run")
@click.argument("name")
@click.option(
    "--model",
    "model_name",
    type=click.Choice(["mnl", "normal-means"], case_sensitive=False),
    default="mnl",
    show_default=True,
)
@click.option(
    "--engine",
    "engine_name",
    type=click.Choice(["cmdstan", "exact"], case_sensitive=False),
    default="cmdstan",
    show_default=True,
)
@click.option("--runs", default=50, show_default=True, type=int)
@click.option("--obs", default=100, show_default=True, type=int, help="Observations per dataset.")
@click.option("--alts", default=3, show_default=True, type=int, help="Alternatives per choice.")
@click.option("--levels", default=10, show_default=True, type=int, help="Parameter dimensions.")
@click.option("--sigma", default=1.0, show_default=True, type=float, help="normal-means noise.")
@click.option("--prior-loc", default=0.0, show_default=True, type=float)
@click.option("--prior-scale", default=1.0, show_default=True, type=float)
@click.option("--chains", default=4, show_default=True, type=int)
@click.option("--iter-warmup", default=500, show_default=True, type=int)
@click.option("--iter-sampling", default=500, show_default=True, type=int)
@click.option("--thin", default=1, show_default=True, type=int)
@click.option("--rank-draws", default=None, type=int, help="Thin posterior to this many draws.")
@click.option("--bins", default=20, show_default=True, type=int)
@click.option("--alpha", default=0.01, show_default=True, type=float)
@click.option("--max-invalid", default=0.1, show_default=True, type=float)
@click.option("--rhat-max", default=1.05, show_default=True, type=float)
@click.option("--workers", default=1, show_default=True, type=int)
@click.option("--seed", default=42, show_default=True, type=int)
@click.option(
    "--format",
    "format_",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
)
def run_cmd(
    name: str,
    model_name: str,
    engine_name: str,
    runs: int,
    obs: int,
    alts: int,
    levels: int,
    sigma: float,
    prior_loc: float,
    prior_scale: float,
    chains: int,
    iter_warmup: int,
    iter_sampling: int,
    thin: int,
    rank_draws: int | None,
    bins: int,
    alpha: float,
    max_invalid: float,
    rhat_max: float,
    workers: int,
    seed: int,
    format_: str,
) -> None:
    """Run simulation-based calibration and save the rank table as NAME."""
    try:
        prior = PriorConfig(loc=prior_loc, scale=prior_scale)
        sampler = SamplerConfig(
            chains=chains, iter_warmup=iter_warmup, iter_sampling=iter_sampling, thin=thin
        )
        sbc_config = SBCConfig(
            runs=runs,
            seed=seed,
            n_rank_draws=rank_draws,
            bins=bins,
            alpha=alpha,
            max_invalid_fraction=max_invalid,
            rhat_max=rhat_max,
            workers=workers,
        )
        if model_name == "mnl":
            design = DesignConfig(n_obs=obs, n_alts=alts, n_levels=levels)
            model = MultinomialLogit(design=design, prior=prior)
            configs = to_dict(design, prior, sampler, sbc_config)
        else:
            model = NormalMeans(n_obs=obs, n_dims=levels, sigma=sigma, prior=prior)
            configs = to_dict(prior, sampler, sbc_config)
        engine = get_engine(engine_name, sampler=sampler)
        check_run_setup(model, engine, sbc_config)
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc

    try:
        report = run_sbc(model, engine, sbc_config)
    finally:
        engine.close()
    configs["run"] = {"model": model.name, "engine": engine.name}
    store = ResultStore()
    ranks_path, _ = store.save(name, report, configs)
    click.echo(f"saved {name} -> {ranks_path}", err=True)
    _emit_report(report, format_)
    _exit_for(report)


@main.command("list")
@click.option(
    "--format",
    "format_",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
)
def list_cmd(format_: str) -> None:
    names = ResultStore().list_runs()
    if format_ == "json":
        click.echo(json.dumps(names, indent=2))
        return
    for name in names:
        click.echo(name)


@main.command("report")
@click.argument("name")
@click.option(
    "--format",
    "format_",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
)
def report_cmd(name: str, format_: str) -> None:
    """Recompute the uniformity report from a saved rank table."""
    report = _load_report(name)
    _emit_report(report, format_)
    _exit_for(report)


@main.command("export")
@click.argument("name")
@click.option("--output", type=click.Path(path_type=Path), required=True)
def export_cmd(name: str, output: Path) -> None:
    try:
        path = ResultStore().export_csv(name, output)
    except FileNotFoundError as exc:
        click.echo(str(exc), err=True)
        raise SystemExit(1) from exc
    click.echo(f"wrote {path}")


@main.command("plot")
@click.argument("name")
@click.option("--output", type=click.Path(path_type=Path), required=True)
def plot_cmd(name: str, output: Path) -> None:
    from .plots import rank_histograms

    report = _load_report(name)
    click.echo(f"wrote {rank_histograms(report, output)}")


@main.command("prior-check")
@click.option("--draws", default=1000, show_default=True, type=int)
@click.option("--obs", default=100, show_default=True, type=int)
@click.option("--alts", default=3, show_default=True, type=int)
@click.option("--levels", default=10, show_default=True, type=int)
@click.option("--prior-loc", default=0.0, show_default=True, type=float)
@click.option("--prior-scale", default=1.0, show_default=True, type=float)
@click.option(
    "--engine",
    "engine_name",
    type=click.Choice(["numpy", "cmdstan"], case_sensitive=False),
    default="numpy",
    show_default=True,
    help="Simulate in numpy or with the mnl_simulate Stan program.",
)
@click.option("--seed", default=42, show_default=True, type=int)
@click.option("--output", type=click.Path(path_type=Path), default=None, help="Bar plot path.")
@click.option(
    "--table", type=click.Path(path_type=Path), default=None, help="Parquet path for per-draw shares."
)
def prior_check_cmd(
    draws: int,
    obs: int,
    alts: int,
    levels: int,
    prior_loc: float,
    prior_scale: float,
    engine_name: str,
    seed: int,
    output: Path | None,
    table: Path | None,
) -> None:
    """Prior predictive check: level shares in chosen alternatives."""
    try:
        model = MultinomialLogit(
            design=DesignConfig(n_obs=obs, n_alts=alts, n_levels=levels),
            prior=PriorConfig(loc=prior_loc, scale=prior_scale),
        )
        if engine_name == "numpy":
            result = prior_predictive(model, draws=draws, seed=seed)
        else:
            with CmdStanEngine() as engine:
                result = prior_predictive_stan(model, engine, draws=draws, seed=seed)
    except (EngineError, DrawShapeError) as exc:
        click.echo(str(exc), err=True)
        raise SystemExit(1) from exc
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc
    _print_table(result.summary(), label="level")
    if output is not None:
        from .plots import prior_predictive_bars

        click.echo(f"wrote {prior_predictive_bars(result, output)}", err=True)
    if table is not None:
        table.parent.mkdir(parents=True, exist_ok=True)
        pq.write_table(result.to_table(), table)
        click.echo(f"wrote {table}", err=True)


@main.command("model-code")
@click.argument("name")
def model_code_cmd(name: str) -> None:
    try:
        recipe = models.recipe(name)
    except ValueError as exc:
        click.echo(str(exc), err=True)
        raise SystemExit(1) from exc
    click.echo(recipe.stan_code.strip())


def _load_report(name: str) -> CalibrationReport:
    store = ResultStore()
    try:
        meta = store.read_meta(name)
        table = store.read_ranks(name)
    except FileNotFoundError as exc:
        click.echo(str(exc), err=True)
        raise SystemExit(1) from exc
    saved = meta["report"]
    checker = checker_from_table(table, saved["n_rank_draws"], saved["param"])
    return checker.complete(
        bins=saved["bins"],
        alpha=saved["alpha"],
        max_invalid_fraction=saved["max_invalid_fraction"],
    )


def _emit_report(report: CalibrationReport, format_: str) -> None:
    if format_ == "json":
        click.echo(json.dumps(report.to_dict(), indent=2, sort_keys=True))
        return
    click.echo(f"verdict: {report.verdict}")
    click.echo(
        f"runs: total={report.total_runs} valid={report.valid_runs} "
        f"excluded={report.excluded_runs} (max invalid fraction {report.max_invalid_fraction})"
    )
    click.echo(f"ranks in [0, {report.n_rank_draws}], {report.bins} bins, alpha={report.alpha}")
    rows = {
        report.dim_label(d.dim): {
            "chi2": d.uniformity.statistic,
            "p_value": d.uniformity.p_value,
            "flagged": float(d.flagged),
        }
        for d in report.dimensions
    }
    _print_table(rows, label="param")
    for exclusion in report.exclusions:
        click.echo(f"- run {exclusion.run_id} ({exclusion.status}): {exclusion.reason}")


def _exit_for(report: CalibrationReport) -> None:
    if report.verdict == VERDICT_INCONCLUSIVE:
        raise SystemExit(2)


def _print_table(stats: dict[str, dict[str, float]], label: str) -> None:
    headers = [label] + sorted({k for metrics in stats.values() for k in metrics})
    widths = [max(len(h), 8) for h in headers]
    click.echo(" ".join(h.ljust(w) for h, w in zip(headers, widths, strict=False)))
    for key, metrics in stats.items():
        row = [key] + [f"{metrics.get(h, float('nan')):.6g}" for h in headers[1:]]
        click.echo(" ".join(val.ljust(w) for val, w in zip(row, widths, strict=False)))
