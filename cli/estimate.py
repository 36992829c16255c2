"""
Command-line reports for conjoint estimands.

Each ``run_*`` function loads a study configuration plus model output,
computes estimands through :mod:`conjoint.estimation` and renders them to
the terminal with rich.  Results can optionally be written to JSON or CSV.
"""

from __future__ import annotations

import importlib
import logging
from collections import defaultdict
from pathlib import Path
from typing import Any, Callable, Sequence

import numpy as np
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from conjoint.cache import EnsembleCache
from conjoint.design import AttributeSpace
from conjoint.errors import ConfigurationError
from conjoint.estimation import (
    AnalyticModel,
    PosteriorModel,
    ProbabilityModel,
    ResampledModel,
    estimate_all,
    estimate_importance,
    estimate_shares,
)
from conjoint.io import load_covariance, load_draws, load_observations, save_estimands
from conjoint.models import Estimand, StudyConfig

console = Console()
logger = logging.getLogger(__name__)

MAX_BAR = 40

# =====================================================================
# Helpers
# =====================================================================


def load_callable(spec: str) -> Callable[..., Any]:
    """Resolve ``"package.module:function"`` to the named callable."""
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigurationError(f"Expected 'module:function', got {spec!r}")
    module = importlib.import_module(module_name)
    try:
        fn = getattr(module, attr)
    except AttributeError:
        raise ConfigurationError(f"Module '{module_name}' has no attribute '{attr}'") from None
    if not callable(fn):
        raise ConfigurationError(f"{spec} is not callable")
    return fn


def _fmt_interval(e: Estimand) -> str:
    if not e.has_interval:
        return "—"
    return f"[{e.lower:+.3f}, {e.upper:+.3f}]"


def _header(config: StudyConfig, space: AttributeSpace, subtitle: str) -> None:
    console.print(
        Panel(
            f"[bold]{config.name}[/bold] — {subtitle}\n"
            f"{space!r}: {space.grid_size} profiles",
            border_style="bright_blue",
        )
    )


def _write(estimands: Sequence[Estimand], output: Path | None, **meta: Any) -> None:
    if output is None:
        return
    written = save_estimands(estimands, output, console=console, **meta)
    if written is not None:
        console.print(f"\n[dim]Saved {len(estimands)} estimands to {written}[/dim]")


# =====================================================================
# Display
# =====================================================================


def display_effects(results: dict[str, dict[str, list[Estimand]]], space: AttributeSpace) -> None:
    """One table per attribute: marginal means and AMCEs side by side."""
    for name, tables in results.items():
        attr = space.attribute(name)
        table = Table(
            title=attr.label or name, box=box.SIMPLE, show_header=True,
            header_style="bold", padding=(0, 1),
        )
        table.add_column("Level", min_width=16)
        table.add_column("Marginal mean", justify="right", min_width=12)
        table.add_column("Interval", justify="right", min_width=18)
        table.add_column("AMCE", justify="right", min_width=10)
        table.add_column("Interval", justify="right", min_width=18)

        for mm, effect in zip(tables["marginal_means"], tables["amces"]):
            is_ref = effect.level == attr.reference_level
            level = f"{mm.level} [dim](ref)[/dim]" if is_ref else mm.level
            style = "" if is_ref else ("green" if effect.estimate > 0 else "red")
            table.add_row(
                level,
                f"{mm.estimate:.4f}",
                _fmt_interval(mm),
                f"{effect.estimate:+.4f}",
                _fmt_interval(effect),
                style=style,
            )
        console.print(table)


def display_importance(per_respondent: dict[str, list[Estimand]]) -> None:
    """Per-respondent importance table followed by group mean ± SD bars."""
    if not per_respondent:
        return
    attrs = [e.attribute for e in next(iter(per_respondent.values()))]

    table = Table(box=box.ROUNDED, show_header=True, header_style="bold")
    table.add_column("Respondent", min_width=12)
    for a in attrs:
        table.add_column(a, justify="right")
    for rid, estimands in per_respondent.items():
        table.add_row(rid, *(f"{100 * e.estimate:5.1f}%" for e in estimands))
    console.print(table)

    by_attr: dict[str, list[float]] = defaultdict(list)
    for estimands in per_respondent.values():
        for e in estimands:
            by_attr[e.attribute].append(100 * e.estimate)

    console.print()
    console.print("[bold underline]Attribute Importance (group mean ± SD)[/bold underline]")
    console.print()
    means = {a: float(np.mean(v)) for a, v in by_attr.items()}
    max_imp = max(means.values(), default=1.0)
    max_name = max((len(a) for a in means), default=10)
    for a in sorted(means, key=lambda k: -means[k]):
        v = by_attr[a]
        std = float(np.std(v, ddof=1)) if len(v) > 1 else 0.0
        bar_len = int((means[a] / max_imp) * MAX_BAR) if max_imp > 0 else 0
        console.print(f"  {a.ljust(max_name)}  [cyan]{'█' * bar_len}[/cyan] {means[a]:5.1f}% ± {std:4.1f}")


# =====================================================================
# Commands
# =====================================================================


def run_grid(config_path: Path, *, preview: int = 10) -> None:
    """Show the balanced grid and paired grid sizes for a study."""
    config = StudyConfig.from_yaml(config_path)
    space = AttributeSpace(config.attributes)
    _header(config, space, "design grid")

    grid = space.grid()
    n = len(grid)
    console.print(f"Balanced grid: [cyan]{n}[/cyan] alternatives")
    console.print(f"Paired grid:   [cyan]{n * n - n}[/cyan] ordered pairs ({2 * (n * n - n)} long rows)")

    table = Table(box=box.SIMPLE, show_header=True, header_style="bold")
    table.add_column("#", justify="right")
    for name in space.names:
        table.add_column(name)
    for i, alt in enumerate(grid[:preview], start=1):
        table.add_row(str(i), *(alt.level_of(nm) for nm in space.names))
    console.print(table)
    if n > preview:
        console.print(f"[dim]… {n - preview} more[/dim]")


def _report_model(
    model: ProbabilityModel,
    config: StudyConfig,
    space: AttributeSpace,
    *,
    alpha: float,
    output: Path | None,
    subtitle: str,
) -> dict[str, dict[str, list[Estimand]]]:
    _header(config, space, subtitle)
    with console.status("[bold cyan]Computing marginal means and AMCEs...[/bold cyan]"):
        results = estimate_all(model, space, alpha)
    display_effects(results, space)
    flat = [e for tables in results.values() for rows in tables.values() for e in rows]
    _write(flat, output, study=config.name, method=subtitle)
    return results


def run_estimate(
    config_path: Path,
    draws_path: Path,
    *,
    link: str | None = None,
    covariance_path: Path | None = None,
    alpha: float | None = None,
    output: Path | None = None,
) -> dict[str, dict[str, list[Estimand]]]:
    """
    Marginal means and AMCEs from coefficient or posterior draws.

    With *covariance_path* the draws file must hold a single coefficient
    record; intervals then come from simulating N(beta, Sigma).
    """
    config = StudyConfig.from_yaml(config_path)
    space = AttributeSpace(config.attributes)
    draws = load_draws(draws_path)
    individual = sorted({d.respondent_id for d in draws if d.respondent_id is not None})
    if individual:
        raise ConfigurationError(
            f"{draws_path.name} holds respondent-level draws (e.g. '{individual[0]}'); "
            "use the 'importance' command for those"
        )
    settings = config.settings
    link = link or settings.link
    model: ProbabilityModel
    if covariance_path is not None:
        if len(draws) != 1:
            raise ConfigurationError(
                f"{draws_path.name} holds {len(draws)} draws; a covariance matrix needs a single coefficient record"
            )
        covariance, include_intercept = load_covariance(covariance_path, space)
        model = AnalyticModel(
            draws[0], covariance,
            link=link,
            n_simulations=settings.n_simulations,
            include_intercept=include_intercept,
            seed=settings.seed,
        )
        subtitle = f"coefficients + covariance, {settings.n_simulations} simulations, {link} link"
    else:
        model = PosteriorModel(draws, link=link)
        subtitle = f"{len(draws)} draw(s), {link} link"
    return _report_model(
        model, config, space,
        alpha=alpha or settings.alpha,
        output=output,
        subtitle=subtitle,
    )


def run_importance(
    config_path: Path,
    draws_path: Path,
    *,
    population_path: Path | None = None,
    alpha: float | None = None,
    output: Path | None = None,
) -> dict[str, list[Estimand]]:
    """Per-respondent attribute importance from individual-level draws."""
    config = StudyConfig.from_yaml(config_path)
    space = AttributeSpace(config.attributes)
    draws = load_draws(draws_path)
    population = load_draws(population_path) if population_path else None
    alpha = alpha or config.settings.alpha

    respondents = list(dict.fromkeys(d.respondent_id for d in draws if d.respondent_id is not None))
    if not respondents:
        raise ConfigurationError(f"{draws_path.name} has no respondent_id column values")

    _header(config, space, f"importance for {len(respondents)} respondent(s)")
    per_respondent = {
        rid: estimate_importance(draws, space, rid, alpha, population=population)
        for rid in respondents
    }
    display_importance(per_respondent)
    _write(
        [e for rows in per_respondent.values() for e in rows], output,
        study=config.name, method="importance",
    )
    return per_respondent


def run_shares(
    config_path: Path,
    draws_path: Path,
    *,
    alpha: float | None = None,
    output: Path | None = None,
) -> list[Estimand]:
    """Simulated choice shares for the market declared in the config."""
    config = StudyConfig.from_yaml(config_path)
    if len(config.market) < 2:
        raise ConfigurationError("The study config must declare a 'market' of at least 2 products")
    space = AttributeSpace(config.attributes)
    draws = load_draws(draws_path)
    _header(config, space, f"share simulation, {len(config.market)} products")

    shares = estimate_shares(draws, config.market, space, alpha or config.settings.alpha)
    table = Table(box=box.ROUNDED, show_header=True, header_style="bold green")
    table.add_column("Product", min_width=30)
    table.add_column("Share", justify="right")
    table.add_column("Interval", justify="right")
    for e in shares:
        table.add_row(e.level, f"{100 * e.estimate:5.1f}%", _fmt_interval(e))
    console.print(table)
    _write(shares, output, study=config.name, method="shares")
    return shares


def run_bootstrap(
    config_path: Path,
    observations_path: Path,
    fit_predict: str,
    *,
    n_resamples: int | None = None,
    seed: int | None = None,
    n_jobs: int | None = None,
    executor: str | None = None,
    time_budget: float | None = None,
    cache_dir: Path | None = None,
    alpha: float | None = None,
    output: Path | None = None,
) -> dict[str, dict[str, list[Estimand]]]:
    """Bootstrap marginal means and AMCEs around a ``fit_predict`` callable."""
    config = StudyConfig.from_yaml(config_path)
    overrides = {
        k: v for k, v in {
            "n_resamples": n_resamples,
            "seed": seed,
            "n_jobs": n_jobs,
            "executor": executor,
            "time_budget": time_budget,
            "cache_dir": cache_dir,
        }.items() if v is not None
    }
    settings = config.settings.model_copy(update=overrides)
    space = AttributeSpace(config.attributes)
    observations = load_observations(observations_path, config.attributes)
    fn = load_callable(fit_predict)
    cache = EnsembleCache(settings.cache_dir) if settings.cache_dir else None

    model = ResampledModel(observations, fn, settings=settings, cache=cache, model_spec=fit_predict)
    results = _report_model(
        model, config, space,
        alpha=alpha or settings.alpha,
        output=output,
        subtitle=f"cluster bootstrap, {settings.n_resamples} resamples",
    )

    boot = model.result
    if boot is not None:
        note = "from cache" if boot.from_cache else f"{boot.elapsed:.1f}s"
        console.print(
            f"\n[dim]{boot.n_succeeded} resamples used, {boot.n_failed} failed, "
            f"{100 * boot.completed_fraction:.0f}% of requested completed ({note})[/dim]"
        )
        if boot.cancelled:
            console.print("[yellow]Resampling stopped early; intervals use the completed subset.[/yellow]")
    return results
