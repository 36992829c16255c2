"""
Entry point for the conjoint estimands CLI.

Usage:
    python main.py grid                                       # Grid sizes for the default study
    python main.py grid --config path/to.yaml                 # ... for a custom study
    python main.py estimate --draws draws.csv                 # MMs + AMCEs from coefficient/posterior draws
    python main.py estimate --draws ols.csv --link identity   # Linear probability model coefficients
    python main.py estimate --draws fit.csv --covariance vcov.csv  # One point fit + its covariance matrix
    python main.py importance --draws ind.csv --population pop.csv
    python main.py shares --draws draws.csv                   # Share simulation for the configured market
    python main.py bootstrap --observations obs.csv --fit-predict mypkg.models:fit_predict
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

DEFAULT_CONFIG = Path(__file__).parent / "configs" / "candy.yaml"


def _add_common(parser: argparse.ArgumentParser, *, output: bool = True) -> None:
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG,
        help=f"Path to YAML study config (default: {DEFAULT_CONFIG})",
    )
    if output:
        parser.add_argument(
            "--alpha",
            type=float,
            default=None,
            help="Interval level is 1 - alpha (default: from config, 0.05)",
        )
        parser.add_argument(
            "--output",
            type=Path,
            default=None,
            help="Write estimands to this .json or .csv file",
        )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Conjoint estimands — marginal means, AMCEs, part-worths and shares",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--log-file", type=Path, default=None, help="Also log to this file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # ── grid ────────────────────────────────────────────────────────
    grid_parser = subparsers.add_parser("grid", help="Show the balanced and paired grids")
    _add_common(grid_parser, output=False)
    grid_parser.add_argument("--preview", type=int, default=10, help="Rows to display (default: 10)")

    # ── estimate ────────────────────────────────────────────────────
    est_parser = subparsers.add_parser(
        "estimate", help="Marginal means and AMCEs from coefficient or posterior draws",
    )
    _add_common(est_parser)
    est_parser.add_argument("--draws", type=Path, required=True, help="Long-format draws CSV")
    est_parser.add_argument(
        "--link",
        choices=["identity", "logistic", "logit"],
        default=None,
        help="identity (OLS/LPM), logistic (binary logit) or logit (paired multinomial logit)",
    )
    est_parser.add_argument(
        "--covariance",
        type=Path,
        default=None,
        help="Coefficient covariance CSV; the draws file then holds one point fit",
    )

    # ── importance ──────────────────────────────────────────────────
    imp_parser = subparsers.add_parser("importance", help="Individual part-worth importance")
    _add_common(imp_parser)
    imp_parser.add_argument("--draws", type=Path, required=True, help="Respondent-level draws CSV")
    imp_parser.add_argument(
        "--population",
        type=Path,
        default=None,
        help="Population-level draws CSV; respondent draws are then treated as deviations",
    )

    # ── shares ──────────────────────────────────────────────────────
    share_parser = subparsers.add_parser("shares", help="Simulate choice shares for the configured market")
    _add_common(share_parser)
    share_parser.add_argument("--draws", type=Path, required=True, help="Long-format draws CSV")

    # ── bootstrap ───────────────────────────────────────────────────
    boot_parser = subparsers.add_parser(
        "bootstrap", help="Cluster-bootstrap MMs and AMCEs around a fit_predict callable",
    )
    _add_common(boot_parser)
    boot_parser.add_argument("--observations", type=Path, required=True, help="Observations CSV")
    boot_parser.add_argument(
        "--fit-predict",
        required=True,
        help="Callable as 'package.module:function' taking (observations, grid)",
    )
    boot_parser.add_argument("--n-resamples", type=int, default=None, help="Number of resamples")
    boot_parser.add_argument("--seed", type=int, default=None, help="Random seed for resampling")
    boot_parser.add_argument("--jobs", type=int, default=None, help="Parallel workers")
    boot_parser.add_argument("--executor", choices=["thread", "process"], default=None)
    boot_parser.add_argument(
        "--time-budget", type=float, default=None,
        help="Seconds after which no new resamples are started",
    )
    boot_parser.add_argument("--cache-dir", type=Path, default=None, help="Ensemble cache directory")

    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    from conjoint.errors import ConjointError
    from conjoint.logging_config import setup_logging

    setup_logging(logging.DEBUG if args.verbose else logging.INFO, args.log_file)

    if not args.config.exists():
        print(f"Error: config file not found: {args.config}", file=sys.stderr)
        sys.exit(1)

    from cli import estimate as commands

    try:
        if args.command == "grid":
            commands.run_grid(args.config, preview=args.preview)
        elif args.command == "estimate":
            commands.run_estimate(
                args.config, args.draws, link=args.link, covariance_path=args.covariance,
                alpha=args.alpha, output=args.output,
            )
        elif args.command == "importance":
            commands.run_importance(
                args.config, args.draws,
                population_path=args.population, alpha=args.alpha, output=args.output,
            )
        elif args.command == "shares":
            commands.run_shares(args.config, args.draws, alpha=args.alpha, output=args.output)
        elif args.command == "bootstrap":
            commands.run_bootstrap(
                args.config,
                args.observations,
                args.fit_predict,
                n_resamples=args.n_resamples,
                seed=args.seed,
                n_jobs=args.jobs,
                executor=args.executor,
                time_budget=args.time_budget,
                cache_dir=args.cache_dir,
                alpha=args.alpha,
                output=args.output,
            )
    except ConjointError as exc:
        logging.getLogger("conjoint").error("%s", exc)
        sys.exit(2)


if __name__ == "__main__":
    main()
