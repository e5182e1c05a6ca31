"""
Command-line interface for TrueSkill 2 ratings.

Usage:
    python -m esports_ratings fit <matches.json|parquet> [options]
    python -m esports_ratings top <matches.json|parquet> [options]
    python -m esports_ratings predict <matches> --team1 1 2 3 4 5 --team2 6 7 8 9 10
    python -m esports_ratings matchup <matches> --team1 ... --team2 ...
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Dict, Optional

import polars as pl


def load_player_names(path: Optional[str]) -> Optional[Dict[int, str]]:
    """Load player names from a JSON object or a parquet file."""
    if path is None:
        return None
    if Path(path).suffix == ".json":
        with open(path) as f:
            return {int(k): str(v) for k, v in json.load(f).items()}
    df = pl.read_parquet(path)
    if "player_id" in df.columns and "name" in df.columns:
        return dict(zip(df["player_id"].to_list(), df["name"].to_list()))
    return None


def load_dataset(path: str, stat_columns=None):
    """Load matches from JSON records or a long-format parquet file."""
    from ..data import MatchDataset

    if Path(path).suffix == ".json":
        return MatchDataset.from_json(path)
    return MatchDataset.from_parquet(path, stat_columns=stat_columns)


def build_system(args):
    """Create a TrueSkill2 instance from parsed arguments."""
    from ..data import load_priors
    from ..systems import TrueSkill2

    priors = load_priors(args.priors) if args.priors else None
    return TrueSkill2(
        mu=args.mu,
        sigma=args.sigma,
        beta_prior=(args.beta_shape, args.beta_rate),
        gamma_prior=(args.gamma_shape, args.gamma_rate),
        tau_prior=(args.tau_shape, args.tau_rate),
        offset=args.offset,
        grace_period=args.grace_period,
        damping=args.damping,
        max_iterations=args.iterations,
        chain_direction="backward" if args.reverse else "forward",
        warm_start_hyperparameters=args.warm_start,
        stat_names=tuple(args.stats or ()),
        use_stats=not args.no_stats,
        keep_history=getattr(args, "history", False),
        batch_size=args.batch_size,
        end_date=args.end_date,
        priors=priors,
    )


def fit_from_args(args):
    """Load data, fit, and return the fitted ratings."""
    dataset = load_dataset(args.data, stat_columns=args.stats)
    player_names = load_player_names(args.players)
    print(f"Loaded {dataset}")

    system = build_system(args)
    print(f"Fitting {system.__class__.__name__}...")
    system.fit(dataset, player_names=player_names)
    return system.get_fitted_ratings()


def cmd_fit(args):
    """Fit TrueSkill 2 and optionally save results."""
    fitted = fit_from_args(args)
    print(f"\n{fitted}")

    if args.output:
        fitted.save(args.output, include_history=args.history)
        print(f"\nSaved to {args.output}")

    if args.parquet:
        fitted.save_parquet(args.parquet, include_rank=True)
        print(f"Saved table to {args.parquet}")

    if args.top:
        k = args.k if args.k is not None else fitted.default_k()
        print(f"\nTop {args.top} players (mean - {k:g} * sigma):")
        print(fitted.conservative_top(args.top, k=args.k))

    return 0


def cmd_top(args):
    """Show top N players."""
    fitted = fit_from_args(args)
    print(f"Top {args.n} players:\n")
    if args.conservative:
        print(fitted.conservative_top(args.n, k=args.k))
    else:
        print(fitted.top(args.n))
    return 0


def cmd_predict(args):
    """Predict the outcome of two rosters."""
    fitted = fit_from_args(args)
    prob = fitted.predict(args.team1, args.team2)

    names1 = ", ".join(fitted.get_name(p) for p in args.team1)
    names2 = ", ".join(fitted.get_name(p) for p in args.team2)
    print("\nMatchup Prediction (TrueSkill 2):")
    print(f"  [{names1}] vs [{names2}]")
    print(f"  P(team 1 wins) = {prob:.1%}")
    print(f"  P(team 2 wins) = {1 - prob:.1%}")
    return 0


def cmd_matchup(args):
    """Detailed matchup analysis."""
    fitted = fit_from_args(args)
    print("\nMatchup Analysis (TrueSkill 2):\n")
    print(fitted.matchup(args.team1, args.team2))
    return 0


def main(argv=None):
    """Main entry point for CLI."""
    parser = argparse.ArgumentParser(
        description="TrueSkill 2 esports ratings CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--log-level", default="WARNING",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Logging level (default: WARNING)")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Common arguments
    def add_common_args(p):
        p.add_argument("data", help="Path to matches (.json records or long .parquet)")
        p.add_argument("--players", "-p", help="Player names (.json {id: name} or .parquet)")
        p.add_argument("--priors", help="Prior table JSON {player_id: [mean, variance]}")
        p.add_argument("--stats", nargs="*", help="Stat columns to use (parquet input)")
        p.add_argument("--no-stats", action="store_true", help="Ignore stat factors")
        p.add_argument("--mu", type=float, default=1500.0, help="Default prior mean (default: 1500)")
        p.add_argument("--sigma", type=float, default=250.0, help="Default prior sd (default: 250)")
        p.add_argument("--beta-shape", type=float, default=2.0)
        p.add_argument("--beta-rate", type=float, default=250.0 ** 2)
        p.add_argument("--gamma-shape", type=float, default=2.0)
        p.add_argument("--gamma-rate", type=float, default=25.0 ** 2)
        p.add_argument("--tau-shape", type=float, default=2.0)
        p.add_argument("--tau-rate", type=float, default=50.0 ** 2)
        p.add_argument("--offset", type=float, default=0.0, help="Drift per chain step")
        p.add_argument("--grace-period", type=float, default=45.0,
                       help="Days of inactivity before decay (default: 45)")
        p.add_argument("--damping", "-d", type=float, default=0.5,
                       help="Message damping in (0, 1] (default: 0.5)")
        p.add_argument("--iterations", "-i", type=int, default=50,
                       help="Max EP sweeps per batch (default: 50)")
        p.add_argument("--reverse", action="store_true",
                       help="Anchor priors at the latest appearance")
        p.add_argument("--warm-start", action="store_true",
                       help="Carry hyperparameter estimates across batches")
        p.add_argument("--batch-size", "-b", type=int, default=None,
                       help="Matches per batch (default: all in one batch)")
        p.add_argument("--end-date", help="Ignore matches after this ISO date")

    # fit command
    fit_parser = subparsers.add_parser("fit", help="Fit ratings")
    add_common_args(fit_parser)
    fit_parser.add_argument("--output", "-o", help="Save fitted ratings to JSON")
    fit_parser.add_argument("--parquet", help="Save the ratings table to parquet")
    fit_parser.add_argument("--history", action="store_true",
                            help="Include per-batch skill history in the JSON output")
    fit_parser.add_argument("--top", "-t", type=int, default=10,
                            help="Show top N players (default: 10)")
    fit_parser.add_argument("-k", type=float, default=None,
                            help="Std devs subtracted for conservative ranking (default: mu / sigma)")

    # top command
    top_parser = subparsers.add_parser("top", help="Show top N players")
    add_common_args(top_parser)
    top_parser.add_argument("-n", type=int, default=10, help="Number of players")
    top_parser.add_argument("--conservative", "-c", action="store_true",
                            help="Rank by mean - k * sigma")
    top_parser.add_argument("-k", type=float, default=None,
                            help="Std devs subtracted (default: mu / sigma)")

    # predict / matchup commands
    for name, help_text in (("predict", "Predict matchup outcome"),
                            ("matchup", "Detailed matchup analysis")):
        p = subparsers.add_parser(name, help=help_text)
        add_common_args(p)
        p.add_argument("--team1", type=int, nargs="+", required=True, help="Roster 1 player ids")
        p.add_argument("--team2", type=int, nargs="+", required=True, help="Roster 2 player ids")

    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.command is None:
        parser.print_help()
        return 1

    commands = {
        "fit": cmd_fit,
        "top": cmd_top,
        "predict": cmd_predict,
        "matchup": cmd_matchup,
    }

    return commands[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
