"""
Esports Ratings - batched TrueSkill 2 skill ratings for 5v5 team games.

This package provides a Numba-accelerated implementation of a TrueSkill 2
style rating system: per-player skill chains with inactivity decay, team
outcome factors, optional in-match stat regression, expectation propagation
over batches of matches and point-estimated global hyperparameters.

Quick Start:
    from esports_ratings import MatchDataset, TrueSkill2

    # Load data
    dataset = MatchDataset.from_json("matches.json")

    # Fit in batches of 5000 matches
    ts2 = TrueSkill2(batch_size=5000)
    ts2.fit(dataset)

    # Get queryable fitted ratings
    fitted = ts2.get_fitted_ratings()
    print(fitted.conservative_top(10))  # Top 10 by mean - 3*sigma
    print(fitted.predict([1, 2, 3, 4, 5], [6, 7, 8, 9, 10]))

Command-line interface:
    python -m esports_ratings fit matches.json --top 20 --output ratings.json
    python -m esports_ratings predict matches.json --team1 1 2 3 4 5 --team2 6 7 8 9 10
"""

from .data import TEAM_SIZE, Match, MatchDataset, load_priors
from .base import RatingSystem, SkillBelief, SkillState
from .systems import (
    TrueSkill2,
    TrueSkill2Config,
    AssembledBatch,
    MalformedMatchError,
    GammaPrior,
    GammaPosterior,
    GaussianPosterior,
    Hyperparameters,
    InferenceResult,
    assemble_batch,
    apply_batch_result,
    decay_variance,
    run_inference,
)
from .results import BatchHistory, FittedTrueSkill2Ratings

__version__ = "0.1.0"

__all__ = [
    # Data
    "Match",
    "MatchDataset",
    "TEAM_SIZE",
    "load_priors",
    # Base
    "RatingSystem",
    "SkillBelief",
    "SkillState",
    # System
    "TrueSkill2",
    "TrueSkill2Config",
    "AssembledBatch",
    "MalformedMatchError",
    "GammaPrior",
    "GammaPosterior",
    "GaussianPosterior",
    "Hyperparameters",
    "InferenceResult",
    "assemble_batch",
    "apply_batch_result",
    "decay_variance",
    "run_inference",
    # Fitted ratings (queryable results)
    "BatchHistory",
    "FittedTrueSkill2Ratings",
]
