"""Data loading and types for match records."""

from .dataset import MatchDataset, load_priors
from .types import TEAM_SIZE, Match, days_between, to_datetime

__all__ = ["MatchDataset", "load_priors", "Match", "TEAM_SIZE", "days_between", "to_datetime"]
