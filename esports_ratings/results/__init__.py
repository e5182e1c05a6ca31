"""Results and fitted model classes."""

from .fitted_ratings import BatchHistory, FittedTrueSkill2Ratings

__all__ = ["BatchHistory", "FittedTrueSkill2Ratings"]
