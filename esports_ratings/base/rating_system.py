"""Abstract base class for batched rating systems."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, Optional, Sequence

from ..data import Match, MatchDataset
from .skill_state import SkillState


class RatingSystem(ABC):
    """
    Abstract base class for rating systems fed by batches of matches.

    Subclasses must implement:
    - _process_batch(): Fold one batch of matches into the skill state
    - predict_proba(): Predict win probability for one roster against another

    The base class provides:
    - fit(): Fit the model on a dataset, batch by batch
    - update(): Incremental update with the next batch of matches
    - reset(): Reset to initial state
    - get_ratings(): Get a copy of the current skill state
    """

    def __init__(self, state: Optional[SkillState] = None):
        """
        Initialize rating system.

        Args:
            state: Skill store to start from (empty if None)
        """
        self._initial_state = state.clone() if state is not None else SkillState()
        self._state = self._initial_state.clone()
        self._num_matches_fitted: int = 0
        self._num_batches: int = 0
        self._fitted: bool = False

    @property
    def num_players(self) -> int:
        """Number of players with a belief."""
        return self._state.num_players

    @property
    def is_fitted(self) -> bool:
        """Whether the model has been fitted."""
        return self._fitted

    @property
    def last_date(self) -> Optional[datetime]:
        """Date of the last match processed."""
        return self._state.last_date

    @abstractmethod
    def _process_batch(self, matches: Sequence[Match]) -> None:
        """
        Run inference on one batch and update ``self._state``.

        Args:
            matches: Matches in chronological order
        """
        pass

    @abstractmethod
    def predict_proba(self, team1: Sequence[int], team2: Sequence[int]) -> float:
        """
        Predict probability that team1 beats team2.

        Args:
            team1: Player ids of the first roster
            team2: Player ids of the second roster

        Returns:
            Probability that team1 wins
        """
        pass

    def fit(
        self,
        dataset: MatchDataset,
        end_date=None,
        batch_size: Optional[int] = None,
        exclude_match_ids: Iterable[int] = (),
    ) -> "RatingSystem":
        """
        Fit the rating system on a dataset.

        Args:
            dataset: Match dataset to fit on
            end_date: Last date to include (inclusive). If None, uses all data.
            batch_size: Matches per batch (None = everything in one batch)
            exclude_match_ids: Matches to leave out

        Returns:
            self (for method chaining)
        """
        if end_date is not None:
            dataset = dataset.filter_dates(end_date=end_date)
        exclude_match_ids = list(exclude_match_ids)
        if exclude_match_ids:
            dataset = dataset.exclude(exclude_match_ids)

        for matches in dataset.iter_batches(batch_size):
            self._process_batch(matches)

        self._fitted = True
        return self

    def update(self, matches: Sequence[Match]) -> "RatingSystem":
        """
        Incrementally update ratings with the next batch of matches.

        Args:
            matches: New matches, all later than those already processed

        Returns:
            self (for method chaining)
        """
        if not self._fitted:
            raise ValueError("Model must be fitted before updating. Call fit() first.")
        ordered = sorted(matches, key=lambda m: (m.date, m.match_id))
        if ordered:
            self._process_batch(ordered)
        return self

    def reset(self) -> "RatingSystem":
        """
        Reset the rating system to initial state.

        Returns:
            self (for method chaining)
        """
        self._state = self._initial_state.clone()
        self._num_matches_fitted = 0
        self._num_batches = 0
        self._fitted = False
        return self

    def get_ratings(self) -> SkillState:
        """
        Get current skill state.

        Returns:
            Copy of the SkillState
        """
        if not self._fitted:
            raise ValueError("No ratings available. Call fit() first.")
        return self._state.clone()

    def __repr__(self) -> str:
        status = "fitted" if self._fitted else "not fitted"
        return f"{self.__class__.__name__}(players={self.num_players}, {status})"
