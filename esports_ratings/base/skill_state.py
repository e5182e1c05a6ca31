"""Global skill store carried between batches."""

from dataclasses import dataclass, field
from datetime import datetime
import math
from typing import Dict, Mapping, Optional, Sequence

import numpy as np
import polars as pl


@dataclass(frozen=True)
class SkillBelief:
    """Gaussian belief about a player's skill."""

    mean: float
    variance: float

    @property
    def sigma(self) -> float:
        return math.sqrt(self.variance)

    def to_dict(self) -> Dict[str, float]:
        return {"mean": self.mean, "variance": self.variance}


@dataclass
class SkillState:
    """
    Skill beliefs and last-played dates for every player seen so far.

    A batch reads priors from here and the online updater returns a new
    state; nothing else writes to it.

    Attributes:
        beliefs: Player id -> current posterior belief
        last_played: Player id -> date of the player's most recent match
        priors: Player id -> externally supplied prior (used on first sighting)
        last_date: Date of the last match folded into the state
    """

    beliefs: Dict[int, SkillBelief] = field(default_factory=dict)
    last_played: Dict[int, datetime] = field(default_factory=dict)
    priors: Dict[int, SkillBelief] = field(default_factory=dict)
    last_date: Optional[datetime] = None

    @classmethod
    def from_priors(cls, priors: Mapping[int, Sequence[float]]) -> "SkillState":
        """Create an empty state with a prior table ``{player_id: (mean, variance)}``."""
        table = {
            int(pid): SkillBelief(float(value[0]), float(value[1]))
            for pid, value in priors.items()
        }
        return cls(priors=table)

    @property
    def num_players(self) -> int:
        return len(self.beliefs)

    def belief_for(self, player_id: int, default: SkillBelief) -> SkillBelief:
        """Current belief, else supplied prior, else the default."""
        belief = self.beliefs.get(player_id)
        if belief is not None:
            return belief
        return self.priors.get(player_id, default)

    def __contains__(self, player_id: int) -> bool:
        return player_id in self.beliefs

    def to_dataframe(self) -> pl.DataFrame:
        """Convert beliefs to a Polars DataFrame sorted by player id."""
        ids = sorted(self.beliefs)
        means = np.array([self.beliefs[i].mean for i in ids], dtype=np.float64)
        variances = np.array([self.beliefs[i].variance for i in ids], dtype=np.float64)
        return pl.DataFrame({
            "player_id": np.array(ids, dtype=np.int64),
            "mean": means,
            "sigma": np.sqrt(variances),
            "variance": variances,
            "last_played": [self.last_played.get(i) for i in ids],
        })

    def clone(self) -> "SkillState":
        """Create a copy (beliefs are immutable, so the maps are copied shallowly)."""
        return SkillState(
            beliefs=dict(self.beliefs),
            last_played=dict(self.last_played),
            priors=dict(self.priors),
            last_date=self.last_date,
        )
