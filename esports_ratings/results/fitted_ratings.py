"""
Fitted ratings objects for querying without refitting.

These classes wrap fitted rating system results and provide
rich query interfaces for analysis.
"""

from dataclasses import dataclass, field
from datetime import datetime
import json
import math
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import polars as pl


def _compute_ranks(values: np.ndarray) -> np.ndarray:
    """
    Compute ranks for all players efficiently in O(n log n).

    Returns array where ranks[i] = rank of entry i (1 = highest).
    """
    n = len(values)
    sorted_indices = np.argsort(-values, kind="stable")
    ranks = np.empty(n, dtype=np.int32)
    ranks[sorted_indices] = np.arange(1, n + 1)
    return ranks


def _get_names_vectorized(
    player_ids: np.ndarray,
    player_names: Optional[Dict[int, str]],
) -> List[str]:
    """Get names for player ids, with fast path when no names dict."""
    if player_names is None:
        return [f"Player_{i}" for i in player_ids]
    return [player_names.get(int(i), f"Player_{i}") for i in player_ids]


def _posterior_to_dict(posterior) -> Dict[str, float]:
    return posterior.to_dict() if hasattr(posterior, "to_dict") else dict(posterior)


@dataclass
class BatchHistory:
    """
    Per-node posteriors of one batch.

    Node ``player_offsets[i] + k`` is batch player i's k-th appearance.
    """

    player_ids: np.ndarray  # (P,) batch index -> global id
    player_offsets: np.ndarray  # (P + 1,)
    node_mu: np.ndarray  # (N,)
    node_var: np.ndarray  # (N,)
    node_match_ids: np.ndarray  # (N,)
    node_dates: List[datetime] = field(default_factory=list)

    def player_nodes(self, player_id: int) -> Optional[slice]:
        hits = np.nonzero(self.player_ids == player_id)[0]
        if len(hits) == 0:
            return None
        i = int(hits[0])
        return slice(int(self.player_offsets[i]), int(self.player_offsets[i + 1]))

    def to_dict(self) -> Dict:
        """Skills per batch index plus the batch-index -> player id map."""
        skills = []
        for i in range(len(self.player_ids)):
            start, end = self.player_offsets[i], self.player_offsets[i + 1]
            skills.append([
                {"mean": float(self.node_mu[n]), "variance": float(self.node_var[n])}
                for n in range(start, end)
            ])
        return {
            "skills": skills,
            "id_map": {str(i): int(pid) for i, pid in enumerate(self.player_ids)},
            "match_ids": [
                self.node_match_ids[self.player_offsets[i]:self.player_offsets[i + 1]].tolist()
                for i in range(len(self.player_ids))
            ],
        }


@dataclass
class FittedTrueSkill2Ratings:
    """
    Queryable fitted TrueSkill 2 ratings.

    Each player's skill is a Gaussian belief N(mean, variance) on the rating
    scale (1500 = default prior mean). Conservative rating (mean - k*sigma)
    ranks players by a lower bound on skill.

    Attributes:
        player_ids: Global ids of all rated players (sorted)
        mean: Skill means, aligned with player_ids
        variance: Skill variances, aligned with player_ids
        beta: Performance precision (per-player performance noise is 1/beta)
        team_size: Players per roster
        posteriors: Hyperparameter posteriors of the last batch
    """

    player_ids: np.ndarray
    mean: np.ndarray
    variance: np.ndarray
    beta: float
    gamma: float = 0.0
    tau: float = 0.0
    team_size: int = 5
    default_mu: float = 1500.0
    default_sigma: float = 250.0
    num_matches_fitted: int = 0
    num_batches: int = 0
    last_date: Optional[datetime] = None
    last_played: Dict[int, datetime] = field(default_factory=dict)
    posteriors: Dict[str, object] = field(default_factory=dict)
    player_names: Optional[Dict[int, str]] = None
    history: Optional[List[BatchHistory]] = None

    # Cached
    _ranks: Optional[np.ndarray] = field(default=None, repr=False)
    _index: Optional[Dict[int, int]] = field(default=None, repr=False)

    def __post_init__(self):
        """Ensure arrays are contiguous."""
        self.player_ids = np.ascontiguousarray(self.player_ids, dtype=np.int64)
        self.mean = np.ascontiguousarray(self.mean, dtype=np.float64)
        self.variance = np.ascontiguousarray(self.variance, dtype=np.float64)
        self._ranks = None
        self._index = {int(pid): i for i, pid in enumerate(self.player_ids)}

    @property
    def num_players(self) -> int:
        return len(self.player_ids)

    @property
    def sigma(self) -> np.ndarray:
        return np.sqrt(self.variance)

    @property
    def ranks(self) -> np.ndarray:
        """Lazily computed ranks by mean (1 = highest), aligned with player_ids."""
        if self._ranks is None:
            self._ranks = _compute_ranks(self.mean)
        return self._ranks

    def default_k(self) -> float:
        """Std devs subtracted for conservative ranking: default_mu / default_sigma."""
        return self.default_mu / self.default_sigma

    def conservative_rating(self, k: Optional[float] = None) -> np.ndarray:
        """
        Compute conservative ratings: mean - k*sigma.

        Args:
            k: Number of standard deviations (default mu / sigma of the prior,
               6 with the 1500 / 250 defaults)
        """
        if k is None:
            k = self.default_k()
        return self.mean - k * self.sigma

    def _belief(self, player_id: int) -> Tuple[float, float]:
        i = self._index.get(int(player_id))
        if i is None:
            return self.default_mu, self.default_sigma ** 2
        return float(self.mean[i]), float(self.variance[i])

    def get_rating(self, player_id: int) -> Tuple[float, float]:
        """Get (mean, sigma) for a player (the default prior if unseen)."""
        mu, var = self._belief(player_id)
        return mu, math.sqrt(var)

    def get_name(self, player_id: int) -> str:
        if self.player_names and player_id in self.player_names:
            return self.player_names[player_id]
        return f"Player_{player_id}"

    def rank(self, player_id: int) -> int:
        """Get rank of a specific player by mean (1 = highest)."""
        i = self._index.get(int(player_id))
        if i is None:
            raise ValueError(f"Player {player_id} has no fitted rating")
        return int(self.ranks[i])

    def predict(self, team1: Sequence[int], team2: Sequence[int]) -> float:
        """
        Predict probability that team1 beats team2.

        P(team1 wins) = Phi((sum mu1 - sum mu2) / sqrt(sum var + 2 * T / beta))
        """
        mu1, var1 = self._team_moments(team1)
        mu2, var2 = self._team_moments(team2)
        c = math.sqrt(var1 + var2 + (len(team1) + len(team2)) / self.beta)
        t = (mu1 - mu2) / c
        return 0.5 * math.erfc(-t / math.sqrt(2.0))

    def _team_moments(self, team: Sequence[int]) -> Tuple[float, float]:
        mu, var = 0.0, 0.0
        for pid in team:
            m, v = self._belief(pid)
            mu += m
            var += v
        return mu, var

    def top(self, n: int = 10) -> pl.DataFrame:
        """Get top N rated players by mean."""
        indices = np.argsort(-self.mean, kind="stable")[:n]
        return self._indices_to_dataframe(indices)

    def conservative_top(self, n: int = 10, k: Optional[float] = None) -> pl.DataFrame:
        """
        Get top N players by conservative rating (mean - k*sigma).

        More appropriate for ranking when confidence matters.
        """
        if k is None:
            k = self.default_k()
        conservative = self.conservative_rating(k)
        indices = np.argsort(-conservative, kind="stable")[:n]
        return self._indices_to_dataframe(indices, include_conservative=True, k=k)

    def bottom(self, n: int = 10) -> pl.DataFrame:
        """Get bottom N rated players."""
        indices = np.argsort(self.mean, kind="stable")[:n]
        return self._indices_to_dataframe(indices)

    def _indices_to_dataframe(
        self,
        indices: np.ndarray,
        include_conservative: bool = False,
        k: Optional[float] = None,
    ) -> pl.DataFrame:
        ids = self.player_ids[indices]
        data = {
            "rank": self.ranks[indices],
            "player_id": ids,
            "name": _get_names_vectorized(ids, self.player_names),
            "mean": self.mean[indices],
            "sigma": self.sigma[indices],
        }
        if include_conservative:
            data["conservative"] = self.conservative_rating(k)[indices]
        return pl.DataFrame(data)

    def matchup(self, team1: Sequence[int], team2: Sequence[int]) -> pl.DataFrame:
        """Get a per-player breakdown of a roster matchup."""
        p1_wins = self.predict(team1, team2)
        rows = []
        for side, team, prob in ((1, team1, p1_wins), (2, team2, 1.0 - p1_wins)):
            for pid in team:
                mu, sigma = self.get_rating(pid)
                rows.append({
                    "team": side,
                    "player_id": int(pid),
                    "name": self.get_name(pid),
                    "mean": mu,
                    "sigma": sigma,
                    "team_win_prob": prob,
                })
        return pl.DataFrame(rows)

    def get_history(self, player_id: int) -> Optional[Dict]:
        """Per-appearance posteriors of a player across all kept batches."""
        if not self.history:
            return None
        match_ids, dates, means, variances = [], [], [], []
        for batch in self.history:
            nodes = batch.player_nodes(player_id)
            if nodes is None:
                continue
            match_ids.extend(batch.node_match_ids[nodes].tolist())
            if batch.node_dates:
                dates.extend(batch.node_dates[nodes])
            means.extend(batch.node_mu[nodes].tolist())
            variances.extend(batch.node_var[nodes].tolist())
        if not match_ids:
            return None
        return {"match_ids": match_ids, "dates": dates, "means": means, "variances": variances}

    def to_dataframe(self, include_rank: bool = True) -> pl.DataFrame:
        """Export all ratings to a DataFrame sorted by mean (descending)."""
        data = {
            "player_id": self.player_ids,
            "mean": self.mean,
            "sigma": self.sigma,
            "variance": self.variance,
            "conservative": self.conservative_rating(),
        }

        if include_rank:
            data["rank"] = self.ranks

        if self.player_names:
            data["name"] = _get_names_vectorized(self.player_ids, self.player_names)

        return pl.DataFrame(data).sort("mean", descending=True)

    def to_dict(self, include_history: bool = False) -> Dict:
        """
        Export to a JSON-serialisable dictionary.

        ``ratings`` maps player id -> {"mean", "variance"}; ``posteriors``
        maps hyperparameter name -> posterior parameters.
        """
        result = {
            "ratings": {
                str(int(pid)): {"mean": float(m), "variance": float(v)}
                for pid, m, v in zip(self.player_ids, self.mean, self.variance)
            },
            "posteriors": {name: _posterior_to_dict(p) for name, p in self.posteriors.items()},
            "beta": self.beta,
            "gamma": self.gamma,
            "tau": self.tau,
            "num_matches_fitted": self.num_matches_fitted,
            "num_batches": self.num_batches,
            "default_mu": self.default_mu,
            "default_sigma": self.default_sigma,
            "team_size": self.team_size,
            "last_date": self.last_date.isoformat() if self.last_date else None,
            "last_played": {str(pid): d.isoformat() for pid, d in self.last_played.items()},
        }
        if include_history and self.history is not None:
            result["history"] = {str(b): h.to_dict() for b, h in enumerate(self.history)}
        return result

    def save(self, path: str, include_history: bool = False) -> None:
        """Save fitted ratings to JSON."""
        with open(path, "w") as f:
            json.dump(self.to_dict(include_history=include_history), f, indent=2)

    def save_parquet(self, path: str, include_rank: bool = False) -> None:
        """Save fitted ratings to a parquet file."""
        self.to_dataframe(include_rank=include_rank).write_parquet(path)

    @classmethod
    def load(cls, path: str) -> "FittedTrueSkill2Ratings":
        """Load fitted ratings saved with ``save``."""
        with open(path) as f:
            payload = json.load(f)
        ratings = payload["ratings"]
        ids = sorted(int(pid) for pid in ratings)
        last_date = payload.get("last_date")
        return cls(
            player_ids=np.array(ids, dtype=np.int64),
            mean=np.array([ratings[str(pid)]["mean"] for pid in ids]),
            variance=np.array([ratings[str(pid)]["variance"] for pid in ids]),
            beta=payload["beta"],
            gamma=payload.get("gamma", 0.0),
            tau=payload.get("tau", 0.0),
            team_size=payload.get("team_size", 5),
            default_mu=payload.get("default_mu", 1500.0),
            default_sigma=payload.get("default_sigma", 250.0),
            num_matches_fitted=payload.get("num_matches_fitted", 0),
            num_batches=payload.get("num_batches", 0),
            last_date=datetime.fromisoformat(last_date) if last_date else None,
            last_played={
                int(pid): datetime.fromisoformat(d)
                for pid, d in payload.get("last_played", {}).items()
            },
            posteriors=payload.get("posteriors", {}),
        )

    def __repr__(self) -> str:
        return (
            f"FittedTrueSkill2Ratings(players={self.num_players}, "
            f"matches={self.num_matches_fitted}, beta={self.beta:.3e})"
        )

    def __str__(self) -> str:
        lines = [
            "Fitted TrueSkill 2 Ratings",
            f"  Players: {self.num_players:,}",
            f"  Matches fitted: {self.num_matches_fitted:,}",
            f"  Batches: {self.num_batches:,}",
            f"  Performance sd: {1.0 / math.sqrt(self.beta):.1f}",
        ]
        if self.num_players:
            lines.append(f"  Mean range: {self.mean.min():.1f} - {self.mean.max():.1f}")
            lines.append(f"  Mean sigma: {self.sigma.mean():.2f}")
        return "\n".join(lines)
