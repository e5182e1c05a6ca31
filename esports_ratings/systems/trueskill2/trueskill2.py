"""
TrueSkill 2 - batched Bayesian skill ratings for 5v5 team games.

Based on:
- Minka, Cleven, Zaykov, "TrueSkill 2: An improved Bayesian skill rating
  system" (2018)

Each player's skill is a chain of Gaussian nodes, one per appearance,
linked by dynamics noise and inactivity decay. Match outcomes constrain the
difference of summed team performances and optional in-match statistics
regress on each player's performance. Inference is expectation propagation
over a batch of matches; the global precisions are point-estimated inside
the sweep loop.

This implementation prioritizes efficiency through:
1. Numba JIT compilation of every message pass
2. CSR-like arena of skill chains, one node per match slot
3. Parallel outcome and chain passes via prange
"""

import logging
import math
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from ...base import RatingSystem, SkillBelief, SkillState
from ...data import TEAM_SIZE, Match, MatchDataset
from ...results.fitted_ratings import BatchHistory, FittedTrueSkill2Ratings
from .assembler import assemble_batch
from .config import PriorLike, TrueSkill2Config
from .decay import apply_batch_result
from .hyperparameters import Hyperparameters
from .inference import InferenceResult, run_inference

logger = logging.getLogger(__name__)


class TrueSkill2(RatingSystem):
    """
    TrueSkill 2 rating system with Numba acceleration.

    Skill model:
    - Skill at appearance k: s[k] = s[k-1] + offset + N(0, 1/gamma) + N(0, lapse/tau)
    - Performance: p ~ N(s, 1/beta); team performance is the sum over the roster
    - Outcome: winning team performance > losing team performance
    - Optional stats: y = max(0, x), x ~ N(L * (w_own * p + w_opp * T_opp / 5), L / v)

    beta, gamma and tau are precisions with Gamma priors, re-estimated after
    every sweep.

    Parameters:
        mu: Prior mean for unseen players (default: 1500)
        sigma: Prior std dev for unseen players (default: 250)
        beta_prior, gamma_prior, tau_prior: Gamma (shape, rate) priors
        offset: Drift per chain step (default: 0)
        grace_period: Inactivity days before decay applies (default: 45)
        damping: Weight of new performance -> skill messages (default: 0.5)
        max_iterations: Max EP sweeps per batch (default: 50)
        chain_direction: "forward" or "backward" anchoring of the prior
        priors: Optional {player_id: (mean, variance)} table for first sightings

    Example:
        >>> ts2 = TrueSkill2(batch_size=5000)
        >>> ts2.fit(dataset)
        >>> fitted = ts2.get_fitted_ratings()
        >>> print(fitted.conservative_top(10))
        >>> print(fitted.predict([1, 2, 3, 4, 5], [6, 7, 8, 9, 10]))
    """

    def __init__(
        self,
        mu: float = 1500.0,
        sigma: float = 250.0,
        beta_prior: PriorLike = (2.0, 250.0 ** 2),
        gamma_prior: PriorLike = (2.0, 25.0 ** 2),
        tau_prior: PriorLike = (2.0, 50.0 ** 2),
        offset: float = 0.0,
        grace_period: float = 45.0,
        damping: float = 0.5,
        max_iterations: int = 50,
        convergence_threshold: float = 1e-3,
        time_budget: Optional[float] = None,
        chain_direction: str = "forward",
        estimate_beta: bool = True,
        estimate_gamma: bool = True,
        estimate_tau: bool = True,
        warm_start_hyperparameters: bool = False,
        stat_names: Sequence[str] = (),
        negative_stats: Sequence[str] = ("deaths",),
        use_stats: bool = True,
        on_error: str = "skip",
        keep_history: bool = False,
        batch_size: Optional[int] = None,
        end_date=None,
        exclude_match_ids: Sequence[int] = (),
        priors: Optional[Mapping[int, Sequence[float]]] = None,
        config: Optional[TrueSkill2Config] = None,
    ):
        self.config = config or TrueSkill2Config(
            mu=mu,
            sigma=sigma,
            beta_prior=beta_prior,
            gamma_prior=gamma_prior,
            tau_prior=tau_prior,
            offset=offset,
            grace_period=grace_period,
            damping=damping,
            max_iterations=max_iterations,
            convergence_threshold=convergence_threshold,
            time_budget=time_budget,
            chain_direction=chain_direction,
            estimate_beta=estimate_beta,
            estimate_gamma=estimate_gamma,
            estimate_tau=estimate_tau,
            warm_start_hyperparameters=warm_start_hyperparameters,
            stat_names=tuple(stat_names),
            negative_stats=tuple(negative_stats),
            use_stats=use_stats,
            on_error=on_error,
            keep_history=keep_history,
            batch_size=batch_size,
            end_date=end_date,
            exclude_match_ids=tuple(exclude_match_ids),
        )

        self._hyperparameters: Optional[Hyperparameters] = None
        self._posteriors: Dict[str, object] = {}
        self._history: List[BatchHistory] = []
        self._last_result: Optional[InferenceResult] = None
        self._player_names: Optional[Dict[int, str]] = None

        state = SkillState.from_priors(priors) if priors is not None else None
        super().__init__(state=state)

    @property
    def hyperparameters(self) -> Hyperparameters:
        """Current hyperparameter estimates (prior means before any batch)."""
        if self._hyperparameters is None:
            return Hyperparameters.initial(self.config)
        return self._hyperparameters

    @property
    def posteriors(self) -> Dict[str, object]:
        return dict(self._posteriors)

    @property
    def last_result(self) -> Optional[InferenceResult]:
        """Inference result of the most recent batch."""
        return self._last_result

    def _process_batch(self, matches: Sequence[Match]) -> None:
        """Assemble, infer and fold one batch into the skill state."""
        config = self.config
        batch = assemble_batch(
            matches,
            self._state,
            default_mu=config.mu,
            default_sigma=config.sigma,
            team_size=TEAM_SIZE,
            num_stats=config.num_stats,
            on_error=config.on_error,
        )
        if batch.num_matches == 0:
            logger.info("Batch of %d matches had nothing to fit", len(matches))
            return

        if config.warm_start_hyperparameters and self._hyperparameters is not None:
            hyper = self._hyperparameters
        else:
            hyper = Hyperparameters.initial(config)

        result = run_inference(batch, hyper, config)
        self._state = apply_batch_result(
            self._state, batch, result, result.hyperparameters,
            grace_period=config.grace_period,
            reverse=config.reverse,
        )
        self._hyperparameters = result.hyperparameters
        self._posteriors = result.posteriors
        self._last_result = result
        self._num_matches_fitted += batch.num_matches
        self._num_batches += 1

        if config.keep_history:
            self._history.append(self._batch_history(batch, result))

        logger.info(
            "Batch %d (%s to %s): %d matches, %d players, %d sweeps (converged=%s), beta=%.3e",
            self._num_batches, batch.first_date.date(), batch.last_date.date(),
            batch.num_matches, batch.num_players,
            result.num_sweeps, result.converged, result.hyperparameters.beta,
        )

    @staticmethod
    def _batch_history(batch, result: InferenceResult) -> BatchHistory:
        slots = batch.slot_node.ravel()
        n_slots = batch.slot_node.shape[1]
        node_match_ids = np.empty(batch.num_nodes, dtype=np.int64)
        node_match_ids[slots] = np.repeat(batch.match_ids, n_slots)
        match_index = np.empty(batch.num_nodes, dtype=np.int64)
        match_index[slots] = np.repeat(np.arange(batch.num_matches), n_slots)
        return BatchHistory(
            player_ids=batch.player_ids.copy(),
            player_offsets=batch.player_offsets.copy(),
            node_mu=result.node_mu.copy(),
            node_var=result.node_var.copy(),
            node_match_ids=node_match_ids,
            node_dates=[batch.match_dates[m] for m in match_index],
        )

    def fit(
        self,
        dataset: MatchDataset,
        end_date=None,
        player_names: Optional[Dict[int, str]] = None,
    ) -> "TrueSkill2":
        """
        Fit TrueSkill 2 on a dataset, one batch of ``batch_size`` matches at a time.

        Args:
            dataset: Match dataset to fit on
            end_date: Last date to include (inclusive); overrides the config
            player_names: Optional mapping of player_id -> name

        Returns:
            self (for method chaining)
        """
        self._player_names = player_names
        if self.config.use_stats and not self.config.stat_names and dataset.stat_names:
            self.config.stat_names = tuple(dataset.stat_names)

        return super().fit(
            dataset,
            end_date=end_date if end_date is not None else self.config.end_date,
            batch_size=self.config.batch_size,
            exclude_match_ids=self.config.exclude_match_ids,
        )

    def get_rating(self, player_id: int) -> SkillBelief:
        """Current belief for a player (their prior if never seen)."""
        default = SkillBelief(self.config.mu, self.config.sigma ** 2)
        return self._state.belief_for(int(player_id), default)

    def predict_proba(self, team1: Sequence[int], team2: Sequence[int]) -> float:
        """
        Predict probability that team1 beats team2.

        P = Phi((sum mu1 - sum mu2) / sqrt(sum var1 + sum var2 + (|team1| + |team2|) / beta))
        """
        if not self._fitted:
            raise ValueError("Model not fitted. Call fit() first.")
        mu1, var1 = self._team_moments(team1)
        mu2, var2 = self._team_moments(team2)
        c = math.sqrt(var1 + var2 + (len(team1) + len(team2)) / self.hyperparameters.beta)
        t = (mu1 - mu2) / c
        return 0.5 * math.erfc(-t / math.sqrt(2.0))

    def _team_moments(self, team: Sequence[int]) -> Tuple[float, float]:
        mu, var = 0.0, 0.0
        for pid in team:
            belief = self.get_rating(pid)
            mu += belief.mean
            var += belief.variance
        return mu, var

    def get_fitted_ratings(self) -> FittedTrueSkill2Ratings:
        """
        Get a queryable fitted ratings object.

        Returns:
            FittedTrueSkill2Ratings with methods for querying results
        """
        if not self._fitted:
            raise ValueError("Model not fitted. Call fit() first.")

        ids = sorted(self._state.beliefs)
        hyper = self.hyperparameters
        return FittedTrueSkill2Ratings(
            player_ids=np.array(ids, dtype=np.int64),
            mean=np.array([self._state.beliefs[i].mean for i in ids], dtype=np.float64),
            variance=np.array([self._state.beliefs[i].variance for i in ids], dtype=np.float64),
            beta=hyper.beta,
            gamma=hyper.gamma,
            tau=hyper.tau,
            team_size=TEAM_SIZE,
            default_mu=self.config.mu,
            default_sigma=self.config.sigma,
            num_matches_fitted=self._num_matches_fitted,
            num_batches=self._num_batches,
            last_date=self._state.last_date,
            last_played=dict(self._state.last_played),
            posteriors=dict(self._posteriors),
            player_names=self._player_names,
            history=list(self._history) if self.config.keep_history else None,
        )

    def get_rating_history(self, player_id: int) -> Optional[Dict]:
        """Per-appearance posteriors of a player (requires keep_history=True)."""
        if not self._history:
            return None
        return self.get_fitted_ratings().get_history(player_id)

    def reset(self) -> "TrueSkill2":
        """Reset the rating system."""
        self._hyperparameters = None
        self._posteriors = {}
        self._history = []
        self._last_result = None
        return super().reset()

    def __repr__(self) -> str:
        status = "fitted" if self._fitted else "not fitted"
        hyper = self.hyperparameters
        return (
            f"TrueSkill2(mu={self.config.mu:.1f}, sigma={self.config.sigma:.1f}, "
            f"beta={hyper.beta:.3e}, gamma={hyper.gamma:.3e}, tau={hyper.tau:.3e}, "
            f"players={self.num_players}, {status})"
        )
