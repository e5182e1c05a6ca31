"""Configuration for the TrueSkill 2 rating system."""

from dataclasses import dataclass, field
from typing import Optional, Tuple, Union

from .hyperparameters import GammaPrior

PriorLike = Union[GammaPrior, Tuple[float, float]]

CHAIN_DIRECTIONS = ("forward", "backward")
ON_ERROR_MODES = ("skip", "raise")


@dataclass
class TrueSkill2Config:
    """Configuration for TrueSkill 2."""

    mu: float = 1500.0  # Default prior mean for unseen players
    sigma: float = 250.0  # Default prior std dev for unseen players
    beta_prior: PriorLike = (2.0, 250.0 ** 2)  # Gamma(shape, rate) on performance precision
    gamma_prior: PriorLike = (2.0, 25.0 ** 2)  # Gamma(shape, rate) on skill-dynamics precision
    tau_prior: PriorLike = (2.0, 50.0 ** 2)  # Gamma(shape, rate) on per-day decay precision
    offset: float = 0.0  # Drift added per chain step
    grace_period: float = 45.0  # Days of inactivity before decay applies
    damping: float = 0.5  # Weight of the new message (1 = undamped)
    max_iterations: int = 50  # Max EP sweeps per batch
    convergence_threshold: float = 1e-3  # Max change in any marginal mean / std dev
    time_budget: Optional[float] = None  # Wall-clock seconds per batch (None = unbounded)
    chain_direction: str = "forward"  # "forward" anchors the prior at the first node
    estimate_beta: bool = True
    estimate_gamma: bool = True
    estimate_tau: bool = True
    warm_start_hyperparameters: bool = False  # Carry estimates to the next batch
    stat_names: Tuple[str, ...] = ()  # Entries of each player's stat vector
    negative_stats: Tuple[str, ...] = ("deaths",)  # Stats that count against a player
    use_stats: bool = True  # Attach stat factors when stat_names is non-empty
    estimate_stat_parameters: bool = True
    stat_weight_prior_variance: float = 4.0  # Variance of the Gaussian weight priors
    stat_noise_prior: PriorLike = (0.01, 0.01)  # Gamma with mean 1, variance 100
    on_error: str = "skip"  # Malformed matches: "skip" or "raise"
    keep_history: bool = False  # Keep per-node posteriors of every batch
    batch_size: Optional[int] = None  # Matches per batch (None = one batch)
    end_date: Optional[str] = None  # Ignore matches after this date
    exclude_match_ids: Tuple[int, ...] = field(default_factory=tuple)

    def __post_init__(self):
        self.beta_prior = GammaPrior.coerce(self.beta_prior)
        self.gamma_prior = GammaPrior.coerce(self.gamma_prior)
        self.tau_prior = GammaPrior.coerce(self.tau_prior)
        self.stat_noise_prior = GammaPrior.coerce(self.stat_noise_prior)
        self.stat_names = tuple(self.stat_names)
        self.negative_stats = tuple(self.negative_stats)
        self.exclude_match_ids = tuple(int(m) for m in self.exclude_match_ids)

        if self.sigma <= 0:
            raise ValueError(f"sigma must be positive, got {self.sigma}")
        if not 0.0 < self.damping <= 1.0:
            raise ValueError(f"damping must be in (0, 1], got {self.damping}")
        if self.max_iterations < 0:
            raise ValueError(f"max_iterations must be non-negative, got {self.max_iterations}")
        if self.grace_period < 0:
            raise ValueError(f"grace_period must be non-negative, got {self.grace_period}")
        if self.chain_direction not in CHAIN_DIRECTIONS:
            raise ValueError(
                f"chain_direction must be one of {CHAIN_DIRECTIONS}, got {self.chain_direction!r}"
            )
        if self.on_error not in ON_ERROR_MODES:
            raise ValueError(f"on_error must be one of {ON_ERROR_MODES}, got {self.on_error!r}")
        if self.stat_weight_prior_variance <= 0:
            raise ValueError("stat_weight_prior_variance must be positive")

    @property
    def reverse(self) -> bool:
        return self.chain_direction == "backward"

    @property
    def num_stats(self) -> int:
        """Number of stat factors attached per player slot."""
        return len(self.stat_names) if self.use_stats else 0
