"""
Point estimation of the global TrueSkill 2 hyperparameters.

After every EP sweep the precisions are re-estimated by an EM-style MAP
update against their Gamma priors. For a precision ``lam`` with prior
Gamma(a, b) and N residuals r_n ~ N(0, 1/lam):

    lam = (a - 1 + N/2) / (b + 0.5 * sum E[r_n^2])

where the expected squares come from the pairwise EP posteriors. If the
numerator is not positive the data cannot support a mode and the current
value is kept.

Stat regression weights have Gaussian priors and are solved per stat as a
2x2 ridge system; the stat noise precision uses the same Gamma update.
"""

from dataclasses import dataclass, field, replace
import logging
from typing import TYPE_CHECKING, Dict, Tuple, Union

import numpy as np

from ._numba_core import performance_residual_stats, transition_residual_stats
from ._stats_core import stat_sufficient_statistics

if TYPE_CHECKING:
    from .assembler import AssembledBatch
    from .config import TrueSkill2Config
    from .inference import MessageState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GammaPrior:
    """Gamma distribution in (shape, rate) form."""

    shape: float
    rate: float

    def __post_init__(self):
        if self.shape <= 0 or self.rate <= 0:
            raise ValueError(
                f"Gamma shape and rate must be positive, got ({self.shape}, {self.rate})"
            )

    @property
    def mean(self) -> float:
        return self.shape / self.rate

    @classmethod
    def coerce(cls, value: Union["GammaPrior", Tuple[float, float]]) -> "GammaPrior":
        """Accept a GammaPrior or a ``(shape, rate)`` pair."""
        if isinstance(value, GammaPrior):
            return value
        shape, rate = value
        return cls(float(shape), float(rate))


@dataclass(frozen=True)
class GammaPosterior:
    """Gamma posterior of a precision together with its point estimate."""

    shape: float
    rate: float
    point: float

    @property
    def mean(self) -> float:
        return self.shape / self.rate

    def to_dict(self) -> Dict[str, float]:
        return {"shape": self.shape, "rate": self.rate, "point": self.point}


@dataclass(frozen=True)
class GaussianPosterior:
    """Gaussian posterior of a regression weight."""

    mean: float
    variance: float

    def to_dict(self) -> Dict[str, float]:
        return {"mean": self.mean, "variance": self.variance}


@dataclass
class Hyperparameters:
    """
    Current point estimates of the global hyperparameters.

    beta, gamma and tau are precisions: performance noise has variance
    1/beta, per-step skill dynamics 1/gamma and decay lapse/tau.
    """

    beta: float
    gamma: float
    tau: float
    offset: float = 0.0
    w_own: np.ndarray = field(default_factory=lambda: np.zeros(0))
    w_opp: np.ndarray = field(default_factory=lambda: np.zeros(0))
    noise_precision: np.ndarray = field(default_factory=lambda: np.zeros(0))

    def __post_init__(self):
        self.w_own = np.ascontiguousarray(self.w_own, dtype=np.float64)
        self.w_opp = np.ascontiguousarray(self.w_opp, dtype=np.float64)
        self.noise_precision = np.ascontiguousarray(self.noise_precision, dtype=np.float64)
        for name in ("beta", "gamma", "tau"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")

    @property
    def num_stats(self) -> int:
        return len(self.w_own)

    @classmethod
    def initial(cls, config: "TrueSkill2Config") -> "Hyperparameters":
        """Start every estimate at its prior mean."""
        w_own, w_opp = stat_weight_prior_means(config)
        return cls(
            beta=config.beta_prior.mean,
            gamma=config.gamma_prior.mean,
            tau=config.tau_prior.mean,
            offset=config.offset,
            w_own=w_own,
            w_opp=w_opp,
            noise_precision=np.full(config.num_stats, config.stat_noise_prior.mean),
        )

    def copy(self, **changes) -> "Hyperparameters":
        changes.setdefault("w_own", self.w_own.copy())
        changes.setdefault("w_opp", self.w_opp.copy())
        changes.setdefault("noise_precision", self.noise_precision.copy())
        return replace(self, **changes)

    def to_dict(self) -> Dict:
        return {
            "beta": self.beta,
            "gamma": self.gamma,
            "tau": self.tau,
            "offset": self.offset,
            "w_own": self.w_own.tolist(),
            "w_opp": self.w_opp.tolist(),
            "noise_precision": self.noise_precision.tolist(),
        }


def stat_weight_prior_means(config: "TrueSkill2Config") -> Tuple[np.ndarray, np.ndarray]:
    """Own weight +1 and opponent weight -1, swapped for negative stats."""
    signs = np.array(
        [-1.0 if name in config.negative_stats else 1.0 for name in config.stat_names[:config.num_stats]],
        dtype=np.float64,
    )
    return signs.copy(), -signs


def gamma_map_update(
    prior: GammaPrior,
    n_obs: float,
    sum_sq: float,
    current: float,
) -> GammaPosterior:
    """MAP update of a precision from ``n_obs`` expected squared residuals."""
    shape = prior.shape + 0.5 * n_obs
    rate = prior.rate + 0.5 * sum_sq
    numerator = shape - 1.0
    point = numerator / rate if numerator > 0 else current
    return GammaPosterior(shape=shape, rate=rate, point=point)


def solve_stat_parameters(
    sxx: np.ndarray,
    sxy: np.ndarray,
    syy: np.ndarray,
    counts: np.ndarray,
    prior_mean: np.ndarray,
    prior_variance: float,
    noise_prior: GammaPrior,
    noise_precision: np.ndarray,
    estimate_noise: bool = True,
) -> Tuple[np.ndarray, Dict[int, GaussianPosterior], Dict[int, GaussianPosterior], np.ndarray, Dict[int, GammaPosterior]]:
    """
    Ridge solve of the stat regression weights.

    Per stat s, with features x = (own performance, opponent team / team size)
    and length-weighted sufficient statistics:

        sxx[s] = sum len * E[x x^T]    (2, 2)
        sxy[s] = sum y * E[x]          (2,)
        syy[s] = sum y^2 / len
        counts[s] = number of observed values

    Args:
        prior_mean: (S, 2) Gaussian prior means of (w_own, w_opp)

    Returns:
        (weights (S, 2), own posteriors, opp posteriors, noise precisions, noise posteriors)
    """
    n_stats = len(counts)
    weights = prior_mean.copy()
    own_post, opp_post, noise_post = {}, {}, {}
    new_noise = noise_precision.copy()
    prior_precision = np.eye(2) / prior_variance

    for s in range(n_stats):
        v = noise_precision[s]
        a_mat = v * sxx[s] + prior_precision
        b_vec = v * sxy[s] + prior_precision @ prior_mean[s]
        cov = np.linalg.inv(a_mat)
        w = cov @ b_vec
        weights[s] = w
        own_post[s] = GaussianPosterior(float(w[0]), float(cov[0, 0]))
        opp_post[s] = GaussianPosterior(float(w[1]), float(cov[1, 1]))

        # E[(y/len - w.x)^2] weighted by len, including weight uncertainty
        resid = syy[s] - 2.0 * (w @ sxy[s]) + w @ sxx[s] @ w + np.trace(sxx[s] @ cov)
        post = gamma_map_update(noise_prior, counts[s], max(resid, 0.0), v)
        noise_post[s] = post
        if estimate_noise:
            new_noise[s] = post.point

    return weights, own_post, opp_post, new_noise, noise_post


class HyperparameterEstimator:
    """EM-style re-estimation of the hyperparameters after each sweep."""

    def __init__(self, config: "TrueSkill2Config"):
        self.config = config

    def prior_posteriors(self, hyper: Hyperparameters) -> Dict[str, object]:
        """Posteriors reported when no sweep has run: the priors themselves."""
        config = self.config
        posteriors: Dict[str, object] = {
            "beta": GammaPosterior(config.beta_prior.shape, config.beta_prior.rate, hyper.beta),
            "gamma": GammaPosterior(config.gamma_prior.shape, config.gamma_prior.rate, hyper.gamma),
            "tau": GammaPosterior(config.tau_prior.shape, config.tau_prior.rate, hyper.tau),
        }
        for s in range(hyper.num_stats):
            name = config.stat_names[s]
            var = config.stat_weight_prior_variance
            posteriors[f"w_own/{name}"] = GaussianPosterior(float(hyper.w_own[s]), var)
            posteriors[f"w_opp/{name}"] = GaussianPosterior(float(hyper.w_opp[s]), var)
            posteriors[f"noise/{name}"] = GammaPosterior(
                config.stat_noise_prior.shape, config.stat_noise_prior.rate,
                float(hyper.noise_precision[s]),
            )
        return posteriors

    def update(
        self,
        batch: "AssembledBatch",
        messages: "MessageState",
        hyper: Hyperparameters,
        use_stats: bool = True,
    ) -> Tuple[Hyperparameters, Dict[str, object]]:
        """
        Re-estimate all unfrozen hyperparameters from the current messages.

        With use_stats False the stat weights and noise precisions are kept
        and reported with their prior posteriors.
        """
        config = self.config
        beta_var = 1.0 / hyper.beta

        sum_sq, n_perf = performance_residual_stats(
            messages.fwd_pi, messages.fwd_tau,
            messages.bwd_pi, messages.bwd_tau,
            messages.perf_out_pi, messages.perf_out_tau,
            messages.perf_stat_pi, messages.perf_stat_tau,
            beta_var,
        )
        beta_post = gamma_map_update(config.beta_prior, n_perf, sum_sq, hyper.beta)

        dyn_sq, n_dyn, decay_sq, n_decay = transition_residual_stats(
            batch.player_offsets, batch.node_lapse,
            messages.fwd_pi, messages.fwd_tau,
            messages.bwd_pi, messages.bwd_tau,
            messages.lik_pi, messages.lik_tau,
            hyper.gamma, hyper.tau, hyper.offset,
        )
        gamma_post = gamma_map_update(config.gamma_prior, n_dyn, dyn_sq, hyper.gamma)
        tau_post = gamma_map_update(config.tau_prior, n_decay, decay_sq, hyper.tau)

        new = hyper.copy(
            beta=beta_post.point if config.estimate_beta else hyper.beta,
            gamma=gamma_post.point if config.estimate_gamma else hyper.gamma,
            tau=tau_post.point if config.estimate_tau else hyper.tau,
        )
        posteriors: Dict[str, object] = {
            "beta": beta_post,
            "gamma": gamma_post,
            "tau": tau_post,
        }

        if not use_stats:
            for name, post in self.prior_posteriors(hyper).items():
                posteriors.setdefault(name, post)
        elif hyper.num_stats > 0:
            sxx, sxy, syy, counts = stat_sufficient_statistics(
                batch.slot_node, batch.match_length, batch.stats, batch.stat_observed,
                messages.fwd_pi, messages.fwd_tau,
                messages.bwd_pi, messages.bwd_tau,
                messages.perf_out_pi, messages.perf_out_tau,
                messages.perf_stat_pi, messages.perf_stat_tau,
                beta_var,
            )
            prior_mean = np.stack(stat_weight_prior_means(config), axis=1)
            weights, own_post, opp_post, noise, noise_post = solve_stat_parameters(
                sxx, sxy, syy, counts, prior_mean,
                config.stat_weight_prior_variance,
                config.stat_noise_prior,
                hyper.noise_precision,
                estimate_noise=config.estimate_stat_parameters,
            )
            if config.estimate_stat_parameters:
                new.w_own = np.ascontiguousarray(weights[:, 0])
                new.w_opp = np.ascontiguousarray(weights[:, 1])
                new.noise_precision = np.ascontiguousarray(noise)
            for s in range(hyper.num_stats):
                name = config.stat_names[s]
                posteriors[f"w_own/{name}"] = own_post[s]
                posteriors[f"w_opp/{name}"] = opp_post[s]
                posteriors[f"noise/{name}"] = noise_post[s]

        logger.debug(
            "Hyperparameters: beta=%.3e gamma=%.3e tau=%.3e", new.beta, new.gamma, new.tau
        )
        return new, posteriors
