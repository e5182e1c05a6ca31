"""
Expectation propagation over one assembled batch.

A sweep runs, in order:
1. outcome_pass: outcome factor -> performance messages (parallel over matches)
2. stat_pass: stat factor -> performance messages (when stats are attached)
3. performance_to_skill: damped performance -> skill messages
4. chain_pass: forward-backward along every skill chain (parallel over players)
5. hyperparameter re-estimation

Sweeps stop at max_iterations, when no marginal mean or standard deviation
moves by more than convergence_threshold, or when the time budget runs out.
"""

from dataclasses import dataclass
import logging
import time
from typing import Dict

import numpy as np

from .assembler import AssembledBatch
from .config import TrueSkill2Config
from .hyperparameters import HyperparameterEstimator, Hyperparameters
from ._numba_core import chain_pass, compute_marginals, outcome_pass, performance_to_skill
from ._stats_core import stat_pass

logger = logging.getLogger(__name__)


@dataclass
class MessageState:
    """All EP messages of a batch, in natural parameters."""

    fwd_pi: np.ndarray
    fwd_tau: np.ndarray
    bwd_pi: np.ndarray
    bwd_tau: np.ndarray
    lik_pi: np.ndarray
    lik_tau: np.ndarray
    perf_out_pi: np.ndarray
    perf_out_tau: np.ndarray
    perf_stat_pi: np.ndarray
    perf_stat_tau: np.ndarray
    stat_pi: np.ndarray  # (N, S)
    stat_tau: np.ndarray  # (N, S)

    @classmethod
    def initial(cls, batch: AssembledBatch, reverse: bool) -> "MessageState":
        """
        Start with every node carrying its player's prior on the anchor side
        and nothing else, so the marginals before any sweep equal the priors.
        """
        n_nodes = batch.num_nodes
        prior_pi = 1.0 / batch.prior_var
        prior_tau = batch.prior_mu * prior_pi
        counts = batch.chain_lengths
        anchor_pi = np.repeat(prior_pi, counts)
        anchor_tau = np.repeat(prior_tau, counts)
        zeros = np.zeros(n_nodes)

        if reverse:
            fwd_pi, fwd_tau = zeros.copy(), zeros.copy()
            bwd_pi, bwd_tau = anchor_pi, anchor_tau
        else:
            fwd_pi, fwd_tau = anchor_pi, anchor_tau
            bwd_pi, bwd_tau = zeros.copy(), zeros.copy()

        n_stats = batch.num_stats
        return cls(
            fwd_pi=np.ascontiguousarray(fwd_pi),
            fwd_tau=np.ascontiguousarray(fwd_tau),
            bwd_pi=np.ascontiguousarray(bwd_pi),
            bwd_tau=np.ascontiguousarray(bwd_tau),
            lik_pi=zeros.copy(),
            lik_tau=zeros.copy(),
            perf_out_pi=zeros.copy(),
            perf_out_tau=zeros.copy(),
            perf_stat_pi=zeros.copy(),
            perf_stat_tau=zeros.copy(),
            stat_pi=np.zeros((n_nodes, n_stats)),
            stat_tau=np.zeros((n_nodes, n_stats)),
        )

    def marginals(self):
        """Per-node skill marginal means and variances."""
        n_nodes = len(self.fwd_pi)
        mu = np.empty(n_nodes)
        var = np.empty(n_nodes)
        compute_marginals(
            self.fwd_pi, self.fwd_tau, self.bwd_pi, self.bwd_tau,
            self.lik_pi, self.lik_tau, mu, var,
        )
        return mu, var


@dataclass
class InferenceResult:
    """Posterior marginals of one batch and the final hyperparameters."""

    node_mu: np.ndarray
    node_var: np.ndarray
    hyperparameters: Hyperparameters
    posteriors: Dict[str, object]
    num_sweeps: int
    converged: bool
    max_change: float
    elapsed: float = 0.0


def run_inference(
    batch: AssembledBatch,
    hyperparameters: Hyperparameters,
    config: TrueSkill2Config,
) -> InferenceResult:
    """
    Run EP sweeps over a batch until convergence or a budget is spent.

    Args:
        batch: Assembled batch
        hyperparameters: Starting hyperparameter estimates
        config: Damping, stopping rules, chain direction and estimation flags

    Returns:
        InferenceResult (converged=False if a budget stopped the sweeps)
    """
    reverse = config.reverse
    messages = MessageState.initial(batch, reverse)
    estimator = HyperparameterEstimator(config)
    hyper = hyperparameters
    posteriors = estimator.prior_posteriors(hyper)

    use_stats = batch.num_stats > 0 and hyper.num_stats == batch.num_stats
    if batch.num_stats > 0 and not use_stats:
        logger.warning(
            "Batch carries %d stats but hyperparameters describe %d; stat factors disabled",
            batch.num_stats, hyper.num_stats,
        )

    prior_pi = np.ascontiguousarray(1.0 / batch.prior_var)
    prior_tau = np.ascontiguousarray(batch.prior_mu * prior_pi)

    mu, var = messages.marginals()
    start = time.perf_counter()
    converged = config.max_iterations == 0 or batch.num_matches == 0
    max_change = 0.0
    sweeps = 0

    while not converged and sweeps < config.max_iterations:
        beta_var = 1.0 / hyper.beta

        outcome_pass(
            batch.slot_node,
            messages.fwd_pi, messages.fwd_tau, messages.bwd_pi, messages.bwd_tau,
            messages.perf_stat_pi, messages.perf_stat_tau,
            messages.perf_out_pi, messages.perf_out_tau,
            beta_var,
        )
        if use_stats:
            stat_pass(
                batch.slot_node, batch.match_length, batch.stats, batch.stat_observed,
                messages.fwd_pi, messages.fwd_tau, messages.bwd_pi, messages.bwd_tau,
                messages.perf_out_pi, messages.perf_out_tau,
                messages.perf_stat_pi, messages.perf_stat_tau,
                messages.stat_pi, messages.stat_tau,
                hyper.w_own, hyper.w_opp, hyper.noise_precision,
                beta_var, config.damping,
            )
        performance_to_skill(
            messages.perf_out_pi, messages.perf_out_tau,
            messages.perf_stat_pi, messages.perf_stat_tau,
            messages.lik_pi, messages.lik_tau,
            beta_var, config.damping,
        )
        chain_pass(
            batch.player_offsets, batch.node_lapse, prior_pi, prior_tau,
            messages.lik_pi, messages.lik_tau,
            messages.fwd_pi, messages.fwd_tau, messages.bwd_pi, messages.bwd_tau,
            hyper.gamma, hyper.tau, hyper.offset, reverse,
        )
        sweeps += 1

        new_mu, new_var = messages.marginals()
        max_change = float(max(
            np.max(np.abs(new_mu - mu)),
            np.max(np.abs(np.sqrt(new_var) - np.sqrt(var))),
        ))
        mu, var = new_mu, new_var

        hyper, posteriors = estimator.update(batch, messages, hyper, use_stats=use_stats)

        logger.debug("Sweep %d: max change %.6g", sweeps, max_change)
        if max_change < config.convergence_threshold:
            converged = True
        elif config.time_budget is not None and time.perf_counter() - start > config.time_budget:
            logger.warning(
                "Time budget of %.1fs spent after %d sweeps (max change %.4g)",
                config.time_budget, sweeps, max_change,
            )
            break

    if not converged:
        logger.warning(
            "Inference stopped after %d sweeps without converging (max change %.4g > %.4g)",
            sweeps, max_change, config.convergence_threshold,
        )

    return InferenceResult(
        node_mu=mu,
        node_var=var,
        hyperparameters=hyper,
        posteriors=posteriors,
        num_sweeps=sweeps,
        converged=converged,
        max_change=max_change,
        elapsed=time.perf_counter() - start,
    )
