"""
Numba-accelerated stat regression factors.

For each observed stat y of a player with performance p in a match of
length L, against an opposing team with total performance T_opp:

    x ~ N(L * (w_own * p + w_opp * T_opp / team_size), L / v)
    y = max(0, x)

y > 0 observes x exactly; y == 0 observes x <= 0 and goes through the same
truncated-Gaussian moment matching as the outcome factor. Messages go to
the player's own performance node only; the opponent term enters through
the current marginal of the opposing team's performance.

Missing stats are flagged in a separate boolean mask and never touched.
"""

import numpy as np
from numba import njit, prange

from ._numba_core import MIN_PI, add_variance, truncate_positive

MIN_WEIGHT = 1e-12  # |w_own| below this carries no information about p


@njit(cache=True)
def performance_marginal(
    node: int,
    fwd_pi: np.ndarray,
    fwd_tau: np.ndarray,
    bwd_pi: np.ndarray,
    bwd_tau: np.ndarray,
    perf_out_pi: np.ndarray,
    perf_out_tau: np.ndarray,
    perf_stat_pi: np.ndarray,
    perf_stat_tau: np.ndarray,
    beta_var: float,
) -> tuple:
    """Mean and variance of a performance node's current marginal."""
    pi, tau = add_variance(fwd_pi[node] + bwd_pi[node],
                           fwd_tau[node] + bwd_tau[node], beta_var)
    pi += perf_out_pi[node] + perf_stat_pi[node]
    tau += perf_out_tau[node] + perf_stat_tau[node]
    if pi <= MIN_PI:
        pi = MIN_PI
    return tau / pi, 1.0 / pi


@njit(cache=True)
def team_performance_moments(
    m: int,
    slot_node: np.ndarray,
    fwd_pi: np.ndarray,
    fwd_tau: np.ndarray,
    bwd_pi: np.ndarray,
    bwd_tau: np.ndarray,
    perf_out_pi: np.ndarray,
    perf_out_tau: np.ndarray,
    perf_stat_pi: np.ndarray,
    perf_stat_tau: np.ndarray,
    beta_var: float,
) -> tuple:
    """Per-slot performance marginals and the two team sums of match m."""
    n_slots = slot_node.shape[1]
    team_size = n_slots // 2
    slot_mu = np.empty(n_slots)
    slot_var = np.empty(n_slots)
    team_mu = np.zeros(2)
    team_var = np.zeros(2)
    for j in range(n_slots):
        mu, var = performance_marginal(
            slot_node[m, j], fwd_pi, fwd_tau, bwd_pi, bwd_tau,
            perf_out_pi, perf_out_tau, perf_stat_pi, perf_stat_tau, beta_var,
        )
        slot_mu[j] = mu
        slot_var[j] = var
        team = 0 if j < team_size else 1
        team_mu[team] += mu
        team_var[team] += var
    return slot_mu, slot_var, team_mu, team_var


@njit(cache=True, parallel=True)
def stat_pass(
    slot_node: np.ndarray,
    match_length: np.ndarray,
    stats: np.ndarray,
    observed: np.ndarray,
    fwd_pi: np.ndarray,
    fwd_tau: np.ndarray,
    bwd_pi: np.ndarray,
    bwd_tau: np.ndarray,
    perf_out_pi: np.ndarray,
    perf_out_tau: np.ndarray,
    perf_stat_pi: np.ndarray,
    perf_stat_tau: np.ndarray,
    stat_pi: np.ndarray,
    stat_tau: np.ndarray,
    w_own: np.ndarray,
    w_opp: np.ndarray,
    noise_precision: np.ndarray,
    beta_var: float,
    damping: float,
) -> None:
    """
    Update every stat -> performance message.

    Stats of one slot are visited in order, each with the cavity that
    excludes only its own message. Opponent moments are taken once per
    match, before any message of that match changes.

    Modifies stat_pi, stat_tau, perf_stat_pi, perf_stat_tau in place.
    """
    n_matches, n_slots = slot_node.shape
    team_size = n_slots // 2
    n_stats = stats.shape[2]
    keep = 1.0 - damping

    for m in prange(n_matches):
        length = match_length[m]
        if length <= 0.0:
            continue
        slot_mu, slot_var, team_mu, team_var = team_performance_moments(
            m, slot_node, fwd_pi, fwd_tau, bwd_pi, bwd_tau,
            perf_out_pi, perf_out_tau, perf_stat_pi, perf_stat_tau, beta_var,
        )

        for j in range(n_slots):
            node = slot_node[m, j]
            opp = 1 if j < team_size else 0
            opp_mu = team_mu[opp] / team_size
            opp_var = team_var[opp] / (team_size * team_size)

            base_pi, base_tau = add_variance(fwd_pi[node] + bwd_pi[node],
                                             fwd_tau[node] + bwd_tau[node], beta_var)
            base_pi += perf_out_pi[node]
            base_tau += perf_out_tau[node]
            total_pi = perf_stat_pi[node]
            total_tau = perf_stat_tau[node]

            for s in range(n_stats):
                if not observed[m, j, s]:
                    continue
                a = w_own[s]
                if abs(a) < MIN_WEIGHT:
                    continue
                cav_pi = base_pi + total_pi - stat_pi[node, s]
                cav_tau = base_tau + total_tau - stat_tau[node, s]
                if cav_pi <= MIN_PI:
                    continue

                b = w_opp[s]
                shift = length * b * opp_mu
                extra_var = length * length * b * b * opp_var + length / noise_precision[s]
                y = stats[m, j, s]

                if y > 0.0:
                    x_mu = y
                    x_var = 0.0
                else:
                    # y == 0: x <= 0, i.e. -x > 0
                    cav_mu = cav_tau / cav_pi
                    pred_mu = length * a * cav_mu + shift
                    pred_var = length * length * a * a / cav_pi + extra_var
                    trunc_mu, trunc_var = truncate_positive(-pred_mu, pred_var)
                    x_pi = 1.0 / trunc_var - 1.0 / pred_var
                    if x_pi <= MIN_PI:
                        continue
                    x_tau = -trunc_mu / trunc_var - pred_mu / pred_var
                    x_mu = x_tau / x_pi
                    x_var = 1.0 / x_pi

                la = length * a
                msg_var = (x_var + extra_var) / (la * la)
                msg_mu = (x_mu - shift) / la
                new_pi = damping / msg_var + keep * stat_pi[node, s]
                new_tau = damping * msg_mu / msg_var + keep * stat_tau[node, s]

                total_pi += new_pi - stat_pi[node, s]
                total_tau += new_tau - stat_tau[node, s]
                stat_pi[node, s] = new_pi
                stat_tau[node, s] = new_tau

            perf_stat_pi[node] = total_pi
            perf_stat_tau[node] = total_tau


@njit(cache=True)
def stat_sufficient_statistics(
    slot_node: np.ndarray,
    match_length: np.ndarray,
    stats: np.ndarray,
    observed: np.ndarray,
    fwd_pi: np.ndarray,
    fwd_tau: np.ndarray,
    bwd_pi: np.ndarray,
    bwd_tau: np.ndarray,
    perf_out_pi: np.ndarray,
    perf_out_tau: np.ndarray,
    perf_stat_pi: np.ndarray,
    perf_stat_tau: np.ndarray,
    beta_var: float,
) -> tuple:
    """
    Length-weighted sufficient statistics of every stat regression.

    Features are x = (p, T_opp / team_size) under the current marginals.

    Returns:
        sxx: (S, 2, 2) sum L * E[x x^T]
        sxy: (S, 2) sum y * E[x]
        syy: (S,) sum y^2 / L
        counts: (S,) number of observed values
    """
    n_matches, n_slots = slot_node.shape
    team_size = n_slots // 2
    n_stats = stats.shape[2]

    sxx = np.zeros((n_stats, 2, 2))
    sxy = np.zeros((n_stats, 2))
    syy = np.zeros(n_stats)
    counts = np.zeros(n_stats)

    for m in range(n_matches):
        length = match_length[m]
        if length <= 0.0:
            continue
        slot_mu, slot_var, team_mu, team_var = team_performance_moments(
            m, slot_node, fwd_pi, fwd_tau, bwd_pi, bwd_tau,
            perf_out_pi, perf_out_tau, perf_stat_pi, perf_stat_tau, beta_var,
        )
        for j in range(n_slots):
            opp = 1 if j < team_size else 0
            p_mu = slot_mu[j]
            p_var = slot_var[j]
            o_mu = team_mu[opp] / team_size
            o_var = team_var[opp] / (team_size * team_size)
            for s in range(n_stats):
                if not observed[m, j, s]:
                    continue
                y = stats[m, j, s]
                sxx[s, 0, 0] += length * (p_mu * p_mu + p_var)
                sxx[s, 0, 1] += length * p_mu * o_mu
                sxx[s, 1, 0] += length * p_mu * o_mu
                sxx[s, 1, 1] += length * (o_mu * o_mu + o_var)
                sxy[s, 0] += y * p_mu
                sxy[s, 1] += y * o_mu
                syy[s] += y * y / length
                counts[s] += 1.0

    return sxx, sxy, syy, counts
