"""
Numba-accelerated core functions for TrueSkill 2 style team inference.

Every message is stored in natural parameters: precision ``pi`` and
precision-adjusted mean ``tau = mu * pi``. An uninformative message is
``pi = tau = 0``, so products and quotients are plain additions and
subtractions.

Key data structures (arena of chains, CSR style):
- player_offsets: (P + 1,) node range of each batch-local player
- node_lapse: (N,) days since the player's previous appearance
- slot_node: (M, 2 * team_size) chain node of each match slot; the first
  team_size slots hold the winning roster
- fwd / bwd: messages into a skill node from its left / right transition
  (or from the prior anchor at the end of the chain)
- lik: damped message from the performance factor into the skill node
- perf_out: message from the outcome factor into the performance node
- perf_stat: product of the stat factor messages into the performance node

One sweep is outcome_pass -> (stat pass) -> performance_to_skill ->
chain_pass. The outcome pass only reads chain messages, so matches are
updated in parallel (Jacobi).
"""

import math
import numpy as np
from numba import njit, prange

# Constants
SQRT2 = math.sqrt(2.0)
SQRT2PI = math.sqrt(2.0 * math.pi)
INV_SQRT2 = 1.0 / SQRT2
MIN_PI = 1e-20  # Precisions at or below this are uninformative
MAX_W = 1.0 - 1e-12
TAIL_THRESHOLD = -5.0  # Below this v is evaluated via the Mills ratio
MILLS_TERMS = 60


# =============================================================================
# Gaussian utilities
# =============================================================================

@njit(cache=True, fastmath=True)
def norm_pdf(x: float) -> float:
    """Standard normal PDF."""
    return math.exp(-0.5 * x * x) / SQRT2PI


@njit(cache=True, fastmath=True)
def norm_cdf(x: float) -> float:
    """Standard normal CDF (erfc keeps the lower tail accurate)."""
    return 0.5 * math.erfc(-x * INV_SQRT2)


@njit(cache=True, fastmath=True)
def add_variance(pi: float, tau: float, extra_var: float) -> tuple:
    """
    Convolve a Gaussian with zero-mean noise of variance ``extra_var``.

    Used for the factor N(p; s, 1/beta) in either direction.
    """
    if pi <= MIN_PI:
        return 0.0, 0.0
    var = 1.0 / pi + extra_var
    return 1.0 / var, (tau / pi) / var


@njit(cache=True, fastmath=True)
def transition(pi: float, tau: float, variance: float, shift: float) -> tuple:
    """Push a message through s' = s + shift + N(0, variance)."""
    if pi <= MIN_PI:
        return 0.0, 0.0
    var = 1.0 / pi + variance
    return 1.0 / var, (tau / pi + shift) / var


@njit(cache=True, fastmath=True)
def transition_variance(lapse: float, gamma: float, tau_decay: float) -> float:
    """Dynamics noise 1/gamma plus decay lapse/tau (lapse 0 = dynamics only)."""
    var = 1.0 / gamma
    if lapse > 0.0:
        var += lapse / tau_decay
    return var


@njit(cache=True, fastmath=True)
def posterior_square(delta_mu: float, delta_var: float, prior_var: float) -> float:
    """
    E[r^2] for r with posterior proportional to N(r; delta_mu, delta_var) * N(r; 0, prior_var).
    """
    post_pi = 1.0 / delta_var + 1.0 / prior_var
    post_mu = (delta_mu / delta_var) / post_pi
    return post_mu * post_mu + 1.0 / post_pi


# =============================================================================
# Truncated Gaussian (v and w functions for game outcomes)
# =============================================================================

@njit(cache=True, fastmath=True)
def v_w_win(t: float) -> tuple:
    """
    Compute v and w for observing d > 0 with d ~ N(mu, sigma^2), t = mu / sigma.

    - v = pdf(t) / cdf(t)
    - w = v * (v + t)

    For t below TAIL_THRESHOLD, cdf(t) loses relative precision and v + t
    cancels badly. There the Mills ratio R(x) = cdf(-x) / pdf(x), x = -t,
    is evaluated by its continued fraction

        R(x) = 1 / (x + 1 / (x + 2 / (x + 3 / ...)))

    so that v = 1/R = x + 1/tail and v + t = 1/tail exactly, with
    tail = x + 2 / (x + 3 / ...).
    """
    if t > TAIL_THRESHOLD:
        v = norm_pdf(t) / norm_cdf(t)
        v_plus_t = v + t
    else:
        x = -t
        tail = x
        for k in range(MILLS_TERMS, 1, -1):
            tail = x + k / tail
        v = x + 1.0 / tail
        v_plus_t = 1.0 / tail

    w = v * v_plus_t
    if w < 0.0:
        w = 0.0
    elif w > MAX_W:
        w = MAX_W
    return v, w


@njit(cache=True, fastmath=True)
def truncate_positive(mu: float, var: float) -> tuple:
    """Mean and variance of N(mu, var) restricted to (0, inf)."""
    sigma = math.sqrt(var)
    v, w = v_w_win(mu / sigma)
    return mu + sigma * v, var * (1.0 - w)


# =============================================================================
# Sweep passes
# =============================================================================

@njit(cache=True, parallel=True)
def outcome_pass(
    slot_node: np.ndarray,
    fwd_pi: np.ndarray,
    fwd_tau: np.ndarray,
    bwd_pi: np.ndarray,
    bwd_tau: np.ndarray,
    perf_stat_pi: np.ndarray,
    perf_stat_tau: np.ndarray,
    perf_out_pi: np.ndarray,
    perf_out_tau: np.ndarray,
    beta_var: float,
) -> None:
    """
    Update the outcome -> performance messages of every match.

    Each performance cavity is the skill cavity (fwd * bwd) convolved with
    the performance noise, times the stat messages. The team sums give
    d = T_win - T_lose; the truncated message on d is then pushed back
    through the sums to every performance.

    Modifies perf_out_pi, perf_out_tau in place.
    """
    n_matches, n_slots = slot_node.shape
    team_size = n_slots // 2

    for m in prange(n_matches):
        mus = np.empty(n_slots)
        variances = np.empty(n_slots)
        informative = True
        for j in range(n_slots):
            node = slot_node[m, j]
            pi, tau = add_variance(fwd_pi[node] + bwd_pi[node],
                                   fwd_tau[node] + bwd_tau[node], beta_var)
            pi += perf_stat_pi[node]
            tau += perf_stat_tau[node]
            if pi <= MIN_PI:
                informative = False
                break
            mus[j] = tau / pi
            variances[j] = 1.0 / pi
        if not informative:
            continue

        diff_mu = 0.0
        diff_var = 0.0
        for j in range(n_slots):
            if j < team_size:
                diff_mu += mus[j]
            else:
                diff_mu -= mus[j]
            diff_var += variances[j]

        trunc_mu, trunc_var = truncate_positive(diff_mu, diff_var)

        # Message on d: truncated marginal divided by the cavity
        msg_pi = 1.0 / trunc_var - 1.0 / diff_var
        if msg_pi <= MIN_PI:
            for j in range(n_slots):
                node = slot_node[m, j]
                perf_out_pi[node] = 0.0
                perf_out_tau[node] = 0.0
            continue
        msg_tau = trunc_mu / trunc_var - diff_mu / diff_var
        msg_mu = msg_tau / msg_pi
        msg_var = 1.0 / msg_pi

        for j in range(n_slots):
            node = slot_node[m, j]
            sign = 1.0 if j < team_size else -1.0
            # d = sign * p_j + rest  =>  p_j = sign * (d - rest)
            rest_mu = diff_mu - sign * mus[j]
            rest_var = diff_var - variances[j]
            out_mu = sign * (msg_mu - rest_mu)
            out_var = msg_var + rest_var
            perf_out_pi[node] = 1.0 / out_var
            perf_out_tau[node] = out_mu / out_var


@njit(cache=True, parallel=True)
def performance_to_skill(
    perf_out_pi: np.ndarray,
    perf_out_tau: np.ndarray,
    perf_stat_pi: np.ndarray,
    perf_stat_tau: np.ndarray,
    lik_pi: np.ndarray,
    lik_tau: np.ndarray,
    beta_var: float,
    damping: float,
) -> None:
    """
    Send the performance evidence through N(p; s, 1/beta) to the skill nodes.

    The new message is blended with the old one in natural parameters,
    new^damping * old^(1 - damping). Modifies lik_pi, lik_tau in place.
    """
    n_nodes = len(lik_pi)
    keep = 1.0 - damping
    for i in prange(n_nodes):
        pi, tau = add_variance(perf_out_pi[i] + perf_stat_pi[i],
                               perf_out_tau[i] + perf_stat_tau[i], beta_var)
        lik_pi[i] = damping * pi + keep * lik_pi[i]
        lik_tau[i] = damping * tau + keep * lik_tau[i]


@njit(cache=True, parallel=True)
def chain_pass(
    player_offsets: np.ndarray,
    node_lapse: np.ndarray,
    prior_pi: np.ndarray,
    prior_tau: np.ndarray,
    lik_pi: np.ndarray,
    lik_tau: np.ndarray,
    fwd_pi: np.ndarray,
    fwd_tau: np.ndarray,
    bwd_pi: np.ndarray,
    bwd_tau: np.ndarray,
    gamma: float,
    tau_decay: float,
    offset: float,
    reverse: bool,
) -> None:
    """
    Exact forward-backward recursion along every player's skill chain.

    Node k's transition noise (dynamics + decay) uses node_lapse[k], the
    gap between appearances k-1 and k. In forward mode the prior anchors
    node 0 and each step adds +offset; in backward mode the prior anchors
    the last node and steps towards the past subtract offset.

    Modifies fwd_*, bwd_* in place.
    """
    n_players = len(player_offsets) - 1

    for p in prange(n_players):
        start = player_offsets[p]
        end = player_offsets[p + 1]
        if end <= start:
            continue

        if reverse:
            fwd_pi[start] = 0.0
            fwd_tau[start] = 0.0
        else:
            fwd_pi[start] = prior_pi[p]
            fwd_tau[start] = prior_tau[p]
        for n in range(start + 1, end):
            var = transition_variance(node_lapse[n], gamma, tau_decay)
            msg_pi, msg_tau = transition(
                fwd_pi[n - 1] + lik_pi[n - 1], fwd_tau[n - 1] + lik_tau[n - 1],
                var, offset,
            )
            fwd_pi[n] = msg_pi
            fwd_tau[n] = msg_tau

        if reverse:
            bwd_pi[end - 1] = prior_pi[p]
            bwd_tau[end - 1] = prior_tau[p]
        else:
            bwd_pi[end - 1] = 0.0
            bwd_tau[end - 1] = 0.0
        for n in range(end - 2, start - 1, -1):
            var = transition_variance(node_lapse[n + 1], gamma, tau_decay)
            msg_pi, msg_tau = transition(
                bwd_pi[n + 1] + lik_pi[n + 1], bwd_tau[n + 1] + lik_tau[n + 1],
                var, -offset,
            )
            bwd_pi[n] = msg_pi
            bwd_tau[n] = msg_tau


@njit(cache=True, parallel=True)
def compute_marginals(
    fwd_pi: np.ndarray,
    fwd_tau: np.ndarray,
    bwd_pi: np.ndarray,
    bwd_tau: np.ndarray,
    lik_pi: np.ndarray,
    lik_tau: np.ndarray,
    out_mu: np.ndarray,
    out_var: np.ndarray,
) -> None:
    """Skill marginal of every node: fwd * bwd * lik."""
    n_nodes = len(fwd_pi)
    for i in prange(n_nodes):
        pi = fwd_pi[i] + bwd_pi[i] + lik_pi[i]
        tau = fwd_tau[i] + bwd_tau[i] + lik_tau[i]
        if pi <= MIN_PI:
            pi = MIN_PI
        out_mu[i] = tau / pi
        out_var[i] = 1.0 / pi


# =============================================================================
# Hyperparameter sufficient statistics
# =============================================================================

@njit(cache=True)
def performance_residual_stats(
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
    Sum of E[(p - s)^2] over all performance factors.

    The pairwise posterior of (s, p) is the skill cavity (fwd * bwd) times
    the performance cavity (outcome * stat messages) times N(p - s; 0, 1/beta).

    Returns:
        (sum of expected squares, number of factors)
    """
    n_nodes = len(fwd_pi)
    total = 0.0
    for i in range(n_nodes):
        s_pi = fwd_pi[i] + bwd_pi[i]
        p_pi = perf_out_pi[i] + perf_stat_pi[i]
        if s_pi <= MIN_PI or p_pi <= MIN_PI:
            total += beta_var
            continue
        s_mu = (fwd_tau[i] + bwd_tau[i]) / s_pi
        p_mu = (perf_out_tau[i] + perf_stat_tau[i]) / p_pi
        total += posterior_square(p_mu - s_mu, 1.0 / s_pi + 1.0 / p_pi, beta_var)
    return total, n_nodes


@njit(cache=True)
def transition_residual_stats(
    player_offsets: np.ndarray,
    node_lapse: np.ndarray,
    fwd_pi: np.ndarray,
    fwd_tau: np.ndarray,
    bwd_pi: np.ndarray,
    bwd_tau: np.ndarray,
    lik_pi: np.ndarray,
    lik_tau: np.ndarray,
    gamma: float,
    tau_decay: float,
    offset: float,
) -> tuple:
    """
    Expected squared dynamics and decay noise over all chain transitions.

    The step residual e = s[k] - s[k-1] - offset is the sum of dynamics
    noise c ~ N(0, 1/gamma) and decay noise a ~ N(0, lapse/tau). Given e,
    each part is Gaussian with mean (its variance / q) * e and variance
    (1/gamma)(lapse/tau)/q, where q is the total step variance.

    Returns:
        (sum E[c^2], number of transitions,
         sum E[a^2] / lapse, number of transitions with lapse > 0)
    """
    n_players = len(player_offsets) - 1
    dyn_total = 0.0
    decay_total = 0.0
    n_dyn = 0
    n_decay = 0
    dyn_var = 1.0 / gamma

    for p in range(n_players):
        start = player_offsets[p]
        end = player_offsets[p + 1]
        for n in range(start + 1, end):
            lapse = node_lapse[n]
            decay_var = lapse / tau_decay if lapse > 0.0 else 0.0
            q = dyn_var + decay_var

            prev_pi = fwd_pi[n - 1] + lik_pi[n - 1]
            next_pi = lik_pi[n] + bwd_pi[n]
            if prev_pi <= MIN_PI or next_pi <= MIN_PI:
                e2 = q
            else:
                prev_mu = (fwd_tau[n - 1] + lik_tau[n - 1]) / prev_pi
                next_mu = (lik_tau[n] + bwd_tau[n]) / next_pi
                e2 = posterior_square(next_mu - prev_mu - offset,
                                      1.0 / prev_pi + 1.0 / next_pi, q)

            cond_var = dyn_var * decay_var / q
            rho_dyn = dyn_var / q
            dyn_total += rho_dyn * rho_dyn * e2 + cond_var
            n_dyn += 1

            if lapse > 0.0:
                rho_decay = decay_var / q
                decay_total += (rho_decay * rho_decay * e2 + cond_var) / lapse
                n_decay += 1

    return dyn_total, n_dyn, decay_total, n_decay
