"""Write batch posteriors back to the skill store, with inactivity decay."""

import logging

import numpy as np

from ...base.skill_state import SkillBelief, SkillState
from ...data.types import days_between
from .assembler import AssembledBatch
from .hyperparameters import Hyperparameters
from .inference import InferenceResult

logger = logging.getLogger(__name__)


def decay_variance(variance: float, lapse: float, grace_period: float, tau: float) -> float:
    """
    Inflate a variance for inactivity beyond the grace period.

    variance + max(lapse - grace_period, 0) / tau
    """
    excess = max(lapse - grace_period, 0.0)
    return variance + excess / tau


def output_nodes(batch: AssembledBatch, reverse: bool = False) -> np.ndarray:
    """Node carrying each player's batch posterior: the last one, or the first when reversed."""
    if reverse:
        return batch.player_offsets[:-1].copy()
    return batch.player_offsets[1:] - 1


def apply_batch_result(
    state: SkillState,
    batch: AssembledBatch,
    result: InferenceResult,
    hyperparameters: Hyperparameters,
    grace_period: float = 45.0,
    reverse: bool = False,
) -> SkillState:
    """
    Produce the skill store after a batch.

    Each player in the batch takes the marginal of their output node, with
    the variance decayed by the time between their last match and the last
    match of the batch. Players outside the batch keep their beliefs.

    Returns:
        A new SkillState; ``state`` is not modified
    """
    beliefs = dict(state.beliefs)
    reference = batch.last_date
    nodes = output_nodes(batch, reverse)

    for i, node in enumerate(nodes):
        pid = int(batch.player_ids[i])
        variance = float(result.node_var[node])
        if reference is not None:
            lapse = max(days_between(batch.last_played[pid], reference), 0.0)
            variance = decay_variance(variance, lapse, grace_period, hyperparameters.tau)
        beliefs[pid] = SkillBelief(float(result.node_mu[node]), variance)

    last_date = reference
    if state.last_date is not None and (last_date is None or state.last_date > last_date):
        last_date = state.last_date

    logger.debug("Updated %d player beliefs", len(nodes))
    return SkillState(
        beliefs=beliefs,
        last_played=dict(batch.last_played),
        priors=state.priors,
        last_date=last_date,
    )
