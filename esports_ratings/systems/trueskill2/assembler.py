"""
Batch assembly: turn an ordered list of matches into flat index arrays.

Every player seen in the batch gets a batch-local index and a chain of skill
nodes, one per appearance. Chains are laid out back to back (CSR style):
player p owns nodes ``player_offsets[p]:player_offsets[p + 1]``. Each match
slot maps to exactly one node.
"""

from dataclasses import dataclass, field
from datetime import datetime
import logging
import math
from typing import Dict, List, Optional, Sequence

import numpy as np

from ...base.skill_state import SkillBelief, SkillState
from ...data.types import TEAM_SIZE, Match, days_between

logger = logging.getLogger(__name__)


class MalformedMatchError(ValueError):
    """A match that cannot be attached to the factor graph."""

    def __init__(self, match_id: int, reason: str):
        super().__init__(f"Malformed match {match_id}: {reason}")
        self.match_id = match_id
        self.reason = reason


def validate_match(match: Match, team_size: int = TEAM_SIZE) -> Optional[str]:
    """Return the reason a match is malformed, or None if it is valid."""
    if len(match.rosters) != 2:
        return f"expected 2 rosters, got {len(match.rosters)}"
    for roster_id, players in match.rosters.items():
        if len(players) != team_size:
            return f"roster {roster_id} has {len(players)} players, expected {team_size}"
    if match.winner not in match.rosters:
        return f"winner {match.winner} is not one of the rosters {sorted(match.rosters)}"
    players = match.player_ids
    if len(set(players)) != len(players):
        return "a player appears more than once"
    return None


@dataclass
class BatchPlayerRecord:
    """One player's view of a batch."""

    index: int
    player_id: int
    time_lapses: List[float]

    @property
    def num_appearances(self) -> int:
        return len(self.time_lapses)


@dataclass
class AssembledBatch:
    """
    Flat arrays describing one batch of matches.

    Slot j < team_size of a match holds the winning roster, the rest the
    losing roster.
    """

    player_ids: np.ndarray  # (P,) batch index -> global id
    prior_mu: np.ndarray  # (P,)
    prior_var: np.ndarray  # (P,)
    player_offsets: np.ndarray  # (P + 1,)
    node_lapse: np.ndarray  # (N,) days, >= 0
    slot_player: np.ndarray  # (M, 2T) batch index of each slot
    slot_position: np.ndarray  # (M, 2T) position in the player's chain
    match_ids: np.ndarray  # (M,)
    match_length: Optional[np.ndarray] = None  # (M,)
    winner_roster_ids: Optional[np.ndarray] = None  # (M,)
    loser_roster_ids: Optional[np.ndarray] = None  # (M,)
    stats: Optional[np.ndarray] = None  # (M, 2T, S), 0 where missing
    stat_observed: Optional[np.ndarray] = None  # (M, 2T, S)
    match_dates: List[datetime] = field(default_factory=list)
    last_played: Dict[int, datetime] = field(default_factory=dict)
    skipped: List[int] = field(default_factory=list)

    def __post_init__(self):
        """Ensure arrays are contiguous and correct dtype for Numba compatibility."""
        self.player_ids = np.ascontiguousarray(self.player_ids, dtype=np.int64)
        self.prior_mu = np.ascontiguousarray(self.prior_mu, dtype=np.float64)
        self.prior_var = np.ascontiguousarray(self.prior_var, dtype=np.float64)
        self.player_offsets = np.ascontiguousarray(self.player_offsets, dtype=np.int64)
        self.node_lapse = np.ascontiguousarray(self.node_lapse, dtype=np.float64)
        self.slot_player = np.ascontiguousarray(self.slot_player, dtype=np.int64)
        self.slot_position = np.ascontiguousarray(self.slot_position, dtype=np.int64)
        self.match_ids = np.ascontiguousarray(self.match_ids, dtype=np.int64)

        n_matches, n_slots = self.slot_player.shape
        if self.match_length is None:
            self.match_length = np.ones(n_matches)
        self.match_length = np.ascontiguousarray(self.match_length, dtype=np.float64)
        if self.winner_roster_ids is None:
            self.winner_roster_ids = np.zeros(n_matches, dtype=np.int64)
        if self.loser_roster_ids is None:
            self.loser_roster_ids = np.ones(n_matches, dtype=np.int64)
        if self.stats is None:
            self.stats = np.zeros((n_matches, n_slots, 0))
        self.stats = np.ascontiguousarray(self.stats, dtype=np.float64)
        if self.stat_observed is None:
            self.stat_observed = np.zeros(self.stats.shape, dtype=np.bool_)
        self.stat_observed = np.ascontiguousarray(self.stat_observed, dtype=np.bool_)

        self.slot_node = np.ascontiguousarray(
            self.player_offsets[self.slot_player] + self.slot_position, dtype=np.int64
        )

    @property
    def num_players(self) -> int:
        return len(self.player_ids)

    @property
    def num_matches(self) -> int:
        return len(self.match_ids)

    @property
    def num_nodes(self) -> int:
        return int(self.player_offsets[-1])

    @property
    def team_size(self) -> int:
        return self.slot_player.shape[1] // 2

    @property
    def num_stats(self) -> int:
        return self.stats.shape[2]

    @property
    def chain_lengths(self) -> np.ndarray:
        return np.diff(self.player_offsets)

    @property
    def first_date(self) -> Optional[datetime]:
        return self.match_dates[0] if self.match_dates else None

    @property
    def last_date(self) -> Optional[datetime]:
        return max(self.match_dates) if self.match_dates else None

    def player_index(self) -> Dict[int, int]:
        """Global id -> batch-local index."""
        return {int(pid): i for i, pid in enumerate(self.player_ids)}

    def player_record(self, index: int) -> BatchPlayerRecord:
        start, end = self.player_offsets[index], self.player_offsets[index + 1]
        return BatchPlayerRecord(
            index=index,
            player_id=int(self.player_ids[index]),
            time_lapses=self.node_lapse[start:end].tolist(),
        )

    def __len__(self) -> int:
        return self.num_matches

    def __repr__(self) -> str:
        return (
            f"AssembledBatch(matches={self.num_matches:,}, players={self.num_players:,}, "
            f"nodes={self.num_nodes:,}, skipped={len(self.skipped)})"
        )


def _stat_entry(value) -> Optional[float]:
    """A usable stat value, or None when missing / negative."""
    if value is None:
        return None
    value = float(value)
    if math.isnan(value) or value < 0.0:
        return None
    return value


def assemble_batch(
    matches: Sequence[Match],
    state: SkillState,
    default_mu: float = 1500.0,
    default_sigma: float = 250.0,
    team_size: int = TEAM_SIZE,
    num_stats: int = 0,
    on_error: str = "skip",
) -> AssembledBatch:
    """
    Build the factor-graph index structures for one batch.

    Matches are taken in the order given. For every slot (winning roster
    first) the player's lapse is the time since their last-played date,
    which is then moved to this match's date. Players never seen before
    start from the state's prior table or the default belief and have a
    lapse of 0 on their first appearance.

    Args:
        matches: Matches in chronological order
        state: Skill store providing priors and last-played dates (not modified)
        default_mu: Prior mean for unseen players
        default_sigma: Prior std dev for unseen players
        team_size: Players per roster
        num_stats: Length of the stat vector to read from each match
        on_error: "skip" malformed matches with a warning, or "raise"

    Returns:
        AssembledBatch with the updated last-played map
    """
    if on_error not in ("skip", "raise"):
        raise ValueError(f"on_error must be 'skip' or 'raise', got {on_error!r}")

    default = SkillBelief(default_mu, default_sigma * default_sigma)
    last_played = dict(state.last_played)

    index: Dict[int, int] = {}
    player_ids: List[int] = []
    priors: List[SkillBelief] = []
    lapses: List[List[float]] = []

    slot_player: List[List[int]] = []
    slot_position: List[List[int]] = []
    match_ids: List[int] = []
    match_length: List[float] = []
    match_dates: List[datetime] = []
    winners: List[int] = []
    losers: List[int] = []
    stat_rows: List[np.ndarray] = []
    observed_rows: List[np.ndarray] = []
    skipped: List[int] = []

    for match in matches:
        reason = validate_match(match, team_size)
        if reason is not None:
            if on_error == "raise":
                raise MalformedMatchError(match.match_id, reason)
            logger.warning("Skipping malformed match %s: %s", match.match_id, reason)
            skipped.append(match.match_id)
            continue

        loser = match.loser
        ordered = match.rosters[match.winner] + match.rosters[loser]
        players_row = []
        positions_row = []
        for pid in ordered:
            previous = last_played.get(pid)
            if previous is None:
                lapse = 0.0
            else:
                lapse = days_between(previous, match.date)
                if lapse < 0.0:
                    logger.warning(
                        "Negative time lapse of %.3f days for player %s in match %s; clamping to 0",
                        lapse, pid, match.match_id,
                    )
                    lapse = 0.0
            last_played[pid] = match.date

            i = index.get(pid)
            if i is None:
                i = len(player_ids)
                index[pid] = i
                player_ids.append(pid)
                priors.append(state.belief_for(pid, default))
                lapses.append([])
            positions_row.append(len(lapses[i]))
            lapses[i].append(lapse)
            players_row.append(i)

        slot_player.append(players_row)
        slot_position.append(positions_row)
        match_ids.append(match.match_id)
        match_length.append(match.length)
        match_dates.append(match.date)
        winners.append(match.winner)
        losers.append(loser)

        if num_stats > 0:
            values = np.zeros((2 * team_size, num_stats))
            mask = np.zeros((2 * team_size, num_stats), dtype=np.bool_)
            if match.length > 0:
                for j, pid in enumerate(ordered):
                    vector = match.stat_vector(pid)
                    if vector is None:
                        continue
                    for s in range(min(num_stats, len(vector))):
                        value = _stat_entry(vector[s])
                        if value is not None:
                            values[j, s] = value
                            mask[j, s] = True
            stat_rows.append(values)
            observed_rows.append(mask)

    n_matches = len(match_ids)
    counts = np.array([len(l) for l in lapses], dtype=np.int64)
    offsets = np.zeros(len(player_ids) + 1, dtype=np.int64)
    np.cumsum(counts, out=offsets[1:])
    node_lapse = np.array([x for chain in lapses for x in chain], dtype=np.float64)

    n_slots = 2 * team_size
    if num_stats > 0 and n_matches > 0:
        stats = np.stack(stat_rows)
        stat_observed = np.stack(observed_rows)
    else:
        stats = np.zeros((n_matches, n_slots, num_stats))
        stat_observed = np.zeros((n_matches, n_slots, num_stats), dtype=np.bool_)

    return AssembledBatch(
        player_ids=np.array(player_ids, dtype=np.int64),
        prior_mu=np.array([b.mean for b in priors], dtype=np.float64),
        prior_var=np.array([b.variance for b in priors], dtype=np.float64),
        player_offsets=offsets,
        node_lapse=node_lapse,
        slot_player=np.array(slot_player, dtype=np.int64).reshape(n_matches, n_slots),
        slot_position=np.array(slot_position, dtype=np.int64).reshape(n_matches, n_slots),
        match_ids=np.array(match_ids, dtype=np.int64),
        match_length=np.array(match_length, dtype=np.float64),
        winner_roster_ids=np.array(winners, dtype=np.int64),
        loser_roster_ids=np.array(losers, dtype=np.int64),
        stats=stats,
        stat_observed=stat_observed,
        match_dates=match_dates,
        last_played=last_played,
        skipped=skipped,
    )
