"""Tests for batch assembly: index bijection, chains, lapses and validation."""

from datetime import datetime, timedelta
import logging

import numpy as np
import pytest

from esports_ratings import Match, SkillBelief, SkillState
from esports_ratings.systems.trueskill2 import (
    MalformedMatchError,
    assemble_batch,
    validate_match,
)


START = datetime(2024, 1, 1)


def make_match(match_id, winners, losers, day=0.0, stats=None, length=1.0):
    """Two-roster match; roster 1 wins."""
    return Match(
        match_id=match_id,
        date=START + timedelta(days=day),
        rosters={1: list(winners), 2: list(losers)},
        winner=1,
        length=length,
        stats=stats,
    )


def generate_matches(num_players=30, num_matches=40, seed=42):
    """Random 5v5 matches, one per day."""
    rng = np.random.RandomState(seed)
    matches = []
    for m in range(num_matches):
        players = rng.choice(num_players, 10, replace=False)
        matches.append(make_match(m, players[:5], players[5:], day=float(m)))
    return matches


def test_bijection_and_chain_counts():
    """Every slot maps to one node and every node to one slot."""
    print("=" * 60)
    print("Testing index bijection...")
    print("=" * 60)

    matches = generate_matches()
    batch = assemble_batch(matches, SkillState())
    print(f"  {batch}")

    assert batch.num_matches == len(matches)
    assert batch.team_size == 5
    assert len(set(batch.player_ids.tolist())) == batch.num_players

    # Batch index <-> global id is a bijection
    index = batch.player_index()
    for i, pid in enumerate(batch.player_ids):
        assert index[int(pid)] == i

    # Chain length = number of appearances
    appearances = {}
    for match in matches:
        for pid in match.player_ids:
            appearances[pid] = appearances.get(pid, 0) + 1
    for i, pid in enumerate(batch.player_ids):
        assert batch.chain_lengths[i] == appearances[int(pid)]

    # Slot -> node is a bijection onto all nodes
    nodes = batch.slot_node.ravel()
    assert len(nodes) == batch.num_nodes
    assert np.array_equal(np.sort(nodes), np.arange(batch.num_nodes))

    # Slot players match the rosters, winner first
    for m, match in enumerate(matches):
        ids = batch.player_ids[batch.slot_player[m]].tolist()
        assert ids == match.rosters[1] + match.rosters[2]
        assert batch.winner_roster_ids[m] == 1
        assert batch.loser_roster_ids[m] == 2

    print("  Bijection OK")


def test_lapses():
    """Lapses are days since the previous appearance, 0 on first sighting."""
    a = [1, 2, 3, 4, 5]
    b = [6, 7, 8, 9, 10]
    c = [11, 12, 13, 14, 15]
    matches = [
        make_match(1, a, b, day=0.0),
        make_match(2, a, c, day=3.0),
        make_match(3, b, c, day=10.5),
    ]
    batch = assemble_batch(matches, SkillState())

    index = batch.player_index()
    assert batch.player_record(index[1]).time_lapses == [0.0, 3.0]
    assert batch.player_record(index[6]).time_lapses == [0.0, 10.5]
    assert batch.player_record(index[11]).time_lapses == [0.0, 7.5]

    # Last-played map is returned, not written into the state
    assert batch.last_played[1] == START + timedelta(days=3)
    assert batch.last_played[6] == START + timedelta(days=10.5)


def test_lapse_from_previous_batch():
    """Players already in the state measure lapses from their last match."""
    state = SkillState(
        beliefs={1: SkillBelief(1600.0, 100.0 ** 2)},
        last_played={1: START - timedelta(days=20)},
    )
    match = make_match(1, [1, 2, 3, 4, 5], [6, 7, 8, 9, 10], day=0.0)
    batch = assemble_batch([match], state)

    index = batch.player_index()
    assert batch.player_record(index[1]).time_lapses == [20.0]
    assert batch.prior_mu[index[1]] == 1600.0
    assert batch.prior_var[index[1]] == 100.0 ** 2
    assert batch.prior_mu[index[2]] == 1500.0
    assert batch.prior_var[index[2]] == 250.0 ** 2

    # Incoming state untouched
    assert state.last_played[1] == START - timedelta(days=20)
    assert 2 not in state.last_played


def test_prior_table():
    """Supplied priors are used for players without a belief."""
    state = SkillState.from_priors({7: (1800.0, 50.0 ** 2)})
    match = make_match(1, [1, 2, 3, 4, 5], [6, 7, 8, 9, 10])
    batch = assemble_batch([match], state, default_mu=1000.0, default_sigma=10.0)

    index = batch.player_index()
    assert batch.prior_mu[index[7]] == 1800.0
    assert batch.prior_var[index[7]] == 50.0 ** 2
    assert batch.prior_mu[index[1]] == 1000.0
    assert batch.prior_var[index[1]] == 100.0


def test_negative_lapse_clamped(caplog):
    """Out-of-order dates never produce negative lapses."""
    print("=" * 60)
    print("Testing date disorder...")
    print("=" * 60)

    a = [1, 2, 3, 4, 5]
    b = [6, 7, 8, 9, 10]
    matches = [
        make_match(1, a, b, day=5.0),
        make_match(2, b, a, day=2.0),  # Earlier than match 1
        make_match(3, a, b, day=4.0),
    ]
    with caplog.at_level(logging.WARNING):
        batch = assemble_batch(matches, SkillState())

    print(f"  Lapses: {batch.node_lapse}")
    assert (batch.node_lapse >= 0.0).all()
    assert any("Negative time lapse" in r.message for r in caplog.records)

    # Last-played follows processing order
    assert batch.last_played[1] == START + timedelta(days=4)


@pytest.mark.parametrize("match, reason", [
    (Match(1, START, {1: [1, 2, 3, 4, 5]}, winner=1), "expected 2 rosters"),
    (Match(2, START, {1: [1, 2, 3, 4], 2: [6, 7, 8, 9, 10]}, winner=1), "has 4 players"),
    (Match(3, START, {1: [1, 2, 3, 4, 5], 2: [6, 7, 8, 9, 10]}, winner=3), "not one of the rosters"),
    (Match(4, START, {1: [1, 2, 3, 4, 5], 2: [5, 7, 8, 9, 10]}, winner=1), "more than once"),
    (Match(5, START, {1: [1, 2, 3, 4, 5], 2: [6, 7, 8, 9, 10], 3: [11, 12, 13, 14, 15]},
           winner=1), "expected 2 rosters"),
])
def test_validate_match(match, reason):
    assert reason in validate_match(match)


def test_malformed_skipped_without_disturbing_indices(caplog):
    """Skipped matches leave the rest of the batch exactly as without them."""
    good = generate_matches(num_matches=10)
    bad = Match(999, START + timedelta(days=4.5),
                {1: [100, 101, 102, 103, 104], 2: [105, 106]}, winner=1)
    with_bad = good[:5] + [bad] + good[5:]

    with caplog.at_level(logging.WARNING):
        batch = assemble_batch(with_bad, SkillState())
    clean = assemble_batch(good, SkillState())

    assert batch.skipped == [999]
    assert any("999" in r.message for r in caplog.records)
    assert np.array_equal(batch.player_ids, clean.player_ids)
    assert np.array_equal(batch.slot_node, clean.slot_node)
    assert np.array_equal(batch.node_lapse, clean.node_lapse)
    assert 100 not in batch.last_played


def test_malformed_raise():
    bad = Match(42, START, {1: [1, 2, 3, 4, 5], 2: [6, 7, 8, 9, 10]}, winner=7)
    with pytest.raises(MalformedMatchError) as exc:
        assemble_batch([bad], SkillState(), on_error="raise")
    assert exc.value.match_id == 42
    assert isinstance(exc.value, ValueError)


def test_stat_tensor_and_mask():
    """Missing, NaN and negative stats are masked out, never imputed."""
    winners = [1, 2, 3, 4, 5]
    losers = [6, 7, 8, 9, 10]
    stats = {
        1: [3.0, 0.0],
        2: [None, 2.0],
        3: [float("nan"), 1.0],
        4: [-1.0, 4.0],
        6: [5.0],  # Short vector: second stat missing
    }
    match = make_match(1, winners, losers, stats=stats, length=1.5)
    batch = assemble_batch([match], SkillState(), num_stats=2)

    assert batch.stats.shape == (1, 10, 2)
    assert batch.match_length[0] == 1.5
    observed = batch.stat_observed[0]

    assert observed[0].tolist() == [True, True]
    assert batch.stats[0, 0].tolist() == [3.0, 0.0]
    assert observed[1].tolist() == [False, True]
    assert observed[2].tolist() == [False, True]
    assert observed[3].tolist() == [False, True]
    assert observed[4].tolist() == [False, False]  # Player 5 has no stats
    assert observed[5].tolist() == [True, False]
    assert not np.isnan(batch.stats).any()


def test_empty_batch():
    batch = assemble_batch([], SkillState())
    assert batch.num_matches == 0
    assert batch.num_players == 0
    assert batch.num_nodes == 0
    assert batch.slot_node.shape == (0, 10)
