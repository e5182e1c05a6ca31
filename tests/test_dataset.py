"""Tests for match loading, batching, priors and the CLI."""

from datetime import datetime
import json

import polars as pl
import pytest

from esports_ratings import Match, MatchDataset, load_priors
from esports_ratings.cli.main import main


def records():
    return [
        {
            "id": 3,
            "date": "2024-01-03T12:00:00",
            "rosters": {"1": [1, 2, 3, 4, 5], "2": [6, 7, 8, 9, 10]},
            "winner": 2,
        },
        {
            "match_id": 1,
            "date": "2024-01-01",
            "rosters": {"1": [1, 2, 3, 4, 5], "2": [11, 12, 13, 14, 15]},
            "winner": 1,
            "match_length": 1.25,
        },
        {
            "match_id": 2,
            "date": "2024-01-01",
            "rosters": {"7": [6, 7, 8, 9, 10], "8": [11, 12, 13, 14, 15]},
            "winner": 8,
            "stats": {"6": [4, 2], "11": [7, None]},
        },
    ]


def long_frame():
    rows = []
    for match_id, day, winner in ((20, 2, 1), (10, 1, 2)):
        for roster_id, players in ((1, [1, 2, 3, 4, 5]), (2, [6, 7, 8, 9, 10])):
            for pid in players:
                rows.append({
                    "match_id": match_id,
                    "date": datetime(2024, 5, day),
                    "roster_id": roster_id,
                    "player_id": pid,
                    "winner": winner,
                    "kills": float(pid),
                    "deaths": None if pid == 3 else 1.0,
                })
    return pl.DataFrame(rows)


def test_from_records_sorted():
    dataset = MatchDataset.from_records(records(), stat_names=["kills", "deaths"])

    assert [m.match_id for m in dataset] == [1, 2, 3]
    assert dataset.num_matches == 3
    assert dataset.num_players == 15
    assert dataset.min_date == datetime(2024, 1, 1)
    assert dataset.max_date == datetime(2024, 1, 3, 12)

    first = dataset[0]
    assert first.length == 1.25
    assert first.loser == 2
    assert dataset[1].player_ids[:5] == [11, 12, 13, 14, 15]
    assert dataset[1].stat_vector(11) == [7, None]
    assert dataset[1].stat_vector(12) is None


def test_from_json(tmp_path):
    path = tmp_path / "matches.json"
    path.write_text(json.dumps({"matches": records(), "stat_names": ["kills", "deaths"]}))
    dataset = MatchDataset.from_json(path)
    assert dataset.stat_names == ("kills", "deaths")
    assert len(dataset) == 3

    path.write_text(json.dumps(records()))
    assert MatchDataset.from_json(path).stat_names == ()


def test_from_dataframe():
    dataset = MatchDataset.from_dataframe(long_frame(), stat_columns=["kills", "deaths"])

    assert [m.match_id for m in dataset] == [10, 20]
    match = dataset[0]
    assert match.winner == 2
    assert match.rosters[1] == [1, 2, 3, 4, 5]
    assert match.stat_vector(7) == [7.0, 1.0]
    assert match.stat_vector(3) == [3.0, None]
    assert dataset.stat_names == ("kills", "deaths")

    # Long export reads back to the same matches
    again = MatchDataset.from_dataframe(dataset.to_dataframe(), stat_columns=["kills", "deaths"])
    assert [m.to_dict() for m in again] == [m.to_dict() for m in dataset]


def test_from_dataframe_missing_columns():
    with pytest.raises(ValueError, match="Missing required columns"):
        MatchDataset.from_dataframe(long_frame().drop("winner"))
    with pytest.raises(ValueError, match="Missing stat columns"):
        MatchDataset.from_dataframe(long_frame(), stat_columns=["assists"])


def test_iter_batches_and_filters():
    matches = [
        Match(i, datetime(2024, 2, 1 + i), {1: [1, 2, 3, 4, 5], 2: [6, 7, 8, 9, 10]}, winner=1)
        for i in range(7)
    ]
    dataset = MatchDataset(reversed(matches))

    sizes = [len(batch) for batch in dataset.iter_batches(3)]
    assert sizes == [3, 3, 1]
    assert len(list(dataset.iter_batches())) == 1
    assert list(MatchDataset().iter_batches(3)) == []

    filtered = dataset.filter_dates(end_date="2024-02-03")
    assert [m.match_id for m in filtered] == [0, 1, 2]
    filtered = dataset.filter_dates(start_date=datetime(2024, 2, 6))
    assert [m.match_id for m in filtered] == [5, 6]
    assert [m.match_id for m in dataset.exclude([0, 6])] == [1, 2, 3, 4, 5]


def test_load_priors(tmp_path):
    path = tmp_path / "priors.json"
    path.write_text(json.dumps({"1": [1700.0, 900.0], "2": {"mean": 1400, "variance": 400}}))
    priors = load_priors(path)
    assert priors == {1: (1700.0, 900.0), 2: (1400.0, 400.0)}

    path.write_text(json.dumps({"3": [1500.0, 0.0]}))
    with pytest.raises(ValueError):
        load_priors(path)


def test_cli_fit(tmp_path, capsys):
    data = tmp_path / "matches.json"
    data.write_text(json.dumps(records()))
    out = tmp_path / "ratings.json"

    code = main(["fit", str(data), "--output", str(out), "--iterations", "5", "--top", "3"])
    assert code == 0

    payload = json.loads(out.read_text())
    assert len(payload["ratings"]) == 15
    assert payload["num_matches_fitted"] == 3
    assert "Top 3 players" in capsys.readouterr().out


def test_cli_predict(tmp_path, capsys):
    data = tmp_path / "matches.json"
    data.write_text(json.dumps(records()))

    code = main(["predict", str(data), "--iterations", "5",
                 "--team1", "1", "2", "3", "4", "5", "--team2", "6", "7", "8", "9", "10"])
    assert code == 0
    assert "P(team 1 wins)" in capsys.readouterr().out


def test_cli_without_command():
    assert main([]) == 1
