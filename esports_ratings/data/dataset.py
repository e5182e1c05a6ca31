"""Dataset classes for loading and batching match data.

Uses Polars for tabular input (one row per match and player) and for
summaries; matches are kept as ``Match`` records in chronological order.
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

import polars as pl

from .types import Match, to_datetime


class MatchDataset:
    """
    Container for chronologically ordered match records.

    Matches are sorted by (date, match_id), the order in which the batch
    assembler must see them.

    Provides methods for:
    - Loading data from JSON records, Polars/pandas DataFrames and parquet files
    - Filtering by date range and excluding matches
    - Iterating over fixed-size sequential batches
    """

    REQUIRED_COLUMNS = {"match_id", "date", "roster_id", "player_id", "winner"}

    def __init__(
        self,
        matches: Optional[Iterable[Match]] = None,
        stat_names: Optional[Sequence[str]] = None,
    ):
        """
        Initialize dataset.

        Args:
            matches: Match records in any order
            stat_names: Names of the entries of each player's stat vector
        """
        self._matches: List[Match] = sorted(
            matches or [], key=lambda m: (m.date, m.match_id)
        )
        self.stat_names = tuple(stat_names) if stat_names else ()

    @classmethod
    def from_records(
        cls,
        records: Iterable[Dict],
        stat_names: Optional[Sequence[str]] = None,
    ) -> "MatchDataset":
        """Create dataset from JSON-style match dictionaries."""
        return cls([Match.from_dict(r) for r in records], stat_names=stat_names)

    @classmethod
    def from_json(cls, path: Union[str, Path]) -> "MatchDataset":
        """
        Load dataset from a JSON file.

        Accepts either a list of match records or an object with a
        ``matches`` list and an optional ``stat_names`` list.
        """
        with open(path) as f:
            payload = json.load(f)
        if isinstance(payload, dict):
            return cls.from_records(payload["matches"], stat_names=payload.get("stat_names"))
        return cls.from_records(payload)

    @classmethod
    def from_dataframe(
        cls,
        df,
        stat_columns: Optional[Sequence[str]] = None,
    ) -> "MatchDataset":
        """
        Create dataset from a long DataFrame (pandas or polars).

        One row per (match, player) with columns match_id, date, roster_id,
        player_id, winner and optionally tier, length and the stat columns.
        Row order within a roster is the roster order.
        """
        if not isinstance(df, pl.DataFrame):
            # Assume pandas DataFrame - convert to polars
            df = pl.from_pandas(df)

        missing = cls.REQUIRED_COLUMNS - set(df.columns)
        if missing:
            raise ValueError(f"Missing required columns: {missing}")

        stat_columns = list(stat_columns or [])
        missing_stats = set(stat_columns) - set(df.columns)
        if missing_stats:
            raise ValueError(f"Missing stat columns: {missing_stats}")

        has_tier = "tier" in df.columns
        has_length = "length" in df.columns

        df = df.sort(["date", "match_id"], maintain_order=True)

        matches = []
        for group in df.partition_by("match_id", maintain_order=True):
            rows = group.to_dicts()
            first = rows[0]
            rosters: Dict[int, List[int]] = {}
            stats: Optional[Dict[int, List[Optional[float]]]] = {} if stat_columns else None
            for row in rows:
                rosters.setdefault(int(row["roster_id"]), []).append(int(row["player_id"]))
                if stats is not None:
                    stats[int(row["player_id"])] = [row[c] for c in stat_columns]

            matches.append(Match(
                match_id=first["match_id"],
                date=first["date"],
                rosters=rosters,
                winner=first["winner"],
                tier=first["tier"] if has_tier else 0,
                length=first["length"] if has_length else 1.0,
                stats=stats,
            ))

        return cls(matches, stat_names=stat_columns)

    @classmethod
    def from_parquet(
        cls,
        path: Union[str, Path],
        stat_columns: Optional[Sequence[str]] = None,
    ) -> "MatchDataset":
        """Load dataset from a long-format parquet file."""
        return cls.from_dataframe(pl.read_parquet(path), stat_columns=stat_columns)

    @property
    def matches(self) -> List[Match]:
        return self._matches

    @property
    def num_matches(self) -> int:
        return len(self._matches)

    @property
    def player_ids(self) -> List[int]:
        """Sorted list of distinct player ids."""
        seen = set()
        for match in self._matches:
            for players in match.rosters.values():
                seen.update(players)
        return sorted(seen)

    @property
    def num_players(self) -> int:
        return len(self.player_ids)

    @property
    def min_date(self) -> datetime:
        """First match date in the dataset."""
        if not self._matches:
            raise ValueError("No data loaded")
        return self._matches[0].date

    @property
    def max_date(self) -> datetime:
        """Last match date in the dataset."""
        if not self._matches:
            raise ValueError("No data loaded")
        return self._matches[-1].date

    def filter_dates(
        self,
        start_date=None,
        end_date=None,
    ) -> "MatchDataset":
        """
        Create a new dataset filtered to a date range.

        Args:
            start_date: First date to include (inclusive)
            end_date: Last date to include (inclusive)
        """
        start = to_datetime(start_date) if start_date is not None else None
        end = to_datetime(end_date) if end_date is not None else None
        kept = [
            m for m in self._matches
            if (start is None or m.date >= start) and (end is None or m.date <= end)
        ]
        return MatchDataset(kept, stat_names=self.stat_names)

    def exclude(self, match_ids: Iterable[int]) -> "MatchDataset":
        """Create a new dataset without the given matches."""
        excluded = {int(m) for m in match_ids}
        kept = [m for m in self._matches if m.match_id not in excluded]
        return MatchDataset(kept, stat_names=self.stat_names)

    def iter_batches(self, batch_size: Optional[int] = None) -> Iterator[List[Match]]:
        """
        Iterate over consecutive batches of matches.

        Args:
            batch_size: Matches per batch (None = a single batch with everything)
        """
        if not self._matches:
            return
        if batch_size is None or batch_size <= 0:
            yield list(self._matches)
            return
        for start in range(0, len(self._matches), batch_size):
            yield self._matches[start:start + batch_size]

    def to_records(self) -> List[Dict]:
        """Export matches as JSON-serialisable dictionaries."""
        return [m.to_dict() for m in self._matches]

    def to_dataframe(self) -> pl.DataFrame:
        """Export to the long format accepted by ``from_dataframe``."""
        rows = []
        for match in self._matches:
            for roster_id, players in match.rosters.items():
                for pid in players:
                    row = {
                        "match_id": match.match_id,
                        "date": match.date,
                        "roster_id": roster_id,
                        "player_id": pid,
                        "winner": match.winner,
                        "tier": match.tier,
                        "length": match.length,
                    }
                    vector = match.stat_vector(pid)
                    for i, name in enumerate(self.stat_names):
                        value = vector[i] if vector is not None and i < len(vector) else None
                        row[name] = None if value is None else float(value)
                    rows.append(row)
        return pl.DataFrame(rows, infer_schema_length=None)

    def __len__(self) -> int:
        return self.num_matches

    def __iter__(self) -> Iterator[Match]:
        return iter(self._matches)

    def __getitem__(self, index: int) -> Match:
        return self._matches[index]

    def __repr__(self) -> str:
        if not self._matches:
            return "MatchDataset(empty)"
        return (
            f"MatchDataset(matches={self.num_matches:,}, players={self.num_players:,}, "
            f"range=[{self.min_date.date()}, {self.max_date.date()}])"
        )


def load_priors(path: Union[str, Path]) -> Dict[int, Tuple[float, float]]:
    """
    Load a prior table ``{player_id: [mean, variance]}`` from JSON.

    Keys are converted to int (JSON object keys are strings).
    """
    with open(path) as f:
        payload = json.load(f)
    priors = {}
    for pid, value in payload.items():
        if isinstance(value, dict):
            mean, variance = value["mean"], value["variance"]
        else:
            mean, variance = value
        if variance <= 0:
            raise ValueError(f"Prior variance for player {pid} must be positive, got {variance}")
        priors[int(pid)] = (float(mean), float(variance))
    return priors
