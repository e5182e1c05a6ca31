"""Data types for team match records."""

from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Any, Dict, List, Optional, Sequence

TEAM_SIZE = 5  # Players per roster


def to_datetime(value: Any) -> datetime:
    """Normalise ISO strings and ``date`` objects to ``datetime``."""
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time())
    if isinstance(value, str):
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    raise TypeError(f"Cannot interpret {value!r} as a date")


def days_between(start: datetime, end: datetime) -> float:
    """Elapsed (fractional) days from start to end; negative if end < start."""
    return (end - start).total_seconds() / 86400.0


@dataclass
class Match:
    """
    A single 5-versus-5 match.

    Attributes:
        match_id: Unique match identifier
        date: When the match was played
        rosters: Roster id -> ordered list of player ids
        winner: Roster id of the winning roster
        tier: Competition tier (informational)
        length: Match length, scales the stat regression factor
        stats: Optional player id -> stat vector (None / NaN / negative = missing)
    """

    match_id: int
    date: datetime
    rosters: Dict[int, List[int]]
    winner: int
    tier: int = 0
    length: float = 1.0
    stats: Optional[Dict[int, List[Optional[float]]]] = None

    def __post_init__(self):
        self.match_id = int(self.match_id)
        self.date = to_datetime(self.date)
        self.rosters = {
            int(roster_id): [int(p) for p in players]
            for roster_id, players in self.rosters.items()
        }
        self.winner = int(self.winner)
        self.tier = int(self.tier) if self.tier is not None else 0
        self.length = float(self.length) if self.length is not None else 1.0
        if self.stats is not None:
            self.stats = {int(pid): list(values) for pid, values in self.stats.items()}

    @property
    def loser(self) -> Optional[int]:
        """Roster id of the losing roster (None if the winner is not a roster)."""
        if self.winner not in self.rosters:
            return None
        others = [r for r in self.rosters if r != self.winner]
        return others[0] if len(others) == 1 else None

    @property
    def player_ids(self) -> List[int]:
        """All player ids, winning roster first."""
        ordered = []
        if self.winner in self.rosters:
            ordered.extend(self.rosters[self.winner])
        for roster_id, players in self.rosters.items():
            if roster_id != self.winner:
                ordered.extend(players)
        return ordered

    def stat_vector(self, player_id: int) -> Optional[Sequence[Optional[float]]]:
        """Stat vector for a player, or None when no stats were recorded."""
        if self.stats is None:
            return None
        return self.stats.get(player_id)

    def to_dict(self) -> Dict:
        """JSON-serialisable representation."""
        record = {
            "match_id": self.match_id,
            "date": self.date.isoformat(),
            "rosters": {str(k): list(v) for k, v in self.rosters.items()},
            "winner": self.winner,
            "tier": self.tier,
            "length": self.length,
        }
        if self.stats is not None:
            record["stats"] = {str(k): list(v) for k, v in self.stats.items()}
        return record

    @classmethod
    def from_dict(cls, record: Dict) -> "Match":
        """Build a match from a JSON-style record (``id`` is accepted for ``match_id``)."""
        match_id = record["match_id"] if "match_id" in record else record["id"]
        return cls(
            match_id=match_id,
            date=record["date"],
            rosters=record["rosters"],
            winner=record["winner"],
            tier=record.get("tier", 0),
            length=record.get("length", record.get("match_length", 1.0)),
            stats=record.get("stats"),
        )
