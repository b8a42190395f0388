"""Immutable season records consumed by the standings engine, and its output rows."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Hashable, List, Optional, Tuple

from .points import PointsSystemConfig

if TYPE_CHECKING:  # pragma: no cover
    from .config import SeasonScoringConfig

DriverId = Hashable

ROUND_SCHEDULED = "scheduled"
ROUND_IN_PROGRESS = "in_progress"
ROUND_COMPLETED = "completed"
ROUND_STATUSES = (ROUND_SCHEDULED, ROUND_IN_PROGRESS, ROUND_COMPLETED)


@dataclass(frozen=True)
class RaceResult:
    """One driver's recorded result in one race.

    ``position`` is ``None`` when the driver was not classified. Results are
    never edited in place: a correction replaces the race's whole result set.
    """

    driver_id: DriverId
    race_id: Any
    position: Optional[int] = None
    has_fastest_lap: bool = False
    has_pole: bool = False
    dnf: bool = False
    dns: bool = False
    penalty_ms: int = 0
    status: str = "confirmed"
    # Set when the season runs separate division tables.
    division_id: Optional[Hashable] = None

    @property
    def classified(self) -> bool:
        """True for a counted finish: a position, and neither DNF nor DNS."""
        return self.position is not None and not self.dnf and not self.dns

    @property
    def entered(self) -> bool:
        return not self.dns


@dataclass(frozen=True)
class Race:
    race_id: Any
    race_number: Optional[int] = None
    is_qualifier: bool = False
    results: Tuple[RaceResult, ...] = ()
    # Sprint/feature races may score with their own table.
    points_system: Optional[PointsSystemConfig] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class Round:
    round_number: int
    status: str = ROUND_SCHEDULED
    races: Tuple[Race, ...] = ()
    completed_at: Optional[datetime] = None
    name: Optional[str] = None
    # Round-points mode: the round is scored from the driver's finishing
    # order across the round rather than by summing race points.
    round_points: Optional[PointsSystemConfig] = None

    def __post_init__(self):
        if self.status not in ROUND_STATUSES:
            raise ValueError(f"Unknown round status {self.status!r}")

    @property
    def completed(self) -> bool:
        return self.status == ROUND_COMPLETED

    def counts_as_of(self, as_of: Optional[datetime]) -> bool:
        """Return True when this round contributes to standings at ``as_of``."""
        if not self.completed:
            return False
        if as_of is None:
            return True
        return self.completed_at is not None and as_utc(self.completed_at) <= as_utc(as_of)


@dataclass(frozen=True)
class SeasonDriver:
    driver_id: DriverId
    name: Optional[str] = None
    team_id: Optional[Hashable] = None
    division_id: Optional[Hashable] = None


@dataclass(frozen=True)
class Team:
    team_id: Hashable
    name: str = ""


@dataclass(frozen=True)
class Division:
    division_id: Hashable
    name: str = ""


@dataclass(frozen=True)
class SeasonSnapshot:
    """A single consistent read of everything standings need for one season."""

    season_id: Any
    config: "SeasonScoringConfig"
    rounds: Tuple[Round, ...] = ()
    drivers: Tuple[SeasonDriver, ...] = ()
    teams: Tuple[Team, ...] = ()
    name: Optional[str] = None
    settings_version: Optional[int] = None
    divisions_enabled: bool = False
    divisions: Tuple[Division, ...] = ()


@dataclass(frozen=True)
class RoundPoints:
    round_number: int
    points: float
    dropped: bool = False


@dataclass
class StandingsEntry:
    driver_id: DriverId
    name: Optional[str]
    team_id: Optional[Hashable]
    total_points: float
    raw_points: float
    position: int
    gap_to_leader: float
    rounds: List[RoundPoints] = field(default_factory=list)
    wins: int = 0
    podiums: int = 0
    fastest_laps: int = 0
    poles: int = 0
    # Rule that separated this entry from the entries above it on equal points.
    tiebreaker: Optional[str] = None

    @property
    def dropped_rounds(self) -> List[int]:
        return [r.round_number for r in self.rounds if r.dropped]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "driver_id": self.driver_id,
            "name": self.name,
            "team_id": self.team_id,
            "position": self.position,
            "total_points": self.total_points,
            "raw_points": self.raw_points,
            "gap_to_leader": self.gap_to_leader,
            "rounds": [
                {"round_number": r.round_number, "points": r.points, "dropped": r.dropped}
                for r in self.rounds
            ],
            "dropped_rounds": self.dropped_rounds,
            "wins": self.wins,
            "podiums": self.podiums,
            "fastest_laps": self.fastest_laps,
            "poles": self.poles,
            "tiebreaker": self.tiebreaker,
        }


@dataclass
class TeamStandingsEntry:
    team_id: Hashable
    name: str
    total_points: float
    raw_points: float
    position: int
    gap_to_leader: float
    rounds: List[RoundPoints] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "team_id": self.team_id,
            "name": self.name,
            "position": self.position,
            "total_points": self.total_points,
            "raw_points": self.raw_points,
            "gap_to_leader": self.gap_to_leader,
            "rounds": [
                {"round_number": r.round_number, "points": r.points, "dropped": r.dropped}
                for r in self.rounds
            ],
        }


@dataclass
class DivisionStandings:
    """One division's drivers table. ``division_id`` is ``None`` for drivers in no division."""

    division_id: Optional[Hashable]
    name: str
    standings: List[StandingsEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "division_id": self.division_id,
            "name": self.name,
            "standings": [entry.to_dict() for entry in self.standings],
        }

def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return ``value`` as an aware UTC datetime; naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
