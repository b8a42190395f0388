"""Public standings operations: load one season snapshot and rank it."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from . import datastore
from .aggregator import StandingsAggregator
from .models import DivisionStandings, StandingsEntry, TeamStandingsEntry, as_utc


def compute_standings(season_id: int, as_of: Optional[datetime] = None) -> List[StandingsEntry]:
    """Return the drivers' championship table for a season.

    Args:
        season_id: Season to rank.
        as_of: Only count rounds completed at or before this moment.

    Raises:
        SeasonNotFound: No such season.
    """
    snapshot = datastore.load_season_snapshot(season_id)
    return StandingsAggregator(snapshot.config).compute(snapshot, as_of=as_utc(as_of))


def compute_team_standings(season_id: int, as_of: Optional[datetime] = None) -> List[TeamStandingsEntry]:
    snapshot = datastore.load_season_snapshot(season_id)
    return StandingsAggregator(snapshot.config).compute_teams(snapshot, as_of=as_utc(as_of))


def compute_division_standings(season_id: int, as_of: Optional[datetime] = None) -> List[DivisionStandings]:
    """Return one drivers' table per division, or ``[]`` when the season has no divisions."""
    snapshot = datastore.load_season_snapshot(season_id)
    return StandingsAggregator(snapshot.config).compute_divisions(snapshot, as_of=as_utc(as_of))


def standings_report(season_id: int, as_of: Optional[datetime] = None, kind: str = "drivers") -> Dict[str, Any]:
    """Standings plus the metadata needed to version a published table.

    A table is identified by season, settings version and the last round it
    counts (``as_of_round``), so archived copies never need updating in place.
    ``kind`` picks the table: ``drivers``, ``teams`` or ``divisions``.
    """
    as_of = as_utc(as_of)
    snapshot = datastore.load_season_snapshot(season_id)
    aggregator = StandingsAggregator(snapshot.config)
    counted = aggregator.counted_rounds(snapshot.rounds, as_of)
    if kind == "teams":
        rows = [entry.to_dict() for entry in aggregator.compute_teams(snapshot, as_of=as_of)]
    elif kind == "divisions":
        rows = [table.to_dict() for table in aggregator.compute_divisions(snapshot, as_of=as_of)]
    else:
        rows = [entry.to_dict() for entry in aggregator.compute(snapshot, as_of=as_of)]
    return {
        "season_id": snapshot.season_id,
        "season_name": snapshot.name,
        "as_of": as_of.isoformat() if as_of else None,
        "as_of_round": counted[-1].round_number if counted else None,
        "rounds_counted": [r.round_number for r in counted],
        "settings_version": snapshot.settings_version,
        "standings": rows,
    }
