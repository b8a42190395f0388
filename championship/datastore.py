import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

# PostgreSQL-backed datastore. Routes and services import from here; SQL lives
# in datastore_pg so tests can swap those functions for in-memory versions.

from . import datastore_pg as _pg
from .config import parse_points_system, parse_scoring_config
from .errors import SeasonNotFound, StandingsInvariantError
from .models import (
    Division,
    Race,
    RaceResult,
    Round,
    SeasonDriver,
    SeasonSnapshot,
    Team,
    as_utc,
)

logger = logging.getLogger(__name__)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    return as_utc(datetime.fromisoformat(str(value)))


def _result_from_row(row: Dict[str, Any], race_id: Any) -> RaceResult:
    position = row.get("position")
    return RaceResult(
        driver_id=row["driver_id"],
        race_id=race_id,
        position=int(position) if position is not None else None,
        has_fastest_lap=bool(row.get("has_fastest_lap")),
        has_pole=bool(row.get("has_pole")),
        dnf=bool(row.get("dnf")),
        dns=bool(row.get("dns")),
        penalty_ms=int(row.get("penalty_ms") or 0),
        status=row.get("status") or "confirmed",
        division_id=row.get("division_id"),
    )


def _race_from_row(row: Dict[str, Any], round_number: int) -> Race:
    race_id = row.get("race_id")
    override = row.get("points_system")
    return Race(
        race_id=race_id,
        race_number=row.get("race_number"),
        is_qualifier=bool(row.get("is_qualifier")),
        results=tuple(_result_from_row(res, race_id) for res in row.get("results", []) or []),
        points_system=(
            parse_points_system(override, prefix=f"rounds[{round_number}].races[{race_id}].")
            if override
            else None
        ),
        name=row.get("name"),
    )


def _round_from_row(row: Dict[str, Any]) -> Round:
    number = int(row["round_number"])
    override = row.get("round_points")
    round_points = parse_points_system(override, prefix=f"rounds[{number}].round_points.") if override else None
    races = tuple(_race_from_row(race, number) for race in row.get("races", []) or [])
    try:
        return Round(
            round_number=number,
            status=row.get("status") or "scheduled",
            races=races,
            completed_at=_parse_timestamp(row.get("completed_at")),
            name=row.get("name"),
            round_points=round_points,
        )
    except ValueError as e:
        # Stored data, not a settings problem: the table cannot be trusted
        logger.error("Round %s has invalid stored data: %s", number, e)
        raise StandingsInvariantError(f"Round {number}: {e}") from e


def snapshot_from_data(season: Dict[str, Any], settings: Optional[Dict[str, Any]] = None) -> SeasonSnapshot:
    """Build an immutable :class:`SeasonSnapshot` from a loaded season tree."""
    settings = settings or {}
    return SeasonSnapshot(
        season_id=season.get("season_id"),
        name=season.get("name"),
        config=parse_scoring_config(settings),
        rounds=tuple(_round_from_row(r) for r in season.get("rounds", []) or []),
        drivers=tuple(
            SeasonDriver(
                driver_id=d["driver_id"],
                name=d.get("name"),
                team_id=d.get("team_id"),
                division_id=d.get("division_id"),
            )
            for d in season.get("drivers", []) or []
        ),
        teams=tuple(Team(team_id=t["team_id"], name=t.get("name") or "") for t in season.get("teams", []) or []),
        settings_version=settings.get("version"),
        divisions_enabled=bool(season.get("race_divisions_enabled")),
        divisions=tuple(
            Division(division_id=d["division_id"], name=d.get("name") or "") for d in season.get("divisions", []) or []
        ),
    )


def list_seasons() -> List[Dict[str, Any]]:
    return _pg.list_seasons()


def load_season_snapshot(season_id: int) -> SeasonSnapshot:
    season = _pg.load_season(season_id)
    if season is None:
        raise SeasonNotFound(season_id)
    return snapshot_from_data(season, season.get("settings"))


def get_scoring_settings(season_id: int) -> Dict[str, Any]:
    return _pg.get_settings(season_id)


def set_scoring_settings(season_id: int, settings: Dict[str, Any]) -> Dict[str, Any]:
    return _pg.set_settings(season_id, settings)


def season_exists(season_id: int) -> bool:
    return any(str(s.get("season_id")) == str(season_id) for s in _pg.list_seasons() or [])
