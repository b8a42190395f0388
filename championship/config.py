"""Season scoring settings: stored JSON shape, defaults, and save-time validation.

Settings are stored per season as a JSON document (see
``DEFAULT_SCORING_SETTINGS`` for the shape). :func:`parse_scoring_config`
validates a document and compiles it into the immutable
:class:`SeasonScoringConfig` the engine runs on. Validation failures raise
:class:`~championship.errors.ConfigurationError` naming the offending field.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .drop_rounds import DropRoundsConfig
from .errors import ConfigurationError
from .points import BonusRule, PointsSystemConfig
from .tiebreakers import TiebreakerKind, TiebreakerRule

DEFAULT_SCORING_SETTINGS: Dict[str, Any] = {
    "points_by_position": [
        {"position": 1, "points": 25},
        {"position": 2, "points": 18},
        {"position": 3, "points": 15},
        {"position": 4, "points": 12},
        {"position": 5, "points": 10},
        {"position": 6, "points": 8},
        {"position": 7, "points": 6},
        {"position": 8, "points": 4},
        {"position": 9, "points": 2},
        {"position": 10, "points": 1},
    ],
    "fastest_lap": {"enabled": False, "points": 1, "max_position": None},
    "pole": {"enabled": False, "points": 1, "max_position": None},
    # Bonuses need a classified finish unless a league opts out.
    "bonus_independent_of_finish": False,
    # Round-points mode: rank drivers within each round by their race points
    # and score the round from this table instead of summing race points.
    "round_points": {"enabled": False},
    "drop_rounds": {"enabled": False, "count": 0},
    "tiebreakers": [{"rule": "best_result_all_races"}],
    "team_championship": {
        "enabled": False,
        "drivers_for_calculation": None,
        "drop_rounds": {"enabled": False, "count": 0},
    },
}


@dataclass(frozen=True)
class TeamChampionshipConfig:
    enabled: bool = False
    drivers_for_calculation: Optional[int] = None
    drop_rounds: DropRoundsConfig = DropRoundsConfig()

    def __post_init__(self):
        if self.drivers_for_calculation is not None and self.drivers_for_calculation < 1:
            raise ValueError("drivers_for_calculation must be at least 1")


@dataclass(frozen=True)
class SeasonScoringConfig:
    points: PointsSystemConfig
    drop_rounds: DropRoundsConfig = DropRoundsConfig()
    tiebreakers: Tuple[TiebreakerRule, ...] = ()
    team_championship: TeamChampionshipConfig = field(default_factory=TeamChampionshipConfig)
    round_points: Optional[PointsSystemConfig] = None


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _require_bool(value: Any, name: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigurationError(name, "must be true or false")
    return value


def _optional_position(value: Any, name: str) -> Optional[int]:
    if value is None:
        return None
    if not _is_int(value) or value < 1:
        raise ConfigurationError(name, "must be a position of at least 1 or null")
    return value


def _mapping(value: Any, name: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ConfigurationError(name, "must be an object")
    return value


def _parse_bonus(raw: Any, name: str) -> BonusRule:
    raw = _mapping(raw, name)
    points = raw.get("points", 1)
    if not _is_number(points) or points < 0:
        raise ConfigurationError(f"{name}.points", "must be a non-negative number")
    return BonusRule(
        enabled=_require_bool(raw.get("enabled", False), f"{name}.enabled"),
        points=float(points),
        max_position=_optional_position(raw.get("max_position"), f"{name}.max_position"),
    )


def parse_points_system(raw: Mapping[str, Any], prefix: str = "") -> PointsSystemConfig:
    """Validate the points part of a settings document.

    ``prefix`` is prepended to field names in error messages, e.g. when the
    document is a per-race override.
    """
    table = raw.get("points_by_position")
    name = f"{prefix}points_by_position"
    if not isinstance(table, list) or not table:
        raise ConfigurationError(name, "must be a non-empty list")
    pairs: List[Tuple[int, float]] = []
    seen = set()
    for idx, item in enumerate(table):
        item = _mapping(item, f"{name}[{idx}]")
        position = item.get("position")
        points = item.get("points")
        if not _is_int(position) or position < 1:
            raise ConfigurationError(f"{name}[{idx}].position", "must be a position of at least 1")
        if position in seen:
            raise ConfigurationError(f"{name}[{idx}].position", f"duplicate position {position}")
        if not _is_number(points) or points < 0:
            raise ConfigurationError(f"{name}[{idx}].points", "must be a non-negative number")
        seen.add(position)
        pairs.append((position, float(points)))
    pairs.sort()
    return PointsSystemConfig(
        points_by_position=tuple(pairs),
        fastest_lap=_parse_bonus(raw.get("fastest_lap", {}), f"{prefix}fastest_lap"),
        pole=_parse_bonus(raw.get("pole", {}), f"{prefix}pole"),
        bonus_independent_of_finish=_require_bool(
            raw.get("bonus_independent_of_finish", False), f"{prefix}bonus_independent_of_finish"
        ),
    )


def _parse_drop_rounds(raw: Any, name: str) -> DropRoundsConfig:
    raw = _mapping(raw, name)
    count = raw.get("count", 0)
    if not _is_int(count) or count < 0:
        raise ConfigurationError(f"{name}.count", "must be a non-negative integer")
    enabled = _require_bool(raw.get("enabled", False), f"{name}.enabled")
    if not enabled and count > 0:
        raise ConfigurationError(f"{name}.count", "must be 0 while drop rounds are disabled")
    return DropRoundsConfig(enabled=enabled, count=count)


def _parse_round_points(raw: Any) -> Optional[PointsSystemConfig]:
    raw = _mapping(raw, "round_points")
    if not _require_bool(raw.get("enabled", False), "round_points.enabled"):
        return None
    return parse_points_system(raw, prefix="round_points.")


def _parse_tiebreakers(raw: Any) -> Tuple[TiebreakerRule, ...]:
    if not isinstance(raw, list):
        raise ConfigurationError("tiebreakers", "must be a list")
    rules: List[TiebreakerRule] = []
    for idx, item in enumerate(raw):
        name = f"tiebreakers[{idx}]"
        if isinstance(item, str):
            item = {"rule": item}
        item = _mapping(item, name)
        try:
            kind = TiebreakerKind(item.get("rule"))
        except ValueError:
            raise ConfigurationError(f"{name}.rule", f"unknown tiebreaker rule {item.get('rule')!r}") from None
        position = item.get("position")
        if kind is TiebreakerKind.MOST_FINISHES_AT_POSITION:
            if not _is_int(position) or position < 1:
                raise ConfigurationError(f"{name}.position", "must be a position of at least 1")
        elif position is not None:
            raise ConfigurationError(f"{name}.position", f"not accepted by {kind.value}")
        rule = TiebreakerRule(kind=kind, position=position)
        if rule in rules:
            raise ConfigurationError(f"{name}.rule", f"duplicate tiebreaker rule {rule.label}")
        rules.append(rule)
    return tuple(rules)


def _parse_team_championship(raw: Any) -> TeamChampionshipConfig:
    raw = _mapping(raw, "team_championship")
    return TeamChampionshipConfig(
        enabled=_require_bool(raw.get("enabled", False), "team_championship.enabled"),
        drivers_for_calculation=_optional_position(
            raw.get("drivers_for_calculation"), "team_championship.drivers_for_calculation"
        ),
        drop_rounds=_parse_drop_rounds(raw.get("drop_rounds", {}), "team_championship.drop_rounds"),
    )


def merge_with_defaults(raw: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Return a full settings document, filling missing top-level keys from defaults."""
    merged = copy.deepcopy(DEFAULT_SCORING_SETTINGS)
    for key, value in (raw or {}).items():
        if key in merged:
            merged[key] = copy.deepcopy(value)
    return merged


def parse_scoring_config(raw: Optional[Mapping[str, Any]]) -> SeasonScoringConfig:
    """Validate a settings document and compile it.

    Args:
        raw: Stored settings; missing keys take their documented defaults.
            Bookkeeping keys such as ``version`` and ``updated_at`` are ignored.

    Returns:
        The immutable configuration for one standings computation.

    Raises:
        ConfigurationError: A setting is invalid; ``field`` names it.
    """
    if raw is not None and not isinstance(raw, Mapping):
        raise ConfigurationError("settings", "must be an object")
    doc = merge_with_defaults(raw)
    return SeasonScoringConfig(
        points=parse_points_system(doc),
        drop_rounds=_parse_drop_rounds(doc["drop_rounds"], "drop_rounds"),
        tiebreakers=_parse_tiebreakers(doc["tiebreakers"]),
        team_championship=_parse_team_championship(doc["team_championship"]),
        round_points=_parse_round_points(doc["round_points"]),
    )


def _bonus_to_dict(rule: BonusRule) -> Dict[str, Any]:
    return {"enabled": rule.enabled, "points": rule.points, "max_position": rule.max_position}


def points_system_to_dict(config: PointsSystemConfig) -> Dict[str, Any]:
    return {
        "points_by_position": [{"position": p, "points": v} for p, v in config.points_by_position],
        "fastest_lap": _bonus_to_dict(config.fastest_lap),
        "pole": _bonus_to_dict(config.pole),
        "bonus_independent_of_finish": config.bonus_independent_of_finish,
    }


def scoring_config_to_dict(config: SeasonScoringConfig) -> Dict[str, Any]:
    """Serialize a compiled configuration back to its stored shape."""
    doc = points_system_to_dict(config.points)
    doc["drop_rounds"] = {"enabled": config.drop_rounds.enabled, "count": config.drop_rounds.count}
    doc["tiebreakers"] = [rule.to_dict() for rule in config.tiebreakers]
    team = config.team_championship
    doc["team_championship"] = {
        "enabled": team.enabled,
        "drivers_for_calculation": team.drivers_for_calculation,
        "drop_rounds": {"enabled": team.drop_rounds.enabled, "count": team.drop_rounds.count},
    }
    if config.round_points is None:
        doc["round_points"] = {"enabled": False}
    else:
        doc["round_points"] = {"enabled": True, **points_system_to_dict(config.round_points)}
    return doc
