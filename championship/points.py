"""Per-race points: position table lookups plus fastest-lap and pole bonuses."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple, Union

Number = Union[int, float]


@dataclass(frozen=True)
class BonusRule:
    """A flat bonus for a flag on the result (fastest lap, pole).

    ``max_position`` gates the bonus on the driver's finishing position in
    that race: with ``max_position=10`` a fastest lap set from 12th scores
    nothing. ``None`` disables the gate.
    """

    enabled: bool = False
    points: float = 1.0
    max_position: Optional[int] = None

    def __post_init__(self):
        if self.points < 0:
            raise ValueError("bonus points must not be negative")
        if self.max_position is not None and self.max_position < 1:
            raise ValueError("bonus max_position must be at least 1")

    def allows(self, position: Optional[int]) -> bool:
        if self.max_position is None:
            return True
        return position is not None and position <= self.max_position


@dataclass(frozen=True)
class PointsSystemConfig:
    points_by_position: Tuple[Tuple[int, float], ...]
    fastest_lap: BonusRule = BonusRule()
    pole: BonusRule = BonusRule()
    # When set, a DNF keeps its bonuses (the position gate is not consulted).
    bonus_independent_of_finish: bool = False
    _lookup: Dict[int, float] = field(init=False, repr=False, compare=False, hash=False)

    def __post_init__(self):
        if not self.points_by_position:
            raise ValueError("points table must not be empty")
        lookup: Dict[int, float] = {}
        for position, points in self.points_by_position:
            if position < 1:
                raise ValueError(f"invalid position {position} in points table")
            if position in lookup:
                raise ValueError(f"duplicate position {position} in points table")
            if points < 0:
                raise ValueError(f"negative points for position {position}")
            lookup[position] = float(points)
        object.__setattr__(self, "_lookup", lookup)

    @classmethod
    def from_mapping(cls, table: Mapping[int, Number], **kwargs) -> "PointsSystemConfig":
        return cls(tuple(sorted((int(p), float(v)) for p, v in table.items())), **kwargs)

    def base_points(self, position: int) -> float:
        """Return the table points for a classified position (zero beyond the table)."""
        return self._lookup.get(position, 0.0)


class PointsSystem:
    """Score single race results against a :class:`PointsSystemConfig`."""

    def __init__(self, config: PointsSystemConfig):
        self.config = config

    def score(
        self,
        position: Optional[int],
        fastest_lap: bool = False,
        pole: bool = False,
        dnf: bool = False,
        dns: bool = False,
    ) -> float:
        """Return the points one result earns.

        Args:
            position: Finishing position, ``None`` when unclassified.
            fastest_lap: Driver set the fastest lap of the race.
            pole: Driver took pole position.
            dnf: Driver did not finish.
            dns: Driver did not start.

        Returns:
            Race points plus any bonus the configuration allows. Never negative.
        """
        cfg = self.config
        if dns:
            return 0.0
        if dnf:
            if not cfg.bonus_independent_of_finish:
                return 0.0
            points = 0.0
            if fastest_lap and cfg.fastest_lap.enabled:
                points += cfg.fastest_lap.points
            if pole and cfg.pole.enabled:
                points += cfg.pole.points
            return points
        if position is None:
            return 0.0

        points = cfg.base_points(position)
        if fastest_lap and cfg.fastest_lap.enabled and cfg.fastest_lap.allows(position):
            points += cfg.fastest_lap.points
        if pole and cfg.pole.enabled and cfg.pole.allows(position):
            points += cfg.pole.points
        return points

    def score_result(self, result) -> float:
        return self.score(
            result.position,
            fastest_lap=result.has_fastest_lap,
            pole=result.has_pole,
            dnf=result.dnf,
            dns=result.dns,
        )


__all__ = [
    "BonusRule",
    "PointsSystem",
    "PointsSystemConfig",
]
