"""Season standings: score races, total rounds, drop rounds, rank entrants."""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from functools import cmp_to_key
from typing import Dict, Hashable, Iterable, List, Optional, Tuple

from .config import SeasonScoringConfig
from .drop_rounds import DropRoundSelector
from .errors import StandingsInvariantError
from .models import (
    DivisionStandings,
    RaceResult,
    Round,
    RoundPoints,
    SeasonSnapshot,
    StandingsEntry,
    TeamStandingsEntry,
)
from .points import PointsSystem
from .tiebreakers import DriverAggregate, RaceOutcome, TiebreakerChain

logger = logging.getLogger(__name__)

# Totals are compared for equality when ranking; fractional bonuses must not
# leave float noise behind.
_POINTS_PRECISION = 6


def _id_key(value: Hashable) -> Tuple[int, object]:
    """Sort key for driver/team ids that tolerates mixed int and str ids."""
    if isinstance(value, bool):
        return (1, str(value))
    if isinstance(value, (int, float)):
        return (0, value)
    return (1, str(value))


def _id_order(a: Hashable, b: Hashable) -> int:
    ka, kb = _id_key(a), _id_key(b)
    if ka == kb:
        return 0
    return -1 if ka < kb else 1


def _fail(message: str, *args) -> None:
    logger.error(message, *args)
    raise StandingsInvariantError(message % args)


class StandingsAggregator:
    """Turn a :class:`SeasonSnapshot` into ordered standings tables.

    The aggregator holds only the compiled configuration; every call
    recomputes from the snapshot it is given.
    """

    def __init__(self, config: SeasonScoringConfig):
        self.config = config
        self.points = PointsSystem(config.points)
        self.drop_rounds = DropRoundSelector(config.drop_rounds)
        self.team_drop_rounds = DropRoundSelector(config.team_championship.drop_rounds)
        self.chain = TiebreakerChain(config.tiebreakers)

    # ------------------------------------------------------------------
    # Round selection and per-round scoring
    # ------------------------------------------------------------------
    def counted_rounds(self, rounds: Iterable[Round], as_of: Optional[datetime] = None) -> List[Round]:
        """Return completed rounds (as of ``as_of``) ordered by round number."""
        counted = sorted((r for r in rounds if r.counts_as_of(as_of)), key=lambda r: r.round_number)
        numbers = [r.round_number for r in counted]
        if len(numbers) != len(set(numbers)):
            _fail("Duplicate round numbers in season: %s", numbers)
        return counted

    def _score(self, system: PointsSystem, result: RaceResult) -> float:
        points = system.score_result(result)
        if points < 0:
            _fail("Negative points %s for driver %s in race %s", points, result.driver_id, result.race_id)
        return points

    def score_rounds(
        self, rounds: List[Round]
    ) -> Tuple[Dict[Hashable, Dict[int, float]], Dict[Hashable, List[RaceOutcome]]]:
        """Sum every race of each round per driver.

        A round in round-points mode (its own ``round_points`` table, or the
        season's) is scored once more: drivers are ordered by their race
        points in the round and the round table awards points by that order.

        Returns:
            ``(round_points, outcomes)`` where ``round_points[driver][round]``
            is the driver's total for that round and ``outcomes[driver]`` lists
            each scored result with its race metadata.
        """
        round_points: Dict[Hashable, Dict[int, float]] = {}
        outcomes: Dict[Hashable, List[RaceOutcome]] = {}
        for rnd in rounds:
            race_totals: Dict[Hashable, float] = {}
            for race in rnd.races:
                system = PointsSystem(race.points_system) if race.points_system is not None else self.points
                seen = set()
                for result in race.results:
                    if result.driver_id in seen:
                        _fail("Driver %s has more than one result in race %s", result.driver_id, race.race_id)
                    seen.add(result.driver_id)
                    race_totals[result.driver_id] = race_totals.get(result.driver_id, 0.0) + self._score(system, result)
                    outcomes.setdefault(result.driver_id, []).append(
                        RaceOutcome(
                            round_number=rnd.round_number,
                            race_id=race.race_id,
                            race_number=race.race_number,
                            is_qualifier=race.is_qualifier,
                            result=result,
                        )
                    )
            round_system = rnd.round_points or self.config.round_points
            if round_system is not None:
                race_totals = self._score_round(rnd, race_totals, PointsSystem(round_system))
            for driver_id, points in race_totals.items():
                round_points.setdefault(driver_id, {})[rnd.round_number] = points
        return round_points, outcomes

    def _score_round(
        self, rnd: Round, race_totals: Dict[Hashable, float], system: PointsSystem
    ) -> Dict[Hashable, float]:
        """Award round points from each driver's finishing order across the round.

        Drivers are ordered by race points, then by countback of their
        classified race positions, then by id. Round positions never tie. A
        driver with a DNF or DNS in any race of the round is scored as a DNF.
        """
        entries: Dict[Hashable, List[Tuple[bool, RaceResult]]] = {}
        finishes: Dict[Hashable, Dict[int, int]] = {}
        deepest = 0
        for race in rnd.races:
            for result in race.results:
                entries.setdefault(result.driver_id, []).append((race.is_qualifier, result))
                if race.is_qualifier or not result.classified:
                    continue
                counts = finishes.setdefault(result.driver_id, {})
                counts[result.position] = counts.get(result.position, 0) + 1
                deepest = max(deepest, result.position)

        def order(driver_id: Hashable):
            counts = finishes.get(driver_id, {})
            countback = tuple(-counts.get(p, 0) for p in range(1, deepest + 1))
            return (-round(race_totals[driver_id], _POINTS_PRECISION), countback, _id_key(driver_id))

        scored: Dict[Hashable, float] = {}
        for position, driver_id in enumerate(sorted(race_totals, key=order), start=1):
            driven = [result for _q, result in entries[driver_id]]
            points = system.score(
                position,
                fastest_lap=any(r.has_fastest_lap for qualifier, r in entries[driver_id] if not qualifier),
                pole=any(r.has_pole for r in driven),
                dnf=any(r.dnf or r.dns for r in driven),
                dns=all(r.dns for r in driven),
            )
            if points < 0:
                _fail("Negative round points %s for driver %s in round %s", points, driver_id, rnd.round_number)
            scored[driver_id] = points
        return scored

    def _apply_drops(
        self, selector: DropRoundSelector, round_numbers: List[int], per_round: Dict[int, float], owner: Hashable
    ) -> Tuple[List[RoundPoints], float, float]:
        totals = [(n, round(per_round.get(n, 0.0), _POINTS_PRECISION)) for n in round_numbers]
        dropped = selector.select_dropped(totals)
        if len(dropped) > selector.config.count:
            _fail("Dropped %d rounds for %s, limit is %d", len(dropped), owner, selector.config.count)
        breakdown = [RoundPoints(n, pts, n in dropped) for n, pts in totals]
        raw = round(sum(pts for _n, pts in totals), _POINTS_PRECISION)
        total = round(sum(r.points for r in breakdown if not r.dropped), _POINTS_PRECISION)
        if total < 0:
            _fail("Negative total %s for %s", total, owner)
        return breakdown, raw, total

    # ------------------------------------------------------------------
    # Driver championship
    # ------------------------------------------------------------------
    def compute(self, snapshot: SeasonSnapshot, as_of: Optional[datetime] = None) -> List[StandingsEntry]:
        """Compute the drivers' table for ``snapshot``.

        Every rostered driver appears, even without a result. Drivers with
        results but missing from the roster are included as well. Entrants
        the tiebreaker chain cannot separate share a position and the next
        entrant skips accordingly (1, 1, 3).
        """
        rounds = self.counted_rounds(snapshot.rounds, as_of)
        round_numbers = [r.round_number for r in rounds]
        round_points, outcomes = self.score_rounds(rounds)

        roster = {d.driver_id: d for d in snapshot.drivers}
        entrant_ids = sorted(set(roster) | set(round_points), key=_id_key)

        aggregates: Dict[Hashable, DriverAggregate] = {}
        breakdowns: Dict[Hashable, Tuple[List[RoundPoints], float]] = {}
        for driver_id in entrant_ids:
            breakdown, raw, total = self._apply_drops(
                self.drop_rounds, round_numbers, round_points.get(driver_id, {}), driver_id
            )
            aggregates[driver_id] = DriverAggregate(
                driver_id=driver_id,
                total_points=total,
                outcomes=outcomes.get(driver_id, []),
            )
            breakdowns[driver_id] = (breakdown, raw)

        ordered = self._rank_order(list(aggregates.values()))
        table: List[StandingsEntry] = []
        leader_total = ordered[0].total_points if ordered else 0.0
        # Entrants sharing the current position. A newcomer joins only when the
        # chain cannot separate it from any of them.
        group: List[DriverAggregate] = []
        group_position = 0
        for idx, agg in enumerate(ordered, start=1):
            position = idx
            decided_by = None
            if group and agg.total_points == group[0].total_points:
                for member in reversed(group):
                    sign, rule = self.chain.decide(member, agg)
                    if sign != 0:
                        decided_by = rule.label
                        break
                if decided_by is None:
                    position = group_position
            if position == idx:
                group, group_position = [agg], idx
            else:
                group.append(agg)

            breakdown, raw = breakdowns[agg.driver_id]
            driver = roster.get(agg.driver_id)
            races = agg.race_outcomes
            table.append(
                StandingsEntry(
                    driver_id=agg.driver_id,
                    name=driver.name if driver else None,
                    team_id=driver.team_id if driver else None,
                    total_points=agg.total_points,
                    raw_points=raw,
                    position=position,
                    gap_to_leader=round(leader_total - agg.total_points, _POINTS_PRECISION),
                    rounds=breakdown,
                    wins=agg.finishes_at(1),
                    podiums=agg.finishes_within(3),
                    fastest_laps=sum(1 for o in races if o.result.has_fastest_lap),
                    poles=sum(1 for o in agg.outcomes if o.result.has_pole),
                    tiebreaker=decided_by,
                )
            )

        logger.debug(
            "standings computed season=%s rounds=%d entrants=%d rules=%d",
            snapshot.season_id,
            len(rounds),
            len(table),
            len(self.chain),
        )
        return table

    def _rank_order(self, aggregates: List[DriverAggregate]) -> List[DriverAggregate]:
        def order(a: DriverAggregate, b: DriverAggregate) -> int:
            if a.total_points != b.total_points:
                return -1 if a.total_points > b.total_points else 1
            return self.chain.compare(a, b) or _id_order(a.driver_id, b.driver_id)

        # Start from id order so the result never depends on input order.
        aggregates.sort(key=lambda agg: _id_key(agg.driver_id))
        return sorted(aggregates, key=cmp_to_key(order))

    # ------------------------------------------------------------------
    # Team championship
    # ------------------------------------------------------------------
    def compute_teams(self, snapshot: SeasonSnapshot, as_of: Optional[datetime] = None) -> List[TeamStandingsEntry]:
        """Compute the teams' table.

        A team's round score is the sum of its drivers' round totals, limited
        to the best ``drivers_for_calculation`` drivers when configured.
        Privateers do not score for any team and teams with no rostered
        driver are left out. Equal totals share a position.
        """
        team_cfg = self.config.team_championship
        if not team_cfg.enabled:
            return []

        rounds = self.counted_rounds(snapshot.rounds, as_of)
        round_numbers = [r.round_number for r in rounds]
        round_points, _outcomes = self.score_rounds(rounds)

        members: Dict[Hashable, List[Hashable]] = {}
        for driver in snapshot.drivers:
            if driver.team_id is not None:
                members.setdefault(driver.team_id, []).append(driver.driver_id)
        names = {team.team_id: team.name for team in snapshot.teams}

        rows = []
        for team_id, driver_ids in members.items():
            per_round: Dict[int, float] = {}
            for number in round_numbers:
                scores = sorted((round_points.get(d, {}).get(number, 0.0) for d in driver_ids), reverse=True)
                if team_cfg.drivers_for_calculation is not None:
                    scores = scores[: team_cfg.drivers_for_calculation]
                per_round[number] = sum(scores)
            breakdown, raw, total = self._apply_drops(self.team_drop_rounds, round_numbers, per_round, team_id)
            rows.append((team_id, names.get(team_id) or "", breakdown, raw, total))

        rows.sort(key=lambda row: (-row[4], row[1], _id_key(row[0])))
        table: List[TeamStandingsEntry] = []
        leader_total = rows[0][4] if rows else 0.0
        prev_total: Optional[float] = None
        prev_position = 0
        for idx, (team_id, name, breakdown, raw, total) in enumerate(rows, start=1):
            position = prev_position if total == prev_total else idx
            prev_total, prev_position = total, position
            table.append(
                TeamStandingsEntry(
                    team_id=team_id,
                    name=name,
                    total_points=total,
                    raw_points=raw,
                    position=position,
                    gap_to_leader=round(leader_total - total, _POINTS_PRECISION),
                    rounds=breakdown,
                )
            )
        logger.debug("team standings computed season=%s teams=%d", snapshot.season_id, len(table))
        return table

    # ------------------------------------------------------------------
    # Division tables
    # ------------------------------------------------------------------
    def compute_divisions(
        self, snapshot: SeasonSnapshot, as_of: Optional[datetime] = None
    ) -> List[DivisionStandings]:
        """Compute one drivers' table per division.

        A result counts for the division recorded on it, or the driver's
        roster division when none is recorded. Drivers without results are
        listed under their roster division. Drivers in no division form a
        last group named ``No Division``. Returns ``[]`` unless the season
        runs divisions.
        """
        if not snapshot.divisions_enabled:
            return []

        roster = {d.driver_id: d for d in snapshot.drivers}

        def division_of(result: RaceResult) -> Optional[Hashable]:
            if result.division_id is not None:
                return result.division_id
            driver = roster.get(result.driver_id)
            return driver.division_id if driver else None

        raced: Dict[Optional[Hashable], set] = {}
        for rnd in snapshot.rounds:
            for race in rnd.races:
                for result in race.results:
                    raced.setdefault(division_of(result), set()).add(result.driver_id)
        drivers_with_results = set().union(*raced.values()) if raced else set()

        names = {d.division_id: d.name for d in snapshot.divisions}
        keys: List[Optional[Hashable]] = list(names)
        keys += sorted((k for k in raced if k is not None and k not in names), key=_id_key)
        unassigned = [d for d in snapshot.drivers if d.division_id is None and d.driver_id not in drivers_with_results]
        if None in raced or unassigned:
            keys.append(None)

        tables: List[DivisionStandings] = []
        for key in keys:
            members = raced.get(key, set())
            drivers = tuple(
                d
                for d in snapshot.drivers
                if d.driver_id in members or (d.division_id == key and d.driver_id not in drivers_with_results)
            )
            rounds = tuple(
                replace(
                    rnd,
                    races=tuple(
                        replace(race, results=tuple(r for r in race.results if division_of(r) == key))
                        for race in rnd.races
                    ),
                )
                for rnd in snapshot.rounds
            )
            part = replace(snapshot, rounds=rounds, drivers=drivers)
            name = names.get(key) or ("No Division" if key is None else str(key))
            tables.append(DivisionStandings(division_id=key, name=name, standings=self.compute(part, as_of=as_of)))
        logger.debug("division standings computed season=%s divisions=%d", snapshot.season_id, len(tables))
        return tables


def compute_season_standings(snapshot: SeasonSnapshot, as_of: Optional[datetime] = None) -> List[StandingsEntry]:
    """Convenience wrapper: compile the snapshot's config and rank its drivers."""
    return StandingsAggregator(snapshot.config).compute(snapshot, as_of=as_of)


def compute_season_team_standings(
    snapshot: SeasonSnapshot, as_of: Optional[datetime] = None
) -> List[TeamStandingsEntry]:
    return StandingsAggregator(snapshot.config).compute_teams(snapshot, as_of=as_of)


def compute_season_division_standings(
    snapshot: SeasonSnapshot, as_of: Optional[datetime] = None
) -> List[DivisionStandings]:
    return StandingsAggregator(snapshot.config).compute_divisions(snapshot, as_of=as_of)


__all__ = [
    "StandingsAggregator",
    "compute_season_division_standings",
    "compute_season_standings",
    "compute_season_team_standings",
]
