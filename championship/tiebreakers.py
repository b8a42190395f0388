"""Tiebreaker rules for entrants level on points.

Each rule is a small pure comparator registered under a :class:`TiebreakerKind`.
A league stores its chain as an ordered list of rule kinds (plus parameters);
:class:`TiebreakerChain` composes the registered comparators in that order and
stops at the first rule that separates the two entrants.

Comparators return a negative number when ``a`` ranks ahead of ``b``, positive
when ``b`` ranks ahead, and ``0`` when the rule cannot separate them.
Qualifying sessions are ignored by every rule except ``most_poles`` and
``highest_qualifying_position``.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Hashable, Iterable, List, Optional, Sequence, Tuple

from .models import RaceResult


class TiebreakerKind(str, enum.Enum):
    MOST_WINS = "most_wins"
    MOST_SECOND_PLACES = "most_second_places"
    MOST_THIRD_PLACES = "most_third_places"
    MOST_FINISHES_AT_POSITION = "most_finishes_at_position"
    MOST_PODIUMS = "most_podiums"
    MOST_FASTEST_LAPS = "most_fastest_laps"
    MOST_POLES = "most_poles"
    HEAD_TO_HEAD = "head_to_head"
    MOST_RECENT_BEST_RESULT = "most_recent_best_result"
    BEST_RESULT_ALL_RACES = "best_result_all_races"
    HIGHEST_QUALIFYING_POSITION = "highest_qualifying_position"
    RACE_1_BEST_RESULT = "race_1_best_result"


@dataclass(frozen=True)
class TiebreakerRule:
    kind: TiebreakerKind
    position: Optional[int] = None

    def __post_init__(self):
        if self.kind is TiebreakerKind.MOST_FINISHES_AT_POSITION:
            if self.position is None or self.position < 1:
                raise ValueError("most_finishes_at_position needs a position of at least 1")

    @property
    def label(self) -> str:
        if self.position is not None:
            return f"{self.kind.value}:{self.position}"
        return self.kind.value

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"rule": self.kind.value}
        if self.position is not None:
            data["position"] = self.position
        return data


@dataclass(frozen=True)
class RaceOutcome:
    """A result together with the race metadata rules need."""

    round_number: int
    race_id: Any
    race_number: Optional[int]
    is_qualifier: bool
    result: RaceResult


@dataclass
class DriverAggregate:
    """Everything the ranking step knows about one entrant."""

    driver_id: Hashable
    total_points: float = 0.0
    outcomes: List[RaceOutcome] = field(default_factory=list)

    @property
    def race_outcomes(self) -> List[RaceOutcome]:
        return [o for o in self.outcomes if not o.is_qualifier]

    @property
    def qualifying_outcomes(self) -> List[RaceOutcome]:
        return [o for o in self.outcomes if o.is_qualifier]

    def finishes_at(self, position: int) -> int:
        return sum(1 for o in self.race_outcomes if o.result.classified and o.result.position == position)

    def finishes_within(self, position: int) -> int:
        return sum(1 for o in self.race_outcomes if o.result.classified and o.result.position <= position)

    def classified_positions(self) -> List[int]:
        return sorted(o.result.position for o in self.race_outcomes if o.result.classified)


Comparator = Callable[[DriverAggregate, DriverAggregate, TiebreakerRule], int]

_RULES: Dict[TiebreakerKind, Comparator] = {}


def _rule(kind: TiebreakerKind):
    def register(fn: Comparator) -> Comparator:
        _RULES[kind] = fn
        return fn
    return register


def _more_is_better(a_value: float, b_value: float) -> int:
    if a_value > b_value:
        return -1
    if a_value < b_value:
        return 1
    return 0


def _lower_is_better(a_value: Optional[int], b_value: Optional[int]) -> int:
    """Compare positions where ``None`` (no result) is worst."""
    if a_value == b_value:
        return 0
    if a_value is None:
        return 1
    if b_value is None:
        return -1
    return -1 if a_value < b_value else 1


def _best(positions: Iterable[Optional[int]]) -> Optional[int]:
    values = [p for p in positions if p is not None]
    return min(values) if values else None


@_rule(TiebreakerKind.MOST_WINS)
def most_wins(a: DriverAggregate, b: DriverAggregate, rule: TiebreakerRule) -> int:
    return _more_is_better(a.finishes_at(1), b.finishes_at(1))


@_rule(TiebreakerKind.MOST_SECOND_PLACES)
def most_second_places(a: DriverAggregate, b: DriverAggregate, rule: TiebreakerRule) -> int:
    return _more_is_better(a.finishes_at(2), b.finishes_at(2))


@_rule(TiebreakerKind.MOST_THIRD_PLACES)
def most_third_places(a: DriverAggregate, b: DriverAggregate, rule: TiebreakerRule) -> int:
    return _more_is_better(a.finishes_at(3), b.finishes_at(3))


@_rule(TiebreakerKind.MOST_FINISHES_AT_POSITION)
def most_finishes_at_position(a: DriverAggregate, b: DriverAggregate, rule: TiebreakerRule) -> int:
    return _more_is_better(a.finishes_at(rule.position), b.finishes_at(rule.position))


@_rule(TiebreakerKind.MOST_PODIUMS)
def most_podiums(a: DriverAggregate, b: DriverAggregate, rule: TiebreakerRule) -> int:
    return _more_is_better(a.finishes_within(3), b.finishes_within(3))


@_rule(TiebreakerKind.MOST_FASTEST_LAPS)
def most_fastest_laps(a: DriverAggregate, b: DriverAggregate, rule: TiebreakerRule) -> int:
    a_count = sum(1 for o in a.race_outcomes if o.result.has_fastest_lap)
    b_count = sum(1 for o in b.race_outcomes if o.result.has_fastest_lap)
    return _more_is_better(a_count, b_count)


@_rule(TiebreakerKind.MOST_POLES)
def most_poles(a: DriverAggregate, b: DriverAggregate, rule: TiebreakerRule) -> int:
    a_count = sum(1 for o in a.outcomes if o.result.has_pole)
    b_count = sum(1 for o in b.outcomes if o.result.has_pole)
    return _more_is_better(a_count, b_count)


def _finish_key(result: RaceResult) -> Tuple[int, int]:
    # Classified finishers by position, then DNFs by their recorded position,
    # then anything unplaced.
    if result.classified:
        return (0, result.position)
    if result.dnf and result.position is not None:
        return (1, result.position)
    return (2, 0)


@_rule(TiebreakerKind.HEAD_TO_HEAD)
def head_to_head(a: DriverAggregate, b: DriverAggregate, rule: TiebreakerRule) -> int:
    """Count races both drivers entered and see who finished ahead more often."""
    b_results = {(o.round_number, o.race_id): o.result for o in b.race_outcomes}
    a_ahead = b_ahead = 0
    for outcome in a.race_outcomes:
        other = b_results.get((outcome.round_number, outcome.race_id))
        if other is None or not outcome.result.entered or not other.entered:
            continue
        a_key = _finish_key(outcome.result)
        b_key = _finish_key(other)
        if a_key < b_key:
            a_ahead += 1
        elif b_key < a_key:
            b_ahead += 1
    return _more_is_better(a_ahead, b_ahead)


def _best_by_round(agg: DriverAggregate) -> Dict[int, Optional[int]]:
    best: Dict[int, Optional[int]] = {}
    for o in agg.race_outcomes:
        pos = o.result.position if o.result.classified else None
        best[o.round_number] = _best([best.get(o.round_number), pos])
    return best


@_rule(TiebreakerKind.MOST_RECENT_BEST_RESULT)
def most_recent_best_result(a: DriverAggregate, b: DriverAggregate, rule: TiebreakerRule) -> int:
    a_best = _best_by_round(a)
    b_best = _best_by_round(b)
    for round_number in sorted(set(a_best) | set(b_best), reverse=True):
        decided = _lower_is_better(a_best.get(round_number), b_best.get(round_number))
        if decided:
            return decided
    return 0


@_rule(TiebreakerKind.BEST_RESULT_ALL_RACES)
def best_result_all_races(a: DriverAggregate, b: DriverAggregate, rule: TiebreakerRule) -> int:
    """Countback: best finish against best finish, then second best, and so on."""
    a_positions = a.classified_positions()
    b_positions = b.classified_positions()
    for a_pos, b_pos in zip(a_positions, b_positions):
        if a_pos != b_pos:
            return -1 if a_pos < b_pos else 1
    # Equal so far: one more classified finish beats none.
    return _more_is_better(len(a_positions), len(b_positions))


@_rule(TiebreakerKind.HIGHEST_QUALIFYING_POSITION)
def highest_qualifying_position(a: DriverAggregate, b: DriverAggregate, rule: TiebreakerRule) -> int:
    def best_qualifying(agg: DriverAggregate) -> Optional[int]:
        return _best(o.result.position for o in agg.qualifying_outcomes if o.result.entered)
    return _lower_is_better(best_qualifying(a), best_qualifying(b))


@_rule(TiebreakerKind.RACE_1_BEST_RESULT)
def race_1_best_result(a: DriverAggregate, b: DriverAggregate, rule: TiebreakerRule) -> int:
    def best_race_1(agg: DriverAggregate) -> Optional[int]:
        return _best(
            o.result.position
            for o in agg.race_outcomes
            if o.race_number == 1 and o.result.classified
        )
    return _lower_is_better(best_race_1(a), best_race_1(b))


def comparator_for(kind: TiebreakerKind) -> Comparator:
    return _RULES[kind]


def registered_kinds() -> List[TiebreakerKind]:
    return [kind for kind in TiebreakerKind if kind in _RULES]


class TiebreakerChain:
    """Ordered composition of tiebreaker rules."""

    def __init__(self, rules: Sequence[TiebreakerRule] = ()):
        self.rules: Tuple[TiebreakerRule, ...] = tuple(rules)
        seen = set()
        for rule in self.rules:
            if rule in seen:
                raise ValueError(f"duplicate tiebreaker rule {rule.label}")
            seen.add(rule)
            if rule.kind not in _RULES:
                raise ValueError(f"no comparator registered for {rule.kind.value}")

    def decide(self, a: DriverAggregate, b: DriverAggregate) -> Tuple[int, Optional[TiebreakerRule]]:
        """Return ``(sign, rule)`` where ``rule`` is the first rule that separated them."""
        for rule in self.rules:
            outcome = _RULES[rule.kind](a, b, rule)
            if outcome:
                return (-1 if outcome < 0 else 1), rule
        return 0, None

    def compare(self, a: DriverAggregate, b: DriverAggregate) -> int:
        return self.decide(a, b)[0]

    def __len__(self) -> int:
        return len(self.rules)


__all__ = [
    "DriverAggregate",
    "RaceOutcome",
    "TiebreakerChain",
    "TiebreakerKind",
    "TiebreakerRule",
    "comparator_for",
    "registered_kinds",
]
