"""Drop-round selection: which of a driver's rounds are left out of the total."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Set, Tuple


@dataclass(frozen=True)
class DropRoundsConfig:
    enabled: bool = False
    count: int = 0

    def __post_init__(self):
        if self.count < 0:
            raise ValueError("drop round count must not be negative")


class DropRoundSelector:
    """Pick the lowest-scoring rounds to drop for one driver (or team).

    Nothing is dropped when the policy is disabled or when the number of
    completed rounds does not exceed the drop count, so at least one round
    always counts. Among equal scores the earliest round (lowest round number)
    is dropped first.
    """

    def __init__(self, config: DropRoundsConfig):
        self.config = config

    def select_dropped(self, per_round_totals: Iterable[Tuple[int, float]]) -> Set[int]:
        totals = list(per_round_totals)
        count = self.config.count
        if not self.config.enabled or count == 0 or len(totals) <= count:
            return set()
        ranked = sorted(totals, key=lambda item: (item[1], item[0]))
        return {round_number for round_number, _points in ranked[:count]}
