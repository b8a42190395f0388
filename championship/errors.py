"""Exceptions raised by the standings engine and its configuration layer."""

from __future__ import annotations

from typing import Optional


class ConfigurationError(ValueError):
    """Scoring configuration rejected at save time.

    ``field`` names the offending setting using a dotted path such as
    ``drop_rounds.count`` or ``tiebreakers[2].rule`` so the caller can point
    the user at it.
    """

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class StandingsInvariantError(RuntimeError):
    """Internal invariant broken while computing standings (a bug, not user input)."""


class SeasonNotFound(LookupError):
    def __init__(self, season_id: object, message: Optional[str] = None):
        super().__init__(message or f"Season {season_id} not found")
        self.season_id = season_id
