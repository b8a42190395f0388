#!/usr/bin/env python3
"""
Seed the PostgreSQL database with seasons from a JSON export.

Usage: migrate_to_postgres.py [seasons.json]

The file holds either one season tree or ``{"seasons": [...]}``; each tree has
the shape returned by ``championship.datastore_pg.load_season``.
"""
import json
import os
import sys

from championship import datastore_pg
from championship.config import parse_scoring_config
from championship.errors import ConfigurationError


def load_seasons(path):
    """Read season trees from ``path``."""
    with open(path, encoding="utf-8") as fh:
        data = json.load(fh)
    if isinstance(data, dict) and "seasons" in data:
        return list(data["seasons"] or [])
    return [data]


def validate_settings(season):
    """Reject a season whose scoring settings would not load later."""
    settings = season.get("settings")
    if settings:
        parse_scoring_config(settings)


def main(argv=None):
    """Main migration function"""
    argv = sys.argv[1:] if argv is None else argv
    path = argv[0] if argv else "seasons.json"

    if not os.environ.get('DATABASE_URL'):
        print("ERROR: DATABASE_URL environment variable not set")
        return 1

    print(f"Loading seasons from {path}...")
    seasons = load_seasons(path)

    for season in seasons:
        try:
            validate_settings(season)
        except ConfigurationError as e:
            print(f"ERROR: season {season.get('name')!r} has invalid settings: {e}")
            return 1

    datastore_pg.create_schema()
    print("Schema ready")

    created = []
    for season in seasons:
        season_id = datastore_pg.insert_season(season)
        created.append(season_id)
        rounds = season.get("rounds", []) or []
        races = sum(len(r.get("races", []) or []) for r in rounds)
        print(f"- season {season_id} {season.get('name')!r}: {len(rounds)} rounds, {races} races")

    print(f"\nMigration completed successfully! {len(created)} season(s) created.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
