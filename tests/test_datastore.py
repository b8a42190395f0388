import json
from datetime import datetime, timezone

import pytest

from championship import datastore
from championship.errors import ConfigurationError, SeasonNotFound, StandingsInvariantError
from championship.service import compute_division_standings, compute_standings, compute_team_standings


def test_snapshot_from_loaded_season(memory_store):
    snapshot = datastore.load_season_snapshot(1)
    assert snapshot.season_id == 1
    assert snapshot.settings_version == 1
    assert [r.round_number for r in snapshot.rounds] == [1, 2, 3]
    first = snapshot.rounds[0]
    assert first.completed
    assert first.completed_at == datetime(2025, 3, 1, 18, 0, tzinfo=timezone.utc)
    dnf = [res for res in first.races[0].results if res.driver_id == 4][0]
    assert dnf.dnf and not dnf.classified
    assert {t.team_id: t.name for t in snapshot.teams} == {10: "Apex", 20: "Blaze"}
    assert snapshot.config.points.base_points(4) == 12


def test_naive_completed_at_read_as_utc(memory_store):
    memory_store["seasons"][1]["rounds"][0]["completed_at"] = "2025-03-01T18:00:00"
    snapshot = datastore.load_season_snapshot(1)
    assert snapshot.rounds[0].completed_at.tzinfo is not None


def test_race_override_errors_name_the_race(memory_store):
    race = memory_store["seasons"][1]["rounds"][1]["races"][0]
    race["points_system"] = {"points_by_position": [{"position": 1, "points": -3}]}
    with pytest.raises(ConfigurationError) as exc:
        datastore.load_season_snapshot(1)
    assert exc.value.field == "rounds[2].races[201].points_by_position[0].points"


def test_missing_season_raises():
    with pytest.raises(SeasonNotFound):
        datastore.load_season_snapshot(77)
    assert not datastore.season_exists(77)
    assert datastore.season_exists(1)


def test_compute_standings_as_of(memory_store):
    table = compute_standings(1, as_of=datetime(2025, 3, 15))
    assert [(row.driver_id, row.total_points) for row in table] == [(1, 25), (3, 18), (2, 15), (4, 0)]

    full = compute_standings(1)
    assert [row.position for row in full] == [1, 1, 3, 4]


def test_compute_team_standings(memory_store):
    table = compute_team_standings(1)
    assert [(row.name, row.total_points) for row in table] == [("Apex", 70), ("Blaze", 43)]


def test_seed_script_validates_before_writing(tmp_path, monkeypatch, memory_store):
    import migrate_to_postgres
    import championship.datastore_pg as pg

    season = dict(memory_store["seasons"][1])
    season["settings"] = {"tiebreakers": ["coin_toss"]}
    path = tmp_path / "seasons.json"
    path.write_text(json.dumps({"seasons": [season]}))

    calls = []
    monkeypatch.setattr(pg, "create_schema", lambda: calls.append("schema"))
    monkeypatch.setattr(pg, "insert_season", lambda s: calls.append(s["name"]) or 9)

    assert migrate_to_postgres.main([str(path)]) == 1
    assert calls == []

    season["settings"] = {"tiebreakers": ["most_wins"]}
    path.write_text(json.dumps(season))
    assert migrate_to_postgres.main([str(path)]) == 0
    assert calls == ["schema", "2025 Championship"]


def test_unknown_stored_round_status_raises_invariant_error(memory_store, caplog):
    memory_store["seasons"][1]["rounds"][1]["status"] = "abandoned"
    with pytest.raises(StandingsInvariantError) as exc:
        datastore.load_season_snapshot(1)
    assert "Round 2" in str(exc.value)
    assert "abandoned" in caplog.text


def test_round_points_override_read_per_round(memory_store):
    memory_store["seasons"][1]["rounds"][1]["round_points"] = {
        "points_by_position": [{"position": 1, "points": 5}, {"position": 2, "points": 3}],
    }
    snapshot = datastore.load_season_snapshot(1)
    assert snapshot.rounds[0].round_points is None
    assert snapshot.rounds[1].round_points.base_points(1) == 5

    table = {row.driver_id: [r.points for r in row.rounds] for row in compute_standings(1)}
    # Round 2 is scored from the round table; Alice and Dara are 2nd and 3rd
    assert table[3] == [18, 5]
    assert table[1] == [25, 3]
    assert table[4] == [0, 0]


def test_invalid_round_points_override_names_the_round(memory_store):
    memory_store["seasons"][1]["rounds"][0]["round_points"] = {"points_by_position": []}
    with pytest.raises(ConfigurationError) as exc:
        datastore.load_season_snapshot(1)
    assert exc.value.field == "rounds[1].round_points.points_by_position"


def test_divisions_read_from_season(memory_store):
    season = memory_store["seasons"][1]
    season["race_divisions_enabled"] = True
    season["divisions"] = [{"division_id": 5, "name": "Gold"}]
    season["drivers"][0]["division_id"] = 5
    season["rounds"][1]["races"][0]["results"][0]["division_id"] = 5

    snapshot = datastore.load_season_snapshot(1)
    assert snapshot.divisions_enabled
    assert [(d.division_id, d.name) for d in snapshot.divisions] == [(5, "Gold")]
    assert snapshot.drivers[0].division_id == 5
    assert snapshot.rounds[1].races[0].results[0].division_id == 5

    gold, unassigned = compute_division_standings(1)
    # Chen raced round 2 in Gold and round 1 unassigned
    assert {row.driver_id: row.total_points for row in gold.standings} == {1: 43, 3: 25}
    assert {row.driver_id: row.total_points for row in unassigned.standings} == {2: 27, 3: 18, 4: 15}
