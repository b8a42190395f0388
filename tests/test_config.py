import pytest

from championship.config import (
    DEFAULT_SCORING_SETTINGS,
    merge_with_defaults,
    parse_scoring_config,
    scoring_config_to_dict,
)
from championship.errors import ConfigurationError
from championship.tiebreakers import TiebreakerKind


def test_defaults_compile():
    config = parse_scoring_config({})
    assert config.points.base_points(1) == 25
    assert config.points.base_points(10) == 1
    assert config.points.base_points(11) == 0
    assert not config.points.fastest_lap.enabled
    assert not config.points.bonus_independent_of_finish
    assert not config.drop_rounds.enabled
    assert [rule.kind for rule in config.tiebreakers] == [TiebreakerKind.BEST_RESULT_ALL_RACES]
    assert not config.team_championship.enabled
    assert config.round_points is None


def test_full_document_round_trips():
    doc = {
        "points_by_position": [{"position": 2, "points": 6}, {"position": 1, "points": 10}],
        "fastest_lap": {"enabled": True, "points": 1, "max_position": 10},
        "pole": {"enabled": True, "points": 2, "max_position": None},
        "bonus_independent_of_finish": True,
        "drop_rounds": {"enabled": True, "count": 2},
        "tiebreakers": ["most_wins", {"rule": "most_finishes_at_position", "position": 4}, "head_to_head"],
        "team_championship": {
            "enabled": True,
            "drivers_for_calculation": 2,
            "drop_rounds": {"enabled": False, "count": 0},
        },
    }
    config = parse_scoring_config(doc)
    out = scoring_config_to_dict(config)
    # Positions come back ordered
    assert out["points_by_position"] == [{"position": 1, "points": 10.0}, {"position": 2, "points": 6.0}]
    assert out["tiebreakers"] == [
        {"rule": "most_wins"},
        {"rule": "most_finishes_at_position", "position": 4},
        {"rule": "head_to_head"},
    ]
    assert parse_scoring_config(out) == config


def test_bookkeeping_keys_ignored():
    config = parse_scoring_config({"version": 7, "updated_at": "2025-01-01T00:00:00Z"})
    assert config == parse_scoring_config(None)


def test_merge_with_defaults_does_not_share_state():
    merged = merge_with_defaults({"drop_rounds": {"enabled": True, "count": 1}})
    merged["points_by_position"].append({"position": 99, "points": 1})
    assert len(DEFAULT_SCORING_SETTINGS["points_by_position"]) == 10
    assert merged["drop_rounds"] == {"enabled": True, "count": 1}


@pytest.mark.parametrize(
    "doc, field",
    [
        ({"points_by_position": []}, "points_by_position"),
        ({"points_by_position": [{"position": 0, "points": 1}]}, "points_by_position[0].position"),
        (
            {"points_by_position": [{"position": 1, "points": 5}, {"position": 1, "points": 3}]},
            "points_by_position[1].position",
        ),
        ({"points_by_position": [{"position": 1, "points": -1}]}, "points_by_position[0].points"),
        ({"fastest_lap": {"enabled": "yes"}}, "fastest_lap.enabled"),
        ({"pole": {"enabled": True, "points": -2}}, "pole.points"),
        ({"fastest_lap": {"enabled": True, "max_position": 0}}, "fastest_lap.max_position"),
        ({"drop_rounds": {"enabled": True, "count": -1}}, "drop_rounds.count"),
        ({"drop_rounds": {"enabled": True, "count": 1.5}}, "drop_rounds.count"),
        ({"tiebreakers": "most_wins"}, "tiebreakers"),
        ({"tiebreakers": ["most_wins", "coin_toss"]}, "tiebreakers[1].rule"),
        ({"tiebreakers": ["most_wins", "most_wins"]}, "tiebreakers[1].rule"),
        ({"tiebreakers": [{"rule": "most_finishes_at_position"}]}, "tiebreakers[0].position"),
        ({"tiebreakers": [{"rule": "most_wins", "position": 2}]}, "tiebreakers[0].position"),
        ({"team_championship": {"enabled": True, "drivers_for_calculation": 0}}, "team_championship.drivers_for_calculation"),
        ({"team_championship": {"drop_rounds": {"count": -3}}}, "team_championship.drop_rounds.count"),
        ({"drop_rounds": {"enabled": False, "count": 3}}, "drop_rounds.count"),
        ({"team_championship": {"drop_rounds": {"enabled": False, "count": 2}}}, "team_championship.drop_rounds.count"),
        ({"round_points": {"enabled": True}}, "round_points.points_by_position"),
        (
            {"round_points": {"enabled": True, "points_by_position": [{"position": 1, "points": -4}]}},
            "round_points.points_by_position[0].points",
        ),
    ],
)
def test_invalid_settings_name_the_field(doc, field):
    with pytest.raises(ConfigurationError) as exc:
        parse_scoring_config(doc)
    assert exc.value.field == field


def test_same_rule_with_different_positions_is_allowed():
    config = parse_scoring_config(
        {
            "tiebreakers": [
                {"rule": "most_finishes_at_position", "position": 4},
                {"rule": "most_finishes_at_position", "position": 5},
            ]
        }
    )
    assert [rule.label for rule in config.tiebreakers] == [
        "most_finishes_at_position:4",
        "most_finishes_at_position:5",
    ]


def test_settings_must_be_an_object():
    with pytest.raises(ConfigurationError) as exc:
        parse_scoring_config(["not", "a", "dict"])
    assert exc.value.field == "settings"


def test_disabled_drop_rounds_with_zero_count_accepted():
    config = parse_scoring_config({"drop_rounds": {"enabled": False, "count": 0}})
    assert not config.drop_rounds.enabled
    assert config.drop_rounds.count == 0


def test_round_points_round_trip():
    doc = {
        "round_points": {
            "enabled": True,
            "points_by_position": [{"position": 1, "points": 10}, {"position": 2, "points": 7}],
            "fastest_lap": {"enabled": True, "points": 1},
        }
    }
    config = parse_scoring_config(doc)
    assert config.round_points.base_points(2) == 7
    assert config.round_points.fastest_lap.enabled
    out = scoring_config_to_dict(config)
    assert out["round_points"]["enabled"] is True
    assert parse_scoring_config(out) == config

    # Disabled round points keep no table, whatever else the document carries
    assert parse_scoring_config({"round_points": {"enabled": False, "points_by_position": []}}).round_points is None
    assert scoring_config_to_dict(parse_scoring_config({}))["round_points"] == {"enabled": False}
