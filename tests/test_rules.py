from decimal import Decimal

import pytest

from championship.errors import ConfigurationError, DataIntegrityError
from championship.rules import (
    BonusRule,
    BonusType,
    DropRoundPolicy,
    PointsSystem,
    RaceEvent,
    RoundDefinition,
    ScoredResult,
    aggregate_round,
    calculate_event_points,
    competition_positions,
    lowest_round_indexes,
    round_score,
    to_points,
    total_after_drops,
)


TABLE = {1: 25, 2: 18, 3: 15, 4: 12, 5: 10, 6: 8, 7: 6, 8: 4, 9: 2, 10: 1}


def _event(event_id=1, round_id=1, bonus_rules=(), is_qualifier=False, dnf_points=None, dns_points=None):
    return RaceEvent(
        id=event_id,
        round_id=round_id,
        points_system=PointsSystem.from_mapping(TABLE, dnf_points, dns_points),
        bonus_rules=tuple(bonus_rules),
        is_qualifier=is_qualifier,
        race_number=1,
    )


def test_points_table_lookup_and_out_of_range():
    table = PointsSystem.from_mapping({"1": 25, "2": 18.5})
    assert table.points_for(1) == Decimal("25")
    assert table.points_for(2) == Decimal("18.5")
    assert table.points_for(3) == Decimal("0")
    assert table.points_for(None) == Decimal("0")


@pytest.mark.parametrize(
    "table",
    [
        {},
        {1: -5},
        {1: 10.123},
        {0: 10},
        {"x": 10},
        {1: 25, "1": 18},
        {1: "lots"},
    ],
)
def test_malformed_points_table_is_configuration_error(table):
    with pytest.raises(ConfigurationError):
        PointsSystem.from_mapping(table)


def test_to_points_rejects_bool_and_infinity():
    with pytest.raises(ConfigurationError):
        to_points(True)
    with pytest.raises(ConfigurationError):
        to_points(float("inf"))
    assert to_points(0.5) == Decimal("0.5")


def test_position_points_and_fastest_lap_bonus():
    event = _event(bonus_rules=[BonusRule.create(BonusType.FASTEST_LAP, 1)])
    points = calculate_event_points(
        event,
        [
            ScoredResult(driver_id=1, race_event_id=1, position=1),
            ScoredResult(driver_id=2, race_event_id=1, position=2, has_fastest_lap=True),
            ScoredResult(driver_id=3, race_event_id=1, position=15),
        ],
    )
    assert points == {1: Decimal("25"), 2: Decimal("19"), 3: Decimal("0")}


def test_top10_only_bonus_skips_drivers_outside_top_ten():
    event = _event(
        bonus_rules=[
            BonusRule.create("fastest_lap", 1, top10_only=True),
            BonusRule.create("pole", 2, top10_only=True),
        ]
    )
    points = calculate_event_points(
        event,
        [
            ScoredResult(driver_id=1, race_event_id=1, position=11, has_fastest_lap=True, has_pole=True),
            ScoredResult(driver_id=2, race_event_id=1, position=10, has_fastest_lap=True, has_pole=True),
        ],
    )
    assert points[1] == Decimal("0")
    assert points[2] == Decimal("4")


def test_dnf_keeps_position_points_and_adds_dnf_points():
    event = _event(bonus_rules=[BonusRule.create("fastest_lap", 1)], dnf_points=2, dns_points=0.5)
    points = calculate_event_points(
        event,
        [
            ScoredResult(driver_id=1, race_event_id=1, position=3, dnf=True, has_fastest_lap=True),
            ScoredResult(driver_id=2, race_event_id=1, dnf=True),
            ScoredResult(driver_id=3, race_event_id=1, position=1, dns=True),
        ],
    )
    # A retired driver never collects the fastest-lap bonus.
    assert points[1] == Decimal("17")
    assert points[2] == Decimal("2")
    # DNS only earns the DNS points.
    assert points[3] == Decimal("0.5")


def test_event_points_reject_foreign_results_and_unknown_divisions():
    event = _event(event_id=1)
    with pytest.raises(DataIntegrityError):
        calculate_event_points(event, [ScoredResult(driver_id=1, race_event_id=2, position=1)])
    with pytest.raises(DataIntegrityError):
        calculate_event_points(
            event, [ScoredResult(driver_id=1, race_event_id=1, position=1, division_id=9)], {1, 2}
        )
    with pytest.raises(DataIntegrityError):
        calculate_event_points(
            event,
            [
                ScoredResult(driver_id=1, race_event_id=1, position=1),
                ScoredResult(driver_id=1, race_event_id=1, position=2),
            ],
        )


def test_competition_positions_share_rank():
    assert competition_positions({1: Decimal(10), 2: Decimal(10), 3: Decimal(5)}) == {1: 1, 2: 1, 3: 3}


def test_aggregate_round_sums_events_and_adds_round_points():
    round_def = RoundDefinition(
        id=1,
        round_number=1,
        events=(_event(1), _event(2)),
        points_system=PointsSystem.from_mapping({1: 10, 2: 5, 3: 2}),
    )
    scores = aggregate_round(
        round_def,
        [
            ScoredResult(driver_id=1, race_event_id=1, position=1),
            ScoredResult(driver_id=2, race_event_id=1, position=2),
            ScoredResult(driver_id=3, race_event_id=1, position=3),
            ScoredResult(driver_id=2, race_event_id=2, position=1),
            ScoredResult(driver_id=1, race_event_id=2, position=2),
            ScoredResult(driver_id=3, race_event_id=2, position=3, dnf=True),
        ],
    )
    # Drivers 1 and 2 share round position 1; driver 3 retired and forfeits round points.
    assert scores[1].points == Decimal("53")
    assert scores[2].points == Decimal("53")
    assert scores[3].points == Decimal("30")
    assert scores[3].round_level_points == Decimal("0")
    assert scores[1].per_event_breakdown == {1: Decimal("25"), 2: Decimal("18")}


def test_round_pole_bonus_comes_from_qualifying_only():
    round_def = RoundDefinition(
        id=1,
        round_number=1,
        events=(_event(1, is_qualifier=True), _event(2)),
        bonus_rules=(BonusRule.create("pole", 3), BonusRule.create("fastest_lap", 1)),
    )
    scores = aggregate_round(
        round_def,
        [
            ScoredResult(driver_id=1, race_event_id=1, position=1, has_pole=True),
            ScoredResult(driver_id=2, race_event_id=1, position=2),
            ScoredResult(driver_id=1, race_event_id=2, position=2, has_pole=True),
            ScoredResult(driver_id=2, race_event_id=2, position=1, has_fastest_lap=True),
        ],
    )
    assert scores[1].round_level_points == Decimal("3")
    assert scores[2].round_level_points == Decimal("1")


def test_aggregate_round_rejects_event_outside_round_and_division_switch():
    round_def = RoundDefinition(id=1, round_number=1, events=(_event(1), _event(2)))
    with pytest.raises(DataIntegrityError):
        aggregate_round(round_def, [ScoredResult(driver_id=1, race_event_id=3, position=1)])
    with pytest.raises(DataIntegrityError):
        aggregate_round(
            round_def,
            [
                ScoredResult(driver_id=1, race_event_id=1, position=1, division_id=1),
                ScoredResult(driver_id=1, race_event_id=2, position=1, division_id=2),
            ],
            {1, 2},
        )


def test_drop_policy_validation():
    with pytest.raises(ConfigurationError):
        DropRoundPolicy(enabled=False, count=1)
    with pytest.raises(ConfigurationError):
        DropRoundPolicy(enabled=True, count=-1)
    assert DropRoundPolicy(enabled=True, count=5).drop_count(3) == 3
    assert DropRoundPolicy().drop_count(3) == 0


def test_drops_remove_earliest_of_equal_lowest_rounds():
    scores = [Decimal(10), Decimal(5), Decimal(5), Decimal(8)]
    assert lowest_round_indexes(scores, 1) == [1]
    assert lowest_round_indexes(scores, 2) == [1, 2]

    total, dropped = total_after_drops(scores, DropRoundPolicy(enabled=True, count=1))
    assert total == Decimal(23)
    assert dropped == [1]

    total, dropped = total_after_drops(scores, DropRoundPolicy())
    assert total == Decimal(28)
    assert dropped == []


def test_round_score_for_display():
    assert round_score(Decimal("10.50")) == 10.5
    assert round_score(Decimal("3")) == 3.0
