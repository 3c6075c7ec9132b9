import logging
from decimal import Decimal

import pytest

from championship.errors import ConfigurationError, DataIntegrityError, IncompleteDataError
from championship.rules import (
    DropRoundPolicy,
    PointsSystem,
    RaceEvent,
    RoundDefinition,
    ScoredResult,
    lowest_round_indexes,
)
from championship.standings import compute_driver_standings, compute_round_scores, driver_history


def _season(table, finishing_orders):
    """
    One race per round. `finishing_orders` holds, per round, a mapping of
    driver id -> finishing position.
    """
    points = PointsSystem.from_mapping(table)
    rounds = []
    results = []
    for number, order in enumerate(finishing_orders, start=1):
        event = RaceEvent(id=number * 10, round_id=number, points_system=points, race_number=1)
        rounds.append(RoundDefinition(id=number, round_number=number, events=(event,)))
        for driver_id, position in order.items():
            results.append(ScoredResult(driver_id=driver_id, race_event_id=event.id, position=position))
    return tuple(rounds), tuple(results)


def _standings(rounds, results, drivers, policy=DropRoundPolicy(), chain=(), enabled=True, strict=True):
    round_scores = compute_round_scores(rounds, results)
    history = driver_history(rounds, results, round_scores)
    return compute_driver_standings(
        rounds,
        round_scores,
        drivers,
        policy,
        chain,
        history,
        tiebreakers_enabled=enabled,
        strict=strict,
    )


def _by_driver(rows):
    return {row.subject_id: row for row in rows}


def test_two_rounds_without_drops():
    rounds, results = _season({1: 25, 2: 18, 3: 15}, [{1: 1, 2: 2}, {1: 3, 2: 2}])
    rows = _standings(rounds, results, {1: None, 2: None})[None]

    assert [(r.subject_id, r.total_points, r.rank) for r in rows] == [
        (1, Decimal("40"), 1),
        (2, Decimal("36"), 2),
    ]
    assert rows[0].round_points == (Decimal("25"), Decimal("15"))
    assert rows[0].rounds_counted == 2


def test_drop_round_widens_margin():
    rounds, results = _season({1: 25, 2: 18, 3: 15}, [{1: 1, 2: 2}, {1: 3, 2: 2}])
    rows = _by_driver(
        _standings(rounds, results, {1: None, 2: None}, DropRoundPolicy(enabled=True, count=1))[None]
    )

    assert rows[1].total_points == Decimal("25")
    assert rows[1].dropped_round_ids == (2,)
    assert rows[1].rank == 1
    # Equal rounds: the earliest one is dropped.
    assert rows[2].total_points == Decimal("18")
    assert rows[2].dropped_round_ids == (1,)
    assert rows[2].rounds_counted == 1
    assert rows[1].total_points - rows[2].total_points == Decimal("7")


def test_count_of_wins_breaks_points_tie():
    rounds, results = _season(
        {1: 20, 2: 15, 3: 10, 4: 5},
        [{1: 1, 2: 2}, {1: 1, 2: 4}, {2: 1}],
    )
    rows = _by_driver(
        _standings(rounds, results, {1: None, 2: None}, chain=["count_of_wins"])[None]
    )

    assert rows[1].total_points == rows[2].total_points == Decimal("40")
    assert (rows[1].rank, rows[1].tie_group_size) == (1, 1)
    assert (rows[2].rank, rows[2].tie_group_size) == (2, 1)


def test_unbroken_tie_shares_rank_and_skips_next():
    rounds, results = _season({1: 25, 2: 15, 3: 10}, [{1: 1, 2: 2, 3: 3}, {2: 1, 1: 2, 3: 3}])
    rows = _standings(
        rounds,
        results,
        {1: None, 2: None, 3: None},
        chain=["count_of_wins", "count_of_podiums", "best_single_round_score"],
    )[None]

    assert [(r.subject_id, r.rank, r.tie_group_size) for r in rows] == [
        (1, 1, 2),
        (2, 1, 2),
        (3, 3, 1),
    ]


def test_disabled_tiebreakers_share_rank_without_chain():
    rounds, results = _season({1: 25, 2: 15}, [{1: 1, 2: 2}, {2: 1, 1: 2}])
    rows = _standings(rounds, results, {1: None, 2: None}, enabled=False)[None]
    assert [r.rank for r in rows] == [1, 1]


def test_enabled_empty_chain_is_configuration_error():
    rounds, results = _season({1: 25, 2: 15}, [{1: 1, 2: 2}])
    with pytest.raises(ConfigurationError):
        _standings(rounds, results, {1: None, 2: None}, chain=[])


def test_registered_driver_without_results_scores_zero():
    rounds, results = _season({1: 25, 2: 18}, [{1: 1, 2: 2}])
    rows = _by_driver(_standings(rounds, results, {1: None, 2: None, 3: None}, enabled=False)[None])

    assert rows[3].total_points == Decimal("0")
    assert rows[3].round_points == (Decimal("0"),)
    assert rows[3].rank == 3


def test_unregistered_driver_is_data_integrity_error():
    rounds, results = _season({1: 25, 2: 18}, [{1: 1, 2: 2}])
    with pytest.raises(DataIntegrityError):
        _standings(rounds, results, {1: None}, enabled=False)


def test_completed_round_without_scores(caplog):
    rounds, results = _season({1: 25, 2: 18}, [{1: 1, 2: 2}, {}])

    with pytest.raises(IncompleteDataError):
        _standings(rounds, results, {1: None, 2: None}, enabled=False)

    with caplog.at_level(logging.WARNING, logger="championship.standings"):
        rows = _by_driver(_standings(rounds, results, {1: None, 2: None}, enabled=False, strict=False)[None])
    assert rows[1].round_points == (Decimal("25"), Decimal("0"))
    assert "has no driver scores" in caplog.text


def test_divisions_are_ranked_independently():
    points = PointsSystem.from_mapping({1: 25, 2: 18})
    event = RaceEvent(id=10, round_id=1, points_system=points)
    rounds = (RoundDefinition(id=1, round_number=1, events=(event,)),)
    results = (
        ScoredResult(driver_id=1, race_event_id=10, division_id=100, position=1),
        ScoredResult(driver_id=2, race_event_id=10, division_id=100, position=2),
        ScoredResult(driver_id=3, race_event_id=10, division_id=200, position=2),
        ScoredResult(driver_id=4, race_event_id=10, division_id=200, position=1),
    )
    round_scores = compute_round_scores(rounds, results, {100, 200})
    standings = compute_driver_standings(
        rounds,
        round_scores,
        {1: 100, 2: 100, 3: 200, 4: 200},
        DropRoundPolicy(),
        ["count_of_wins"],
        driver_history(rounds, results, round_scores),
    )

    assert [(r.subject_id, r.rank) for r in standings[100]] == [(1, 1), (2, 2)]
    assert [(r.subject_id, r.rank) for r in standings[200]] == [(4, 1), (3, 2)]
    assert all(r.division_id == 200 for r in standings[200])


def test_result_for_unknown_event_is_data_integrity_error():
    rounds, _ = _season({1: 25}, [{1: 1}])
    with pytest.raises(DataIntegrityError):
        compute_round_scores(rounds, [ScoredResult(driver_id=1, race_event_id=999, position=1)])


def test_totals_ranks_and_idempotence_over_a_season():
    orders = [
        {1: 1, 2: 2, 3: 3, 4: 4, 5: 5},
        {2: 1, 3: 2, 1: 3, 5: 4},
        {3: 1, 1: 2, 4: 3, 2: 4, 5: 5},
        {1: 1, 5: 2, 2: 3, 3: 4, 4: 5},
    ]
    rounds, results = _season({1: 25, 2: 18, 3: 15, 4: 12, 5: 10}, orders)
    drivers = {driver_id: None for driver_id in range(1, 6)}
    policy = DropRoundPolicy(enabled=True, count=2)
    chain = ["count_of_wins", "best_result_all_races"]

    first = _standings(rounds, results, drivers, policy, chain)[None]
    second = _standings(rounds, results, drivers, policy, chain)[None]
    assert first == second

    for row in first:
        dropped = lowest_round_indexes(row.round_points, 2)
        expected = sum(row.round_points) - sum(row.round_points[idx] for idx in dropped)
        assert row.total_points == expected

    # Competition ranking: each rank equals 1 + number of drivers strictly ahead.
    for row in first:
        ahead = sum(1 for other in first if other.rank < row.rank)
        assert row.rank == ahead + 1
    assert first[0].rank == 1
