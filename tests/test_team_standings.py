from decimal import Decimal

import pytest

from championship.errors import ConfigurationError
from championship.rules import DropRoundPolicy, PointsSystem, RaceEvent, RoundDefinition, ScoredResult
from championship.standings import (
    RosterMembership,
    RosterPolicy,
    TeamRoster,
    compute_round_scores,
    compute_team_standings,
    rosters_for_round,
)


def _season(table, finishing_orders):
    points = PointsSystem.from_mapping(table)
    rounds = []
    results = []
    for number, order in enumerate(finishing_orders, start=1):
        event = RaceEvent(id=number * 10, round_id=number, points_system=points, race_number=1)
        rounds.append(RoundDefinition(id=number, round_number=number, events=(event,)))
        for driver_id, position in order.items():
            results.append(ScoredResult(driver_id=driver_id, race_event_id=event.id, position=position))
    return tuple(rounds), tuple(results)


def _teams(rounds, results, memberships, n="all", roster_policy=RosterPolicy.PER_ROUND, chain=(), enabled=False):
    return compute_team_standings(
        rounds,
        compute_round_scores(rounds, results),
        results,
        memberships,
        DropRoundPolicy(),
        chain,
        drivers_for_calculation=n,
        roster_policy=roster_policy,
        tiebreakers_enabled=enabled,
    )


def _by_team(rows):
    return {row.subject_id: row for row in rows}


def test_only_top_n_drivers_count_for_the_team():
    rounds, results = _season({1: 25, 2: 18, 3: 15, 4: 10}, [{1: 1, 2: 2, 3: 3, 4: 4, 5: 5}])
    memberships = [RosterMembership(driver_id, 7) for driver_id in range(1, 6)]
    rows = _teams(rounds, results, memberships, n=3)

    assert len(rows) == 1
    assert rows[0].subject_id == 7
    assert rows[0].total_points == Decimal("58")
    # Never more than the whole roster would have scored.
    assert rows[0].total_points <= Decimal("68")


def test_short_roster_uses_every_available_driver():
    rounds, results = _season({1: 25, 2: 18, 3: 15, 4: 10}, [{1: 1, 2: 2, 3: 3, 4: 4}])
    memberships = [
        RosterMembership(1, 10),
        RosterMembership(2, 10),
        RosterMembership(3, 10),
        RosterMembership(4, 20),
    ]
    rows = _by_team(_teams(rounds, results, memberships, n=2))

    assert rows[10].total_points == Decimal("43")
    assert rows[20].total_points == Decimal("10")


def test_privateers_never_count():
    rounds, results = _season({1: 25, 2: 18}, [{1: 1, 2: 2}])
    rows = _teams(rounds, results, [RosterMembership(1, None), RosterMembership(2, 5)])

    assert [(r.subject_id, r.total_points) for r in rows] == [(5, Decimal("18"))]


def test_transfer_moves_later_points_per_round():
    rounds, results = _season({1: 25, 2: 18, 3: 15}, [{1: 1, 2: 2, 3: 3}, {1: 1, 2: 2, 3: 3}])
    memberships = [
        RosterMembership(1, 10),
        RosterMembership(2, 10),
        RosterMembership(3, 20),
        RosterMembership(1, 20, effective_round_number=2),
    ]

    per_round = _by_team(_teams(rounds, results, memberships))
    assert per_round[10].total_points == Decimal("61")
    assert per_round[20].total_points == Decimal("55")
    assert per_round[10].round_points == (Decimal("43"), Decimal("18"))

    season_start = _by_team(_teams(rounds, results, memberships, roster_policy="season_start"))
    assert season_start[10].total_points == Decimal("86")
    assert season_start[20].total_points == Decimal("30")


def test_rosters_for_round_follow_latest_membership():
    memberships = [
        RosterMembership(1, 10),
        RosterMembership(2, 10),
        RosterMembership(2, None, effective_round_number=3),
        RosterMembership(1, 20, effective_round_number=2),
    ]

    assert rosters_for_round(memberships, 1)[10].driver_ids == frozenset({1, 2})
    round_two = rosters_for_round(memberships, 2)
    assert round_two[10].driver_ids == frozenset({2})
    assert round_two[20].driver_ids == frozenset({1})
    assert 10 not in rosters_for_round(memberships, 3)


def test_roster_select_orders_by_score_then_id():
    roster = TeamRoster(1, frozenset({3, 4, 5, 6}), 2)
    scores = {3: Decimal("10"), 4: Decimal("12"), 5: Decimal("12")}
    assert roster.select(scores) == (4, 5)
    assert roster.round_score(scores) == Decimal("24")


@pytest.mark.parametrize("n", [0, 4, "some"])
def test_invalid_drivers_for_calculation(n):
    rounds, results = _season({1: 25, 2: 18, 3: 15}, [{1: 1, 2: 2, 3: 3}])
    memberships = [RosterMembership(1, 10), RosterMembership(2, 10), RosterMembership(3, 10)]
    with pytest.raises(ConfigurationError):
        _teams(rounds, results, memberships, n=n)


def test_team_tie_broken_by_best_counted_finish():
    rounds, results = _season({1: 25, 2: 18, 3: 7}, [{1: 1, 2: 2, 3: 3}])
    memberships = [RosterMembership(1, 10), RosterMembership(2, 20), RosterMembership(3, 20)]
    rows = _teams(rounds, results, memberships, chain=["count_of_wins"], enabled=True)

    assert rows[0].total_points == rows[1].total_points == Decimal("25")
    assert [(r.subject_id, r.rank) for r in rows] == [(10, 1), (20, 2)]


def test_no_completed_rounds_means_no_team_standings():
    assert _teams((), (), [RosterMembership(1, 10)]) == ()
