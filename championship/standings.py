from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from itertools import groupby
from typing import (
    Collection,
    Dict,
    FrozenSet,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Type,
    TypeVar,
    Union,
)

from championship.errors import ConfigurationError, DataIntegrityError, IncompleteDataError
from championship.rules import (
    ZERO,
    DropRoundPolicy,
    RoundDefinition,
    RoundScore,
    ScoredResult,
    aggregate_round,
    total_after_drops,
)
from championship.tiebreakers import TiebreakHistory, resolve_tie, validate_chain


log = logging.getLogger(__name__)

ALL_DRIVERS = "all"

RoundScores = Mapping[int, Mapping[int, RoundScore]]  # round_id -> driver_id -> score


@dataclass(frozen=True)
class Standing:
    subject_id: int
    total_points: Decimal
    rounds_counted: int
    rank: int
    tie_group_size: int
    division_id: Optional[int] = None
    round_points: Tuple[Decimal, ...] = ()
    dropped_round_ids: Tuple[int, ...] = ()


@dataclass(frozen=True)
class DriverStanding(Standing):
    pass


@dataclass(frozen=True)
class TeamStanding(Standing):
    pass


S = TypeVar("S", bound=Standing)


class RosterPolicy(str, Enum):
    PER_ROUND = "per_round"
    SEASON_START = "season_start"


@dataclass(frozen=True)
class RosterMembership:
    driver_id: int
    team_id: Optional[int]
    effective_round_number: int = 1


@dataclass(frozen=True)
class TeamRoster:
    team_id: int
    driver_ids: FrozenSet[int]
    drivers_for_calculation: Union[int, str] = ALL_DRIVERS

    def select(self, scores: Mapping[int, Decimal]) -> Tuple[int, ...]:
        """
        Roster drivers whose scores count for the team this round: the N
        highest, or everyone who scored when the roster is short.
        """
        active = sorted(
            (driver_id for driver_id in self.driver_ids if driver_id in scores),
            key=lambda driver_id: (-scores[driver_id], driver_id),
        )
        if self.drivers_for_calculation == ALL_DRIVERS:
            return tuple(active)
        return tuple(active[: int(self.drivers_for_calculation)])

    def round_score(self, scores: Mapping[int, Decimal]) -> Decimal:
        return sum((scores[driver_id] for driver_id in self.select(scores)), ZERO)


def rank_subjects(
    subject_ids: Collection[int],
    rounds: Sequence[RoundDefinition],
    scores: Mapping[int, Mapping[int, Decimal]],
    policy: DropRoundPolicy,
    chain: Sequence[str],
    history: TiebreakHistory,
    standing_cls: Type[S],
    division_id: Optional[int] = None,
) -> Tuple[S, ...]:
    """
    Drop, total, sort, break ties and rank one group of subjects.

    `scores` is subject_id -> round_id -> points; a missing round scores 0.
    Ranks follow competition ranking: a residual tie of size n at rank r is
    followed by rank r + n.
    """
    round_ids = [r.id for r in rounds]
    series: Dict[int, Tuple[Decimal, ...]] = {}
    totals: Dict[int, Decimal] = {}
    dropped: Dict[int, List[int]] = {}
    for subject_id in subject_ids:
        per_round = scores.get(subject_id, {})
        series[subject_id] = tuple(per_round.get(round_id, ZERO) for round_id in round_ids)
        totals[subject_id], dropped[subject_id] = total_after_drops(series[subject_id], policy)

    ordered = sorted(subject_ids, key=lambda s: (-totals[s], s))
    standings: List[S] = []
    rank = 1
    for _, tied in groupby(ordered, key=lambda s: totals[s]):
        cluster = list(tied)
        groups = resolve_tie(cluster, chain, history) if len(cluster) > 1 else [tuple(cluster)]
        for group in groups:
            for subject_id in group:
                standings.append(
                    standing_cls(
                        subject_id=subject_id,
                        total_points=totals[subject_id],
                        rounds_counted=len(round_ids) - len(dropped[subject_id]),
                        rank=rank,
                        tie_group_size=len(group),
                        division_id=division_id,
                        round_points=series[subject_id],
                        dropped_round_ids=tuple(round_ids[idx] for idx in dropped[subject_id]),
                    )
                )
            rank += len(group)
    return tuple(standings)


def compute_round_scores(
    rounds: Sequence[RoundDefinition],
    results: Sequence[ScoredResult],
    division_ids: Optional[Collection[int]] = None,
) -> Dict[int, Dict[int, RoundScore]]:
    event_round = {event.id: r.id for r in rounds for event in r.events}
    by_round: Dict[int, List[ScoredResult]] = defaultdict(list)
    for result in results:
        if result.race_event_id not in event_round:
            raise DataIntegrityError(
                f"Result for driver {result.driver_id} references unknown race event "
                f"{result.race_event_id}"
            )
        by_round[event_round[result.race_event_id]].append(result)
    return {r.id: aggregate_round(r, by_round.get(r.id, []), division_ids) for r in rounds}


@dataclass(frozen=True)
class _Finishes:
    race: Mapping[int, Mapping[int, int]]
    qualifying: Mapping[int, Mapping[int, int]]
    race_one_events: FrozenSet[int]


def _driver_finishes(rounds: Sequence[RoundDefinition], results: Sequence[ScoredResult]) -> _Finishes:
    events = {event.id: event for r in rounds for event in r.events}
    race: Dict[int, Dict[int, int]] = defaultdict(dict)
    qualifying: Dict[int, Dict[int, int]] = defaultdict(dict)
    for result in results:
        event = events.get(result.race_event_id)
        if event is None or not result.classified:
            continue
        target = qualifying if event.is_qualifier else race
        target[result.driver_id][event.id] = result.position
    race_one = frozenset(
        event.id for event in events.values() if not event.is_qualifier and event.race_number == 1
    )
    return _Finishes(dict(race), dict(qualifying), race_one)


def driver_history(
    rounds: Sequence[RoundDefinition],
    results: Sequence[ScoredResult],
    round_scores: RoundScores,
) -> TiebreakHistory:
    finishes = _driver_finishes(rounds, results)
    drivers = {driver_id for per_round in round_scores.values() for driver_id in per_round}
    return TiebreakHistory(
        round_scores={
            driver_id: tuple(
                round_scores[r.id][driver_id].points if driver_id in round_scores.get(r.id, {}) else ZERO
                for r in rounds
            )
            for driver_id in drivers
        },
        race_positions=finishes.race,
        qualifying_positions=finishes.qualifying,
        race_one_events=finishes.race_one_events,
    )


def _check_round_scores(
    rounds: Sequence[RoundDefinition],
    round_scores: RoundScores,
    drivers: Mapping[int, Optional[int]],
    strict: bool,
) -> None:
    completed = {r.id for r in rounds}
    for round_id, per_driver in round_scores.items():
        if round_id not in completed:
            raise DataIntegrityError(f"Round score references round {round_id} which is not completed")
        unknown = sorted(set(per_driver) - set(drivers))
        if unknown:
            raise DataIntegrityError(
                f"Round {round_id} has scores for unregistered drivers {unknown}"
            )
    if not drivers:
        return
    for r in rounds:
        if round_scores.get(r.id):
            continue
        message = f"Completed round {r.round_number} (id {r.id}) has no driver scores"
        if strict:
            raise IncompleteDataError(message)
        log.warning("%s; counting it as 0 for every driver", message)


def compute_driver_standings(
    rounds: Sequence[RoundDefinition],
    round_scores: RoundScores,
    drivers: Mapping[int, Optional[int]],
    policy: DropRoundPolicy,
    chain: Sequence[str],
    history: TiebreakHistory,
    tiebreakers_enabled: bool = True,
    strict: bool = True,
) -> Dict[Optional[int], Tuple[DriverStanding, ...]]:
    """
    Driver standings per division (key None for a season without divisions).

    `drivers` maps every registered driver to its division; a driver with no
    score in a completed round gets 0 for it and is still ranked.
    """
    _check_round_scores(rounds, round_scores, drivers, strict)

    scores: Dict[int, Dict[int, Decimal]] = defaultdict(dict)
    for round_id, per_driver in round_scores.items():
        for driver_id, score in per_driver.items():
            scores[driver_id][round_id] = score.points

    by_division: Dict[Optional[int], List[int]] = defaultdict(list)
    for driver_id, division_id in drivers.items():
        by_division[division_id].append(driver_id)

    standings: Dict[Optional[int], Tuple[DriverStanding, ...]] = {}
    for division_id, driver_ids in by_division.items():
        division_chain = validate_chain(chain, tiebreakers_enabled, len(driver_ids))
        standings[division_id] = rank_subjects(
            driver_ids,
            rounds,
            scores,
            policy,
            division_chain,
            history,
            DriverStanding,
            division_id=division_id,
        )
    return standings


def rosters_for_round(
    memberships: Sequence[RosterMembership],
    round_number: int,
    drivers_for_calculation: Union[int, str, None] = ALL_DRIVERS,
) -> Dict[int, TeamRoster]:
    """
    Team rosters in effect at `round_number`: each driver belongs to the team of
    their latest membership that took effect on or before that round.
    """
    latest: Dict[int, RosterMembership] = {}
    for membership in memberships:
        if membership.effective_round_number > round_number:
            continue
        current = latest.get(membership.driver_id)
        if current is None or membership.effective_round_number >= current.effective_round_number:
            latest[membership.driver_id] = membership

    members: Dict[int, set] = defaultdict(set)
    for membership in latest.values():
        if membership.team_id is not None:
            members[membership.team_id].add(membership.driver_id)

    n = ALL_DRIVERS if drivers_for_calculation is None else drivers_for_calculation
    return {
        team_id: TeamRoster(team_id, frozenset(driver_ids), n)
        for team_id, driver_ids in members.items()
    }


def _validate_drivers_for_calculation(
    drivers_for_calculation: Union[int, str, None],
    rosters_by_round: Mapping[int, Mapping[int, TeamRoster]],
) -> None:
    if drivers_for_calculation in (None, ALL_DRIVERS):
        return
    if isinstance(drivers_for_calculation, bool) or not isinstance(drivers_for_calculation, int):
        raise ConfigurationError(
            f"drivers_for_calculation must be a positive integer or 'all', "
            f"got {drivers_for_calculation!r}"
        )
    if drivers_for_calculation < 1:
        raise ConfigurationError("drivers_for_calculation must be at least 1")
    largest = max(
        (len(roster.driver_ids) for rosters in rosters_by_round.values() for roster in rosters.values()),
        default=0,
    )
    if largest and drivers_for_calculation > largest:
        raise ConfigurationError(
            f"drivers_for_calculation={drivers_for_calculation} exceeds every team roster "
            f"(largest roster has {largest} drivers)"
        )


def compute_team_standings(
    rounds: Sequence[RoundDefinition],
    round_scores: RoundScores,
    results: Sequence[ScoredResult],
    memberships: Sequence[RosterMembership],
    policy: DropRoundPolicy,
    chain: Sequence[str],
    drivers_for_calculation: Union[int, str, None] = ALL_DRIVERS,
    roster_policy: RosterPolicy = RosterPolicy.PER_ROUND,
    tiebreakers_enabled: bool = True,
) -> Tuple[TeamStanding, ...]:
    """
    Team standings across the whole season.

    Each round a team scores the sum of its selected roster drivers' round
    scores; the team totals then go through the same drop/rank/tiebreak
    pipeline as drivers.
    """
    if not rounds:
        return ()
    roster_policy = RosterPolicy(roster_policy)
    first_round = min(r.round_number for r in rounds)
    rosters_by_round = {
        r.id: rosters_for_round(
            memberships,
            first_round if roster_policy is RosterPolicy.SEASON_START else r.round_number,
            drivers_for_calculation,
        )
        for r in rounds
    }
    _validate_drivers_for_calculation(drivers_for_calculation, rosters_by_round)

    team_scores: Dict[int, Dict[int, Decimal]] = defaultdict(dict)
    selected: Dict[int, Dict[int, Tuple[int, ...]]] = defaultdict(dict)  # round -> team -> drivers
    for r in rounds:
        driver_points = {
            driver_id: score.points for driver_id, score in round_scores.get(r.id, {}).items()
        }
        for team_id, roster in rosters_by_round[r.id].items():
            selected[r.id][team_id] = roster.select(driver_points)
            team_scores[team_id][r.id] = roster.round_score(driver_points)

    team_ids = sorted(team_scores)
    if not team_ids:
        log.debug("No team has roster members in any completed round")
        return ()

    history = _team_history(rounds, results, selected, team_scores)
    return rank_subjects(
        team_ids,
        rounds,
        team_scores,
        policy,
        validate_chain(chain, tiebreakers_enabled, len(team_ids)),
        history,
        TeamStanding,
    )


def _team_history(
    rounds: Sequence[RoundDefinition],
    results: Sequence[ScoredResult],
    selected: Mapping[int, Mapping[int, Tuple[int, ...]]],
    team_scores: Mapping[int, Mapping[int, Decimal]],
) -> TiebreakHistory:
    # A team's position in an event is the best one among its counted drivers.
    finishes = _driver_finishes(rounds, results)
    race: Dict[int, Dict[int, int]] = defaultdict(dict)
    qualifying: Dict[int, Dict[int, int]] = defaultdict(dict)
    for r in rounds:
        round_events = {event.id for event in r.events}
        for team_id, driver_ids in selected.get(r.id, {}).items():
            for source, target in ((finishes.race, race), (finishes.qualifying, qualifying)):
                for driver_id in driver_ids:
                    for event_id, position in source.get(driver_id, {}).items():
                        if event_id not in round_events:
                            continue
                        best = target[team_id].get(event_id)
                        if best is None or position < best:
                            target[team_id][event_id] = position

    return TiebreakHistory(
        round_scores={
            team_id: tuple(per_round.get(r.id, ZERO) for r in rounds)
            for team_id, per_round in team_scores.items()
        },
        race_positions=dict(race),
        qualifying_positions=dict(qualifying),
        race_one_events=finishes.race_one_events,
    )
