from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, FrozenSet, Iterable, List, Mapping, Optional, Tuple, Union

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from championship.errors import ConfigurationError, DataIntegrityError, IncompleteDataError
from championship.models import Race, RaceResult, Round, Season, SeasonDriver, Team
from championship.rules import (
    BonusRule,
    BonusType,
    DropRoundPolicy,
    PointsSystem,
    RaceEvent,
    RoundDefinition,
    ScoredResult,
)
from championship.standings import ALL_DRIVERS, RosterMembership, RosterPolicy


log = logging.getLogger(__name__)

CONFIRMED = "confirmed"
INCOMPLETE_FATAL = "fatal"
INCOMPLETE_LENIENT = "lenient"


@dataclass(frozen=True)
class SeasonSnapshot:
    """Point-in-time input for one recomputation pass."""

    season_id: int
    rounds: Tuple[RoundDefinition, ...]
    results: Tuple[ScoredResult, ...]
    drivers: Mapping[int, Optional[int]]  # season driver id -> division id
    division_ids: FrozenSet[int] = frozenset()
    memberships: Tuple[RosterMembership, ...] = ()
    team_ids: FrozenSet[int] = frozenset()
    driver_drop_policy: DropRoundPolicy = field(default_factory=DropRoundPolicy)
    team_drop_policy: DropRoundPolicy = field(default_factory=DropRoundPolicy)
    tiebreaker_chain: Tuple[str, ...] = ()
    tiebreakers_enabled: bool = False
    team_championship_enabled: bool = False
    drivers_for_calculation: Union[int, str] = ALL_DRIVERS
    roster_policy: RosterPolicy = RosterPolicy.PER_ROUND
    strict: bool = True


def _field(row: Any, name: str, default: Any = None) -> Any:
    if isinstance(row, Mapping):
        return row.get(name, default)
    return getattr(row, name, default)


def ingest_results(rows: Iterable[Any]) -> Tuple[ScoredResult, ...]:
    """
    Normalize confirmed result rows (mappings or RaceResult rows) into
    immutable ScoredResult records. Unconfirmed rows are skipped.
    """
    seen = set()
    scored: List[ScoredResult] = []
    for row in rows:
        if _field(row, "status", CONFIRMED) != CONFIRMED:
            continue
        driver_id = _field(row, "driver_id")
        if driver_id is None:
            driver_id = _field(row, "season_driver_id")
        event_id = _field(row, "race_event_id")
        if event_id is None:
            event_id = _field(row, "race_id")
        if driver_id is None or event_id is None:
            raise DataIntegrityError(f"Result row {row!r} has no driver or race event")

        key = (driver_id, event_id)
        if key in seen:
            raise DataIntegrityError(
                f"Driver {driver_id} has more than one result in race event {event_id}"
            )
        seen.add(key)

        dns = bool(_field(row, "dns", False))
        dnf = bool(_field(row, "dnf", False)) and not dns
        position = None if dns else _field(row, "position")
        if position is not None:
            position = int(position)
            if position < 1:
                raise DataIntegrityError(
                    f"Driver {driver_id} has invalid position {position} in race event {event_id}"
                )
        scored.append(
            ScoredResult(
                driver_id=driver_id,
                race_event_id=event_id,
                division_id=_field(row, "division_id"),
                position=position,
                dnf=dnf,
                dns=dns,
                has_fastest_lap=bool(_field(row, "has_fastest_lap", False)) and not (dnf or dns),
                has_pole=bool(_field(row, "has_pole", False)),
            )
        )
    return tuple(scored)


def with_registered_divisions(
    results: Iterable[ScoredResult], drivers: Mapping[int, Optional[int]]
) -> Tuple[ScoredResult, ...]:
    """
    Score every result in the division its driver is registered in. A row
    naming a different division is a DataIntegrityError; unregistered drivers
    are left for the standings check.
    """
    placed: List[ScoredResult] = []
    for result in results:
        if result.driver_id not in drivers:
            placed.append(result)
            continue
        registered = drivers[result.driver_id]
        if result.division_id is None:
            result = replace(result, division_id=registered)
        elif result.division_id != registered:
            raise DataIntegrityError(
                f"Result for driver {result.driver_id} in race event {result.race_event_id} "
                f"names division {result.division_id}, driver is registered in {registered}"
            )
        placed.append(result)
    return tuple(placed)


def bonus_rules_for(row: Union[Race, Round]) -> Tuple[BonusRule, ...]:
    rules = []
    if row.fastest_lap_bonus:
        rules.append(BonusRule.create(BonusType.FASTEST_LAP, row.fastest_lap_bonus, row.fastest_lap_top_10))
    if row.pole_bonus:
        rules.append(BonusRule.create(BonusType.POLE, row.pole_bonus, row.pole_top_10))
    return tuple(rules)


def race_event_for(race: Race) -> RaceEvent:
    return RaceEvent(
        id=race.id,
        round_id=race.round_id,
        points_system=PointsSystem.from_mapping(
            race.points_system or {}, race.dnf_points, race.dns_points
        ),
        bonus_rules=bonus_rules_for(race),
        is_qualifier=race.is_qualifier,
        race_number=race.race_number,
    )


def round_definition_for(round_row: Round) -> RoundDefinition:
    points_system = None
    bonus_rules: Tuple[BonusRule, ...] = ()
    if round_row.round_points_enabled:
        if round_row.points_system:
            points_system = PointsSystem.from_mapping(round_row.points_system)
        bonus_rules = bonus_rules_for(round_row)
    return RoundDefinition(
        id=round_row.id,
        round_number=round_row.round_number,
        events=tuple(race_event_for(race) for race in sorted(round_row.races, key=lambda r: r.id)),
        points_system=points_system,
        bonus_rules=bonus_rules,
    )


def _memberships(entries: Iterable[SeasonDriver]) -> Tuple[RosterMembership, ...]:
    memberships: List[RosterMembership] = []
    for entry in entries:
        memberships.append(RosterMembership(entry.id, entry.team_id, 1))
        for transfer in entry.transfers:
            memberships.append(
                RosterMembership(entry.id, transfer.team_id, transfer.effective_round_number)
            )
    return tuple(memberships)


def _check_completeness(
    rounds: Iterable[RoundDefinition], results: Iterable[ScoredResult], strict: bool
) -> None:
    events_with_results = {result.race_event_id for result in results}
    for round_def in rounds:
        gaps = []
        if not round_def.events:
            gaps.append(f"Completed round {round_def.round_number} has no race events")
        for event in round_def.events:
            if event.id not in events_with_results:
                gaps.append(
                    f"Race event {event.id} of completed round {round_def.round_number} "
                    f"has no confirmed results"
                )
        for message in gaps:
            if strict:
                raise IncompleteDataError(message)
            log.warning("%s; scoring it as empty", message)


def load_season_snapshot(db: Session, season_id: int) -> SeasonSnapshot:
    """
    Read everything one recomputation needs from a single session, so the
    pass sees one consistent view of results and configuration.
    """
    season = db.scalar(
        select(Season)
        .where(Season.id == season_id)
        .options(
            selectinload(Season.divisions),
            selectinload(Season.tiebreaker_rules),
            selectinload(Season.drivers).selectinload(SeasonDriver.transfers),
        )
        .execution_options(populate_existing=True)
    )
    if season is None:
        raise DataIntegrityError(f"Unknown season {season_id}")

    round_rows = db.scalars(
        select(Round)
        .where(Round.season_id == season_id, Round.status == "completed")
        .options(selectinload(Round.races))
        .order_by(Round.round_number.asc())
        .execution_options(populate_existing=True)
    ).all()
    race_ids = [race.id for r in round_rows for race in r.races]
    result_rows = (
        db.scalars(select(RaceResult).where(RaceResult.race_id.in_(race_ids))).all()
        if race_ids
        else []
    )
    team_ids = frozenset(db.scalars(select(Team.id).where(Team.season_id == season_id)).all())

    if season.incomplete_data_policy not in (INCOMPLETE_FATAL, INCOMPLETE_LENIENT):
        raise ConfigurationError(
            f"Unknown incomplete data policy {season.incomplete_data_policy!r}"
        )
    strict = season.incomplete_data_policy == INCOMPLETE_FATAL
    try:
        roster_policy = RosterPolicy(season.roster_policy)
    except ValueError:
        raise ConfigurationError(f"Unknown roster policy {season.roster_policy!r}") from None

    rounds = tuple(round_definition_for(r) for r in round_rows)
    drivers = {entry.id: entry.division_id for entry in season.drivers}
    results = with_registered_divisions(ingest_results(result_rows), drivers)
    _check_completeness(rounds, results, strict)

    memberships = _memberships(season.drivers)
    unknown_teams = {m.team_id for m in memberships if m.team_id is not None} - team_ids
    if unknown_teams:
        raise DataIntegrityError(f"Season drivers reference unknown teams {sorted(unknown_teams)}")

    snapshot = SeasonSnapshot(
        season_id=season.id,
        rounds=rounds,
        results=results,
        drivers=drivers,
        division_ids=frozenset(d.id for d in season.divisions),
        memberships=memberships,
        team_ids=team_ids,
        driver_drop_policy=DropRoundPolicy(season.drop_round, season.total_drop_rounds),
        team_drop_policy=DropRoundPolicy(season.teams_drop_rounds, season.teams_total_drop_rounds),
        tiebreaker_chain=tuple(rule.slug for rule in season.tiebreaker_rules),
        tiebreakers_enabled=season.tiebreakers_enabled,
        team_championship_enabled=season.team_championship_enabled,
        drivers_for_calculation=(
            ALL_DRIVERS
            if season.teams_drivers_for_calculation is None
            else season.teams_drivers_for_calculation
        ),
        roster_policy=roster_policy,
        strict=strict,
    )
    log.debug(
        "Loaded season %s snapshot: %d completed rounds, %d results",
        season_id,
        len(snapshot.rounds),
        len(snapshot.results),
    )
    return snapshot
