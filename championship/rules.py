from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Collection, Dict, List, Mapping, Optional, Sequence, Tuple

from championship.errors import ConfigurationError, DataIntegrityError


SCORE_DECIMALS = 2
ZERO = Decimal("0")
TOP10 = 10


class BonusType(str, Enum):
    FASTEST_LAP = "fastest_lap"
    POLE = "pole"


class BonusRestriction(str, Enum):
    NONE = "none"
    TOP10_ONLY = "top10_only"


def to_points(value: Any, label: str = "points") -> Decimal:
    """
    Convert a configured points value to Decimal.
    Non-negative, at most two decimals; anything else is a ConfigurationError.
    """
    if isinstance(value, bool) or value is None:
        raise ConfigurationError(f"{label} must be a number, got {value!r}")
    try:
        points = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ConfigurationError(f"{label} must be a number, got {value!r}") from exc
    if not points.is_finite():
        raise ConfigurationError(f"{label} must be finite, got {value!r}")
    if points < 0:
        raise ConfigurationError(f"{label} cannot be negative, got {value!r}")
    if points != points.quantize(Decimal(1).scaleb(-SCORE_DECIMALS), rounding=ROUND_DOWN):
        raise ConfigurationError(
            f"{label} allows at most {SCORE_DECIMALS} decimals, got {value!r}"
        )
    return points


@dataclass(frozen=True)
class PointsSystem:
    entries: Tuple[Tuple[int, Decimal], ...]
    dnf_points: Optional[Decimal] = None
    dns_points: Optional[Decimal] = None

    @classmethod
    def from_mapping(
        cls,
        table: Mapping[Any, Any],
        dnf_points: Any = None,
        dns_points: Any = None,
    ) -> "PointsSystem":
        """
        Build a validated table from a position->points mapping.
        Keys may be JSON strings ("1": 25).
        """
        if not isinstance(table, Mapping) or not table:
            raise ConfigurationError("Points table must be a non-empty mapping")
        entries: Dict[int, Decimal] = {}
        for raw_position, raw_points in table.items():
            if isinstance(raw_position, bool):
                raise ConfigurationError(f"Invalid position {raw_position!r} in points table")
            try:
                position = int(str(raw_position))
            except ValueError as exc:
                raise ConfigurationError(
                    f"Invalid position {raw_position!r} in points table"
                ) from exc
            if position < 1:
                raise ConfigurationError(f"Positions start at 1, got {raw_position!r}")
            if position in entries:
                raise ConfigurationError(f"Position {position} defined twice")
            entries[position] = to_points(raw_points, f"points for P{position}")
        return cls(
            entries=tuple(sorted(entries.items())),
            dnf_points=None if dnf_points is None else to_points(dnf_points, "DNF points"),
            dns_points=None if dns_points is None else to_points(dns_points, "DNS points"),
        )

    def points_for(self, position: Optional[int]) -> Decimal:
        if position is None:
            return ZERO
        for entry_position, points in self.entries:
            if entry_position == position:
                return points
        return ZERO


@dataclass(frozen=True)
class BonusRule:
    type: BonusType
    value: Decimal
    restriction: BonusRestriction = BonusRestriction.NONE

    @classmethod
    def create(cls, type: Any, value: Any, top10_only: bool = False) -> "BonusRule":
        try:
            bonus_type = BonusType(type)
        except ValueError as exc:
            raise ConfigurationError(f"Unknown bonus type {type!r}") from exc
        restriction = BonusRestriction.TOP10_ONLY if top10_only else BonusRestriction.NONE
        return cls(bonus_type, to_points(value, f"{bonus_type.value} bonus"), restriction)

    def applies_to(self, position: Optional[int]) -> bool:
        if self.restriction is BonusRestriction.NONE:
            return True
        return position is not None and position <= TOP10


@dataclass(frozen=True)
class RaceEvent:
    id: int
    round_id: int
    points_system: PointsSystem
    bonus_rules: Tuple[BonusRule, ...] = ()
    is_qualifier: bool = False
    race_number: Optional[int] = None


@dataclass(frozen=True)
class RoundDefinition:
    id: int
    round_number: int
    events: Tuple[RaceEvent, ...]
    points_system: Optional[PointsSystem] = None
    bonus_rules: Tuple[BonusRule, ...] = ()

    @property
    def round_scoring_enabled(self) -> bool:
        return self.points_system is not None or bool(self.bonus_rules)


@dataclass(frozen=True)
class ScoredResult:
    driver_id: int
    race_event_id: int
    division_id: Optional[int] = None
    position: Optional[int] = None
    dnf: bool = False
    dns: bool = False
    has_fastest_lap: bool = False
    has_pole: bool = False

    @property
    def classified(self) -> bool:
        return self.position is not None and not self.dnf and not self.dns


@dataclass(frozen=True)
class RoundScore:
    driver_id: int
    round_id: int
    points: Decimal
    division_id: Optional[int] = None
    per_event_breakdown: Mapping[int, Decimal] = field(default_factory=dict)
    round_level_points: Decimal = ZERO


@dataclass(frozen=True)
class DropRoundPolicy:
    enabled: bool = False
    count: int = 0

    def __post_init__(self) -> None:
        if self.count < 0:
            raise ConfigurationError("Drop round count cannot be negative")
        if not self.enabled and self.count > 0:
            raise ConfigurationError(
                "Cannot set drop rounds above 0 when drop rounds are disabled"
            )

    def drop_count(self, rounds_completed: int) -> int:
        if not self.enabled:
            return 0
        return min(self.count, rounds_completed)


def _bonus_total(rules: Sequence[BonusRule], bonus_type: BonusType, position: Optional[int]) -> Decimal:
    return sum(
        (rule.value for rule in rules if rule.type is bonus_type and rule.applies_to(position)),
        ZERO,
    )


def calculate_event_points(
    event: RaceEvent,
    results: Sequence[ScoredResult],
    division_ids: Optional[Collection[int]] = None,
) -> Dict[int, Decimal]:
    """
    Points per driver for one race event.

    position points + fastest-lap/pole bonuses + DNF/DNS points.
    A DNF with a recorded position keeps its position points and adds the DNF
    points. A DNS only receives the DNS points.
    """
    table = event.points_system
    awarded: Dict[int, Decimal] = {}
    for result in results:
        if result.race_event_id != event.id:
            raise DataIntegrityError(
                f"Result for driver {result.driver_id} belongs to race event "
                f"{result.race_event_id}, not {event.id}"
            )
        if result.division_id is not None and (
            division_ids is None or result.division_id not in division_ids
        ):
            raise DataIntegrityError(
                f"Result for driver {result.driver_id} references unknown division "
                f"{result.division_id}"
            )
        if result.driver_id in awarded:
            raise DataIntegrityError(
                f"Driver {result.driver_id} has more than one result in race event {event.id}"
            )

        if result.dns:
            awarded[result.driver_id] = table.dns_points or ZERO
            continue

        points = table.points_for(result.position)
        if result.has_fastest_lap and not result.dnf:
            points += _bonus_total(event.bonus_rules, BonusType.FASTEST_LAP, result.position)
        if result.has_pole:
            points += _bonus_total(event.bonus_rules, BonusType.POLE, result.position)
        if result.dnf:
            points += table.dnf_points or ZERO
        awarded[result.driver_id] = points
    return awarded


def competition_positions(scores: Mapping[int, Decimal]) -> Dict[int, int]:
    """
    Standard competition ranking ("1224"): equal scores share a position.
    """
    ordered = sorted(scores.items(), key=lambda item: (-item[1], item[0]))
    positions: Dict[int, int] = {}
    previous: Optional[Decimal] = None
    current = 0
    for idx, (subject_id, score) in enumerate(ordered, start=1):
        if score != previous:
            current = idx
            previous = score
        positions[subject_id] = current
    return positions


def _round_level_points(
    round_def: RoundDefinition,
    event_totals: Mapping[int, Decimal],
    driver_division: Mapping[int, Optional[int]],
    results: Sequence[ScoredResult],
    events_by_id: Mapping[int, RaceEvent],
) -> Dict[int, Decimal]:
    by_division: Dict[Optional[int], Dict[int, Decimal]] = defaultdict(dict)
    for driver_id, total in event_totals.items():
        by_division[driver_division[driver_id]][driver_id] = total

    round_positions: Dict[int, int] = {}
    for scores in by_division.values():
        round_positions.update(competition_positions(scores))

    retired = {r.driver_id for r in results if r.dnf or r.dns}
    fastest_lap = {
        r.driver_id
        for r in results
        if r.has_fastest_lap and not r.dnf and not events_by_id[r.race_event_id].is_qualifier
    }
    pole = {
        r.driver_id
        for r in results
        if r.has_pole and events_by_id[r.race_event_id].is_qualifier
    }

    extra: Dict[int, Decimal] = {}
    for driver_id, position in round_positions.items():
        points = ZERO
        # Any DNF/DNS in the round forfeits the round-position points.
        if round_def.points_system is not None and driver_id not in retired:
            points += round_def.points_system.points_for(position)
        if driver_id in fastest_lap:
            points += _bonus_total(round_def.bonus_rules, BonusType.FASTEST_LAP, position)
        if driver_id in pole:
            points += _bonus_total(round_def.bonus_rules, BonusType.POLE, position)
        extra[driver_id] = points
    return extra


def aggregate_round(
    round_def: RoundDefinition,
    results: Sequence[ScoredResult],
    division_ids: Optional[Collection[int]] = None,
) -> Dict[int, RoundScore]:
    """
    Sum every race event of a round per driver, then add round-level
    points and bonuses on top when the round has them configured.
    """
    events_by_id = {event.id: event for event in round_def.events}
    per_event: Dict[int, List[ScoredResult]] = defaultdict(list)
    driver_division: Dict[int, Optional[int]] = {}
    for result in results:
        if result.race_event_id not in events_by_id:
            raise DataIntegrityError(
                f"Race event {result.race_event_id} is not part of round {round_def.id}"
            )
        per_event[result.race_event_id].append(result)
        known = driver_division.setdefault(result.driver_id, result.division_id)
        if known != result.division_id:
            raise DataIntegrityError(
                f"Driver {result.driver_id} has results in divisions {known} and "
                f"{result.division_id} in round {round_def.id}"
            )

    breakdown: Dict[int, Dict[int, Decimal]] = defaultdict(dict)
    for event in round_def.events:
        for driver_id, points in calculate_event_points(
            event, per_event.get(event.id, []), division_ids
        ).items():
            breakdown[driver_id][event.id] = points

    event_totals = {
        driver_id: sum(per_driver.values(), ZERO) for driver_id, per_driver in breakdown.items()
    }
    round_extra: Dict[int, Decimal] = {}
    if round_def.round_scoring_enabled:
        round_extra = _round_level_points(
            round_def, event_totals, driver_division, results, events_by_id
        )

    return {
        driver_id: RoundScore(
            driver_id=driver_id,
            round_id=round_def.id,
            points=total + round_extra.get(driver_id, ZERO),
            division_id=driver_division[driver_id],
            per_event_breakdown=dict(breakdown[driver_id]),
            round_level_points=round_extra.get(driver_id, ZERO),
        )
        for driver_id, total in event_totals.items()
    }


def lowest_round_indexes(scores: Sequence[Decimal], count: int) -> List[int]:
    """
    Indexes of the `count` lowest scores. Scores are in round order, so
    equally-low rounds drop the earliest first.
    """
    if count <= 0:
        return []
    ranked = sorted(range(len(scores)), key=lambda idx: (scores[idx], idx))
    return sorted(ranked[:count])


def total_after_drops(scores: Sequence[Decimal], policy: DropRoundPolicy) -> Tuple[Decimal, List[int]]:
    dropped = lowest_round_indexes(scores, policy.drop_count(len(scores)))
    dropped_set = set(dropped)
    total = sum((s for idx, s in enumerate(scores) if idx not in dropped_set), ZERO)
    return total, dropped


def round_score(value: Any) -> float:
    return round(float(value), SCORE_DECIMALS)
