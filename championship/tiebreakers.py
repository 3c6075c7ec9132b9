"""
Tiebreaker rules for point ties in driver and team standings.

Each rule is a stateless strategy registered under a slug. Given a tie cluster
and the season history it returns a metric per subject (higher is better);
`apply_rule` turns the metrics into an ordered partition of the cluster and
`resolve_tie` walks the configured chain until every group is a singleton or
the chain is exhausted.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from decimal import Decimal
from itertools import groupby
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Sequence, Tuple

from championship.errors import ConfigurationError


Partition = List[Tuple[int, ...]]


@dataclass(frozen=True)
class TiebreakHistory:
    """
    Everything a rule may read, keyed by subject id (driver or team).

    round_scores: every completed round in round order, dropped rounds included.
    race_positions: classified finishes per non-qualifying race event.
    qualifying_positions: classified positions per qualifying event.
    race_one_events: ids of race events numbered 1 in their round.
    """

    round_scores: Mapping[int, Tuple[Decimal, ...]] = field(default_factory=dict)
    race_positions: Mapping[int, Mapping[int, int]] = field(default_factory=dict)
    qualifying_positions: Mapping[int, Mapping[int, int]] = field(default_factory=dict)
    race_one_events: FrozenSet[int] = frozenset()

    def positions(self, subject_id: int) -> Mapping[int, int]:
        return self.race_positions.get(subject_id, {})


TiebreakerRule = Callable[[Sequence[int], TiebreakHistory], Mapping[int, Any]]

_REGISTRY: Dict[str, TiebreakerRule] = {}


def register(slug: str) -> Callable[[TiebreakerRule], TiebreakerRule]:
    def decorator(rule: TiebreakerRule) -> TiebreakerRule:
        if slug in _REGISTRY:
            raise ValueError(f"Tiebreaker rule {slug!r} is already registered")
        _REGISTRY[slug] = rule
        return rule

    return decorator


def available_rules() -> List[str]:
    return sorted(_REGISTRY)


def get_rule(slug: str) -> TiebreakerRule:
    try:
        return _REGISTRY[slug]
    except KeyError:
        raise ConfigurationError(f"Unknown tiebreaker rule {slug!r}") from None


def validate_chain(chain: Sequence[str], enabled: bool = True, subject_count: int = 0) -> Tuple[str, ...]:
    """
    Check a configured chain before any ranking happens.
    An enabled but empty chain is only accepted when no tie is possible.
    """
    if not enabled:
        return ()
    seen = set()
    for slug in chain:
        get_rule(slug)
        if slug in seen:
            raise ConfigurationError(f"Tiebreaker rule {slug!r} is configured twice")
        seen.add(slug)
    if not chain and subject_count > 1:
        raise ConfigurationError("Tiebreakers are enabled but no rules are configured")
    return tuple(chain)


def apply_rule(cluster: Sequence[int], slug: str, history: TiebreakHistory) -> Partition:
    """
    Split a tie cluster by one rule: best metric first, equal metrics stay together.
    """
    metrics = get_rule(slug)(cluster, history)
    ordered = sorted(cluster, key=lambda subject_id: subject_id)
    ordered.sort(key=lambda subject_id: metrics[subject_id], reverse=True)
    return [tuple(group) for _, group in groupby(ordered, key=lambda s: metrics[s])]


def resolve_tie(cluster: Sequence[int], chain: Sequence[str], history: TiebreakHistory) -> Partition:
    groups: Partition = [tuple(sorted(cluster))]
    for slug in chain:
        if all(len(group) == 1 for group in groups):
            break
        refined: Partition = []
        for group in groups:
            if len(group) == 1:
                refined.append(group)
            else:
                refined.extend(apply_rule(group, slug, history))
        groups = refined
    return groups


@register("count_of_wins")
def count_of_wins(cluster: Sequence[int], history: TiebreakHistory) -> Dict[int, int]:
    return {
        subject_id: sum(1 for p in history.positions(subject_id).values() if p == 1)
        for subject_id in cluster
    }


@register("count_of_podiums")
def count_of_podiums(cluster: Sequence[int], history: TiebreakHistory) -> Dict[int, int]:
    return {
        subject_id: sum(1 for p in history.positions(subject_id).values() if p <= 3)
        for subject_id in cluster
    }


@register("best_single_round_score")
def best_single_round_score(cluster: Sequence[int], history: TiebreakHistory) -> Dict[int, Decimal]:
    return {
        subject_id: max(history.round_scores.get(subject_id, ()), default=Decimal("0"))
        for subject_id in cluster
    }


@register("head_to_head")
def head_to_head(cluster: Sequence[int], history: TiebreakHistory) -> Dict[int, int]:
    # Only events where both subjects were classified count.
    wins = {subject_id: 0 for subject_id in cluster}
    for subject_id in cluster:
        own = history.positions(subject_id)
        for other_id in cluster:
            if other_id == subject_id:
                continue
            theirs = history.positions(other_id)
            wins[subject_id] += sum(
                1 for event_id, p in own.items() if event_id in theirs and p < theirs[event_id]
            )
    return wins


@register("highest_qualifying_position")
def highest_qualifying_position(cluster: Sequence[int], history: TiebreakHistory) -> Dict[int, float]:
    return {
        subject_id: -min(history.qualifying_positions.get(subject_id, {}).values(), default=math.inf)
        for subject_id in cluster
    }


@register("race_1_best_result")
def race_one_best_result(cluster: Sequence[int], history: TiebreakHistory) -> Dict[int, float]:
    result = {}
    for subject_id in cluster:
        positions = [
            p
            for event_id, p in history.positions(subject_id).items()
            if event_id in history.race_one_events
        ]
        result[subject_id] = -min(positions, default=math.inf)
    return result


@register("best_result_all_races")
def best_result_all_races(cluster: Sequence[int], history: TiebreakHistory) -> Dict[int, Tuple[int, ...]]:
    # Countback: best finish, then second best, ... a missing result loses.
    return {
        subject_id: tuple(-p for p in sorted(history.positions(subject_id).values()))
        for subject_id in cluster
    }
