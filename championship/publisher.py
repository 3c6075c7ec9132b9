from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Sequence, Set, Tuple

from sqlalchemy.orm import Session

from championship.errors import DataIntegrityError, StandingsError
from championship.ingest import SeasonSnapshot, load_season_snapshot
from championship.standings import (
    DriverStanding,
    Standing,
    TeamStanding,
    compute_driver_standings,
    compute_round_scores,
    compute_team_standings,
    driver_history,
)


log = logging.getLogger(__name__)


@dataclass(frozen=True)
class SeasonStandings:
    season_id: int
    drivers: Mapping[Optional[int], Tuple[DriverStanding, ...]]
    teams: Tuple[TeamStanding, ...] = ()
    round_ids: Tuple[int, ...] = ()
    division_ids: FrozenSet[int] = frozenset()
    computed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def driver_standings(self, division_id: Optional[int] = None) -> List[DriverStanding]:
        if division_id is not None:
            if division_id not in self.division_ids:
                raise DataIntegrityError(
                    f"Division {division_id} does not belong to season {self.season_id}"
                )
            return list(self.drivers.get(division_id, ()))
        if set(self.drivers) <= {None}:
            return list(self.drivers.get(None, ()))
        ordered: List[DriverStanding] = []
        for key in sorted(self.drivers, key=lambda d: (d is None, d or 0)):
            ordered.extend(self.drivers[key])
        return ordered


def compute_season_standings(snapshot: SeasonSnapshot) -> SeasonStandings:
    """
    One full pass: round scores, driver standings per division and, when the
    season runs a team championship, team standings. Pure in `snapshot`.
    """
    round_scores = compute_round_scores(
        snapshot.rounds, snapshot.results, snapshot.division_ids
    )
    drivers = compute_driver_standings(
        snapshot.rounds,
        round_scores,
        snapshot.drivers,
        snapshot.driver_drop_policy,
        snapshot.tiebreaker_chain,
        driver_history(snapshot.rounds, snapshot.results, round_scores),
        tiebreakers_enabled=snapshot.tiebreakers_enabled,
        strict=snapshot.strict,
    )
    teams: Tuple[TeamStanding, ...] = ()
    if snapshot.team_championship_enabled:
        teams = compute_team_standings(
            snapshot.rounds,
            round_scores,
            snapshot.results,
            [m for m in snapshot.memberships if m.team_id is None or m.team_id in snapshot.team_ids],
            snapshot.team_drop_policy,
            snapshot.tiebreaker_chain,
            drivers_for_calculation=snapshot.drivers_for_calculation,
            roster_policy=snapshot.roster_policy,
            tiebreakers_enabled=snapshot.tiebreakers_enabled,
        )
    return SeasonStandings(
        season_id=snapshot.season_id,
        drivers=drivers,
        teams=teams,
        round_ids=tuple(r.id for r in snapshot.rounds),
        division_ids=snapshot.division_ids,
    )


def export_records(standings: Sequence[Standing]) -> List[Dict[str, Any]]:
    return [
        {
            "rank": s.rank,
            "subject_id": s.subject_id,
            "total_points": s.total_points,
            "rounds_counted": s.rounds_counted,
            "tie_group_size": s.tie_group_size,
        }
        for s in standings
    ]


class StandingsPublisher:
    """
    Holds the latest complete standings per season.

    A recomputation reads one snapshot, computes everything, and only then
    swaps the result in; readers see either the old or the new standings.
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        loader: Callable[[Session, int], SeasonSnapshot] = load_season_snapshot,
    ) -> None:
        self._session_factory = session_factory
        self._loader = loader
        self._snapshots: Dict[int, SeasonStandings] = {}
        self._stale: Set[int] = set()
        self._generations: Dict[int, int] = {}
        self._lock = threading.Lock()

    def recompute(self, season_id: int, db: Optional[Session] = None) -> SeasonStandings:
        """
        Recompute and publish a season. Raises StandingsError on bad input,
        in which case the previously published standings stay in place.
        """
        log.info("Recomputing standings for season %s", season_id)
        with self._lock:
            generation = self._generations.get(season_id, 0)
        try:
            standings = compute_season_standings(self._load(season_id, db))
        except StandingsError as exc:
            log.warning(
                "Standings for season %s not published: %s: %s", season_id, exc.kind, exc
            )
            raise
        self.publish(standings, generation)
        return standings

    def _load(self, season_id: int, db: Optional[Session]) -> SeasonSnapshot:
        if db is not None:
            return self._loader(db, season_id)
        if self._session_factory is None:
            raise RuntimeError("StandingsPublisher has no session factory")
        with self._session_factory() as session:
            return self._loader(session, season_id)

    def publish(self, standings: SeasonStandings, generation: Optional[int] = None) -> None:
        """
        Swap in `standings`. When `generation` is given and the season was
        invalidated after that generation was read, the season stays stale.
        """
        season_id = standings.season_id
        with self._lock:
            self._snapshots[season_id] = standings
            if generation is None or generation == self._generations.get(season_id, 0):
                self._stale.discard(season_id)
        log.info(
            "Published standings for season %s (%d rounds)",
            standings.season_id,
            len(standings.round_ids),
        )

    def invalidate(self, season_id: int) -> None:
        with self._lock:
            self._stale.add(season_id)
            self._generations[season_id] = self._generations.get(season_id, 0) + 1

    def snapshot(self, season_id: int) -> Optional[SeasonStandings]:
        with self._lock:
            return self._snapshots.get(season_id)

    def _current(self, season_id: int, db: Optional[Session] = None) -> SeasonStandings:
        with self._lock:
            current = self._snapshots.get(season_id)
            stale = season_id in self._stale or current is None
        if not stale:
            return current
        try:
            return self.recompute(season_id, db)
        except StandingsError:
            if current is None:
                raise
            log.warning("Serving previous standings for season %s", season_id)
            return current

    def fetch(
        self, season_id: int, division_id: Optional[int] = None, db: Optional[Session] = None
    ) -> List[DriverStanding]:
        return self._current(season_id, db).driver_standings(division_id)

    def fetch_teams(self, season_id: int, db: Optional[Session] = None) -> List[TeamStanding]:
        return list(self._current(season_id, db).teams)
