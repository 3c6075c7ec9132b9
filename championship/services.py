from __future__ import annotations

from typing import Any, Iterable, Optional, Sequence

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from championship.models import (
    Division,
    Driver,
    Race,
    RaceResult,
    Round,
    Season,
    SeasonDriver,
    SeasonTiebreakerRule,
    Team,
    TeamTransfer,
)
from championship.rules import DropRoundPolicy, PointsSystem, round_score, to_points
from championship.schemas import RaceResultIn, SeasonConfigUpdate
from championship.standings import Standing
from championship.tiebreakers import validate_chain


def get_or_404(db: Session, model: Any, obj_id: int, label: str):
    obj = db.get(model, obj_id)
    if not obj:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return obj


def get_season_or_404(db: Session, season_id: int) -> Season:
    return get_or_404(db, Season, season_id, "Season")


def get_round_or_404(db: Session, round_id: int) -> Round:
    return get_or_404(db, Round, round_id, "Round")


def get_race_or_404(db: Session, race_id: int) -> Race:
    return get_or_404(db, Race, race_id, "Race")


def get_season_driver_or_404(db: Session, season_driver_id: int) -> SeasonDriver:
    return get_or_404(db, SeasonDriver, season_driver_id, "Season driver")


def _require_in_season(obj: Any, season_id: int, label: str) -> None:
    if obj is None or obj.season_id != season_id:
        raise HTTPException(status_code=400, detail=f"{label} does not belong to this season")


def create_season(db: Session, name: str) -> Season:
    existing = db.scalar(select(Season).where(Season.name == name.strip()))
    if existing:
        raise HTTPException(status_code=400, detail="Season name already exists")
    season = Season(name=name.strip())
    db.add(season)
    db.flush()
    return season


def update_season_config(db: Session, season_id: int, payload: SeasonConfigUpdate) -> Season:
    season = get_season_or_404(db, season_id)
    changes = payload.model_dump(exclude_none=True, exclude={"teams_drivers_all"})
    for key, value in changes.items():
        setattr(season, key, value)
    if payload.teams_drivers_all:
        season.teams_drivers_for_calculation = None

    # Both policies raise ConfigurationError when inconsistent.
    DropRoundPolicy(season.drop_round, season.total_drop_rounds)
    DropRoundPolicy(season.teams_drop_rounds, season.teams_total_drop_rounds)
    return season


def set_tiebreaker_order(db: Session, season_id: int, slugs: Sequence[str]) -> list[str]:
    season = get_season_or_404(db, season_id)
    validate_chain(slugs)
    season.tiebreaker_rules.clear()
    db.flush()
    for priority, slug in enumerate(slugs, start=1):
        season.tiebreaker_rules.append(SeasonTiebreakerRule(slug=slug, priority=priority))
    return list(slugs)


def create_division(db: Session, season_id: int, name: str) -> Division:
    get_season_or_404(db, season_id)
    existing = db.scalar(
        select(Division).where(Division.season_id == season_id, Division.name == name.strip())
    )
    if existing:
        raise HTTPException(status_code=400, detail="Division name already exists")
    division = Division(season_id=season_id, name=name.strip())
    db.add(division)
    db.flush()
    return division


def create_team(db: Session, season_id: int, name: str) -> Team:
    get_season_or_404(db, season_id)
    existing = db.scalar(select(Team).where(Team.season_id == season_id, Team.name == name.strip()))
    if existing:
        raise HTTPException(status_code=400, detail="Team name already exists")
    team = Team(season_id=season_id, name=name.strip())
    db.add(team)
    db.flush()
    return team


def register_driver(
    db: Session,
    season_id: int,
    name: str,
    number: Optional[int] = None,
    division_id: Optional[int] = None,
    team_id: Optional[int] = None,
) -> SeasonDriver:
    get_season_or_404(db, season_id)
    if division_id is not None:
        _require_in_season(db.get(Division, division_id), season_id, "Division")
    if team_id is not None:
        _require_in_season(db.get(Team, team_id), season_id, "Team")

    driver = Driver(name=name.strip(), number=number)
    db.add(driver)
    db.flush()
    entry = SeasonDriver(
        season_id=season_id, driver_id=driver.id, division_id=division_id, team_id=team_id
    )
    db.add(entry)
    db.flush()
    return entry


def add_team_transfer(
    db: Session, season_driver_id: int, team_id: Optional[int], effective_round_number: int
) -> TeamTransfer:
    entry = get_season_driver_or_404(db, season_driver_id)
    if team_id is not None:
        _require_in_season(db.get(Team, team_id), entry.season_id, "Team")
    existing = db.scalar(
        select(TeamTransfer).where(
            TeamTransfer.season_driver_id == season_driver_id,
            TeamTransfer.effective_round_number == effective_round_number,
        )
    )
    if existing:
        existing.team_id = team_id
        return existing
    transfer = TeamTransfer(
        season_driver_id=season_driver_id,
        team_id=team_id,
        effective_round_number=effective_round_number,
    )
    db.add(transfer)
    db.flush()
    return transfer


def _validate_bonuses(fastest_lap_bonus: Optional[float], pole_bonus: Optional[float]) -> None:
    if fastest_lap_bonus is not None:
        to_points(fastest_lap_bonus, "fastest_lap bonus")
    if pole_bonus is not None:
        to_points(pole_bonus, "pole bonus")


def create_round(db: Session, season_id: int, **fields: Any) -> Round:
    get_season_or_404(db, season_id)
    existing = db.scalar(
        select(Round).where(
            Round.season_id == season_id, Round.round_number == fields["round_number"]
        )
    )
    if existing:
        raise HTTPException(status_code=400, detail="Round number already exists in this season")
    if fields.get("points_system"):
        PointsSystem.from_mapping(fields["points_system"])
    _validate_bonuses(fields.get("fastest_lap_bonus"), fields.get("pole_bonus"))
    round_row = Round(season_id=season_id, **fields)
    db.add(round_row)
    db.flush()
    return round_row


def create_race(db: Session, round_id: int, **fields: Any) -> Race:
    round_row = get_round_or_404(db, round_id)
    if round_row.status == "completed":
        raise HTTPException(status_code=400, detail="Reopen the round before adding races")
    PointsSystem.from_mapping(
        fields["points_system"], fields.get("dnf_points"), fields.get("dns_points")
    )
    _validate_bonuses(fields.get("fastest_lap_bonus"), fields.get("pole_bonus"))
    race = Race(round_id=round_id, **fields)
    db.add(race)
    db.flush()
    return race


def upsert_race_results(db: Session, race_id: int, rows: Iterable[RaceResultIn]) -> list[RaceResult]:
    race = get_race_or_404(db, race_id)
    season_id = race.round.season_id
    rows = list(rows)
    seen = set()
    for row in rows:
        if row.season_driver_id in seen:
            raise HTTPException(
                status_code=400, detail=f"Driver {row.season_driver_id} listed twice"
            )
        seen.add(row.season_driver_id)
        entry = db.get(SeasonDriver, row.season_driver_id)
        _require_in_season(entry, season_id, "Season driver")
        if row.division_id is not None:
            _require_in_season(db.get(Division, row.division_id), season_id, "Division")
            if row.division_id != entry.division_id:
                raise HTTPException(
                    status_code=400,
                    detail=f"Driver {row.season_driver_id} is not registered in division {row.division_id}",
                )
        if row.dnf and row.dns:
            raise HTTPException(status_code=400, detail="A result cannot be both DNF and DNS")

    existing = {
        r.season_driver_id: r
        for r in db.scalars(select(RaceResult).where(RaceResult.race_id == race_id)).all()
    }
    saved: list[RaceResult] = []
    for row in rows:
        values = row.model_dump()
        result = existing.get(row.season_driver_id)
        if result:
            for key, value in values.items():
                setattr(result, key, value)
        else:
            result = RaceResult(race_id=race_id, **values)
            db.add(result)
        saved.append(result)
    db.flush()
    return saved


def complete_round(db: Session, round_id: int) -> Round:
    round_row = get_round_or_404(db, round_id)
    if round_row.status == "completed":
        raise HTTPException(status_code=400, detail="Round already completed")
    round_row.status = "completed"
    return round_row


def reopen_round(db: Session, round_id: int) -> Round:
    round_row = get_round_or_404(db, round_id)
    if round_row.status != "completed":
        raise HTTPException(status_code=400, detail="Round is not completed")
    round_row.status = "scheduled"
    return round_row


def driver_names(db: Session, season_id: int) -> dict[int, str]:
    rows = db.execute(
        select(SeasonDriver.id, Driver.name)
        .join(Driver, Driver.id == SeasonDriver.driver_id)
        .where(SeasonDriver.season_id == season_id)
    ).all()
    return {season_driver_id: name for season_driver_id, name in rows}


def team_names(db: Session, season_id: int) -> dict[int, str]:
    rows = db.execute(select(Team.id, Team.name).where(Team.season_id == season_id)).all()
    return {team_id: name for team_id, name in rows}


def standing_rows(standings: Sequence[Standing], names: dict[int, str]) -> list[dict[str, Any]]:
    return [
        {
            "rank": s.rank,
            "subject_id": s.subject_id,
            "name": names.get(s.subject_id, f"#{s.subject_id}"),
            "division_id": s.division_id,
            "total_points": round_score(s.total_points),
            "rounds_counted": s.rounds_counted,
            "tie_group_size": s.tie_group_size,
            "round_points": [round_score(p) for p in s.round_points],
            "dropped_round_ids": list(s.dropped_round_ids),
        }
        for s in standings
    ]
