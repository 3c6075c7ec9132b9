from __future__ import annotations

import csv
import io
import logging
import os
from typing import Any, Literal, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from championship.database import Base, SessionLocal, engine, get_db
from championship.errors import StandingsError
from championship.models import Division, Round, Season, SeasonDriver, Team
from championship.publisher import StandingsPublisher, export_records
from championship.rules import round_score
from championship.schemas import (
    DivisionCreate,
    RaceCreate,
    RaceResultsUpsert,
    RoundCreate,
    SeasonConfigUpdate,
    SeasonCreate,
    SeasonDriverCreate,
    StandingOut,
    TeamCreate,
    TeamTransferCreate,
    TiebreakerOrder,
)
from championship.services import (
    add_team_transfer,
    complete_round,
    create_division,
    create_race,
    create_round,
    create_season,
    create_team,
    driver_names,
    get_race_or_404,
    get_round_or_404,
    get_season_driver_or_404,
    get_season_or_404,
    register_driver,
    reopen_round,
    set_tiebreaker_order,
    standing_rows,
    team_names,
    update_season_config,
    upsert_race_results,
)
from championship.tiebreakers import available_rules


logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
log = logging.getLogger(__name__)


app = FastAPI(
    title="League Championship Standings",
    version="1.0.0",
    description=(
        "Seasons, rounds, race results and championship standings: points tables, "
        "bonuses, drop rounds, tiebreakers, division and team championships."
    ),
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

publisher = StandingsPublisher(SessionLocal)


@app.on_event("startup")
def on_startup() -> None:
    Base.metadata.create_all(bind=engine)
    log.info("Tables ready on %s", engine.url.render_as_string(hide_password=True))


@app.exception_handler(StandingsError)
def standings_error_handler(request: Request, exc: StandingsError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"error": exc.kind, "detail": str(exc)})


def _refresh_standings(db: Session, season_id: int) -> dict[str, Any]:
    """Recompute after a write; a failed pass keeps the previous standings."""
    publisher.invalidate(season_id)
    try:
        publisher.recompute(season_id, db)
    except StandingsError as exc:
        return {"standings_published": False, "error": exc.kind, "detail": str(exc)}
    return {"standings_published": True}


def _season_summary(season: Season) -> dict[str, Any]:
    return {
        "id": season.id,
        "name": season.name,
        "drop_round": season.drop_round,
        "total_drop_rounds": season.total_drop_rounds,
        "team_championship_enabled": season.team_championship_enabled,
        "teams_drivers_for_calculation": season.teams_drivers_for_calculation,
        "teams_drop_rounds": season.teams_drop_rounds,
        "teams_total_drop_rounds": season.teams_total_drop_rounds,
        "tiebreakers_enabled": season.tiebreakers_enabled,
        "tiebreaker_rules": [rule.slug for rule in season.tiebreaker_rules],
        "roster_policy": season.roster_policy,
        "incomplete_data_policy": season.incomplete_data_policy,
    }


def _round_summary(round_row: Round) -> dict[str, Any]:
    return {
        "id": round_row.id,
        "season_id": round_row.season_id,
        "round_number": round_row.round_number,
        "name": round_row.name,
        "status": round_row.status,
        "race_ids": [race.id for race in round_row.races],
    }


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/tiebreakers")
def list_tiebreakers() -> list[str]:
    return available_rules()


@app.post("/seasons")
def post_season(payload: SeasonCreate, db: Session = Depends(get_db)):
    season = create_season(db, payload.name)
    db.commit()
    db.refresh(season)
    return _season_summary(season)


@app.get("/seasons")
def list_seasons(db: Session = Depends(get_db)):
    rows = db.scalars(select(Season).order_by(Season.id.asc())).all()
    return [_season_summary(s) for s in rows]


@app.get("/seasons/{season_id}")
def get_season(season_id: int, db: Session = Depends(get_db)):
    return _season_summary(get_season_or_404(db, season_id))


@app.put("/seasons/{season_id}/config")
def put_season_config(season_id: int, payload: SeasonConfigUpdate, db: Session = Depends(get_db)):
    season = update_season_config(db, season_id, payload)
    db.commit()
    return {"season": _season_summary(season), **_refresh_standings(db, season_id)}


@app.put("/seasons/{season_id}/tiebreakers")
def put_tiebreakers(season_id: int, payload: TiebreakerOrder, db: Session = Depends(get_db)):
    slugs = set_tiebreaker_order(db, season_id, payload.slugs)
    db.commit()
    return {"season_id": season_id, "tiebreaker_rules": slugs, **_refresh_standings(db, season_id)}


@app.post("/seasons/{season_id}/divisions")
def post_division(season_id: int, payload: DivisionCreate, db: Session = Depends(get_db)):
    division = create_division(db, season_id, payload.name)
    db.commit()
    return {"id": division.id, "season_id": season_id, "name": division.name}


@app.get("/seasons/{season_id}/divisions")
def list_divisions(season_id: int, db: Session = Depends(get_db)):
    get_season_or_404(db, season_id)
    rows = db.scalars(
        select(Division).where(Division.season_id == season_id).order_by(Division.id.asc())
    ).all()
    return [{"id": d.id, "name": d.name} for d in rows]


@app.post("/seasons/{season_id}/teams")
def post_team(season_id: int, payload: TeamCreate, db: Session = Depends(get_db)):
    team = create_team(db, season_id, payload.name)
    db.commit()
    return {"id": team.id, "season_id": season_id, "name": team.name}


@app.get("/seasons/{season_id}/teams")
def list_teams(season_id: int, db: Session = Depends(get_db)):
    get_season_or_404(db, season_id)
    rows = db.scalars(select(Team).where(Team.season_id == season_id).order_by(Team.name.asc())).all()
    return [{"id": t.id, "name": t.name} for t in rows]


@app.post("/seasons/{season_id}/drivers")
def post_season_driver(season_id: int, payload: SeasonDriverCreate, db: Session = Depends(get_db)):
    entry = register_driver(
        db,
        season_id,
        name=payload.name,
        number=payload.number,
        division_id=payload.division_id,
        team_id=payload.team_id,
    )
    db.commit()
    return {
        "id": entry.id,
        "driver_id": entry.driver_id,
        "division_id": entry.division_id,
        "team_id": entry.team_id,
        **_refresh_standings(db, season_id),
    }


@app.get("/seasons/{season_id}/drivers")
def list_season_drivers(season_id: int, db: Session = Depends(get_db)):
    get_season_or_404(db, season_id)
    names = driver_names(db, season_id)
    rows = db.scalars(
        select(SeasonDriver).where(SeasonDriver.season_id == season_id).order_by(SeasonDriver.id.asc())
    ).all()
    return [
        {"id": e.id, "name": names.get(e.id), "division_id": e.division_id, "team_id": e.team_id}
        for e in rows
    ]


@app.post("/season-drivers/{season_driver_id}/transfers")
def post_transfer(season_driver_id: int, payload: TeamTransferCreate, db: Session = Depends(get_db)):
    entry = get_season_driver_or_404(db, season_driver_id)
    transfer = add_team_transfer(db, season_driver_id, payload.team_id, payload.effective_round_number)
    db.commit()
    return {
        "id": transfer.id,
        "season_driver_id": season_driver_id,
        "team_id": transfer.team_id,
        "effective_round_number": transfer.effective_round_number,
        **_refresh_standings(db, entry.season_id),
    }


@app.post("/seasons/{season_id}/rounds")
def post_round(season_id: int, payload: RoundCreate, db: Session = Depends(get_db)):
    round_row = create_round(db, season_id, **payload.model_dump())
    db.commit()
    db.refresh(round_row)
    return _round_summary(round_row)


@app.get("/seasons/{season_id}/rounds")
def list_rounds(season_id: int, db: Session = Depends(get_db)):
    get_season_or_404(db, season_id)
    rows = db.scalars(
        select(Round).where(Round.season_id == season_id).order_by(Round.round_number.asc())
    ).all()
    return [_round_summary(r) for r in rows]


@app.post("/rounds/{round_id}/races")
def post_race(round_id: int, payload: RaceCreate, db: Session = Depends(get_db)):
    race = create_race(db, round_id, **payload.model_dump())
    db.commit()
    return {"id": race.id, "round_id": round_id, "is_qualifier": race.is_qualifier}


@app.put("/races/{race_id}/results")
def put_race_results(race_id: int, payload: RaceResultsUpsert, db: Session = Depends(get_db)):
    saved = upsert_race_results(db, race_id, payload.results)
    round_row = get_race_or_404(db, race_id).round
    db.commit()
    response: dict[str, Any] = {"race_id": race_id, "saved_results": len(saved)}
    if round_row.status == "completed":
        response.update(_refresh_standings(db, round_row.season_id))
    return response


@app.post("/rounds/{round_id}/complete")
def post_complete_round(round_id: int, db: Session = Depends(get_db)):
    round_row = complete_round(db, round_id)
    db.commit()
    return {"round": _round_summary(round_row), **_refresh_standings(db, round_row.season_id)}


@app.post("/rounds/{round_id}/reopen")
def post_reopen_round(round_id: int, db: Session = Depends(get_db)):
    round_row = reopen_round(db, round_id)
    db.commit()
    return {"round": _round_summary(round_row), **_refresh_standings(db, round_row.season_id)}


@app.get("/rounds/{round_id}")
def get_round(round_id: int, db: Session = Depends(get_db)):
    return _round_summary(get_round_or_404(db, round_id))


@app.get("/seasons/{season_id}/standings", response_model=list[StandingOut])
def get_driver_standings(
    season_id: int,
    division_id: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
):
    get_season_or_404(db, season_id)
    return standing_rows(publisher.fetch(season_id, division_id, db=db), driver_names(db, season_id))


@app.get("/seasons/{season_id}/standings/teams", response_model=list[StandingOut])
def get_team_standings(season_id: int, db: Session = Depends(get_db)):
    get_season_or_404(db, season_id)
    return standing_rows(publisher.fetch_teams(season_id, db=db), team_names(db, season_id))


@app.post("/seasons/{season_id}/standings/recompute")
def post_recompute(season_id: int, db: Session = Depends(get_db)):
    get_season_or_404(db, season_id)
    standings = publisher.recompute(season_id, db)
    return {
        "season_id": season_id,
        "rounds_completed": len(standings.round_ids),
        "computed_at": standings.computed_at.isoformat(),
    }


@app.get("/seasons/{season_id}/standings/export")
def export_standings(
    season_id: int,
    kind: Literal["drivers", "teams"] = Query(default="drivers"),
    format: Literal["json", "csv"] = Query(default="json"),
    division_id: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
):
    get_season_or_404(db, season_id)
    if kind == "teams":
        standings = publisher.fetch_teams(season_id, db=db)
    else:
        standings = publisher.fetch(season_id, division_id, db=db)
    records = export_records(standings)
    for record in records:
        record["total_points"] = round_score(record["total_points"])
    if format == "json":
        return records

    buffer = io.StringIO()
    writer = csv.DictWriter(
        buffer, fieldnames=["rank", "subject_id", "total_points", "rounds_counted", "tie_group_size"]
    )
    writer.writeheader()
    writer.writerows(records)
    return PlainTextResponse(
        buffer.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="season-{season_id}-{kind}.csv"'},
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=os.getenv("HOST", "127.0.0.1"), port=int(os.getenv("PORT", "8000")))
