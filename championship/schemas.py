from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field


class SeasonCreate(BaseModel):
    name: str = Field(min_length=1, max_length=128)


class SeasonConfigUpdate(BaseModel):
    drop_round: Optional[bool] = None
    total_drop_rounds: Optional[int] = Field(default=None, ge=0)
    team_championship_enabled: Optional[bool] = None
    teams_drivers_for_calculation: Optional[int] = Field(default=None, ge=1)
    teams_drivers_all: bool = False
    teams_drop_rounds: Optional[bool] = None
    teams_total_drop_rounds: Optional[int] = Field(default=None, ge=0)
    tiebreakers_enabled: Optional[bool] = None
    roster_policy: Optional[Literal["per_round", "season_start"]] = None
    incomplete_data_policy: Optional[Literal["fatal", "lenient"]] = None


class TiebreakerOrder(BaseModel):
    slugs: list[str]


class DivisionCreate(BaseModel):
    name: str = Field(min_length=1, max_length=128)


class TeamCreate(BaseModel):
    name: str = Field(min_length=1, max_length=128)


class SeasonDriverCreate(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    number: Optional[int] = Field(default=None, ge=0)
    division_id: Optional[int] = None
    team_id: Optional[int] = None


class TeamTransferCreate(BaseModel):
    team_id: Optional[int] = None
    effective_round_number: int = Field(ge=1)


class BonusSettings(BaseModel):
    fastest_lap_bonus: Optional[float] = Field(default=None, ge=0)
    fastest_lap_top_10: bool = False
    pole_bonus: Optional[float] = Field(default=None, ge=0)
    pole_top_10: bool = False


class RoundCreate(BonusSettings):
    round_number: int = Field(ge=1)
    name: Optional[str] = Field(default=None, max_length=128)
    round_points_enabled: bool = False
    points_system: Optional[dict[int, float]] = None


class RaceCreate(BonusSettings):
    is_qualifier: bool = False
    race_number: Optional[int] = Field(default=None, ge=1)
    points_system: dict[int, float]
    dnf_points: Optional[float] = Field(default=None, ge=0)
    dns_points: Optional[float] = Field(default=None, ge=0)


class RaceResultIn(BaseModel):
    season_driver_id: int
    division_id: Optional[int] = None
    position: Optional[int] = Field(default=None, ge=1)
    dnf: bool = False
    dns: bool = False
    has_fastest_lap: bool = False
    has_pole: bool = False
    status: Literal["pending", "confirmed"] = "confirmed"


class RaceResultsUpsert(BaseModel):
    results: list[RaceResultIn]


class StandingOut(BaseModel):
    rank: int
    subject_id: int
    name: str
    division_id: Optional[int] = None
    total_points: float
    rounds_counted: int
    tie_group_size: int
    round_points: list[float]
    dropped_round_ids: list[int]
