from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from championship.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Season(Base):
    __tablename__ = "seasons"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    drop_round: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    total_drop_rounds: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    team_championship_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # NULL means every roster driver counts.
    teams_drivers_for_calculation: Mapped[int | None] = mapped_column(Integer, nullable=True)
    teams_drop_rounds: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    teams_total_drop_rounds: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    tiebreakers_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    roster_policy: Mapped[str] = mapped_column(
        String(32), default="per_round", nullable=False
    )  # per_round, season_start
    incomplete_data_policy: Mapped[str] = mapped_column(
        String(32), default="fatal", nullable=False
    )  # fatal, lenient
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    divisions: Mapped[list["Division"]] = relationship(
        "Division", back_populates="season", cascade="all, delete-orphan"
    )
    teams: Mapped[list["Team"]] = relationship(
        "Team", back_populates="season", cascade="all, delete-orphan"
    )
    drivers: Mapped[list["SeasonDriver"]] = relationship(
        "SeasonDriver", back_populates="season", cascade="all, delete-orphan"
    )
    rounds: Mapped[list["Round"]] = relationship(
        "Round", back_populates="season", cascade="all, delete-orphan"
    )
    tiebreaker_rules: Mapped[list["SeasonTiebreakerRule"]] = relationship(
        "SeasonTiebreakerRule",
        back_populates="season",
        cascade="all, delete-orphan",
        order_by="SeasonTiebreakerRule.priority",
    )


class Division(Base):
    __tablename__ = "divisions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    season_id: Mapped[int] = mapped_column(ForeignKey("seasons.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)

    season: Mapped[Season] = relationship("Season", back_populates="divisions")

    __table_args__ = (UniqueConstraint("season_id", "name", name="uq_division_name_per_season"),)


class Team(Base):
    __tablename__ = "teams"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    season_id: Mapped[int] = mapped_column(ForeignKey("seasons.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)

    season: Mapped[Season] = relationship("Season", back_populates="teams")

    __table_args__ = (UniqueConstraint("season_id", "name", name="uq_team_name_per_season"),)


class Driver(Base):
    __tablename__ = "drivers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    season_entries: Mapped[list["SeasonDriver"]] = relationship(
        "SeasonDriver", back_populates="driver", cascade="all, delete-orphan"
    )


class SeasonDriver(Base):
    __tablename__ = "season_drivers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    season_id: Mapped[int] = mapped_column(ForeignKey("seasons.id"), nullable=False, index=True)
    driver_id: Mapped[int] = mapped_column(ForeignKey("drivers.id"), nullable=False, index=True)
    division_id: Mapped[int | None] = mapped_column(ForeignKey("divisions.id"), nullable=True)
    team_id: Mapped[int | None] = mapped_column(ForeignKey("teams.id"), nullable=True)

    season: Mapped[Season] = relationship("Season", back_populates="drivers")
    driver: Mapped[Driver] = relationship("Driver", back_populates="season_entries")
    transfers: Mapped[list["TeamTransfer"]] = relationship(
        "TeamTransfer", back_populates="season_driver", cascade="all, delete-orphan"
    )

    __table_args__ = (UniqueConstraint("season_id", "driver_id", name="uq_season_driver"),)


class TeamTransfer(Base):
    """Team change for a season driver, effective from a round number on."""

    __tablename__ = "team_transfers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    season_driver_id: Mapped[int] = mapped_column(
        ForeignKey("season_drivers.id"), nullable=False, index=True
    )
    team_id: Mapped[int | None] = mapped_column(ForeignKey("teams.id"), nullable=True)
    effective_round_number: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    season_driver: Mapped[SeasonDriver] = relationship("SeasonDriver", back_populates="transfers")

    __table_args__ = (
        UniqueConstraint(
            "season_driver_id", "effective_round_number", name="uq_transfer_per_round"
        ),
    )


class SeasonTiebreakerRule(Base):
    __tablename__ = "season_tiebreaker_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    season_id: Mapped[int] = mapped_column(ForeignKey("seasons.id"), nullable=False, index=True)
    slug: Mapped[str] = mapped_column(String(64), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False)

    season: Mapped[Season] = relationship("Season", back_populates="tiebreaker_rules")

    __table_args__ = (UniqueConstraint("season_id", "slug", name="uq_season_tiebreaker"),)


class Round(Base):
    __tablename__ = "rounds"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    season_id: Mapped[int] = mapped_column(ForeignKey("seasons.id"), nullable=False, index=True)
    round_number: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    status: Mapped[str] = mapped_column(
        String(32), default="scheduled", nullable=False
    )  # scheduled, completed
    round_points_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    points_system: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    fastest_lap_bonus: Mapped[float | None] = mapped_column(Float, nullable=True)
    fastest_lap_top_10: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    pole_bonus: Mapped[float | None] = mapped_column(Float, nullable=True)
    pole_top_10: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    season: Mapped[Season] = relationship("Season", back_populates="rounds")
    races: Mapped[list["Race"]] = relationship(
        "Race", back_populates="round", cascade="all, delete-orphan"
    )

    __table_args__ = (UniqueConstraint("season_id", "round_number", name="uq_round_number"),)


class Race(Base):
    __tablename__ = "races"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    round_id: Mapped[int] = mapped_column(ForeignKey("rounds.id"), nullable=False, index=True)
    is_qualifier: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    race_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    points_system: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    dnf_points: Mapped[float | None] = mapped_column(Float, nullable=True)
    dns_points: Mapped[float | None] = mapped_column(Float, nullable=True)
    fastest_lap_bonus: Mapped[float | None] = mapped_column(Float, nullable=True)
    fastest_lap_top_10: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    pole_bonus: Mapped[float | None] = mapped_column(Float, nullable=True)
    pole_top_10: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    round: Mapped[Round] = relationship("Round", back_populates="races")
    results: Mapped[list["RaceResult"]] = relationship(
        "RaceResult", back_populates="race", cascade="all, delete-orphan"
    )


class RaceResult(Base):
    __tablename__ = "race_results"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    race_id: Mapped[int] = mapped_column(ForeignKey("races.id"), nullable=False, index=True)
    season_driver_id: Mapped[int] = mapped_column(
        ForeignKey("season_drivers.id"), nullable=False, index=True
    )
    division_id: Mapped[int | None] = mapped_column(ForeignKey("divisions.id"), nullable=True)
    position: Mapped[int | None] = mapped_column(Integer, nullable=True)
    dnf: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    dns: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    has_fastest_lap: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    has_pole: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    status: Mapped[str] = mapped_column(
        String(32), default="confirmed", nullable=False
    )  # pending, confirmed
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    race: Mapped[Race] = relationship("Race", back_populates="results")

    __table_args__ = (UniqueConstraint("race_id", "season_driver_id", name="uq_race_result"),)
