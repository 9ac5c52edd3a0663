"""Cup schema for Last Round.

Revision ID: 0001
Revises:
Create Date: 2026-10-18

Creates the tables the cup service reads and writes:
- Competitions, Seasons (with the one-way cup_activated flag), Teams
- BettingRounds, Fixtures, Profiles, UserBets (owned by the prediction platform)
- CupPoints, one row per (user, round, season)
- SeasonWinners, the Hall of Fame for league and cup winners
- JobRuns for task audit logging

IMPORTANT: uq_cup_points_user_round_season is the upsert target for every
cup points write. Without it replays would duplicate points.
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "competitions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )

    # Seasons; cup_activated only ever moves false -> true
    op.create_table(
        "seasons",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("competition_id", sa.Integer(), nullable=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("is_current", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("cup_activated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("cup_activated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["competition_id"], ["competitions.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_seasons_current",
        "seasons",
        ["is_current"],
        postgresql_where=sa.text("is_current = true"),
    )

    op.create_table(
        "teams",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "betting_rounds",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("season_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=True, server_default="open"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(["season_id"], ["seasons.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_betting_rounds_season", "betting_rounds", ["season_id", "created_at"]
    )

    op.create_table(
        "fixtures",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("season_id", sa.Integer(), nullable=False),
        sa.Column("betting_round_id", sa.Integer(), nullable=True),
        sa.Column("home_team_id", sa.Integer(), nullable=False),
        sa.Column("away_team_id", sa.Integer(), nullable=False),
        sa.Column("kickoff", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status_short", sa.String(length=10), nullable=True),
        sa.Column("result", sa.String(length=10), nullable=True),
        sa.ForeignKeyConstraint(["season_id"], ["seasons.id"]),
        sa.ForeignKeyConstraint(["betting_round_id"], ["betting_rounds.id"]),
        sa.ForeignKeyConstraint(["home_team_id"], ["teams.id"]),
        sa.ForeignKeyConstraint(["away_team_id"], ["teams.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_fixtures_season_kickoff", "fixtures", ["season_id", "kickoff"])

    op.create_table(
        "profiles",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("full_name", sa.String(length=200), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "user_bets",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("fixture_id", sa.Integer(), nullable=False),
        sa.Column("betting_round_id", sa.Integer(), nullable=False),
        sa.Column("prediction", sa.String(length=10), nullable=False),
        sa.Column("points_awarded", sa.Integer(), nullable=True),
        sa.Column(
            "submitted_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(["user_id"], ["profiles.id"]),
        sa.ForeignKeyConstraint(["fixture_id"], ["fixtures.id"]),
        sa.ForeignKeyConstraint(["betting_round_id"], ["betting_rounds.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "fixture_id", name="uq_user_bet_fixture"),
    )
    op.create_index("idx_user_bets_round", "user_bets", ["betting_round_id"])

    # Cup points: the upsert key is (user_id, betting_round_id, season_id)
    op.create_table(
        "cup_points",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("betting_round_id", sa.Integer(), nullable=False),
        sa.Column("season_id", sa.Integer(), nullable=False),
        sa.Column("points", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["profiles.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(
            ["betting_round_id"], ["betting_rounds.id"], ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(["season_id"], ["seasons.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "user_id",
            "betting_round_id",
            "season_id",
            name="uq_cup_points_user_round_season",
        ),
        sa.CheckConstraint("points >= 0", name="ck_cup_points_non_negative"),
    )
    op.create_index("idx_cup_points_user_season", "cup_points", ["user_id", "season_id"])
    op.create_index("idx_cup_points_season", "cup_points", ["season_id"])
    op.create_index("idx_cup_points_round", "cup_points", ["betting_round_id"])

    op.create_table(
        "season_winners",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("season_id", sa.Integer(), nullable=False),
        sa.Column("league_id", sa.Integer(), nullable=True),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("game_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("dynamic_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_points", sa.Integer(), nullable=False),
        sa.Column(
            "competition_type",
            sa.String(length=50),
            nullable=False,
            server_default="league",
            comment="'league' or 'last_round_special'",
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(["season_id"], ["seasons.id"]),
        sa.ForeignKeyConstraint(["league_id"], ["competitions.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["profiles.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "season_id", "user_id", "competition_type", name="uq_season_winner_type"
        ),
        sa.CheckConstraint(
            "competition_type IN ('league', 'last_round_special')",
            name="ck_season_winners_competition_type",
        ),
    )
    op.create_index(
        "idx_season_winners_season_competition",
        "season_winners",
        ["season_id", "competition_type"],
    )

    # Job runs (task audit log)
    op.create_table(
        "job_runs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_name", sa.String(length=100), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("records_processed", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_job_runs_name_started", "job_runs", ["job_name", "started_at"])


def downgrade() -> None:
    op.drop_index("idx_job_runs_name_started", table_name="job_runs")
    op.drop_table("job_runs")
    op.drop_index("idx_season_winners_season_competition", table_name="season_winners")
    op.drop_table("season_winners")
    op.drop_index("idx_cup_points_round", table_name="cup_points")
    op.drop_index("idx_cup_points_season", table_name="cup_points")
    op.drop_index("idx_cup_points_user_season", table_name="cup_points")
    op.drop_table("cup_points")
    op.drop_index("idx_user_bets_round", table_name="user_bets")
    op.drop_table("user_bets")
    op.drop_table("profiles")
    op.drop_index("idx_fixtures_season_kickoff", table_name="fixtures")
    op.drop_table("fixtures")
    op.drop_index("idx_betting_rounds_season", table_name="betting_rounds")
    op.drop_table("betting_rounds")
    op.drop_table("teams")
    op.drop_index("idx_seasons_current", table_name="seasons")
    op.drop_table("seasons")
    op.drop_table("competitions")
