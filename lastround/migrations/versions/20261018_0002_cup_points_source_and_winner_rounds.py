"""Track who wrote each cup_points row; keep rounds played on cup winners.

Revision ID: 0002
Revises: 0001
Create Date: 2026-10-18

- cup_points.source: 'calculated' for round scoring, 'correction' for
  admin overrides and late-submission penalties. The scoring upsert skips
  rows whose source is 'correction', so an hourly rescore cannot undo them.
- season_winners.rounds_participated: stored so an already-determined cup
  returns the same winner entries it was recorded with.
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0002'
down_revision = '0001'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        'cup_points',
        sa.Column(
            'source', sa.String(20), nullable=False, server_default='calculated',
            comment="'calculated' by round scoring or 'correction'"
        )
    )
    op.create_check_constraint(
        'ck_cup_points_source',
        'cup_points',
        "source IN ('calculated', 'correction')",
    )

    op.add_column(
        'season_winners',
        sa.Column('rounds_participated', sa.Integer(), nullable=False, server_default='0')
    )


def downgrade() -> None:
    op.drop_column('season_winners', 'rounds_participated')
    op.drop_constraint('ck_cup_points_source', 'cup_points', type_='check')
    op.drop_column('cup_points', 'source')
