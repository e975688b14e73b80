"""Create nests table

Revision ID: 5b0e2c9d41a7
Revises:
Create Date: 2026-10-19 09:12:41.553190

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "5b0e2c9d41a7"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "nests",
        sa.Column("nest_id", sa.BigInteger(), autoincrement=False, nullable=False),
        sa.Column("lat", sa.Float(), nullable=False),
        sa.Column("lon", sa.Float(), nullable=False),
        sa.Column("name", sa.String(length=250), nullable=False),
        sa.Column("polygon", sa.Text(), nullable=True),
        sa.Column("area_name", sa.String(length=250), nullable=True),
        sa.Column("spawnpoints", sa.BigInteger(), nullable=True),
        sa.Column("m2", sa.Float(), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=True),
        sa.Column("pokemon_id", sa.Integer(), nullable=True),
        sa.Column("pokemon_form", sa.Integer(), nullable=True),
        sa.Column("pokemon_avg", sa.Float(), nullable=True),
        sa.Column("pokemon_ratio", sa.Float(), nullable=True),
        sa.Column("pokemon_count", sa.Float(), nullable=True),
        sa.Column("discarded", sa.String(length=40), nullable=True),
        sa.Column("updated", sa.BigInteger(), nullable=True),
        sa.PrimaryKeyConstraint("nest_id"),
    )
    op.create_index("ix_nests_active", "nests", ["active"])
    op.create_index("ix_nests_area_name", "nests", ["area_name"])
    op.create_index("ix_nests_lat_lon", "nests", ["lat", "lon"])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index("ix_nests_lat_lon", table_name="nests")
    op.drop_index("ix_nests_area_name", table_name="nests")
    op.drop_index("ix_nests_active", table_name="nests")
    op.drop_table("nests")
